from sqlalchemy.orm import DeclarativeBase, declared_attr


class Base(DeclarativeBase):
    """Declarative base; tables default to the lower-cased class name."""

    @declared_attr.directive
    def __tablename__(cls) -> str:  # noqa: N805
        return cls.__name__.lower()


def enum_values(enum_cls) -> list[str]:
    """Persist ``str`` enums by value rather than by member name."""

    return [member.value for member in enum_cls]
