from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Enum as SqlEnum, ForeignKey, Integer, Numeric, String, false, true
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from kitchen_api.core.clock import utcnow
from kitchen_api.db.base import Base, enum_values


class OrderStatusEnum(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def display(self) -> str:
        """Customer-facing spelling used in messages (``out-for-delivery``)."""

        return self.value.replace("_", "-")


class OrderTypeEnum(str, Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class Order(Base):
    __tablename__ = "orders"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    order_number = Column(String(32), nullable=False, unique=True)
    user_id = Column(String(128), nullable=True, index=True)
    customer_email = Column(String(255), nullable=True)
    customer_name = Column(String(255), nullable=True)
    status = Column(
        SqlEnum(OrderStatusEnum, name="order_status_enum", values_callable=enum_values),
        nullable=False,
        default=OrderStatusEnum.PENDING,
        server_default=OrderStatusEnum.PENDING.value,
    )
    order_type = Column(
        SqlEnum(OrderTypeEnum, name="order_type_enum", values_callable=enum_values),
        nullable=False,
        default=OrderTypeEnum.PICKUP,
        server_default=OrderTypeEnum.PICKUP.value,
    )
    subtotal = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    tax = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    discount = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    total = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    eligible_amount = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    points_earned = Column(Integer, nullable=False, default=0, server_default="0")
    has_volunteer_discount = Column(Boolean, nullable=False, default=False, server_default=false())
    currency = Column(String(3), nullable=False, default="usd", server_default="usd")
    is_test = Column(Boolean, nullable=False, default=False, server_default=false())
    source_event_id = Column(String(255), nullable=False, unique=True)
    payment_reference = Column(String(255), nullable=True, unique=True)
    checkout_session_id = Column(String(255), nullable=True)
    version = Column(Integer, nullable=False, default=1, server_default="1")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", lazy="selectin")
    status_events = relationship(
        "OrderStatusEvent",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusEvent.created_at",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False, default=1, server_default="1")
    unit_price = Column(Numeric(12, 2), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)
    points_eligible = Column(Boolean, nullable=False, default=True, server_default=true())

    order = relationship("Order", back_populates="items")
