from uuid import uuid4

from sqlalchemy import Column, DateTime, String

from kitchen_api.core.clock import utcnow
from kitchen_api.db.base import Base


class User(Base):
    """Local copy of the identity directory used to link payers to accounts."""

    __tablename__ = "users"

    id = Column(String(128), primary_key=True, default=lambda: uuid4().hex)
    email = Column(String(255), nullable=False, unique=True, index=True)
    display_name = Column(String(255), nullable=True)
    role = Column(String(16), nullable=False, default="customer", server_default="customer")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
