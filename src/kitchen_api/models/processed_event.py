from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID

from kitchen_api.core.clock import utcnow
from kitchen_api.db.base import Base


class ProcessedEvent(Base):
    """Idempotency marker for payment gateway events.

    Written in the same transaction as the order it produced, so its primary
    key is the only thing standing between a redelivered webhook and a second
    order.
    """

    __tablename__ = "processed_events"

    external_event_id = Column(String(255), primary_key=True)
    event_type = Column(String(64), nullable=False)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
