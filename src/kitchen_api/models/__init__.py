"""SQLAlchemy models package."""

from .loyalty import (  # noqa: F401
    LoyaltyProfile,
    LoyaltyTierEnum,
    PointsTransaction,
    PointsTransactionType,
    Redemption,
    RedemptionStatus,
    RewardOffer,
)
from .order import Order, OrderItem, OrderStatusEnum, OrderTypeEnum  # noqa: F401
from .order_status_event import OrderStatusEvent  # noqa: F401
from .processed_event import ProcessedEvent  # noqa: F401
from .user import User  # noqa: F401
