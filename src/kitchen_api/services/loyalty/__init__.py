"""Loyalty ledger, redemption, spin and analytics services."""

from .analytics import RewardsAnalyticsReport, RewardsAnalyticsService  # noqa: F401
from .events import ProfileChange, ProfileEvents  # noqa: F401
from .ledger import LoyaltyLedger, decode_time_uuid_cursor, encode_time_uuid_cursor  # noqa: F401
from .profiles import LoyaltyProfileService  # noqa: F401
from .redemption import RedemptionService  # noqa: F401
from .spin import SpinService  # noqa: F401
