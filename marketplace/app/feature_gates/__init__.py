"""Feature gating utilities coordinating subscription enforcement."""
from .enforcement import require_active_subscription, require_kyc_verified
from .exceptions import FeatureGateError, KycRequiredError, SubscriptionRequiredError

__all__ = [
    "FeatureGateError",
    "KycRequiredError",
    "SubscriptionRequiredError",
    "require_active_subscription",
    "require_kyc_verified",
]
