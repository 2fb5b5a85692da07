"""
Billing: plans, credits and the exactly-once delivery charge.
"""
from concierge.billing.coordinator import DeliveryCoordinator, DeliveryResult
from concierge.billing.errors import BillingError, SubscriptionCancelledError, SubscriptionNotFoundError

__all__ = [
    "DeliveryCoordinator",
    "DeliveryResult",
    "BillingError",
    "SubscriptionCancelledError",
    "SubscriptionNotFoundError",
]
