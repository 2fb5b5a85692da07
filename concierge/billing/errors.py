"""Billing exceptions."""


class BillingError(RuntimeError):
    """Raised when a session charge cannot be applied."""


class SubscriptionNotFoundError(BillingError):
    """Raised when the shop has no subscription row."""


class SubscriptionCancelledError(BillingError):
    """Raised when the shop's subscription is not active."""
