"""Error taxonomy for the billing core.

Validation-level denials (no subscription, unknown/disabled feature, quota
exhausted) are returned as typed results and never raised. Only true error
conditions live here.
"""


class BillingCoreError(Exception):
    """Base class for billing core errors."""


class StorageError(BillingCoreError):
    """A persistence call failed. Always propagated to the caller."""


class DuplicateRecordError(StorageError):
    """A unique key rejected the write."""


class UsageRecordNotFound(BillingCoreError):
    """No usage record exists for the (user, feature) pair."""

    def __init__(self, user_id: str, feature_name: str):
        super().__init__(f"No usage record for {feature_name} (user {user_id})")
        self.user_id = user_id
        self.feature_name = feature_name


class SubscriptionNotFound(BillingCoreError):
    """Subscription id does not resolve to a live row."""


class PlanNotFound(BillingCoreError):
    """Plan id does not resolve to an active plan."""


class SubscriptionConflictError(BillingCoreError):
    """User already holds a live subscription."""


class PlanChangeNotAllowed(BillingCoreError):
    """A plan switch was refused; the message says why."""


class InvalidSignatureError(BillingCoreError):
    """Gateway notification signature did not match."""


class PaymentGatewayError(BillingCoreError):
    """Outbound call to the payment gateway failed."""
