"""Plan, subscription and billing models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class BillingCycle(str, Enum):
    """Plan billing cycles."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_SUBSCRIPTION_STATUSES = {SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED}
LIVE_SUBSCRIPTION_STATUSES = {
    SubscriptionStatus.TRIAL,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
}


class InvoiceStatus(str, Enum):
    """Invoice states."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    """Payment attempt outcomes."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"
    CANCELLED = "cancelled"


class TransactionType(str, Enum):
    """Billing ledger entry types."""

    SUBSCRIPTION = "subscription"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    REFUND = "refund"
    CREDIT = "credit"


class PlanChangeType(str, Enum):
    """Direction of a plan change, derived from price."""

    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    LATERAL = "lateral"


class PlanChangeStatus(str, Enum):
    """Plan change request workflow states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class LimitDimension(str, Enum):
    """Countable resources capped by plan limits."""

    PRODUCTS = "products"
    STORES = "stores"
    USERS = "users"
    CUSTOMERS = "customers"
    TRANSACTIONS_PER_MONTH = "transactions_per_month"


# Dimensions compared when checking plan change eligibility
CAPACITY_DIMENSIONS = (
    LimitDimension.STORES,
    LimitDimension.USERS,
    LimitDimension.PRODUCTS,
    LimitDimension.CUSTOMERS,
)

UNLIMITED = -1


def is_unlimited(limit: int | None) -> bool:
    """-1 or a missing limit means unlimited."""
    return limit is None or limit < 0


class Plan(BaseModel):
    """Catalog entry. Read-only to the billing core."""

    id: str
    name: str
    description: str | None = None
    price: float = Field(ge=0)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    features: list[str] = Field(default_factory=list)
    limits: dict[str, int] = Field(default_factory=dict)
    restrictions: dict[str, bool] = Field(default_factory=dict)
    is_active: bool = True
    sort_order: int = 0
    deleted_at: datetime | None = None

    def limit_for(self, dimension: str) -> int | None:
        """Return the cap for a dimension, or None if the plan does not declare one.

        Older catalog rows use ``max_<dimension>`` keys; both spellings are read.
        """
        key = dimension.value if isinstance(dimension, Enum) else dimension
        if key in self.limits:
            return self.limits[key]
        return self.limits.get(f"max_{key}")

    @property
    def monthly_price(self) -> float:
        if self.billing_cycle == BillingCycle.YEARLY:
            return self.price / 12
        return self.price


class Subscription(BaseModel):
    """A user's binding to a plan."""

    id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.TRIAL
    start_date: datetime
    end_date: datetime | None = None
    next_billing_date: datetime | None = None
    trial_end_date: datetime | None = None
    auto_renew: bool = True
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


class BillingInvoice(BaseModel):
    """One billing attempt."""

    id: str
    user_id: str
    subscription_id: str | None = None
    invoice_number: str
    amount: float
    currency: str = "IDR"
    status: InvoiceStatus = InvoiceStatus.PENDING
    due_date: datetime
    paid_at: datetime | None = None
    # Gateway order id the invoice was raised for
    external_reference: str | None = None
    invoice_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


class BillingPayment(BaseModel):
    """Append-only record of a charge attempt."""

    id: str
    user_id: str
    invoice_id: str | None = None
    subscription_id: str | None = None
    amount: float
    currency: str = "IDR"
    payment_method: str = "midtrans"
    status: PaymentStatus
    external_transaction_id: str
    failure_reason: str | None = None
    created_at: datetime | None = None


class BillingTransaction(BaseModel):
    """Audit entry written for every reconciled gateway notification."""

    id: str
    user_id: str
    transaction_type: TransactionType = TransactionType.SUBSCRIPTION
    amount: float
    currency: str = "IDR"
    description: str | None = None
    reference_id: str | None = None
    reference_type: str | None = "subscription"
    external_transaction_id: str | None = None
    created_at: datetime | None = None


class PlanChangeRequest(BaseModel):
    """User-requested upgrade or downgrade awaiting approval."""

    id: str
    user_id: str
    subscription_id: str
    from_plan_id: str
    to_plan_id: str
    change_type: PlanChangeType
    status: PlanChangeStatus = PlanChangeStatus.PENDING
    proration_amount: float = 0.0
    effective_date: datetime
    reason: str | None = None
    created_at: datetime | None = None


class CustomerDetails(BaseModel):
    """Customer block forwarded to the gateway checkout."""

    first_name: str
    last_name: str | None = None
    email: str
    phone: str


class PaymentCheckout(BaseModel):
    """Result of starting a gateway checkout for a subscription."""

    order_id: str
    token: str
    redirect_url: str
    invoice_id: str


class RecurringBillingResult(BaseModel):
    """Outcome of one recurring-billing sweep."""

    skipped: bool = False
    processed: int = 0
    invoices_created: list[str] = Field(default_factory=list)
    failed_subscription_ids: list[str] = Field(default_factory=list)
