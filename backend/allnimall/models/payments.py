"""Midtrans notification payload models."""

from enum import Enum

from pydantic import BaseModel, ConfigDict


class TransactionStatus(str, Enum):
    """Midtrans transaction_status values."""

    CAPTURE = "capture"
    SETTLEMENT = "settlement"
    PENDING = "pending"
    DENY = "deny"
    CANCEL = "cancel"
    EXPIRE = "expire"
    FAILURE = "failure"


SUCCESS_STATUSES = {TransactionStatus.CAPTURE, TransactionStatus.SETTLEMENT}
FAILURE_STATUSES = {
    TransactionStatus.DENY,
    TransactionStatus.CANCEL,
    TransactionStatus.EXPIRE,
    TransactionStatus.FAILURE,
}


class PaymentNotification(BaseModel):
    """HTTP notification pushed by Midtrans.

    Fields are kept as the raw strings the gateway signs; ``gross_amount`` in
    particular must not be normalised before signature verification.
    """

    model_config = ConfigDict(extra="allow")

    order_id: str
    status_code: str
    gross_amount: str
    signature_key: str
    transaction_status: str
    transaction_id: str = ""
    payment_type: str = ""
    transaction_time: str | None = None
    fraud_status: str | None = None
    currency: str | None = None
    status_message: str | None = None


class NotificationResult(BaseModel):
    """Outcome reported back to the webhook route."""

    success: bool
    message: str
