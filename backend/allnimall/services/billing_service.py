"""Billing reconciliation: subscription lifecycle, gateway notifications and sweeps."""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any

import structlog

from allnimall.config import BillingConfig
from allnimall.constants import INVOICE_NUMBER_PREFIX, PAYMENT_METHOD_MIDTRANS
from allnimall.exceptions import (
    DuplicateRecordError,
    InvalidSignatureError,
    PaymentGatewayError,
    PlanChangeNotAllowed,
    PlanNotFound,
    SubscriptionConflictError,
    SubscriptionNotFound,
)
from allnimall.models.billing import (
    LIVE_SUBSCRIPTION_STATUSES,
    BillingInvoice,
    BillingPayment,
    BillingTransaction,
    CustomerDetails,
    InvoiceStatus,
    PaymentCheckout,
    PaymentStatus,
    Plan,
    RecurringBillingResult,
    Subscription,
    SubscriptionStatus,
)
from allnimall.models.payments import (
    FAILURE_STATUSES,
    SUCCESS_STATUSES,
    NotificationResult,
    PaymentNotification,
    TransactionStatus,
)
from allnimall.services.billing_repository import BillingRepository
from allnimall.services.midtrans_service import (
    MidtransService,
    build_order_id,
    parse_order_id,
    unix_millis,
)
from allnimall.services.periods import advance_billing_cycle
from allnimall.services.plan_validation import PlanValidationEngine
from allnimall.services.supabase_client import utcnow
from allnimall.services.usage_ledger import UsageLedger

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, set[SubscriptionStatus]] = {
    SubscriptionStatus.TRIAL: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    },
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    },
    SubscriptionStatus.PAST_DUE: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    },
    SubscriptionStatus.CANCELLED: set(),
    SubscriptionStatus.EXPIRED: set(),
}

PAYMENT_CANCELLED_REASON = "Payment cancelled by user"
ALREADY_PROCESSED_MESSAGE = "Notification already processed"


def invoice_number(subscription_id: str, moment: datetime) -> str:
    return f"{INVOICE_NUMBER_PREFIX}-{subscription_id}-{unix_millis(moment)}"


def _transaction_key(notification: PaymentNotification) -> str:
    return notification.transaction_id or notification.order_id


class BillingService:
    """The only component that moves subscription, invoice and payment status."""

    def __init__(
        self,
        repository: BillingRepository,
        ledger: UsageLedger,
        config: BillingConfig,
        gateway: MidtransService | None = None,
        now_provider=utcnow,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.config = config
        self.gateway = gateway
        self.now_provider = now_provider
        self._sweep_lock = asyncio.Lock()

    def _require_gateway(self) -> MidtransService:
        if self.gateway is None:
            raise PaymentGatewayError("Midtrans is not configured")
        return self.gateway

    def _transition(self, subscription: Subscription, target: SubscriptionStatus) -> bool:
        """Apply a status change in place. Returns True when the row changed."""
        if subscription.status == target:
            return False
        if target not in ALLOWED_TRANSITIONS[subscription.status]:
            logger.warning(
                "subscription_transition_rejected",
                subscription_id=subscription.id,
                from_status=subscription.status,
                to_status=target,
            )
            return False
        logger.info(
            "subscription_transition",
            subscription_id=subscription.id,
            from_status=subscription.status,
            to_status=target,
        )
        subscription.status = target
        return True

    # ------------------------------------------------------------------
    # Catalog and subscription lifecycle
    # ------------------------------------------------------------------

    async def list_plans(self) -> list[Plan]:
        return await self.repository.list_active_plans(order_by="sort_order")

    async def get_current_subscription(self, user_id: str) -> Subscription | None:
        return await self.repository.get_latest_subscription(user_id)

    async def create_subscription(
        self, user_id: str, plan_id: str, now: datetime | None = None
    ) -> Subscription:
        """Start a trial on ``plan_id`` and initialise the usage ledger."""
        moment = now or self.now_provider()
        existing = await self.repository.get_live_subscription(user_id)
        if existing is not None:
            raise SubscriptionConflictError(
                f"User already has a {existing.status.value} subscription"
            )

        plan = await self.repository.get_plan(plan_id)
        if plan is None:
            raise PlanNotFound(f"Subscription plan {plan_id} not found")

        period_end = advance_billing_cycle(moment, plan.billing_cycle)
        subscription = await self.repository.insert_subscription(
            Subscription(
                id=str(uuid.uuid4()),
                user_id=user_id,
                plan_id=plan.id,
                status=SubscriptionStatus.TRIAL,
                start_date=moment,
                end_date=period_end,
                next_billing_date=period_end,
                trial_end_date=moment + timedelta(days=self.config.trial_days),
                auto_renew=True,
                created_at=moment,
            )
        )
        await self.ledger.initialize_for_subscription(user_id, plan, now=moment)
        logger.info(
            "subscription_created",
            user_id=user_id,
            subscription_id=subscription.id,
            plan_id=plan.id,
        )
        return subscription

    async def change_plan(
        self,
        subscription_id: str,
        target_plan_id: str,
        validator: PlanValidationEngine,
        now: datetime | None = None,
    ) -> Subscription:
        """Switch a live subscription to another plan immediately.

        The switch is refused when current consumption exceeds the target
        plan's caps. Usage counters are re-pointed at the new plan's limits;
        the billing cycle is left as it is.
        """
        moment = now or self.now_provider()
        subscription = await self.repository.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(f"Subscription {subscription_id} not found")
        if subscription.status not in LIVE_SUBSCRIPTION_STATUSES:
            raise PlanChangeNotAllowed(
                f"Cannot change plan of a {subscription.status.value} subscription"
            )
        if subscription.plan_id == target_plan_id:
            raise PlanChangeNotAllowed("Already subscribed to this plan")

        target = await self.repository.get_plan(target_plan_id)
        if target is None:
            raise PlanNotFound(f"Subscription plan {target_plan_id} not found")

        eligibility = await validator.check_capacity(subscription.user_id, target)
        if not eligibility.can_upgrade:
            raise PlanChangeNotAllowed(eligibility.reason or "Plan change not allowed")

        from_plan_id = subscription.plan_id
        subscription.plan_id = target.id
        subscription.updated_at = moment
        subscription = await self.repository.update_subscription(subscription)
        await self.ledger.apply_plan_limits(subscription.user_id, target, now=moment)
        logger.info(
            "subscription_plan_changed",
            subscription_id=subscription.id,
            from_plan_id=from_plan_id,
            to_plan_id=target.id,
        )
        return subscription

    async def cancel_subscription(
        self,
        subscription_id: str,
        reason: str | None = None,
        *,
        purge: bool = False,
        now: datetime | None = None,
    ) -> Subscription:
        """Cancel a subscription. Cancelling twice is a successful no-op.

        ``purge`` additionally soft-deletes the subscription and its usage records.
        """
        moment = now or self.now_provider()
        subscription = await self.repository.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(f"Subscription {subscription_id} not found")

        changed = self._transition(subscription, SubscriptionStatus.CANCELLED)
        if changed:
            subscription.auto_renew = False
            subscription.cancelled_at = moment
            subscription.cancellation_reason = reason

        if purge and subscription.status == SubscriptionStatus.CANCELLED:
            subscription.deleted_at = moment
            await self.ledger.soft_delete_for_user(subscription.user_id, moment)
            changed = True

        if not changed:
            return subscription

        subscription.updated_at = moment
        subscription = await self.repository.update_subscription(subscription)
        logger.info(
            "subscription_cancelled",
            subscription_id=subscription.id,
            reason=reason,
            purged=purge,
        )
        return subscription

    # ------------------------------------------------------------------
    # Gateway checkout
    # ------------------------------------------------------------------

    async def create_subscription_payment(
        self,
        subscription_id: str,
        customer: CustomerDetails,
        now: datetime | None = None,
    ) -> PaymentCheckout:
        """Open a Snap checkout for the plan price and raise the matching invoice."""
        gateway = self._require_gateway()
        moment = now or self.now_provider()

        subscription = await self.repository.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(f"Subscription {subscription_id} not found")
        plan = await self.repository.get_plan(subscription.plan_id)
        if plan is None:
            raise PlanNotFound(f"Subscription plan {subscription.plan_id} not found")

        order_id = build_order_id(subscription.id, moment)
        checkout = await gateway.create_subscription_payment(
            order_id=order_id,
            subscription_id=subscription.id,
            amount=plan.price,
            customer=customer,
            billing_cycle=plan.billing_cycle,
            now=moment,
        )

        invoice = await self.repository.insert_invoice(
            BillingInvoice(
                id=str(uuid.uuid4()),
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                invoice_number=invoice_number(subscription.id, moment),
                amount=plan.price,
                currency=self.config.currency,
                status=InvoiceStatus.PENDING,
                due_date=moment + timedelta(days=self.config.payment_invoice_due_days),
                external_reference=order_id,
                invoice_url=checkout["redirect_url"],
                created_at=moment,
            )
        )
        logger.info(
            "billing_checkout_created",
            subscription_id=subscription.id,
            order_id=order_id,
            invoice_id=invoice.id,
        )
        return PaymentCheckout(
            order_id=order_id,
            token=checkout["token"],
            redirect_url=checkout["redirect_url"],
            invoice_id=invoice.id,
        )

    async def get_payment_status(
        self, order_id: str
    ) -> tuple[dict[str, Any], BillingInvoice | None]:
        """Gateway-side transaction status plus the local invoice, if any."""
        transaction = await self._require_gateway().get_transaction_status(order_id)
        invoice = await self.repository.get_invoice_by_reference(order_id)
        return transaction, invoice

    async def cancel_payment(self, order_id: str, now: datetime | None = None) -> dict[str, Any]:
        """Cancel an open gateway transaction and the subscription it was paying for."""
        moment = now or self.now_provider()
        response = await self._require_gateway().cancel_transaction(order_id)

        invoice = await self.repository.get_invoice_by_reference(order_id)
        if invoice is not None and invoice.status == InvoiceStatus.PENDING:
            invoice.status = InvoiceStatus.CANCELLED
            invoice.updated_at = moment
            await self.repository.update_invoice(invoice)

        parsed = parse_order_id(order_id)
        if parsed is not None:
            await self.cancel_subscription(parsed[0], PAYMENT_CANCELLED_REASON, now=moment)

        logger.info("billing_payment_cancelled", order_id=order_id)
        return response

    # ------------------------------------------------------------------
    # Notification reconciliation
    # ------------------------------------------------------------------

    async def handle_payment_notification(
        self, notification: PaymentNotification, now: datetime | None = None
    ) -> NotificationResult:
        """Verify and apply one gateway notification.

        Signature failures return ``success=False`` without touching state.
        Storage failures propagate so the gateway redelivers.
        """
        moment = now or self.now_provider()
        try:
            self._require_gateway().verify_notification(notification)
        except InvalidSignatureError:
            logger.warning("midtrans_signature_invalid", order_id=notification.order_id)
            return NotificationResult(success=False, message="Invalid signature")

        parsed = parse_order_id(notification.order_id)
        if parsed is None:
            logger.info("midtrans_order_ignored", order_id=notification.order_id)
            return NotificationResult(success=True, message="Order is not a subscription payment")

        subscription = await self.repository.get_subscription(parsed[0])
        if subscription is None:
            logger.warning(
                "midtrans_subscription_missing",
                order_id=notification.order_id,
                subscription_id=parsed[0],
            )
            return NotificationResult(success=True, message="Subscription not found")

        try:
            status = TransactionStatus(notification.transaction_status)
        except ValueError:
            logger.warning(
                "midtrans_status_unknown",
                order_id=notification.order_id,
                transaction_status=notification.transaction_status,
            )
            return NotificationResult(success=True, message="Unknown transaction status")

        if status == TransactionStatus.CAPTURE and notification.fraud_status == "challenge":
            status = TransactionStatus.PENDING

        if status in SUCCESS_STATUSES:
            return await self._apply_settlement(subscription, notification, moment)
        if status in FAILURE_STATUSES:
            return await self._apply_failure(subscription, notification, status, moment)

        # Pending: subscription stays where it is until a terminal notification.
        logger.info(
            "midtrans_payment_pending",
            order_id=notification.order_id,
            subscription_id=subscription.id,
        )
        return NotificationResult(success=True, message="Payment pending")

    async def _invoice_for(self, order_id: str, subscription_id: str) -> BillingInvoice | None:
        invoice = await self.repository.get_invoice_by_reference(order_id)
        if invoice is None:
            invoice = await self.repository.get_latest_pending_invoice(subscription_id)
        return invoice

    async def _already_processed(self, notification: PaymentNotification) -> bool:
        existing = await self.repository.get_payment_by_transaction_id(
            _transaction_key(notification)
        )
        if existing is not None:
            logger.info(
                "midtrans_notification_duplicate",
                order_id=notification.order_id,
                transaction_id=_transaction_key(notification),
            )
            return True
        return False

    async def _record(
        self,
        subscription: Subscription,
        invoice: BillingInvoice | None,
        notification: PaymentNotification,
        status: PaymentStatus,
        moment: datetime,
        failure_reason: str | None = None,
    ) -> bool:
        """Append the payment and ledger rows. Returns False when the payment
        key was already taken by a concurrent delivery of the same notification."""
        amount = invoice.amount if invoice else float(notification.gross_amount)
        currency = invoice.currency if invoice else (notification.currency or self.config.currency)
        try:
            await self.repository.insert_payment(
                BillingPayment(
                    id=str(uuid.uuid4()),
                    user_id=subscription.user_id,
                    invoice_id=invoice.id if invoice else None,
                    subscription_id=subscription.id,
                    amount=amount,
                    currency=currency,
                    payment_method=notification.payment_type or PAYMENT_METHOD_MIDTRANS,
                    status=status,
                    external_transaction_id=_transaction_key(notification),
                    failure_reason=failure_reason,
                    created_at=moment,
                )
            )
        except DuplicateRecordError:
            logger.info(
                "midtrans_notification_duplicate",
                order_id=notification.order_id,
                transaction_id=_transaction_key(notification),
            )
            return False
        await self.repository.insert_transaction(
            BillingTransaction(
                id=str(uuid.uuid4()),
                user_id=subscription.user_id,
                amount=amount,
                currency=currency,
                description=(
                    f"Subscription payment for {notification.order_id} - "
                    f"{notification.transaction_status}"
                ),
                reference_id=subscription.id,
                external_transaction_id=_transaction_key(notification),
                created_at=moment,
            )
        )
        return True

    async def _apply_settlement(
        self,
        subscription: Subscription,
        notification: PaymentNotification,
        moment: datetime,
    ) -> NotificationResult:
        if await self._already_processed(notification):
            return NotificationResult(success=True, message=ALREADY_PROCESSED_MESSAGE)

        if self._transition(subscription, SubscriptionStatus.ACTIVE):
            subscription.updated_at = moment
            await self.repository.update_subscription(subscription)

        invoice = await self._invoice_for(notification.order_id, subscription.id)
        if invoice is not None and invoice.status != InvoiceStatus.PAID:
            invoice.status = InvoiceStatus.PAID
            invoice.paid_at = moment
            invoice.updated_at = moment
            invoice = await self.repository.update_invoice(invoice)

        if not await self._record(
            subscription, invoice, notification, PaymentStatus.SUCCEEDED, moment
        ):
            return NotificationResult(success=True, message=ALREADY_PROCESSED_MESSAGE)
        logger.info(
            "midtrans_payment_settled",
            order_id=notification.order_id,
            subscription_id=subscription.id,
            invoice_id=invoice.id if invoice else None,
        )
        return NotificationResult(success=True, message="Notification processed successfully")

    async def _apply_failure(
        self,
        subscription: Subscription,
        notification: PaymentNotification,
        status: TransactionStatus,
        moment: datetime,
    ) -> NotificationResult:
        if await self._already_processed(notification):
            return NotificationResult(success=True, message=ALREADY_PROCESSED_MESSAGE)

        invoice = await self._invoice_for(notification.order_id, subscription.id)
        # cancel_payment marks the invoice cancelled before the gateway confirms
        cancellation_in_flight = invoice is not None and invoice.status == InvoiceStatus.CANCELLED

        target = SubscriptionStatus.CANCELLED if cancellation_in_flight else SubscriptionStatus.PAST_DUE
        if self._transition(subscription, target):
            if target == SubscriptionStatus.CANCELLED:
                subscription.auto_renew = False
                subscription.cancelled_at = moment
                subscription.cancellation_reason = PAYMENT_CANCELLED_REASON
            subscription.updated_at = moment
            await self.repository.update_subscription(subscription)

        if invoice is not None and invoice.status == InvoiceStatus.PENDING:
            invoice.status = InvoiceStatus.FAILED
            invoice.updated_at = moment
            invoice = await self.repository.update_invoice(invoice)

        payment_status = (
            PaymentStatus.CANCELLED if status == TransactionStatus.CANCEL else PaymentStatus.FAILED
        )
        recorded = await self._record(
            subscription,
            invoice,
            notification,
            payment_status,
            moment,
            failure_reason=f"Payment {status.value}",
        )
        if not recorded:
            return NotificationResult(success=True, message=ALREADY_PROCESSED_MESSAGE)
        logger.info(
            "midtrans_payment_failed",
            order_id=notification.order_id,
            subscription_id=subscription.id,
            transaction_status=status.value,
        )
        return NotificationResult(success=True, message="Notification processed successfully")

    # ------------------------------------------------------------------
    # Scheduled sweeps
    # ------------------------------------------------------------------

    async def process_recurring_billing(self, now: datetime | None = None) -> RecurringBillingResult:
        """Raise renewal invoices for every due subscription.

        One subscription's failure is logged and skipped. A sweep that starts
        while another is still running in this process returns ``skipped``;
        running several scheduler processes concurrently is not supported.
        """
        if self._sweep_lock.locked():
            logger.warning("recurring_billing_skipped", reason="sweep already running")
            return RecurringBillingResult(skipped=True)

        async with self._sweep_lock:
            moment = now or self.now_provider()
            due = await self.repository.list_due_for_billing(moment)
            result = RecurringBillingResult(processed=len(due))

            for subscription in due:
                try:
                    invoice = await self._bill_subscription(subscription, moment)
                    result.invoices_created.append(invoice.id)
                except Exception:
                    logger.exception(
                        "recurring_billing_failed", subscription_id=subscription.id
                    )
                    result.failed_subscription_ids.append(subscription.id)

            logger.info(
                "recurring_billing_completed",
                processed=result.processed,
                invoices_created=len(result.invoices_created),
                failed=len(result.failed_subscription_ids),
            )
            return result

    async def _bill_subscription(self, subscription: Subscription, moment: datetime) -> BillingInvoice:
        plan = await self.repository.get_plan(subscription.plan_id)
        if plan is None:
            raise PlanNotFound(f"Subscription plan {subscription.plan_id} not found")

        # The invoice number is keyed on the cycle's billing date, so a sweep
        # retried after a failed date update finds the invoice it already raised.
        cycle_date = subscription.next_billing_date
        number = invoice_number(subscription.id, cycle_date)
        invoice = await self.repository.get_invoice_by_number(number)
        if invoice is None:
            invoice = await self.repository.insert_invoice(
                BillingInvoice(
                    id=str(uuid.uuid4()),
                    user_id=subscription.user_id,
                    subscription_id=subscription.id,
                    invoice_number=number,
                    amount=plan.price,
                    currency=self.config.currency,
                    status=InvoiceStatus.PENDING,
                    due_date=moment + timedelta(days=self.config.invoice_due_days),
                    created_at=moment,
                )
            )
        else:
            logger.info(
                "billing_invoice_reused",
                subscription_id=subscription.id,
                invoice_id=invoice.id,
                invoice_number=number,
            )

        # Advance from the previous billing date, not from now, to avoid drift.
        next_billing = advance_billing_cycle(cycle_date, plan.billing_cycle)
        subscription.next_billing_date = next_billing
        subscription.end_date = next_billing
        subscription.updated_at = moment
        await self.repository.update_subscription(subscription)

        logger.info(
            "billing_invoice_created",
            subscription_id=subscription.id,
            invoice_id=invoice.id,
            amount=invoice.amount,
            next_billing_date=next_billing.isoformat(),
        )
        return invoice

    async def reset_usage_counters(self, now: datetime | None = None) -> int:
        return await self.ledger.reset_due_counters(now or self.now_provider())

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def list_invoices(self, user_id: str, limit: int = 10, offset: int = 0) -> list[BillingInvoice]:
        return await self.repository.list_invoices(user_id, limit, offset)

    async def list_payments(self, user_id: str, limit: int = 10, offset: int = 0) -> list[BillingPayment]:
        return await self.repository.list_payments(user_id, limit, offset)
