"""Repositories for plans, subscriptions, invoices and payments."""

from datetime import datetime
from typing import Protocol

from allnimall.config import BillingConfig
from allnimall.exceptions import DuplicateRecordError
from allnimall.models.billing import (
    LIVE_SUBSCRIPTION_STATUSES,
    BillingInvoice,
    BillingPayment,
    BillingTransaction,
    InvoiceStatus,
    Plan,
    PlanChangeRequest,
    Subscription,
    SubscriptionStatus,
)
from allnimall.services.supabase_client import execute, fetch_one, fetch_rows


class BillingRepository(Protocol):
    """Storage contract for subscription and billing state."""

    async def get_plan(self, plan_id: str) -> Plan | None:
        """Fetch an active, non-deleted plan."""

    async def list_active_plans(self, *, order_by: str = "sort_order") -> list[Plan]:
        """Active plans ordered ascending by ``order_by`` (price or sort_order)."""

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        """Fetch a non-deleted subscription by id."""

    async def get_active_subscription(self, user_id: str) -> Subscription | None:
        """Fetch the user's subscription in ``active`` status."""

    async def get_live_subscription(self, user_id: str) -> Subscription | None:
        """Fetch the newest trial/active/past_due subscription."""

    async def get_latest_subscription(self, user_id: str) -> Subscription | None:
        """Fetch the newest subscription regardless of status."""

    async def insert_subscription(self, subscription: Subscription) -> Subscription:
        """Persist a new subscription."""

    async def update_subscription(self, subscription: Subscription) -> Subscription:
        """Persist changes to an existing subscription."""

    async def list_due_for_billing(self, now: datetime) -> list[Subscription]:
        """Active, auto-renewing subscriptions with next_billing_date <= now."""

    async def insert_invoice(self, invoice: BillingInvoice) -> BillingInvoice:
        """Persist a new invoice."""

    async def update_invoice(self, invoice: BillingInvoice) -> BillingInvoice:
        """Persist changes to an invoice."""

    async def get_invoice_by_reference(self, external_reference: str) -> BillingInvoice | None:
        """Fetch the invoice raised for a gateway order id."""

    async def get_invoice_by_number(self, number: str) -> BillingInvoice | None:
        """Fetch an invoice by its invoice number."""

    async def get_latest_pending_invoice(self, subscription_id: str) -> BillingInvoice | None:
        """Fetch the newest pending invoice of a subscription."""

    async def list_invoices(self, user_id: str, limit: int, offset: int) -> list[BillingInvoice]:
        """Invoices of a user, newest first."""

    async def get_payment_by_transaction_id(self, transaction_id: str) -> BillingPayment | None:
        """Fetch a payment by gateway transaction id."""

    async def insert_payment(self, payment: BillingPayment) -> BillingPayment:
        """Append a payment row."""

    async def list_payments(self, user_id: str, limit: int, offset: int) -> list[BillingPayment]:
        """Payments of a user, newest first."""

    async def insert_transaction(self, transaction: BillingTransaction) -> BillingTransaction:
        """Append a billing ledger row."""

    async def insert_plan_change_request(self, request: PlanChangeRequest) -> PlanChangeRequest:
        """Persist a plan change request."""

    async def list_plan_change_requests(self, user_id: str) -> list[PlanChangeRequest]:
        """Plan change requests of a user, newest first."""


def _newest_first(items: list, attribute: str = "created_at") -> list:
    # Rows without a timestamp sort last
    return sorted(
        items,
        key=lambda item: (getattr(item, attribute) is not None, getattr(item, attribute) or 0),
        reverse=True,
    )


class InMemoryBillingRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.plans: dict[str, Plan] = {}
        self.subscriptions: dict[str, Subscription] = {}
        self.invoices: dict[str, BillingInvoice] = {}
        self.payments: dict[str, BillingPayment] = {}
        self.transactions: list[BillingTransaction] = []
        self.plan_change_requests: dict[str, PlanChangeRequest] = {}

    async def get_plan(self, plan_id: str) -> Plan | None:
        plan = self.plans.get(plan_id)
        if plan is None or not plan.is_active or plan.deleted_at is not None:
            return None
        return plan.model_copy(deep=True)

    async def list_active_plans(self, *, order_by: str = "sort_order") -> list[Plan]:
        plans = [
            plan.model_copy(deep=True)
            for plan in self.plans.values()
            if plan.is_active and plan.deleted_at is None
        ]
        return sorted(plans, key=lambda plan: getattr(plan, order_by))

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None or subscription.deleted_at is not None:
            return None
        return subscription.model_copy(deep=True)

    def _user_subscriptions(self, user_id: str) -> list[Subscription]:
        owned = [
            sub
            for sub in self.subscriptions.values()
            if sub.user_id == user_id and sub.deleted_at is None
        ]
        return sorted(owned, key=lambda sub: sub.start_date, reverse=True)

    async def get_active_subscription(self, user_id: str) -> Subscription | None:
        for sub in self._user_subscriptions(user_id):
            if sub.status == SubscriptionStatus.ACTIVE:
                return sub.model_copy(deep=True)
        return None

    async def get_live_subscription(self, user_id: str) -> Subscription | None:
        for sub in self._user_subscriptions(user_id):
            if sub.status in LIVE_SUBSCRIPTION_STATUSES:
                return sub.model_copy(deep=True)
        return None

    async def get_latest_subscription(self, user_id: str) -> Subscription | None:
        owned = self._user_subscriptions(user_id)
        return owned[0].model_copy(deep=True) if owned else None

    async def insert_subscription(self, subscription: Subscription) -> Subscription:
        self.subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return subscription.model_copy(deep=True)

    async def update_subscription(self, subscription: Subscription) -> Subscription:
        self.subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return subscription.model_copy(deep=True)

    async def list_due_for_billing(self, now: datetime) -> list[Subscription]:
        return [
            sub.model_copy(deep=True)
            for sub in self.subscriptions.values()
            if sub.deleted_at is None
            and sub.status == SubscriptionStatus.ACTIVE
            and sub.auto_renew
            and sub.next_billing_date is not None
            and sub.next_billing_date <= now
        ]

    async def insert_invoice(self, invoice: BillingInvoice) -> BillingInvoice:
        self.invoices[invoice.id] = invoice.model_copy(deep=True)
        return invoice.model_copy(deep=True)

    async def update_invoice(self, invoice: BillingInvoice) -> BillingInvoice:
        self.invoices[invoice.id] = invoice.model_copy(deep=True)
        return invoice.model_copy(deep=True)

    async def get_invoice_by_reference(self, external_reference: str) -> BillingInvoice | None:
        for invoice in self.invoices.values():
            if invoice.external_reference == external_reference and invoice.deleted_at is None:
                return invoice.model_copy(deep=True)
        return None

    async def get_invoice_by_number(self, number: str) -> BillingInvoice | None:
        for invoice in self.invoices.values():
            if invoice.invoice_number == number and invoice.deleted_at is None:
                return invoice.model_copy(deep=True)
        return None

    async def get_latest_pending_invoice(self, subscription_id: str) -> BillingInvoice | None:
        pending = [
            invoice
            for invoice in self.invoices.values()
            if invoice.subscription_id == subscription_id
            and invoice.status == InvoiceStatus.PENDING
            and invoice.deleted_at is None
        ]
        pending = _newest_first(pending)
        return pending[0].model_copy(deep=True) if pending else None

    async def list_invoices(self, user_id: str, limit: int, offset: int) -> list[BillingInvoice]:
        owned = [
            invoice
            for invoice in self.invoices.values()
            if invoice.user_id == user_id and invoice.deleted_at is None
        ]
        return [i.model_copy(deep=True) for i in _newest_first(owned)[offset : offset + limit]]

    async def get_payment_by_transaction_id(self, transaction_id: str) -> BillingPayment | None:
        payment = self.payments.get(transaction_id)
        return payment.model_copy(deep=True) if payment else None

    async def insert_payment(self, payment: BillingPayment) -> BillingPayment:
        if payment.external_transaction_id in self.payments:
            raise DuplicateRecordError(
                f"Payment {payment.external_transaction_id} already recorded"
            )
        self.payments[payment.external_transaction_id] = payment.model_copy(deep=True)
        return payment.model_copy(deep=True)

    async def list_payments(self, user_id: str, limit: int, offset: int) -> list[BillingPayment]:
        owned = [p for p in self.payments.values() if p.user_id == user_id]
        return [p.model_copy(deep=True) for p in _newest_first(owned)[offset : offset + limit]]

    async def insert_transaction(self, transaction: BillingTransaction) -> BillingTransaction:
        self.transactions.append(transaction.model_copy(deep=True))
        return transaction

    async def insert_plan_change_request(self, request: PlanChangeRequest) -> PlanChangeRequest:
        self.plan_change_requests[request.id] = request.model_copy(deep=True)
        return request.model_copy(deep=True)

    async def list_plan_change_requests(self, user_id: str) -> list[PlanChangeRequest]:
        owned = [r for r in self.plan_change_requests.values() if r.user_id == user_id]
        return [r.model_copy(deep=True) for r in _newest_first(owned)]


class SupabaseBillingRepository:
    """Supabase-backed repository for subscription and billing state."""

    def __init__(self, client, config: BillingConfig):
        self.client = client
        self.config = config

    def _table(self, name: str):
        return self.client.table(name)

    async def get_plan(self, plan_id: str) -> Plan | None:
        row = await fetch_one(
            self._table(self.config.plans_table)
            .select("*")
            .eq("id", plan_id)
            .eq("is_active", True)
            .is_("deleted_at", "null"),
            operation="plan_get",
        )
        return Plan.model_validate(row) if row else None

    async def list_active_plans(self, *, order_by: str = "sort_order") -> list[Plan]:
        rows = await fetch_rows(
            self._table(self.config.plans_table)
            .select("*")
            .eq("is_active", True)
            .is_("deleted_at", "null")
            .order(order_by),
            operation="plan_list",
        )
        return [Plan.model_validate(row) for row in rows]

    def _subscriptions(self):
        return (
            self._table(self.config.subscriptions_table)
            .select("*")
            .is_("deleted_at", "null")
        )

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        row = await fetch_one(
            self._subscriptions().eq("id", subscription_id),
            operation="subscription_get",
        )
        return Subscription.model_validate(row) if row else None

    async def get_active_subscription(self, user_id: str) -> Subscription | None:
        row = await fetch_one(
            self._subscriptions()
            .eq("user_id", user_id)
            .eq("status", SubscriptionStatus.ACTIVE.value)
            .order("start_date", desc=True),
            operation="subscription_get_active",
        )
        return Subscription.model_validate(row) if row else None

    async def get_live_subscription(self, user_id: str) -> Subscription | None:
        row = await fetch_one(
            self._subscriptions()
            .eq("user_id", user_id)
            .in_("status", [status.value for status in LIVE_SUBSCRIPTION_STATUSES])
            .order("start_date", desc=True),
            operation="subscription_get_live",
        )
        return Subscription.model_validate(row) if row else None

    async def get_latest_subscription(self, user_id: str) -> Subscription | None:
        row = await fetch_one(
            self._subscriptions().eq("user_id", user_id).order("start_date", desc=True),
            operation="subscription_get_latest",
        )
        return Subscription.model_validate(row) if row else None

    async def insert_subscription(self, subscription: Subscription) -> Subscription:
        rows = await fetch_rows(
            self._table(self.config.subscriptions_table).insert(
                subscription.model_dump(mode="json", exclude_none=True)
            ),
            operation="subscription_insert",
        )
        return Subscription.model_validate(rows[0]) if rows else subscription

    async def update_subscription(self, subscription: Subscription) -> Subscription:
        rows = await fetch_rows(
            self._table(self.config.subscriptions_table)
            .update(subscription.model_dump(mode="json", exclude={"id", "created_at"}))
            .eq("id", subscription.id),
            operation="subscription_update",
        )
        return Subscription.model_validate(rows[0]) if rows else subscription

    async def list_due_for_billing(self, now: datetime) -> list[Subscription]:
        rows = await fetch_rows(
            self._subscriptions()
            .eq("status", SubscriptionStatus.ACTIVE.value)
            .eq("auto_renew", True)
            .lte("next_billing_date", now.isoformat()),
            operation="subscription_list_due",
        )
        return [Subscription.model_validate(row) for row in rows]

    async def insert_invoice(self, invoice: BillingInvoice) -> BillingInvoice:
        rows = await fetch_rows(
            self._table(self.config.invoices_table).insert(
                invoice.model_dump(mode="json", exclude_none=True)
            ),
            operation="invoice_insert",
        )
        return BillingInvoice.model_validate(rows[0]) if rows else invoice

    async def update_invoice(self, invoice: BillingInvoice) -> BillingInvoice:
        rows = await fetch_rows(
            self._table(self.config.invoices_table)
            .update(invoice.model_dump(mode="json", exclude={"id", "created_at"}))
            .eq("id", invoice.id),
            operation="invoice_update",
        )
        return BillingInvoice.model_validate(rows[0]) if rows else invoice

    async def get_invoice_by_reference(self, external_reference: str) -> BillingInvoice | None:
        row = await fetch_one(
            self._table(self.config.invoices_table)
            .select("*")
            .eq("external_reference", external_reference)
            .is_("deleted_at", "null"),
            operation="invoice_get_by_reference",
        )
        return BillingInvoice.model_validate(row) if row else None

    async def get_invoice_by_number(self, number: str) -> BillingInvoice | None:
        row = await fetch_one(
            self._table(self.config.invoices_table)
            .select("*")
            .eq("invoice_number", number)
            .is_("deleted_at", "null"),
            operation="invoice_get_by_number",
        )
        return BillingInvoice.model_validate(row) if row else None

    async def get_latest_pending_invoice(self, subscription_id: str) -> BillingInvoice | None:
        row = await fetch_one(
            self._table(self.config.invoices_table)
            .select("*")
            .eq("subscription_id", subscription_id)
            .eq("status", InvoiceStatus.PENDING.value)
            .is_("deleted_at", "null")
            .order("created_at", desc=True),
            operation="invoice_get_pending",
        )
        return BillingInvoice.model_validate(row) if row else None

    async def list_invoices(self, user_id: str, limit: int, offset: int) -> list[BillingInvoice]:
        rows = await fetch_rows(
            self._table(self.config.invoices_table)
            .select("*")
            .eq("user_id", user_id)
            .is_("deleted_at", "null")
            .order("created_at", desc=True)
            .range(offset, offset + limit - 1),
            operation="invoice_list",
        )
        return [BillingInvoice.model_validate(row) for row in rows]

    async def get_payment_by_transaction_id(self, transaction_id: str) -> BillingPayment | None:
        row = await fetch_one(
            self._table(self.config.payments_table)
            .select("*")
            .eq("external_transaction_id", transaction_id),
            operation="payment_get",
        )
        return BillingPayment.model_validate(row) if row else None

    async def insert_payment(self, payment: BillingPayment) -> BillingPayment:
        # Unique index on external_transaction_id (sql/billing_functions.sql);
        # a racing duplicate delivery raises DuplicateRecordError.
        rows = await fetch_rows(
            self._table(self.config.payments_table).insert(
                payment.model_dump(mode="json", exclude_none=True)
            ),
            operation="payment_insert",
        )
        return BillingPayment.model_validate(rows[0]) if rows else payment

    async def list_payments(self, user_id: str, limit: int, offset: int) -> list[BillingPayment]:
        rows = await fetch_rows(
            self._table(self.config.payments_table)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .range(offset, offset + limit - 1),
            operation="payment_list",
        )
        return [BillingPayment.model_validate(row) for row in rows]

    async def insert_transaction(self, transaction: BillingTransaction) -> BillingTransaction:
        await execute(
            self._table(self.config.transactions_table).insert(
                transaction.model_dump(mode="json", exclude_none=True)
            ),
            operation="transaction_insert",
        )
        return transaction

    async def insert_plan_change_request(self, request: PlanChangeRequest) -> PlanChangeRequest:
        rows = await fetch_rows(
            self._table(self.config.plan_change_table).insert(
                request.model_dump(mode="json", exclude_none=True)
            ),
            operation="plan_change_insert",
        )
        return PlanChangeRequest.model_validate(rows[0]) if rows else request

    async def list_plan_change_requests(self, user_id: str) -> list[PlanChangeRequest]:
        rows = await fetch_rows(
            self._table(self.config.plan_change_table)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True),
            operation="plan_change_list",
        )
        return [PlanChangeRequest.model_validate(row) for row in rows]
