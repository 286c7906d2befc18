"""Midtrans payment gateway client.

Outbound calls use Snap (checkout tokens) and the Core API (status, cancel,
approve) over httpx. Inbound notifications are authenticated with the
gateway's signature scheme:

    sha512(order_id + status_code + gross_amount + server_key)

The concatenation order is part of the Midtrans protocol and must not change.
"""

import hashlib
import hmac
import re
from datetime import datetime
from typing import Any

import httpx
import structlog

from allnimall.config import MidtransConfig
from allnimall.constants import ORDER_ID_PREFIX
from allnimall.exceptions import InvalidSignatureError, PaymentGatewayError
from allnimall.models.billing import BillingCycle, CustomerDetails
from allnimall.models.payments import PaymentNotification

logger = structlog.get_logger(__name__)

# Subscription ids are UUIDs and contain hyphens; the timestamp is the last segment.
_ORDER_ID_PATTERN = re.compile(rf"^{ORDER_ID_PREFIX}-(?P<subscription_id>.+)-(?P<timestamp>\d+)$")


def unix_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def build_order_id(subscription_id: str, moment: datetime) -> str:
    return f"{ORDER_ID_PREFIX}-{subscription_id}-{unix_millis(moment)}"


def parse_order_id(order_id: str) -> tuple[str, int] | None:
    """Split ``SUB-{subscriptionId}-{millis}``; None for any other order shape."""
    match = _ORDER_ID_PATTERN.match(order_id or "")
    if not match:
        return None
    return match.group("subscription_id"), int(match.group("timestamp"))


class MidtransService:
    """Encapsulates Midtrans HTTP calls and notification verification."""

    def __init__(self, config: MidtransConfig, client: httpx.AsyncClient | None = None) -> None:
        if not config.server_key:
            raise ValueError("Midtrans server key is required")

        self.config = config
        self._client = client or httpx.AsyncClient(timeout=config.request_timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    def compute_signature(self, order_id: str, status_code: str, gross_amount: str) -> str:
        payload = f"{order_id}{status_code}{gross_amount}{self.config.server_key}"
        return hashlib.sha512(payload.encode("utf-8")).hexdigest()

    def verify_notification(self, notification: PaymentNotification) -> None:
        """Raise InvalidSignatureError unless the payload was signed with our server key."""
        expected = self.compute_signature(
            notification.order_id,
            notification.status_code,
            notification.gross_amount,
        )
        if not hmac.compare_digest(expected, notification.signature_key or ""):
            raise InvalidSignatureError(f"Invalid signature for order {notification.order_id}")

    async def _request(self, method: str, url: str, payload: dict | None = None) -> dict[str, Any]:
        try:
            response = await self._client.request(
                method,
                url,
                json=payload,
                auth=(self.config.server_key, ""),
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "midtrans_http_error",
                url=url,
                status_code=e.response.status_code,
                body=e.response.text[:500],
            )
            raise PaymentGatewayError(
                f"Midtrans request failed with HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            logger.error("midtrans_transport_error", url=url, error=str(e))
            raise PaymentGatewayError(f"Midtrans request failed: {e}") from e

        body = response.json()
        # Core API reports some failures in the body with HTTP 200.
        status_code = str(body.get("status_code", "200"))
        if status_code == "404" or status_code.startswith("5"):
            raise PaymentGatewayError(
                body.get("status_message") or f"Midtrans returned status {status_code}"
            )
        return body

    async def create_subscription_payment(
        self,
        *,
        order_id: str,
        subscription_id: str,
        amount: float,
        customer: CustomerDetails,
        billing_cycle: BillingCycle,
        now: datetime,
    ) -> dict[str, str]:
        """Request a Snap token for a subscription charge."""
        gross_amount = int(round(amount))
        params = {
            "transaction_details": {"order_id": order_id, "gross_amount": gross_amount},
            "customer_details": customer.model_dump(exclude_none=True),
            "item_details": [
                {
                    "id": subscription_id,
                    "price": gross_amount,
                    "quantity": 1,
                    "name": f"Subscription Payment ({billing_cycle.value})",
                    "category": "subscription",
                }
            ],
            "callbacks": {
                "finish": f"{self.config.app_url}/payment/success",
                "unfinish": f"{self.config.app_url}/payment/unfinish",
                "error": f"{self.config.app_url}/payment/error",
            },
            "expiry": {
                "start_time": now.strftime("%Y-%m-%d %H:%M:%S %z"),
                "unit": "day",
                "duration": self.config.payment_expiry_days,
            },
        }

        body = await self._request(
            "POST", f"{self.config.snap_base_url}/snap/v1/transactions", params
        )
        logger.info("midtrans_payment_created", order_id=order_id, amount=gross_amount)
        return {"token": body["token"], "redirect_url": body["redirect_url"]}

    async def get_transaction_status(self, order_id: str) -> dict[str, Any]:
        return await self._request("GET", f"{self.config.api_base_url}/v2/{order_id}/status")

    async def cancel_transaction(self, order_id: str) -> dict[str, Any]:
        return await self._request("POST", f"{self.config.api_base_url}/v2/{order_id}/cancel")

    async def approve_transaction(self, order_id: str) -> dict[str, Any]:
        """Accept a transaction held for fraud review."""
        return await self._request("POST", f"{self.config.api_base_url}/v2/{order_id}/approve")
