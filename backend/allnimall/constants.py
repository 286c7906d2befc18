"""
Business constants for the Allnimall billing core.

These values are stable across environments (dev/staging/prod) and do not
need env-var overrides. For operational parameters that vary per environment
(currency, due days, cache TTL), see config.py.
"""

from allnimall.models.billing import LimitDimension
from allnimall.models.usage import KnownFeature

API_TITLE = "Allnimall Billing API"
API_VERSION = "1.0.0"
SERVICE_NAME = "allnimall-billing"

# --- Gateway identifiers ---
# Order ids are SUB-{subscriptionId}-{unixMillis}; invoices INV-{subscriptionId}-{unixMillis}
ORDER_ID_PREFIX = "SUB"
INVOICE_NUMBER_PREFIX = "INV"
PAYMENT_METHOD_MIDTRANS = "midtrans"

# --- REST endpoint → gated feature ---
ENDPOINT_FEATURES: dict[str, str] = {
    "/api/products": KnownFeature.PRODUCT_MANAGEMENT.value,
    "/api/stores": KnownFeature.STORE_MANAGEMENT.value,
    "/api/users": KnownFeature.USER_MANAGEMENT.value,
    "/api/customers": KnownFeature.CUSTOMER_MANAGEMENT.value,
    "/api/sales": KnownFeature.SALES_MANAGEMENT.value,
    "/api/reports": KnownFeature.REPORTING.value,
    "/api/inventory": KnownFeature.INVENTORY_MANAGEMENT.value,
}

METHOD_ACTIONS: dict[str, str] = {
    "GET": "read",
    "POST": "create",
    "PUT": "update",
    "PATCH": "update",
    "DELETE": "delete",
}

# --- Usage warning thresholds (fraction of limit consumed) ---
USAGE_WARNING_THRESHOLDS = {
    "low": 0.70,
    "medium": 0.85,
    "high": 0.95,
}

# --- Plan limit dimension → usage ledger feature counting it ---
DIMENSION_FEATURES: dict[str, str] = {
    LimitDimension.STORES.value: KnownFeature.STORE_MANAGEMENT.value,
    LimitDimension.USERS.value: KnownFeature.USER_MANAGEMENT.value,
    LimitDimension.PRODUCTS.value: KnownFeature.PRODUCT_MANAGEMENT.value,
    LimitDimension.CUSTOMERS.value: KnownFeature.CUSTOMER_MANAGEMENT.value,
}
