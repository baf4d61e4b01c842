"""
Shared constants for the billing functions.
"""

# Subscription table sort keys
SUBSCRIPTION_SK = "SUBSCRIPTION"
CUSTOMER_SK = "CUSTOMER"
CUSTOMER_PK_PREFIX = "CUSTOMER#"

# Processor event types the reducer understands
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

RELEVANT_EVENT_TYPES = (
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED,
    INVOICE_PAYMENT_SUCCEEDED,
    INVOICE_PAYMENT_FAILED,
)

# Webhook events older than this (measured from the signed `created`) are rejected
DEFAULT_MAX_EVENT_AGE_SECONDS = 24 * 60 * 60

# Provisioning actions
ACTION_EXISTING = "existing"
ACTION_UPDATED = "updated"
ACTION_CREATED = "created"

# Reducer outcomes
STATUS_SUCCESS = "success"
STATUS_NOOP = "noop"

# Processor lookups
OPEN_SESSION_LOOKUP_LIMIT = 10
BILLING_HISTORY_LIMIT = 100
PRODUCT_LIST_LIMIT = 50

# In-process duplicate cache size (per execution environment)
PROCESSED_EVENT_CACHE_SIZE = 1000

# DynamoDB throttling error codes that should trigger retry
THROTTLING_ERRORS = (
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
    "InternalServerError",
)
