"""
Runtime configuration for the billing functions.

Table names and feature settings come from the Lambda environment. Secrets
(Stripe API key, Stripe webhook secret, Supabase anon key) come from Secrets
Manager, cached per execution environment with a TTL.
"""

import json
import logging
import os
import time
from typing import Optional

from botocore.exceptions import ClientError

from .aws_clients import get_secretsmanager
from .constants import DEFAULT_MAX_EVENT_AGE_SECONDS

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_TABLE = os.environ.get("SUBSCRIPTIONS_TABLE", "billing-subscriptions")
PROCESSED_EVENTS_TABLE = os.environ.get("PROCESSED_EVENTS_TABLE", "billing-processed-events")

STRIPE_SECRET_ARN = os.environ.get("STRIPE_SECRET_ARN")
STRIPE_WEBHOOK_SECRET_ARN = os.environ.get("STRIPE_WEBHOOK_SECRET_ARN")
SUPABASE_ANON_KEY_ARN = os.environ.get("SUPABASE_ANON_KEY_ARN")
SUPABASE_URL = os.environ.get("SUPABASE_URL", "")

# Use `or` to handle empty string env vars (CDK fallback sets "" when not configured)
LEDGER_RETENTION_DAYS = int(os.environ.get("LEDGER_RETENTION_DAYS") or "0")
WEBHOOK_MAX_EVENT_AGE_SECONDS = int(
    os.environ.get("WEBHOOK_MAX_EVENT_AGE_SECONDS") or DEFAULT_MAX_EVENT_AGE_SECONDS
)
ALLOWED_ORIGIN = os.environ.get("ALLOWED_ORIGIN") or "*"
ENVIRONMENT = os.environ.get("ENVIRONMENT", "dev")

SECRETS_CACHE_TTL = 300  # 5 minutes

_secret_cache: dict[str, tuple[str, float]] = {}


def _read_secret(secret_arn: Optional[str], json_field: str) -> Optional[str]:
    """Read a secret that is either a raw string or a JSON object holding `json_field`."""
    if not secret_arn:
        return None

    cached = _secret_cache.get(secret_arn)
    if cached and (time.time() - cached[1]) < SECRETS_CACHE_TTL:
        return cached[0]

    try:
        response = get_secretsmanager().get_secret_value(SecretId=secret_arn)
    except ClientError as e:
        logger.error(f"Failed to retrieve secret {json_field}: {e}")
        return None

    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
        value = secret_json.get(json_field) if isinstance(secret_json, dict) else None
        value = value or secret_value
    except json.JSONDecodeError:
        value = secret_value

    _secret_cache[secret_arn] = (value, time.time())
    return value


def get_stripe_api_key() -> Optional[str]:
    """Stripe secret API key."""
    return os.environ.get("STRIPE_API_KEY") or _read_secret(STRIPE_SECRET_ARN, "key")


def get_stripe_webhook_secret() -> Optional[str]:
    """Shared secret used to verify Stripe webhook signatures."""
    return os.environ.get("STRIPE_WEBHOOK_SECRET") or _read_secret(
        STRIPE_WEBHOOK_SECRET_ARN, "secret"
    )


def get_supabase_anon_key() -> Optional[str]:
    """Supabase anon key sent with user-directory requests."""
    return os.environ.get("SUPABASE_ANON_KEY") or _read_secret(SUPABASE_ANON_KEY_ARN, "key")


def clear_secret_cache() -> None:
    """Drop cached secrets. Used in tests."""
    _secret_cache.clear()
