"""
DynamoDB helpers shared by the subscription store and the event ledger.
"""

import logging
from typing import Any, Callable

from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from .constants import THROTTLING_ERRORS
from .errors import StorageError
from .retry import RetryConfig, retry_call

logger = logging.getLogger(__name__)

CONDITION_FAILED = "ConditionalCheckFailedException"
TRANSACTION_CANCELED = "TransactionCanceledException"

_serializer = TypeSerializer()


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def is_throttling_error(error: Exception) -> bool:
    return isinstance(error, ClientError) and error_code(error) in THROTTLING_ERRORS


DYNAMODB_RETRY_CONFIG = RetryConfig(
    max_retries=3,
    base_delay=0.1,
    max_delay=2.0,
    jitter_factor=0.2,
    retryable_exceptions=(ClientError,),
    should_retry=is_throttling_error,
)


def compact(item: dict) -> dict:
    """Drop None values (nested maps included); absent attributes mean null."""
    result = {}
    for key, value in item.items():
        if value is None:
            continue
        if isinstance(value, dict):
            value = compact(value)
        result[key] = value
    return result


def serialize(item: dict) -> dict:
    """Serialize a plain item to the low-level typed format used by transactions."""
    return {key: _serializer.serialize(value) for key, value in compact(item).items()}


def build_update(changes: dict) -> tuple[str, dict, dict]:
    """
    Build an UpdateExpression from a field -> value mapping.

    None values REMOVE the attribute so nullable fields stay absent.

    Returns:
        (update_expression, expression_attribute_names, expression_attribute_values)
    """
    set_parts = []
    remove_parts = []
    names = {}
    values = {}
    for index, (field_name, value) in enumerate(changes.items()):
        name_ref = f"#f{index}"
        names[name_ref] = field_name
        if value is None:
            remove_parts.append(name_ref)
        else:
            value_ref = f":v{index}"
            set_parts.append(f"{name_ref} = {value_ref}")
            values[value_ref] = compact(value) if isinstance(value, dict) else value

    expression = []
    if set_parts:
        expression.append("SET " + ", ".join(set_parts))
    if remove_parts:
        expression.append("REMOVE " + ", ".join(remove_parts))
    return " ".join(expression), names, values


def execute(operation: str, func: Callable[..., Any], **kwargs) -> Any:
    """
    Run a DynamoDB call with throttling retry.

    Conditional-check and transaction-cancel failures are re-raised as-is so
    callers can interpret them; every other failure becomes a StorageError.
    """
    try:
        return retry_call(func, config=DYNAMODB_RETRY_CONFIG, **kwargs)
    except ClientError as e:
        code = error_code(e)
        if code in (CONDITION_FAILED, TRANSACTION_CANCELED):
            raise
        logger.error(f"DynamoDB {operation} failed: {e}")
        raise StorageError(f"Storage unavailable during {operation}") from e
    except BotoCoreError as e:
        logger.error(f"DynamoDB {operation} failed: {e}")
        raise StorageError(f"Storage unavailable during {operation}") from e
