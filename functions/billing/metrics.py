"""
CloudWatch Metrics Helper

Custom metrics for webhook outcomes, checkout provisioning and saga
compensation. Metric failures never fail a request.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Dict, Optional

from .aws_clients import get_cloudwatch

logger = logging.getLogger(__name__)

NAMESPACE = os.environ.get("CLOUDWATCH_NAMESPACE", "SubscriptionBilling")


def emit_metric(
    metric_name: str,
    value: float = 1.0,
    unit: str = "Count",
    dimensions: Optional[Dict[str, str]] = None,
) -> None:
    """
    Emit a custom metric to CloudWatch.

    Args:
        metric_name: Name of the metric
        value: Metric value (default: 1.0)
        unit: Unit of measurement (Count, Seconds, Bytes, etc.)
        dimensions: Optional dimensions for filtering metrics
    """
    try:
        metric_data = {
            "MetricName": metric_name,
            "Value": value,
            "Unit": unit,
            "Timestamp": datetime.now(timezone.utc),
        }

        if dimensions:
            metric_data["Dimensions"] = [
                {"Name": k, "Value": v} for k, v in dimensions.items()
            ]

        get_cloudwatch().put_metric_data(
            Namespace=NAMESPACE,
            MetricData=[metric_data],
        )

        logger.debug(
            f"Emitted metric: {metric_name}={value} {unit}",
            extra={"dimensions": dimensions},
        )

    except Exception as e:
        # Don't fail the Lambda if metrics fail
        logger.warning(f"Failed to emit metric {metric_name}: {e}")


def emit_webhook_metric(event_type: str, outcome: str) -> None:
    """
    Count one webhook delivery.

    Args:
        event_type: Processor event type
        outcome: 'processed', 'noop', 'duplicate', 'ignored', 'invalid',
            'retry', 'failed'
    """
    emit_metric(
        "WebhookEvents",
        dimensions={"EventType": event_type or "unknown", "Outcome": outcome},
    )


def emit_checkout_metric(action: str) -> None:
    """Count a provisioning outcome ('existing', 'updated', 'created')."""
    emit_metric("CheckoutProvisioned", dimensions={"Action": action})


def emit_compensation_metric(saga: str, failed_steps: int) -> None:
    """Count a saga rollback and any compensation steps that failed."""
    emit_metric("SagaCompensations", dimensions={"Saga": saga})
    if failed_steps:
        emit_metric(
            "SagaCompensationFailures",
            value=float(failed_steps),
            dimensions={"Saga": saga},
        )
