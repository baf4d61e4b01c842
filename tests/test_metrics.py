"""
Tests for CloudWatch metrics utilities module.

The autouse mock_cloudwatch fixture replaces the client with a MagicMock;
one test runs against moto to check the real call shape.
"""

import boto3
from moto import mock_aws

from billing.metrics import (
    NAMESPACE,
    emit_checkout_metric,
    emit_compensation_metric,
    emit_metric,
    emit_webhook_metric,
)


def _emitted(client):
    return [call.kwargs["MetricData"][0] for call in client.put_metric_data.call_args_list]


class TestEmitMetric:
    def test_emits_count_metric(self, mock_cloudwatch):
        emit_metric("TestMetric")

        kwargs = mock_cloudwatch.put_metric_data.call_args.kwargs
        assert kwargs["Namespace"] == NAMESPACE
        metric = kwargs["MetricData"][0]
        assert metric["MetricName"] == "TestMetric"
        assert metric["Value"] == 1.0
        assert metric["Unit"] == "Count"
        assert "Dimensions" not in metric

    def test_emits_dimensions(self, mock_cloudwatch):
        emit_metric("Latency", value=2.5, unit="Seconds", dimensions={"Handler": "checkout"})

        metric = _emitted(mock_cloudwatch)[0]
        assert metric["Value"] == 2.5
        assert metric["Dimensions"] == [{"Name": "Handler", "Value": "checkout"}]

    def test_failures_are_swallowed(self, mock_cloudwatch):
        """Metric failures never fail a request."""
        mock_cloudwatch.put_metric_data.side_effect = Exception("CloudWatch down")

        emit_metric("TestMetric")

    def test_against_moto(self, monkeypatch):
        with mock_aws():
            client = boto3.client("cloudwatch", region_name="us-east-1")
            monkeypatch.setattr("billing.metrics.get_cloudwatch", lambda: client)

            emit_metric("RealCall", dimensions={"Saga": "checkout"})

            metrics = client.list_metrics(Namespace=NAMESPACE)["Metrics"]
            assert [m["MetricName"] for m in metrics] == ["RealCall"]


class TestBillingMetrics:
    def test_webhook_metric(self, mock_cloudwatch):
        emit_webhook_metric("invoice.payment_failed", "noop")

        metric = _emitted(mock_cloudwatch)[0]
        assert metric["MetricName"] == "WebhookEvents"
        assert metric["Dimensions"] == [
            {"Name": "EventType", "Value": "invoice.payment_failed"},
            {"Name": "Outcome", "Value": "noop"},
        ]

    def test_webhook_metric_without_type(self, mock_cloudwatch):
        emit_webhook_metric(None, "invalid")

        assert {"Name": "EventType", "Value": "unknown"} in _emitted(mock_cloudwatch)[0]["Dimensions"]

    def test_checkout_metric(self, mock_cloudwatch):
        emit_checkout_metric("created")

        metric = _emitted(mock_cloudwatch)[0]
        assert metric["MetricName"] == "CheckoutProvisioned"
        assert metric["Dimensions"] == [{"Name": "Action", "Value": "created"}]

    def test_compensation_metric_counts_failed_steps(self, mock_cloudwatch):
        emit_compensation_metric("checkout", failed_steps=2)

        metrics = _emitted(mock_cloudwatch)
        assert [m["MetricName"] for m in metrics] == ["SagaCompensations", "SagaCompensationFailures"]
        assert metrics[1]["Value"] == 2.0

    def test_compensation_metric_without_failures(self, mock_cloudwatch):
        emit_compensation_metric("provision", failed_steps=0)

        assert [m["MetricName"] for m in _emitted(mock_cloudwatch)] == ["SagaCompensations"]
