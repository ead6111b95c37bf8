"""Prometheus metrics for settlements and webhook deliveries."""

from prometheus_client import CollectorRegistry, Counter

registry = CollectorRegistry()

settlements_total = Counter(
    "pingate_settlements_total",
    "Settlement attempts by purpose and outcome",
    ["purpose", "outcome"],
    registry=registry,
)

webhook_deliveries_total = Counter(
    "pingate_webhook_deliveries_total",
    "Webhook deliveries by provider and outcome",
    ["provider", "outcome"],
    registry=registry,
)

invoices_created_total = Counter(
    "pingate_invoices_created_total",
    "Invoices created by purpose",
    ["purpose"],
    registry=registry,
)
