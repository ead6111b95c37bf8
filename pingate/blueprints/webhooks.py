"""
Webhooks Blueprint - payment notifications from the configured Lightning backend.

Deliveries are authenticated before their payload is used. Duplicate and
unknown invoices are acknowledged with 200 so backends stop retrying.
"""

import logging

from flask import Blueprint, jsonify, request

from pingate.audit_logger import get_audit_logger
from pingate.database import session_scope
from pingate.errors import NotFound, ServiceUnavailable, Unauthorized
from pingate.metrics import webhook_deliveries_total
from pingate.services import get_services

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__)


@webhooks_bp.route("/<provider_name>", methods=["POST"])
def receive(provider_name: str):
    services = get_services()
    provider = services.provider
    if provider_name != provider.name:
        raise NotFound(f"No webhook endpoint for {provider_name}")

    try:
        event = provider.parse_webhook(request.headers, request.get_data(cache=True), request.form)
    except (Unauthorized, ServiceUnavailable) as e:
        get_audit_logger().log_webhook_rejected(provider_name, e.message, request.remote_addr)
        webhook_deliveries_total.labels(provider_name, "rejected").inc()
        raise

    if not event.is_paid:
        logger.info(f"[{provider_name} webhook] {event.invoice_id} is {event.status}, not processing")
        webhook_deliveries_total.labels(provider_name, "ignored").inc()
        return jsonify({"success": True, "message": f"Status {event.status} acknowledged"})

    with session_scope() as session:
        result = services.ledger.apply_payment_effects(session, event.invoice_id, source=f"webhook:{provider_name}")

    webhook_deliveries_total.labels(provider_name, "applied" if result.success else "noop").inc()
    if result.success:
        return jsonify({"success": True, "message": f"Payment processed: {result.purpose}", "purpose": result.purpose})
    return jsonify({"success": True, "message": result.reason})
