"""
Invoices Blueprint - create purpose invoices, poll them, and spend paid deletions.
"""

import logging

from flask import Blueprint, jsonify

from pingate.blueprints import json_body
from pingate.database import session_scope
from pingate.errors import ValidationError
from pingate.security import INVOICE_RATE_LIMIT, limiter
from pingate.services import get_services

logger = logging.getLogger(__name__)

invoices_bp = Blueprint("invoices", __name__)

PUBLIC_PURPOSES = ("post", "boost", "delete", "sponsor")


@invoices_bp.route("/invoice/<purpose>", methods=["POST"])
@limiter.limit(INVOICE_RATE_LIMIT)
def create_invoice(purpose: str):
    """
    Create an invoice for ``post``, ``boost``, ``delete`` or ``sponsor``.

    Body:
        presence_token: required
        pin_id: boost and delete
        sponsor_label, amount_sats: sponsor
    """
    if purpose not in PUBLIC_PURPOSES:
        raise ValidationError(f"Unknown invoice purpose: {purpose}")
    body = json_body()

    with session_scope() as session:
        invoice = get_services().ledger.create_purpose_invoice(
            session,
            purpose,
            presence_token=body.get("presence_token"),
            pin_id=body.get("pin_id"),
            sponsor_label=body.get("sponsor_label"),
            amount_sats=body.get("amount_sats"),
        )
    return jsonify(invoice), 201


@invoices_bp.route("/invoice/<invoice_id>/status", methods=["GET"])
def invoice_status(invoice_id: str):
    with session_scope() as session:
        status = get_services().ledger.get_invoice_status(session, invoice_id)
    return jsonify(status)


@invoices_bp.route("/invoice/<invoice_id>/simulate-pay", methods=["POST"])
def simulate_pay(invoice_id: str):
    """Development only: settle an invoice without paying it."""
    with session_scope() as session:
        result = get_services().ledger.simulate_payment(session, invoice_id)
    logger.warning(f"Simulated payment for {invoice_id}: {result.as_dict()}")
    return jsonify(result.as_dict())


@invoices_bp.route("/pin/<pin_id>", methods=["DELETE"])
def delete_pin(pin_id: str):
    """
    Delete a pin with a paid deletion invoice.

    Body:
        invoice_id: the paid deletion invoice
        device_session_id: the pin author's session
    """
    body = json_body()
    invoice_id = body.get("invoice_id")
    device_session_id = body.get("device_session_id")
    if not invoice_id or not device_session_id:
        raise ValidationError("invoice_id and device_session_id are required")

    with session_scope() as session:
        pin = get_services().ledger.consume_deletion_payment(session, pin_id, invoice_id, device_session_id)
        deleted_at = pin.deleted_at.isoformat()
    return jsonify({"success": True, "pin_id": pin_id, "deleted_at": deleted_at})
