"""
Merchant Blueprint - claim a merchant location by paying a Lightning invoice.
"""

import logging

from flask import Blueprint, jsonify, request

from pingate import merchant
from pingate.blueprints import json_body
from pingate.database import session_scope
from pingate.errors import ValidationError
from pingate.security import INVOICE_RATE_LIMIT, limiter
from pingate.services import get_services

logger = logging.getLogger(__name__)

merchant_bp = Blueprint("merchant", __name__)


@merchant_bp.route("/claim", methods=["POST"])
@limiter.limit(INVOICE_RATE_LIMIT)
def create_claim():
    """
    Body:
        location_id, device_session_id: required
        claim_code: optional, generated when absent
    """
    body = json_body()
    location_id = body.get("location_id")
    device_session_id = body.get("device_session_id")
    if not location_id or not device_session_id:
        raise ValidationError("Missing location_id or device_session_id")

    with session_scope() as session:
        invoice = get_services().ledger.create_purpose_invoice(
            session,
            "merchant_claim",
            device_session_id=device_session_id,
            location_id=location_id,
            claim_code=body.get("claim_code"),
        )
    return jsonify(invoice), 201


@merchant_bp.route("/claim", methods=["GET"])
def claim_status():
    location_id = request.args.get("location_id")
    if not location_id:
        raise ValidationError("location_id is required")

    with session_scope() as session:
        claim = merchant.get_location_claim(session, location_id)
        payload = {
            "location_id": location_id,
            "claimed": claim is not None,
            "claimed_at": claim.claimed_at.isoformat() if claim and claim.claimed_at else None,
        }
    return jsonify(payload)
