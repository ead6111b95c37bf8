"""
Sponsor Blueprint - the sponsorship queue for the caller's current location.
"""

from flask import Blueprint, jsonify, request

from pingate.audit_logger import get_audit_logger
from pingate.database import session_scope
from pingate.errors import Unauthorized, ValidationError
from pingate.services import get_services

sponsor_bp = Blueprint("sponsor", __name__)


@sponsor_bp.route("/queue", methods=["GET"])
def queue():
    services = get_services()
    token = request.args.get("presence_token")
    if not token:
        raise ValidationError("Presence token required")

    check = services.presence.verify(token)
    if not check.valid:
        get_audit_logger().log_presence_rejected(check.reason, request.remote_addr)
        raise Unauthorized(check.message, details={"reason": check.reason})

    with session_scope() as session:
        listing = services.scheduler.list_queue(session, check.payload.location_id)
    return jsonify(listing)
