"""
LNURL-Auth Blueprint - Lightning wallet login.

Wallet-facing replies follow LUD-04: always HTTP 200 with
``{"status": "OK"}`` or ``{"status": "ERROR", "reason": ...}``.
"""

import logging

from flask import Blueprint, jsonify, request

from pingate.blueprints import device_session_param, json_body
from pingate.database import session_scope
from pingate.errors import PinGateError, ValidationError
from pingate.lnurl import identity_to_dict
from pingate.security import LNURL_RATE_LIMIT, limiter
from pingate.services import get_services

logger = logging.getLogger(__name__)

lnurl_bp = Blueprint("lnurl", __name__)


@lnurl_bp.route("/challenge", methods=["POST"])
@limiter.limit(LNURL_RATE_LIMIT)
def create_challenge():
    """
    Create an LNURL-auth challenge for a device session.

    Returns:
        JSON with k1, the bech32 lnurl, the callback URL and expires_at
    """
    device_session_id = json_body().get("device_session_id")
    with session_scope() as session:
        challenge = get_services().lnurl.create_challenge(session, device_session_id)
    return jsonify(challenge), 201


@lnurl_bp.route("/callback", methods=["GET"])
@limiter.limit(LNURL_RATE_LIMIT)
def lnurl_callback():
    """
    Wallet callback.

    Query parameters:
        - k1: Challenge
        - sig: DER signature over k1 (hex)
        - key: Linking public key (hex)

    Without ``sig`` and ``key`` this answers the LUD-04 discovery request.
    """
    service = get_services().lnurl
    k1 = request.args.get("k1")
    sig = request.args.get("sig")
    key = request.args.get("key")

    if not service.enabled:
        return jsonify({"status": "ERROR", "reason": "LNURL-auth feature is not enabled"})
    tag = request.args.get("tag")
    if tag is not None and tag != "login":
        return jsonify({"status": "ERROR", "reason": "Invalid tag parameter"})
    if not k1:
        return jsonify({"status": "ERROR", "reason": "Missing k1"})
    if not sig and not key:
        return jsonify({"tag": "login", "k1": k1, "callback": service.callback_url(k1), "action": "login"})

    try:
        with session_scope() as session:
            identity = service.verify(session, k1, sig, key)
            nym = identity.anon_nym
    except PinGateError as e:
        logger.info(f"LNURL-auth callback rejected: {e.message}")
        return jsonify({"status": "ERROR", "reason": e.message})

    logger.info(f"LNURL-auth login as {nym}")
    return jsonify({"status": "OK"})


@lnurl_bp.route("/status", methods=["GET"])
@limiter.limit("60 per minute")
def challenge_status():
    k1 = request.args.get("k1")
    if not k1:
        raise ValidationError("k1 is required")
    with session_scope() as session:
        status = get_services().lnurl.get_challenge_status(session, k1)
    return jsonify(status)


@lnurl_bp.route("/profile", methods=["GET"])
def get_profile():
    device_session_id = device_session_param()
    service = get_services().lnurl
    service.require_enabled()
    with session_scope() as session:
        identity = service.get_identity(session, device_session_id)
        profile = identity_to_dict(identity) if identity else None
    return jsonify({"linked": profile is not None, "identity": profile})


@lnurl_bp.route("/profile", methods=["PATCH"])
@limiter.limit(LNURL_RATE_LIMIT)
def update_profile():
    """Body: ``device_session_id`` and ``display_name`` (null to clear)."""
    body = json_body()
    device_session_id = device_session_param()
    if "display_name" not in body:
        raise ValidationError("display_name is required")

    with session_scope() as session:
        identity = get_services().lnurl.update_display_name(session, device_session_id, body["display_name"])
        profile = identity_to_dict(identity)
    return jsonify({"success": True, "identity": profile})


@lnurl_bp.route("/profile", methods=["DELETE"])
def unlink_profile():
    device_session_id = device_session_param()
    with session_scope() as session:
        unlinked = get_services().lnurl.unlink_identity(session, device_session_id)
    return jsonify({"success": True, "unlinked": unlinked})
