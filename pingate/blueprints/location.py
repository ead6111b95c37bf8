"""
Location Blueprint - resolve coordinates to a board and mint a presence token.
"""

import logging

from flask import Blueprint, jsonify

from pingate.blueprints import json_body
from pingate.database import session_scope
from pingate.errors import Unauthorized
from pingate.models import DeviceSession
from pingate.services import get_services

logger = logging.getLogger(__name__)

location_bp = Blueprint("location", __name__)


@location_bp.route("/resolve-location", methods=["POST"])
def resolve_location():
    """
    Resolve the caller's position.

    Body:
        lat, lng, accuracy_m: the device's fix
        device_session_id: optional; a new session is started when absent

    Returns:
        The matched location and a presence token, or ``location: null``
        when there is no board nearby
    """
    services = get_services()
    body = json_body()
    lat, lng, accuracy_m = body.get("lat"), body.get("lng"), body.get("accuracy_m")
    services.resolver.validate(lat, lng, accuracy_m)

    with session_scope() as session:
        device_session_id = body.get("device_session_id")
        if device_session_id:
            if session.get(DeviceSession, device_session_id) is None:
                raise Unauthorized("Invalid session")
        else:
            device = DeviceSession()
            session.add(device)
            session.flush()
            device_session_id = device.id

        location = services.resolver.resolve(session, lat, lng, accuracy_m)

    if location is None:
        return jsonify(
            {
                "location": None,
                "device_session_id": device_session_id,
                "message": "No board here yet. Move closer to a PinGate location or request a new one.",
            }
        )

    token = services.presence.issue(device_session_id, location.id, location.slug, accuracy_m)
    return jsonify(
        {
            "location": {
                "id": location.id,
                "slug": location.slug,
                "name": location.name,
                "lat": location.lat,
                "lng": location.lng,
                "radius_m": location.radius_m,
            },
            "distance_m": round(location.distance_m, 1),
            "device_session_id": device_session_id,
            "presence_token": token,
            "expires_in_s": services.presence.ttl_ms // 1000,
        }
    )
