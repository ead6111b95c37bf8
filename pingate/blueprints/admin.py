"""
Admin Blueprint - Health Checks and Metrics
"""

import logging
import time
from typing import Any, Dict

from flask import Blueprint, Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from pingate.database import get_health_status
from pingate.metrics import registry
from pingate.services import get_services

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__)


@admin_bp.route("/health")
def health():
    """
    Health check endpoint.

    Returns:
        JSON health status; 503 when the database is unreachable
    """
    services = get_services()
    components = get_health_status()
    health_status: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": time.time(),
        "service": services.config["APP_NAME"],
        "version": services.config["APP_VERSION"],
        "lightning_provider": services.provider.name,
        "components": components,
    }

    if components["database"]["status"] != "healthy":
        health_status["status"] = "unhealthy"
        return jsonify(health_status), 503
    if components["redis"]["status"] == "unhealthy":
        health_status["status"] = "degraded"
    return jsonify(health_status)


@admin_bp.route("/metrics")
def metrics():
    """Prometheus scrape endpoint."""
    return Response(generate_latest(registry), content_type=CONTENT_TYPE_LATEST)
