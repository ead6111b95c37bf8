"""
Application Factory for PinGate

Implements the Flask application factory pattern with:
- Blueprint registration
- Security configuration (TLS, security headers, rate limits)
- Database, Redis and payment provider initialization
- JSON error handling
"""

import logging
import secrets
from typing import Optional

from flask import Flask, jsonify, request

from pingate.audit_logger import get_audit_logger, init_audit_logger
from pingate.config import AppConfig, get_config, validate_config
from pingate.database import get_redis, init_all
from pingate.errors import PinGateError, RateLimited
from pingate.payments import LightningProvider
from pingate.security import init_security
from pingate.services import build_services

logger = logging.getLogger(__name__)


def create_app(config_override: Optional[AppConfig] = None, provider: Optional[LightningProvider] = None) -> Flask:
    """
    Create and configure the Flask application using the factory pattern.

    Args:
        config_override: Optional configuration override for testing
        provider: Optional payment provider instance, otherwise built from configuration

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    cfg = config_override or get_config()
    validate_config(cfg)
    app.config["APP_CONFIG"] = cfg
    app.secret_key = cfg["FLASK_SECRET_KEY"] or secrets.token_hex(32)

    init_security(app, cfg)

    try:
        init_all(cfg)
        init_audit_logger()
    except Exception as e:
        logger.error(f"Infrastructure initialization failed: {e}")
        raise

    app.extensions["pingate"] = build_services(cfg, redis_client=get_redis(), provider=provider)

    register_blueprints(app)
    register_error_handlers(app)
    register_request_handlers(app)

    logger.info("Application factory completed successfully")
    return app


def register_blueprints(app: Flask) -> None:
    """Register all application blueprints."""

    from pingate.blueprints.admin import admin_bp
    from pingate.blueprints.invoices import invoices_bp
    from pingate.blueprints.lnurl import lnurl_bp
    from pingate.blueprints.location import location_bp
    from pingate.blueprints.merchant import merchant_bp
    from pingate.blueprints.sponsor import sponsor_bp
    from pingate.blueprints.webhooks import webhooks_bp

    app.register_blueprint(location_bp, url_prefix="/api")
    app.register_blueprint(invoices_bp, url_prefix="/api")
    app.register_blueprint(webhooks_bp, url_prefix="/api/webhooks")
    app.register_blueprint(lnurl_bp, url_prefix="/api/lnurl")
    app.register_blueprint(sponsor_bp, url_prefix="/api/sponsor")
    app.register_blueprint(merchant_bp, url_prefix="/api/merchant")
    app.register_blueprint(admin_bp)

    logger.info("All blueprints registered")


def register_error_handlers(app: Flask) -> None:
    """Register global error handlers."""

    @app.errorhandler(PinGateError)
    def pingate_error(e: PinGateError):
        if e.status_code >= 500:
            logger.error(f"{e.code}: {e.message}")
        response = jsonify(e.to_dict())
        retry_after = e.details.get("retry_after")
        if retry_after is not None:
            response.headers["Retry-After"] = str(retry_after)
        return response, e.status_code

    @app.errorhandler(400)
    def bad_request(e):
        return jsonify({"error": "bad_request", "message": str(e)}), 400

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found", "message": "Resource not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "method_not_allowed", "message": str(e)}), 405

    @app.errorhandler(429)
    def rate_limit_exceeded(e):
        get_audit_logger().log_rate_limit_exceeded(request.remote_addr, request.path)
        # Flask-Limiter attaches the breached limit and adds the Retry-After header itself
        limit = getattr(e, "limit", None)
        retry_after = limit.limit.get_expiry() if limit is not None else 60
        error = RateLimited(f"Rate limit exceeded: {e.description}", retry_after=retry_after)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(500)
    def internal_error(e):
        logger.error(f"Internal server error: {e}", exc_info=True)
        return jsonify({"error": "internal_error", "message": "An unexpected error occurred"}), 500


def register_request_handlers(app: Flask) -> None:
    @app.after_request
    def no_store(response):
        if request.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.teardown_appcontext
    def cleanup(error=None):
        if error:
            logger.error(f"Request cleanup with error: {error}")
