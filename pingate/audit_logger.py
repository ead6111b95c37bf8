"""
Audit logging for PinGate.

Security-relevant events (credential rejections, webhook signature failures,
settlements, wallet authentications) go to a dedicated ``audit`` logger as
one JSON object per line.
"""

import json
import logging
from typing import Any, Dict, Optional

from pingate.models import utc_now

_logger = logging.getLogger("audit")
_audit_logger = None  # Will be initialized by init_audit_logger


def init_audit_logger():
    """Initialize the audit logger."""
    global _audit_logger

    _logger.setLevel(logging.INFO)

    if not _logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s - AUDIT - %(levelname)s - %(message)s"))
        _logger.addHandler(handler)

    _audit_logger = AuditLogger()
    _logger.info("Audit logger initialized")


def get_audit_logger():
    """Get the audit logger instance."""
    global _audit_logger

    if _audit_logger is None:
        init_audit_logger()
    return _audit_logger


class AuditLogger:
    """
    Audit logging interface for security events.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or _logger

    def log_event(self, event: str, **details: Any) -> None:
        """Generic structured audit event."""

        payload = {"event": event, **details, "timestamp": utc_now().isoformat()}
        self.logger.info(json.dumps(payload, default=str))

    def log_presence_rejected(self, reason: str, ip_address: Optional[str] = None):
        self.logger.warning(f"PRESENCE_REJECTED | reason={reason} | ip={ip_address}")

    def log_webhook_rejected(self, provider: str, reason: str, ip_address: Optional[str] = None):
        """Log a webhook delivery that failed authentication."""
        self.logger.warning(f"WEBHOOK_REJECTED | provider={provider} | reason={reason} | ip={ip_address}")

    def log_settlement(self, invoice_id: str, purpose: Optional[str], applied: bool, source: str):
        """Log a settlement attempt; ``applied`` is False for duplicate or unknown invoices."""
        status = "APPLIED" if applied else "NOOP"
        self.logger.info(f"SETTLEMENT | invoice={invoice_id} | purpose={purpose} | status={status} | source={source}")

    def log_signature_verification(self, pubkey: str, success: bool, signature_type: str):
        """Log cryptographic signature verification."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"SIG_VERIFY | pubkey={pubkey[:16]}... | type={signature_type} | status={status}")

    def log_identity_unlinked(self, identity_id: str, device_session_id: str):
        self.logger.info(f"IDENTITY_UNLINKED | identity={identity_id} | device={device_session_id[:8]}...")

    def log_rate_limit_exceeded(self, ip_address: str, endpoint: str):
        self.logger.warning(f"RATE_LIMIT_EXCEEDED | ip={ip_address} | endpoint={endpoint}")

    def log_error(self, error_type: str, error_msg: str, context: Optional[Dict[str, Any]] = None):
        """Log application error."""
        msg = f"ERROR | type={error_type} | msg={error_msg}"
        if context:
            msg += f" | context={context}"
        self.logger.error(msg)
