"""
Structured logging configuration with sensitive data scrubbing.
"""
import logging
import re
import sys
from datetime import datetime, timezone
import json
from typing import Optional

from collabdesk.core.config import settings

# Patterns that should be redacted from log output
_SENSITIVE_PATTERNS = re.compile(
    r'(password|secret|token|otp|api_key|apikey|authorization|credential)'
    r'[\"\']?\s*[:=]\s*[\"\']?[^\s,;\"\'}{]+',
    re.IGNORECASE,
)

# Reply link ids are bearer credentials; they show up in request paths
_REPLY_LINK_PATH = re.compile(r"(/brand-response/(?:debug/)?)[0-9a-fA-F-]{8,}")

_SENSITIVE_KEYS = frozenset({
    "password", "secret", "secret_key", "api_key", "apikey", "token",
    "access_token", "reply_token", "otp", "otp_code", "authorization",
    "credential", "ip_address",
})

# Extra attributes copied from LogRecord into the JSON payload when present
_CONTEXT_FIELDS = ("deal_id", "action", "reason", "signer_role", "entity_type", "entity_id")


def _scrub_value(obj):
    """Recursively redact sensitive keys from dicts."""
    if isinstance(obj, dict):
        return {
            k: "***REDACTED***" if k.lower() in _SENSITIVE_KEYS else _scrub_value(v)
            for k, v in obj.items()
        }
    if isinstance(obj, list):
        return [_scrub_value(i) for i in obj]
    return obj


def _scrub_message(message: str) -> str:
    """Redact sensitive values from log messages."""
    message = _REPLY_LINK_PATH.sub(r"\1***REDACTED***", message)
    return _SENSITIVE_PATTERNS.sub(r'\1=***REDACTED***', message)


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter with sensitive data scrubbing."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": _scrub_message(record.getMessage()),
        }

        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = _scrub_message(self.formatException(record.exc_info))

        return json.dumps(log_entry)


def setup_logging():
    """Configure application logging."""
    root_logger = logging.getLogger()

    # Prevent duplicate handlers on repeated calls
    if root_logger.handlers:
        return

    root_logger.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(console_handler)

    # Suppress noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("rq.worker").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)


class SecurityEventLogger:
    """
    Server-side record of rejected link and signing attempts.

    Public responses are deliberately neutral; the concrete reason only
    ever lands here.
    """

    def __init__(self):
        self.logger = get_logger("security")

    def log(
        self,
        action: str,
        reason: str,
        deal_id: Optional[str] = None,
        signer_role: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        """Log a security-relevant event."""
        extra = {
            "action": action,
            "reason": reason,
            "deal_id": deal_id,
            "signer_role": signer_role,
        }

        message = f"SECURITY: {action} rejected ({reason})"
        if deal_id:
            message += f" on deal:{deal_id}"
        if details:
            scrubbed = _scrub_value(details)
            message += f" - {json.dumps(scrubbed, default=str)}"

        self.logger.warning(message, extra=extra)


security_logger = SecurityEventLogger()
