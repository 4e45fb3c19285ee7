"""Sentry error tracking configuration."""

import logging
from typing import Optional, Dict, Any

import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = structlog.get_logger(__name__)

SENSITIVE_HEADERS = ("authorization", "cookie", "x-api-key", "anthropic-api-key")
SENSITIVE_KEYS = ("password", "token", "secret", "key", "api_key")


def setup_sentry(
    dsn: Optional[str],
    environment: str = "development",
    release: str = "patent-watch@0.1.0",
    traces_sample_rate: float = 0.1,
) -> bool:
    """Setup Sentry error tracking. Without a DSN tracking stays disabled."""
    if not dsn:
        logger.warning("Sentry DSN not provided, error tracking disabled")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release,
            traces_sample_rate=traces_sample_rate,
            integrations=[
                AsyncioIntegration(),
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR
                ),
            ],
            before_send=filter_sensitive_data,
            send_default_pii=False,
        )
        logger.info("Sentry error tracking initialized", environment=environment)
        return True
    except Exception as e:
        logger.error("Failed to setup Sentry", error=str(e))
        return False


def filter_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Filter credentials from Sentry events."""
    headers = event.get("request", {}).get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in SENSITIVE_HEADERS:
                headers[name] = "[REDACTED]"

    extra = event.get("extra")
    if isinstance(extra, dict):
        for name in list(extra):
            if any(marker in name.lower() for marker in SENSITIVE_KEYS):
                extra[name] = "[REDACTED]"

    return event


def capture_exception(error: Exception, context: Optional[Dict[str, Any]] = None):
    """Capture an exception with additional context."""
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (context or {}).items():
                scope.set_tag(key, str(value))
            sentry_sdk.capture_exception(error)
    except Exception as e:
        logger.error("Failed to capture exception in Sentry", error=str(e))
