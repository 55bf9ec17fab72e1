"""Shared utility modules.

This package provides:
- Structured logging with correlation IDs and secret redaction
- Sanitization of credentials and contact details
- An aiohttp client with retry and circuit breaker for gateway channels
"""

from notification_router.utils.logging import (
    clear_correlation_id,
    configure_logging,
    correlation_scope,
    get_correlation_id,
    get_logger,
    log_with_context,
    set_correlation_id,
)
from notification_router.utils.sanitization import (
    REDACTED,
    mask_email,
    mask_phone_number,
    sanitize_exception,
    sanitize_mapping,
    sanitize_url,
    sanitize_value,
)

__all__ = [
    # Logging
    "clear_correlation_id",
    "configure_logging",
    "correlation_scope",
    "get_correlation_id",
    "get_logger",
    "log_with_context",
    "set_correlation_id",
    # Sanitization
    "REDACTED",
    "mask_email",
    "mask_phone_number",
    "sanitize_exception",
    "sanitize_mapping",
    "sanitize_url",
    "sanitize_value",
]
