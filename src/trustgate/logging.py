"""
Logging helpers for the gateway.

Every module logs through ``logging.getLogger(__name__)`` under the
``trustgate`` namespace. Session tokens are bearer credentials and must only
ever be logged through :func:`token_preview`.
"""

import logging
from typing import Optional, Union

_gateway_logger = logging.getLogger("trustgate")

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Characters kept at each end of a token preview
_TOKEN_PREVIEW_LENGTH = 6


def configure_logging(
    level: Union[int, str] = logging.INFO,
    handler: Optional[logging.Handler] = None,
    fmt: str = _DEFAULT_FORMAT,
) -> logging.Logger:
    """
    Attach a handler to the ``trustgate`` logger.

    Calling this more than once replaces the previously installed handler
    rather than stacking duplicates.
    """
    if handler is None:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(fmt))

    for existing in list(_gateway_logger.handlers):
        if getattr(existing, "_trustgate_handler", False):
            _gateway_logger.removeHandler(existing)

    handler._trustgate_handler = True  # type: ignore[attr-defined]
    _gateway_logger.addHandler(handler)
    _gateway_logger.setLevel(level)
    return _gateway_logger


def token_preview(token: Optional[str]) -> str:
    """Shorten a session token or challenge for log output."""
    if not token:
        return "<none>"
    if len(token) <= _TOKEN_PREVIEW_LENGTH * 2:
        return "***"
    return f"{token[:_TOKEN_PREVIEW_LENGTH]}...{token[-_TOKEN_PREVIEW_LENGTH:]}"
