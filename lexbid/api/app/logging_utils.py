"""Logging helpers shared by the API process.

- ``install_log_sanitizer`` masks bearer tokens / JWTs before records are emitted
- ``configure_logging`` sets the root format, including the request chain id
"""

from __future__ import annotations

import logging
import re

_BEARER_RE = re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+")
_JWT_RE = re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\b")

_INSTALLED = False


def sanitize_message(message: str) -> str:
    message = _BEARER_RE.sub(r"\1[redacted]", message)
    return _JWT_RE.sub("[redacted-jwt]", message)


class SanitizingFilter(logging.Filter):
    """Rewrite the rendered message so credentials never reach a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            rendered = record.getMessage()
        except Exception:
            return True
        cleaned = sanitize_message(rendered)
        if cleaned != rendered:
            record.msg = cleaned
            record.args = None
        return True


class ChainIdFilter(logging.Filter):
    """Attach the current chain id and actor id (or "-") to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        from .trace_context import get_actor_id, get_chain_id

        record.chain_id = get_chain_id() or "-"
        record.actor_id = get_actor_id() or "-"
        return True


def install_log_sanitizer() -> None:
    global _INSTALLED
    if _INSTALLED:
        return
    root = logging.getLogger()
    root.addFilter(SanitizingFilter())
    for handler in root.handlers:
        handler.addFilter(SanitizingFilter())
    _INSTALLED = True


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)s [%(chain_id)s actor=%(actor_id)s] %(name)s: %(message)s"
            )
        )
        handler.addFilter(ChainIdFilter())
        handler.addFilter(SanitizingFilter())
        root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
