from __future__ import annotations

import re

_EMAIL_RE = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)
_PHONE_RE = re.compile(r"(\+?1[-.\s]?)?(\(?\d{3}\)?[-.\s]?)\d{3}[-.\s]?\d{4}")

DEFAULT_SUMMARY_CHARS = 220


def redact_sensitive_text(text: str) -> str:
    """Hide contact details before a case is shown to attorneys."""
    text = _EMAIL_RE.sub("[email hidden]", text)
    return _PHONE_RE.sub("[phone hidden]", text)


def summarize_case_description(text: str | None, max_len: int = DEFAULT_SUMMARY_CHARS) -> str:
    safe = redact_sensitive_text(text or "").strip()
    if len(safe) <= max_len:
        return safe
    return f"{safe[:max_len].rstrip()}..."
