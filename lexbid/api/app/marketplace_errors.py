"""
Typed conditions raised by the marketplace core.

Guards inside a unit of work raise one of these before any write; the route
layer maps them onto HTTP responses with ``to_http_exception``.
"""

from __future__ import annotations

from fastapi import HTTPException


class MarketplaceError(Exception):
    """Base condition carrying a stable machine-readable code."""

    status_code: int = 400

    def __init__(self, code: str, message: str | None = None) -> None:
        self.code = code
        self.message = message or code
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class NotFoundError(MarketplaceError):
    status_code = 404


class ForbiddenError(MarketplaceError):
    status_code = 403


class ConflictError(MarketplaceError):
    status_code = 409


class RequestValidationFailed(MarketplaceError):
    status_code = 400


def to_http_exception(exc: MarketplaceError) -> HTTPException:
    return HTTPException(
        status_code=exc.status_code,
        detail={"error": exc.message, "code": exc.code},
    )
