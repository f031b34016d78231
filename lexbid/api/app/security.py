"""
Bearer-token identity for marketplace routes.

Tokens are issued by the identity service; this module only verifies them and
exposes the ``Actor`` they describe (``sub`` user id, ``role`` and the
``profile_id`` of the client or attorney profile the user owns).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import settings
from .models import Role
from .trace_context import set_trace_context

logger = logging.getLogger(__name__)

bearer = HTTPBearer()
optional_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Actor:
    user_id: uuid.UUID
    role: Role
    profile_id: uuid.UUID | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def attorney_profile_id(self) -> uuid.UUID | None:
        return self.profile_id if self.role == Role.ATTORNEY else None

    @property
    def client_profile_id(self) -> uuid.UUID | None:
        return self.profile_id if self.role == Role.CLIENT else None


def sign_actor_token(
    user_id: uuid.UUID | str,
    role: Role | str,
    profile_id: uuid.UUID | str | None = None,
    expire_minutes: int | None = None,
) -> str:
    """Sign a token for the given actor (used by tooling and tests)."""
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": str(user_id),
        "role": Role(role).value,
        "iss": settings.JWT_ISSUER,
        "iat": now,
        "exp": now + timedelta(minutes=expire_minutes or settings.JWT_EXPIRE_MIN),
    }
    if profile_id is not None:
        payload["profile_id"] = str(profile_id)
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def verify_token(token: str) -> dict[str, Any]:
    """Verify JWT token and return payload"""
    try:
        return jwt.decode(
            token, settings.JWT_SECRET, algorithms=["HS256"], issuer=settings.JWT_ISSUER
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token"
        )


def actor_from_claims(payload: dict[str, Any]) -> Actor:
    try:
        user_id = uuid.UUID(str(payload["sub"]))
        role = Role(str(payload.get("role", "")).upper())
        raw_profile = payload.get("profile_id")
        profile_id = uuid.UUID(str(raw_profile)) if raw_profile else None
    except (KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token claims"
        )
    return Actor(user_id=user_id, role=role, profile_id=profile_id)


async def current_actor(
    creds: Annotated[HTTPAuthorizationCredentials, Depends(bearer)],
) -> Actor:
    actor = actor_from_claims(verify_token(creds.credentials))
    set_trace_context(actor_id=str(actor.user_id))
    return actor


def optional_actor(
    creds: Annotated[HTTPAuthorizationCredentials | None, Depends(optional_bearer)],
) -> Actor | None:
    """
    Returns the actor if a valid token is provided, None otherwise.
    Used by the case hall, which anonymous visitors may browse.
    """
    if not creds:
        return None
    try:
        payload = jwt.decode(
            creds.credentials,
            settings.JWT_SECRET,
            algorithms=["HS256"],
            issuer=settings.JWT_ISSUER,
        )
    except JWTError:
        logger.debug("Optional auth: Invalid JWT token")
        return None
    try:
        return actor_from_claims(payload)
    except HTTPException:
        logger.debug("Optional auth: token claims rejected")
        return None


def _require_admin(actor: Annotated[Actor, Depends(current_actor)]) -> Actor:
    """Ensure actor is an admin"""
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return actor


def _require_client(actor: Annotated[Actor, Depends(current_actor)]) -> Actor:
    if actor.role != Role.CLIENT or actor.profile_id is None:
        raise HTTPException(status_code=403, detail="Only clients can select a bid.")
    return actor


def _require_attorney(actor: Annotated[Actor, Depends(current_actor)]) -> Actor:
    if actor.role != Role.ATTORNEY or actor.profile_id is None:
        raise HTTPException(
            status_code=403, detail="Only attorneys can perform this action."
        )
    return actor


CurrentActor = Annotated[Actor, Depends(current_actor)]
OptionalActor = Annotated[Actor | None, Depends(optional_actor)]
AdminDep = Annotated[Actor, Depends(_require_admin)]
ClientDep = Annotated[Actor, Depends(_require_client)]
AttorneyDep = Annotated[Actor, Depends(_require_attorney)]
