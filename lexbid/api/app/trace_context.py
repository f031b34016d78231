from __future__ import annotations

import contextvars
from typing import Any


_chain_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "lexbid_chain_id", default=None
)
_actor_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "lexbid_actor_id", default=None
)


def get_chain_id() -> str | None:
    return _chain_id.get()


def get_actor_id() -> str | None:
    return _actor_id.get()


def set_trace_context(
    *,
    chain_id: str | None = None,
    actor_id: str | None = None,
) -> dict[str, contextvars.Token[Any]]:
    tokens: dict[str, contextvars.Token[Any]] = {}
    if chain_id is not None:
        tokens["chain_id"] = _chain_id.set(chain_id)
    if actor_id is not None:
        tokens["actor_id"] = _actor_id.set(actor_id)
    return tokens


def reset_trace_context(tokens: dict[str, contextvars.Token[Any]]) -> None:
    for key, token in tokens.items():
        if key == "chain_id":
            _chain_id.reset(token)
        elif key == "actor_id":
            _actor_id.reset(token)
