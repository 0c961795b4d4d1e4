from __future__ import annotations

from contextvars import ContextVar

_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
_cycle_id_ctx: ContextVar[str | None] = ContextVar("cycle_id", default=None)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def set_request_id(value: str | None) -> None:
    _request_id_ctx.set(value)


def get_cycle_id() -> str | None:
    return _cycle_id_ctx.get()


def set_cycle_id(value: str | None) -> None:
    _cycle_id_ctx.set(value)
