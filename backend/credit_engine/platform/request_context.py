"""Per-request context propagated into log records."""

from contextvars import ContextVar
from typing import Optional

_request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_webhook_event_ctx: ContextVar[Optional[str]] = ContextVar("webhook_event_id", default=None)


def set_request_id(request_id: str):
    return _request_id_ctx.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id_ctx.get()


def set_webhook_event_id(event_id: Optional[str]):
    return _webhook_event_ctx.set(event_id)


def reset_webhook_event_id(token) -> None:
    _webhook_event_ctx.reset(token)


def get_webhook_event_id() -> Optional[str]:
    return _webhook_event_ctx.get()
