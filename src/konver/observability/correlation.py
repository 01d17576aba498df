"""Correlation ID propagation for HTTP requests and webhook processing."""

import uuid
from contextvars import ContextVar, Token

# Set per request by the API middleware; read by the JSON log formatter
correlation_id_var: ContextVar[str] = ContextVar("konver_correlation_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"


def generate_correlation_id() -> str:
    """Return a fresh random correlation ID."""
    return uuid.uuid4().hex


def get_correlation_id() -> str:
    """Return the correlation ID bound to the current context ("" if none)."""
    return correlation_id_var.get()


def bind_correlation_id(cid: str | None = None) -> Token[str]:
    """Bind a correlation ID to the current context, generating one if missing."""
    return correlation_id_var.set(cid or generate_correlation_id())


def unbind_correlation_id(token: Token[str]) -> None:
    correlation_id_var.reset(token)
