"""Integration context propagation via Python contextvars.

Set by the intake route and by the queue worker before an event is
handled, so logs, metrics and Sentry events can be tagged with the
integration they belong to without threading the id through every call.
"""

from __future__ import annotations

import contextvars

import structlog

_integration_id: contextvars.ContextVar[str] = contextvars.ContextVar("integration_id")


def get_current_integration() -> str:
    """Return the integration id of the current request or event.

    Raises RuntimeError if no integration context has been set.
    """
    try:
        return _integration_id.get()
    except LookupError:
        raise RuntimeError("No integration context set -- call is not integration-scoped")


def set_integration_context(integration_id: str) -> contextvars.Token[str]:
    """Set the integration id and bind it to structlog's context. Returns a reset token."""
    structlog.contextvars.bind_contextvars(integration_id=integration_id)
    return _integration_id.set(integration_id)


def reset_integration_context(token: contextvars.Token[str]) -> None:
    structlog.contextvars.unbind_contextvars("integration_id")
    _integration_id.reset(token)
