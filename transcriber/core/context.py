from contextvars import ContextVar
from typing import Optional

from transcriber.domain.models import RequestContext

# The context variable to hold the request context.
# Batch tasks spawned during a request inherit a copy of it.
_request_context_var: ContextVar[Optional[RequestContext]] = ContextVar(
    "request_context", default=None
)


def set_request_context(context: RequestContext) -> None:
    """Sets the request context for the current async task."""
    _request_context_var.set(context)


def get_request_context() -> Optional[RequestContext]:
    """Gets the request context for the current async task."""
    return _request_context_var.get()
