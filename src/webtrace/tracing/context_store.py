"""
webtrace.tracing.context_store

Request-scoped attribute protocol shared by every invocation of the coordinator.

Responsibilities:
- Define the attribute keys that downstream and error-handling code may rely on.
- Carry span bookkeeping between the normal pass and the error re-dispatch of one request.
- Model "continued" / "error handled" as one enum-valued state instead of loose flags.

The backing mapping is the per-request attribute dict owned by the host (for Starlette,
`scope["state"]`). Nothing here is global and nothing needs locking: the host runs the
invocations for one request strictly one after the other.
"""

from __future__ import annotations

import enum
from collections.abc import MutableMapping
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from webtrace.tracing.gateway import TracedSpan

_PREFIX = "webtrace."

ACTIVE_SPAN_ATTR = _PREFIX + "active-span"
REQUEST_STATE_ATTR = _PREFIX + "request-state"
SHOULD_CLOSE_SPAN_ATTR = _PREFIX + "should-close-span"
SPAN_WITHOUT_PARENT_ATTR = _PREFIX + "span-without-parent"
PENDING_EXCEPTION_ATTR = _PREFIX + "pending-exception"
ALREADY_FINALIZED_ATTR = _PREFIX + "already-finalized"
# Set by an error-handling component that reported the span on its own.
ERROR_SPAN_REPORTED_ATTR = _PREFIX + "error-span-reported"
ASYNC_STARTED_ATTR = _PREFIX + "async-started"


class RequestState(enum.StrEnum):
    # Monotonic: fresh -> continued -> error_handled.
    fresh = "FRESH"
    continued = "CONTINUED"
    error_handled = "ERROR_HANDLED"


class RequestContextStore:
    """
    Typed view over a request's attribute mapping.

    Several stores may wrap the same mapping at once (one per coordinator invocation,
    plus any created by application code); they all observe the same state.
    """

    __slots__ = ("_attrs",)

    def __init__(self, attributes: MutableMapping[str, Any]) -> None:
        self._attrs = attributes

    @property
    def attributes(self) -> MutableMapping[str, Any]:
        return self._attrs

    # Active span

    def get_active_span(self) -> TracedSpan | None:
        return self._attrs.get(ACTIVE_SPAN_ATTR)

    def set_active_span(self, span: TracedSpan) -> None:
        self._attrs[ACTIVE_SPAN_ATTR] = span

    def clear_active_span(self) -> None:
        self._attrs.pop(ACTIVE_SPAN_ATTR, None)

    # Request state

    @property
    def request_state(self) -> RequestState:
        return self._attrs.get(REQUEST_STATE_ATTR, RequestState.fresh)

    def mark_span_continued(self) -> None:
        # Never downgrade an error-handled request back to merely continued.
        if self.request_state is RequestState.fresh:
            self._attrs[REQUEST_STATE_ATTR] = RequestState.continued

    def is_span_continued(self) -> bool:
        return self.request_state is not RequestState.fresh

    def mark_error_handled(self) -> None:
        self._attrs[REQUEST_STATE_ATTR] = RequestState.error_handled

    def is_error_handled(self) -> bool:
        return self.request_state is RequestState.error_handled

    # Flags

    def request_close(self) -> None:
        """Force the coordinator to finalize the span regardless of the response status."""
        self._attrs[SHOULD_CLOSE_SPAN_ATTR] = True

    def should_close(self) -> bool:
        return bool(self._attrs.get(SHOULD_CLOSE_SPAN_ATTR, False))

    def mark_span_without_parent(self) -> None:
        self._attrs[SPAN_WITHOUT_PARENT_ATTR] = True

    def is_span_without_parent(self) -> bool:
        return bool(self._attrs.get(SPAN_WITHOUT_PARENT_ATTR, False))

    def mark_already_finalized(self) -> None:
        self._attrs[ALREADY_FINALIZED_ATTR] = True

    def is_already_finalized(self) -> bool:
        return bool(self._attrs.get(ALREADY_FINALIZED_ATTR, False))

    def mark_error_span_reported(self) -> None:
        self._attrs[ERROR_SPAN_REPORTED_ATTR] = True

    def is_error_span_reported(self) -> bool:
        return bool(self._attrs.get(ERROR_SPAN_REPORTED_ATTR, False))

    def start_async(self) -> None:
        self._attrs[ASYNC_STARTED_ATTR] = True

    def is_async_started(self) -> bool:
        return bool(self._attrs.get(ASYNC_STARTED_ATTR, False))

    # Pending exception

    def set_pending_exception(self, exc: BaseException) -> None:
        self._attrs[PENDING_EXCEPTION_ATTR] = exc

    def peek_pending_exception(self) -> BaseException | None:
        return self._attrs.get(PENDING_EXCEPTION_ATTR)

    def take_pending_exception(self) -> BaseException | None:
        return self._attrs.pop(PENDING_EXCEPTION_ATTR, None)


# --- Module Notes -----------------------------------------------------------
# The key strings are a public contract: instrumentation that never imports this module
# can still force closure by setting "webtrace.should-close-span" on the request state.
