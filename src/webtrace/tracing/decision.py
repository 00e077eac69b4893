"""
webtrace.tracing.decision

Span lifecycle decision engine.

Responsibilities:
- Decide, from a snapshot of one invocation's outcome, whether the request span is
  finalized, abandoned, or left open for another code path.
- Decide whether the span gets the response status tag and whether the stored span
  attribute is cleared.

This module performs no I/O: the coordinator gathers a `SpanOutcome`, calls `decide`, and
applies the returned `Decision` through the gateway.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class Verdict(enum.StrEnum):
    finalize = "FINALIZE"
    abandon = "ABANDON"
    defer = "DEFER"


@dataclass(frozen=True, slots=True)
class SpanOutcome:
    # 0 means the response status was never set.
    status_code: int
    async_started: bool = False
    already_finalized: bool = False
    error_handled: bool = False
    should_close: bool = False
    has_error_handler: bool = False
    # The span is still the one active in the current tracing context.
    still_current: bool = True
    root_span: bool = False
    span_without_parent: bool = False
    has_exception: bool = False

    @property
    def successful(self) -> bool:
        return is_successful_status(self.status_code)


@dataclass(frozen=True, slots=True)
class Decision:
    verdict: Verdict
    clear_active_span: bool = False
    tag_status: bool = False
    reason: str = ""


def is_successful_status(status_code: int) -> bool:
    """2xx and 3xx count as successful; 0 (unset) does not."""

    return 200 <= status_code < 400


def should_tag_status(outcome: SpanOutcome) -> bool:
    # Only spans started without a parent carry the status tag.
    return (
        not outcome.has_exception
        and outcome.span_without_parent
        and outcome.status_code >= 100
    )


def decide(outcome: SpanOutcome) -> Decision:
    """
    Evaluate the lifecycle table in order; the first matching rule wins.

    1. async started: defer, the continuation owns completion.
    2. successful and not finalized before: finalize and clear, unless an exception is
       pending and an error handler will re-dispatch (defer).
    3. error re-dispatch already ran and no close was requested: leave the span alone.
    4. close requested or root span, and still current: finalize (clear on close request).
    5. otherwise: finalize (clearing when no error handler exists), or abandon when an
       error handler exists and an exception is pending.
    """

    if outcome.async_started:
        return Decision(Verdict.defer, reason="async_started")

    tag = should_tag_status(outcome)

    if outcome.successful and not outcome.already_finalized:
        if outcome.has_exception and outcome.has_error_handler:
            return Decision(Verdict.defer, tag_status=tag, reason="error_handler_will_redispatch")
        return Decision(
            Verdict.finalize, clear_active_span=True, tag_status=tag, reason="response_successful"
        )

    if outcome.error_handled and not outcome.should_close:
        return Decision(Verdict.defer, tag_status=tag, reason="error_already_handled")

    if (outcome.should_close or outcome.root_span) and outcome.still_current:
        return Decision(
            Verdict.finalize,
            clear_active_span=outcome.should_close,
            tag_status=tag,
            reason="close_requested" if outcome.should_close else "root_span",
        )

    if not outcome.has_error_handler:
        return Decision(
            Verdict.finalize, clear_active_span=True, tag_status=tag, reason="response_unsuccessful"
        )
    if outcome.has_exception:
        return Decision(Verdict.abandon, tag_status=tag, reason="handed_to_error_handler")
    return Decision(Verdict.finalize, tag_status=tag, reason="response_unsuccessful")


# --- Module Notes -----------------------------------------------------------
# Rule 3 is what stops a second finalize when the host re-dispatches a failed request.
