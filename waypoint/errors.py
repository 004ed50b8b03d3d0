"""Exception hierarchy for workflow validation and execution failures."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import httpx


class WaypointError(Exception):
    """Base class for all engine errors.

    Every subclass carries a stable ``code`` so callers can tell failures
    apart without matching on message text. ``node_id`` points at the node
    that was running when the error was raised, if any.
    """

    code: str = "WORKFLOW_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        node_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.node_id = node_id
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.node_id:
            data["node_id"] = self.node_id
        if self.details:
            data["details"] = self.details
        return data


# ----------------------------------------------------------------------
# Validation (surfaced to the caller, never retried)
class WorkflowValidationError(WaypointError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, issues: Optional[List[str]] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.issues = list(issues or [])


class MissingRequiredInputError(WorkflowValidationError):
    code = "MISSING_REQUIRED_INPUT"


class InvalidResponseError(WorkflowValidationError):
    """A human checkpoint response does not match its options or schema."""

    code = "INVALID_RESPONSE"


class WorkflowNotFoundError(WaypointError):
    code = "WORKFLOW_NOT_FOUND"


class ExecutionNotFoundError(WaypointError):
    code = "EXECUTION_NOT_FOUND"


# ----------------------------------------------------------------------
# Run-time failures
class TransientExecutionError(WaypointError):
    """Timeout or external-service failure, eligible for retry."""

    code = "TRANSIENT_ERROR"


class NodeTimeoutError(TransientExecutionError):
    code = "NODE_TIMEOUT"


class PermanentExecutionError(WaypointError):
    """Failure that retrying cannot fix; ends the execution immediately."""

    code = "PERMANENT_ERROR"


class UnknownNodeTypeError(PermanentExecutionError):
    code = "UNKNOWN_NODE_TYPE"


class TemplateError(PermanentExecutionError):
    code = "TEMPLATE_ERROR"


class ExpressionError(PermanentExecutionError):
    code = "EXPRESSION_ERROR"


class NoMatchingEdgeError(PermanentExecutionError):
    code = "NO_MATCHING_EDGE"


class IterationLimitExceeded(PermanentExecutionError):
    code = "ITERATION_LIMIT_EXCEEDED"


class CheckpointSizeExceeded(PermanentExecutionError):
    code = "CHECKPOINT_SIZE_EXCEEDED"


class ExecutionTimeoutError(PermanentExecutionError):
    code = "EXECUTION_TIMEOUT"


class ExecutionFailed(WaypointError):
    """Retries for a node were exhausted."""

    code = "RETRIES_EXHAUSTED"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.cause = cause


class ExecutionCancelled(WaypointError):
    code = "CANCELLED"


# ----------------------------------------------------------------------
# Caller errors against execution state (state is left untouched)
class StateMismatchError(WaypointError):
    code = "STATE_MISMATCH"


class InvalidStateForResume(StateMismatchError):
    code = "INVALID_STATE_FOR_RESUME"


class InvalidStateForPause(StateMismatchError):
    code = "INVALID_STATE_FOR_PAUSE"


def is_transient(exc: BaseException) -> bool:
    """Return True when ``exc`` should be retried under a node's policy."""
    if isinstance(exc, TransientExecutionError):
        return True
    if isinstance(exc, WaypointError):
        return False
    return isinstance(
        exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, httpx.TransportError)
    )


__all__ = [
    "WaypointError",
    "WorkflowValidationError",
    "MissingRequiredInputError",
    "InvalidResponseError",
    "WorkflowNotFoundError",
    "ExecutionNotFoundError",
    "TransientExecutionError",
    "NodeTimeoutError",
    "PermanentExecutionError",
    "UnknownNodeTypeError",
    "TemplateError",
    "ExpressionError",
    "NoMatchingEdgeError",
    "IterationLimitExceeded",
    "CheckpointSizeExceeded",
    "ExecutionTimeoutError",
    "ExecutionFailed",
    "ExecutionCancelled",
    "StateMismatchError",
    "InvalidStateForResume",
    "InvalidStateForPause",
    "is_transient",
]
