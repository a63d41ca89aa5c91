from __future__ import annotations

from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Every error carries a human-readable ``message`` and a stable
    ``error_code`` so outer layers (REST, websocket, persistence) can map it
    without inspecting exception types:
    - validation_error (400)
    - not_found (404)
    - conflict (409)
    - capacity_exceeded (429)
    - node_failed (500)
    - timeout (504)
    - cancelled (499)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Definition or input is malformed (400).

    ``errors`` holds the complete list of problems found, never just the first.
    """
    status_code = 400
    error_code = "validation_error"

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        self.errors = list(errors or [])
        merged = {"errors": self.errors, **(detail or {})}
        super().__init__(message, detail=merged)


class NotFoundError(ServiceError):
    """Requested definition or execution not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Operation not allowed in the current lifecycle state (409)."""
    status_code = 409
    error_code = "conflict"


class CapacityError(ServiceError):
    """Concurrency ceiling reached; the execution was never created (429)."""
    status_code = 429
    error_code = "capacity_exceeded"


class NodeExecutionError(ServiceError):
    """A node's executor reported failure (500)."""
    status_code = 500
    error_code = "node_failed"

    def __init__(self, message: str, *, node_id: Optional[str] = None, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail=detail)
        self.node_id = node_id


class ExecutionTimeoutError(ServiceError):
    """Execution exceeded its wall-clock budget (504)."""
    status_code = 504
    error_code = "timeout"


class CancellationError(ServiceError):
    """Execution was cancelled by an explicit request (499)."""
    status_code = 499
    error_code = "cancelled"


class RoleInvocationError(ServiceError):
    """The role collaborator failed or returned an unusable assessment (502)."""
    status_code = 502
    error_code = "role_failed"


class ToolInvocationError(ServiceError):
    """A tool is unknown, rejected its payload, or failed (502)."""
    status_code = 502
    error_code = "tool_failed"


class NotificationError(ServiceError):
    """A notification transport could not deliver (502)."""
    status_code = 502
    error_code = "notification_failed"


class DebateError(ServiceError):
    """The debate could not produce any argument (500)."""
    status_code = 500
    error_code = "debate_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "CapacityError",
    "NodeExecutionError",
    "ExecutionTimeoutError",
    "CancellationError",
    "RoleInvocationError",
    "ToolInvocationError",
    "NotificationError",
    "DebateError",
]
