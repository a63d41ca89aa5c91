from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from panelflow.logging import get_logger
from panelflow.service.errors import ConflictError, ToolInvocationError

logger = get_logger(__name__)

DEFAULT_TOOL_TIMEOUT_SECONDS = 15
MAX_TOOL_TIMEOUT_SECONDS = 60  # hard cap regardless of tool spec

ToolHandler = Callable[[Dict[str, Any]], Any]


@dataclass
class ToolSpec:
    name: str
    handler: ToolHandler
    description: str = ""
    input_schema: Optional[dict] = None
    output_schema: Optional[dict] = None
    timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS

    @property
    def effective_timeout(self) -> float:
        return min(max(0.001, float(self.timeout_seconds)), MAX_TOOL_TIMEOUT_SECONDS)


@dataclass
class ToolResult:
    tool: str
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    execution_ms: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool": self.tool,
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "error_code": self.error_code,
            "execution_ms": self.execution_ms,
            "metadata": dict(self.metadata),
        }


def validate_payload(
    payload: Any, schema: Optional[dict], *, phase: str, tool_name: str
) -> Optional[List[str]]:
    if not schema or not isinstance(schema, dict):
        return None
    try:
        validator = Draft202012Validator(schema)
    except SchemaError as exc:
        logger.warning("tool_schema_invalid", phase=phase, tool=tool_name, error=str(exc))
        return [f"invalid {phase} schema: {exc.message}"]
    errors = sorted(validator.iter_errors(payload), key=lambda e: list(e.path))
    if errors:
        return [e.message for e in errors]
    return None


class ToolRegistry:
    """Named tools callable from tool-invocation nodes."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec, *, replace: bool = False) -> ToolSpec:
        if spec.name in self._tools and not replace:
            raise ConflictError(f"tool {spec.name} already registered")
        for phase, schema in (("input", spec.input_schema), ("output", spec.output_schema)):
            if schema is not None:
                try:
                    Draft202012Validator.check_schema(schema)
                except SchemaError as exc:
                    raise ToolInvocationError(
                        f"tool {spec.name} has an invalid {phase} schema: {exc.message}"
                    ) from exc
        self._tools[spec.name] = spec
        return spec

    def tool(
        self,
        name: str,
        *,
        input_schema: Optional[dict] = None,
        output_schema: Optional[dict] = None,
        timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
        description: str = "",
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of :meth:`register`."""

        def _decorator(handler: ToolHandler) -> ToolHandler:
            self.register(
                ToolSpec(
                    name=name,
                    handler=handler,
                    description=description or (handler.__doc__ or "").strip(),
                    input_schema=input_schema,
                    output_schema=output_schema,
                    timeout_seconds=timeout_seconds,
                )
            )
            return handler

        return _decorator

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def is_registered(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return sorted(self._tools)

    def invoke(self, name: str, parameters: Dict[str, Any]) -> ToolResult:
        """Run a tool synchronously; callers bound the wall-clock time."""
        spec = self._tools.get(name)
        if spec is None:
            return ToolResult(tool=name, success=False, error=f"tool not registered: {name}", error_code="unknown_tool")
        input_errors = validate_payload(parameters, spec.input_schema, phase="input", tool_name=name)
        if input_errors:
            return ToolResult(
                tool=name,
                success=False,
                error="tool input validation failed",
                error_code="validation_error",
                metadata={"errors": input_errors},
            )
        started = time.perf_counter()
        try:
            data = spec.handler(parameters)
        except Exception as exc:
            elapsed = (time.perf_counter() - started) * 1000
            logger.warning(
                "tool_handler_failed",
                tool=name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return ToolResult(
                tool=name,
                success=False,
                error=f"tool {name} failed: {exc}",
                error_code="tool_error",
                execution_ms=elapsed,
            )
        elapsed = (time.perf_counter() - started) * 1000
        output_errors = validate_payload(data, spec.output_schema, phase="output", tool_name=name)
        if output_errors:
            return ToolResult(
                tool=name,
                success=False,
                data=data,
                error="tool output validation failed",
                error_code="validation_error",
                execution_ms=elapsed,
                metadata={"errors": output_errors},
            )
        return ToolResult(tool=name, success=True, data=data, execution_ms=elapsed)
