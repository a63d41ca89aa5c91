"""Node executors, one per node kind, and the registry the engine dispatches through."""
from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import re
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from panelflow.logging import get_logger
from panelflow.service.conditions import (
    MISSING,
    PLACEHOLDER_RE,
    evaluate_condition,
    lookup,
    render_template,
    resolve_value,
    validate_expression,
)
from panelflow.service.debate import DebateVariant, StructuredDebateEngine
from panelflow.service.errors import (
    ConflictError,
    DebateError,
    NotFoundError,
    NotificationError,
    RoleInvocationError,
)
from panelflow.service.notifications import (
    Notification,
    NotificationChannel,
    NotificationDispatcher,
)
from panelflow.service.roles import RoleAssessment, RoleInvoker
from panelflow.service.sandbox import (
    SCRIPT_LANGUAGES,
    ScriptError,
    check_script,
    safe_eval_script,
    script_helpers,
)
from panelflow.service.tools import ToolRegistry, ToolResult
from panelflow.storage.models import (
    Definition,
    Execution,
    Node,
    NodeExecutionResult,
    NodeKind,
    NodeStatus,
)

START_PROGRESS = 5
DEFAULT_DELAY_MS = 1000
MAX_DELAY_MS = 24 * 60 * 60 * 1000

# Context keys written by the engine and the start/end executors
METADATA_KEYS = frozenset(
    {
        "execution_id",
        "definition_id",
        "progress",
        "retry_count",
        "workflow_start_time",
        "workflow_name",
        "workflow_version",
        "workflow_end_time",
        "total_execution_ms",
        "execution_summary",
        "final_output",
    }
)

_DURATION_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.IGNORECASE)
_DURATION_UNITS_MS = {"ms": 1, "s": 1000, "m": 60 * 1000, "h": 60 * 60 * 1000}


def template_sources(execution: Execution, context: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    """Placeholder lookup order: context store, execution input, metadata."""
    return [context, execution.input, execution.metadata()]


def apply_output_mapping(
    output: Dict[str, Any],
    sources: Sequence[Mapping[str, Any]],
    mapping: Optional[Mapping[str, Any]],
) -> Dict[str, Any]:
    """Copy ``{target: dotted.source.path}`` entries into ``output``."""
    for target, path in (mapping or {}).items():
        value = lookup(str(path), sources)
        if value is not MISSING:
            output[str(target)] = value
    return output


def parse_duration_ms(value: Any) -> float:
    """Milliseconds from a number or a ``"250ms"``/``"5s"``/``"2m"``/``"1h"`` string."""
    if isinstance(value, bool):
        raise ValueError(f"invalid delay {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"invalid delay {value!r}")
    unit = (match.group(2) or "ms").lower()
    return float(match.group(1)) * _DURATION_UNITS_MS[unit]


def _is_placeholder(value: Any) -> bool:
    return isinstance(value, str) and bool(PLACEHOLDER_RE.search(value))


def _recipients(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = value
    else:
        items = [value]
    return [str(item).strip() for item in items if str(item).strip()]


class NodeExecutor:
    """Behaviour for one node kind.

    ``execute`` receives a snapshot of the context store and returns a
    :class:`NodeExecutionResult`; it must not write to ``execution.context``
    itself. Blocking calls go through :meth:`run_blocking` so they occupy the
    engine's bounded worker pool instead of the event loop.
    """

    kind: NodeKind

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.pool: Optional[concurrent.futures.Executor] = None

    def supported_kind(self) -> NodeKind:
        return self.kind

    def bind_pool(self, pool: Optional[concurrent.futures.Executor]) -> None:
        self.pool = pool

    async def run_blocking(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.pool, functools.partial(func, *args))

    async def execute(
        self,
        definition: Definition,
        execution: Execution,
        node: Node,
        context: Dict[str, Any],
    ) -> NodeExecutionResult:
        raise NotImplementedError

    def validate(self, node: Node) -> List[str]:
        return []


class StartExecutor(NodeExecutor):
    kind = NodeKind.START

    async def execute(self, definition, execution, node, context):
        execution.set_progress(START_PROGRESS)
        return NodeExecutionResult.ok(
            {
                "workflow_start_time": (execution.started_at or datetime.utcnow()).isoformat(),
                "workflow_name": definition.name,
                "workflow_version": definition.version,
            }
        )


class EndExecutor(NodeExecutor):
    kind = NodeKind.END

    @staticmethod
    def _output_keys(definition: Definition, node: Node) -> Optional[List[str]]:
        configured = node.config.get("outputs")
        if isinstance(configured, (list, tuple)) and configured:
            return [str(k) for k in configured]
        schema = definition.output_schema or {}
        properties = schema.get("properties") if isinstance(schema, dict) else None
        if isinstance(properties, dict) and properties:
            return list(properties)
        return None

    async def execute(self, definition, execution, node, context):
        keys = self._output_keys(definition, node)
        if keys is None:
            final_output = {k: v for k, v in context.items() if k not in METADATA_KEYS}
        else:
            final_output = {k: context[k] for k in keys if k in context}
        return NodeExecutionResult.ok(
            {
                "workflow_end_time": datetime.utcnow().isoformat(),
                "total_execution_ms": execution.duration_ms or 0.0,
                "execution_summary": {
                    "total_nodes": len(definition.nodes),
                    "successful_nodes": len(execution.records_with(NodeStatus.COMPLETED)),
                    "failed_nodes": len(execution.records_with(NodeStatus.FAILED)),
                },
                "final_output": final_output,
            }
        )

    def validate(self, node):
        outputs = node.config.get("outputs")
        if outputs is not None and not isinstance(outputs, (list, tuple)):
            return ["outputs must be a list of context keys"]
        return []


class RoleExecutor(NodeExecutor):
    """Invokes an analyst role, or runs a panel debate when ``config.debate`` is set.

    Plain mode places the role's assessment under ``output_key`` (the node id
    by default). Debate mode gathers opening assessments from earlier role
    nodes (``assessments_from``) or asks ``roles`` directly, then stores the
    debate result with its majority ``recommendation`` and ``confidence``.
    """

    kind = NodeKind.ROLE

    def __init__(
        self,
        invoker: Optional[RoleInvoker] = None,
        debate_engine: Optional[StructuredDebateEngine] = None,
    ) -> None:
        super().__init__()
        self.invoker = invoker
        self.debate_engine = debate_engine or StructuredDebateEngine(invoker)

    def bind_pool(self, pool):
        super().bind_pool(pool)
        if self.debate_engine.executor is None:
            self.debate_engine.executor = pool

    async def execute(self, definition, execution, node, context):
        sources = template_sources(execution, context)
        if node.config.get("debate"):
            return await self._debate(execution, node, sources)
        if self.invoker is None:
            return NodeExecutionResult.failure("no role invoker configured")
        role = str(node.config.get("role") or "")
        prompt = render_template(node.config.get("prompt") or "", sources)
        role_context = {
            "execution_id": execution.id,
            "definition_id": execution.definition_id,
            "node_id": node.id,
            **resolve_value(dict(node.config.get("context") or {}), sources),
        }
        try:
            payload = await self.run_blocking(self.invoker.invoke, role, prompt, role_context)
            assessment = RoleAssessment.from_payload(role, payload)
        except RoleInvocationError as exc:
            return NodeExecutionResult.failure(exc.message)
        result = assessment.to_dict()
        output = {node.config.get("output_key") or node.id: result}
        apply_output_mapping(output, [result], node.config.get("output_mapping"))
        return NodeExecutionResult.ok(output)

    def _collect_assessments(
        self, keys: Sequence[str], sources: Sequence[Mapping[str, Any]]
    ) -> List[RoleAssessment]:
        assessments: List[RoleAssessment] = []
        for key in keys:
            value = lookup(str(key), sources)
            if value is MISSING:
                self.logger.warning("debate_assessment_missing", key=key)
                continue
            role = value.get("role") if isinstance(value, Mapping) else None
            assessments.append(RoleAssessment.from_payload(str(role or key).split(".")[-1], value))
        return assessments

    async def _debate(self, execution, node, sources) -> NodeExecutionResult:
        cfg = dict(node.config["debate"])
        subject = render_template(cfg.get("subject") or node.name, sources)
        evidence = resolve_value(dict(cfg.get("evidence") or {}), sources)
        try:
            assessments = self._collect_assessments(cfg.get("assessments_from") or [], sources)
            options = dict(
                roles=cfg.get("roles"),
                assessments=assessments or None,
                evidence=evidence,
                max_rounds=cfg.get("max_rounds"),
                variant=cfg.get("variant"),
            )
            if cfg.get("bull_role") and cfg.get("bear_role"):
                synthesis = await self.debate_engine.synthesize(
                    subject,
                    bull_role=cfg["bull_role"],
                    bear_role=cfg["bear_role"],
                    arbiter_role=cfg.get("arbiter_role"),
                    **options,
                )
                payload = synthesis.to_dict()
                stance = synthesis.panel.majority_stance
                confidence = synthesis.final_confidence
            else:
                debate = await self.debate_engine.debate(subject, **options)
                payload = debate.to_dict()
                stance = debate.majority_stance
                confidence = debate.mean_confidence
        except (DebateError, RoleInvocationError) as exc:
            return NodeExecutionResult.failure(exc.message)
        payload["recommendation"] = stance.value
        payload["confidence"] = confidence
        output = {node.config.get("output_key") or node.id: payload}
        apply_output_mapping(output, [payload], node.config.get("output_mapping"))
        return NodeExecutionResult.ok(output)

    def validate(self, node):
        errors: List[str] = []
        debate = node.config.get("debate")
        if debate:
            if not isinstance(debate, Mapping):
                return ["debate configuration must be a mapping"]
            if not debate.get("roles") and not debate.get("assessments_from"):
                errors.append("debate requires roles or assessments_from")
            for key in ("roles", "assessments_from"):
                if debate.get(key) is not None and not isinstance(debate.get(key), (list, tuple)):
                    errors.append(f"debate {key} must be a list")
            if debate.get("variant") is not None:
                try:
                    DebateVariant(debate["variant"])
                except ValueError:
                    errors.append(f"unknown debate variant {debate['variant']!r}")
            rounds = debate.get("max_rounds")
            if rounds is not None and (not isinstance(rounds, int) or isinstance(rounds, bool) or rounds < 1):
                errors.append("debate max_rounds must be a positive integer")
            if bool(debate.get("bull_role")) != bool(debate.get("bear_role")):
                errors.append("bull_role and bear_role must be configured together")
            return errors
        if not node.config.get("role"):
            errors.append("role is required")
        if self.invoker is None:
            errors.append("no role invoker configured")
        return errors


class ToolExecutor(NodeExecutor):
    kind = NodeKind.TOOL

    def __init__(self, registry: ToolRegistry) -> None:
        super().__init__()
        self.registry = registry

    async def execute(self, definition, execution, node, context):
        sources = template_sources(execution, context)
        name = str(node.config.get("tool") or "")
        parameters = resolve_value(dict(node.config.get("parameters") or {}), sources)
        spec = self.registry.get(name)
        if spec is None:
            result = ToolResult(tool=name, success=False, error=f"tool not registered: {name}", error_code="unknown_tool")
        else:
            try:
                result = await asyncio.wait_for(
                    self.run_blocking(self.registry.invoke, name, parameters),
                    timeout=spec.effective_timeout,
                )
            except asyncio.TimeoutError:
                result = ToolResult(
                    tool=name,
                    success=False,
                    error=f"tool {name} timed out after {spec.effective_timeout:g}s",
                    error_code="timeout",
                )
        key = node.config.get("output_key") or node.id
        if not result.success:
            if node.config.get("continue_on_error"):
                self.logger.warning("tool_error_ignored", tool=name, node_id=node.id, error=result.error)
                return NodeExecutionResult.ok({key: None, "tool_error": result.to_dict()})
            return NodeExecutionResult.failure(result.error or f"tool {name} failed", {"tool_error": result.to_dict()})
        output = {key: result.data}
        if isinstance(result.data, Mapping):
            apply_output_mapping(output, [result.data], node.config.get("output_mapping"))
        return NodeExecutionResult.ok(output)

    def validate(self, node):
        name = node.config.get("tool")
        if not name:
            return ["tool is required"]
        if not self.registry.is_registered(str(name)):
            return [f"unknown tool {name}"]
        if node.config.get("parameters") is not None and not isinstance(node.config["parameters"], Mapping):
            return ["parameters must be a mapping"]
        return []


class ConditionExecutor(NodeExecutor):
    kind = NodeKind.CONDITION

    async def execute(self, definition, execution, node, context):
        expression = node.config.get("expression")
        result = evaluate_condition(expression, template_sources(execution, context))
        return NodeExecutionResult.ok(
            {
                "condition_result": result,
                "condition_expression": expression,
                f"{node.id}_result": result,
            },
            branch=result,
        )

    def validate(self, node):
        return validate_expression(node.config.get("expression"))


class ScriptExecutor(NodeExecutor):
    """Evaluates a restricted expression script against the context store.

    Context values are visible as ``ctx`` and, for identifier-safe keys, as
    ``ctx_<key>``; execution metadata is visible by name.
    """

    kind = NodeKind.SCRIPT

    async def execute(self, definition, execution, node, context):
        script = str(node.config.get("script") or "")
        language = node.config.get("language", "expression")
        if language not in SCRIPT_LANGUAGES:
            return NodeExecutionResult.failure(f"unsupported script language {language!r}")
        names: Dict[str, Any] = {"ctx": dict(context)}
        names.update(
            {f"ctx_{k}": v for k, v in context.items() if isinstance(k, str) and k.isidentifier()}
        )
        names.update(execution.metadata())
        try:
            value = await self.run_blocking(safe_eval_script, script, names, script_helpers())
        except (ScriptError, ArithmeticError, TypeError, ValueError) as exc:
            return NodeExecutionResult.failure(f"script failed: {exc}")
        output: Dict[str, Any] = {"script_result": value}
        if isinstance(value, Mapping):
            for key, item in value.items():
                output[f"script_{key}"] = item
        mapping_sources: List[Mapping[str, Any]] = [output]
        if isinstance(value, Mapping):
            mapping_sources.append(value)
        apply_output_mapping(output, mapping_sources, node.config.get("output_mapping"))
        return NodeExecutionResult.ok(output)

    def validate(self, node):
        script = node.config.get("script")
        if not script or not str(script).strip():
            return ["script is required"]
        language = node.config.get("language", "expression")
        if language not in SCRIPT_LANGUAGES:
            return [f"unsupported script language {language!r}"]
        return check_script(str(script))


class DelayExecutor(NodeExecutor):
    kind = NodeKind.DELAY

    @staticmethod
    def resolve_delay_ms(sources: Sequence[Mapping[str, Any]]) -> float:
        for source in sources:
            if source.get("delay") is not None:
                return parse_duration_ms(source["delay"])
            if source.get("delay_seconds") is not None:
                return float(source["delay_seconds"]) * 1000
            if source.get("delay_minutes") is not None:
                return float(source["delay_minutes"]) * 60 * 1000
        return float(DEFAULT_DELAY_MS)

    @staticmethod
    def _check_range(delay_ms: float) -> Optional[str]:
        if delay_ms < 0:
            return "delay must not be negative"
        if delay_ms > MAX_DELAY_MS:
            return "delay must not exceed 24 hours"
        return None

    async def execute(self, definition, execution, node, context):
        config = resolve_value(dict(node.config), template_sources(execution, context))
        try:
            delay_ms = self.resolve_delay_ms([config, context])
        except (TypeError, ValueError) as exc:
            return NodeExecutionResult.failure(str(exc))
        problem = self._check_range(delay_ms)
        if problem:
            return NodeExecutionResult.failure(problem)
        await asyncio.sleep(delay_ms / 1000)
        return NodeExecutionResult.ok({"delay_ms": delay_ms, "delay_completed": True})

    def validate(self, node):
        # Placeholder durations are only known at run time
        if any(_is_placeholder(node.config.get(k)) for k in ("delay", "delay_seconds", "delay_minutes")):
            return []
        try:
            delay_ms = self.resolve_delay_ms([node.config])
        except (TypeError, ValueError) as exc:
            return [str(exc)]
        problem = self._check_range(delay_ms)
        return [problem] if problem else []


class NotificationExecutor(NodeExecutor):
    """Dispatches a notification; delivery failures never fail the node."""

    kind = NodeKind.NOTIFICATION

    def __init__(self, dispatcher: NotificationDispatcher) -> None:
        super().__init__()
        self.dispatcher = dispatcher

    async def execute(self, definition, execution, node, context):
        sources = template_sources(execution, context)
        message = render_template(node.config.get("message"), sources)
        channel_name = str(node.config.get("channel") or NotificationChannel.SYSTEM.value).lower()
        output: Dict[str, Any] = {
            "notification_sent": False,
            "notification_channel": channel_name,
            "notification_message": message,
        }
        try:
            notification = Notification(
                channel=NotificationChannel(channel_name),
                title=render_template(node.config.get("title") or node.name, sources),
                message=message,
                recipients=_recipients(resolve_value(node.config.get("recipients"), sources)),
                data=resolve_value(dict(node.config.get("data") or {}), sources),
                execution_id=execution.id,
                definition_id=execution.definition_id,
            )
            delivery = await self.run_blocking(self.dispatcher.dispatch, notification)
        except (NotificationError, ValueError) as exc:
            self.logger.warning(
                "notification_failed",
                node_id=node.id,
                channel=channel_name,
                error=str(exc),
            )
            output["notification_error"] = str(exc)
            return NodeExecutionResult.ok(output)
        output["notification_sent"] = True
        output["notification_result"] = delivery.to_dict()
        return NodeExecutionResult.ok(output)

    def validate(self, node):
        errors: List[str] = []
        if not str(node.config.get("message") or "").strip():
            errors.append("notification message is required")
        try:
            channel = NotificationChannel(str(node.config.get("channel") or "system").lower())
        except ValueError:
            errors.append(f"unknown notification channel {node.config.get('channel')!r}")
            return errors
        recipients = node.config.get("recipients")
        if channel != NotificationChannel.SYSTEM and not _is_placeholder(recipients) and not _recipients(recipients):
            errors.append(f"{channel.value} notifications require at least one recipient")
        return errors


class ExecutorRegistry:
    """Maps node kinds to executors; resolved once when the engine is built."""

    def __init__(self, executors: Optional[Iterable[NodeExecutor]] = None) -> None:
        self._executors: Dict[NodeKind, NodeExecutor] = {}
        for executor in executors or []:
            self.register(executor)

    def register(self, executor: NodeExecutor, *, replace: bool = False) -> None:
        kind = executor.supported_kind()
        if kind in self._executors and not replace:
            raise ConflictError(f"executor for {kind.value} already registered")
        self._executors[kind] = executor

    def get(self, kind: NodeKind) -> NodeExecutor:
        executor = self._executors.get(NodeKind(kind))
        if executor is None:
            raise NotFoundError(f"no executor registered for node kind {NodeKind(kind).value}")
        return executor

    def kinds(self) -> List[NodeKind]:
        return list(self._executors)

    def validate_node(self, node: Node) -> List[str]:
        executor = self._executors.get(node.kind)
        if executor is None:
            return [f"node {node.id}: no executor registered for kind {node.kind.value}"]
        return [f"node {node.id}: {error}" for error in executor.validate(node)]

    def bind_pool(self, pool: Optional[concurrent.futures.Executor]) -> None:
        for executor in self._executors.values():
            executor.bind_pool(pool)


def build_default_registry(
    *,
    invoker: Optional[RoleInvoker] = None,
    tools: Optional[ToolRegistry] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    debate_engine: Optional[StructuredDebateEngine] = None,
) -> ExecutorRegistry:
    return ExecutorRegistry(
        [
            StartExecutor(),
            EndExecutor(),
            RoleExecutor(invoker, debate_engine),
            ToolExecutor(tools or ToolRegistry()),
            ConditionExecutor(),
            ScriptExecutor(),
            DelayExecutor(),
            NotificationExecutor(dispatcher or NotificationDispatcher()),
        ]
    )
