"""Graph scheduler driving executions through their state machine.

Each admitted execution runs as one asyncio task. The task walks the graph
from the start node in branches: a node with several selected successors fans
out into concurrent branches, and a node with several forward predecessors is
a join that only runs once every predecessor has executed. Joins whose
remaining predecessors sit on branches that were never taken are released
once no other work is left.

Cancellation, pause and the visit guard are checked between nodes only; a node
already in flight is never preempted. Only the wall-clock timeout interrupts
the task, abandoning in-flight blocking calls on the worker pool.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set, Union

from jsonschema import Draft202012Validator

from panelflow.config import MAX_NODE_WORKERS, Settings, get_settings
from panelflow.logging import (
    bind_execution_id,
    get_logger,
    log_execution_trace,
    sanitize_error_message,
    sanitize_execution_trace,
    unbind_execution_id,
)
from panelflow.service.errors import (
    CancellationError,
    CapacityError,
    ConflictError,
    ExecutionTimeoutError,
    NodeExecutionError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from panelflow.service.executors import START_PROGRESS, ExecutorRegistry
from panelflow.service.graph import GraphIndex
from panelflow.service.listeners import ExecutionListener, notify_listeners
from panelflow.service.validation import validate_definition
from panelflow.storage.memory import MemoryStore
from panelflow.storage.models import (
    Definition,
    DefinitionStatus,
    Execution,
    ExecutionStatus,
    LogLevel,
    NodeExecutionResult,
    NodeRecord,
    NodeStatus,
)

_TRANSITIONS = {
    ExecutionStatus.PENDING: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.RUNNING: {
        ExecutionStatus.PAUSED,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMEOUT,
    },
    ExecutionStatus.PAUSED: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMEOUT,
    },
}

_STATUS_HOOKS = {
    ExecutionStatus.PAUSED: "on_paused",
    ExecutionStatus.COMPLETED: "on_completed",
    ExecutionStatus.FAILED: "on_failed",
    ExecutionStatus.CANCELLED: "on_cancelled",
    ExecutionStatus.TIMEOUT: "on_timeout",
}


@dataclass
class _RunState:
    execution: Execution
    definition: Definition
    graph: GraphIndex
    resume_event: asyncio.Event
    task: Optional[asyncio.Task] = None
    executed: Set[int] = field(default_factory=set)
    claimed: Set[int] = field(default_factory=set)
    held: Set[int] = field(default_factory=set)
    visits: Dict[int, int] = field(default_factory=dict)
    # First failure or timeout; every branch stops at its next node boundary
    halt: Optional[ServiceError] = None
    slot_released: bool = False


class WorkflowEngine:
    """Runs definitions as executions with a hard concurrency ceiling.

    Admission is backpressure by rejection: a submission past the ceiling
    raises :class:`CapacityError` and no execution is created. ``cancel``,
    ``pause`` and ``resume`` must be called from the event loop running the
    executions.
    """

    DEFAULT_NODE_WORKERS = 8
    MAX_NODE_WORKERS = MAX_NODE_WORKERS

    def __init__(
        self,
        registry: ExecutorRegistry,
        *,
        store: Optional[MemoryStore] = None,
        listeners: Optional[Sequence[ExecutionListener]] = None,
        settings: Optional[Settings] = None,
        max_concurrent_executions: Optional[int] = None,
        node_workers: Optional[int] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.registry = registry
        self.store = store or MemoryStore()
        self.listeners: List[ExecutionListener] = list(listeners or [])
        self.logger = get_logger(__name__)
        self.max_concurrent_executions = (
            max_concurrent_executions or self.settings.max_concurrent_executions
        )
        self.max_node_visits = self.settings.max_node_visits
        workers = min(max(1, node_workers or self.settings.node_workers), self.MAX_NODE_WORKERS)
        self._node_executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="panelflow-node"
        )
        self.registry.bind_pool(self._node_executor)
        self._executor_shutdown = False
        self._runs: Dict[str, _RunState] = {}
        self._slots = 0
        self._slots_lock = threading.Lock()

    def add_listener(self, listener: ExecutionListener) -> None:
        self.listeners.append(listener)

    @property
    def active_count(self) -> int:
        with self._slots_lock:
            return self._slots

    # submission ------------------------------------------------------------

    def _resolve_definition(self, definition: Union[Definition, str]) -> Definition:
        if isinstance(definition, Definition):
            self.store.ensure_definition(definition)
            return definition
        found = self.store.get_definition(definition)
        if found is None:
            raise NotFoundError(f"definition {definition} not found")
        return found

    def _check_runnable(self, definition: Definition, input_data: Dict[str, Any]) -> None:
        if definition.status != DefinitionStatus.ACTIVE:
            raise ValidationError(
                f"definition {definition.id} is not active",
                [f"definition status is {definition.status.value}"],
            )
        errors = validate_definition(definition, self.registry)
        if errors:
            raise ValidationError(f"definition {definition.id} is invalid", errors)
        if definition.input_schema:
            validator = Draft202012Validator(definition.input_schema)
            problems = sorted(validator.iter_errors(input_data), key=lambda e: list(e.path))
            if problems:
                raise ValidationError(
                    "execution input does not match the definition input schema",
                    [p.message for p in problems],
                )

    def _acquire_slot(self) -> None:
        with self._slots_lock:
            if self._slots >= self.max_concurrent_executions:
                raise CapacityError(
                    f"concurrency ceiling of {self.max_concurrent_executions} executions reached",
                    detail={"max_concurrent_executions": self.max_concurrent_executions},
                )
            self._slots += 1

    def _release_slot(self, state: _RunState) -> None:
        with self._slots_lock:
            if state.slot_released:
                return
            state.slot_released = True
            self._slots -= 1

    async def submit(
        self,
        definition: Union[Definition, str],
        input_data: Optional[Dict[str, Any]] = None,
        *,
        triggered_by: Optional[str] = None,
        trigger_type: str = "manual",
        priority: int = 5,
        timeout_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_count: int = 0,
        parent_execution_id: Optional[str] = None,
    ) -> Execution:
        """Validate, admit and start an execution; returns once it is RUNNING."""
        resolved = self._resolve_definition(definition)
        input_data = dict(input_data or {})
        self._check_runnable(resolved, input_data)
        self._acquire_slot()
        execution: Optional[Execution] = None
        try:
            execution = Execution.new(
                resolved,
                input_data,
                triggered_by=triggered_by,
                trigger_type=trigger_type,
                priority=priority,
                timeout_ms=int(
                    timeout_ms
                    or resolved.config.get("timeout_ms")
                    or self.settings.default_execution_timeout_ms
                ),
                max_retries=int(
                    max_retries
                    if max_retries is not None
                    else resolved.config.get("max_retries", self.settings.default_max_retries)
                ),
                retry_count=retry_count,
                parent_execution_id=parent_execution_id,
            )
            execution.context.update(execution.input)
            execution.context.update(execution.metadata())
            state = _RunState(
                execution=execution,
                definition=resolved,
                graph=GraphIndex(resolved),
                resume_event=asyncio.Event(),
            )
            state.resume_event.set()
            self._runs[execution.id] = state
            self.store.save_execution(execution)
            execution.started_at = datetime.utcnow()
            self._transition(state, ExecutionStatus.RUNNING)
            state.task = asyncio.create_task(self._drive(state))
        except BaseException:
            with self._slots_lock:
                self._slots -= 1
            if execution is not None:
                self._runs.pop(execution.id, None)
            raise
        self.logger.info(
            "execution_started",
            execution_id=execution.id,
            definition_id=resolved.id,
            version=resolved.version,
            retry_count=retry_count,
        )
        return execution

    async def run(
        self,
        definition: Union[Definition, str],
        input_data: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> Execution:
        execution = await self.submit(definition, input_data, **kwargs)
        return await self.wait(execution.id)

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> Execution:
        state = self._runs.get(execution_id)
        if state is not None and state.task is not None:
            await asyncio.wait_for(asyncio.shield(state.task), timeout)
        return self.get_execution(execution_id)

    # control ---------------------------------------------------------------

    def get_execution(self, execution_id: str) -> Execution:
        state = self._runs.get(execution_id)
        if state is not None:
            return state.execution
        execution = self.store.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"execution {execution_id} not found")
        return execution

    def list_active(self) -> List[Execution]:
        return [s.execution for s in self._runs.values() if not s.execution.is_terminal]

    def _state_for(self, execution_id: str) -> _RunState:
        state = self._runs.get(execution_id)
        if state is None:
            execution = self.store.get_execution(execution_id)
            if execution is None:
                raise NotFoundError(f"execution {execution_id} not found")
            raise ConflictError(
                f"execution {execution_id} is {execution.status.value} and no longer running"
            )
        return state

    def cancel(self, execution_id: str, *, reason: str = "cancelled by request") -> Execution:
        state = self._state_for(execution_id)
        if not state.execution.cancellable:
            raise ConflictError(f"execution {execution_id} is not cancellable")
        state.execution.error = reason
        self._transition(state, ExecutionStatus.CANCELLED)
        return state.execution

    def pause(self, execution_id: str) -> Execution:
        state = self._state_for(execution_id)
        if not state.execution.pausable:
            raise ConflictError(f"execution {execution_id} is not pausable")
        self._transition(state, ExecutionStatus.PAUSED)
        state.resume_event.clear()
        return state.execution

    def resume(self, execution_id: str) -> Execution:
        state = self._state_for(execution_id)
        if state.execution.status != ExecutionStatus.PAUSED:
            raise ConflictError(
                f"execution {execution_id} is {state.execution.status.value}, not paused"
            )
        self._transition(state, ExecutionStatus.RUNNING)
        state.resume_event.set()
        return state.execution

    async def retry(self, execution_id: str, *, delay_ms: Optional[int] = None) -> Execution:
        """Resubmit a failed execution as a new one after ``delay_ms``."""
        previous = self.get_execution(execution_id)
        if not previous.can_retry:
            raise ConflictError(
                f"execution {execution_id} cannot be retried "
                f"(status {previous.status.value}, retries {previous.retry_count}/{previous.max_retries})"
            )
        delay = self.settings.execution_retry_delay_ms if delay_ms is None else delay_ms
        self.logger.info("execution_retry_scheduled", execution_id=execution_id, delay_ms=delay)
        await asyncio.sleep(max(0, delay) / 1000)
        retry = await self.submit(
            previous.definition_id,
            previous.input,
            triggered_by=previous.triggered_by,
            trigger_type="retry",
            priority=previous.priority,
            timeout_ms=previous.timeout_ms,
            max_retries=previous.max_retries,
            retry_count=previous.retry_count + 1,
            parent_execution_id=previous.id,
        )
        notify_listeners(self.listeners, "on_retry", previous, retry)
        return retry

    def shutdown(self, wait: bool = True) -> None:
        """Cancel live executions and release the worker pool."""
        for state in list(self._runs.values()):
            if not state.execution.is_terminal:
                state.execution.error = "engine shutting down"
                self._transition(state, ExecutionStatus.CANCELLED)
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        try:
            self._node_executor.shutdown(wait=wait, cancel_futures=not wait)
            self.logger.info("workflow_executor_shutdown", wait=wait)
        except Exception as exc:
            self.logger.warning("workflow_executor_shutdown_error", error=str(exc))

    # state machine ---------------------------------------------------------

    def _transition(self, state: _RunState, target: ExecutionStatus) -> None:
        execution = state.execution
        current = execution.status
        if target not in _TRANSITIONS.get(current, ()):
            raise ConflictError(
                f"execution {execution.id} cannot move from {current.value} to {target.value}"
            )
        execution.status = target
        if target.is_terminal:
            execution.ended_at = datetime.utcnow()
            # Wake a paused walk so it observes the terminal state
            state.resume_event.set()
        execution.log(LogLevel.INFO, f"status changed from {current.value} to {target.value}")
        self.logger.info(
            "execution_status_changed",
            execution_id=execution.id,
            from_status=current.value,
            to_status=target.value,
        )
        if target == ExecutionStatus.RUNNING:
            hook = "on_resumed" if current == ExecutionStatus.PAUSED else "on_started"
            notify_listeners(self.listeners, hook, execution)
        elif target == ExecutionStatus.FAILED:
            notify_listeners(self.listeners, "on_failed", execution, execution.error or "")
        else:
            notify_listeners(self.listeners, _STATUS_HOOKS[target], execution)

    def _fail(self, state: _RunState, message: str, node_id: Optional[str] = None) -> None:
        if state.execution.is_terminal:
            return
        state.execution.error = sanitize_error_message(message)
        state.execution.error_node_id = node_id
        state.execution.log(LogLevel.ERROR, state.execution.error, node_id=node_id)
        self._transition(state, ExecutionStatus.FAILED)

    # driving ---------------------------------------------------------------

    async def _drive(self, state: _RunState) -> None:
        execution = state.execution
        token = bind_execution_id(execution.id)
        timeout = execution.timeout_ms / 1000 if execution.timeout_ms > 0 else None
        try:
            await asyncio.wait_for(self._walk(state), timeout=timeout)
        except asyncio.TimeoutError:
            if not execution.is_terminal:
                state.halt = ExecutionTimeoutError(
                    f"execution exceeded its timeout of {execution.timeout_ms} ms"
                )
                execution.error = state.halt.message
                self._transition(state, ExecutionStatus.TIMEOUT)
        except NodeExecutionError as exc:
            self._fail(state, exc.message, exc.node_id)
        except CancellationError:
            if isinstance(state.halt, NodeExecutionError):
                self._fail(state, state.halt.message, state.halt.node_id)
        except asyncio.CancelledError:
            if not execution.is_terminal:
                execution.error = "execution task was cancelled"
                self._transition(state, ExecutionStatus.CANCELLED)
            raise
        except Exception as exc:
            self.logger.error(
                "execution_crashed",
                execution_id=execution.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._fail(state, f"{type(exc).__name__}: {exc}")
        else:
            if not execution.is_terminal:
                self._complete(state)
        finally:
            self._finish(state)
            unbind_execution_id(token)

    async def _walk(self, state: _RunState) -> None:
        graph = state.graph
        if graph.start is None:
            raise NodeExecutionError("definition has no start node")
        await self._run_branch(state, graph.start)
        while state.held:
            ready = sorted(p for p in state.held if graph.forward_preds[p] <= state.executed)
            batch = ready or self._upstream_joins(graph, state.held)
            state.held.difference_update(batch)
            for position in batch:
                # A released join runs with whatever predecessors did execute
                state.claimed.add(position)
            await self._fan_out(state, batch, claimed=True)

    @staticmethod
    def _upstream_joins(graph, held: Set[int]) -> List[int]:
        """Held joins that no other held join can reach."""
        downstream: Set[int] = set()
        for position in held:
            downstream |= graph.reachable(position, forward_only=True) - {position}
        # mutually reachable joins only occur inside loops; release them together
        return sorted(held - downstream) or sorted(held)

    async def _fan_out(self, state: _RunState, positions: List[int], *, claimed: bool = False) -> None:
        results = await asyncio.gather(
            *(self._run_branch(state, p, claimed=claimed) for p in positions),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if not errors:
            return
        for error in errors:
            if isinstance(error, NodeExecutionError):
                raise error
        raise errors[0]

    async def _checkpoint(self, state: _RunState) -> None:
        while True:
            if state.halt is not None or state.execution.is_terminal:
                raise CancellationError(f"execution {state.execution.id} halted")
            if state.execution.status != ExecutionStatus.PAUSED:
                return
            await state.resume_event.wait()

    async def _run_branch(self, state: _RunState, position: int, *, claimed: bool = False) -> None:
        graph = state.graph
        current: Optional[int] = position
        while current is not None:
            await self._checkpoint(state)
            if graph.is_join(current) and not claimed:
                if current in state.claimed:
                    return
                if not graph.forward_preds[current] <= state.executed:
                    state.held.add(current)
                    return
                state.claimed.add(current)
                state.held.discard(current)
            claimed = False
            result = await self._execute_node(state, current)
            targets = graph.successors(current, result.branch)
            for target in targets:
                if graph.is_back_edge(current, target):
                    loop_body = graph.reachable(target, forward_only=True)
                    state.executed.difference_update(loop_body)
                    state.claimed.difference_update(loop_body)
            if not targets:
                return
            if len(targets) == 1:
                current = targets[0]
                continue
            await self._fan_out(state, targets)
            return

    async def _execute_node(self, state: _RunState, position: int) -> NodeExecutionResult:
        execution = state.execution
        node = state.graph.nodes[position]
        visits = state.visits.get(position, 0) + 1
        state.visits[position] = visits
        if visits > self.max_node_visits:
            state.halt = NodeExecutionError(
                f"node {node.id} exceeded {self.max_node_visits} visits; loop does not terminate",
                node_id=node.id,
            )
            raise state.halt

        record = NodeRecord(
            node_id=node.id,
            node_name=node.name,
            kind=node.kind,
            status=NodeStatus.RUNNING,
            started_at=datetime.utcnow(),
            visits=visits,
        )
        execution.node_records[node.id] = record
        execution.current_node_id = node.id
        execution.log(LogLevel.DEBUG, f"node {node.id} started", node_id=node.id)
        notify_listeners(self.listeners, "on_node_started", execution, record)

        try:
            executor = self.registry.get(node.kind)
            result = await executor.execute(state.definition, execution, node, dict(execution.context))
        except ServiceError as exc:
            result = NodeExecutionResult.failure(exc.message)
        except Exception as exc:
            self.logger.warning(
                "node_executor_raised",
                node_id=node.id,
                kind=node.kind.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            result = NodeExecutionResult.failure(f"{type(exc).__name__}: {exc}")
        record.ended_at = datetime.utcnow()

        if state.halt is not None or execution.is_terminal:
            # The run ended while this node was in flight; its result is dropped
            record.status = NodeStatus.CANCELLED
            raise CancellationError(f"execution {execution.id} halted")

        if not result.success:
            record.status = NodeStatus.FAILED
            record.error = sanitize_error_message(result.error or "node failed")
            record.output = result.output
            notify_listeners(self.listeners, "on_node_failed", execution, record)
            state.halt = NodeExecutionError(f"node {node.id} failed: {record.error}", node_id=node.id)
            raise state.halt

        record.status = NodeStatus.COMPLETED
        record.output = result.output
        execution.context.update(result.output)
        state.executed.add(position)
        execution.set_progress(
            min(99, START_PROGRESS + 90 * len(state.executed) / max(1, len(state.graph)))
        )
        execution.log(
            LogLevel.INFO,
            f"node {node.id} completed",
            node_id=node.id,
            data={"duration_ms": record.duration_ms},
        )
        notify_listeners(self.listeners, "on_node_completed", execution, record)
        return result

    def _complete(self, state: _RunState) -> None:
        execution = state.execution
        output: Dict[str, Any] = {}
        reached_end = False
        for node in state.definition.end_nodes():
            record = execution.node_records.get(node.id)
            if record is not None and record.status == NodeStatus.COMPLETED:
                reached_end = True
                output.update(record.output.get("final_output") or {})
        if not reached_end:
            self._fail(state, "no end node was reached")
            return
        if state.definition.output_schema:
            validator = Draft202012Validator(state.definition.output_schema)
            problems = [e.message for e in validator.iter_errors(output)]
            if problems:
                self._fail(state, "execution output does not match the output schema: " + "; ".join(problems))
                return
        execution.output = output
        execution.set_progress(100)
        self._transition(state, ExecutionStatus.COMPLETED)

    def _finish(self, state: _RunState) -> None:
        execution = state.execution
        abandoned = (
            NodeStatus.TIMEOUT if execution.status == ExecutionStatus.TIMEOUT else NodeStatus.CANCELLED
        )
        for record in execution.node_records.values():
            if record.status == NodeStatus.RUNNING:
                record.status = abandoned
                record.ended_at = record.ended_at or execution.ended_at
        for node in state.graph.nodes:
            if node.id in execution.node_records:
                continue
            record = NodeRecord(
                node_id=node.id, node_name=node.name, kind=node.kind, status=NodeStatus.SKIPPED
            )
            execution.node_records[node.id] = record
            notify_listeners(self.listeners, "on_node_skipped", execution, record)
        execution.current_node_id = None
        self._release_slot(state)
        self._runs.pop(execution.id, None)
        self.store.save_execution(execution)
        self.store.record_execution_outcome(
            execution.definition_id,
            execution.duration_ms or 0.0,
            execution.status == ExecutionStatus.COMPLETED,
        )
        log_execution_trace(sanitize_execution_trace(execution.trace()), self.logger)
        self.logger.info(
            "execution_finished",
            execution_id=execution.id,
            status=execution.status.value,
            duration_ms=execution.duration_ms,
            error_node_id=execution.error_node_id,
        )
