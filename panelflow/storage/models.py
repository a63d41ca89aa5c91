from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class DefinitionStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class NodeKind(str, Enum):
    START = "start"
    END = "end"
    ROLE = "role"
    TOOL = "tool"
    CONDITION = "condition"
    SCRIPT = "script"
    DELAY = "delay"
    NOTIFICATION = "notification"

    @classmethod
    def _missing_(cls, value: object) -> Optional["NodeKind"]:
        lowered = str(value).strip().lower()
        return cls._value2member_map_.get(_NODE_KIND_ALIASES.get(lowered, lowered))


_NODE_KIND_ALIASES = {
    "role-invocation": "role",
    "role_invocation": "role",
    "agent": "role",
    "tool-invocation": "tool",
    "tool_invocation": "tool",
    "scripted-expression": "script",
    "timed-delay": "delay",
}


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMEOUT,
    }
)


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass
class Node:
    id: str
    kind: NodeKind
    name: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None

    def __post_init__(self) -> None:
        self.kind = NodeKind(self.kind)
        if not self.name:
            self.name = self.id

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "config": copy.deepcopy(self.config),
        }
        if self.description:
            payload["description"] = self.description
        return payload


@dataclass
class Connection:
    source: str
    target: str
    # Selects this connection when the upstream condition result matches
    guard: Optional[bool] = None
    label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"source": self.source, "target": self.target}
        if self.guard is not None:
            payload["guard"] = self.guard
        if self.label:
            payload["label"] = self.label
        return payload


def _parse_guard(value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered in {"", "none", "null"}:
        return None
    raise ValueError(f"guard must be true or false, got {value!r}")


@dataclass
class Definition:
    """Immutable-by-convention graph template; edits produce new versions."""

    id: str
    name: str
    nodes: List[Node] = field(default_factory=list)
    connections: List[Connection] = field(default_factory=list)
    version: str = "1.0.0"
    description: Optional[str] = None
    status: DefinitionStatus = DefinitionStatus.DRAFT
    input_schema: Optional[dict] = None
    output_schema: Optional[dict] = None
    config: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    usage_count: int = 0
    avg_execution_ms: float = 0.0
    success_rate: float = 0.0

    def node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def start_nodes(self) -> List[Node]:
        return [n for n in self.nodes if n.kind == NodeKind.START]

    def end_nodes(self) -> List[Node]:
        return [n for n in self.nodes if n.kind == NodeKind.END]

    def outgoing(self, node_id: str) -> List[Connection]:
        return [c for c in self.connections if c.source == node_id]

    def incoming(self, node_id: str) -> List[Connection]:
        return [c for c in self.connections if c.target == node_id]

    @property
    def is_runnable(self) -> bool:
        return self.status == DefinitionStatus.ACTIVE

    def record_outcome(self, duration_ms: float, success: bool) -> None:
        """Fold one terminal execution into the running statistics."""
        previous = self.usage_count
        self.usage_count = previous + 1
        self.avg_execution_ms = (
            self.avg_execution_ms * previous + max(0.0, duration_ms)
        ) / self.usage_count
        self.success_rate = (
            self.success_rate * previous + (1.0 if success else 0.0)
        ) / self.usage_count

    def clone(self, new_id: Optional[str] = None, *, name: Optional[str] = None) -> "Definition":
        """Return a draft copy with fresh statistics at version 1.0.0."""
        now = datetime.utcnow()
        return Definition(
            id=new_id or str(uuid.uuid4()),
            name=name or f"{self.name}_copy",
            nodes=copy.deepcopy(self.nodes),
            connections=copy.deepcopy(self.connections),
            version="1.0.0",
            description=self.description,
            status=DefinitionStatus.DRAFT,
            input_schema=copy.deepcopy(self.input_schema),
            output_schema=copy.deepcopy(self.output_schema),
            config=copy.deepcopy(self.config),
            tags=list(self.tags),
            created_by=self.created_by,
            created_at=now,
            updated_at=now,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "status": self.status.value,
            "nodes": [n.to_dict() for n in self.nodes],
            "connections": [c.to_dict() for c in self.connections],
            "input_schema": copy.deepcopy(self.input_schema),
            "output_schema": copy.deepcopy(self.output_schema),
            "config": copy.deepcopy(self.config),
            "tags": list(self.tags),
            "created_by": self.created_by,
            "usage_count": self.usage_count,
            "avg_execution_ms": self.avg_execution_ms,
            "success_rate": self.success_rate,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Definition":
        nodes = [
            Node(
                id=str(item["id"]),
                kind=NodeKind(item["kind"]),
                name=item.get("name") or "",
                config=dict(item.get("config") or {}),
                description=item.get("description"),
            )
            for item in payload.get("nodes") or []
        ]
        connections = [
            Connection(
                source=str(item["source"]),
                target=str(item["target"]),
                guard=_parse_guard(item.get("guard")),
                label=item.get("label"),
            )
            for item in payload.get("connections") or []
        ]
        return cls(
            id=str(payload.get("id") or uuid.uuid4()),
            name=payload.get("name") or "untitled",
            nodes=nodes,
            connections=connections,
            version=payload.get("version") or "1.0.0",
            description=payload.get("description"),
            status=DefinitionStatus(payload.get("status") or DefinitionStatus.DRAFT.value),
            input_schema=payload.get("input_schema"),
            output_schema=payload.get("output_schema"),
            config=dict(payload.get("config") or {}),
            tags=list(payload.get("tags") or []),
            created_by=payload.get("created_by"),
        )


@dataclass
class NodeExecutionResult:
    success: bool
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    # Boolean outcome consumed by guarded outgoing connections
    branch: Optional[bool] = None

    @classmethod
    def ok(cls, output: Optional[Dict[str, Any]] = None, *, branch: Optional[bool] = None) -> "NodeExecutionResult":
        return cls(success=True, output=output or {}, branch=branch)

    @classmethod
    def failure(cls, error: str, output: Optional[Dict[str, Any]] = None) -> "NodeExecutionResult":
        return cls(success=False, output=output or {}, error=error)


@dataclass
class NodeRecord:
    node_id: str
    node_name: str
    kind: NodeKind
    status: NodeStatus = NodeStatus.PENDING
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    visits: int = 0

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds() * 1000

    def to_trace(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "output": self.output,
            "error": self.error,
        }


@dataclass
class LogEntry:
    level: LogLevel
    message: str
    node_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ExecutionStats:
    total_nodes: int
    successful_nodes: int
    failed_nodes: int
    skipped_nodes: int
    avg_node_ms: float
    max_node_ms: float
    min_node_ms: float
    throughput: float  # completed nodes per second of wall-clock time


@dataclass
class Execution:
    id: str
    definition_id: str
    definition_version: str
    definition_name: str = ""
    status: ExecutionStatus = ExecutionStatus.PENDING
    input: Dict[str, Any] = field(default_factory=dict)
    output: Dict[str, Any] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)
    node_records: Dict[str, NodeRecord] = field(default_factory=dict)
    logs: List[LogEntry] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_node_id: Optional[str] = None
    progress: int = 0
    current_node_id: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    priority: int = 5
    timeout_ms: int = 60 * 60 * 1000
    cancellable: bool = True
    pausable: bool = True
    triggered_by: Optional[str] = None
    trigger_type: str = "manual"
    parent_execution_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        definition: Definition,
        input_data: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> "Execution":
        return cls(
            id=str(uuid.uuid4()),
            definition_id=definition.id,
            definition_version=definition.version,
            definition_name=definition.name,
            input=dict(input_data or {}),
            **kwargs,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.ended_at or datetime.utcnow()
        return (end - self.started_at).total_seconds() * 1000

    @property
    def can_retry(self) -> bool:
        return self.status == ExecutionStatus.FAILED and self.retry_count < self.max_retries

    def metadata(self) -> Dict[str, Any]:
        return {
            "execution_id": self.id,
            "definition_id": self.definition_id,
            "progress": self.progress,
            "retry_count": self.retry_count,
        }

    def set_progress(self, value: float) -> None:
        self.progress = int(min(100, max(0, value)))
        self.context["progress"] = self.progress

    def log(
        self,
        level: LogLevel,
        message: str,
        *,
        node_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> LogEntry:
        entry = LogEntry(level=level, message=message, node_id=node_id, data=data or {})
        self.logs.append(entry)
        return entry

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)
        self.log(LogLevel.WARN, message)

    def records_with(self, status: NodeStatus) -> List[NodeRecord]:
        return [r for r in self.node_records.values() if r.status == status]

    def trace(self) -> List[Dict[str, Any]]:
        return [record.to_trace() for record in self.node_records.values()]

    def performance(self) -> ExecutionStats:
        durations = [
            r.duration_ms
            for r in self.node_records.values()
            if r.duration_ms is not None and r.status == NodeStatus.COMPLETED
        ]
        successful = len(self.records_with(NodeStatus.COMPLETED))
        elapsed_ms = self.duration_ms or 0.0
        return ExecutionStats(
            total_nodes=len(self.node_records),
            successful_nodes=successful,
            failed_nodes=len(self.records_with(NodeStatus.FAILED)),
            skipped_nodes=len(self.records_with(NodeStatus.SKIPPED)),
            avg_node_ms=sum(durations) / len(durations) if durations else 0.0,
            max_node_ms=max(durations) if durations else 0.0,
            min_node_ms=min(durations) if durations else 0.0,
            throughput=successful / (elapsed_ms / 1000) if elapsed_ms > 0 else 0.0,
        )

    def summary(self) -> str:
        stats = self.performance()
        duration = self.duration_ms
        parts = [
            f"execution {self.id} of {self.definition_name or self.definition_id}",
            f"status={self.status.value}",
            f"progress={self.progress}%",
            f"nodes={stats.successful_nodes}/{stats.total_nodes} completed",
        ]
        if duration is not None:
            parts.append(f"duration={duration:.0f}ms")
        if self.error:
            parts.append(f"error={self.error}")
        return " ".join(parts)
