from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Dict, List, Optional

from panelflow.logging import get_logger
from panelflow.storage.errors import DuplicateRecord, MissingRecord
from panelflow.storage.models import (
    Definition,
    DefinitionStatus,
    Execution,
    ExecutionStatus,
)


class MemoryStore:
    """In-process persistence collaborator for definitions and executions.

    Holds the live definitions, a snapshot per superseded definition version,
    and every execution handed over by the engine. Nothing here survives the
    process; durable backends implement the same methods.
    """

    def __init__(self, *, max_executions: int = 10_000) -> None:
        self.logger = get_logger(__name__)
        self.definitions: Dict[str, Definition] = {}
        self.definition_history: Dict[str, List[Definition]] = {}
        self.executions: Dict[str, Execution] = {}
        self.max_executions = max_executions
        self._data_lock = threading.RLock()

    # definitions -----------------------------------------------------------

    def create_definition(self, definition: Definition) -> Definition:
        with self._data_lock:
            if definition.id in self.definitions:
                raise DuplicateRecord("definition", definition.id)
            self.definitions[definition.id] = definition
            self.definition_history.setdefault(definition.id, [])
        self.logger.info(
            "definition_created",
            definition_id=definition.id,
            version=definition.version,
            nodes=len(definition.nodes),
        )
        return definition

    def ensure_definition(self, definition: Definition) -> Definition:
        """Register a definition the engine was handed directly, if unknown."""
        with self._data_lock:
            existing = self.definitions.get(definition.id)
            if existing is None:
                self.definitions[definition.id] = definition
                self.definition_history.setdefault(definition.id, [])
                return definition
            return existing

    def replace_definition(self, definition: Definition) -> Definition:
        """Store a new version, keeping a frozen copy of the one it replaces."""
        with self._data_lock:
            previous = self.definitions.get(definition.id)
            if previous is None:
                raise MissingRecord("definition", definition.id)
            self.definition_history.setdefault(definition.id, []).append(
                copy.deepcopy(previous)
            )
            definition.updated_at = datetime.utcnow()
            self.definitions[definition.id] = definition
        return definition

    def get_definition(self, definition_id: str) -> Optional[Definition]:
        with self._data_lock:
            return self.definitions.get(definition_id)

    def list_definitions(
        self, status: Optional[DefinitionStatus] = None
    ) -> List[Definition]:
        with self._data_lock:
            items = list(self.definitions.values())
        if status is not None:
            items = [d for d in items if d.status == status]
        return sorted(items, key=lambda d: d.created_at)

    def list_definition_versions(self, definition_id: str) -> List[Definition]:
        with self._data_lock:
            return list(self.definition_history.get(definition_id, []))

    def record_execution_outcome(
        self, definition_id: str, duration_ms: float, success: bool
    ) -> None:
        with self._data_lock:
            definition = self.definitions.get(definition_id)
            if definition is None:
                self.logger.warning(
                    "definition_stats_missing", definition_id=definition_id
                )
                return
            definition.record_outcome(duration_ms, success)

    # executions ------------------------------------------------------------

    def save_execution(self, execution: Execution) -> Execution:
        with self._data_lock:
            self.executions[execution.id] = execution
            if len(self.executions) > self.max_executions:
                self._evict_oldest_terminal()
        return execution

    def get_execution(self, execution_id: str) -> Optional[Execution]:
        with self._data_lock:
            return self.executions.get(execution_id)

    def list_executions(
        self,
        *,
        definition_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> List[Execution]:
        with self._data_lock:
            items = list(self.executions.values())
        if definition_id is not None:
            items = [e for e in items if e.definition_id == definition_id]
        if status is not None:
            items = [e for e in items if e.status == status]
        return sorted(items, key=lambda e: e.created_at)

    def _evict_oldest_terminal(self) -> None:
        terminal = sorted(
            (e for e in self.executions.values() if e.is_terminal),
            key=lambda e: e.created_at,
        )
        overflow = len(self.executions) - self.max_executions
        for execution in terminal[:overflow]:
            self.executions.pop(execution.id, None)
        if overflow > 0:
            self.logger.debug("executions_evicted", count=min(overflow, len(terminal)))
