"""Tests for the data model and the in-memory store."""

from datetime import datetime, timedelta

import pytest

from panelflow.storage.errors import ConstraintViolation, DuplicateRecord, MissingRecord
from panelflow.storage.memory import MemoryStore
from panelflow.storage.models import (
    Definition,
    DefinitionStatus,
    Execution,
    ExecutionStatus,
    NodeKind,
    NodeRecord,
    NodeStatus,
)


def sample_payload():
    return {
        "id": "review",
        "name": "review",
        "nodes": [
            {"id": "start", "kind": "start"},
            {"id": "quant", "kind": "role-invocation", "config": {"role": "quant"}},
            {"id": "gate", "kind": "condition", "config": {"expression": "true"}},
            {"id": "end", "kind": "END"},
        ],
        "connections": [
            {"source": "start", "target": "quant"},
            {"source": "quant", "target": "gate"},
            {"source": "gate", "target": "end", "guard": "true", "label": "approved"},
        ],
        "tags": ["equity"],
    }


# =============================================================================
# Model
# =============================================================================


class TestDefinitionModel:
    def test_from_dict_normalises_kinds_and_guards(self):
        definition = Definition.from_dict(sample_payload())

        assert definition.node("quant").kind == NodeKind.ROLE
        assert definition.node("end").kind == NodeKind.END
        assert definition.outgoing("gate")[0].guard is True
        assert [n.id for n in definition.start_nodes()] == ["start"]
        assert definition.status == DefinitionStatus.DRAFT
        assert not definition.is_runnable

    def test_to_dict_round_trips_structure(self):
        payload = Definition.from_dict(sample_payload()).to_dict()

        assert payload["nodes"][1] == {"id": "quant", "kind": "role", "name": "quant", "config": {"role": "quant"}}
        assert payload["connections"][2] == {"source": "gate", "target": "end", "guard": True, "label": "approved"}

    def test_invalid_guard_is_rejected(self):
        payload = sample_payload()
        payload["connections"][2]["guard"] = "maybe"

        with pytest.raises(ValueError):
            Definition.from_dict(payload)

    def test_record_outcome_keeps_running_averages(self):
        definition = Definition.from_dict(sample_payload())

        definition.record_outcome(100.0, True)
        definition.record_outcome(300.0, False)

        assert definition.usage_count == 2
        assert definition.avg_execution_ms == pytest.approx(200.0)
        assert definition.success_rate == pytest.approx(0.5)


class TestExecutionModel:
    def test_terminal_statuses(self):
        assert ExecutionStatus.TIMEOUT.is_terminal
        assert not ExecutionStatus.PAUSED.is_terminal

    def test_progress_is_clamped_and_mirrored_in_context(self):
        execution = Execution.new(Definition.from_dict(sample_payload()), {"ticker": "ACME"})

        execution.set_progress(140)

        assert execution.progress == 100
        assert execution.context["progress"] == 100
        assert execution.metadata()["definition_id"] == "review"

    def test_can_retry(self):
        execution = Execution.new(Definition.from_dict(sample_payload()), max_retries=1)
        execution.status = ExecutionStatus.FAILED

        assert execution.can_retry
        execution.retry_count = 1
        assert not execution.can_retry

    def test_performance_and_summary(self):
        execution = Execution.new(Definition.from_dict(sample_payload()))
        start = datetime(2024, 1, 1, 12, 0, 0)
        execution.started_at = start
        execution.ended_at = start + timedelta(seconds=2)
        execution.status = ExecutionStatus.COMPLETED
        execution.node_records = {
            "start": NodeRecord("start", "start", NodeKind.START, NodeStatus.COMPLETED, start, start + timedelta(milliseconds=10)),
            "quant": NodeRecord("quant", "quant", NodeKind.ROLE, NodeStatus.COMPLETED, start, start + timedelta(milliseconds=30)),
            "gate": NodeRecord("gate", "gate", NodeKind.CONDITION, NodeStatus.SKIPPED),
        }

        stats = execution.performance()

        assert stats.total_nodes == 3
        assert stats.successful_nodes == 2
        assert stats.skipped_nodes == 1
        assert stats.avg_node_ms == pytest.approx(20.0)
        assert stats.max_node_ms == pytest.approx(30.0)
        assert stats.throughput == pytest.approx(1.0)
        assert "status=completed" in execution.summary()
        assert "duration=2000ms" in execution.summary()


# =============================================================================
# Store
# =============================================================================


class TestMemoryStore:
    def test_definition_versions(self):
        store = MemoryStore()
        definition = store.create_definition(Definition.from_dict(sample_payload()))

        with pytest.raises(DuplicateRecord):
            store.create_definition(Definition.from_dict(sample_payload()))

        newer = Definition.from_dict(sample_payload())
        newer.version = "1.0.1"
        store.replace_definition(newer)

        assert store.get_definition("review") is newer
        assert [d.version for d in store.list_definition_versions("review")] == [definition.version]

    def test_replace_unknown_definition(self):
        with pytest.raises(ConstraintViolation) as excinfo:
            MemoryStore().replace_definition(Definition.from_dict(sample_payload()))

        assert isinstance(excinfo.value, MissingRecord)
        assert excinfo.value.record_id == "review"
        assert excinfo.value.message == "definition review does not exist"

    def test_ensure_definition_keeps_existing(self):
        store = MemoryStore()
        first = store.ensure_definition(Definition.from_dict(sample_payload()))

        assert store.ensure_definition(Definition.from_dict(sample_payload())) is first

    def test_record_execution_outcome(self):
        store = MemoryStore()
        store.create_definition(Definition.from_dict(sample_payload()))

        store.record_execution_outcome("review", 50.0, True)
        store.record_execution_outcome("missing", 50.0, True)

        assert store.get_definition("review").usage_count == 1

    def test_executions_are_filtered_and_evicted(self):
        store = MemoryStore(max_executions=2)
        definition = Definition.from_dict(sample_payload())
        first = Execution.new(definition, status=ExecutionStatus.COMPLETED)
        second = Execution.new(definition, status=ExecutionStatus.RUNNING)
        third = Execution.new(definition, status=ExecutionStatus.FAILED)

        for execution in (first, second, third):
            store.save_execution(execution)

        assert store.get_execution(first.id) is None
        assert [e.id for e in store.list_executions(definition_id="review")] == [second.id, third.id]
        assert store.list_executions(status=ExecutionStatus.FAILED) == [third]
