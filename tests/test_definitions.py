"""Tests for the definition lifecycle service."""

import pytest

from panelflow.service.definitions import DefinitionService, bump_patch_version
from panelflow.service.errors import ConflictError, NotFoundError, ValidationError
from panelflow.service.executors import build_default_registry
from panelflow.storage.memory import MemoryStore
from panelflow.storage.models import Connection, Definition, DefinitionStatus, Node, NodeKind


@pytest.fixture
def service():
    return DefinitionService(MemoryStore(), build_default_registry())


def simple_definition(definition_id="review"):
    return Definition(
        id=definition_id,
        name="review",
        nodes=[Node("start", NodeKind.START), Node("end", NodeKind.END)],
        connections=[Connection("start", "end")],
        tags=["equity"],
    )


@pytest.mark.parametrize(
    "version, expected",
    [("1.0.0", "1.0.1"), ("2.3.9", "2.3.10"), ("v1", "1.0.1"), ("", "1.0.1")],
)
def test_bump_patch_version(version, expected):
    assert bump_patch_version(version) == expected


class TestCreateAndRead:
    def test_create_forces_draft(self, service):
        definition = simple_definition()
        definition.status = DefinitionStatus.ACTIVE

        created = service.create(definition, created_by="analyst-1")

        assert created.status == DefinitionStatus.DRAFT
        assert created.created_by == "analyst-1"
        assert service.get("review") is created

    def test_duplicate_id_conflicts(self, service):
        service.create(simple_definition())

        with pytest.raises(ConflictError) as excinfo:
            service.create(simple_definition())

        assert excinfo.value.message == "definition review already exists"
        assert excinfo.value.detail == {"record": "definition", "definition_id": "review"}

    def test_missing_definition(self, service):
        with pytest.raises(NotFoundError):
            service.get("nope")
        with pytest.raises(NotFoundError):
            service.history("nope")

    def test_list_filters_by_status(self, service):
        service.create(simple_definition("a"))
        service.create(simple_definition("b"))
        service.activate("b")

        assert [d.id for d in service.list()] == ["a", "b"]
        assert [d.id for d in service.list(DefinitionStatus.ACTIVE)] == ["b"]


class TestLifecycle:
    def test_activate_validates(self, service):
        broken = simple_definition()
        broken.connections = []
        service.create(broken)

        with pytest.raises(ValidationError) as excinfo:
            service.activate("review")

        assert excinfo.value.errors == ["no end node is reachable from the start node"]
        assert service.get("review").status == DefinitionStatus.DRAFT

    def test_activate_deactivate_archive(self, service):
        service.create(simple_definition())

        assert service.activate("review").status == DefinitionStatus.ACTIVE
        assert service.deactivate("review").status == DefinitionStatus.INACTIVE
        with pytest.raises(ConflictError):
            service.deactivate("review")
        assert service.archive("review").status == DefinitionStatus.ARCHIVED
        with pytest.raises(ConflictError):
            service.activate("review")

    def test_update_creates_new_draft_version(self, service):
        service.create(simple_definition())
        service.activate("review")

        updated = service.update("review", {"description": "quarterly review", "tags": ["equity", "q3"]})

        assert updated.version == "1.0.1"
        assert updated.status == DefinitionStatus.DRAFT
        assert updated.description == "quarterly review"
        history = service.history("review")
        assert [d.version for d in history] == ["1.0.0"]
        assert history[0].status == DefinitionStatus.ACTIVE
        assert history[0].description is None

    def test_update_rejects_unknown_fields(self, service):
        service.create(simple_definition())

        with pytest.raises(ValidationError) as excinfo:
            service.update("review", {"usage_count": 10, "name": "x"})

        assert excinfo.value.errors == ["cannot edit usage_count"]

    def test_archived_definition_cannot_be_updated(self, service):
        service.create(simple_definition())
        service.archive("review")

        with pytest.raises(ConflictError):
            service.update("review", {"name": "again"})

    def test_clone_resets_version_and_statistics(self, service):
        source = service.create(simple_definition())
        service.activate("review")
        source.record_outcome(120.0, True)

        copy = service.clone("review", new_id="review-2", created_by="analyst-2")

        assert copy.id == "review-2"
        assert copy.name == "review_copy"
        assert copy.version == "1.0.0"
        assert copy.status == DefinitionStatus.DRAFT
        assert copy.usage_count == 0
        assert copy.created_by == "analyst-2"
        assert copy.nodes is not source.nodes
        assert service.get("review-2") is copy
