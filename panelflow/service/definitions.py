from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional

from panelflow.logging import get_logger
from panelflow.service.errors import ConflictError, NotFoundError, ValidationError
from panelflow.service.executors import ExecutorRegistry
from panelflow.service.validation import ensure_valid
from panelflow.storage.errors import ConstraintViolation
from panelflow.storage.memory import MemoryStore
from panelflow.storage.models import Definition, DefinitionStatus

_EDITABLE_FIELDS = (
    "name",
    "description",
    "nodes",
    "connections",
    "input_schema",
    "output_schema",
    "config",
    "tags",
)


def bump_patch_version(version: str) -> str:
    """``1.0.0`` -> ``1.0.1``; anything unparsable restarts at ``1.0.1``."""
    parts = (version or "").split(".")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return "1.0.1"
    major, minor, patch = (int(p) for p in parts)
    return f"{major}.{minor}.{patch + 1}"


class DefinitionService:
    """Definition lifecycle: draft -> active <-> inactive -> archived.

    Edits always produce a new patch version in draft, so a changed graph is
    re-validated by :meth:`activate` before it can run again.
    """

    def __init__(self, store: MemoryStore, registry: ExecutorRegistry) -> None:
        self.store = store
        self.registry = registry
        self.logger = get_logger(__name__)

    def create(self, definition: Definition, *, created_by: Optional[str] = None) -> Definition:
        definition.status = DefinitionStatus.DRAFT
        if created_by:
            definition.created_by = created_by
        try:
            return self.store.create_definition(definition)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

    def get(self, definition_id: str) -> Definition:
        definition = self.store.get_definition(definition_id)
        if definition is None:
            raise NotFoundError(f"definition {definition_id} not found")
        return definition

    def list(self, status: Optional[DefinitionStatus] = None) -> List[Definition]:
        return self.store.list_definitions(status)

    def history(self, definition_id: str) -> List[Definition]:
        self.get(definition_id)
        return self.store.list_definition_versions(definition_id)

    def update(self, definition_id: str, changes: Dict[str, Any]) -> Definition:
        current = self.get(definition_id)
        if current.status == DefinitionStatus.ARCHIVED:
            raise ConflictError(f"definition {definition_id} is archived")
        unknown = sorted(set(changes) - set(_EDITABLE_FIELDS))
        if unknown:
            raise ValidationError("unsupported definition fields", [f"cannot edit {k}" for k in unknown])
        updated = copy.deepcopy(current)
        for key, value in changes.items():
            setattr(updated, key, copy.deepcopy(value))
        updated.version = bump_patch_version(current.version)
        updated.status = DefinitionStatus.DRAFT
        self.store.replace_definition(updated)
        self.logger.info(
            "definition_updated",
            definition_id=definition_id,
            previous_version=current.version,
            version=updated.version,
            fields=sorted(changes),
        )
        return updated

    def activate(self, definition_id: str) -> Definition:
        definition = self.get(definition_id)
        if definition.status == DefinitionStatus.ARCHIVED:
            raise ConflictError(f"definition {definition_id} is archived")
        ensure_valid(definition, self.registry)
        definition.status = DefinitionStatus.ACTIVE
        self.logger.info("definition_activated", definition_id=definition_id, version=definition.version)
        return definition

    def deactivate(self, definition_id: str) -> Definition:
        definition = self.get(definition_id)
        if definition.status != DefinitionStatus.ACTIVE:
            raise ConflictError(
                f"definition {definition_id} is {definition.status.value}, not active"
            )
        definition.status = DefinitionStatus.INACTIVE
        self.logger.info("definition_deactivated", definition_id=definition_id)
        return definition

    def archive(self, definition_id: str) -> Definition:
        """Soft delete: history and statistics stay, new runs are refused."""
        definition = self.get(definition_id)
        definition.status = DefinitionStatus.ARCHIVED
        self.logger.info("definition_archived", definition_id=definition_id)
        return definition

    def clone(
        self,
        definition_id: str,
        *,
        new_id: Optional[str] = None,
        name: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Definition:
        source = self.get(definition_id)
        copy_ = source.clone(new_id, name=name)
        created = self.create(copy_, created_by=created_by)
        self.logger.info("definition_cloned", source_id=definition_id, definition_id=created.id)
        return created
