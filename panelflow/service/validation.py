"""Publish-time definition checks.

Every problem is collected; callers get the complete list rather than the
first failure.
"""
from __future__ import annotations

from collections import Counter
from typing import List

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from panelflow.logging import get_logger
from panelflow.service.errors import ValidationError
from panelflow.service.executors import ExecutorRegistry
from panelflow.service.graph import GraphIndex
from panelflow.storage.models import Definition, NodeKind

logger = get_logger(__name__)


def validate_definition(definition: Definition, registry: ExecutorRegistry) -> List[str]:
    errors: List[str] = []
    if not definition.nodes:
        return ["definition has no nodes"]

    counts = Counter(node.id for node in definition.nodes)
    for node_id, count in counts.items():
        if count > 1:
            errors.append(f"duplicate node id {node_id} ({count} occurrences)")

    for position, connection in enumerate(definition.connections):
        for end, node_id in (("source", connection.source), ("target", connection.target)):
            if node_id not in counts:
                errors.append(f"connection {position} {end} references unknown node {node_id}")

    graph = GraphIndex(definition)
    starts = definition.start_nodes()
    if len(starts) != 1:
        errors.append(f"definition must have exactly one start node, found {len(starts)}")
    if not definition.end_nodes():
        errors.append("definition must have at least one end node")
    elif graph.start is not None:
        reachable = graph.reachable()
        if not any(graph.nodes[p].kind == NodeKind.END for p in reachable):
            errors.append("no end node is reachable from the start node")
        for position, node in enumerate(graph.nodes):
            if position not in reachable and graph.index.get(node.id) == position:
                logger.info("definition_unreachable_node", definition_id=definition.id, node_id=node.id)

    for label, schema in (("input", definition.input_schema), ("output", definition.output_schema)):
        if schema is None:
            continue
        try:
            Draft202012Validator.check_schema(schema)
        except SchemaError as exc:
            errors.append(f"invalid {label} schema: {exc.message}")

    for node in definition.nodes:
        errors.extend(registry.validate_node(node))

    if graph.start is not None:
        for source, target in graph.cycles_without_condition():
            # Loops are allowed; one with no condition node cannot exit on its own
            logger.warning(
                "definition_unguarded_cycle",
                definition_id=definition.id,
                source=source,
                target=target,
            )
    return errors


def ensure_valid(definition: Definition, registry: ExecutorRegistry) -> None:
    errors = validate_definition(definition, registry)
    if errors:
        logger.info(
            "definition_validation_failed",
            definition_id=definition.id,
            error_count=len(errors),
        )
        raise ValidationError(f"definition {definition.id} is invalid", errors)
