from __future__ import annotations

from typing import Any, Sequence

from panelflow.logging import get_logger
from panelflow.storage.models import Execution, NodeRecord

logger = get_logger(__name__)


class ExecutionListener:
    """Observer of execution lifecycle transitions.

    Subclass and override the hooks of interest. Each execution-level hook
    fires exactly once per corresponding transition; node-level hooks fire
    once per node visit.
    """

    def on_started(self, execution: Execution) -> None:
        pass

    def on_completed(self, execution: Execution) -> None:
        pass

    def on_failed(self, execution: Execution, error: str) -> None:
        pass

    def on_cancelled(self, execution: Execution) -> None:
        pass

    def on_paused(self, execution: Execution) -> None:
        pass

    def on_resumed(self, execution: Execution) -> None:
        pass

    def on_timeout(self, execution: Execution) -> None:
        pass

    def on_retry(self, previous: Execution, retry: Execution) -> None:
        pass

    def on_node_started(self, execution: Execution, record: NodeRecord) -> None:
        pass

    def on_node_completed(self, execution: Execution, record: NodeRecord) -> None:
        pass

    def on_node_failed(self, execution: Execution, record: NodeRecord) -> None:
        pass

    def on_node_skipped(self, execution: Execution, record: NodeRecord) -> None:
        pass


def notify_listeners(listeners: Sequence[ExecutionListener], hook: str, *args: Any) -> None:
    """Call ``hook`` on every listener; a failing listener never affects the run."""
    for listener in listeners:
        callback = getattr(listener, hook, None)
        if callback is None:
            continue
        try:
            callback(*args)
        except Exception as exc:
            logger.warning(
                "listener_failed",
                listener=type(listener).__name__,
                hook=hook,
                error_type=type(exc).__name__,
                error=str(exc),
            )
