from __future__ import annotations

import threading
from typing import Optional, Union

from panelflow.config import get_settings, reset_settings_cache
from panelflow.logging import get_logger
from panelflow.service.debate import StructuredDebateEngine
from panelflow.service.definitions import DefinitionService
from panelflow.service.executors import build_default_registry
from panelflow.service.notifications import NotificationDispatcher
from panelflow.service.roles import CallableRoleInvoker, HttpRoleInvoker
from panelflow.service.tools import ToolRegistry
from panelflow.service.workflow import WorkflowEngine
from panelflow.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Holds the process-wide service instances."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = MemoryStore()
        self.tools = ToolRegistry()
        self.role_invoker: Union[HttpRoleInvoker, CallableRoleInvoker]
        if self.settings.role_service_url:
            self.role_invoker = HttpRoleInvoker(
                self.settings.role_service_url,
                timeout=self.settings.role_service_timeout,
            )
        else:
            # Roles are registered in-process by the embedding application
            self.role_invoker = CallableRoleInvoker()
        self.notifications = NotificationDispatcher.from_settings(self.settings)
        self.debate = StructuredDebateEngine(
            self.role_invoker,
            max_rounds=self.settings.debate_max_rounds,
            early_stop_threshold=self.settings.debate_early_stop_threshold,
        )
        self.registry = build_default_registry(
            invoker=self.role_invoker,
            tools=self.tools,
            dispatcher=self.notifications,
            debate_engine=self.debate,
        )
        self.engine = WorkflowEngine(self.registry, store=self.store, settings=self.settings)
        self.definitions = DefinitionService(self.store, self.registry)

        logger.info(
            "runtime_initialized",
            role_service=bool(self.settings.role_service_url),
            email_configured=self.settings.smtp_host is not None,
            sms_configured=self.settings.sms_gateway_url is not None,
            max_concurrent_executions=self.engine.max_concurrent_executions,
        )

    def close(self) -> None:
        self.engine.shutdown(wait=False)
        if isinstance(self.role_invoker, HttpRoleInvoker):
            self.role_invoker.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists, the slow path re-checks under the lock before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
