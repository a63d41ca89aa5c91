"""Tests for the per-kind node executors and the executor registry."""

from __future__ import annotations

import time
from typing import Any, Dict

import pytest

from panelflow.service.errors import ConflictError, NotFoundError
from panelflow.service.executors import (
    ConditionExecutor,
    DelayExecutor,
    EndExecutor,
    ExecutorRegistry,
    NotificationExecutor,
    RoleExecutor,
    ScriptExecutor,
    StartExecutor,
    ToolExecutor,
    build_default_registry,
    parse_duration_ms,
)
from panelflow.service.notifications import NotificationChannel, NotificationDispatcher, SystemTransport
from panelflow.service.roles import CallableRoleInvoker
from panelflow.service.tools import ToolRegistry, ToolSpec
from panelflow.storage.models import Definition, Execution, Node, NodeKind


def make_run(*nodes: Node, input_data: Dict[str, Any] | None = None, **definition_fields: Any):
    definition = Definition(id="def-1", name="equity review", nodes=list(nodes), **definition_fields)
    return definition, Execution.new(definition, input_data or {})


# =============================================================================
# Start / End
# =============================================================================


class TestStartAndEnd:
    @pytest.mark.asyncio
    async def test_start_sets_initial_progress(self):
        node = Node("start", NodeKind.START)
        definition, execution = make_run(node)

        result = await StartExecutor().execute(definition, execution, node, {})

        assert result.success
        assert execution.progress == 5
        assert result.output["workflow_name"] == "equity review"
        assert result.output["workflow_version"] == "1.0.0"

    @pytest.mark.asyncio
    async def test_end_collects_configured_outputs(self):
        node = Node("end", NodeKind.END, config={"outputs": ["verdict", "missing"]})
        definition, execution = make_run(node)
        context = {"verdict": "buy", "noise": 1, "execution_id": execution.id}

        result = await EndExecutor().execute(definition, execution, node, context)

        assert result.output["final_output"] == {"verdict": "buy"}
        assert result.output["execution_summary"]["total_nodes"] == 1

    @pytest.mark.asyncio
    async def test_end_falls_back_to_output_schema(self):
        node = Node("end", NodeKind.END)
        schema = {"type": "object", "properties": {"score": {"type": "number"}}}
        definition, execution = make_run(node, output_schema=schema)

        result = await EndExecutor().execute(definition, execution, node, {"score": 0.7, "other": 1})

        assert result.output["final_output"] == {"score": 0.7}

    @pytest.mark.asyncio
    async def test_end_without_outputs_excludes_metadata(self):
        node = Node("end", NodeKind.END)
        definition, execution = make_run(node)
        context = {"score": 0.7, "progress": 90, "workflow_name": "equity review"}

        result = await EndExecutor().execute(definition, execution, node, context)

        assert result.output["final_output"] == {"score": 0.7}

    def test_end_rejects_non_list_outputs(self):
        node = Node("end", NodeKind.END, config={"outputs": "score"})

        assert EndExecutor().validate(node) == ["outputs must be a list of context keys"]


# =============================================================================
# Role
# =============================================================================


class TestRoleExecutor:
    @pytest.mark.asyncio
    async def test_invokes_role_with_rendered_prompt(self):
        seen: Dict[str, Any] = {}

        def quant(prompt, context):
            seen["prompt"] = prompt
            seen["context"] = context
            return {"recommendation": "buy", "confidence": 0.8, "target_price": 120}

        invoker = CallableRoleInvoker({"quant": quant})
        node = Node(
            "quant_view",
            NodeKind.ROLE,
            config={
                "role": "quant",
                "prompt": "Assess ${ticker}",
                "context": {"horizon": "${horizon}"},
                "output_mapping": {"quant_confidence": "confidence"},
            },
        )
        definition, execution = make_run(node, input_data={"ticker": "ACME", "horizon": 90})

        result = await RoleExecutor(invoker).execute(definition, execution, node, {})

        assert result.success
        assert seen["prompt"] == "Assess ACME"
        assert seen["context"]["horizon"] == 90
        assert seen["context"]["node_id"] == "quant_view"
        assert result.output["quant_view"]["recommendation"] == "buy"
        assert result.output["quant_view"]["target_price"] == 120
        assert result.output["quant_confidence"] == 0.8

    @pytest.mark.asyncio
    async def test_unknown_role_fails_node(self):
        node = Node("view", NodeKind.ROLE, config={"role": "ghost"})
        definition, execution = make_run(node)

        result = await RoleExecutor(CallableRoleInvoker()).execute(definition, execution, node, {})

        assert not result.success
        assert result.error == "unknown role ghost"

    @pytest.mark.asyncio
    async def test_debate_from_earlier_assessments(self):
        node = Node(
            "panel",
            NodeKind.ROLE,
            config={"debate": {"subject": "${ticker}", "assessments_from": ["quant", "macro"]}},
        )
        definition, execution = make_run(node, input_data={"ticker": "ACME"})
        context = {
            "quant": {"role": "quant", "recommendation": "buy", "confidence": 0.8},
            "macro": {"role": "macro", "recommendation": "accumulate", "confidence": 0.6},
        }

        result = await RoleExecutor(None).execute(definition, execution, node, context)

        assert result.success
        panel = result.output["panel"]
        assert panel["subject"] == "ACME"
        assert panel["round_count"] == 1
        assert panel["recommendation"] == "bullish"
        assert panel["confidence"] == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_debate_without_any_opening_fails(self):
        node = Node("panel", NodeKind.ROLE, config={"debate": {"assessments_from": ["quant"]}})
        definition, execution = make_run(node)

        result = await RoleExecutor(None).execute(definition, execution, node, {})

        assert not result.success

    def test_validation(self):
        executor = RoleExecutor(None)

        assert executor.validate(Node("r", NodeKind.ROLE)) == ["role is required", "no role invoker configured"]
        assert executor.validate(Node("d", NodeKind.ROLE, config={"debate": {"roles": ["a"], "variant": "shouting"}})) == [
            "unknown debate variant 'shouting'"
        ]
        assert executor.validate(Node("d", NodeKind.ROLE, config={"debate": {"roles": ["a"], "bull_role": "a"}})) == [
            "bull_role and bear_role must be configured together"
        ]


# =============================================================================
# Tool
# =============================================================================


class TestToolExecutor:
    @pytest.fixture
    def tools(self):
        registry = ToolRegistry()

        @registry.tool(
            "price_lookup",
            input_schema={"type": "object", "required": ["ticker"], "properties": {"ticker": {"type": "string"}}},
        )
        def price_lookup(params):
            return {"ticker": params["ticker"], "price": 101.5}

        @registry.tool("broken")
        def broken(params):
            raise RuntimeError("feed offline")

        registry.register(ToolSpec(name="slow", handler=lambda params: time.sleep(0.3), timeout_seconds=0.05))
        return registry

    @pytest.mark.asyncio
    async def test_invokes_tool_with_resolved_parameters(self, tools):
        node = Node(
            "price",
            NodeKind.TOOL,
            config={"tool": "price_lookup", "parameters": {"ticker": "${ticker}"}, "output_mapping": {"last": "price"}},
        )
        definition, execution = make_run(node, input_data={"ticker": "ACME"})

        result = await ToolExecutor(tools).execute(definition, execution, node, {})

        assert result.success
        assert result.output == {"price": {"ticker": "ACME", "price": 101.5}, "last": 101.5}

    @pytest.mark.asyncio
    async def test_input_validation_failure_fails_node(self, tools):
        node = Node("price", NodeKind.TOOL, config={"tool": "price_lookup", "parameters": {}})
        definition, execution = make_run(node)

        result = await ToolExecutor(tools).execute(definition, execution, node, {})

        assert not result.success
        assert result.output["tool_error"]["error_code"] == "validation_error"

    @pytest.mark.asyncio
    async def test_continue_on_error(self, tools):
        node = Node("feed", NodeKind.TOOL, config={"tool": "broken", "continue_on_error": True})
        definition, execution = make_run(node)

        result = await ToolExecutor(tools).execute(definition, execution, node, {})

        assert result.success
        assert result.output["feed"] is None
        assert result.output["tool_error"]["error_code"] == "tool_error"

    @pytest.mark.asyncio
    async def test_timeout(self, tools):
        node = Node("wait", NodeKind.TOOL, config={"tool": "slow"})
        definition, execution = make_run(node)

        result = await ToolExecutor(tools).execute(definition, execution, node, {})

        assert not result.success
        assert "timed out" in result.error

    def test_validation(self, tools):
        executor = ToolExecutor(tools)

        assert executor.validate(Node("t", NodeKind.TOOL)) == ["tool is required"]
        assert executor.validate(Node("t", NodeKind.TOOL, config={"tool": "nope"})) == ["unknown tool nope"]
        assert executor.validate(Node("t", NodeKind.TOOL, config={"tool": "broken"})) == []


# =============================================================================
# Condition / Script
# =============================================================================


class TestConditionAndScript:
    @pytest.mark.asyncio
    async def test_condition_sets_branch(self):
        node = Node("gate", NodeKind.CONDITION, config={"expression": "${score} >= 0.5"})
        definition, execution = make_run(node)

        passed = await ConditionExecutor().execute(definition, execution, node, {"score": 0.6})
        failed = await ConditionExecutor().execute(definition, execution, node, {"score": 0.4})

        assert passed.branch is True
        assert passed.output["gate_result"] is True
        assert failed.branch is False
        assert failed.output["condition_result"] is False

    @pytest.mark.asyncio
    async def test_script_exposes_context(self):
        node = Node(
            "spread",
            NodeKind.SCRIPT,
            config={
                "script": "gap = ctx_bull - ctx_bear\n{'gap': round(gap, 2), 'wide': gap > 0.3}",
                "output_mapping": {"spread_gap": "gap"},
            },
        )
        definition, execution = make_run(node)

        result = await ScriptExecutor().execute(definition, execution, node, {"bull": 0.9, "bear": 0.4})

        assert result.success
        assert result.output["script_result"] == {"gap": 0.5, "wide": True}
        assert result.output["script_wide"] is True
        assert result.output["spread_gap"] == 0.5

    @pytest.mark.asyncio
    async def test_script_runtime_error_fails_node(self):
        node = Node("oops", NodeKind.SCRIPT, config={"script": "1 / 0"})
        definition, execution = make_run(node)

        result = await ScriptExecutor().execute(definition, execution, node, {})

        assert not result.success
        assert result.error.startswith("script failed")

    def test_script_validation(self):
        executor = ScriptExecutor()

        assert executor.validate(Node("s", NodeKind.SCRIPT)) == ["script is required"]
        assert executor.validate(Node("s", NodeKind.SCRIPT, config={"script": "1", "language": "lua"})) == [
            "unsupported script language 'lua'"
        ]
        assert executor.validate(Node("s", NodeKind.SCRIPT, config={"script": "ctx.clear()"}))


# =============================================================================
# Delay
# =============================================================================


class TestDelayExecutor:
    @pytest.mark.parametrize(
        "value, expected",
        [(250, 250.0), ("250ms", 250.0), ("5s", 5000.0), ("2m", 120000.0), ("1h", 3600000.0), ("1.5s", 1500.0)],
    )
    def test_parse_duration(self, value, expected):
        assert parse_duration_ms(value) == expected

    def test_parse_duration_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_duration_ms("soon")

    @pytest.mark.asyncio
    async def test_waits_for_resolved_delay(self):
        node = Node("pause", NodeKind.DELAY, config={"delay": "${wait}"})
        definition, execution = make_run(node, input_data={"wait": "10ms"})

        result = await DelayExecutor().execute(definition, execution, node, {})

        assert result.success
        assert result.output == {"delay_ms": 10.0, "delay_completed": True}

    @pytest.mark.asyncio
    async def test_out_of_range_delay_fails(self):
        node = Node("pause", NodeKind.DELAY, config={"delay_seconds": -1})
        definition, execution = make_run(node)

        result = await DelayExecutor().execute(definition, execution, node, {})

        assert not result.success
        assert result.error == "delay must not be negative"

    def test_validation(self):
        executor = DelayExecutor()

        assert executor.validate(Node("d", NodeKind.DELAY, config={"delay": "25h"})) == ["delay must not exceed 24 hours"]
        assert executor.validate(Node("d", NodeKind.DELAY, config={"delay": "${later}"})) == []
        assert executor.validate(Node("d", NodeKind.DELAY)) == []


# =============================================================================
# Notification
# =============================================================================


class TestNotificationExecutor:
    @pytest.mark.asyncio
    async def test_system_notification_is_delivered(self):
        system = SystemTransport()
        dispatcher = NotificationDispatcher({NotificationChannel.SYSTEM: system})
        node = Node("notify", NodeKind.NOTIFICATION, config={"message": "${ticker} reviewed", "title": "Review"})
        definition, execution = make_run(node, input_data={"ticker": "ACME"})

        result = await NotificationExecutor(dispatcher).execute(definition, execution, node, {})

        assert result.output["notification_sent"] is True
        assert [n.message for n in system.messages()] == ["ACME reviewed"]
        assert system.messages()[0].execution_id == execution.id

    @pytest.mark.asyncio
    async def test_delivery_failure_does_not_fail_node(self):
        node = Node("notify", NodeKind.NOTIFICATION, config={"message": "hi", "channel": "sms"})
        definition, execution = make_run(node)

        result = await NotificationExecutor(NotificationDispatcher()).execute(definition, execution, node, {})

        assert result.success
        assert result.output["notification_sent"] is False
        assert "no transport" in result.output["notification_error"]

    @pytest.mark.asyncio
    async def test_unknown_channel_does_not_fail_node(self):
        node = Node("notify", NodeKind.NOTIFICATION, config={"message": "hi", "channel": "pigeon"})
        definition, execution = make_run(node)

        result = await NotificationExecutor(NotificationDispatcher()).execute(definition, execution, node, {})

        assert result.success
        assert "notification_error" in result.output

    def test_validation(self):
        executor = NotificationExecutor(NotificationDispatcher())

        assert executor.validate(Node("n", NodeKind.NOTIFICATION)) == ["notification message is required"]
        assert executor.validate(Node("n", NodeKind.NOTIFICATION, config={"message": "x", "channel": "email"})) == [
            "email notifications require at least one recipient"
        ]
        assert executor.validate(
            Node("n", NodeKind.NOTIFICATION, config={"message": "x", "channel": "email", "recipients": "${owner}"})
        ) == []


# =============================================================================
# Registry
# =============================================================================


class TestExecutorRegistry:
    def test_default_registry_covers_every_kind(self):
        registry = build_default_registry()

        assert set(registry.kinds()) == set(NodeKind)

    def test_duplicate_registration_conflicts(self):
        registry = ExecutorRegistry([StartExecutor()])

        with pytest.raises(ConflictError):
            registry.register(StartExecutor())
        registry.register(StartExecutor(), replace=True)

    def test_missing_executor(self):
        registry = ExecutorRegistry([StartExecutor()])

        with pytest.raises(NotFoundError):
            registry.get(NodeKind.END)
        assert registry.validate_node(Node("e", NodeKind.END)) == ["node e: no executor registered for kind end"]

    def test_validate_node_prefixes_node_id(self):
        registry = build_default_registry()

        assert registry.validate_node(Node("gate", NodeKind.CONDITION)) == ["node gate: condition expression is required"]
