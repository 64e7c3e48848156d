"""Unit tests for the turn controller loop."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from clawloop.audit import AuditEventType
from clawloop.audit import AuditLogger
from clawloop.config import AuditConfig
from clawloop.config import GatewayConfig
from clawloop.config import PolicyConfig
from clawloop.config import TurnConfig
from clawloop.engine.gateway import ProviderGateway
from clawloop.engine.retrieval import HybridRetriever
from clawloop.errors import MemoryStoreError
from clawloop.errors import MemoryStoreErrorKind
from clawloop.errors import PolicyError
from clawloop.errors import PolicyErrorKind
from clawloop.errors import ProviderError
from clawloop.errors import ProviderErrorKind
from clawloop.errors import TurnErrorKind
from clawloop.memory.schemas import MemoryRecord
from clawloop.memory.schemas import RecordFilter
from clawloop.memory.store import InMemoryMemoryStore
from clawloop.models.schemas import AutonomyLevel
from clawloop.models.schemas import ProviderResponse
from clawloop.models.schemas import ToolCall
from clawloop.models.schemas import TurnRole
from clawloop.observability import counters_snapshot
from clawloop.policy import PolicyEngine
from clawloop.policy.schemas import PolicyOutcome
from clawloop.runtime.controller import APOLOGY
from clawloop.runtime.controller import ChannelInput
from clawloop.runtime.controller import TurnController
from clawloop.runtime.controller import TurnState
from clawloop.tools import FunctionTool
from clawloop.tools import ToolExecutor
from clawloop.tools import ToolSafety
from tests.helpers.fakes import ScriptedProvider
from tests.helpers.fakes import SleepRecorder
from tests.helpers.fakes import lookup_tool
from tests.helpers.fakes import tool_call_response
from tests.helpers.fakes import write_tool

FULL = PolicyConfig(autonomy_level="full")


class QueryFailingStore(InMemoryMemoryStore):
    async def query(self, record_filter=None):
        raise MemoryStoreError(MemoryStoreErrorKind.UNAVAILABLE, "redis down")


class AppendFailingStore(InMemoryMemoryStore):
    async def append(self, record):
        raise MemoryStoreError(MemoryStoreErrorKind.UNAVAILABLE, "redis down")


def _controller(
    provider: ScriptedProvider,
    tools=(),
    *,
    policy: PolicyConfig = FULL,
    store: InMemoryMemoryStore | None = None,
    turn: TurnConfig | None = None,
    audit: AuditLogger | None = None,
) -> tuple[TurnController, InMemoryMemoryStore]:
    store = store if store is not None else InMemoryMemoryStore()
    executor = ToolExecutor(tools)
    gateway = ProviderGateway(
        [("primary", 0, provider)],
        GatewayConfig(max_attempts_per_provider=1),
        sleep=SleepRecorder(),
    )
    controller = TurnController(
        store=store,
        retriever=HybridRetriever(store),
        gateway=gateway,
        policy=PolicyEngine(policy, executor.descriptors),
        executor=executor,
        config=turn,
        audit_logger=audit,
    )
    return controller, store


# ---------------------------------------------------------------------------
# Plain answers
# ---------------------------------------------------------------------------


class TestDirectAnswer:
    async def test_answer_without_memory(self):
        provider = ScriptedProvider("4")
        controller, store = _controller(provider)

        outcome = await controller.run(ChannelInput("What's 2+2"))

        assert outcome.state is TurnState.done
        assert outcome.response == "4"
        assert outcome.snippets_used == 0
        assert outcome.iterations == 1
        assert outcome.provider_id == "primary"
        assert outcome.persisted
        assert provider.call_count == 1
        records = await store.query(RecordFilter())
        assert [r.content for r in records if r.role == "agent"] == ["4"]
        assert [r.content for r in records if r.role == "user"] == ["What's 2+2"]
        assert outcome.transitions == [
            TurnState.idle,
            TurnState.retrieving,
            TurnState.prompting,
            TurnState.awaiting_provider,
            TurnState.parsing_response,
            TurnState.persisting,
            TurnState.done,
        ]

    async def test_relevant_memory_enters_prompt(self):
        store = InMemoryMemoryStore()
        await store.append(MemoryRecord(content="the user likes green tea"))
        provider = ScriptedProvider("green tea")
        controller, _ = _controller(provider, store=store)

        outcome = await controller.run(ChannelInput("which tea do I like"))

        assert outcome.snippets_used == 1
        assert "the user likes green tea" in provider.calls[0][0].content

    async def test_history_carries_into_next_turn(self):
        provider = ScriptedProvider("Nice to meet you", "You are Ada")
        controller, _ = _controller(provider)

        await controller.run(ChannelInput("My name is Ada", conversation_id="c1"))
        await controller.run(ChannelInput("Who am I?", conversation_id="c1"))

        second = [(m.role, m.content) for m in provider.calls[1][1:]]
        assert second == [
            ("user", "My name is Ada"),
            ("assistant", "Nice to meet you"),
            ("user", "Who am I?"),
        ]
        assert [t.seq for t in controller.history("c1")] == [1, 2, 3, 4]
        assert controller.history("other") == []

    async def test_completion_audited(self, tmp_path: Path):
        audit = AuditLogger(AuditConfig(file_path=str(tmp_path / "audit.jsonl")))
        controller, _ = _controller(ScriptedProvider("ok"), audit=audit)

        outcome = await controller.run(ChannelInput("hi"), turn_id="turn-1")

        events = await audit.read_events(event_type=AuditEventType.TURN_COMPLETED)
        assert outcome.turn_id == "turn-1"
        assert [e.payload["turn_id"] for e in events] == ["turn-1"]


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class TestToolCalls:
    async def test_result_fed_back_to_model(self):
        calls: list[dict] = []
        provider = ScriptedProvider(tool_call_response("lookup", {"key": "a"}, call_id="c1"), "a is value-of-a")
        controller, _ = _controller(provider, [lookup_tool(calls)])

        outcome = await controller.run(ChannelInput("look up a"))

        assert outcome.state is TurnState.done
        assert outcome.response == "a is value-of-a"
        assert outcome.iterations == 2
        assert calls == [{"key": "a"}]
        assert [r.output for r in outcome.tool_results] == ["value-of-a"]
        assert TurnState.executing_tools in outcome.transitions
        tool_message = provider.calls[1][-1]
        assert (tool_message.role, tool_message.content, tool_message.tool_call_id) == (
            "tool",
            "value-of-a",
            "c1",
        )
        assert provider.calls[1][-2].tool_calls[0].id == "c1"

    async def test_tagged_tool_call_in_text(self):
        provider = ScriptedProvider(
            '<tool_call>{"name": "lookup", "arguments": {"key": "b"}}</tool_call>',
            "done",
        )
        controller, _ = _controller(provider, [lookup_tool()])

        outcome = await controller.run(ChannelInput("look up b"))

        assert outcome.tool_results[0].output == "value-of-b"
        assert outcome.response == "done"

    async def test_tool_error_is_recoverable(self):
        provider = ScriptedProvider(tool_call_response("lookup", {}, call_id="c1"), "sorry")
        controller, _ = _controller(provider, [lookup_tool()])

        outcome = await controller.run(ChannelInput("look up"))

        assert outcome.state is TurnState.done
        assert provider.calls[1][-1].content.startswith("[tool error: invalid_args]")

    async def test_read_only_calls_run_concurrently(self):
        barrier = asyncio.Barrier(2)

        async def _wait(arguments: dict) -> str:
            await asyncio.wait_for(barrier.wait(), timeout=2)
            return arguments["key"]

        tool = FunctionTool("lookup", _wait, safety=ToolSafety.read_only_tool())
        response = ProviderResponse(
            tool_calls=[
                ToolCall(id="a", name="lookup", arguments={"key": "first"}),
                ToolCall(id="b", name="lookup", arguments={"key": "second"}),
            ]
        )
        provider = ScriptedProvider(response, "both done")
        controller, _ = _controller(provider, [tool])

        outcome = await controller.run(ChannelInput("two lookups"))

        assert outcome.response == "both done"
        # results are replayed in request order
        assert [m.content for m in provider.calls[1][-2:]] == ["first", "second"]

    async def test_side_effecting_calls_run_one_at_a_time(self):
        events: list[str] = []

        async def _write(arguments: dict) -> str:
            events.append(f"enter {arguments['path']}")
            await asyncio.sleep(0.01)
            events.append(f"exit {arguments['path']}")
            return "ok"

        tool = FunctionTool(
            "write_file",
            _write,
            safety=ToolSafety(read_only=False, required_level=AutonomyLevel.full),
        )
        response = ProviderResponse(
            tool_calls=[
                ToolCall(id="w1", name="write_file", arguments={"path": "a"}),
                ToolCall(id="w2", name="write_file", arguments={"path": "b"}),
                ToolCall(id="w3", name="write_file", arguments={"path": "c"}),
            ]
        )
        provider = ScriptedProvider(response, "written")
        controller, _ = _controller(provider, [tool])

        outcome = await controller.run(ChannelInput("write three files"))

        assert outcome.response == "written"
        assert events == ["enter a", "exit a", "enter b", "exit b", "enter c", "exit c"]
        assert [r.call_id for r in outcome.tool_results] == ["w1", "w2", "w3"]

    async def test_reused_call_id_in_later_iteration_keeps_both_results(self):
        calls: list[dict] = []
        provider = ScriptedProvider(
            tool_call_response("lookup", {"key": "a"}, call_id="call_0"),
            tool_call_response("lookup", {"key": "b"}, call_id="call_0"),
            "done",
        )
        controller, _ = _controller(provider, [lookup_tool(calls)])

        outcome = await controller.run(ChannelInput("look up a then b", conversation_id="c1"))

        assert calls == [{"key": "a"}, {"key": "b"}]
        assert [r.output for r in outcome.tool_results] == ["value-of-a", "value-of-b"]
        call_ids = [r.call_id for r in outcome.tool_results]
        assert call_ids[0] == "call_0"
        assert call_ids[1] == f"{outcome.turn_id}:2:0"
        assert controller.history("c1")[-1].tool_call_ids == call_ids
        # the model sees the re-keyed id on both the request and the result
        assert provider.calls[2][-2].tool_calls[0].id == call_ids[1]
        assert provider.calls[2][-1].tool_call_id == call_ids[1]

    async def test_unknown_tool_is_refused(self):
        provider = ScriptedProvider(tool_call_response("rm_rf", call_id="x"), "ok")
        controller, _ = _controller(provider, [lookup_tool()])

        outcome = await controller.run(ChannelInput("delete everything"))

        assert outcome.decisions[0].outcome is PolicyOutcome.deny
        assert provider.calls[1][-1].content.startswith("[policy denied: unknown_tool]")


class TestPolicyGate:
    async def test_confirmation_required_holds_call(self):
        calls: list[dict] = []
        provider = ScriptedProvider(
            tool_call_response("write_file", {"path": "/tmp/x"}, call_id="w1")
        )
        controller, store = _controller(
            provider, [write_tool(calls)], policy=PolicyConfig(autonomy_level="confirm-required")
        )

        outcome = await controller.run(ChannelInput("write it", conversation_id="c1"))

        assert outcome.state is TurnState.done
        assert calls == []
        assert provider.call_count == 1
        assert [d.outcome for d in outcome.decisions] == [PolicyOutcome.ask_confirmation]
        assert [p.call_id for p in outcome.pending_confirmations] == ["w1"]
        assert "confirmation" in outcome.response
        assert [p.call_id for p in controller.pending_confirmations("c1")] == ["w1"]

    async def test_confirm_runs_held_call_once(self):
        calls: list[dict] = []
        provider = ScriptedProvider(
            tool_call_response("write_file", {"path": "/tmp/x"}, call_id="w1")
        )
        controller, store = _controller(
            provider, [write_tool(calls)], policy=PolicyConfig(autonomy_level="confirm-required")
        )
        await controller.run(ChannelInput("write it", conversation_id="c1"))

        outcome = await controller.confirm("c1", "w1")

        assert calls == [{"path": "/tmp/x"}]
        assert outcome.response == "Ran write_file: wrote /tmp/x"
        assert outcome.decisions[0].outcome is PolicyOutcome.allow
        assert controller.pending_confirmations("c1") == []
        assert controller.history("c1")[-1].role is TurnRole.agent
        with pytest.raises(KeyError):
            await controller.confirm("c1", "w1")

    async def test_only_requesting_sender_may_confirm(self):
        calls: list[dict] = []
        provider = ScriptedProvider(
            tool_call_response("write_file", {"path": "/tmp/x"}, call_id="w1")
        )
        controller, _ = _controller(
            provider, [write_tool(calls)], policy=PolicyConfig(autonomy_level="confirm-required")
        )
        outcome = await controller.run(ChannelInput("write it", conversation_id="c1", sender="alice"))
        assert outcome.pending_confirmations[0].sender == "alice"

        for approver in (None, "bob"):
            with pytest.raises(PolicyError) as exc_info:
                await controller.confirm("c1", "w1", sender=approver)
            assert exc_info.value.kind is PolicyErrorKind.WRONG_APPROVER
        assert calls == []

        confirmed = await controller.confirm("c1", "w1", sender="ALICE")
        assert confirmed.response == "Ran write_file: wrote /tmp/x"
        assert calls == [{"path": "/tmp/x"}]

    async def test_confirmed_call_still_respects_deny_list(self):
        calls: list[dict] = []
        provider = ScriptedProvider(
            tool_call_response("write_file", {"path": "/tmp/x"}, call_id="w1")
        )
        controller, _ = _controller(
            provider, [write_tool(calls)], policy=PolicyConfig(autonomy_level="confirm-required")
        )
        await controller.run(ChannelInput("write it", conversation_id="c1"))
        controller._policy.set_level(AutonomyLevel.read_only)

        outcome = await controller.confirm("c1", "w1")

        assert calls == []
        assert outcome.response.startswith("Could not run write_file: [policy denied: autonomy_read_only]")

    async def test_denied_call_is_reported_to_model(self):
        calls: list[dict] = []
        provider = ScriptedProvider(
            tool_call_response("write_file", {"path": "/tmp/x"}, call_id="w1"),
            "I am not allowed to write files.",
        )
        controller, _ = _controller(
            provider, [write_tool(calls)], policy=PolicyConfig(autonomy_level="read-only")
        )

        outcome = await controller.run(ChannelInput("write it"))

        assert calls == []
        assert outcome.response == "I am not allowed to write files."
        assert provider.calls[1][-1].content.startswith("[policy denied: autonomy_read_only]")
        assert outcome.pending_confirmations == []


# ---------------------------------------------------------------------------
# Failure modes
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_iteration_bound(self):
        provider = ScriptedProvider(tool_call_response("lookup", {"key": "a"}))
        controller, store = _controller(
            provider, [lookup_tool()], turn=TurnConfig(max_iterations=2)
        )

        outcome = await controller.run(ChannelInput("loop forever"))

        assert outcome.state is TurnState.failed
        assert outcome.error is TurnErrorKind.MAX_ITERATIONS_EXCEEDED
        assert outcome.iterations == 2
        assert provider.call_count == 2
        assert "lookup (ok), lookup (ok)" in outcome.response
        assert not outcome.persisted
        assert await store.count() == 0

    async def test_provider_exhaustion_apologizes(self):
        provider = ScriptedProvider(ProviderError(ProviderErrorKind.FATAL, "bad request"))
        controller, store = _controller(provider)

        outcome = await controller.run(ChannelInput("hi"))

        assert outcome.state is TurnState.failed
        assert outcome.response == APOLOGY
        assert outcome.error is None
        assert "all providers failed" in outcome.error_message
        assert await store.count() == 0
        assert counters_snapshot()["turn.failed"] == 1

    async def test_retrieval_failure_degrades(self):
        provider = ScriptedProvider("still here")
        controller, store = _controller(provider, store=QueryFailingStore())

        outcome = await controller.run(ChannelInput("hi"))

        assert outcome.state is TurnState.done
        assert outcome.snippets_used == 0
        assert outcome.persisted
        assert counters_snapshot()["turn.retrieval_degraded"] == 1

    async def test_persist_failure_is_reported(self):
        controller, _ = _controller(ScriptedProvider("ok"), store=AppendFailingStore())

        outcome = await controller.run(ChannelInput("hi"))

        assert outcome.state is TurnState.done
        assert outcome.response == "ok"
        assert outcome.persisted is False

    def test_max_iterations_validated(self):
        with pytest.raises(ValueError):
            _controller(ScriptedProvider(), turn=TurnConfig(max_iterations=0))
