"""MCP interface contract tests.

All tests use ``fastmcp.Client`` to exercise the full MCP protocol
(serialization, validation) against an in-process runtime.
"""

from __future__ import annotations

import json

import pytest

from clawloop.memory.schemas import MemoryRecord
from tests.helpers.fakes import ScriptedProvider
from tests.helpers.fakes import tool_call_response


def _parse(result) -> dict:
    """Extract the JSON payload from a CallToolResult."""
    return json.loads(result.content[0].text)


# -----------------------------------------------------------------------
# submit_message
# -----------------------------------------------------------------------


class TestSubmitMessage:
    async def test_returns_answer(self, mcp_client):
        data = _parse(await mcp_client.call_tool("submit_message", {"content": "What's 2+2"}))
        assert data["status"] == "done"
        assert data["response"] == "4"
        assert data["provider_id"] == "primary"
        assert data["conversation_id"] == "default"

    async def test_rejects_empty_content(self, mcp_client, provider):
        data = _parse(await mcp_client.call_tool("submit_message", {"content": "   "}))
        assert data["status"] == "rejected"
        assert data["error_code"] == "validation_error"
        assert provider.call_count == 0

    async def test_rejects_missing_content(self, mcp_client):
        with pytest.raises(Exception):
            await mcp_client.call_tool("submit_message", {})

    async def test_sender_allowlist(self, mcp_client, monkeypatch):
        monkeypatch.setenv("CLAWLOOP_ALLOWED_SENDERS", "alice")
        data = _parse(
            await mcp_client.call_tool("submit_message", {"content": "hi", "sender": "mallory"})
        )
        assert data["status"] == "rejected"
        assert data["error_code"] == "sender_not_allowed"

        data = _parse(
            await mcp_client.call_tool("submit_message", {"content": "hi", "sender": "Alice"})
        )
        assert data["status"] == "done"


class TestConfirmation:
    @pytest.fixture()
    def provider(self) -> ScriptedProvider:
        return ScriptedProvider(
            tool_call_response("write_file", {"path": "/tmp/report"}, call_id="w1")
        )

    async def test_confirm_flow(self, mcp_client):
        data = _parse(
            await mcp_client.call_tool(
                "submit_message", {"content": "save the report", "conversation_id": "c1"}
            )
        )
        assert data["status"] == "done"
        assert [p["call_id"] for p in data["pending_confirmations"]] == ["w1"]
        assert data["pending_confirmations"][0]["tool_name"] == "write_file"

        confirmed = _parse(
            await mcp_client.call_tool(
                "confirm_tool_call", {"conversation_id": "c1", "call_id": "w1"}
            )
        )
        assert confirmed["status"] == "done"
        assert confirmed["response"] == "Ran write_file: wrote /tmp/report"

    async def test_unknown_call(self, mcp_client):
        data = _parse(
            await mcp_client.call_tool(
                "confirm_tool_call", {"conversation_id": "c1", "call_id": "nope"}
            )
        )
        assert data["status"] == "rejected"
        assert data["error_code"] == "not_found"

    async def test_confirm_checks_allowlist(self, mcp_client, monkeypatch):
        monkeypatch.setenv("CLAWLOOP_ALLOWED_SENDERS", "alice")
        await mcp_client.call_tool(
            "submit_message",
            {"content": "save the report", "conversation_id": "c1", "sender": "alice"},
        )

        anonymous = _parse(
            await mcp_client.call_tool(
                "confirm_tool_call", {"conversation_id": "c1", "call_id": "w1"}
            )
        )
        assert anonymous["status"] == "rejected"
        assert anonymous["error_code"] == "sender_not_allowed"

        # the held call is still there for the real requester
        confirmed = _parse(
            await mcp_client.call_tool(
                "confirm_tool_call",
                {"conversation_id": "c1", "call_id": "w1", "sender": "Alice"},
            )
        )
        assert confirmed["status"] == "done"
        assert confirmed["response"] == "Ran write_file: wrote /tmp/report"

    async def test_only_requester_may_confirm(self, mcp_client, monkeypatch):
        monkeypatch.setenv("CLAWLOOP_ALLOWED_SENDERS", "alice,bob")
        await mcp_client.call_tool(
            "submit_message",
            {"content": "save the report", "conversation_id": "c1", "sender": "alice"},
        )

        data = _parse(
            await mcp_client.call_tool(
                "confirm_tool_call",
                {"conversation_id": "c1", "call_id": "w1", "sender": "bob"},
            )
        )

        assert data["status"] == "rejected"
        assert data["error_code"] == "sender_not_allowed"
        assert "requester" in data["message"]


# -----------------------------------------------------------------------
# search_memory / hygiene / health
# -----------------------------------------------------------------------


class TestSearchMemory:
    async def test_returns_hits(self, mcp_client, memory_store):
        await memory_store.append(MemoryRecord(id="r1", content="the backup runs at midnight"))
        data = _parse(await mcp_client.call_tool("search_memory", {"query": "backup"}))
        assert data["status"] == "ok"
        assert [h["id"] for h in data["hits"]] == ["r1"]
        assert data["hits"][0]["source_kind"] == "message"

    async def test_limit_validated(self, mcp_client):
        data = _parse(await mcp_client.call_tool("search_memory", {"query": "x", "limit": 0}))
        assert data["status"] == "error"
        assert data["error_code"] == "validation_error"


class TestHygieneAndHealth:
    async def test_run_hygiene_with_nothing_to_do(self, mcp_client):
        data = _parse(await mcp_client.call_tool("run_hygiene", {}))
        assert data["status"] == "ok"
        assert data["selected"] == 0

    async def test_provider_health(self, mcp_client):
        data = _parse(await mcp_client.call_tool("provider_health", {}))
        assert [(p["id"], p["health"]) for p in data["providers"]] == [("primary", "healthy")]

    async def test_runtime_metrics_after_turn(self, mcp_client):
        await mcp_client.call_tool("submit_message", {"content": "What's 2+2"})
        data = _parse(await mcp_client.call_tool("runtime_metrics", {}))
        assert data["latency"]["mcp.submit_message"]["count"] == 1
        assert data["latency"]["turn.run"]["error_count"] == 0
        assert "p95_ms" in data["latency"]["turn.run"]


class TestNotConfigured:
    async def test_get_runtime_requires_configure(self):
        from clawloop.server import _get_runtime
        from clawloop.server import shutdown

        await shutdown()
        with pytest.raises(RuntimeError, match="Runtime not configured"):
            _get_runtime()
