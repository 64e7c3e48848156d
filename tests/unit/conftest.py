"""Unit test fixtures: FastMCP client over an in-process runtime."""

from __future__ import annotations

import pytest
from fastmcp import Client

from clawloop.config import AuditConfig
from clawloop.config import RuntimeConfig
from clawloop.memory.store import InMemoryMemoryStore
from tests.helpers.fakes import lookup_tool
from tests.helpers.fakes import ScriptedProvider
from tests.helpers.fakes import write_tool


@pytest.fixture()
def provider() -> ScriptedProvider:
    """Provider backing the MCP server; override per class to change the script."""
    return ScriptedProvider("4")


@pytest.fixture()
def memory_store() -> InMemoryMemoryStore:
    return InMemoryMemoryStore()


@pytest.fixture()
async def mcp_client(provider, memory_store, tmp_path):
    """Yield a FastMCP Client wired to the Clawloop server."""
    from clawloop.server import configure
    from clawloop.server import mcp
    from clawloop.server import shutdown

    await configure(
        RuntimeConfig(audit=AuditConfig(file_path=str(tmp_path / "audit.jsonl"))),
        tools=[lookup_tool(), write_tool()],
        providers={"primary": provider},
        store=memory_store,
        start_hygiene=False,
    )
    async with Client(mcp) as client:
        yield client
    await shutdown()
