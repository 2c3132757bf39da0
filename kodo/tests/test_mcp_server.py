"""Tests for the MCP tool surface."""

import pytest

from fastmcp import Client


def _data(result):
    return getattr(result, "data", None) or getattr(result, "structured", None) \
        or getattr(result, "structured_content", None)


@pytest.fixture
def server(store, config):
    from kodo.common.schemas import Category, Confidence, Status
    from kodo.scribe.curator import ConfidenceCurator
    from kodo.server import KodoMCPServer

    curator = ConfidenceCurator(store, config)
    curator.curate_learning(Category.RULE, "Wrap external API errors in a retry handler", confidence=Confidence.HIGH)
    curator.curate_learning(Category.CONVENTION, "Error classes end with Error", confidence=Confidence.LOW)
    curator.curate_learning(Category.DECISION, "Use structlog for error reporting", status=Status.PENDING)
    return KodoMCPServer(config, store, server_name="test-kodo")


@pytest.mark.asyncio
async def test_tools_registered(server):
    async with Client(server.mcp) as client:
        names = {t.name for t in await client.list_tools()}
    assert names == {
        "query_context", "generate_context", "list_learnings",
        "promote_learning", "demote_learning", "index_status",
    }


@pytest.mark.asyncio
async def test_query_context(server):
    async with Client(server.mcp) as client:
        result = await client.call_tool("query_context", {"query": "error handling", "limit": 5})
    data = _data(result)
    assert data["ok"] is True
    titles = [r["title"] for r in data["results"]]
    assert titles[0] == "Wrap external API errors in a retry handler"
    assert "Use structlog for error reporting" not in titles


@pytest.mark.asyncio
async def test_query_context_include_pending(server):
    async with Client(server.mcp) as client:
        result = await client.call_tool("query_context", {"query": "error reporting", "include_pending": True})
    data = _data(result)
    assert any(r["status"] == "pending" for r in data["results"])


@pytest.mark.asyncio
async def test_generate_context(server):
    async with Client(server.mcp) as client:
        result = await client.call_tool(
            "generate_context", {"prompt": "how do we handle api errors", "max_items": 1},
        )
    data = _data(result)
    assert data["ok"] is True
    assert len(data["results"]["items"]) == 1
    assert data["results"]["markdown"].startswith("## Project knowledge (kodo)")


@pytest.mark.asyncio
async def test_generate_context_bad_detail(server):
    async with Client(server.mcp) as client:
        result = await client.call_tool("generate_context", {"prompt": "errors", "detail": "verbose"})
    data = _data(result)
    assert data["ok"] is False


@pytest.mark.asyncio
async def test_list_and_promote(server):
    async with Client(server.mcp) as client:
        listed = _data(await client.call_tool("list_learnings", {"confidence": "low"}))
        assert listed["ok"] is True
        assert len(listed["results"]) == 1
        record_id = listed["results"][0]["id"]

        promoted = _data(await client.call_tool("promote_learning", {"record_id": record_id}))
        assert promoted["ok"] is True
        assert promoted["results"]["confidence"] == "medium"


@pytest.mark.asyncio
async def test_demote_archives_low(server, store):
    from kodo.common.schemas import Status
    low = [l for l in store.list_learnings() if l.confidence.value == "low"][0]
    async with Client(server.mcp) as client:
        data = _data(await client.call_tool("demote_learning", {"record_id": low.id}))
    assert data["results"]["status"] == "archived"
    assert store.get_learning(low.id).status is Status.ARCHIVED


@pytest.mark.asyncio
async def test_errors_are_returned_not_raised(server):
    async with Client(server.mcp) as client:
        missing = _data(await client.call_tool("promote_learning", {"record_id": "lrn_20260101_rule_0000000000"}))
        bad_filter = _data(await client.call_tool("list_learnings", {"category": "unknown"}))
    assert missing["ok"] is False
    assert "not found" in missing["error"]
    assert bad_filter["ok"] is False


@pytest.mark.asyncio
async def test_index_status(server):
    async with Client(server.mcp) as client:
        data = _data(await client.call_tool("index_status", {}))
    assert data["ok"] is True
    assert data["results"]["learnings"] == 3
    assert data["results"]["pending"] == 1
    assert data["results"]["embeddings_available"] is False
    assert data["results"]["store"]["learnings"] == 3
    assert data["results"]["store"]["context"] == 0


@pytest.mark.asyncio
async def test_promote_and_demote_context_entry(server, store, config):
    from kodo.scribe.curator import ConfidenceCurator
    entry = ConfidenceCurator(store, config).add_context("billing", "invoices", "Invoice totals are stored in cents")
    async with Client(server.mcp) as client:
        promoted = _data(await client.call_tool("promote_learning", {"record_id": entry.id}))
        for _ in range(3):
            demoted = _data(await client.call_tool("demote_learning", {"record_id": entry.id}))
    assert promoted["results"]["confidence"] == "high"
    assert demoted["ok"] is True
    assert demoted["results"]["confidence"] == "low"
    assert store.get_context(entry.id).confidence.value == "low"
