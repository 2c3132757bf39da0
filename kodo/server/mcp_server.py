"""
Kodo MCP Server

Exposes the relevance index, context generator and curator to MCP clients
over stdio. Tools return ``{"ok": True, "results": ...}`` on success and
``{"ok": False, "error": ...}`` on failure; they never raise into the client.
"""

import logging
from typing import Annotated, Any, Dict, List, Optional

from fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from ..common.config import KodoConfig
from ..common.errors import KodoError
from ..common.schemas import Category, Confidence, DetailLevel, Status
from ..common.store import RecordStore
from ..retriever.context import ContextGenerator
from ..retriever.index import RelevanceIndex
from ..scribe.curator import ConfidenceCurator

logger = logging.getLogger("kodo.server.mcp")

DEFAULT_SERVER_NAME = "kodo"


def _error(e: Exception) -> Dict[str, Any]:
    return {"ok": False, "error": str(e)}


class KodoMCPServer:
    """
    Main application class for the MCP server.

    All tools operate on one project store; the index is shared across calls
    and refreshes stale entries before each query.
    """

    def __init__(
        self,
        config: KodoConfig,
        store: RecordStore,
        index: Optional[RelevanceIndex] = None,
        server_name: str = DEFAULT_SERVER_NAME,
    ) -> None:
        """
        Args:
            config: Kodo configuration
            store: Initialized record store
            index: Relevance index (default: built from config)
            server_name: Advertised MCP server name
        """
        self.config = config
        self.store = store
        self.index = index or RelevanceIndex.from_config(config, store)
        self.curator = ConfidenceCurator(store, config, index=self.index)
        self.generator = ContextGenerator(
            self.index,
            store,
            max_items=config.retriever.max_context_items,
            min_score=config.retriever.min_score,
        )
        self.mcp = FastMCP(name=server_name)

        # ---------- MCP Tools: Query Context ---------- #
        @self.mcp.tool(
            name="query_context",
            description="Rank project learnings and context entries against a text query.",
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False)
        )
        async def tool_query_context(
            query: Annotated[str, Field(description="free-text query, e.g. 'how do we handle errors'")],
            limit: Annotated[int, Field(description="maximum number of results", ge=1)] = 10,
            min_score: Annotated[Optional[float], Field(description="minimum ranking score (0-1)")] = None,
            include_pending: Annotated[bool, Field(description="also return learnings awaiting review")] = False,
        ) -> Dict[str, Any]:
            """
            Returns:
                Ranked results with score, confidence and matched terms.
            """
            try:
                results = self.index.query(
                    query, limit=limit, min_score=min_score, include_pending=include_pending,
                )
                return {"ok": True, "results": [r.to_dict() for r in results]}
            except KodoError as e:
                return _error(e)

        # ---------- MCP Tools: Generate Context ---------- #
        @self.mcp.tool(
            name="generate_context",
            description=(
                "Render a token-budgeted markdown block of the most relevant learnings "
                "for the current prompt and files, ready to add to the context window."
            ),
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False)
        )
        async def tool_generate_context(
            prompt: Annotated[Optional[str], Field(description="current prompt text")] = None,
            files: Annotated[Optional[List[str]], Field(description="file paths being worked on")] = None,
            max_items: Annotated[Optional[int], Field(description="hard cap on records", ge=0)] = None,
            detail: Annotated[str, Field(description="compact, timeline or full")] = "compact",
            max_tokens: Annotated[Optional[int], Field(description="token budget", ge=0)] = None,
        ) -> Dict[str, Any]:
            """
            Returns:
                The rendered block plus per-item scores and the omitted count.
            """
            try:
                bundle = self.generator.generate(
                    prompt=prompt,
                    files=files,
                    max_items=max_items,
                    detail=DetailLevel(detail),
                    max_tokens=max_tokens,
                )
                results = bundle.to_dict()
                results["markdown"] = bundle.render()
                return {"ok": True, "results": results}
            except (KodoError, ValueError) as e:
                return _error(e)

        # ---------- MCP Tools: List Learnings ---------- #
        @self.mcp.tool(
            name="list_learnings",
            description="List learnings, optionally filtered by category, status and confidence.",
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False)
        )
        async def tool_list_learnings(
            category: Annotated[Optional[str], Field(description="rule, decision, tech_stack, workflow, domain or convention")] = None,
            status: Annotated[Optional[str], Field(description="pending, active or archived")] = None,
            confidence: Annotated[Optional[str], Field(description="high, medium or low")] = None,
        ) -> Dict[str, Any]:
            try:
                learnings = self.curator.list(
                    category=Category(category) if category else None,
                    status=Status(status) if status else None,
                    confidence=Confidence(confidence) if confidence else None,
                )
                return {"ok": True, "results": [l.model_dump(mode="json") for l in learnings]}
            except (KodoError, ValueError) as e:
                return _error(e)

        # ---------- MCP Tools: Promote / Demote ---------- #
        @self.mcp.tool(
            name="promote_learning",
            description="Raise the confidence of a learning or context entry by one level (low -> medium -> high).",
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False)
        )
        async def tool_promote_learning(
            record_id: Annotated[str, Field(description="learning (lrn_...) or context entry (ctx_...) id")],
        ) -> Dict[str, Any]:
            try:
                return {"ok": True, "results": self.curator.promote(record_id).model_dump(mode="json")}
            except KodoError as e:
                return _error(e)

        @self.mcp.tool(
            name="demote_learning",
            description="Lower the confidence of a learning or context entry by one level; demoting a low-confidence learning archives it, context entries stop at low.",
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=True)
        )
        async def tool_demote_learning(
            record_id: Annotated[str, Field(description="learning (lrn_...) or context entry (ctx_...) id")],
        ) -> Dict[str, Any]:
            try:
                return {"ok": True, "results": self.curator.demote(record_id).model_dump(mode="json")}
            except KodoError as e:
                return _error(e)

        # ---------- MCP Tools: Index Status ---------- #
        @self.mcp.tool(
            name="index_status",
            description="Report relevance index health (entry counts, stale entries, embedding coverage, drift) and store record counts.",
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False)
        )
        async def tool_index_status() -> Dict[str, Any]:
            try:
                status = self.index.status()
                status["store"] = self.store.stats()
                return {"ok": True, "results": status}
            except KodoError as e:
                return _error(e)

    def run(self) -> None:
        """Runs the MCP server using stdio transport."""
        logger.info("Starting kodo MCP server for %s", self.store.root)
        self.mcp.run(transport="stdio")
