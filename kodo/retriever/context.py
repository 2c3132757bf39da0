"""
Context Generator

Builds the token-budgeted block of learnings and context entries injected
into the assistant's prompt.

Key principle: the bundle never holds more than ``max_items`` records; a
token budget can only shrink it further
(``max_tokens // AVG_TOKENS[detail]``).
"""

import logging
import sys
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from ..common.errors import RecordNotFoundError
from ..common.schemas import DetailLevel, render_compact, render_full, render_timeline
from ..common.store import Record, RecordStore
from .index import RankedResult, RelevanceIndex
from .query_processor import QueryProcessor, QuerySignals

logger = logging.getLogger("kodo.retriever.context")

# Average tokens per rendered record, used to turn a token budget into an item cap
AVG_TOKENS = {
    DetailLevel.COMPACT: 30,
    DetailLevel.TIMELINE: 40,
    DetailLevel.FULL: 180,
}

CHARS_PER_TOKEN = 4

RENDERERS = {
    DetailLevel.COMPACT: render_compact,
    DetailLevel.TIMELINE: render_timeline,
    DetailLevel.FULL: render_full,
}

HEADER = "## Project knowledge (kodo)"


def estimate_tokens(text: str) -> int:
    return len(text) // CHARS_PER_TOKEN + 1 if text else 0


@dataclass
class ContextItem:
    """One record selected for the bundle"""
    result: RankedResult
    record: Record
    text: str

    @property
    def record_id(self) -> str:
        return self.result.record_id


@dataclass
class ContextBundle:
    """Selected, rendered records ready for prompt injection"""
    detail: DetailLevel
    items: List[ContextItem] = field(default_factory=list)
    omitted: int = 0
    query: Optional[QuerySignals] = None

    @property
    def estimated_tokens(self) -> int:
        return sum(estimate_tokens(item.text) for item in self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def render(self) -> str:
        """Markdown block; empty string when nothing was selected"""
        if not self.items:
            return ""

        separator = "\n\n" if self.detail is DetailLevel.FULL else "\n"
        lines = [
            HEADER,
            f"<!-- {len(self.items)} record(s), ~{self.estimated_tokens} tokens"
            + (f", {self.omitted} omitted" if self.omitted else "")
            + " -->",
            "",
            separator.join(item.text for item in self.items),
        ]
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "detail": self.detail.value,
            "estimated_tokens": self.estimated_tokens,
            "omitted": self.omitted,
            "items": [
                dict(item.result.to_dict(), text=item.text)
                for item in self.items
            ],
        }


class ContextGenerator:
    """
    Generates prompt context from the relevance index.

    Usage:
        generator = ContextGenerator(index, store, max_items=config.retriever.max_context_items)
        bundle = generator.generate(prompt="fix the login flow", files=["src/auth/login.py"])
        print(bundle.render())
    """

    def __init__(self, index: RelevanceIndex, store: RecordStore, max_items: int = 8, min_score: float = 0.05):
        self._index = index
        self._store = store
        self._max_items = max_items
        self._min_score = min_score
        self._processor = QueryProcessor()

    def generate(
        self,
        prompt: Optional[str] = None,
        files: Optional[Iterable[str]] = None,
        max_items: Optional[int] = None,
        min_score: Optional[float] = None,
        detail: DetailLevel = DetailLevel.COMPACT,
        max_tokens: Optional[int] = None,
        include_pending: bool = False,
    ) -> ContextBundle:
        """
        Select and render the most relevant records.

        Args:
            prompt: Current prompt text
            files: File paths in play
            max_items: Hard cap on records (default: retriever.max_context_items)
            min_score: Minimum ranking score
            detail: Rendering depth
            max_tokens: Optional token budget; shrinks the cap further
            include_pending: Also consider pending learnings

        Returns:
            ContextBundle (possibly empty)
        """
        max_items = self._max_items if max_items is None else max_items
        min_score = self._min_score if min_score is None else min_score
        detail = DetailLevel(detail)

        signals = self._processor.parse(prompt, files)
        bundle = ContextBundle(detail=detail, query=signals)
        if signals.is_empty or max_items <= 0:
            return bundle

        cap = max_items
        if max_tokens is not None:
            cap = min(cap, max(0, max_tokens) // AVG_TOKENS[detail])

        ranked = self._index.query(
            signals,
            limit=sys.maxsize,
            min_score=min_score,
            include_pending=include_pending,
        )

        render = RENDERERS[detail]
        selected = []
        for result in ranked:
            if len(selected) >= cap:
                break
            try:
                record = self._store.get(result.record_id)
            except RecordNotFoundError:
                logger.debug("Ranked record %s vanished from the store", result.record_id)
                self._index.mark_stale(result.record_id)
                continue
            selected.append(ContextItem(result=result, record=record, text=render(record)))

        if detail is DetailLevel.TIMELINE:
            selected.sort(key=lambda item: (item.record.created_at, item.record_id))

        bundle.items = selected
        bundle.omitted = max(0, len(ranked) - len(selected))
        logger.debug(
            "Generated context: %d items (~%d tokens), %d omitted",
            len(selected), bundle.estimated_tokens, bundle.omitted,
        )
        return bundle
