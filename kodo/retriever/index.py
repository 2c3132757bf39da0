"""
Relevance Index

Derived, rebuildable ranking projection over the record store.

Scoring:
    score = relevance × confidence_weight × recency_factor

    relevance      lexical overlap of query terms with record terms (tag
                   matches earn a bonus, capped at 1.0); blended with cosine
                   similarity as (1 - w)·lexical + w·cosine when both the
                   query and the record have embeddings
    confidence     HIGH 1.0, MEDIUM 0.8, LOW 0.6
    recency_factor 0.5 + 0.5·2^(-age_days / half_life_days)

Ties are broken by confidence, then recency, then id. Archived learnings are
never indexed; pending ones are returned only on request.

The index is persisted as ``index/snapshot.json``. The snapshot is a cache:
it can be deleted at any time and is rebuilt from the store on next use.
Curator transitions only append the record id to ``index/stale.log``; the
queued ids are refreshed and the snapshot rewritten once, before the next
query.
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Union

from ..common.config import KodoConfig
from ..common.embedding_service import EmbeddingService, get_embedding_service
from ..common.errors import IndexStale, RecordNotFoundError
from ..common.schemas import (
    IndexEntry,
    RecordKind,
    Status,
    render_embedding_text,
    utcnow,
)
from ..common.store import Record, RecordStore
from .query_processor import QueryProcessor, QuerySignals, tokenize

logger = logging.getLogger("kodo.retriever.index")

SNAPSHOT_VERSION = 1
TAG_BONUS = 0.2
INTENT_BONUS = 0.1


@dataclass
class RankedResult:
    """A single ranked record"""
    record_id: str
    kind: RecordKind
    title: str
    score: float
    relevance: float
    lexical: float
    confidence: str
    status: str
    timestamp: datetime
    semantic: Optional[float] = None
    matched_terms: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "kind": self.kind.value,
            "title": self.title,
            "score": round(self.score, 4),
            "relevance": round(self.relevance, 4),
            "lexical": round(self.lexical, 4),
            "semantic": None if self.semantic is None else round(self.semantic, 4),
            "confidence": self.confidence,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "matched_terms": self.matched_terms,
        }


def recency_factor(timestamp: datetime, now: datetime, half_life_days: float) -> float:
    """0.5 + 0.5·2^(-age/half_life); 1.0 for a record touched right now"""
    age_days = max(0.0, (now - timestamp).total_seconds() / 86400.0)
    return 0.5 + 0.5 * (2.0 ** (-age_days / half_life_days))


def record_terms(record: Record) -> Dict[str, int]:
    """Term counts for a record's indexable text"""
    if record.kind is RecordKind.LEARNING:
        parts = [record.statement, record.agent_scope or ""]
    else:
        parts = [record.title, record.title, record.body, record.subtopic or ""]
    return dict(Counter(tokenize(" ".join(parts))))


def record_tags(record: Record) -> List[str]:
    if record.kind is RecordKind.LEARNING:
        return list(record.tags)
    return list(dict.fromkeys(list(record.tags) + [record.domain, record.topic]))


class RelevanceIndex:
    """
    Ranks learnings and context entries against a query.

    Usage:
        index = RelevanceIndex.from_config(config, store)
        results = index.query("error handling", limit=5)
    """

    def __init__(
        self,
        store: RecordStore,
        config: KodoConfig,
        embedding_service: Optional[EmbeddingService] = None,
    ):
        """
        Initialize relevance index.

        Args:
            store: Record store (source of truth)
            config: Kodo configuration (retriever section)
            embedding_service: Optional embedding provider; lexical-only when absent
        """
        self._store = store
        self._config = config
        self._embedding = embedding_service
        self._processor = QueryProcessor()
        self._entries: Dict[str, IndexEntry] = {}
        self._stale: Set[str] = set()
        self._built_at: Optional[datetime] = None
        self._snapshot_model: Optional[str] = None
        self._loaded = False

    @classmethod
    def from_config(cls, config: KodoConfig, store: RecordStore) -> "RelevanceIndex":
        service = None
        if config.embedding.enabled:
            service = get_embedding_service(config.embedding.model)
            if service is None:
                logger.warning("Embeddings enabled but unavailable; ranking lexically")
        return cls(store, config, embedding_service=service)

    @property
    def embeddings_available(self) -> bool:
        return self._embedding is not None and self._embedding.is_available

    # ------------------------------------------------------------------ #
    # Snapshot
    # ------------------------------------------------------------------ #

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._store.require_initialized()
        if not self._load_snapshot():
            self.rebuild()
        self._stale.update(self._store.read_stale())
        self._loaded = True

    def _load_snapshot(self) -> bool:
        path = self._store.snapshot_path
        if not path.exists():
            logger.debug("No index snapshot at %s", path)
            return False
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            if data.get("version") != SNAPSHOT_VERSION:
                logger.info("Index snapshot version changed; rebuilding")
                return False
            if self.embeddings_available and data.get("embedding_model") != self._embedding.model_name:
                logger.info("Embedding model changed; rebuilding index")
                return False
            entries = [IndexEntry.model_validate(e) for e in data.get("entries", [])]
            built_at = data.get("built_at")
        except (OSError, ValueError, AttributeError) as e:
            logger.warning("Unreadable index snapshot %s (%s); rebuilding", path, e)
            return False

        self._entries = {e.record_id: e for e in entries}
        self._built_at = datetime.fromisoformat(built_at) if built_at else None
        self._snapshot_model = data.get("embedding_model")
        return True

    @property
    def embedding_model(self) -> Optional[str]:
        """Model of the stored embeddings; kept by processes that rank lexically"""
        if self.embeddings_available:
            return self._embedding.model_name
        return self._snapshot_model

    def _save_snapshot(self) -> None:
        data = {
            "version": SNAPSHOT_VERSION,
            "built_at": self._built_at.isoformat() if self._built_at else None,
            "embedding_model": self.embedding_model,
            "entries": [
                e.model_dump(mode="json")
                for e in sorted(self._entries.values(), key=lambda e: e.record_id)
            ],
        }
        self._store.write_json(self._store.snapshot_path, data)

    # ------------------------------------------------------------------ #
    # Projection maintenance
    # ------------------------------------------------------------------ #

    def _project(self, record: Record) -> IndexEntry:
        entry = IndexEntry(
            record_id=record.id,
            record_kind=record.kind,
            title=record.title,
            terms=record_terms(record),
            tags=record_tags(record),
            confidence=record.confidence,
            status=record.status,
            created_at=record.created_at,
            timestamp=record.updated_at,
        )
        if self.embeddings_available:
            try:
                entry.embedding = self._embedding.embed_single(render_embedding_text(record))
            except Exception as e:
                logger.warning("Embedding failed for %s, indexing lexically: %s", record.id, e)
        return entry

    def rebuild(self) -> int:
        """
        Recompute every projection from the store and persist the snapshot.

        Returns:
            Number of indexed records
        """
        self._store.require_initialized()
        queued = len(self._store.read_stale())
        entries: Dict[str, IndexEntry] = {}
        for record in self._store.iter_records():
            if record.status == Status.ARCHIVED:
                continue
            entries[record.id] = self._project(record)

        self._entries = entries
        self._stale = set()
        self._built_at = utcnow()
        self._snapshot_model = None
        self._loaded = True
        self._save_snapshot()
        self._store.consume_stale(queued)
        logger.info("Rebuilt relevance index: %d records", len(entries))
        return len(entries)

    def update(self, record_id: str) -> Optional[IndexEntry]:
        """
        Recompute one projection; removes it when the record is gone or archived.

        Returns:
            The new entry, or None if the record is no longer indexed
        """
        self._ensure_loaded()
        entry = self._refresh(record_id)
        self._stale.discard(record_id)
        self._save_snapshot()
        return entry

    def _refresh(self, record_id: str) -> Optional[IndexEntry]:
        try:
            record = self._store.get(record_id)
        except RecordNotFoundError:
            record = None

        if record is None or record.status == Status.ARCHIVED:
            self._entries.pop(record_id, None)
            return None
        entry = self._project(record)
        self._entries[record_id] = entry
        return entry

    def entry(self, record_id: str) -> IndexEntry:
        """
        Current projection of a record.

        Raises:
            IndexStale: if the entry is queued for refresh or not indexed
        """
        self._ensure_loaded()
        if record_id in self._stale or record_id not in self._entries:
            raise IndexStale(f"Index entry for {record_id} is stale or missing")
        return self._entries[record_id]

    def mark_stale(self, record_id: str) -> None:
        """Queue a projection refresh; applied before the next query"""
        self._store.append_stale(record_id)
        self._stale.add(record_id)

    def _apply_stale(self) -> None:
        queued = self._store.read_stale()
        stale = self._stale | set(queued)
        if not stale:
            return
        for record_id in sorted(stale):
            logger.debug("Refreshing stale index entry %s", record_id)
            try:
                self._refresh(record_id)
            except Exception as e:
                # one broken record must not take the index down
                logger.warning("Failed to refresh index entry %s: %s", record_id, e)
                self._entries.pop(record_id, None)
        self._stale = set()
        self._save_snapshot()
        self._store.consume_stale(len(queued))

    # ------------------------------------------------------------------ #
    # Query
    # ------------------------------------------------------------------ #

    def query(
        self,
        query: Union[str, QuerySignals],
        limit: Optional[int] = None,
        min_score: Optional[float] = None,
        include_pending: bool = False,
        kinds: Optional[Iterable[RecordKind]] = None,
        now: Optional[datetime] = None,
    ) -> List[RankedResult]:
        """
        Rank records against a query.

        Args:
            query: Free text or pre-parsed QuerySignals
            limit: Maximum results (default: retriever.limit)
            min_score: Minimum final score (default: retriever.min_score)
            include_pending: Also return pending learnings
            kinds: Restrict to these record kinds
            now: Reference time for recency (default: current UTC time)

        Returns:
            Results ordered by score, then confidence, recency, id
        """
        self._ensure_loaded()
        self._apply_stale()

        signals = query if isinstance(query, QuerySignals) else self._processor.parse(query)
        limit = self._config.retriever.limit if limit is None else limit
        min_score = self._config.retriever.min_score if min_score is None else min_score
        kinds = set(kinds) if kinds else None
        now = now or utcnow()

        query_terms = signals.all_terms
        if not query_terms and not signals.original:
            return []

        query_vector = self._embed_query(signals)
        weight = self._config.retriever.embedding_weight
        half_life = self._config.retriever.recency_half_life_days

        results = []
        for entry in self._entries.values():
            if entry.status == Status.ARCHIVED:
                continue
            if entry.status == Status.PENDING and not include_pending:
                continue
            if kinds and entry.record_kind not in kinds:
                continue

            lexical, matched = self._lexical(query_terms, signals.tags, entry)
            semantic = self._semantic(query_vector, entry)
            if semantic is None:
                relevance = lexical
            else:
                relevance = (1.0 - weight) * lexical + weight * semantic
            if relevance <= 0.0:
                continue

            score = relevance * entry.confidence.weight * recency_factor(entry.timestamp, now, half_life)
            if score < min_score:
                continue

            results.append(RankedResult(
                record_id=entry.record_id,
                kind=entry.record_kind,
                title=entry.title,
                score=score,
                relevance=relevance,
                lexical=lexical,
                semantic=semantic,
                confidence=entry.confidence.value,
                status=entry.status.value,
                timestamp=entry.timestamp,
                matched_terms=matched,
            ))

        results.sort(key=lambda r: (
            -r.score,
            -self._entries[r.record_id].confidence.rank,
            -r.timestamp.timestamp(),
            r.record_id,
        ))
        return results[:limit]

    def _lexical(self, query_terms: List[str], intent_tags: List[str], entry: IndexEntry):
        """Fraction of query terms present in the record, plus tag bonus; capped at 1.0"""
        if not query_terms:
            return 0.0, []

        tag_terms = set()
        for tag in entry.tags:
            tag_terms.update(tokenize(tag))

        matched = [t for t in query_terms if t in entry.terms or t in tag_terms]
        if not matched:
            return 0.0, []

        overlap = len(matched) / len(query_terms)
        tag_hits = sum(1 for t in query_terms if t in tag_terms)
        bonus = TAG_BONUS * tag_hits / len(query_terms)
        if any(tag in entry.tags for tag in intent_tags):
            bonus += INTENT_BONUS
        return min(1.0, overlap + bonus), matched

    def _embed_query(self, signals: QuerySignals) -> Optional[List[float]]:
        if not self.embeddings_available or not signals.text:
            return None
        try:
            return self._embedding.embed_single(signals.text)
        except Exception as e:
            logger.warning("Query embedding failed, ranking lexically: %s", e)
            return None

    def _semantic(self, query_vector: Optional[List[float]], entry: IndexEntry) -> Optional[float]:
        if query_vector is None or not entry.embedding:
            return None
        try:
            return EmbeddingService.cosine_similarity(query_vector, entry.embedding)
        except ValueError as e:
            logger.debug("Skipping semantic score for %s: %s", entry.record_id, e)
            return None

    # ------------------------------------------------------------------ #
    # Maintenance
    # ------------------------------------------------------------------ #

    def status(self) -> dict:
        """Entry counts, stale ids, embedding coverage, and drift against the store"""
        self._ensure_loaded()

        live_ids = {r.id for r in self._store.iter_records() if r.status != Status.ARCHIVED}
        indexed_ids = set(self._entries)
        embedded = sum(1 for e in self._entries.values() if e.embedding)
        by_kind = Counter(e.record_kind.value for e in self._entries.values())
        by_status = Counter(e.status.value for e in self._entries.values())

        return {
            "entries": len(self._entries),
            "learnings": by_kind.get(RecordKind.LEARNING.value, 0),
            "context": by_kind.get(RecordKind.CONTEXT.value, 0),
            "pending": by_status.get(Status.PENDING.value, 0),
            "stale": sorted(self._stale | set(self._store.read_stale())),
            "missing": sorted(live_ids - indexed_ids),
            "orphaned": sorted(indexed_ids - live_ids),
            "embedded": embedded,
            "embedding_coverage": round(embedded / len(self._entries), 3) if self._entries else 0.0,
            "embeddings_available": self.embeddings_available,
            "embedding_model": self.embedding_model,
            "built_at": self._built_at.isoformat() if self._built_at else None,
            "snapshot": str(self._store.snapshot_path),
        }

    def embed_all(self) -> int:
        """
        Backfill embeddings for entries that lack one.

        Returns:
            Number of entries embedded (0 when no provider is available)
        """
        self._ensure_loaded()
        self._apply_stale()
        if not self.embeddings_available:
            logger.warning("No embedding provider available; nothing to embed")
            return 0

        pending = [e for e in self._entries.values() if not e.embedding]
        embedded = 0
        for entry in pending:
            try:
                record = self._store.get(entry.record_id)
                entry.embedding = self._embedding.embed_single(render_embedding_text(record))
                embedded += 1
            except Exception as e:
                logger.warning("Embedding failed for %s: %s", entry.record_id, e)

        self._save_snapshot()
        logger.info("Embedded %d of %d index entries", embedded, len(pending))
        return embedded
