"""
Record Store

Append-friendly, human-readable persistence for learnings and context
entries, plus the per-session bookkeeping tables (cursors, trigger counters)
and the curator audit log.

Layout (under the project .kodo directory):
    learnings/<category>.jsonl        one file per learning category
    context/<domain>/<topic>.jsonl    curated context entries
    sessions/cursors.json             session cursor table
    sessions/triggers.json            trigger counters
    index/snapshot.json               relevance index cache (owned by the index)
    index/stale.log                   record ids awaiting an index refresh
    logs/transitions.jsonl            curator audit log

Every write to a record file happens under an advisory lock scoped to that
file. Unreadable record files raise StoreCorruptedError; silent partial data
loss is worse than a visible failure.
"""

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from .config import (
    KodoConfig,
    CONTEXT_DIRNAME,
    INDEX_DIRNAME,
    LEARNINGS_DIRNAME,
    LOGS_DIRNAME,
    SESSIONS_DIRNAME,
)
from .errors import NotInitializedError, RecordNotFoundError, StoreCorruptedError
from .locking import file_lock
from .schemas import (
    Category,
    ContextEntry,
    Learning,
    RecordKind,
    SessionCursor,
    Status,
    Transition,
    TriggerCounters,
    category_from_id,
    kind_from_id,
    slugify,
)

logger = logging.getLogger("kodo.common.store")

M = TypeVar("M", bound=BaseModel)
Record = Union[Learning, ContextEntry]


class RecordStore:
    """
    File-backed store of learnings and context entries.

    The store is the single writer-of-record: the curator mutates learnings
    only through ``edit_category`` so that a promote from one process cannot
    race an ingest from another.
    """

    def __init__(self, root: Path, lock_retries: int = 8, lock_backoff: float = 0.05):
        """
        Initialize record store.

        Args:
            root: The project .kodo directory
            lock_retries: Attempts before LockContentionError
            lock_backoff: Initial backoff between lock attempts (seconds)
        """
        self._root = Path(root)
        self._lock_retries = lock_retries
        self._lock_backoff = lock_backoff

    @classmethod
    def from_config(cls, config: KodoConfig) -> "RecordStore":
        return cls(
            config.root,
            lock_retries=config.store.lock_retries,
            lock_backoff=config.store.lock_timeout,
        )

    # ------------------------------------------------------------------ #
    # Layout
    # ------------------------------------------------------------------ #

    @property
    def root(self) -> Path:
        return self._root

    @property
    def is_initialized(self) -> bool:
        return (self._root / LEARNINGS_DIRNAME).is_dir() and (self._root / CONTEXT_DIRNAME).is_dir()

    def init(self) -> None:
        """Create the store layout (idempotent)"""
        for dirname in (LEARNINGS_DIRNAME, CONTEXT_DIRNAME, SESSIONS_DIRNAME, INDEX_DIRNAME, LOGS_DIRNAME):
            (self._root / dirname).mkdir(parents=True, exist_ok=True)
        logger.info("Initialized record store at %s", self._root)

    def require_initialized(self) -> None:
        if not self.is_initialized:
            raise NotInitializedError(str(self._root))

    def learning_path(self, category: Category) -> Path:
        return self._root / LEARNINGS_DIRNAME / f"{category.value}.jsonl"

    def context_path(self, domain: str, topic: str) -> Path:
        return self._root / CONTEXT_DIRNAME / slugify(domain) / f"{slugify(topic)}.jsonl"

    @property
    def cursors_path(self) -> Path:
        return self._root / SESSIONS_DIRNAME / "cursors.json"

    @property
    def triggers_path(self) -> Path:
        return self._root / SESSIONS_DIRNAME / "triggers.json"

    @property
    def snapshot_path(self) -> Path:
        return self._root / INDEX_DIRNAME / "snapshot.json"

    @property
    def stale_path(self) -> Path:
        return self._root / INDEX_DIRNAME / "stale.log"

    @property
    def transitions_path(self) -> Path:
        return self._root / LOGS_DIRNAME / "transitions.jsonl"

    @property
    def logs_dir(self) -> Path:
        return self._root / LOGS_DIRNAME

    # ------------------------------------------------------------------ #
    # Low-level IO
    # ------------------------------------------------------------------ #

    @contextmanager
    def _locked(self, path: Path) -> Iterator[None]:
        with file_lock(path, retries=self._lock_retries, backoff=self._lock_backoff):
            yield

    def _read_jsonl(self, path: Path, model: Type[M]) -> List[M]:
        """Read every record of a JSONL file; any bad line is fatal"""
        if not path.exists():
            return []

        records = []
        try:
            with open(path, encoding="utf-8") as f:
                for line_no, line in enumerate(f, 1):
                    if not line.strip():
                        continue
                    try:
                        records.append(model.model_validate_json(line))
                    except ValidationError as e:
                        raise StoreCorruptedError(str(path), line_no, str(e).splitlines()[0]) from e
        except (OSError, UnicodeDecodeError) as e:
            raise StoreCorruptedError(str(path), 0, str(e)) from e
        return records

    def _write_atomic(self, path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def write_json(self, path: Path, data) -> None:
        """Atomically write a JSON document (no lock; last writer wins)"""
        self._write_atomic(path, json.dumps(data, indent=2, default=str))

    def _write_jsonl(self, path: Path, records: List[BaseModel]) -> None:
        text = "".join(r.model_dump_json() + "\n" for r in records)
        self._write_atomic(path, text)

    def _append_jsonl(self, path: Path, record: BaseModel) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(record.model_dump_json() + "\n")

    # ------------------------------------------------------------------ #
    # Learnings
    # ------------------------------------------------------------------ #

    @contextmanager
    def edit_category(self, category: Category) -> Iterator[List[Learning]]:
        """
        Read-modify-write a category file under its lock.

        The yielded list may be mutated in place (append, replace, delete);
        it is written back atomically when the block exits without error.
        """
        path = self.learning_path(category)
        with self._locked(path):
            records = self._read_jsonl(path, Learning)
            yield records
            self._write_jsonl(path, records)

    def list_learnings(
        self,
        category: Optional[Category] = None,
        status: Optional[Status] = None,
    ) -> List[Learning]:
        categories = [category] if category else list(Category)
        learnings = []
        for cat in categories:
            for learning in self._read_jsonl(self.learning_path(cat), Learning):
                if status is None or learning.status == status:
                    learnings.append(learning)
        return learnings

    def get_learning(self, record_id: str) -> Learning:
        category = category_from_id(record_id)
        if category is None:
            raise RecordNotFoundError(record_id)
        for learning in self._read_jsonl(self.learning_path(category), Learning):
            if learning.id == record_id:
                return learning
        raise RecordNotFoundError(record_id)

    def remove_learning(self, record_id: str) -> Learning:
        """Hard-delete a learning"""
        category = category_from_id(record_id)
        if category is None:
            raise RecordNotFoundError(record_id)
        with self.edit_category(category) as records:
            for i, existing in enumerate(records):
                if existing.id == record_id:
                    del records[i]
                    return existing
        raise RecordNotFoundError(record_id)

    # ------------------------------------------------------------------ #
    # Context entries
    # ------------------------------------------------------------------ #

    def _context_files(self) -> List[Path]:
        return sorted((self._root / CONTEXT_DIRNAME).glob("*/*.jsonl"))

    def add_context(self, entry: ContextEntry) -> ContextEntry:
        path = self.context_path(entry.domain, entry.topic)
        with self._locked(path):
            self._append_jsonl(path, entry)
        return entry

    def list_context(self, domain: Optional[str] = None, topic: Optional[str] = None) -> List[ContextEntry]:
        entries = []
        for path in self._context_files():
            if domain and path.parent.name != slugify(domain):
                continue
            if topic and path.stem != slugify(topic):
                continue
            entries.extend(self._read_jsonl(path, ContextEntry))
        return entries

    def _find_context_file(self, record_id: str) -> Path:
        for path in self._context_files():
            if any(e.id == record_id for e in self._read_jsonl(path, ContextEntry)):
                return path
        raise RecordNotFoundError(record_id)

    def get_context(self, record_id: str) -> ContextEntry:
        for entry in self.list_context():
            if entry.id == record_id:
                return entry
        raise RecordNotFoundError(record_id)

    @contextmanager
    def edit_context(self, record_id: str) -> Iterator[ContextEntry]:
        """Read-modify-write one context entry under its file lock"""
        path = self._find_context_file(record_id)
        with self._locked(path):
            records = self._read_jsonl(path, ContextEntry)
            entry = next((r for r in records if r.id == record_id), None)
            if entry is None:
                raise RecordNotFoundError(record_id)
            yield entry
            self._write_jsonl(path, records)

    def remove_context(self, record_id: str) -> ContextEntry:
        path = self._find_context_file(record_id)
        with self._locked(path):
            records = self._read_jsonl(path, ContextEntry)
            removed = next(r for r in records if r.id == record_id)
            self._write_jsonl(path, [r for r in records if r.id != record_id])
        return removed

    # ------------------------------------------------------------------ #
    # Any record
    # ------------------------------------------------------------------ #

    def get(self, record_id: str) -> Record:
        kind = kind_from_id(record_id)
        if kind is RecordKind.LEARNING:
            return self.get_learning(record_id)
        if kind is RecordKind.CONTEXT:
            return self.get_context(record_id)
        raise RecordNotFoundError(record_id)

    def iter_records(self) -> Iterator[Record]:
        """All learnings (any status) followed by all context entries"""
        yield from self.list_learnings()
        yield from self.list_context()

    def stats(self) -> Dict[str, int]:
        """Record counts by kind and learning status"""
        stats = {"learnings": 0, "context": 0}
        stats.update({s.value: 0 for s in Status})
        for learning in self.list_learnings():
            stats["learnings"] += 1
            stats[learning.status.value] += 1
        stats["context"] = len(self.list_context())
        return stats

    # ------------------------------------------------------------------ #
    # Session tables
    # ------------------------------------------------------------------ #

    def _read_table(self, path: Path) -> Dict[str, dict]:
        if not path.exists():
            return {}
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            if isinstance(data, dict):
                return data
            logger.warning("Session table %s is not an object; starting fresh", path)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load session table %s: %s", path, e)
        return {}

    @contextmanager
    def _edit_table(self, path: Path) -> Iterator[Dict[str, dict]]:
        with self._locked(path):
            table = self._read_table(path)
            yield table
            self._write_atomic(path, json.dumps(table, indent=2, default=str))

    def load_cursor(self, session_id: str) -> Optional[SessionCursor]:
        raw = self._read_table(self.cursors_path).get(session_id)
        if raw is None:
            return None
        try:
            return SessionCursor.model_validate(raw)
        except ValidationError as e:
            logger.warning("Discarding invalid cursor for session %s: %s", session_id, e)
            return None

    def save_cursor(self, cursor: SessionCursor) -> SessionCursor:
        with self._edit_table(self.cursors_path) as table:
            table[cursor.session_id] = cursor.model_dump(mode="json")
        return cursor

    def load_counters(self, session_id: str) -> Optional[TriggerCounters]:
        raw = self._read_table(self.triggers_path).get(session_id)
        if raw is None:
            return None
        try:
            return TriggerCounters.model_validate(raw)
        except ValidationError as e:
            logger.warning("Discarding invalid trigger counters for session %s: %s", session_id, e)
            return None

    def save_counters(self, counters: TriggerCounters) -> TriggerCounters:
        with self._edit_table(self.triggers_path) as table:
            table[counters.session_id] = counters.model_dump(mode="json")
        return counters

    def delete_counters(self, session_id: str) -> None:
        with self._edit_table(self.triggers_path) as table:
            table.pop(session_id, None)

    # ------------------------------------------------------------------ #
    # Index stale log
    # ------------------------------------------------------------------ #

    def append_stale(self, record_id: str) -> None:
        """Queue a record id for the next index refresh (one short append)"""
        path = self.stale_path
        with self._locked(path):
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(record_id + "\n")

    def read_stale(self) -> List[str]:
        """Queued ids in append order (duplicates kept)"""
        path = self.stale_path
        if not path.exists():
            return []
        try:
            with open(path, encoding="utf-8") as f:
                return [line.strip() for line in f if line.strip()]
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Unreadable stale log %s (%s); ignoring", path, e)
            return []

    def consume_stale(self, count: int) -> None:
        """Drop the first ``count`` queued ids; ids appended since stay queued"""
        if count <= 0:
            return
        path = self.stale_path
        with self._locked(path):
            remaining = self.read_stale()[count:]
            self._write_atomic(path, "".join(r + "\n" for r in remaining))

    # ------------------------------------------------------------------ #
    # Audit log
    # ------------------------------------------------------------------ #

    def append_transition(self, transition: Transition) -> None:
        path = self.transitions_path
        with self._locked(path):
            self._append_jsonl(path, transition)

    def read_transitions(self, record_id: Optional[str] = None) -> List[Transition]:
        transitions = self._read_jsonl(self.transitions_path, Transition)
        if record_id:
            transitions = [t for t in transitions if t.record_id == record_id]
        return transitions
