"""Tests for the record store: layout, learnings, context entries, session tables."""

import json
import pytest


def _learning(statement, category=None, status=None, confidence=None):
    from kodo.common.schemas import (
        Category, Confidence, EvidenceRef, Learning, Status, generate_learning_id,
    )
    category = category or Category.RULE
    return Learning(
        id=generate_learning_id(category),
        category=category,
        statement=statement,
        evidence_refs=[EvidenceRef(session_id="s1", offset=0, excerpt=statement)],
        confidence=confidence or Confidence.MEDIUM,
        status=status or Status.ACTIVE,
    )


def _save(store, learning):
    with store.edit_category(learning.category) as records:
        records.append(learning)
    return learning


class TestLayout:
    def test_init_is_idempotent(self, kodo_root):
        from kodo.common.store import RecordStore
        store = RecordStore(kodo_root)
        assert not store.is_initialized
        store.init()
        store.init()
        assert store.is_initialized
        for name in ("learnings", "context", "sessions", "index", "logs"):
            assert (kodo_root / name).is_dir()

    def test_require_initialized(self, kodo_root):
        from kodo.common.errors import NotInitializedError, EXIT_NOT_INITIALIZED
        from kodo.common.store import RecordStore
        with pytest.raises(NotInitializedError) as exc:
            RecordStore(kodo_root).require_initialized()
        assert exc.value.exit_code == EXIT_NOT_INITIALIZED


class TestLearnings:
    def test_add_and_get(self, store):
        learning = _save(store, _learning("Never commit directly to main"))
        loaded = store.get_learning(learning.id)
        assert loaded.statement == "Never commit directly to main"
        assert loaded.fingerprint == learning.fingerprint
        assert store.get(learning.id) == loaded

    def test_one_file_per_category(self, store):
        from kodo.common.schemas import Category
        _save(store, _learning("Use pnpm for installs", category=Category.TECH_STACK))
        path = store.learning_path(Category.TECH_STACK)
        assert path.name == "tech_stack.jsonl"
        lines = path.read_text().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["category"] == "tech_stack"

    def test_list_filters_by_status(self, store):
        from kodo.common.schemas import Status
        _save(store, _learning("Run the linter before pushing", status=Status.PENDING))
        _save(store, _learning("Never force push to main"))
        assert len(store.list_learnings()) == 2
        pending = store.list_learnings(status=Status.PENDING)
        assert [l.statement for l in pending] == ["Run the linter before pushing"]

    def test_remove(self, store):
        from kodo.common.errors import RecordNotFoundError
        learning = _save(store, _learning("Never force push to main"))
        store.remove_learning(learning.id)
        with pytest.raises(RecordNotFoundError):
            store.get_learning(learning.id)

    def test_unknown_ids(self, store):
        from kodo.common.errors import RecordNotFoundError
        with pytest.raises(RecordNotFoundError):
            store.get("lrn_20260101_rule_0000000000")
        with pytest.raises(RecordNotFoundError):
            store.get("nonsense")

    def test_corrupt_line_is_fatal(self, store):
        from kodo.common.errors import StoreCorruptedError
        from kodo.common.schemas import Category
        _save(store, _learning("Never force push to main"))
        with open(store.learning_path(Category.RULE), "a") as f:
            f.write("{broken\n")
        with pytest.raises(StoreCorruptedError) as exc:
            store.list_learnings()
        assert exc.value.line_no == 2

    def test_failed_edit_leaves_file_untouched(self, store):
        from kodo.common.schemas import Category
        _save(store, _learning("Never force push to main"))
        before = store.learning_path(Category.RULE).read_text()
        with pytest.raises(RuntimeError):
            with store.edit_category(Category.RULE) as records:
                records.clear()
                raise RuntimeError("boom")
        assert store.learning_path(Category.RULE).read_text() == before

    def test_stats(self, store):
        from kodo.common.schemas import Status
        _save(store, _learning("Run the linter before pushing", status=Status.PENDING))
        _save(store, _learning("Never force push to main"))
        stats = store.stats()
        assert stats["learnings"] == 2
        assert stats["pending"] == 1
        assert stats["active"] == 1
        assert stats["context"] == 0


class TestContextEntries:
    def _entry(self, **kwargs):
        from kodo.common.schemas import ContextEntry, generate_context_id
        fields = {
            "id": generate_context_id(),
            "domain": "Billing",
            "topic": "Invoice Totals",
            "title": "Invoice totals are stored in cents",
            "body": "All money columns are integers.",
        }
        fields.update(kwargs)
        return ContextEntry(**fields)

    def test_add_list_get(self, store):
        entry = store.add_context(self._entry())
        assert store.context_path("billing", "invoice-totals").exists()
        assert [e.id for e in store.list_context(domain="Billing")] == [entry.id]
        assert store.list_context(domain="shipping") == []
        assert store.get(entry.id).title == "Invoice totals are stored in cents"

    def test_edit_and_remove(self, store):
        from kodo.common.errors import RecordNotFoundError
        entry = store.add_context(self._entry())
        with store.edit_context(entry.id) as stored:
            stored.body = "Use integer cents everywhere."
        assert store.get_context(entry.id).body == "Use integer cents everywhere."
        store.remove_context(entry.id)
        with pytest.raises(RecordNotFoundError):
            store.get_context(entry.id)

    def test_iter_records_yields_both_kinds(self, store):
        from kodo.common.schemas import RecordKind
        _save(store, _learning("Never force push to main"))
        store.add_context(self._entry())
        kinds = [r.kind for r in store.iter_records()]
        assert kinds == [RecordKind.LEARNING, RecordKind.CONTEXT]


class TestSessionTables:
    def test_cursor_round_trip(self, store):
        from kodo.common.schemas import SessionCursor
        store.save_cursor(SessionCursor(session_id="s1", transcript_path="/t.jsonl", byte_offset=42))
        assert store.load_cursor("s1").byte_offset == 42
        assert store.load_cursor("other") is None

    def test_corrupt_table_is_not_fatal(self, store):
        store.cursors_path.write_text("{nope")
        assert store.load_cursor("s1") is None

    def test_counters_delete(self, store):
        from kodo.common.schemas import TriggerCounters
        store.save_counters(TriggerCounters(session_id="s1", message_count=3))
        assert store.load_counters("s1").message_count == 3
        store.delete_counters("s1")
        assert store.load_counters("s1") is None


class TestTransitions:
    def test_append_and_filter(self, store):
        from kodo.common.schemas import Transition
        store.append_transition(Transition(record_id="a", action="create", prior_state="none", new_state="pending/medium"))
        store.append_transition(Transition(record_id="b", action="promote", prior_state="active/low", new_state="active/medium"))
        assert len(store.read_transitions()) == 2
        assert [t.action for t in store.read_transitions("b")] == ["promote"]


class TestStaleLog:
    def test_consume_keeps_later_appends(self, store):
        store.append_stale("a")
        store.append_stale("b")
        seen = store.read_stale()
        store.append_stale("c")
        store.consume_stale(len(seen))
        assert store.read_stale() == ["c"]
        assert store.stale_path.parent == store.snapshot_path.parent

    def test_empty_log(self, store):
        assert store.read_stale() == []
        store.consume_stale(0)
        assert not store.stale_path.exists()
