"""End-to-end tests for the reflect pipeline."""

import pytest
from unittest.mock import patch


@pytest.fixture
def pipeline(store, config):
    from kodo.scribe.pipeline import ReflectPipeline
    return ReflectPipeline(config, store)


@pytest.fixture
def session(transcript, message):
    return transcript(
        message("user", "Never commit directly to the main branch."),
        message("assistant", "We decided to use PostgreSQL because it handles concurrent writes better."),
        message("assistant", "Let me look at the failing function for a moment."),
    )


class TestReflect:
    def test_session_end_captures_learnings(self, pipeline, store, session):
        from kodo.common.schemas import Category, HookEvent, Status
        result = pipeline.handle_hook(HookEvent.SESSION_END, "s1", session)

        assert result.ran
        assert result.reason == "forced"
        assert result.events == 3
        assert result.candidates == 3
        assert len(result.created) == 3
        assert sorted(result.activated) == sorted(result.created)

        categories = {l.category for l in store.list_learnings(status=Status.ACTIVE)}
        assert categories == {Category.RULE, Category.DECISION, Category.TECH_STACK}
        assert pipeline.cursor.offset("s1") == session.stat().st_size

    def test_reflect_is_idempotent(self, pipeline, store, session):
        first = pipeline.reflect("s1", session)
        second = pipeline.reflect("s1", session)
        assert len(first.created) == 3
        assert second.events == 0
        assert second.created == [] and second.merged == []
        assert len(store.list_learnings()) == 3

    def test_reprocessing_merges_without_duplicating_evidence(self, pipeline, store, session):
        pipeline.reflect("s1", session)
        pipeline.cursor.reset("s1")
        again = pipeline.reflect("s1", session)
        assert again.created == []
        assert len(again.merged) == 3
        assert all(len(l.evidence_refs) == 1 for l in store.list_learnings())

    def test_interrupted_run_is_replayed(self, pipeline, store, session):
        from kodo.scribe.transcript import TranscriptCursor
        with patch.object(TranscriptCursor, "commit", side_effect=RuntimeError("killed")):
            with pytest.raises(RuntimeError):
                pipeline.reflect("s1", session)
        assert pipeline.cursor.offset("s1") == 0

        replay = pipeline.reflect("s1", session)
        assert len(replay.merged) == 3
        assert len(store.list_learnings()) == 3

    def test_auto_apply_off_leaves_pending(self, pipeline, store, session):
        from kodo.common.schemas import Status
        result = pipeline.reflect("s1", session, auto_apply=False)
        assert result.activated == []
        assert len(store.list_learnings(status=Status.PENDING)) == 3

    def test_reflect_queues_index_refresh_without_snapshot_writes(self, store, config, session):
        from kodo.common.store import RecordStore
        from kodo.retriever.index import RelevanceIndex
        from kodo.scribe.pipeline import ReflectPipeline
        index = RelevanceIndex(store, config)
        index.rebuild()
        pipeline = ReflectPipeline(config, store, index=index)

        def snapshot_writes(mock):
            return [c for c in mock.call_args_list if c.args[0] == store.snapshot_path]

        with patch.object(RecordStore, "write_json", wraps=store.write_json) as write_json:
            result = pipeline.reflect("s1", session)
        assert snapshot_writes(write_json) == []
        # one create and one auto-accept per candidate
        assert len(store.read_stale()) == 2 * result.candidates

        with patch.object(RecordStore, "write_json", wraps=store.write_json) as write_json:
            assert index.query("commit to main branch")
        assert len(snapshot_writes(write_json)) == 1
        assert store.read_stale() == []

    def test_new_events_only(self, pipeline, store, session, transcript, message):
        pipeline.reflect("s1", session)
        transcript(message("user", "Files are named in snake_case."))
        result = pipeline.reflect("s1", session)
        assert result.events == 1
        assert len(result.created) == 1

    def test_missing_transcript(self, pipeline, tmp_path):
        result = pipeline.reflect("s1", tmp_path / "missing.jsonl")
        assert result.ran
        assert result.events == 0
        assert result.created == []


class TestHooks:
    def test_prompt_submit_counts_until_threshold(self, store, config, session):
        from kodo.common.schemas import HookEvent
        from kodo.scribe.pipeline import ReflectPipeline
        config.trigger.message_threshold = 2
        pipeline = ReflectPipeline(config, store)

        first = pipeline.handle_hook(HookEvent.PROMPT_SUBMIT, "s1", session)
        assert not first.ran
        assert first.reason == "below_threshold"
        assert store.list_learnings() == []

        second = pipeline.handle_hook(HookEvent.PROMPT_SUBMIT, "s1", session)
        assert second.ran
        assert second.reason == "threshold"
        assert len(second.created) == 3

    def test_check_threshold_is_dry(self, pipeline, store, session):
        from kodo.common.schemas import HookEvent
        pipeline.handle_hook(HookEvent.TOOL_USE, "s1", session)
        decision = pipeline.check_threshold("s1")
        assert not decision.fired
        assert decision.message_count == 1
        assert store.load_counters("s1").message_count == 1
        assert store.load_cursor("s1") is None

    def test_session_start_resets_counters(self, pipeline, store, session):
        from kodo.common.schemas import HookEvent
        pipeline.handle_hook(HookEvent.PROMPT_SUBMIT, "s1", session)
        result = pipeline.handle_hook(HookEvent.SESSION_START, "s1", session)
        assert not result.ran
        assert store.load_counters("s1") is None

    def test_disabled(self, store, config, session):
        from kodo.common.schemas import HookEvent
        from kodo.scribe.pipeline import ReflectPipeline
        config.trigger.auto_reflect = False
        result = ReflectPipeline(config, store).handle_hook(HookEvent.SESSION_END, "s1", session)
        assert not result.ran
        assert result.reason == "disabled"

    def test_fired_without_transcript(self, pipeline):
        from kodo.common.schemas import HookEvent
        result = pipeline.handle_hook(HookEvent.PRE_COMPACT, "s1", None)
        assert not result.ran
        assert result.reason == "no_transcript"

    def test_requires_initialized_store(self, config, kodo_root, session):
        from kodo.common.errors import NotInitializedError
        from kodo.common.schemas import HookEvent
        from kodo.common.store import RecordStore
        from kodo.scribe.pipeline import ReflectPipeline
        pipeline = ReflectPipeline(config, RecordStore(kodo_root))
        with pytest.raises(NotInitializedError):
            pipeline.handle_hook(HookEvent.SESSION_END, "s1", session)

    def test_session_end_takes_unterminated_last_message(self, pipeline, store, transcript, message):
        import json
        from kodo.common.schemas import HookEvent
        path = transcript(
            message("user", "Let me look at the failing function for a moment."),
            partial=json.dumps(message("user", "Never commit directly to the main branch.")),
        )
        result = pipeline.handle_hook(HookEvent.SESSION_END, "s1", path)
        assert result.events == 2
        assert [l.statement for l in store.list_learnings()] == ["Never commit directly to the main branch."]
        assert pipeline.cursor.offset("s1") == path.stat().st_size

    def test_counting_hook_holds_back_unterminated_line(self, store, config, transcript, message):
        import json
        from kodo.common.schemas import HookEvent
        from kodo.scribe.pipeline import ReflectPipeline
        config.trigger.message_threshold = 1
        path = transcript(partial=json.dumps(message("user", "Never commit directly to the main branch.")))
        result = ReflectPipeline(config, store).handle_hook(HookEvent.PROMPT_SUBMIT, "s1", path)
        assert result.ran
        assert result.events == 0
        assert store.list_learnings() == []

    def test_summary(self, pipeline, session):
        result = pipeline.reflect("s1", session)
        assert result.summary().startswith("Reflected s1: 3 events, 3 candidates, 3 created")
        assert result.to_dict()["events"] == 3
