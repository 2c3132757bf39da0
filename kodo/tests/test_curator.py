"""Tests for ingest (dedup, contradiction) and confidence transitions."""

import pytest
from unittest.mock import MagicMock


def _candidate(statement, category=None, signal=None, session="s1", offset=0):
    from kodo.common.schemas import Category, EvidenceRef, Signal
    from kodo.scribe.extractor import Candidate
    return Candidate(
        category=category or Category.RULE,
        statement=statement,
        evidence=EvidenceRef(session_id=session, offset=offset, excerpt=statement),
        signal=signal or Signal.NEUTRAL,
    )


@pytest.fixture
def curator(store, config):
    from kodo.scribe.curator import ConfidenceCurator
    return ConfidenceCurator(store, config)


class TestPolarity:
    def test_polarity(self):
        from kodo.scribe.curator import polarity
        assert polarity("Always use pnpm for installs") is True
        assert polarity("Never use pnpm for installs") is False
        assert polarity("Don't use pnpm for installs") is False
        assert polarity("Tabs for indentation") is None

    def test_same_subject(self):
        from kodo.scribe.curator import same_subject
        assert same_subject("Always use pnpm for installs", "Never use pnpm for installs")
        assert not same_subject("Always use pnpm for installs", "Never push to main")

    def test_polar_terms_follow_their_clause(self):
        from kodo.scribe.curator import polar_terms
        assert polar_terms("Use tabs for indentation, never spaces") == {
            "tabs": True, "indentation": True, "spaces": False,
        }
        assert polar_terms("Use tabs instead of spaces") == {"tabs": True, "spaces": False}
        assert polar_terms("Prefer pytest, not unittest") == {"pytest": True, "unittest": False}
        assert polar_terms("Tabs for indentation") == {}

    @pytest.mark.parametrize("a,b,expected", [
        ("Always use pnpm for installs", "Never use pnpm for installs", True),
        ("Always use tabs for indentation", "Use tabs for indentation, never spaces", False),
        ("Use tabs, never spaces", "Use spaces, never tabs", True),
        ("Use tabs instead of spaces", "Always use tabs", False),
    ])
    def test_contradicts(self, a, b, expected):
        from kodo.scribe.curator import contradicts
        assert contradicts(a, b) is expected


class TestIngest:
    def test_create_seeds_confidence_from_signal(self, curator):
        from kodo.common.schemas import Confidence, Signal, Status
        cases = [
            (Signal.CORRECTIVE, Confidence.HIGH),
            (Signal.CONFIRMED, Confidence.MEDIUM),
            (Signal.SPECULATIVE, Confidence.LOW),
            (Signal.NEUTRAL, Confidence.MEDIUM),
        ]
        for i, (signal, expected) in enumerate(cases):
            statements = [
                "Never commit generated files",
                "Run migrations with alembic",
                "Cache responses in redis",
                "Keep handlers thin",
            ]
            result = curator.ingest(_candidate(statements[i], signal=signal))
            assert result.action == "created"
            assert result.record.confidence is expected
            assert result.record.status is Status.PENDING

    def test_exact_duplicate_merges_evidence(self, curator, store):
        first = curator.ingest(_candidate("Never commit directly to main", session="s1", offset=0))
        second = curator.ingest(_candidate("never commit directly to main!", session="s2", offset=40))

        assert second.action == "merged"
        assert second.record.id == first.record.id
        learnings = store.list_learnings()
        assert len(learnings) == 1
        assert [e.ref for e in learnings[0].evidence_refs] == ["s1@0", "s2@40"]
        assert learnings[0].last_confirmed_at >= first.record.last_confirmed_at

    def test_same_evidence_is_not_duplicated(self, curator, store):
        curator.ingest(_candidate("Never commit directly to main"))
        curator.ingest(_candidate("Never commit directly to main"))
        assert len(store.list_learnings()[0].evidence_refs) == 1

    def test_near_duplicate_merges(self, curator, store):
        curator.ingest(_candidate("Always run the linter before pushing code"))
        result = curator.ingest(_candidate("Always run the linter before pushing the code", offset=9))
        assert result.action == "merged"
        assert result.similarity >= 0.85
        assert len(store.list_learnings()) == 1

    def test_below_threshold_creates(self, curator, store):
        from kodo.common.schemas import Category
        curator.ingest(_candidate("We picked FastAPI over Flask for async support", category=Category.DECISION))
        curator.ingest(_candidate("We picked Celery over RQ for scheduling", category=Category.DECISION))
        assert len(store.list_learnings()) == 2

    def test_dedup_is_scoped_to_category(self, curator, store):
        from kodo.common.schemas import Category
        curator.ingest(_candidate("Always use pnpm for installs", category=Category.RULE))
        curator.ingest(_candidate("Always use pnpm for installs", category=Category.TECH_STACK))
        assert len(store.list_learnings()) == 2

    def test_threshold_is_configurable(self, store, config):
        from kodo.scribe.curator import ConfidenceCurator
        config.curator.similarity_threshold = 0.5
        curator = ConfidenceCurator(store, config)
        curator.ingest(_candidate("Run tests first"))
        result = curator.ingest(_candidate("Run tests last", offset=5))
        assert result.action == "merged"

    def test_contradiction_archives_old_rule(self, curator, store):
        from kodo.common.schemas import Status
        old = curator.ingest(_candidate("Always use pnpm for installs")).record
        result = curator.ingest(_candidate("Never use pnpm for installs", offset=50))

        assert result.action == "contradicted"
        assert [r.id for r in result.archived] == [old.id]
        archived = store.get_learning(old.id)
        assert archived.status is Status.ARCHIVED
        assert archived.superseded_by == result.record.id
        assert store.get_learning(result.record.id).status is Status.PENDING

        actions = [t.action for t in store.read_transitions(old.id)]
        assert actions == ["create", "contradict"]

    def test_consistent_mixed_polarity_rule_is_not_a_contradiction(self, curator, store):
        from kodo.common.schemas import Status
        old = curator.ingest(_candidate("Always use tabs for indentation"), status=Status.ACTIVE).record
        result = curator.ingest(_candidate("Use tabs for indentation, never spaces", offset=30))

        assert result.action == "created"
        assert result.archived == []
        assert store.get_learning(old.id).status is Status.ACTIVE

    def test_archived_records_are_not_merge_targets(self, curator, store):
        first = curator.ingest(_candidate("Never commit directly to main")).record
        curator.delete(first.id)
        result = curator.ingest(_candidate("Never commit directly to main", offset=10))
        assert result.action == "created"
        assert result.record.id != first.id

    def test_non_polar_categories_do_not_contradict(self, curator, store):
        from kodo.common.schemas import Category, Status
        curator.ingest(_candidate("We always deploy on Fridays", category=Category.DECISION))
        result = curator.ingest(_candidate("We never deploy on Fridays", category=Category.DECISION))
        assert result.action == "created"
        assert all(l.status is Status.PENDING for l in store.list_learnings())

    def test_index_is_notified(self, store, config):
        from kodo.scribe.curator import ConfidenceCurator
        index = MagicMock()
        curator = ConfidenceCurator(store, config, index=index)
        result = curator.ingest(_candidate("Never commit directly to main"))
        index.mark_stale.assert_called_with(result.record.id)


class TestAutoApply:
    def test_high_and_medium_are_activated(self, curator):
        from kodo.common.schemas import Signal, Status
        high = curator.ingest(_candidate("Never commit generated files", signal=Signal.CORRECTIVE))
        medium = curator.ingest(_candidate("Keep handlers thin and stateless", signal=Signal.NEUTRAL))
        assert curator.auto_apply(high).status is Status.ACTIVE
        assert curator.auto_apply(medium).status is Status.ACTIVE

    def test_low_stays_pending(self, curator, store):
        from kodo.common.schemas import Signal, Status
        low = curator.ingest(_candidate("Maybe cache responses in redis", signal=Signal.SPECULATIVE))
        assert curator.auto_apply(low) is None
        assert store.get_learning(low.record.id).status is Status.PENDING

    def test_disabled_auto_reflect(self, store, config):
        from kodo.common.schemas import Signal
        from kodo.scribe.curator import ConfidenceCurator
        config.learning.auto_reflect = False
        curator = ConfidenceCurator(store, config)
        result = curator.ingest(_candidate("Never commit generated files", signal=Signal.CORRECTIVE))
        assert curator.auto_apply(result) is None

    def test_threshold_high(self, store, config):
        from kodo.common.schemas import Signal
        from kodo.scribe.curator import ConfidenceCurator
        config.learning.confidence_threshold = "high"
        curator = ConfidenceCurator(store, config)
        medium = curator.ingest(_candidate("Keep handlers thin and stateless"))
        assert curator.auto_apply(medium) is None


class TestTransitions:
    def _low(self, curator):
        from kodo.common.schemas import Signal
        return curator.ingest(_candidate("Maybe cache responses in redis", signal=Signal.SPECULATIVE)).record

    def test_promote_up_the_ladder(self, curator, store):
        from kodo.common.schemas import Confidence
        record = self._low(curator)
        assert curator.promote(record.id).confidence is Confidence.MEDIUM
        assert curator.promote(record.id).confidence is Confidence.HIGH
        assert curator.promote(record.id).confidence is Confidence.HIGH
        # the no-op promotion is not logged
        actions = [t.action for t in store.read_transitions(record.id)]
        assert actions == ["create", "promote", "promote"]

    def test_demote_low_archives(self, curator, store):
        from kodo.common.schemas import Confidence, Status
        record = self._low(curator)
        demoted = curator.demote(record.id)
        assert demoted.status is Status.ARCHIVED
        assert demoted.confidence is Confidence.LOW
        assert store.get_learning(record.id).status is Status.ARCHIVED

    def test_demote_high_to_medium(self, curator):
        from kodo.common.schemas import Confidence, Signal, Status
        record = curator.ingest(_candidate("Never commit generated files", signal=Signal.CORRECTIVE)).record
        demoted = curator.demote(record.id)
        assert demoted.confidence is Confidence.MEDIUM
        assert demoted.status is Status.PENDING

    def test_archived_cannot_be_promoted(self, curator):
        from kodo.common.errors import InvalidTransitionError
        record = self._low(curator)
        curator.demote(record.id)
        with pytest.raises(InvalidTransitionError):
            curator.promote(record.id)
        with pytest.raises(InvalidTransitionError):
            curator.demote(record.id)

    def test_review(self, curator):
        from kodo.common.errors import InvalidTransitionError
        from kodo.common.schemas import Status
        accepted = self._low(curator)
        assert curator.review(accepted.id, accept=True).status is Status.ACTIVE
        with pytest.raises(InvalidTransitionError):
            curator.review(accepted.id, accept=True)

        rejected = curator.ingest(_candidate("Keep handlers thin and stateless")).record
        assert curator.review(rejected.id, accept=False).status is Status.ARCHIVED

    def test_contradict(self, curator):
        from kodo.common.schemas import Status
        record = self._low(curator)
        archived = curator.contradict(record.id, superseded_by="lrn_20260101_rule_abcdef0123")
        assert archived.status is Status.ARCHIVED
        assert archived.superseded_by == "lrn_20260101_rule_abcdef0123"

    def test_unknown_record(self, curator):
        from kodo.common.errors import RecordNotFoundError
        with pytest.raises(RecordNotFoundError):
            curator.promote("lrn_20260101_rule_0000000000")
        with pytest.raises(RecordNotFoundError):
            curator.promote("bogus")

    def test_transition_log_records_states(self, curator, store):
        record = self._low(curator)
        curator.promote(record.id)
        last = store.read_transitions(record.id)[-1]
        assert last.prior_state == "pending/low"
        assert last.new_state == "pending/medium"


class TestDeleteAndManual:
    def test_soft_delete_archives(self, curator, store):
        from kodo.common.schemas import Status
        record = curator.ingest(_candidate("Never commit generated files")).record
        curator.delete(record.id)
        assert store.get_learning(record.id).status is Status.ARCHIVED

    def test_hard_delete_removes(self, curator, store):
        from kodo.common.errors import RecordNotFoundError
        record = curator.ingest(_candidate("Never commit generated files")).record
        curator.delete(record.id, hard=True)
        with pytest.raises(RecordNotFoundError):
            store.get_learning(record.id)
        assert store.read_transitions(record.id)[-1].new_state == "removed"

    def test_context_entries(self, curator, store):
        from kodo.common.errors import RecordNotFoundError
        entry = curator.add_context("billing", "invoices", "Totals are stored in cents", tags=["money"])
        assert store.get_context(entry.id).tags == ["money"]
        curator.delete(entry.id)
        with pytest.raises(RecordNotFoundError):
            store.get_context(entry.id)

    def test_context_confidence_ladder(self, curator, store):
        from kodo.common.schemas import Confidence, Status
        entry = curator.add_context("billing", "invoices", "Totals are stored in cents")
        assert curator.promote(entry.id).confidence is Confidence.HIGH
        assert curator.promote(entry.id).confidence is Confidence.HIGH
        curator.demote(entry.id)
        curator.demote(entry.id)
        lowest = curator.demote(entry.id)

        assert lowest.confidence is Confidence.LOW
        stored = store.get_context(entry.id)
        assert stored.confidence is Confidence.LOW
        assert stored.status is Status.ACTIVE
        actions = [t.action for t in store.read_transitions(entry.id)]
        assert actions == ["create", "promote", "demote", "demote"]

    def test_update_context(self, curator, store):
        entry = curator.add_context("billing", "invoices", "Totals are stored in cents", tags=["money"])
        updated = curator.update_context(entry.id, body="Use integer cents everywhere.", tags=["money", "db"])

        stored = store.get_context(entry.id)
        assert stored.body == "Use integer cents everywhere."
        assert stored.tags == ["money", "db"]
        assert stored.title == "Totals are stored in cents"
        assert updated.updated_at >= entry.updated_at
        last = store.read_transitions(entry.id)[-1]
        assert last.action == "edit"
        assert last.detail == "fields=body,tags"

    def test_update_context_rejects_invalid_edit(self, curator, store):
        entry = curator.add_context("billing", "invoices", "Totals are stored in cents")
        with pytest.raises(ValueError):
            curator.update_context(entry.id, title="")
        assert store.get_context(entry.id).title == "Totals are stored in cents"
        assert [t.action for t in store.read_transitions(entry.id)] == ["create"]

    def test_unchanged_update_is_a_no_op(self, curator, store):
        entry = curator.add_context("billing", "invoices", "Totals are stored in cents")
        curator.update_context(entry.id, title="Totals are stored in cents")
        assert [t.action for t in store.read_transitions(entry.id)] == ["create"]

    def test_curate_learning_defaults_to_active(self, curator):
        from kodo.common.schemas import Category, Confidence, Status
        result = curator.curate_learning(Category.CONVENTION, "Test files use the test_ prefix")
        assert result.record.status is Status.ACTIVE
        assert result.record.confidence is Confidence.MEDIUM
        assert result.record.evidence_refs[0].session_id == "manual"

    def test_list_filters(self, curator):
        from kodo.common.schemas import Category, Confidence, Signal
        curator.ingest(_candidate("Never commit generated files", signal=Signal.CORRECTIVE))
        curator.ingest(_candidate("Maybe cache responses in redis", signal=Signal.SPECULATIVE))
        curator.curate_learning(Category.DECISION, "We chose Postgres over MySQL for JSONB")
        assert len(curator.list()) == 3
        assert len(curator.list(category=Category.RULE)) == 2
        assert [l.statement for l in curator.list(confidence=Confidence.LOW)] == ["Maybe cache responses in redis"]
