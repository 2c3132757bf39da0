"""Tests for pattern-based learning extraction."""

import pytest


def _event(text, kind="user", offset=0):
    from kodo.scribe.transcript import TranscriptEvent
    return TranscriptEvent(session_id="s1", offset=offset, kind=kind, text=text)


class TestLearningExtractor:
    @pytest.fixture
    def extractor(self):
        from kodo.scribe.extractor import LearningExtractor
        return LearningExtractor()

    def _categories(self, candidates):
        return {c.category for c in candidates}

    def test_rule(self, extractor):
        from kodo.common.schemas import Category, Signal
        candidates = extractor.extract([_event("Never commit directly to the main branch.")])
        assert self._categories(candidates) == {Category.RULE}
        assert candidates[0].statement == "Never commit directly to the main branch."
        assert candidates[0].signal is Signal.CORRECTIVE

    def test_sentence_with_two_categories(self, extractor):
        from kodo.common.schemas import Category, Signal
        candidates = extractor.extract([
            _event("We decided to use PostgreSQL because it handles concurrent writes better."),
        ])
        assert self._categories(candidates) == {Category.DECISION, Category.TECH_STACK}
        assert all(c.signal is Signal.NEUTRAL for c in candidates)

    def test_convention(self, extractor):
        from kodo.common.schemas import Category
        candidates = extractor.extract([_event("Files are named in snake_case.", kind="assistant")])
        assert Category.CONVENTION in self._categories(candidates)

    def test_workflow(self, extractor):
        from kodo.common.schemas import Category
        candidates = extractor.extract([_event("Before merging, run `make lint` and the full test suite.")])
        assert Category.WORKFLOW in self._categories(candidates)

    def test_domain(self, extractor):
        from kodo.common.schemas import Category
        candidates = extractor.extract([_event("A tenant means one paying organization with its own database.")])
        assert self._categories(candidates) == {Category.DOMAIN}

    def test_speculative_signal(self, extractor):
        from kodo.common.schemas import Category, Signal
        candidates = extractor.extract([_event("Maybe we should use Redis for caching.")])
        assert Category.TECH_STACK in self._categories(candidates)
        assert all(c.signal is Signal.SPECULATIVE for c in candidates)

    def test_confirmed_signal(self, extractor):
        from kodo.common.schemas import Category, Signal
        candidates = extractor.extract([
            _event("Using pytest fixtures for the database fixed the flaky tests.", kind="assistant"),
        ])
        tech = [c for c in candidates if c.category is Category.TECH_STACK]
        assert tech and tech[0].signal is Signal.CONFIRMED

    def test_corrective_opener_applies_to_user_message(self, extractor):
        from kodo.common.schemas import Category, Signal
        text = "No. Deploys go through the staging pipeline first, then run the smoke tests."
        user = extractor.extract([_event(text, kind="user")])
        assistant = extractor.extract([_event(text, kind="assistant")])
        assert Category.WORKFLOW in self._categories(user)
        assert all(c.signal is Signal.CORRECTIVE for c in user)
        assert all(c.signal is Signal.NEUTRAL for c in assistant)

    def test_tool_results_are_skipped(self, extractor):
        candidates = extractor.extract([
            _event("You must restart the server after editing config.", kind="tool_result"),
        ])
        assert candidates == []

    def test_questions_are_skipped(self, extractor):
        assert extractor.extract([_event("Should we always use tabs for indentation?")]) == []

    def test_short_sentences_are_skipped(self, extractor):
        assert extractor.extract([_event("Never do X.")]) == []

    def test_code_fences_are_ignored(self, extractor):
        text = "```\nnever_do_this = always()\n```\nNever hardcode credentials in config files."
        candidates = extractor.extract([_event(text)])
        assert candidates
        assert all("never_do_this" not in c.statement for c in candidates)

    def test_bullets_and_filler_are_stripped(self, extractor):
        candidates = extractor.extract([_event("- ok so always run the linter before pushing")])
        assert candidates[0].statement == "Always run the linter before pushing"

    def test_plain_chatter_yields_nothing(self, extractor):
        assert extractor.extract([_event("Let me look at the failing function for a moment.")]) == []

    def test_evidence_points_at_event(self, extractor):
        candidates = extractor.extract([_event("Never commit directly to the main branch.", offset=128)])
        evidence = candidates[0].evidence
        assert evidence.ref == "s1@128"
        assert evidence.excerpt == "Never commit directly to the main branch."

    def test_one_sentence_per_candidate(self, extractor):
        text = "Never commit directly to the main branch. A tenant means one paying organization."
        candidates = extractor.extract([_event(text)])
        statements = [c.statement for c in candidates]
        assert "Never commit directly to the main branch." in statements
        assert "A tenant means one paying organization." in statements

    def test_explain(self, extractor):
        candidate = extractor.extract([_event("Never commit directly to the main branch.")])[0]
        explanation = extractor.explain(candidate)
        assert "rule" in explanation
        assert "s1@0" in explanation
