"""
Reflect Pipeline

Wires the capture side together for one hook invocation:

    hook event -> trigger -> cursor.advance -> extract -> curate
               -> auto-apply -> cursor.commit

The cursor is committed only after every candidate has been curated, so a
run that dies half-way is simply repeated by the next invocation; dedup makes
the repeat harmless.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from ..common.config import KodoConfig
from ..common.schemas import HookEvent
from ..common.store import RecordStore
from .curator import ConfidenceCurator
from .extractor import LearningExtractor
from .transcript import TranscriptCursor
from .trigger import HookTriggerController, TriggerDecision

logger = logging.getLogger("kodo.scribe.pipeline")

# Hooks that count one message toward the trigger
COUNTING_HOOKS = (HookEvent.PROMPT_SUBMIT, HookEvent.TOOL_USE)
# Hooks that flush the session regardless of counters
FLUSHING_HOOKS = (HookEvent.PRE_COMPACT, HookEvent.SESSION_END)


@dataclass
class ReflectResult:
    """Outcome of one reflect invocation"""
    session_id: str
    ran: bool = False
    reason: str = ""
    events: int = 0
    candidates: int = 0
    created: List[str] = field(default_factory=list)
    merged: List[str] = field(default_factory=list)
    contradicted: List[str] = field(default_factory=list)
    activated: List[str] = field(default_factory=list)
    start_offset: int = 0
    end_offset: int = 0

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "ran": self.ran,
            "reason": self.reason,
            "events": self.events,
            "candidates": self.candidates,
            "created": self.created,
            "merged": self.merged,
            "contradicted": self.contradicted,
            "activated": self.activated,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
        }

    def summary(self) -> str:
        if not self.ran:
            return f"Reflect skipped for {self.session_id} ({self.reason})"
        return (
            f"Reflected {self.session_id}: {self.events} events, {self.candidates} candidates, "
            f"{len(self.created)} created, {len(self.merged)} merged, "
            f"{len(self.contradicted)} superseded, {len(self.activated)} activated"
        )


class ReflectPipeline:
    """
    Capture pipeline for session transcripts.

    Usage:
        pipeline = ReflectPipeline(config, store)
        result = pipeline.handle_hook(HookEvent.PROMPT_SUBMIT, session_id, transcript_path)
    """

    def __init__(
        self,
        config: KodoConfig,
        store: RecordStore,
        index=None,
        extractor: Optional[LearningExtractor] = None,
        curator: Optional[ConfidenceCurator] = None,
    ):
        self._config = config
        self._store = store
        self._cursor = TranscriptCursor(store)
        self._trigger = HookTriggerController(store, config.trigger)
        self._extractor = extractor or LearningExtractor()
        self._curator = curator or ConfidenceCurator(store, config, index=index)

    @property
    def trigger(self) -> HookTriggerController:
        return self._trigger

    @property
    def cursor(self) -> TranscriptCursor:
        return self._cursor

    @property
    def curator(self) -> ConfidenceCurator:
        return self._curator

    def handle_hook(
        self,
        event: HookEvent,
        session_id: str,
        transcript_path: Optional[Union[str, Path]] = None,
    ) -> ReflectResult:
        """
        Handle one assistant hook invocation.

        Args:
            event: Hook that fired
            session_id: Session identifier
            transcript_path: Session transcript (required to reflect)

        Returns:
            ReflectResult (``ran`` is False when the trigger did not fire)
        """
        self._store.require_initialized()
        if event is HookEvent.SESSION_START:
            self._trigger.reset(session_id)
            return ReflectResult(session_id=session_id, reason="session_start")

        if not self._trigger.enabled:
            return ReflectResult(session_id=session_id, reason="disabled")

        if event in FLUSHING_HOOKS:
            decision = self._trigger.force(session_id)
        elif event in COUNTING_HOOKS:
            decision = self._trigger.record_event(session_id)
        else:
            raise ValueError(f"Unhandled hook event: {event}")

        if not decision.fired:
            return ReflectResult(session_id=session_id, reason=decision.reason)
        if transcript_path is None:
            logger.warning("Trigger fired for session %s without a transcript path", session_id)
            return ReflectResult(session_id=session_id, reason="no_transcript")

        return self.reflect(
            session_id, transcript_path, reason=decision.reason, flush=event in FLUSHING_HOOKS,
        )

    def check_threshold(self, session_id: str) -> TriggerDecision:
        """Dry run: would the next evaluation fire? Nothing is committed."""
        return self._trigger.check(session_id)

    def reflect(
        self,
        session_id: str,
        transcript_path: Union[str, Path],
        reason: str = "manual",
        auto_apply: Optional[bool] = None,
        flush: bool = False,
    ) -> ReflectResult:
        """
        Process everything appended to the transcript since the last commit.

        Args:
            session_id: Session identifier
            transcript_path: Session transcript
            reason: Why this run happened (recorded in the result)
            auto_apply: Activate eligible pending records
                (default: ``learning.auto_reflect``)
            flush: Also take a final line that lacks its newline when it
                is already a whole record (session end, pre-compact)

        Returns:
            ReflectResult
        """
        self._store.require_initialized()
        apply = self._config.learning.auto_reflect if auto_apply is None else auto_apply

        events = self._cursor.advance(session_id, transcript_path, include_tail=flush)
        result = ReflectResult(
            session_id=session_id,
            ran=True,
            reason=reason,
            start_offset=events.start_offset,
            end_offset=events.end_offset,
        )

        batch = events.to_list()
        result.events = len(batch)
        candidates = self._extractor.extract(batch)
        result.candidates = len(candidates)

        for candidate in candidates:
            outcome = self._curator.ingest(candidate)
            if outcome.action == "merged":
                result.merged.append(outcome.record.id)
            else:
                result.created.append(outcome.record.id)
                result.contradicted.extend(r.id for r in outcome.archived)
            if apply and self._curator.auto_apply(outcome) is not None:
                result.activated.append(outcome.record.id)

        self._cursor.commit(events)
        logger.info(result.summary())
        return result
