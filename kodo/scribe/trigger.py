"""
Hook Trigger Controller

Decides, per session, whether a hook invocation should run the reflect
pipeline. A session fires when either gate opens:
- message gate: ``message_count >= message_threshold``
- time gate: minutes since the last fire ``>= interval_minutes`` (0 disables)

Firing resets the message counter and stamps ``last_fire_at``. Counters live
in the record store's session table so hooks stay stateless between calls.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..common.config import TriggerConfig
from ..common.schemas import TriggerCounters, TriggerState, utcnow
from ..common.store import RecordStore

logger = logging.getLogger("kodo.scribe.trigger")


@dataclass
class TriggerDecision:
    """Result of evaluating the gates for one session"""
    fired: bool
    state: TriggerState
    reason: str  # "threshold", "interval", "forced", "below_threshold", "disabled"
    message_count: int
    elapsed_minutes: float

    def to_dict(self) -> dict:
        return {
            "fired": self.fired,
            "state": self.state.value,
            "reason": self.reason,
            "message_count": self.message_count,
            "elapsed_minutes": round(self.elapsed_minutes, 2),
        }


class HookTriggerController:
    """
    Per-session trigger gating automatic capture.

    Usage:
        controller = HookTriggerController(store, config.trigger)
        decision = controller.record_event(session_id)
        if decision.fired:
            pipeline.reflect(session_id, transcript_path)
    """

    def __init__(self, store: RecordStore, config: TriggerConfig):
        self._store = store
        self._config = config

    @property
    def enabled(self) -> bool:
        return self._config.auto_reflect

    def _counters(self, session_id: str, now: datetime) -> TriggerCounters:
        counters = self._store.load_counters(session_id)
        if counters is None:
            counters = TriggerCounters(session_id=session_id, last_fire_at=now)
        return counters

    def _evaluate(self, counters: TriggerCounters, now: datetime) -> TriggerDecision:
        elapsed = max(0.0, (now - counters.last_fire_at).total_seconds() / 60.0)

        if counters.message_count >= self._config.message_threshold:
            reason = "threshold"
        elif self._config.interval_minutes > 0 and elapsed >= self._config.interval_minutes:
            reason = "interval"
        else:
            state = TriggerState.ACCUMULATING if counters.message_count else TriggerState.IDLE
            return TriggerDecision(False, state, "below_threshold", counters.message_count, elapsed)

        return TriggerDecision(True, TriggerState.FIRED, reason, counters.message_count, elapsed)

    def _disabled(self, session_id: str) -> TriggerDecision:
        logger.debug("Auto-reflect disabled; ignoring event for session %s", session_id)
        return TriggerDecision(False, TriggerState.IDLE, "disabled", 0, 0.0)

    def record_event(self, session_id: str, now: Optional[datetime] = None) -> TriggerDecision:
        """
        Count one event and evaluate the gates.

        Args:
            session_id: Session identifier
            now: Evaluation time (default: current UTC time)

        Returns:
            TriggerDecision; when fired, the counter has already been reset
        """
        if not self.enabled:
            return self._disabled(session_id)

        now = now or utcnow()
        counters = self._counters(session_id, now)
        counters.message_count += 1

        decision = self._evaluate(counters, now)
        if decision.fired:
            counters.message_count = 0
            counters.last_fire_at = now
            logger.info(
                "Trigger fired for session %s (%s, %d messages, %.1f min)",
                session_id, decision.reason, decision.message_count, decision.elapsed_minutes,
            )
        self._store.save_counters(counters)
        return decision

    def check(self, session_id: str, now: Optional[datetime] = None) -> TriggerDecision:
        """Evaluate the gates without counting or resetting anything"""
        if not self.enabled:
            return self._disabled(session_id)
        now = now or utcnow()
        return self._evaluate(self._counters(session_id, now), now)

    def force(self, session_id: str, now: Optional[datetime] = None) -> TriggerDecision:
        """Fire unconditionally (session end, pre-compact)"""
        now = now or utcnow()
        counters = self._counters(session_id, now)
        elapsed = max(0.0, (now - counters.last_fire_at).total_seconds() / 60.0)
        decision = TriggerDecision(True, TriggerState.FIRED, "forced", counters.message_count, elapsed)

        counters.message_count = 0
        counters.last_fire_at = now
        self._store.save_counters(counters)
        logger.info("Trigger forced for session %s", session_id)
        return decision

    def reset(self, session_id: str) -> None:
        """Clear a session's counters (session start)"""
        self._store.delete_counters(session_id)
        logger.debug("Trigger counters reset for session %s", session_id)
