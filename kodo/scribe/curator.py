"""
Confidence Curator

Owns every learning state transition: ingest (dedup / contradiction /
create), promotion and demotion along the confidence ladder, review of
pending records, archiving and deletion.

Ingest order (under the category file lock):
1. Contradiction: a live rule/convention on the same subject whose shared
   terms are governed by the opposite polarity (clause by clause) is
   archived and superseded by the new record
2. Dedup: exact fingerprint, then similarity >= threshold, merges evidence
   into the existing record
3. Create: a new pending record, confidence seeded from the wording signal

Every transition is appended to the audit log and marks the record stale in
the relevance index.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..common.config import KodoConfig
from ..common.errors import InvalidTransitionError, RecordNotFoundError
from ..common.schemas import (
    Category,
    Confidence,
    ContextEntry,
    EvidenceRef,
    Learning,
    RecordKind,
    Signal,
    Status,
    Transition,
    category_from_id,
    generate_context_id,
    generate_learning_id,
    kind_from_id,
    normalize_statement,
    utcnow,
)
from ..common.store import Record, RecordStore
from .extractor import Candidate
from .similarity import SimilarityFunction, build_similarity

logger = logging.getLogger("kodo.scribe.curator")


# Initial confidence by detected signal
SIGNAL_CONFIDENCE = {
    Signal.CORRECTIVE: Confidence.HIGH,
    Signal.CONFIRMED: Confidence.MEDIUM,
    Signal.SPECULATIVE: Confidence.LOW,
    Signal.NEUTRAL: Confidence.MEDIUM,
}

# Categories whose statements carry a polarity that can contradict
POLAR_CATEGORIES = (Category.RULE, Category.CONVENTION)

NEGATIVE_MARKERS = (
    "never", "dont", "don t", "do not", "must not", "mustn t", "should not", "shouldn t",
    "does not", "avoid", "stop", "no longer",
)
POSITIVE_MARKERS = ("always", "must", "do", "use", "prefer", "should", "ensure", "make sure")

# Words ignored when comparing the subject of two polar statements
SUBJECT_NOISE = {
    "a", "an", "the", "to", "for", "in", "of", "on", "with", "we", "you", "i", "our", "your",
    "it", "is", "are", "be", "and", "or", "please", "instead", "always", "never", "must",
    "should", "do", "dont", "don", "t", "not", "avoid", "stop", "use", "using", "prefer",
    "ensure", "make", "sure", "no", "longer", "mustn", "shouldn",
}

SUBJECT_OVERLAP = 0.5

# Clause boundaries; the captured separator tells contrast breaks apart
CLAUSE_BREAK = re.compile(r"([,;:]|\bbut\b|\binstead of\b|\brather than\b)", re.IGNORECASE)
CONTRAST_BREAKS = ("instead of", "rather than")

CurateAction = str  # "created" | "merged" | "contradicted"


@dataclass
class IngestResult:
    """Outcome of ingesting one candidate"""
    action: CurateAction
    record: Learning
    archived: List[Learning] = field(default_factory=list)
    similarity: Optional[float] = None


def _marker_polarity(clause: str) -> Optional[bool]:
    text = f" {clause} "
    if any(f" {marker} " in text for marker in NEGATIVE_MARKERS):
        return False
    if any(f" {marker} " in text for marker in POSITIVE_MARKERS):
        return True
    return None


def _clauses(statement: str) -> List[Tuple[str, bool]]:
    """Normalized clauses, each flagged when it follows a contrast break"""
    parts = CLAUSE_BREAK.split(statement)
    clauses = []
    contrast = False
    for i, part in enumerate(parts):
        if i % 2:
            contrast = part.strip().lower() in CONTRAST_BREAKS
            continue
        clause = normalize_statement(part)
        if clause:
            clauses.append((clause, contrast))
        contrast = False
    return clauses


def polarity(statement: str) -> Optional[bool]:
    """
    Polarity of the leading directive of a rule-like statement.

    Returns:
        True (affirmative), False (prohibitive), or None (no marker)
    """
    for clause, _ in _clauses(statement):
        value = _marker_polarity(clause)
        if value is not None:
            return value
    return None


def polar_terms(statement: str) -> Dict[str, bool]:
    """
    Subject terms mapped to the polarity of the clause that governs them.

    "Use tabs for indentation, never spaces" gives tabs/indentation True and
    spaces False. A clause without a marker inherits the previous directive;
    a clause after "instead of", "rather than" or a leading "not" takes the
    opposite. Terms governed both ways are dropped.
    """
    terms: Dict[str, bool] = {}
    mixed: Set[str] = set()
    directive: Optional[bool] = None

    for clause, contrast in _clauses(statement):
        if contrast or clause.startswith("not "):
            value = None if directive is None else not directive
            if clause.startswith("not "):
                value = False
        else:
            value = _marker_polarity(clause)
            if value is None:
                value = directive
            directive = value
        if value is None:
            continue
        for term in subject_terms(clause):
            if term in terms and terms[term] is not value:
                mixed.add(term)
            terms[term] = value

    return {t: v for t, v in terms.items() if t not in mixed}


def subject_terms(statement: str) -> Set[str]:
    return {t for t in normalize_statement(statement).split() if t not in SUBJECT_NOISE}


def same_subject(a: str, b: str, threshold: float = SUBJECT_OVERLAP) -> bool:
    terms_a = subject_terms(a)
    terms_b = subject_terms(b)
    if not terms_a or not terms_b:
        return False
    return len(terms_a & terms_b) / len(terms_a | terms_b) >= threshold


def contradicts(a: str, b: str) -> bool:
    """
    Two statements on the same subject whose shared terms are mostly
    governed by opposite polarity.
    """
    if not same_subject(a, b):
        return False
    terms_a = polar_terms(a)
    terms_b = polar_terms(b)
    shared = terms_a.keys() & terms_b.keys()
    opposed = sum(1 for t in shared if terms_a[t] is not terms_b[t])
    return opposed > len(shared) - opposed


def _state(record: Record) -> str:
    return f"{record.status.value}/{record.confidence.value}"


class ConfidenceCurator:
    """
    Curates learnings in the record store.

    Usage:
        curator = ConfidenceCurator(store, config, index=index)
        result = curator.ingest(candidate)
        curator.auto_apply(result)
    """

    def __init__(
        self,
        store: RecordStore,
        config: KodoConfig,
        similarity: Optional[SimilarityFunction] = None,
        index=None,
    ):
        """
        Initialize curator.

        Args:
            store: Record store
            config: Kodo configuration (curator and learning sections)
            similarity: Fuzzy dedup function (default: from config)
            index: Optional relevance index notified of every change
        """
        self._store = store
        self._config = config
        self._similarity = similarity or build_similarity(config.curator)
        self._index = index

    @property
    def similarity(self) -> SimilarityFunction:
        return self._similarity

    # ------------------------------------------------------------------ #
    # Ingest
    # ------------------------------------------------------------------ #

    def ingest(
        self,
        candidate: Candidate,
        confidence: Optional[Confidence] = None,
        status: Status = Status.PENDING,
    ) -> IngestResult:
        """
        Ingest a candidate: contradict, merge, or create.

        Args:
            candidate: Extracted (or manually curated) candidate
            confidence: Explicit confidence (default: derived from the signal)
            status: Status of a newly created record

        Returns:
            IngestResult describing what happened
        """
        transitions: List[Transition] = []
        archived: List[Learning] = []
        match: Optional[Learning] = None
        score = 0.0

        with self._store.edit_category(candidate.category) as records:
            live = [r for r in records if r.status != Status.ARCHIVED]

            if candidate.category in POLAR_CATEGORIES:
                archived = self._find_contradicted(candidate.statement, live)
            if not archived:
                match, score = self._find_duplicate(candidate, live)

            if match is not None:
                prior = _state(match)
                if not match.has_evidence(candidate.evidence):
                    match.evidence_refs.append(candidate.evidence)
                match.last_confirmed_at = utcnow()
                transitions.append(self._transition(
                    match, "merge", prior, f"evidence={candidate.evidence.ref} similarity={score:.2f}"
                ))
                result = IngestResult(action="merged", record=match, similarity=score)
            else:
                record = Learning(
                    id=generate_learning_id(candidate.category),
                    category=candidate.category,
                    statement=candidate.statement,
                    evidence_refs=[candidate.evidence],
                    confidence=confidence or SIGNAL_CONFIDENCE[candidate.signal],
                    agent_scope=candidate.agent_scope,
                    status=status,
                )
                for old in archived:
                    prior = _state(old)
                    old.status = Status.ARCHIVED
                    old.superseded_by = record.id
                    transitions.append(self._transition(old, "contradict", prior, f"superseded_by={record.id}"))

                records.append(record)
                transitions.append(self._transition(record, "create", "none", f"signal={candidate.signal.value}"))
                action = "contradicted" if archived else "created"
                result = IngestResult(action=action, record=record, archived=archived)

        for transition in transitions:
            self._record(transition)
        return result

    def _find_contradicted(self, statement: str, live: List[Learning]) -> List[Learning]:
        if not polar_terms(statement):
            return []
        return [r for r in live if contradicts(statement, r.statement)]

    def _find_duplicate(
        self,
        candidate: Candidate,
        live: List[Learning],
    ) -> Tuple[Optional[Learning], float]:
        fingerprint = candidate.fingerprint
        for record in live:
            if record.fingerprint == fingerprint:
                return record, 1.0

        best, best_score = None, 0.0
        for record in live:
            score = self._similarity.score(candidate.statement, record.statement)
            if score > best_score:
                best, best_score = record, score

        if best is not None and best_score >= self._config.curator.similarity_threshold:
            return best, best_score
        return None, best_score

    def auto_apply(self, result: IngestResult) -> Optional[Learning]:
        """
        Accept a pending record when auto-reflect is on and its confidence
        meets the configured threshold.

        Returns:
            The activated record, or None if left pending
        """
        record = result.record
        if not self._config.learning.auto_reflect:
            return None
        if record.status != Status.PENDING:
            return None
        if record.confidence.rank < self._config.min_auto_confidence.rank:
            return None
        return self.review(record.id, accept=True, detail="auto-apply")

    # ------------------------------------------------------------------ #
    # Transitions on existing records
    # ------------------------------------------------------------------ #

    def promote(self, record_id: str) -> Record:
        """Raise confidence one level; idempotent at HIGH"""
        if kind_from_id(record_id) is RecordKind.CONTEXT:
            return self._step_context(record_id, up=True)

        def apply(record: Learning) -> Optional[str]:
            if record.status == Status.ARCHIVED:
                raise InvalidTransitionError(record_id, "promote", record.status.value)
            if record.confidence is Confidence.HIGH:
                return None
            record.confidence = record.confidence.raised()
            record.last_confirmed_at = utcnow()
            return "promote"

        return self._mutate(record_id, apply)

    def demote(self, record_id: str) -> Record:
        """
        Lower confidence one level.

        Demoting a LOW learning archives it; context entries have no
        lifecycle, so their ladder stops at LOW.
        """
        if kind_from_id(record_id) is RecordKind.CONTEXT:
            return self._step_context(record_id, up=False)

        def apply(record: Learning) -> Optional[str]:
            if record.status == Status.ARCHIVED:
                raise InvalidTransitionError(record_id, "demote", record.status.value)
            lowered = record.confidence.lowered()
            if lowered is None:
                record.status = Status.ARCHIVED
            else:
                record.confidence = lowered
            return "demote"

        return self._mutate(record_id, apply)

    def review(self, record_id: str, accept: bool, detail: Optional[str] = None) -> Learning:
        """Accept (pending -> active) or reject (pending -> archived) a record"""
        def apply(record: Learning) -> Optional[str]:
            if record.status != Status.PENDING:
                raise InvalidTransitionError(record_id, "review", record.status.value)
            record.status = Status.ACTIVE if accept else Status.ARCHIVED
            return "accept" if accept else "reject"

        return self._mutate(record_id, apply, detail)

    def contradict(self, record_id: str, superseded_by: Optional[str] = None) -> Learning:
        """Archive a live record, optionally naming its replacement"""
        def apply(record: Learning) -> Optional[str]:
            if record.status == Status.ARCHIVED:
                raise InvalidTransitionError(record_id, "contradict", record.status.value)
            record.status = Status.ARCHIVED
            record.superseded_by = superseded_by
            return "contradict"

        detail = f"superseded_by={superseded_by}" if superseded_by else None
        return self._mutate(record_id, apply, detail)

    def delete(self, record_id: str, hard: bool = False):
        """
        Delete a record.

        Learnings are archived unless ``hard`` is set; context entries have
        no lifecycle and are always removed.

        Returns:
            The archived or removed record
        """
        kind = kind_from_id(record_id)
        if kind is RecordKind.CONTEXT:
            removed = self._store.remove_context(record_id)
            self._record(Transition(record_id=record_id, action="delete", prior_state="active", new_state="removed"))
            return removed

        if kind is not RecordKind.LEARNING:
            raise RecordNotFoundError(record_id)

        if hard:
            removed = self._store.remove_learning(record_id)
            self._record(Transition(
                record_id=record_id, action="delete", prior_state=_state(removed), new_state="removed",
            ))
            return removed

        def apply(record: Learning) -> Optional[str]:
            if record.status == Status.ARCHIVED:
                return None
            record.status = Status.ARCHIVED
            return "delete"

        return self._mutate(record_id, apply)

    # ------------------------------------------------------------------ #
    # Manual curation
    # ------------------------------------------------------------------ #

    def curate_learning(
        self,
        category: Category,
        statement: str,
        confidence: Confidence = Confidence.MEDIUM,
        status: Status = Status.ACTIVE,
        agent_scope: Optional[str] = None,
        source: str = "manual",
    ) -> IngestResult:
        """Add a pre-classified learning; dedup and contradiction still apply"""
        candidate = Candidate(
            category=category,
            statement=statement,
            evidence=EvidenceRef(session_id=source, offset=0, excerpt=statement[:240]),
            agent_scope=agent_scope,
        )
        return self.ingest(candidate, confidence=confidence, status=status)

    def add_context(
        self,
        domain: str,
        topic: str,
        title: str,
        body: str = "",
        tags: Optional[List[str]] = None,
        confidence: Confidence = Confidence.MEDIUM,
        subtopic: Optional[str] = None,
        source_ref: Optional[str] = None,
    ) -> ContextEntry:
        """Create a curated context entry"""
        entry = ContextEntry(
            id=generate_context_id(),
            domain=domain,
            topic=topic,
            subtopic=subtopic,
            title=title,
            body=body,
            tags=tags or [],
            confidence=confidence,
            source_ref=source_ref,
        )
        self._store.add_context(entry)
        self._record(Transition(record_id=entry.id, action="create", prior_state="none", new_state="active"))
        return entry

    def update_context(
        self,
        record_id: str,
        title: Optional[str] = None,
        body: Optional[str] = None,
        tags: Optional[List[str]] = None,
        subtopic: Optional[str] = None,
        source_ref: Optional[str] = None,
    ) -> ContextEntry:
        """
        Edit the mutable fields of a context entry; None leaves a field as is.

        Raises:
            ValueError: if the edited entry is invalid (nothing is written)
            RecordNotFoundError: if no context entry has this id
        """
        changes = {
            name: value
            for name, value in (
                ("title", title), ("body", body), ("tags", tags),
                ("subtopic", subtopic), ("source_ref", source_ref),
            )
            if value is not None
        }
        changed: List[str] = []

        def apply(entry: ContextEntry) -> Optional[str]:
            ContextEntry.model_validate({**entry.model_dump(), **changes})
            for name, value in changes.items():
                if getattr(entry, name) != value:
                    setattr(entry, name, value)
                    changed.append(name)
            return "edit" if changed else None

        return self._mutate_context(record_id, apply, lambda: "fields=" + ",".join(changed))

    def list(
        self,
        category: Optional[Category] = None,
        status: Optional[Status] = None,
        confidence: Optional[Confidence] = None,
    ) -> List[Learning]:
        learnings = self._store.list_learnings(category=category, status=status)
        if confidence is not None:
            learnings = [l for l in learnings if l.confidence == confidence]
        return sorted(learnings, key=lambda l: (l.created_at, l.id))

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _mutate(
        self,
        record_id: str,
        apply: Callable[[Learning], Optional[str]],
        detail: Optional[str] = None,
    ) -> Learning:
        """Apply a transition under the category lock; ``apply`` returns the action or None for a no-op"""
        category = category_from_id(record_id)
        if category is None:
            raise RecordNotFoundError(record_id)

        with self._store.edit_category(category) as records:
            record = next((r for r in records if r.id == record_id), None)
            if record is None:
                raise RecordNotFoundError(record_id)
            prior = _state(record)
            action = apply(record)

        if action is not None:
            self._record(self._transition(record, action, prior, detail))
        return record

    def _step_context(self, record_id: str, up: bool) -> ContextEntry:
        def apply(entry: ContextEntry) -> Optional[str]:
            if up:
                if entry.confidence is Confidence.HIGH:
                    return None
                entry.confidence = entry.confidence.raised()
                return "promote"
            lowered = entry.confidence.lowered()
            if lowered is None:
                return None
            entry.confidence = lowered
            return "demote"

        return self._mutate_context(record_id, apply)

    def _mutate_context(
        self,
        record_id: str,
        apply: Callable[[ContextEntry], Optional[str]],
        detail: Optional[Callable[[], str]] = None,
    ) -> ContextEntry:
        """Context counterpart of ``_mutate``; entries stay active"""
        with self._store.edit_context(record_id) as entry:
            prior = _state(entry)
            action = apply(entry)
            if action is not None:
                entry.updated_at = utcnow()

        if action is not None:
            self._record(self._transition(entry, action, prior, detail() if detail else None))
        return entry

    def _transition(self, record: Record, action: str, prior: str, detail: Optional[str] = None) -> Transition:
        return Transition(
            record_id=record.id,
            action=action,
            prior_state=prior,
            new_state=_state(record),
            detail=detail,
        )

    def _record(self, transition: Transition) -> None:
        self._store.append_transition(transition)
        logger.info(
            "%s %s: %s -> %s%s",
            transition.action,
            transition.record_id,
            transition.prior_state,
            transition.new_state,
            f" ({transition.detail})" if transition.detail else "",
        )
        if self._index is not None:
            self._index.mark_stale(transition.record_id)
