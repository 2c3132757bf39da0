"""
Record Schemas

Core principle: the record store is the single source of truth. Everything
the relevance index holds is a projection of these models and can be
recomputed from them at any time.
"""

import hashlib
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Enums
# ============================================================================

class Category(str, Enum):
    """Learning categories (one store file per category)"""
    RULE = "rule"
    DECISION = "decision"
    TECH_STACK = "tech_stack"
    WORKFLOW = "workflow"
    DOMAIN = "domain"
    CONVENTION = "convention"


class Confidence(str, Enum):
    """Ordinal trust level governing auto-apply eligibility"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]

    @property
    def weight(self) -> float:
        """Ranking multiplier used by the relevance index"""
        return _CONFIDENCE_WEIGHT[self]

    def raised(self) -> "Confidence":
        """One level up; HIGH stays HIGH"""
        if self is Confidence.LOW:
            return Confidence.MEDIUM
        return Confidence.HIGH

    def lowered(self) -> Optional["Confidence"]:
        """One level down; None below LOW"""
        if self is Confidence.HIGH:
            return Confidence.MEDIUM
        if self is Confidence.MEDIUM:
            return Confidence.LOW
        return None


_CONFIDENCE_RANK = {Confidence.LOW: 0, Confidence.MEDIUM: 1, Confidence.HIGH: 2}
_CONFIDENCE_WEIGHT = {Confidence.LOW: 0.6, Confidence.MEDIUM: 0.8, Confidence.HIGH: 1.0}


class Status(str, Enum):
    """Learning lifecycle state"""
    PENDING = "pending"
    ACTIVE = "active"
    ARCHIVED = "archived"


class RecordKind(str, Enum):
    """Kinds of records held by the store"""
    LEARNING = "learning"
    CONTEXT = "context"


class Signal(str, Enum):
    """Signal strength detected in the wording of a candidate"""
    CORRECTIVE = "corrective"    # "no, use X instead", "never do Y"
    CONFIRMED = "confirmed"      # "that worked", "fixed by"
    SPECULATIVE = "speculative"  # "maybe", "might"
    NEUTRAL = "neutral"


class DetailLevel(str, Enum):
    """Rendering depth for served context"""
    COMPACT = "compact"
    TIMELINE = "timeline"
    FULL = "full"


class HookEvent(str, Enum):
    """Assistant lifecycle hooks that drive capture"""
    SESSION_START = "session-start"
    PROMPT_SUBMIT = "prompt-submit"
    TOOL_USE = "tool-use"
    PRE_COMPACT = "pre-compact"
    SESSION_END = "session-end"


class TriggerState(str, Enum):
    """Per-session trigger state"""
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FIRED = "fired"


# ============================================================================
# Sub-models
# ============================================================================

class EvidenceRef(BaseModel):
    """Pointer back to the transcript event a learning was extracted from"""
    session_id: str
    offset: int = Field(ge=0, description="Byte offset of the event line in the transcript")
    event_id: Optional[str] = None
    excerpt: str = Field(default="", description="Short quote from the event (1-2 sentences)")
    observed_at: datetime = Field(default_factory=utcnow)

    @property
    def ref(self) -> str:
        return f"{self.session_id}@{self.offset}"


class Transition(BaseModel):
    """Audit log line for a curator state transition"""
    record_id: str
    action: str
    prior_state: str
    new_state: str
    timestamp: datetime = Field(default_factory=utcnow)
    detail: Optional[str] = None


# ============================================================================
# Main Schemas
# ============================================================================

class Learning(BaseModel):
    """A categorized, confidence-scored statement extracted from session activity"""
    id: str = Field(..., description="Unique ID: lrn_YYYYMMDD_category_hex")
    category: Category
    statement: str = Field(..., min_length=1)
    fingerprint: str = ""
    evidence_refs: List[EvidenceRef] = Field(default_factory=list)
    confidence: Confidence = Confidence.MEDIUM
    agent_scope: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    last_confirmed_at: datetime = Field(default_factory=utcnow)
    status: Status = Status.PENDING
    superseded_by: Optional[str] = None

    @field_validator("statement")
    @classmethod
    def _strip_statement(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("statement must not be blank")
        return value

    def model_post_init(self, __context) -> None:
        if not self.fingerprint:
            self.fingerprint = compute_fingerprint(self.statement)

    @property
    def kind(self) -> RecordKind:
        return RecordKind.LEARNING

    @property
    def title(self) -> str:
        return self.statement if len(self.statement) <= 80 else self.statement[:77] + "..."

    @property
    def tags(self) -> List[str]:
        return [self.category.value] + ([self.agent_scope] if self.agent_scope else [])

    @property
    def body(self) -> str:
        return self.statement

    @property
    def updated_at(self) -> datetime:
        return self.last_confirmed_at

    def has_evidence(self, evidence: EvidenceRef) -> bool:
        return any(e.ref == evidence.ref for e in self.evidence_refs)


class ContextEntry(BaseModel):
    """A curated knowledge record, independent of the extraction pipeline"""
    id: str = Field(..., description="Unique ID: ctx_YYYYMMDD_hex")
    domain: str = Field(..., min_length=1)
    topic: str = Field(..., min_length=1)
    subtopic: Optional[str] = None
    title: str = Field(..., min_length=1)
    body: str = ""
    tags: List[str] = Field(default_factory=list)
    confidence: Confidence = Confidence.MEDIUM
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    source_ref: Optional[str] = None

    @field_validator("domain", "topic")
    @classmethod
    def _slug_path_part(cls, value: str) -> str:
        slug = slugify(value)
        if not slug:
            raise ValueError("domain/topic must contain at least one alphanumeric character")
        return slug

    @property
    def kind(self) -> RecordKind:
        return RecordKind.CONTEXT

    @property
    def status(self) -> Status:
        return Status.ACTIVE


class SessionCursor(BaseModel):
    """Last processed position in a session transcript"""
    session_id: str
    transcript_path: str
    byte_offset: int = Field(default=0, ge=0)
    last_processed_at: Optional[datetime] = None


class TriggerCounters(BaseModel):
    """Per-session counters gating automatic capture"""
    session_id: str
    message_count: int = Field(default=0, ge=0)
    last_fire_at: datetime = Field(default_factory=utcnow)


class IndexEntry(BaseModel):
    """Derived, rebuildable ranking projection of a record"""
    record_id: str
    record_kind: RecordKind
    title: str = ""
    terms: Dict[str, int] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    confidence: Confidence = Confidence.MEDIUM
    status: Status = Status.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    timestamp: datetime = Field(default_factory=utcnow)
    embedding: Optional[List[float]] = None


# ============================================================================
# Helpers
# ============================================================================

_NON_WORD = re.compile(r"[^a-z0-9_\s]+")
_WHITESPACE = re.compile(r"\s+")
_SLUG = re.compile(r"[^a-z0-9]+")


def normalize_statement(text: str) -> str:
    """Lowercase, drop punctuation and collapse whitespace"""
    normalized = _NON_WORD.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", normalized).strip()


def compute_fingerprint(text: str) -> str:
    """Normalized-content hash used for exact dedup matching"""
    return hashlib.sha256(normalize_statement(text).encode("utf-8")).hexdigest()[:16]


def slugify(text: str) -> str:
    return _SLUG.sub("-", text.lower()).strip("-")


def generate_learning_id(category: Category, timestamp: Optional[datetime] = None) -> str:
    """Generate a unique ID for a learning"""
    date_str = (timestamp or utcnow()).strftime("%Y%m%d")
    return f"lrn_{date_str}_{category.value}_{uuid.uuid4().hex[:10]}"


def generate_context_id(timestamp: Optional[datetime] = None) -> str:
    """Generate a unique ID for a context entry"""
    date_str = (timestamp or utcnow()).strftime("%Y%m%d")
    return f"ctx_{date_str}_{uuid.uuid4().hex[:10]}"


def category_from_id(record_id: str) -> Optional[Category]:
    """Recover the category embedded in a learning id (lrn_date_category_hex)"""
    if not record_id.startswith("lrn_"):
        return None
    parts = record_id.split("_")
    # category values may themselves contain underscores (tech_stack)
    raw = "_".join(parts[2:-1])
    try:
        return Category(raw)
    except ValueError:
        return None


def kind_from_id(record_id: str) -> Optional[RecordKind]:
    if record_id.startswith("lrn_"):
        return RecordKind.LEARNING
    if record_id.startswith("ctx_"):
        return RecordKind.CONTEXT
    return None
