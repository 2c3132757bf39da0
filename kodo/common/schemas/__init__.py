"""
Kodo Record Schemas

Learnings, context entries, and the derived/bookkeeping records around them.
"""

from .records import (
    Category,
    Confidence,
    Status,
    RecordKind,
    Signal,
    DetailLevel,
    HookEvent,
    TriggerState,
    EvidenceRef,
    Transition,
    Learning,
    ContextEntry,
    SessionCursor,
    TriggerCounters,
    IndexEntry,
    utcnow,
    normalize_statement,
    compute_fingerprint,
    slugify,
    generate_learning_id,
    generate_context_id,
    category_from_id,
    kind_from_id,
)
from .templates import render_full, render_compact, render_timeline, render_embedding_text

__all__ = [
    "Category",
    "Confidence",
    "Status",
    "RecordKind",
    "Signal",
    "DetailLevel",
    "HookEvent",
    "TriggerState",
    "EvidenceRef",
    "Transition",
    "Learning",
    "ContextEntry",
    "SessionCursor",
    "TriggerCounters",
    "IndexEntry",
    "utcnow",
    "normalize_statement",
    "compute_fingerprint",
    "slugify",
    "generate_learning_id",
    "generate_context_id",
    "category_from_id",
    "kind_from_id",
    "render_full",
    "render_compact",
    "render_timeline",
    "render_embedding_text",
]
