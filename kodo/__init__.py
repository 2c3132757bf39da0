"""
Kodo Knowledge Engine

Captures learnings from coding sessions, curates them by confidence, and
serves a relevance-ranked, token-budgeted subset back into an assistant's
context window.

Philosophy:
- The record store is the single source of truth (human-readable JSONL)
- The relevance index is a derived cache, always safe to drop and rebuild
- Each hook invocation is a short request/response call; state lives on disk
- Embeddings are an enhancement, never a hard dependency

Usage:
    from kodo.common import load_config, RecordStore
    from kodo.scribe import ReflectPipeline, ConfidenceCurator
    from kodo.retriever import RelevanceIndex, ContextGenerator
"""

__version__ = "0.1.0"
