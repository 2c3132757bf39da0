"""
Kodo Retriever

Serving side: ranks learnings and context entries against a prompt and
renders a token-budgeted context block.
"""

from .query_processor import QueryProcessor, QuerySignals, QueryIntent, tokenize, file_terms
from .index import RelevanceIndex, RankedResult
from .context import ContextGenerator, ContextBundle, ContextItem, AVG_TOKENS

__all__ = [
    "QueryProcessor",
    "QuerySignals",
    "QueryIntent",
    "tokenize",
    "file_terms",
    "RelevanceIndex",
    "RankedResult",
    "ContextGenerator",
    "ContextBundle",
    "ContextItem",
    "AVG_TOKENS",
]
