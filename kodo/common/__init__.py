"""
Kodo Common Module

Shared infrastructure for the capture (scribe) and serving (retriever) sides.
"""

from .config import KodoConfig, load_config, save_config, resolve_store_root
from .embedding_service import EmbeddingService, get_embedding_service
from .store import RecordStore

__all__ = [
    "KodoConfig",
    "load_config",
    "save_config",
    "resolve_store_root",
    "EmbeddingService",
    "get_embedding_service",
    "RecordStore",
]
