"""
Kodo Scribe

Capture side: reads session transcripts incrementally, extracts candidate
learnings, and curates them into the record store.
"""

from .transcript import TranscriptCursor, TranscriptEvent, NewEvents
from .extractor import Candidate, LearningExtractor
from .similarity import SimilarityFunction, TokenOverlapSimilarity, EditDistanceSimilarity, build_similarity
from .curator import ConfidenceCurator, IngestResult
from .trigger import HookTriggerController, TriggerDecision
from .pipeline import ReflectPipeline, ReflectResult

__all__ = [
    "TranscriptCursor",
    "TranscriptEvent",
    "NewEvents",
    "Candidate",
    "LearningExtractor",
    "SimilarityFunction",
    "TokenOverlapSimilarity",
    "EditDistanceSimilarity",
    "build_similarity",
    "ConfidenceCurator",
    "IngestResult",
    "HookTriggerController",
    "TriggerDecision",
    "ReflectPipeline",
    "ReflectResult",
]
