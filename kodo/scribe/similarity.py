"""
Statement Similarity

Pluggable similarity functions used by the curator for fuzzy dedup.
Exact fingerprint equality is always checked first; these functions are the
bounded fallback for near-duplicates.
"""

import difflib
from typing import Set

from ..common.config import CuratorConfig
from ..common.errors import ConfigError
from ..common.schemas import normalize_statement


class SimilarityFunction:
    """Interface: ``score(a, b)`` in [0, 1], 1.0 meaning identical"""

    name = "base"

    def score(self, a: str, b: str) -> float:
        raise NotImplementedError


class TokenOverlapSimilarity(SimilarityFunction):
    """Jaccard overlap of normalized word sets"""

    name = "token_overlap"

    @staticmethod
    def _tokens(text: str) -> Set[str]:
        return set(normalize_statement(text).split())

    def score(self, a: str, b: str) -> float:
        tokens_a = self._tokens(a)
        tokens_b = self._tokens(b)
        if not tokens_a and not tokens_b:
            return 1.0
        if not tokens_a or not tokens_b:
            return 0.0
        return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


class EditDistanceSimilarity(SimilarityFunction):
    """
    Character-level similarity from difflib's matching-blocks ratio.

    Inputs are truncated to ``max_length`` characters to bound the cost of
    one comparison.
    """

    name = "edit_distance"

    def __init__(self, max_length: int = 400):
        self.max_length = max_length

    def score(self, a: str, b: str) -> float:
        a = normalize_statement(a)[: self.max_length]
        b = normalize_statement(b)[: self.max_length]
        if a == b:
            return 1.0
        return difflib.SequenceMatcher(None, a, b, autojunk=False).ratio()


def build_similarity(config: CuratorConfig) -> SimilarityFunction:
    """Create the similarity function named in the curator config"""
    if config.similarity == TokenOverlapSimilarity.name:
        return TokenOverlapSimilarity()
    if config.similarity == EditDistanceSimilarity.name:
        return EditDistanceSimilarity(max_length=config.max_edit_length)
    raise ConfigError(f"Unknown similarity function: {config.similarity}")
