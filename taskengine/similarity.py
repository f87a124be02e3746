"""
similarity.py

Pairwise task similarity: a symmetric score cache, a cheap lexical
estimate, and the comparator that decides when the semantic classifier
is worth calling.
"""

import logging
import math
import re
from typing import Dict, Optional, Tuple

from taskengine.classifier import SemanticClassifier
from taskengine.config import config
from taskengine.task_schema import Task

logger = logging.getLogger(__name__)

_PUNCTUATION = re.compile(r"[^\w\s]")


class SimilarityCache:
    """Memoizes pairwise scores for one process lifetime. key(a, b) == key(b, a)."""

    def __init__(self):
        self._scores: Dict[str, float] = {}

    @staticmethod
    def key(task_id_a: str, task_id_b: str) -> str:
        return "_".join(sorted((task_id_a, task_id_b)))

    def get(self, task_id_a: str, task_id_b: str) -> Optional[float]:
        return self._scores.get(self.key(task_id_a, task_id_b))

    def put(self, task_id_a: str, task_id_b: str, score: float) -> None:
        self._scores[self.key(task_id_a, task_id_b)] = score

    def clear(self) -> None:
        self._scores.clear()

    def __contains__(self, pair: Tuple[str, str]) -> bool:
        return self.key(*pair) in self._scores

    def __len__(self) -> int:
        return len(self._scores)


def _token_set(text: str) -> set:
    return set(_PUNCTUATION.sub("", (text or "").lower()).split())


def quick_similarity(text1: str, text2: str) -> float:
    """Token-set Jaccard similarity after lowercasing and stripping punctuation."""
    words1 = _token_set(text1)
    words2 = _token_set(text2)
    union = words1 | words2
    if not union:
        return 1.0
    return len(words1 & words2) / len(union)


class PairwiseComparator:
    """
    Scores two tasks in [0, 1].

    Lexically distant or near-identical pairs are decided by the quick
    filter alone; everything in between goes to the semantic classifier,
    whose failures fall back to the quick estimate.
    """

    def __init__(
        self,
        classifier: SemanticClassifier,
        cache: Optional[SimilarityCache] = None,
        reject_below: Optional[float] = None,
        accept_above: Optional[float] = None,
    ):
        self.classifier = classifier
        self.cache = cache if cache is not None else SimilarityCache()
        self.reject_below = config['quick_reject_threshold'] if reject_below is None else reject_below
        self.accept_above = config['quick_accept_threshold'] if accept_above is None else accept_above

    async def compare(self, task_a: Task, task_b: Task) -> float:
        cached = self.cache.get(task_a.id, task_b.id)
        if cached is not None:
            return cached

        score = await self._score(task_a, task_b)
        self.cache.put(task_a.id, task_b.id, score)
        return score

    async def _score(self, task_a: Task, task_b: Task) -> float:
        estimate = quick_similarity(task_a.description, task_b.description)
        if estimate < self.reject_below:
            logger.debug("Quick reject %s/%s (%.2f)", task_a.id, task_b.id, estimate)
            return 0.0
        if estimate > self.accept_above:
            logger.debug("Quick accept %s/%s (%.2f)", task_a.id, task_b.id, estimate)
            return 1.0

        try:
            raw = await self.classifier.compare_similarity(task_a.description, task_b.description)
        except Exception as exc:
            logger.error(
                "Error comparing task similarity (%s vs %s), using quick estimate: %s",
                task_a.id, task_b.id, exc,
            )
            return estimate

        try:
            score = float(raw)
        except (TypeError, ValueError):
            score = math.nan
        if math.isnan(score) or score < 0.0 or score > 1.0:
            logger.warning(
                "Invalid similarity score %r for %s vs %s, using quick estimate %.2f",
                raw, task_a.id, task_b.id, estimate,
            )
            return estimate
        return max(0.0, min(1.0, score))
