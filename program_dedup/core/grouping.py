"""
Similarity scoring and grouping within a partition.

Two strategies share one interface:
- GreedyGrouper: single pass, each unassigned candidate seeds a group and
  absorbs every later unassigned candidate scoring >= threshold against
  the seed. Not transitive: membership is decided against the seed only.
- TransitiveGrouper: union-find closure over all pairs >= threshold.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Sequence

import structlog
from rapidfuzz.distance import Levenshtein

from ..config.settings import DedupConfig
from .keys import KeyedCandidate
from .normalizer import normalize_text

logger = structlog.get_logger(__name__)


@dataclass
class MergeGroup:
    """Candidates believed to describe the same program."""
    members: list[KeyedCandidate] = field(default_factory=list)
    confidence: float = 1.0
    merge_key: str = ""

    def __len__(self) -> int:
        return len(self.members)


def title_similarity(a: str, b: str) -> float:
    """
    Normalized edit-distance similarity of two titles.

    (max_len - levenshtein) / max_len on normalized text; 1.0 when equal.
    """
    a, b = normalize_text(a), normalize_text(b)
    if a == b:
        return 1.0
    return Levenshtein.normalized_similarity(a, b)


class SimilarityScorer:
    """
    Pairwise similarity between keyed candidates.

    Weighted sum of title similarity, host-or-agency equality and category
    equality. An absent field contributes 0 while its weight stays in the
    denominator. Equal secondary keys only settle the title term.
    """

    def __init__(self, config: DedupConfig):
        self.title_weight = config.title_weight
        self.host_weight = config.host_weight
        self.category_weight = config.category_weight
        self.total_weight = self.title_weight + self.host_weight + self.category_weight

    def exact_match(self, a: KeyedCandidate, b: KeyedCandidate) -> bool:
        """Shared primary key or URL opportunity id."""
        if a.primary_key == b.primary_key:
            return True
        if a.url_opportunity_id and a.url_opportunity_id == b.url_opportunity_id:
            return True
        return False

    def score(self, a: KeyedCandidate, b: KeyedCandidate) -> float:
        if self.exact_match(a, b):
            return 1.0

        if self.total_weight <= 0:
            return 0.0

        if a.secondary_key and a.secondary_key == b.secondary_key:
            title_score = 1.0
        else:
            title_score = title_similarity(a.record.title, b.record.title)
        score = title_score * self.title_weight

        if self._host_or_agency_match(a, b):
            score += self.host_weight

        cat_a = normalize_text(a.record.category)
        cat_b = normalize_text(b.record.category)
        if cat_a and cat_b and cat_a == cat_b:
            score += self.category_weight

        return score / self.total_weight

    def _host_or_agency_match(self, a: KeyedCandidate, b: KeyedCandidate) -> bool:
        if a.host and b.host and a.host == b.host:
            return True
        agency_a = normalize_text(a.record.source_agency)
        agency_b = normalize_text(b.record.source_agency)
        return bool(agency_a and agency_b and agency_a == agency_b)


class GroupingStrategy(ABC):
    """Clusters the candidates of one partition into merge groups."""

    def __init__(self, config: DedupConfig, scorer: Optional[SimilarityScorer] = None):
        self.threshold = config.similarity_threshold
        self.scorer = scorer or SimilarityScorer(config)

    @abstractmethod
    def group(self, candidates: Sequence[KeyedCandidate]) -> list[MergeGroup]:
        """Return groups covering every candidate exactly once, in input order."""

    def get_strategy_name(self) -> str:
        return self.__class__.__name__


class GreedyGrouper(GroupingStrategy):
    """Single-pass seed-centred clustering."""

    def group(self, candidates: Sequence[KeyedCandidate]) -> list[MergeGroup]:
        assigned = [False] * len(candidates)
        groups: list[MergeGroup] = []

        for i, seed in enumerate(candidates):
            if assigned[i]:
                continue
            assigned[i] = True

            group = MergeGroup(members=[seed], confidence=1.0, merge_key=seed.primary_key)

            for j in range(i + 1, len(candidates)):
                if assigned[j]:
                    continue
                similarity = self.scorer.score(seed, candidates[j])
                if similarity >= self.threshold:
                    group.members.append(candidates[j])
                    group.confidence = min(group.confidence, similarity)
                    assigned[j] = True

            groups.append(group)

        return groups


class TransitiveGrouper(GroupingStrategy):
    """Connected components over the >= threshold similarity graph."""

    def group(self, candidates: Sequence[KeyedCandidate]) -> list[MergeGroup]:
        n = len(candidates)
        parent = list(range(n))
        confidence = [1.0] * n

        def find(x: int) -> int:
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        for i in range(n):
            for j in range(i + 1, n):
                similarity = self.scorer.score(candidates[i], candidates[j])
                if similarity < self.threshold:
                    continue
                root_i, root_j = find(i), find(j)
                low = min(confidence[root_i], confidence[root_j], similarity)
                if root_i != root_j:
                    # keep the earliest index as root so groups follow input order
                    if root_j < root_i:
                        root_i, root_j = root_j, root_i
                    parent[root_j] = root_i
                confidence[root_i] = low

        by_root: dict[int, MergeGroup] = {}
        for i, candidate in enumerate(candidates):
            root = find(i)
            group = by_root.get(root)
            if group is None:
                group = MergeGroup(merge_key=candidate.primary_key)
                by_root[root] = group
            group.members.append(candidate)

        for root, group in by_root.items():
            group.confidence = confidence[root] if len(group) > 1 else 1.0

        return list(by_root.values())


GROUPERS = {
    "greedy": GreedyGrouper,
    "transitive": TransitiveGrouper,
}


def build_grouper(config: DedupConfig) -> GroupingStrategy:
    """Instantiate the grouping strategy named in config."""
    return GROUPERS[config.grouping](config)
