"""
Core layer - pure deduplication components.

Components:
- models: CandidateRecord, CanonicalRecord, audit dataclasses
- normalizer: text, URL and date normalization, stable hashing
- sectors: keyword sector classifier (partitioner)
- keys: primary/secondary key generation per source family
- grouping: similarity scoring, greedy and transitive groupers
- merge: field-rule merge engine
- reconciler: cross-partition exact-id reconciliation
"""

from .models import (
    CandidateRecord,
    CandidateValidationError,
    CanonicalRecord,
    ConflictResolution,
    FieldResolution,
)
from .normalizer import (
    canonicalize_url,
    extract_host,
    normalize_text,
    parse_datetime,
    stable_hash,
)
from .sectors import SectorClassifier
from .keys import KeyedCandidate, KeyGenerator
from .grouping import (
    GreedyGrouper,
    GroupingStrategy,
    MergeGroup,
    SimilarityScorer,
    TransitiveGrouper,
    build_grouper,
)
from .merge import MergeEngine
from .reconciler import CrossPartitionReconciler, ExactIdExtractor

__all__ = [
    "CandidateRecord",
    "CandidateValidationError",
    "CanonicalRecord",
    "ConflictResolution",
    "FieldResolution",
    "canonicalize_url",
    "extract_host",
    "normalize_text",
    "parse_datetime",
    "stable_hash",
    "SectorClassifier",
    "KeyedCandidate",
    "KeyGenerator",
    "GreedyGrouper",
    "GroupingStrategy",
    "MergeGroup",
    "SimilarityScorer",
    "TransitiveGrouper",
    "build_grouper",
    "MergeEngine",
    "CrossPartitionReconciler",
    "ExactIdExtractor",
]
