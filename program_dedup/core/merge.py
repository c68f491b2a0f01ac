"""
Merge engine: collapses a merge group into one canonical record.

Members are ordered by source precedence and each field is resolved by the
strategy named in config.field_rules. Every strategy prefers non-null
values, and source attribution is always unioned, so a merge never replaces
a value with null or drops a contributing family.
"""

from dataclasses import fields
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

import structlog

from ..config.settings import DedupConfig
from .keys import KeyedCandidate
from .models import (
    CandidateRecord,
    CanonicalRecord,
    ConflictResolution,
    FieldResolution,
    record_sources,
)
from .normalizer import normalize_text, stable_hash, url_path_depth

logger = structlog.get_logger(__name__)

RULE_SET_NAME = "collision_resolution"

# Fields carried from the merge base without a strategy
BASE_FIELDS = ("id", "data_source")

DEFAULT_RULE = "latest_by_precedence"

Resolution = tuple[Any, Optional[str]]  # (value, resolving data_source)


def _present(value) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, set)):
        return len(value) > 0
    return True


def _candidates(name: str, members: Sequence[KeyedCandidate]):
    for member in members:
        value = getattr(member.record, name, None)
        if _present(value):
            yield member, value


def latest_by_precedence(name: str, members: Sequence[KeyedCandidate]) -> Resolution:
    """First non-null value scanning in precedence order."""
    for member, value in _candidates(name, members):
        return value, member.data_source
    return None, None


# Authority over numeric size: the most authoritative non-null value wins
max_by_precedence = latest_by_precedence


def from_registry(name: str, members: Sequence[KeyedCandidate]) -> Resolution:
    """Highest-precedence authoritative registry value, else first non-null."""
    for member, value in _candidates(name, members):
        if member.rule.authoritative:
            return value, member.data_source
    return latest_by_precedence(name, members)


def earliest(name: str, members: Sequence[KeyedCandidate]) -> Resolution:
    """Earliest non-null date; ties go to the higher-precedence member."""
    found = list(_candidates(name, members))
    if not found:
        return None, None
    member, value = min(found, key=lambda pair: pair[1])
    return value, member.data_source


def deepest_path(name: str, members: Sequence[KeyedCandidate]) -> Resolution:
    """URL with the most path segments (most specific)."""
    found = list(_candidates(name, members))
    if not found:
        return None, None
    member, value = max(found, key=lambda pair: url_path_depth(pair[1]))
    return value, member.data_source


def richest(name: str, members: Sequence[KeyedCandidate]) -> Resolution:
    """Longest non-null string."""
    found = list(_candidates(name, members))
    if not found:
        return None, None
    member, value = max(found, key=lambda pair: len(str(pair[1])))
    return value, member.data_source


def union(name: str, members: Sequence[KeyedCandidate]) -> Resolution:
    """Union of list values, de-duplicated, first-seen order."""
    merged: list = []
    for _, value in _candidates(name, members):
        items = value if isinstance(value, (list, tuple, set)) else [value]
        for item in items:
            if item not in merged:
                merged.append(item)
    return merged, None


MERGE_STRATEGIES: dict[str, Callable[[str, Sequence[KeyedCandidate]], Resolution]] = {
    "latest_by_precedence": latest_by_precedence,
    "from_registry": from_registry,
    "earliest": earliest,
    "max_by_precedence": max_by_precedence,
    "deepest_path": deepest_path,
    "richest": richest,
    "union": union,
}

CANDIDATE_FIELDS = tuple(f.name for f in fields(CandidateRecord))


def _field_values(record: CandidateRecord) -> dict:
    values = {}
    for name in CANDIDATE_FIELDS:
        value = getattr(record, name)
        values[name] = list(value) if isinstance(value, list) else value
    return values


class MergeEngine:
    """
    Combines merge groups into canonical records.

    Args:
        config: Deduplication configuration (precedence, field rules)
        clock: Returns the audit timestamp (injectable for tests)
    """

    def __init__(self, config: DedupConfig, clock: Optional[Callable[[], datetime]] = None):
        self.config = config
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def merge(self, members: Sequence[KeyedCandidate]) -> CanonicalRecord:
        """
        Merge one group of keyed candidates.

        Raises:
            ValueError: If the group is empty
        """
        if not members:
            raise ValueError("Cannot merge an empty group")

        ordered = sorted(members, key=lambda m: m.precedence)
        if len(ordered) == 1:
            return self.passthrough(ordered[0])

        base = ordered[0]
        values = _field_values(base.record)
        conflicts: list[FieldResolution] = []

        for name in CANDIDATE_FIELDS:
            if name in BASE_FIELDS:
                continue

            rule = self.config.field_rules.get(name, DEFAULT_RULE)
            value, source = MERGE_STRATEGIES[rule](name, ordered)
            if _present(value):
                values[name] = value

            distinct = self._distinct_values(name, ordered)
            if len(distinct) > 1:
                conflicts.append(
                    FieldResolution(
                        field=name,
                        rule=rule,
                        source=source,
                        value=values[name],
                        alternatives=[v for v in distinct if v != values[name]],
                    )
                )

        sources = self.merged_sources(ordered)
        if conflicts:
            audit = ConflictResolution(
                timestamp=self.clock(),
                resolved_by=RULE_SET_NAME,
                sources=list(sources),
                fields=conflicts,
            )
        else:
            audit = self._existing_audit(ordered)

        merged = CanonicalRecord(
            **values,
            merged_from_sources=sources,
            dedupe_key=self.dedupe_key(sources, values["title"]),
            sector=base.sector,
            exact_ids=self.merged_exact_ids(ordered),
            conflict_resolution=audit,
        )

        logger.debug(
            "group_merged",
            members=len(ordered),
            base_source=base.data_source,
            sources=sources,
            conflicts=[c.field for c in conflicts],
            dedupe_key=merged.dedupe_key,
        )
        return merged

    def passthrough(self, member: KeyedCandidate) -> CanonicalRecord:
        """Wrap a singleton as a canonical record with a fresh dedupe key."""
        values = _field_values(member.record)
        sources = record_sources(member.record)
        existing = member.record.conflict_resolution if isinstance(member.record, CanonicalRecord) else None

        return CanonicalRecord(
            **values,
            merged_from_sources=sources,
            dedupe_key=self.dedupe_key(sources, member.record.title),
            sector=member.sector,
            exact_ids=self.merged_exact_ids([member]),
            conflict_resolution=existing,
        )

    def merged_sources(self, members: Sequence[KeyedCandidate]) -> list[str]:
        """Union of every member's attributed families, precedence order."""
        sources: list[str] = []
        for member in members:
            for source in record_sources(member.record):
                if source not in sources:
                    sources.append(source)
        return sources

    def merged_exact_ids(self, members: Sequence[KeyedCandidate]) -> list[str]:
        """Exact identifiers carried by any member, including earlier merges."""
        exact_ids: list[str] = []
        for member in members:
            carried = member.record.exact_ids if isinstance(member.record, CanonicalRecord) else []
            for exact_id in [*carried, member.exact_id]:
                if exact_id and exact_id not in exact_ids:
                    exact_ids.append(exact_id)
        return exact_ids

    def dedupe_key(self, sources: Sequence[str], title: str) -> str:
        """Stable key from the merged family set and merged title."""
        content = "|".join(sorted(set(sources))) + "|" + normalize_text(title)
        return stable_hash(content, self.config.hash_length)

    def _distinct_values(self, name: str, members: Sequence[KeyedCandidate]) -> list:
        distinct: list = []
        for _, value in _candidates(name, members):
            if value not in distinct:
                distinct.append(value)
        return distinct

    def _existing_audit(self, members: Sequence[KeyedCandidate]) -> Optional[ConflictResolution]:
        for member in members:
            record = member.record
            if isinstance(record, CanonicalRecord) and record.conflict_resolution:
                return record.conflict_resolution
        return None
