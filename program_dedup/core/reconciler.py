"""
Cross-partition reconciliation on exact immutable identifiers.

Sector classification is heuristic and can file the same program into two
partitions. After every partition is merged, records sharing an exact
identifier (opportunity number, host-scoped tender id, strict
LETTERS-DIGITS id) are merged regardless of partition. A merged record
carries the exact ids of all its members, so an absorbed member's id still
links later records. Fuzzy similarity is never used here.
"""

from typing import Sequence

import structlog

from ..config.settings import DedupConfig
from .keys import ExactIdExtractor, KeyGenerator
from .merge import MergeEngine
from .models import CanonicalRecord

logger = structlog.get_logger(__name__)

__all__ = ["CrossPartitionReconciler", "ExactIdExtractor"]


class CrossPartitionReconciler:
    """
    Merges canonical records that share an exact identifier.

    Must run after every partition has been merged: it needs their
    combined output.
    """

    def __init__(
        self,
        config: DedupConfig,
        key_generator: KeyGenerator,
        merge_engine: MergeEngine,
    ):
        self.config = config
        self.key_generator = key_generator
        self.merge_engine = merge_engine
        self.extractor = key_generator.extractor

    def exact_ids(self, record: CanonicalRecord) -> list[str]:
        """Carried exact ids plus the one extracted from the record itself."""
        ids = list(record.exact_ids)
        extracted = self.extractor.extract(record)
        if extracted and extracted not in ids:
            ids.append(extracted)
        return ids

    def reconcile(self, records: Sequence[CanonicalRecord]) -> list[CanonicalRecord]:
        """
        Merge records connected through any shared exact id.

        Output keeps first-appearance order; each merged record takes the
        slot of its first member.
        """
        if not self.config.cross_partition:
            return list(records)

        parent = list(range(len(records)))

        def find(i: int) -> int:
            while parent[i] != i:
                parent[i] = parent[parent[i]]
                i = parent[i]
            return i

        first_seen: dict[str, int] = {}
        for index, record in enumerate(records):
            for exact_id in self.exact_ids(record):
                if exact_id not in first_seen:
                    first_seen[exact_id] = index
                    continue
                a, b = find(first_seen[exact_id]), find(index)
                if a != b:
                    parent[max(a, b)] = min(a, b)

        groups: dict[int, list[CanonicalRecord]] = {}
        for index, record in enumerate(records):
            groups.setdefault(find(index), []).append(record)

        results: list[CanonicalRecord] = []
        merged_count = 0

        for root in sorted(groups):
            group = groups[root]
            if len(group) == 1:
                results.append(group[0])
                continue

            logger.info(
                "cross_partition_merge",
                exact_ids=sorted({i for r in group for i in self.exact_ids(r)}),
                records=len(group),
                sectors=sorted({r.sector or "" for r in group}),
            )
            keyed = [self.key_generator.prepare(r) for r in group]
            results.append(self.merge_engine.merge(keyed))
            merged_count += len(group) - 1

        logger.info(
            "cross_partition_complete",
            before=len(records),
            after=len(results),
            merged=merged_count,
        )
        return results
