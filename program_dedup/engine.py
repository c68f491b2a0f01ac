"""
Deduplication pipeline orchestrator.

Coordinates:
- Candidate validation and key generation
- Sector partitioning
- Within-partition grouping and merging
- Cross-partition exact-id reconciliation
- Incremental runs against a canonical store

The engine is a synchronous, pure batch transform: no I/O happens during
grouping or merging. Partitions are independent; the reconciler is the one
barrier and runs after all of them.
"""

from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, Optional, Sequence, Union

import structlog

from .config.loader import load_config
from .config.settings import DedupConfig
from .core.grouping import GroupingStrategy, build_grouper
from .core.keys import KeyedCandidate, KeyGenerator
from .core.merge import MergeEngine
from .core.models import CandidateRecord, CandidateValidationError, CanonicalRecord
from .core.normalizer import normalize_text, parse_datetime, stable_hash
from .core.reconciler import CrossPartitionReconciler
from .core.sectors import SectorClassifier
from .storage import CanonicalStore

logger = structlog.get_logger(__name__)

RawCandidate = Union[CandidateRecord, dict]


class DeduplicationEngine:
    """
    Partitioned deduplication engine.

    Args:
        config: Injected configuration (packaged defaults if None)
        clock: Audit timestamp source, forwarded to the merge engine
        grouper: Grouping strategy override (config.grouping if None)
    """

    def __init__(
        self,
        config: Optional[DedupConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        grouper: Optional[GroupingStrategy] = None,
    ):
        self.config = config or load_config()
        self.classifier = SectorClassifier(self.config)
        self.key_generator = KeyGenerator(self.config, self.classifier)
        self.grouper = grouper or build_grouper(self.config)
        self.merge_engine = MergeEngine(self.config, clock)
        self.reconciler = CrossPartitionReconciler(
            self.config, self.key_generator, self.merge_engine
        )
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> dict:
        return {
            "candidates": 0,
            "dropped": 0,
            "partitions": 0,
            "within_partition_merged": 0,
            "cross_partition_merged": 0,
            "canonical": 0,
        }

    def deduplicate(self, candidates: Sequence[RawCandidate]) -> list[CanonicalRecord]:
        """
        Run the full pipeline over a snapshot of candidates.

        Args:
            candidates: CandidateRecords (or raw dicts, validated here)

        Returns:
            Canonical records; empty for empty input
        """
        self.stats = self._empty_stats()
        self.stats["candidates"] = len(candidates)

        logger.info("starting_deduplication", candidates=len(candidates))

        keyed = self.prepare_candidates(candidates)
        partitions = self.partition(keyed)
        self.stats["partitions"] = len(partitions)

        if partitions:
            logger.info(
                "partitions_built",
                partitions=list(partitions),
                sizes={name: len(members) for name, members in partitions.items()},
            )

        merged: list[CanonicalRecord] = []
        for name, members in partitions.items():
            merged.extend(self.deduplicate_partition(name, members))

        results = self.reconciler.reconcile(merged)
        self._disambiguate_keys(results)
        self.stats["cross_partition_merged"] = len(merged) - len(results)
        self.stats["canonical"] = len(results)

        logger.info("deduplication_complete", **self.stats)
        return results

    def prepare_candidates(self, candidates: Iterable[RawCandidate]) -> list[KeyedCandidate]:
        """Validate and key candidates; invalid ones are logged and dropped."""
        keyed: list[KeyedCandidate] = []

        for index, candidate in enumerate(candidates):
            record = self._coerce(index, candidate)
            if record is None:
                self.stats["dropped"] += 1
                continue
            keyed.append(self._key(record))

        return keyed

    def partition(self, keyed: Iterable[KeyedCandidate]) -> dict[str, list[KeyedCandidate]]:
        """Bucket keyed candidates by sector, first-appearance order."""
        partitions: dict[str, list[KeyedCandidate]] = {}
        for candidate in keyed:
            partitions.setdefault(candidate.sector, []).append(candidate)
        return partitions

    def deduplicate_partition(
        self,
        name: str,
        members: Sequence[KeyedCandidate],
    ) -> list[CanonicalRecord]:
        """
        Group and merge one partition.

        Independent of every other partition, so callers may fan these out.
        """
        groups = self.grouper.group(members)
        results = [self.merge_engine.merge(group.members) for group in groups]

        for record in results:
            record.sector = name

        self.stats["within_partition_merged"] += len(members) - len(results)
        logger.info(
            "partition_deduplicated",
            partition=name,
            before=len(members),
            after=len(results),
            strategy=self.grouper.get_strategy_name(),
        )
        return results

    def run_incremental(
        self,
        candidates: Sequence[RawCandidate],
        store: CanonicalStore,
        families: Optional[Sequence[str]] = None,
    ) -> list[CanonicalRecord]:
        """
        Deduplicate new candidates against stored canonical records.

        Loads stored records tagged with each incoming family (plus any
        extra families given), runs the pipeline over stored + new, deletes
        stored records that were merged into a different canonical record,
        and upserts the results.

        Returns:
            Canonical records produced by this run
        """
        records = []
        for index, candidate in enumerate(candidates):
            record = self._coerce(index, candidate)
            if record is not None:
                records.append(record)

        families = list(families or [])
        for record in records:
            if record.data_source not in families:
                families.append(record.data_source)

        existing: list[CanonicalRecord] = []
        seen_keys = set()
        for family in families:
            for stored in store.get_by_source(family):
                if stored.dedupe_key not in seen_keys:
                    seen_keys.add(stored.dedupe_key)
                    existing.append(stored)

        logger.info(
            "incremental_run",
            families=families,
            existing=len(existing),
            incoming=len(records),
        )

        results = self.deduplicate([*existing, *records])
        self.stats["dropped"] += len(candidates) - len(records)

        result_keys = {r.dedupe_key for r in results}
        superseded = 0
        for stored in existing:
            if stored.dedupe_key not in result_keys and store.delete(stored.dedupe_key):
                superseded += 1

        inserted = sum(1 for record in results if store.upsert(record))

        logger.info(
            "store_updated",
            inserted=inserted,
            updated=len(results) - inserted,
            superseded=superseded,
        )
        return results

    def _coerce(self, index: int, candidate: RawCandidate) -> Optional[CandidateRecord]:
        if isinstance(candidate, dict):
            try:
                candidate = CandidateRecord.from_dict(candidate)
            except CandidateValidationError as e:
                logger.warning("candidate_dropped", index=index, reason=str(e))
                return None

        if not isinstance(candidate, CandidateRecord):
            logger.warning("candidate_dropped", index=index, reason=f"unsupported type {type(candidate).__name__}")
            return None

        for required in ("title", "url"):
            value = getattr(candidate, required)
            if not isinstance(value, str) or not value.strip():
                logger.warning(
                    "candidate_dropped",
                    index=index,
                    id=candidate.id,
                    reason=f"missing {required}",
                )
                return None

        return self._normalize_dates(candidate)

    def _normalize_dates(self, record: CandidateRecord) -> CandidateRecord:
        changes = {}
        for name in ("published_date", "deadline"):
            value = getattr(record, name)
            if value is not None and not (isinstance(value, datetime) and value.tzinfo):
                changes[name] = parse_datetime(value)
        return replace(record, **changes) if changes else record

    def _disambiguate_keys(self, results: Sequence[CanonicalRecord]) -> None:
        """
        Give distinct records that share a dedupe_key distinct keys.

        The key hashes the family set and title only, so two unmerged
        records from one family with the same title collide. Each clashing
        key is re-hashed with the record's primary key, which is stable
        across runs and independent of input order.
        """
        by_key: dict[str, list[CanonicalRecord]] = {}
        for record in results:
            by_key.setdefault(record.dedupe_key, []).append(record)

        taken = set(by_key)
        for key, records in by_key.items():
            if len(records) < 2:
                continue
            logger.warning("dedupe_key_collision", dedupe_key=key, records=len(records))
            taken.discard(key)
            for record in records:
                new_key = stable_hash(f"{key}|{self._key(record).primary_key}", self.config.hash_length)
                occurrence = 1
                while new_key in taken:
                    occurrence += 1
                    new_key = stable_hash(
                        f"{key}|{self._key(record).primary_key}|{occurrence}", self.config.hash_length
                    )
                taken.add(new_key)
                record.dedupe_key = new_key

    def _key(self, record: CandidateRecord) -> KeyedCandidate:
        try:
            return self.key_generator.prepare(record)
        except Exception as e:
            logger.error(
                "key_generation_failed",
                id=record.id,
                data_source=record.data_source,
                url=record.url,
                error=str(e),
            )
            content = f"{record.url}|{normalize_text(record.title)}"
            return KeyedCandidate(
                record=record,
                rule=self.config.rule_for(record.data_source, record.url),
                primary_key=stable_hash(content, self.config.hash_length),
                canonical_url=record.url,
                host="",
                precedence=self.config.precedence_rank(record.data_source, record.url),
                sector=self.classifier.classify(record),
            )


def deduplicate_programs(
    candidates: Sequence[RawCandidate],
    config: Optional[DedupConfig] = None,
) -> list[CanonicalRecord]:
    """
    Convenience function to run the engine once.

    Args:
        candidates: Candidate records or raw dicts
        config: Optional configuration (packaged defaults if None)

    Returns:
        Canonical records
    """
    return DeduplicationEngine(config=config).deduplicate(candidates)
