"""
Storage collaborators for canonical records.

The engine treats storage as a keyed upsert store: records are upserted by
dedupe_key (falling back to id), and existing records can be fetched by
source family to support incremental re-runs.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import structlog

from .core.models import CandidateValidationError, CanonicalRecord

logger = structlog.get_logger(__name__)


class CanonicalStore(ABC):
    """Abstract keyed upsert store."""

    @abstractmethod
    def upsert(self, record: CanonicalRecord) -> bool:
        """
        Insert or update a record.

        Matches an existing record by dedupe_key, else by id.

        Returns:
            True if inserted, False if updated
        """

    @abstractmethod
    def get_by_dedupe_key(self, dedupe_key: str) -> Optional[CanonicalRecord]:
        """Return the record with this dedupe key, if any."""

    @abstractmethod
    def delete(self, dedupe_key: str) -> bool:
        """Remove a record; True if it existed."""

    @abstractmethod
    def all(self) -> list[CanonicalRecord]:
        """Return every stored record."""

    def get_by_source(self, data_source: str) -> list[CanonicalRecord]:
        """Records whose data_source or merged_from_sources contains the family."""
        return [r for r in self.all() if data_source in r.sources]

    def __len__(self) -> int:
        return len(self.all())


class InMemoryStore(CanonicalStore):
    """Dict-backed store, keyed by dedupe_key."""

    def __init__(self, records: Optional[list[CanonicalRecord]] = None):
        self._records: dict[str, CanonicalRecord] = {}
        for record in records or []:
            self.upsert(record)

    def upsert(self, record: CanonicalRecord) -> bool:
        if record.dedupe_key in self._records:
            self._records[record.dedupe_key] = record
            return False

        for key, existing in self._records.items():
            if existing.id == record.id and existing.data_source == record.data_source:
                # re-key in place, keeping insertion order
                self._records = {
                    (record.dedupe_key if k == key else k): (record if k == key else v)
                    for k, v in self._records.items()
                }
                return False

        self._records[record.dedupe_key] = record
        return True

    def get_by_dedupe_key(self, dedupe_key: str) -> Optional[CanonicalRecord]:
        return self._records.get(dedupe_key)

    def delete(self, dedupe_key: str) -> bool:
        return self._records.pop(dedupe_key, None) is not None

    def all(self) -> list[CanonicalRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)


class JsonFileStore(InMemoryStore):
    """
    In-memory store persisted to a JSON file.

    The file is read on construction; call save() to write it back.
    """

    def __init__(self, path: str):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            self._load()

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)

        loaded = 0
        for item in data or []:
            try:
                self.upsert(CanonicalRecord.from_dict(item))
                loaded += 1
            except CandidateValidationError as e:
                logger.error("stored_record_invalid", path=str(self.path), error=str(e))

        logger.info("store_loaded", path=str(self.path), records=loaded)

    def save(self) -> str:
        """Write all records to the JSON file and return its path."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = [r.to_dict() for r in self.all()]

        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)

        logger.info("store_saved", path=str(self.path), records=len(data))
        return str(self.path)
