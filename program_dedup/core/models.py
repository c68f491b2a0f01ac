"""
Data models for program deduplication.

CandidateRecord is the validated ingestion shape for one source's
observation of a funding program; CanonicalRecord is the merged output.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Optional

from .normalizer import parse_datetime, stable_hash


class CandidateValidationError(ValueError):
    """Raised when a raw record cannot become a CandidateRecord."""


# camelCase keys emitted by the collectors -> dataclass field names
FIELD_ALIASES = {
    "dataSource": "data_source",
    "sourceAgency": "source_agency",
    "publishedDate": "published_date",
    "fundingAmount": "funding_amount",
    "opportunityNumber": "opportunity_number",
    "mergedFromSources": "merged_from_sources",
    "dedupeKey": "dedupe_key",
    "conflictResolution": "conflict_resolution",
    "exactIds": "exact_ids",
    "link": "url",
    "description": "summary",
}

DATE_FIELDS = ("published_date", "deadline")
LIST_FIELDS = ("eligibilities", "tags")


@dataclass
class FieldResolution:
    """How one conflicting field was resolved during a merge."""
    field: str
    rule: str
    source: Optional[str]
    value: Any = None
    alternatives: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "rule": self.rule,
            "source": self.source,
            "value": _serialize(self.value),
            "alternatives": [_serialize(v) for v in self.alternatives],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FieldResolution":
        return cls(
            field=data["field"],
            rule=data["rule"],
            source=data.get("source"),
            value=data.get("value"),
            alternatives=list(data.get("alternatives") or []),
        )


@dataclass
class ConflictResolution:
    """Audit entry written when merged members disagreed on a field."""
    timestamp: datetime
    resolved_by: str
    sources: list[str] = field(default_factory=list)
    fields: list[FieldResolution] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "resolved_by": self.resolved_by,
            "sources": list(self.sources),
            "fields": [f.to_dict() for f in self.fields],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConflictResolution":
        return cls(
            timestamp=parse_datetime(data.get("timestamp")) or datetime.min,
            resolved_by=data.get("resolved_by") or data.get("resolvedBy", ""),
            sources=list(data.get("sources") or []),
            fields=[FieldResolution.from_dict(f) for f in data.get("fields") or []],
        )


@dataclass
class CandidateRecord:
    """
    One source's observation of a funding program, pre-deduplication.

    title, url and data_source are required and validated by from_dict.
    """

    # Required identifiers
    id: str
    title: str
    url: str
    data_source: str  # source family tag, e.g. "grants_gov_detail"

    # Core content
    summary: Optional[str] = None
    category: Optional[str] = None
    source_agency: Optional[str] = None

    # Geographic
    country: Optional[str] = None
    region: Optional[str] = None

    # Dates (aware UTC)
    published_date: Optional[datetime] = None
    deadline: Optional[datetime] = None

    # Funding / registry
    funding_amount: Optional[str] = None
    opportunity_number: Optional[str] = None
    status: Optional[str] = None

    # Multi-valued
    eligibilities: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "CandidateRecord":
        """
        Build a record from a raw collector payload.

        Accepts snake_case or camelCase keys. Unknown keys are ignored.

        Raises:
            CandidateValidationError: If title, url or data_source is missing
        """
        return cls(**cls._prepare_kwargs(data))

    @classmethod
    def _prepare_kwargs(cls, data: dict) -> dict:
        if not isinstance(data, dict):
            raise CandidateValidationError(f"Expected a mapping, got {type(data).__name__}")

        normalized = {FIELD_ALIASES.get(k, k): v for k, v in data.items()}
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in normalized.items() if k in known}

        for required in ("title", "url", "data_source"):
            value = kwargs.get(required)
            if value is None or not str(value).strip():
                raise CandidateValidationError(f"Missing required field: {required}")
            kwargs[required] = str(value).strip()

        if not kwargs.get("id"):
            kwargs["id"] = stable_hash(f"{kwargs['data_source']}|{kwargs['url']}")
        else:
            kwargs["id"] = str(kwargs["id"])

        for name in DATE_FIELDS:
            if name in kwargs:
                kwargs[name] = parse_datetime(kwargs[name])

        for name in LIST_FIELDS:
            value = kwargs.get(name)
            if value is None:
                kwargs.pop(name, None)
            elif isinstance(value, str):
                kwargs[name] = [value]
            else:
                kwargs[name] = [str(v) for v in value]

        if kwargs.get("funding_amount") is not None:
            kwargs["funding_amount"] = str(kwargs["funding_amount"])

        return kwargs

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            data[f.name] = _serialize(value)
        return data


@dataclass
class CanonicalRecord(CandidateRecord):
    """
    Merged, deduplicated representation of a program.

    Feeding a CanonicalRecord back into the engine is supported; its
    merged_from_sources and dedupe_key survive the round trip.
    """

    merged_from_sources: list[str] = field(default_factory=list)
    dedupe_key: str = ""
    sector: Optional[str] = None
    # every exact identifier of every merged member, not just the base
    exact_ids: list[str] = field(default_factory=list)
    conflict_resolution: Optional[ConflictResolution] = None

    @classmethod
    def _prepare_kwargs(cls, data: dict) -> dict:
        kwargs = super()._prepare_kwargs(data)

        for name in ("merged_from_sources", "exact_ids"):
            value = kwargs.get(name)
            if isinstance(value, str):
                kwargs[name] = [value]
            elif value is None:
                kwargs.pop(name, None)
            else:
                kwargs[name] = list(value)

        audit = kwargs.get("conflict_resolution")
        if isinstance(audit, dict):
            kwargs["conflict_resolution"] = ConflictResolution.from_dict(audit)

        return kwargs

    @property
    def sources(self) -> list[str]:
        """Every family attributed to this record, data_source included."""
        return _unique([*self.merged_from_sources, self.data_source])


def record_sources(record: CandidateRecord) -> list[str]:
    """Return source attribution for any record type."""
    if isinstance(record, CanonicalRecord):
        return record.sources
    return [record.data_source]


def _unique(values) -> list:
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def _serialize(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value
