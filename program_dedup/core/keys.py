"""
Key derivation for deduplication candidates.

Each candidate gets:
- primary key: immutable source identifier when available, else a
  content hash of canonical URL + normalized title
- secondary key: optional fuzzy key (title | agency | published day)
- canonical URL: template-derived or normalized
- exact id: cross-partition identifier used by the reconciler

Identifier extraction is a lookup table from id_fields names to small
extractor functions, selected per source family by SourceRule.id_fields.
"""

import re
from dataclasses import dataclass
from string import Formatter
from typing import Callable, Optional

import structlog

from ..config.settings import DedupConfig, SourceRule
from .models import CandidateRecord
from .normalizer import canonicalize_url, extract_host, normalize_text, stable_hash
from .sectors import SectorClassifier

logger = structlog.get_logger(__name__)


GUID_RE = re.compile(r"^[a-f0-9-]{36}$", re.IGNORECASE)
URL_GUID_RE = re.compile(r"guid[=/]([a-f0-9-]{36})", re.IGNORECASE)
URL_NUMERIC_ID_RE = re.compile(r"[?&](?:id|rfxId)=(\d+)")


def extract_opportunity_number(record: CandidateRecord) -> Optional[str]:
    value = (record.opportunity_number or "").strip()
    return value.upper() or None


def extract_record_id(record: CandidateRecord) -> Optional[str]:
    value = (record.id or "").strip()
    return value or None


def extract_guid(record: CandidateRecord) -> Optional[str]:
    """GUID from the record id, or a guid= / guid/ segment of the URL."""
    if record.id and GUID_RE.match(record.id):
        return record.id.lower()
    match = URL_GUID_RE.search(record.url or "")
    return match.group(1).lower() if match else None


def extract_url_numeric_id(record: CandidateRecord) -> Optional[str]:
    """Numeric tender id (id= / rfxId=) from the URL query."""
    match = URL_NUMERIC_ID_RE.search(record.url or "")
    return match.group(1) if match else None


# name -> (extractor, scoped to source family)
ID_EXTRACTORS: dict[str, tuple[Callable[[CandidateRecord], Optional[str]], bool]] = {
    "opportunity_number": (extract_opportunity_number, False),
    "id": (extract_record_id, True),
    "guid": (extract_guid, False),
    "url_numeric_id": (extract_url_numeric_id, True),
}


class ExactIdExtractor:
    """
    Cross-partition identifiers from the configured exact_id_patterns.

    Patterns are tried in order; first hit wins.
    """

    def __init__(self, config: DedupConfig):
        self.config = config
        self.patterns = [
            (p, re.compile(p.pattern) if p.pattern else None)
            for p in config.exact_id_patterns
        ]

    def extract(self, record: CandidateRecord) -> Optional[str]:
        """
        Extract a cross-source identifier.

        Returns:
            "<pattern name>:<id>" or None when nothing matches
        """
        for pattern, regex in self.patterns:
            raw = getattr(record, pattern.field, None)
            if raw is None:
                continue
            value = str(raw).strip()
            if not value:
                continue

            if regex is not None:
                match = regex.search(value)
                if not match:
                    continue
                value = match.group(1) if match.groups() else match.group(0)

            if pattern.field == "opportunity_number":
                value = value.upper()

            if pattern.host_scoped:
                host = self._host(record.url)
                if not host:
                    continue
                return f"{pattern.name}:{host}:{value}"

            return f"{pattern.name}:{value}"

        return None

    def _host(self, url: str) -> str:
        canonical = canonicalize_url(
            url,
            tracking_params=self.config.tracking_params,
            tracking_param_prefixes=self.config.tracking_param_prefixes,
            host_aliases=self.config.host_aliases,
            fold_www=self.config.fold_www,
        )
        return extract_host(canonical)


@dataclass
class KeyedCandidate:
    """A record plus everything derived from it for grouping and merging."""

    record: CandidateRecord
    rule: SourceRule
    primary_key: str
    canonical_url: str
    host: str
    precedence: int
    sector: str
    secondary_key: Optional[str] = None
    url_opportunity_id: Optional[str] = None
    exact_id: Optional[str] = None

    @property
    def data_source(self) -> str:
        return self.record.data_source


class KeyGenerator:
    """Derives keys for candidates using per-family source rules."""

    def __init__(self, config: DedupConfig, classifier: Optional[SectorClassifier] = None):
        self.config = config
        self.classifier = classifier or SectorClassifier(config)
        self._url_patterns = [re.compile(p) for p in config.opportunity_url_patterns]
        self.extractor = ExactIdExtractor(config)

    def prepare(self, record: CandidateRecord) -> KeyedCandidate:
        """
        Derive keys, canonical URL, precedence and sector for a record.

        Never raises for bad URLs or identifier fields; those degrade to
        content-hash keys.
        """
        rule = self.config.rule_for(record.data_source, record.url)
        canonical = self.canonical_url(record, rule)

        return KeyedCandidate(
            record=record,
            rule=rule,
            primary_key=self.primary_key(record, rule, canonical),
            secondary_key=self.secondary_key(record, rule),
            canonical_url=canonical,
            host=extract_host(canonical),
            precedence=self.config.precedence_rank(record.data_source, record.url),
            sector=self.classifier.classify(record),
            url_opportunity_id=self.url_opportunity_id(record.url),
            exact_id=self.extractor.extract(record),
        )

    def primary_key(
        self,
        record: CandidateRecord,
        rule: SourceRule,
        canonical_url: Optional[str] = None,
    ) -> str:
        """
        Primary key: first configured identifier, else content hash.

        Args:
            record: Candidate record
            rule: Source rule for the record's family
            canonical_url: Precomputed canonical URL (computed if None)

        Returns:
            Namespaced identifier or hash
        """
        for name in rule.id_fields:
            extractor, family_scoped = ID_EXTRACTORS[name]
            try:
                value = extractor(record)
            except Exception as e:
                logger.warning(
                    "identifier_extraction_failed",
                    record_id=record.id,
                    id_field=name,
                    error=str(e),
                )
                continue
            if value:
                if family_scoped:
                    return f"{rule.family}:{name}:{value}"
                return f"{name}:{value}"

        if canonical_url is None:
            canonical_url = self.canonical_url(record, rule)
        return self.content_hash(canonical_url, record.title)

    def content_hash(self, url: str, title: str) -> str:
        return stable_hash(f"{url}|{normalize_text(title)}", self.config.hash_length)

    def secondary_key(self, record: CandidateRecord, rule: SourceRule) -> Optional[str]:
        """Fuzzy key for similarity scoring; None unless the rule enables it."""
        if not rule.secondary_key:
            return None

        day = record.published_date.date().isoformat() if record.published_date else ""
        content = f"{normalize_text(record.title)}|{record.source_agency or ''}|{day}"
        return stable_hash(content, self.config.hash_length)

    def canonical_url(self, record: CandidateRecord, rule: Optional[SourceRule] = None) -> str:
        """
        Canonical URL from the family's template, else the normalized URL.

        Falls back to the raw URL string when canonicalization fails.
        """
        rule = rule or self.config.rule_for(record.data_source, record.url)
        url = record.url

        if rule.canonical_url:
            templated = self._render_template(rule.canonical_url, record)
            if templated:
                url = templated

        try:
            return canonicalize_url(
                url,
                tracking_params=self.config.tracking_params,
                tracking_param_prefixes=self.config.tracking_param_prefixes,
                host_aliases=self.config.host_aliases,
                fold_www=self.config.fold_www,
            )
        except Exception as e:
            logger.warning("url_canonicalization_failed", url=url, error=str(e))
            return url

    def url_opportunity_id(self, url: Optional[str]) -> Optional[str]:
        """Opportunity-style identifier embedded in a URL, if any."""
        for pattern in self._url_patterns:
            match = pattern.search(url or "")
            if match:
                value = match.group(1) if match.groups() else match.group(0)
                return value.upper()
        return None

    def _render_template(self, template: str, record: CandidateRecord) -> Optional[str]:
        names = [name for _, name, _, _ in Formatter().parse(template) if name]
        values = {}
        for name in names:
            value = getattr(record, name, None)
            if value is None or not str(value).strip():
                return None
            values[name] = str(value).strip()
        try:
            return template.format(**values)
        except (KeyError, IndexError, ValueError) as e:
            logger.warning("canonical_url_template_failed", template=template, error=str(e))
            return None
