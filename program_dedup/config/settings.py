"""
Deduplication configuration objects.

DedupConfig is an immutable value injected into the engine. It is built by
the YAML loader (see loader.py); tests construct it directly or via
DedupConfig.from_dict.
"""

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional
from urllib.parse import urlsplit


class ConfigError(ValueError):
    """Raised for invalid deduplication configuration."""


GROUPING_STRATEGIES = ("greedy", "transitive")

# Identifier extractors known to the key generator (see core/keys.py)
KNOWN_ID_FIELDS = ("opportunity_number", "id", "guid", "url_numeric_id")

# Field strategies known to the merge engine (see core/merge.py)
KNOWN_MERGE_RULES = (
    "latest_by_precedence",
    "from_registry",
    "earliest",
    "max_by_precedence",
    "deepest_path",
    "richest",
    "union",
)


@dataclass(frozen=True)
class SourceRule:
    """Per-family behaviour: identifiers, canonical URL, authority."""

    family: str
    id_fields: tuple[str, ...] = ()
    secondary_key: bool = False
    canonical_url: Optional[str] = None  # template, e.g. ".../{opportunity_number}"
    authoritative: bool = False  # identifier registry (Grants.gov)
    aliases: tuple[str, ...] = ()
    hosts: tuple[str, ...] = ()  # URL hosts (and subdomains) served by the family

    @classmethod
    def from_dict(cls, family: str, data: Optional[dict]) -> "SourceRule":
        """Create from dictionary (e.g., from YAML)."""
        data = data or {}
        id_fields = tuple(data.get("id_fields") or ())
        unknown = [f for f in id_fields if f not in KNOWN_ID_FIELDS]
        if unknown:
            raise ConfigError(f"Source '{family}' uses unknown id_fields: {unknown}")

        return cls(
            family=family,
            id_fields=id_fields,
            secondary_key=bool(data.get("secondary_key", False)),
            canonical_url=data.get("canonical_url"),
            authoritative=bool(data.get("authoritative", False)),
            aliases=tuple(data.get("aliases") or ()),
            hosts=tuple(str(h).lower() for h in data.get("hosts") or ()),
        )

    def serves_host(self, host: str) -> int:
        """Length of the longest configured host matching, 0 for none."""
        best = 0
        for candidate in self.hosts:
            if host == candidate or host.endswith("." + candidate):
                best = max(best, len(candidate))
        return best


# Rule applied to candidates from unregistered families
GENERIC_RULE = SourceRule(family="unknown")


@dataclass(frozen=True)
class ExactIdPattern:
    """Hand-enumerated cross-partition identifier pattern."""

    name: str
    field: str  # record attribute to inspect
    pattern: Optional[str] = None  # regex; group 1 (or whole match) is the id
    host_scoped: bool = False  # prefix id with URL host

    @classmethod
    def from_dict(cls, data: dict) -> "ExactIdPattern":
        for required in ("name", "field"):
            if required not in data:
                raise ConfigError(f"exact_id_patterns entry missing: {required}")
        pattern = data.get("pattern")
        if pattern:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ConfigError(f"Invalid regex for {data['name']}: {e}") from e
        return cls(
            name=data["name"],
            field=data["field"],
            pattern=pattern,
            host_scoped=bool(data.get("host_scoped", False)),
        )


@dataclass(frozen=True)
class DedupConfig:
    """Immutable configuration for one deduplication engine."""

    precedence: tuple[str, ...] = ()
    similarity_threshold: float = 0.88
    grouping: str = "greedy"
    title_weight: float = 0.5
    host_weight: float = 0.3
    category_weight: float = 0.2
    hash_length: int = 16

    tracking_params: tuple[str, ...] = ("gclid", "fbclid")
    tracking_param_prefixes: tuple[str, ...] = ("utm_",)
    host_aliases: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    fold_www: bool = True

    sector_keywords: tuple[tuple[str, tuple[str, ...]], ...] = ()
    default_sector: str = "general"

    opportunity_url_patterns: tuple[str, ...] = ()
    exact_id_patterns: tuple[ExactIdPattern, ...] = ()
    cross_partition: bool = True

    field_rules: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    sources: Mapping[str, SourceRule] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_dict(cls, data: dict) -> "DedupConfig":
        """
        Build configuration from a parsed YAML mapping.

        Raises:
            ConfigError: If values are invalid
        """
        data = data or {}

        threshold = _as_float(data.get("similarity_threshold", 0.88), "similarity_threshold")
        if not 0.0 < threshold <= 1.0:
            raise ConfigError(f"similarity_threshold must be in (0, 1], got {threshold}")

        grouping = data.get("grouping", "greedy")
        if grouping not in GROUPING_STRATEGIES:
            raise ConfigError(f"Unknown grouping strategy: {grouping}")

        weights = data.get("similarity_weights") or {}

        field_rules = dict(data.get("field_rules") or {})
        unknown_rules = {k: v for k, v in field_rules.items() if v not in KNOWN_MERGE_RULES}
        if unknown_rules:
            raise ConfigError(f"Unknown merge rules: {unknown_rules}")

        sources = {}
        for family, rule in (data.get("sources") or {}).items():
            sources[family] = SourceRule.from_dict(family, rule)

        sector_keywords = tuple(
            (sector, tuple(str(k).lower() for k in keywords or ()))
            for sector, keywords in (data.get("sector_keywords") or {}).items()
        )

        for pattern in data.get("opportunity_url_patterns") or ():
            try:
                re.compile(pattern)
            except re.error as e:
                raise ConfigError(f"Invalid opportunity_url_pattern {pattern!r}: {e}") from e

        return cls(
            precedence=tuple(data.get("precedence") or ()),
            similarity_threshold=threshold,
            grouping=grouping,
            title_weight=_as_float(weights.get("title", 0.5), "similarity_weights.title"),
            host_weight=_as_float(weights.get("host_or_agency", 0.3), "similarity_weights.host_or_agency"),
            category_weight=_as_float(weights.get("category", 0.2), "similarity_weights.category"),
            hash_length=int(data.get("hash_length", 16)),
            tracking_params=tuple(data.get("tracking_params") or ()),
            tracking_param_prefixes=tuple(data.get("tracking_param_prefixes") or ()),
            host_aliases=MappingProxyType(
                {str(k).lower(): str(v).lower() for k, v in (data.get("host_aliases") or {}).items()}
            ),
            fold_www=bool(data.get("fold_www", True)),
            sector_keywords=sector_keywords,
            default_sector=data.get("default_sector", "general"),
            opportunity_url_patterns=tuple(data.get("opportunity_url_patterns") or ()),
            exact_id_patterns=tuple(
                ExactIdPattern.from_dict(p) for p in data.get("exact_id_patterns") or ()
            ),
            cross_partition=bool(data.get("cross_partition", True)),
            field_rules=MappingProxyType(field_rules),
            sources=MappingProxyType(sources),
        )

    def rule_for(self, data_source: Optional[str], url: Optional[str] = None) -> SourceRule:
        """
        Look up the source rule for a family tag.

        Matches the family name or one of its aliases. When the tag is not
        registered, the URL host is matched against each family's hosts
        (most specific host wins). Anything else gets GENERIC_RULE.
        """
        if data_source:
            tag = data_source.lower()
            rule = self.sources.get(tag)
            if rule:
                return rule
            for rule in self.sources.values():
                if tag in rule.aliases:
                    return rule

        host = _host_of(url)
        if host:
            best, best_len = GENERIC_RULE, 0
            for rule in self.sources.values():
                matched = rule.serves_host(host)
                if matched > best_len:
                    best, best_len = rule, matched
            return best
        return GENERIC_RULE

    def precedence_rank(self, data_source: Optional[str], url: Optional[str] = None) -> int:
        """Lower is more authoritative; unknown families sort last."""
        family = self.rule_for(data_source, url).family
        for tag in (data_source, family):
            if tag in self.precedence:
                return self.precedence.index(tag)
        return len(self.precedence)


def _host_of(url: Optional[str]) -> str:
    if not url:
        return ""
    try:
        host = (urlsplit(url.strip()).hostname or "").lower()
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


def _as_float(value, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e
