"""Tests for key generation."""

import pytest

from program_dedup.config import GENERIC_RULE
from program_dedup.core.keys import KeyGenerator, extract_guid, extract_url_numeric_id
from program_dedup.core.normalizer import stable_hash

GUID = "123e4567-e89b-12d3-a456-426614174000"


class TestIdExtractors:
    """Tests for identifier extractor functions."""

    def test_guid_from_id(self, make_candidate):
        assert extract_guid(make_candidate(id=GUID.upper())) == GUID

    def test_guid_from_url(self, make_candidate):
        record = make_candidate(id="item-9", url=f"https://usda.gov/feed?guid={GUID}")
        assert extract_guid(record) == GUID

    def test_no_guid(self, make_candidate):
        assert extract_guid(make_candidate(id="item-9")) is None

    def test_url_numeric_id(self, make_candidate):
        record = make_candidate(url="https://www.gets.govt.nz/ExternalTenderDetails.htm?id=24681357")
        assert extract_url_numeric_id(record) == "24681357"

        record = make_candidate(url="https://www.gets.govt.nz/Tender.htm?rfxId=42")
        assert extract_url_numeric_id(record) == "42"


class TestPrimaryKey:
    """Tests for KeyGenerator.primary_key."""

    @pytest.fixture
    def generator(self, config):
        return KeyGenerator(config)

    def test_opportunity_number(self, keyed):
        """Test registry sources key on the upper-cased opportunity number."""
        candidate = keyed(
            data_source="grants_gov_detail",
            opportunity_number="csp-2024-001",
        )
        assert candidate.primary_key == "opportunity_number:CSP-2024-001"

    def test_guid(self, keyed):
        candidate = keyed(data_source="usda_hq_rss", id=GUID)
        assert candidate.primary_key == f"guid:{GUID}"

    def test_family_scoped_numeric_id(self, keyed):
        """Test that source-local ids are namespaced by family, aliases included."""
        url = "https://www.gets.govt.nz/ExternalTenderDetails.htm?id=24681357"

        direct = keyed(data_source="gets_tenders", url=url)
        aliased = keyed(data_source="nz_gets", url=url)

        assert direct.primary_key == "gets_tenders:url_numeric_id:24681357"
        assert aliased.primary_key == direct.primary_key

    def test_search_source_falls_back_to_record_id(self, keyed):
        candidate = keyed(data_source="grants_gov_search2", id="355123")
        assert candidate.primary_key == "grants_gov_search2:id:355123"

    def test_content_hash_fallback(self, keyed):
        """Test that missing identifiers fall back to URL + title hash."""
        candidate = keyed(
            data_source="usda_hq_rss",
            id="not-a-guid",
            title="Urban Agriculture Grants",
            url="http://www.usda.gov/urban?utm_source=feed",
        )
        expected = stable_hash("https://usda.gov/urban|urban agriculture grants")
        assert candidate.primary_key == expected

    def test_unknown_family(self, config, keyed):
        """Test that unregistered families use the generic rule and sort last."""
        candidate = keyed(data_source="mystery_feed")

        assert candidate.rule is GENERIC_RULE
        assert candidate.precedence == len(config.precedence)
        assert len(candidate.primary_key) == config.hash_length

    def test_unparseable_url(self, keyed):
        """Test that malformed URLs never raise."""
        candidate = keyed(data_source="mystery_feed", url="not a url", title="Mystery Program")

        assert candidate.canonical_url == "not a url"
        assert candidate.host == ""
        assert candidate.primary_key == stable_hash("not a url|mystery program")

    def test_extractor_failure_logged_and_skipped(self, generator, make_candidate, monkeypatch):
        """Test that a failing extractor degrades to the content hash."""
        from program_dedup.core import keys

        def boom(record):
            raise RuntimeError("bad field")

        monkeypatch.setitem(keys.ID_EXTRACTORS, "guid", (boom, False))
        record = make_candidate(data_source="fns_rss", id=GUID)
        rule = generator.config.rule_for("fns_rss")

        key = generator.primary_key(record, rule)

        assert key == generator.content_hash(generator.canonical_url(record, rule), record.title)


class TestSecondaryKey:
    """Tests for KeyGenerator.secondary_key."""

    def test_enabled_family(self, keyed):
        a = keyed(data_source="fns_rss", id="a", title="SNAP Outreach", source_agency="FNS",
                  published_date="2024-03-01T08:00:00Z")
        b = keyed(data_source="fns_rss", id="b", title="snap  outreach", source_agency="FNS",
                  published_date="2024-03-01T17:00:00Z")

        assert a.secondary_key is not None
        assert a.secondary_key == b.secondary_key

    def test_disabled_family(self, keyed):
        assert keyed(data_source="usda_hq_rss").secondary_key is None


class TestCanonicalUrl:
    """Tests for canonical URL derivation."""

    def test_template(self, keyed):
        """Test registry template rendering."""
        candidate = keyed(
            data_source="grants_gov_detail",
            url="https://www.grants.gov/web/grants/view-opportunity.html?oppId=123",
            opportunity_number="CSP-2024-001",
        )
        assert candidate.canonical_url == "https://grants.gov/search-results-detail/CSP-2024-001"
        assert candidate.host == "grants.gov"

    def test_template_missing_field(self, keyed):
        """Test that a template with a missing field falls back to the URL."""
        candidate = keyed(
            data_source="grants_gov_detail",
            url="https://www.grants.gov/web/grants/view-opportunity.html?oppId=123",
        )
        assert candidate.canonical_url == "https://grants.gov/web/grants/view-opportunity.html?oppId=123"


class TestUrlOpportunityId:
    """Tests for opportunity ids embedded in URLs."""

    @pytest.fixture
    def generator(self, config):
        return KeyGenerator(config)

    def test_grants_gov_detail_path(self, generator):
        url = "https://www.grants.gov/search-results-detail/CSP-2024-001"
        assert generator.url_opportunity_id(url) == "CSP-2024-001"

    def test_query_parameter(self, generator):
        assert generator.url_opportunity_id("https://x.gov/apply?opportunity_number=ab-12") == "AB-12"

    def test_none(self, generator):
        assert generator.url_opportunity_id("https://x.gov/apply") is None
        assert generator.url_opportunity_id(None) is None


class TestPrecedence:
    """Tests for precedence lookups."""

    def test_alias_rank(self, config):
        assert config.rule_for("grants_gov").family == "grants_gov_search2"
        assert config.precedence_rank("grants_gov") == 1

    def test_rank_order(self, config):
        assert config.precedence_rank("grants_gov_detail") < config.precedence_rank("usda_hq_rss")
