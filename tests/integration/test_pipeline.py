"""Integration tests for the full deduplication pipeline."""

import json

import pytest

from program_dedup import __main__ as cli
from program_dedup.config import config_from_overrides
from program_dedup.core.normalizer import canonicalize_url, normalize_text, stable_hash
from program_dedup.engine import DeduplicationEngine, deduplicate_programs
from program_dedup.storage import InMemoryStore, JsonFileStore

CSP_AGENCY = "USDA Natural Resources Conservation Service"


def csp_usda() -> dict:
    return {
        "id": "usda-csp-2024",
        "title": "Conservation Stewardship Program",
        "url": "https://www.nrcs.usda.gov/programs-initiatives/csp-conservation-stewardship-program",
        "dataSource": "usda_hq_rss",
        "sourceAgency": CSP_AGENCY,
        "category": "Conservation",
        "description": "CSP helps agricultural producers maintain and improve existing conservation systems.",
        "deadline": "2024-06-30",
    }


def csp_grants() -> dict:
    return {
        "id": "grants-csp-2024",
        "title": "Conservation Stewardship Program (CSP)",
        "url": "https://www.grants.gov/search-results-detail/CSP-2024-001",
        "dataSource": "grants_gov_detail",
        "sourceAgency": CSP_AGENCY,
        "category": "Conservation",
        "opportunityNumber": "CSP-2024-001",
        "publishedDate": "2024-02-01",
        "fundingAmount": "25000000",
    }


def clinic_registry() -> dict:
    return {
        "id": "hrsa-detail",
        "title": "Rural Clinic Expansion Grant",
        "url": "https://www.grants.gov/search-results-detail/HRSA-25-001",
        "dataSource": "grants_gov_detail",
        "opportunityNumber": "HRSA-25-001",
        "category": "Health",
    }


def clinic_search() -> dict:
    return {
        "id": "hrsa-search",
        "title": "Hospital Equipment Grant",
        "url": "https://www.grants.gov/view-opportunity/HRSA-25-001/synopsis",
        "dataSource": "grants_gov_search2",
        "opportunityNumber": "hrsa-25-001",
        "description": "Funds hospital equipment for underserved regions.",
    }


def mixed_snapshot() -> list[dict]:
    return [
        csp_usda(),
        clinic_registry(),
        {
            "title": "Solar Schools Initiative",
            "url": "https://energy.example.gov/solar-schools?utm_campaign=launch",
            "dataSource": "state_specific_scraper",
        },
        csp_grants(),
        clinic_search(),
        {
            "title": "Mystery Program",
            "url": "not a url",
            "dataSource": "mystery_feed",
        },
    ]


@pytest.fixture
def engine(config, fixed_clock):
    return DeduplicationEngine(config=config, clock=fixed_clock)


class TestPipeline:
    """End-to-end deduplication scenarios."""

    def test_empty_input(self, engine):
        assert engine.deduplicate([]) == []
        assert engine.stats["canonical"] == 0

    def test_csp_usda_and_grants_gov_merge(self, engine):
        """Test that the USDA and Grants.gov CSP announcements become one record."""
        results = engine.deduplicate([csp_usda(), csp_grants()])

        assert len(results) == 1
        record = results[0]
        assert set(record.merged_from_sources) == {"usda_hq_rss", "grants_gov_detail"}
        assert record.opportunity_number == "CSP-2024-001"
        assert record.data_source == "grants_gov_detail"
        assert record.sector == "agriculture"
        # non-null values from the lower-precedence member survive
        assert record.summary.startswith("CSP helps")
        assert record.deadline is not None
        assert record.funding_amount == "25000000"

    def test_unparseable_url(self, engine):
        """Test that a malformed URL still yields a canonical record."""
        results = engine.deduplicate([
            {"title": "Mystery Program", "url": "not a url", "dataSource": "mystery_feed"},
        ])

        assert len(results) == 1
        assert results[0].url == "not a url"
        assert results[0].dedupe_key == stable_hash("mystery_feed|mystery program")

    def test_exact_id_overrides_partitioning(self, engine):
        """Test that one opportunity classified into two sectors is merged."""
        keyed = engine.prepare_candidates([clinic_registry(), clinic_search()])
        assert [k.sector for k in keyed] == ["agriculture", "health"]

        results = engine.deduplicate([clinic_registry(), clinic_search()])

        assert len(results) == 1
        assert results[0].merged_from_sources == ["grants_gov_detail", "grants_gov_search2"]
        assert engine.stats["cross_partition_merged"] == 1
        assert engine.stats["within_partition_merged"] == 0

    def test_absorbed_opportunity_number_reconciled(self, engine):
        """Test that a merged-away member's opportunity number still links records."""
        farm_grant = {
            "title": "Farm Grant",
            "category": "Agriculture",
        }
        candidates = [
            {**farm_grant, "id": "a", "dataSource": "grants_gov_detail", "opportunityNumber": "USDA-24-001",
             "url": "https://www.grants.gov/search-results-detail/USDA-24-001"},
            {**farm_grant, "id": "b", "dataSource": "grants_gov_search2", "opportunityNumber": "USDA-24-002",
             "url": "https://www.grants.gov/search-results-detail/USDA-24-002"},
            {"id": "c", "title": "Hospital Equipment Program", "dataSource": "mystery",
             "opportunityNumber": "USDA-24-002", "url": "https://example.org/hospital"},
        ]
        assert [k.sector for k in engine.prepare_candidates(candidates)] == ["agriculture", "agriculture", "health"]

        results = engine.deduplicate(candidates)

        assert len(results) == 1
        assert results[0].merged_from_sources == ["grants_gov_detail", "grants_gov_search2", "mystery"]
        assert results[0].opportunity_number == "USDA-24-001"
        assert engine.stats["within_partition_merged"] == 1
        assert engine.stats["cross_partition_merged"] == 1

    def test_mixed_snapshot(self, engine):
        results = engine.deduplicate(mixed_snapshot())

        assert len(results) == 4
        assert engine.stats["candidates"] == 6
        assert engine.stats["partitions"] == 4
        titles = [r.title for r in results]
        assert "Solar Schools Initiative" in titles
        assert "Mystery Program" in titles

    def test_idempotent(self, engine):
        """Test that re-running on the output changes nothing."""
        first = engine.deduplicate(mixed_snapshot())
        second = engine.deduplicate(first)

        assert [r.to_dict() for r in second] == [r.to_dict() for r in first]

    def test_sources_never_lost(self, engine):
        """Test that every input family is attributed to some output."""
        candidates = mixed_snapshot()
        results = engine.deduplicate(candidates)

        attributed = {s for r in results for s in r.merged_from_sources}
        assert attributed == {c["dataSource"] for c in candidates}
        for record in results:
            assert record.data_source in record.merged_from_sources

    def test_url_canonicalization_deterministic(self, config):
        url = "http://WWW.Example.Gov/path?utm_source=x"
        kwargs = dict(
            tracking_params=config.tracking_params,
            tracking_param_prefixes=config.tracking_param_prefixes,
            host_aliases=config.host_aliases,
            fold_www=config.fold_www,
        )
        assert canonicalize_url(url, **kwargs) == "https://example.gov/path"
        assert canonicalize_url(url, **kwargs) == canonicalize_url(url, **kwargs)

    def test_invalid_candidates_dropped(self, engine):
        results = engine.deduplicate([
            csp_usda(),
            {"url": "https://a.gov/x", "dataSource": "fns_rss"},
            {"title": "No source", "url": "https://a.gov/y"},
            "not a record",
        ])

        assert len(results) == 1
        assert engine.stats["dropped"] == 3

    def test_convenience_function(self):
        results = deduplicate_programs([csp_usda(), csp_grants()])
        assert len(results) == 1


class TestGroupingStrategies:
    """Greedy versus transitive grouping through the engine."""

    def chain(self) -> list[dict]:
        return [
            {
                "id": name,
                "title": "a" * (20 - changed) + "b" * changed,
                "url": f"https://programs.example.org/{name}",
                "dataSource": "nrcs_web_scraper",
                "category": "Grants",
            }
            for name, changed in (("a", 0), ("b", 4), ("c", 8))
        ]

    def test_greedy_not_transitive(self, config):
        results = DeduplicationEngine(config=config).deduplicate(self.chain())
        assert len(results) == 2

    def test_transitive_variant(self):
        config = config_from_overrides({"grouping": "transitive"})
        results = DeduplicationEngine(config=config).deduplicate(self.chain())

        assert len(results) == 1
        assert results[0].title == "a" * 20


class TestIncrementalRun:
    """Incremental runs against a canonical store."""

    def test_merges_with_stored_record(self, engine):
        """Test that a stored record absorbs a new source and is re-keyed."""
        store = InMemoryStore()
        first = engine.run_incremental([csp_usda()], store)
        old_key = first[0].dedupe_key

        second = engine.run_incremental(
            [csp_grants()], store, families=["usda_hq_rss"]
        )

        assert len(store) == 1
        assert store.get_by_dedupe_key(old_key) is None
        stored = store.all()[0]
        assert stored.dedupe_key == second[0].dedupe_key
        assert set(stored.sources) == {"usda_hq_rss", "grants_gov_detail"}

    def test_rerun_is_stable(self, engine):
        store = InMemoryStore()
        engine.run_incremental([csp_usda(), csp_grants()], store)
        keys = [r.dedupe_key for r in store.all()]

        engine.run_incremental([csp_grants()], store)

        assert [r.dedupe_key for r in store.all()] == keys

    def test_same_title_records_stored_separately(self, engine):
        """Test that unmerged same-family, same-title records both reach the store."""
        loans = {
            "id": "loans", "title": "Farm Loan Program", "dataSource": "usda_hq_rss",
            "url": "https://www.usda.gov/loans/a", "category": "Loans",
        }
        grants = {**loans, "id": "grants", "url": "https://www.usda.gov/grants/b", "category": "Grants"}
        store = InMemoryStore()

        results = engine.run_incremental([loans, grants], store)

        assert len(results) == 2
        assert len(store) == len(results)
        keys = [r.dedupe_key for r in results]
        assert len(set(keys)) == 2
        assert sorted(r.id for r in store.all()) == ["grants", "loans"]

        engine.run_incremental([loans], store)

        assert len(store) == 2
        assert sorted(r.dedupe_key for r in store.all()) == sorted(keys)

    def test_unrelated_families_not_loaded(self, engine):
        store = InMemoryStore()
        engine.run_incremental([csp_usda()], store)

        engine.run_incremental([csp_grants()], store)

        assert len(store) == 2


class TestCli:
    """Tests for the command line entry point."""

    @pytest.fixture(autouse=True)
    def quiet_logging(self, monkeypatch):
        monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)

    def write_input(self, tmp_path, rows) -> str:
        path = tmp_path / "candidates.json"
        path.write_text(json.dumps(rows), encoding="utf-8")
        return str(path)

    def test_json_output(self, tmp_path):
        out = tmp_path / "out" / "canonical.json"
        inp = self.write_input(tmp_path, [csp_usda(), csp_grants()])

        with pytest.raises(SystemExit) as exc:
            cli.main(["--input", inp, "--output", str(out)])

        assert exc.value.code == 0
        data = json.loads(out.read_text(encoding="utf-8"))
        assert len(data) == 1
        assert data[0]["opportunity_number"] == "CSP-2024-001"

    def test_jsonl_input_and_output(self, tmp_path):
        inp = tmp_path / "candidates.jsonl"
        inp.write_text(
            "\n".join(json.dumps(row) for row in [csp_usda(), {"title": "broken"}, csp_grants()]),
            encoding="utf-8",
        )
        out = tmp_path / "canonical.jsonl"

        with pytest.raises(SystemExit) as exc:
            cli.main(["--input", str(inp), "--output", str(out), "--output-format", "jsonl"])

        assert exc.value.code == 0
        lines = [line for line in out.read_text(encoding="utf-8").splitlines() if line]
        assert len(lines) == 1

    def test_store(self, tmp_path):
        store_path = tmp_path / "canonical-store.json"
        inp = self.write_input(tmp_path, [csp_usda()])

        with pytest.raises(SystemExit):
            cli.main(["--input", inp, "--output", str(tmp_path / "o.json"), "--store", str(store_path)])

        assert len(JsonFileStore(str(store_path))) == 1

    def test_missing_input(self):
        with pytest.raises(SystemExit) as exc:
            cli.main([])
        assert exc.value.code == 2

    def test_fatal_error(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            cli.main(["--input", str(tmp_path / "missing.json")])
        assert exc.value.code == 1

    def test_title_normalization_in_key(self, tmp_path):
        out = tmp_path / "o.json"
        row = {"title": " <b>Mystery</b>  Program ", "url": "not a url", "dataSource": "mystery_feed"}
        inp = self.write_input(tmp_path, [row])

        with pytest.raises(SystemExit):
            cli.main(["--input", inp, "--output", str(out)])

        data = json.loads(out.read_text(encoding="utf-8"))
        assert data[0]["dedupe_key"] == stable_hash("mystery_feed|" + normalize_text(row["title"]))
