"""Shared fixtures for program_dedup tests."""

from datetime import datetime, timezone

import pytest

from program_dedup.config import load_config
from program_dedup.core.keys import KeyGenerator
from program_dedup.core.models import CandidateRecord

FIXED_NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def config():
    """Packaged default configuration."""
    return load_config()


@pytest.fixture
def fixed_clock():
    """Audit clock pinned to FIXED_NOW."""
    return lambda: FIXED_NOW


@pytest.fixture
def make_candidate():
    """Factory for validated candidate records."""

    def _make(**overrides) -> CandidateRecord:
        data = {
            "id": "rec-1",
            "title": "Test Program",
            "url": "https://example.gov/programs/test",
            "data_source": "usda_hq_rss",
        }
        data.update(overrides)
        return CandidateRecord.from_dict(data)

    return _make


@pytest.fixture
def keyed(config, make_candidate):
    """Factory returning keyed candidates prepared with the default config."""
    generator = KeyGenerator(config)

    def _keyed(**overrides):
        return generator.prepare(make_candidate(**overrides))

    return _keyed
