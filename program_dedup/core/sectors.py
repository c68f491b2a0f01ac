"""
Sector classification used to partition candidates.

Partitions scope the expensive pairwise similarity pass. Classification is
an ordered keyword lookup: the first sector list with a hit wins, so the
agriculture list (checked first) takes ties.
"""

from typing import Optional

from ..config.settings import DedupConfig
from .models import CandidateRecord
from .normalizer import normalize_text


class SectorClassifier:
    """Assigns each record to a coarse sector partition."""

    def __init__(self, config: DedupConfig):
        self.sector_keywords = config.sector_keywords
        self.default_sector = config.default_sector

    def classify(self, record: CandidateRecord) -> str:
        """Return the partition label for a record."""
        return self.classify_text(
            record.title,
            record.category,
            record.summary,
            record.source_agency,
        )

    def classify_text(self, *parts: Optional[str]) -> str:
        text = " ".join(normalize_text(p) for p in parts if p)

        for sector, keywords in self.sector_keywords:
            for keyword in keywords:
                if keyword in text:
                    return sector

        return self.default_sector
