"""
Extractor: multi-strategy reading of licensing registries.
"""

from harvester.extractor.engine import Extractor, StrategyExtractor
from harvester.extractor.models import (
    CrawlErrorType,
    ExtractionOutcome,
    ExtractionRequest,
    ExtractionResult,
    LicenseRecord,
)
from harvester.extractor.sources import SOURCES, SourceSpec

__all__ = [
    "CrawlErrorType",
    "ExtractionOutcome",
    "ExtractionRequest",
    "ExtractionResult",
    "Extractor",
    "LicenseRecord",
    "SOURCES",
    "SourceSpec",
    "StrategyExtractor",
]
