"""
Strategy engine: drives a browser page through a source's ordered
URL, form and extraction strategies.

For each candidate URL the page is loaded once, then every form strategy
is applied and every extraction strategy tried on the resulting HTML.
The first validated, non-empty extraction wins. A source whose pages all
load but yield nothing valid is an empty result, not an error; only a
source that could not be loaded at all is a failure.
"""

import time
from collections.abc import Mapping
from typing import Any, Protocol

from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError

from harvester.core.exceptions import NavigationException
from harvester.core.logging import LoggerMixin
from harvester.extractor.browser import PageCrawlerService
from harvester.extractor.models import (
    CrawlErrorType,
    ExtractionRequest,
    ExtractionResult,
)
from harvester.extractor.sources import SOURCES, SourceSpec
from harvester.extractor.validation import validate_records


class Extractor(Protocol):
    """Capability consumed by the consumer."""

    async def extract(self, request: ExtractionRequest) -> ExtractionResult: ...


class StrategyExtractor(LoggerMixin):
    """Extractor backed by a Playwright browser and the source registry."""

    def __init__(
        self,
        crawler: PageCrawlerService | None = None,
        sources: Mapping[str, SourceSpec] = SOURCES,
    ) -> None:
        self.crawler = crawler or PageCrawlerService()
        self.sources = sources

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        start = time.time()
        source = self.sources.get(request.source_type)

        if source is None or not source.implemented:
            return ExtractionResult.unsupported(
                f"Source {request.source_type} is not implemented for {request.jurisdiction}"
            )
        if source.jurisdiction != request.jurisdiction:
            return ExtractionResult.unsupported(
                f"Source {request.source_type} does not cover jurisdiction {request.jurisdiction}"
            )

        try:
            result = await self._run_strategies(source, request)
        except PlaywrightError as e:
            error_type, message = self.crawler.classify_error(e)
            self.logger.error("Browser session failed", source_type=source.source_type,
                              error_type=error_type.value, error=str(e))
            result = ExtractionResult.failure(message, error_type.value)

        result.duration_seconds = time.time() - start
        self.logger.info(
            "Extraction finished",
            source_type=source.source_type,
            locality=request.locality_code,
            outcome=result.outcome.value,
            strategy=result.strategy_used,
            records=len(result.records),
            duration=round(result.duration_seconds, 2),
        )
        return result

    async def _run_strategies(self, source: SourceSpec, request: ExtractionRequest) -> ExtractionResult:
        trail: list[dict[str, Any]] = []
        loaded_any = False
        last_error: NavigationException | None = None

        async with self.crawler.open_page() as page:
            for url_strategy in source.url_strategies:
                url = url_strategy.build(request, source)
                try:
                    await self.crawler.navigate(page, url)
                except NavigationException as e:
                    last_error = e
                    trail.append({"url": url_strategy.name, "error_type": e.error_type.value})
                    continue
                loaded_any = True

                for form_strategy in source.form_strategies:
                    if not await form_strategy.apply(page, request, source):
                        trail.append({"url": url_strategy.name, "form": form_strategy.name, "applied": False})
                        continue

                    soup = BeautifulSoup(await page.content(), "html.parser")
                    for extraction in source.extraction_strategies:
                        raw_records = extraction.extract(soup, source, request.result_limit)
                        report = validate_records(raw_records, source.license_pattern)
                        step = {
                            "url": url_strategy.name,
                            "form": form_strategy.name,
                            "extraction": extraction.name,
                            **report.summary(),
                        }
                        trail.append(step)
                        self.logger.debug("Strategy tried", source_type=source.source_type, **step)

                        if report.accepted:
                            return ExtractionResult.success(
                                report.valid[:request.result_limit],
                                f"{url_strategy.name}/{form_strategy.name}/{extraction.name}",
                                strategies=trail,
                            )

        if not loaded_any and last_error is not None:
            return ExtractionResult.failure(
                last_error.message,
                last_error.error_type.value,
                strategies=trail,
            )
        if not loaded_any:
            return ExtractionResult.failure(
                "No URL strategy configured", CrawlErrorType.UNKNOWN.value, strategies=trail
            )
        return ExtractionResult.empty(strategies=trail)
