import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from harvester.core.config import Settings, get_settings
from harvester.extractor.models import ExtractionRequest, ExtractionResult, LicenseRecord
from harvester.extractor.sources import SOURCES
from harvester.runtime import Runtime, build_runtime


class ScriptedExtractor:
    """Extractor double: answers every request through ``respond``."""

    def __init__(self, respond: Callable[[ExtractionRequest], ExtractionResult] | None = None) -> None:
        self.respond = respond or (lambda request: ExtractionResult.empty())
        self.calls: list[ExtractionRequest] = []

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        self.calls.append(request)
        return self.respond(request)


AGENT_NAMES = ("Maria Lopez", "James Carter", "Aisha Khan", "Tom Becker", "Lena Park")


def license_records(locality: str, count: int = 3) -> list[LicenseRecord]:
    return [
        LicenseRecord(
            name=AGENT_NAMES[i % len(AGENT_NAMES)],
            license_number=f"SL{locality}{i}",
            license_status="Active",
            city="Miami",
        )
        for i in range(count)
    ]


@pytest.fixture
def settings(tmp_path) -> Settings:
    get_settings.cache_clear()
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'harvester.db'}",
        log_format="console",
        max_retries=3,
        retry_min_wait=0,
        retry_max_wait=0,
        rate_limit_max_wait_seconds=0,
        publish_retry_wait=0,
        queue_poll_interval=0,
        seed_professions="real_estate",
    )


@pytest.fixture
def run(settings: Settings) -> Callable[..., Any]:
    """
    Run ``scenario(runtime)`` against a fresh SQLite database.

    Every source gets a generous rate limit so consumers never wait
    unless a test throttles explicitly.
    """

    def runner(
        scenario: Callable[[Runtime], Awaitable[Any]],
        extractor: Any | None = None,
        settings_override: Settings | None = None,
    ) -> Any:
        async def main() -> Any:
            runtime = await build_runtime(
                settings_override or settings,
                extractor=extractor or ScriptedExtractor(),
                create_schema=True,
            )
            try:
                for source_type in SOURCES:
                    await runtime.store.configure_rate_limit(source_type, 1000)
                return await scenario(runtime)
            finally:
                await runtime.close()

        return asyncio.run(main())

    return runner
