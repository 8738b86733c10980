import json
import sys

import pytest

from harvester import workers
from harvester.runtime import build_runtime


@pytest.fixture
def cli(settings, monkeypatch):
    async def runtime_for_tests(*args, **kwargs):
        return await build_runtime(settings, create_schema=True)

    monkeypatch.setattr(workers, "get_settings", lambda: settings)
    monkeypatch.setattr(workers, "build_runtime", runtime_for_tests)
    printed: list[str] = []
    monkeypatch.setattr(workers, "print", printed.append, raising=False)

    def invoke(*argv: str) -> dict:
        monkeypatch.setattr(sys, "argv", ["harvester", *argv])
        workers.main()
        return json.loads(printed[-1])

    return invoke


def test_seed_command_prints_counts(cli) -> None:
    assert cli("seed", "--source", "TX_TREC", "--source", "CA_DRE") == {"queued": 10, "skipped": 0, "errors": 0}
    assert cli("seed", "--source", "TX_TREC") == {"queued": 0, "skipped": 5, "errors": 0}


def test_coordinator_once_prints_report(cli) -> None:
    report = cli("coordinator", "--once")

    assert report["seeded"]["low_water_mark"]["queued"] == 20
    assert report["status"] in {"healthy", "degraded", "critical"}


def test_command_is_required(cli) -> None:
    with pytest.raises(SystemExit):
        cli()
