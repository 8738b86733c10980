"""
Command line entry points for the long-running workers and one-off seeds.

    harvester consumer --instances 4
    harvester coordinator
    harvester coordinator --once
    harvester seed --mode production --source FL_DBPR --force
"""

import argparse
import asyncio
import json
import signal

from harvester.core.config import get_settings
from harvester.core.logging import get_logger, setup_logging
from harvester.runtime import build_runtime
from harvester.services.consumer import run_consumers
from harvester.services.coordinator import Coordinator, build_seed_trigger

logger = get_logger(__name__)


def _stop_on_signals(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)


async def run_consumer_workers(instances: int | None) -> None:
    settings = get_settings()
    runtime = await build_runtime(settings)
    stop_event = asyncio.Event()
    _stop_on_signals(stop_event)
    try:
        await run_consumers(
            runtime.store,
            runtime.queue,
            runtime.extractor,
            settings,
            count=instances,
            stop_event=stop_event,
        )
    finally:
        await runtime.close()


async def run_coordinator(once: bool) -> None:
    settings = get_settings()
    runtime = await build_runtime(settings)
    coordinator = Coordinator(
        runtime.store,
        runtime.queue,
        build_seed_trigger(runtime.seeder, settings),
        settings,
    )
    try:
        if once:
            report = await coordinator.run_once()
            print(json.dumps(report.as_dict(), indent=2))
            return
        stop_event = asyncio.Event()
        _stop_on_signals(stop_event)
        await coordinator.run_forever(stop_event)
    finally:
        await runtime.close()


async def run_seed(mode: str, sources: list[str] | None, professions: list[str] | None, force: bool) -> None:
    runtime = await build_runtime()
    try:
        result = await runtime.seeder.seed(mode, sources=sources, professions=professions, force=force)
        print(json.dumps(result.as_dict()))
    finally:
        await runtime.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="License harvester workers.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    consumer = subparsers.add_parser("consumer", help="Run queue consumers until interrupted")
    consumer.add_argument("--instances", type=int, default=None,
                          help="Concurrent consumers (default: CONSUMER_INSTANCES)")

    coordinator = subparsers.add_parser("coordinator", help="Run the periodic coordinator")
    coordinator.add_argument("--once", action="store_true", help="Run a single check and print the report")

    seed = subparsers.add_parser("seed", help="Queue work items once")
    seed.add_argument("--mode", choices=["test", "production"], default=None,
                      help="Locality set (default: SEED_MODE)")
    seed.add_argument("--source", action="append", dest="sources",
                      help="Source type to seed; repeat for several (default: all)")
    seed.add_argument("--profession", action="append", dest="professions",
                      help="Profession to enumerate; repeat for several")
    seed.add_argument("--force", action="store_true", help="Ignore refresh and failure cool-downs")

    args = parser.parse_args()
    settings = get_settings()
    setup_logging(settings)
    logger.info("Worker starting", command=args.command, version=settings.worker_version)

    if args.command == "consumer":
        asyncio.run(run_consumer_workers(args.instances))
    elif args.command == "coordinator":
        asyncio.run(run_coordinator(args.once))
    else:
        asyncio.run(run_seed(args.mode or settings.seed_mode, args.sources, args.professions, args.force))


if __name__ == "__main__":
    main()
