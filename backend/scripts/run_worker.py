"""Run the trail generation consumer and, optionally, the retry scheduler."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from trailgen.broker import TrailBroker
from trailgen.config import get_settings
from trailgen.content_provider import build_content_provider
from trailgen.logging_config import configure_logging
from trailgen.scheduler import GenerationScheduler
from trailgen.worker import TrailGenerationWorker

LOGGER = logging.getLogger("trailgen.run_worker")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Consume trail generation jobs.")
    parser.add_argument("--worker-id", default=None, help="Override TRAILGEN_WORKER_ID.")
    parser.add_argument(
        "--with-scheduler",
        action="store_true",
        help="Also run the stale-job sweep, retry scheduling and reaper loop.",
    )
    parser.add_argument(
        "--scheduler-only",
        action="store_true",
        help="Run only the scheduler loop, without consuming jobs.",
    )
    parser.add_argument(
        "--replay-dead-letters",
        type=int,
        default=0,
        metavar="LIMIT",
        help="Move up to LIMIT dead-lettered messages back to the generation queue and exit.",
    )
    parser.add_argument("--log-level", default=None, help="Override TRAILGEN_LOG_LEVEL.")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    broker = TrailBroker(settings.rabbitmq_url)

    if args.replay_dead_letters:
        try:
            replayed = await broker.replay_dead_letters(args.replay_dead_letters)
        finally:
            await broker.close()
        LOGGER.info("Replayed %d message(s)", replayed)
        return 0

    scheduler: Optional[GenerationScheduler] = None
    worker: Optional[TrailGenerationWorker] = None
    tasks: List[asyncio.Task] = []

    if args.with_scheduler or args.scheduler_only:
        scheduler = GenerationScheduler(broker, settings=settings)
        tasks.append(asyncio.create_task(scheduler.run_forever()))
    if not args.scheduler_only:
        worker = TrailGenerationWorker(
            build_content_provider(settings),
            broker,
            worker_id=args.worker_id,
            settings=settings,
        )
        LOGGER.info("Worker %s starting (mode=%s)", worker.worker_id, settings.generation_mode)
        tasks.append(asyncio.create_task(broker.consume(worker.handle_delivery)))

    def shutdown() -> None:
        LOGGER.info("Shutdown requested")
        broker.stop_consuming()
        if scheduler is not None:
            scheduler.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown)

    try:
        await asyncio.gather(*tasks)
    finally:
        await broker.close()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging("scheduler" if args.scheduler_only else "worker", level=args.log_level)
    try:
        return asyncio.run(run(args))
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Worker stopped with an error: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
