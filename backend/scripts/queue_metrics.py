"""Print generation job counts, token spend and broker queue depths as one JSON line."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from trailgen.broker import TrailBroker
from trailgen.db.monitoring import get_pool_snapshot
from trailgen.db.session import get_engine, session_scope
from trailgen.logging_config import configure_logging
from trailgen.repositories.jobs import jobs

LOGGER = logging.getLogger("trailgen.queue_metrics")


def collect_job_counts() -> Dict[str, int]:
    with session_scope(commit=False) as session:
        return jobs.count_by_status(session)


def collect_tokens_used(student_ids: List[str]) -> Dict[str, int]:
    with session_scope(commit=False) as session:
        return {student_id: jobs.sum_tokens_used_by_student(session, student_id) for student_id in student_ids}


async def collect_queue_stats(rabbitmq_url: Optional[str] = None) -> Dict[str, Dict[str, int]]:
    broker = TrailBroker(rabbitmq_url)
    try:
        return await broker.get_queue_stats()
    finally:
        await broker.close()


def main(argv: Optional[list[str]] = None) -> int:
    configure_logging("metrics")
    parser = argparse.ArgumentParser(description="Snapshot trail generation queue metrics.")
    parser.add_argument("--skip-broker", action="store_true", help="Only report database counters.")
    parser.add_argument(
        "--student",
        action="append",
        default=[],
        help="Report tokens spent on completed jobs for this student; repeatable.",
    )
    args = parser.parse_args(argv)

    payload: Dict[str, Any] = {"timestamp": datetime.now(timezone.utc).isoformat()}
    try:
        payload["jobs"] = collect_job_counts()
        payload["pool"] = get_pool_snapshot(get_engine())
        if args.student:
            payload["tokens_used"] = collect_tokens_used(args.student)
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Failed to collect job metrics: %s", exc)
        return 1

    if not args.skip_broker:
        try:
            payload["queues"] = asyncio.run(collect_queue_stats())
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Broker metrics unavailable: %s", exc)
            payload["queues"] = None
    print(json.dumps(payload))
    return 0


if __name__ == "__main__":
    sys.exit(main())
