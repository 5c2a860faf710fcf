"""Worker liveness heartbeats.

WHAT:
    Each worker writes a Redis hash every HEARTBEAT_INTERVAL_SECONDS:
        metricsync:worker:heartbeat:<worker_id>
            worker_id, last_seen_at (ISO-8601 UTC), jobs_processed
    The key expires after 10 intervals so crashed workers eventually vanish.

WHY:
    Monitoring classifies workers by heartbeat age (active / stale / dead)
    without talking to the worker processes themselves.

REFERENCES:
    - metricsync/workers/arq_worker.py (writer: startup loop + after_job_end)
    - metricsync/routers/diagnostics.py (reader: GET /admin/workers)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

HEARTBEAT_KEY_PREFIX = "metricsync:worker:heartbeat:"
TTL_INTERVALS = 10


def heartbeat_key(worker_id: str) -> str:
    return f"{HEARTBEAT_KEY_PREFIX}{worker_id}"


def _decode(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


async def write_heartbeat(redis, worker_id: str, jobs_processed: int, interval_seconds: int = 15) -> None:
    key = heartbeat_key(worker_id)
    await redis.hset(key, mapping={
        "worker_id": worker_id,
        "last_seen_at": datetime.now(timezone.utc).isoformat(),
        "jobs_processed": int(jobs_processed),
    })
    await redis.expire(key, int(interval_seconds * TTL_INTERVALS))


def classify_heartbeat(age_seconds: float, stale_seconds: int = 60, dead_seconds: int = 300) -> str:
    if age_seconds < stale_seconds:
        return "active"
    if age_seconds < dead_seconds:
        return "stale"
    return "dead"


async def list_worker_heartbeats(
    redis,
    stale_seconds: int = 60,
    dead_seconds: int = 300,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """All known workers with age and status, freshest first."""
    now = now or datetime.now(timezone.utc)
    workers: List[Dict[str, Any]] = []

    for key in await redis.keys(f"{HEARTBEAT_KEY_PREFIX}*"):
        raw = await redis.hgetall(key)
        if not raw:
            continue
        data = {_decode(k): _decode(v) for k, v in raw.items()}
        try:
            last_seen = datetime.fromisoformat(data["last_seen_at"])
        except (KeyError, ValueError):
            logger.warning("[HEARTBEAT] Malformed heartbeat at %s", _decode(key))
            continue
        if last_seen.tzinfo is None:
            last_seen = last_seen.replace(tzinfo=timezone.utc)

        age = max(0.0, (now - last_seen).total_seconds())
        workers.append({
            "worker_id": data.get("worker_id") or _decode(key)[len(HEARTBEAT_KEY_PREFIX):],
            "last_seen_at": last_seen,
            "jobs_processed": int(data.get("jobs_processed") or 0),
            "status": classify_heartbeat(age, stale_seconds, dead_seconds),
            "age_seconds": int(age),
        })

    workers.sort(key=lambda w: w["age_seconds"])
    return workers


async def heartbeat_loop(
    redis,
    worker_id: str,
    jobs_processed: Callable[[], int],
    interval_seconds: int = 15,
) -> None:
    """Write a heartbeat every interval until cancelled.

    A failed write is logged and retried on the next tick; liveness
    reporting never stops job processing.
    """
    while True:
        try:
            await write_heartbeat(redis, worker_id, jobs_processed(), interval_seconds)
        except Exception as e:
            logger.warning("[HEARTBEAT] Write failed for %s: %s", worker_id, e)
        await asyncio.sleep(interval_seconds)
