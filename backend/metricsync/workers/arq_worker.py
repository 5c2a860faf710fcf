"""ARQ worker - refresh job consumer.

WHAT:
    Transport adapter around RefreshWorker:
        - process_refresh_job: validates the payload, throttles dispatch,
          runs the sync worker in a thread, maps RetryableJobError to
          arq's Retry(defer=...)
        - startup/shutdown: build the store, gateway and worker once; run
          the heartbeat loop
        - scheduled_mismatch_cleanup: daily retention sweep

WHY:
    - max_jobs=1: one job at a time per worker process
    - DispatchThrottle: at most one dispatch per DISPATCH_INTERVAL_SECONDS,
      independent of backoff, to protect the ads API budget
    - Scale out by running more processes; idempotent writes make that safe

TIMEOUTS:
    arq's job_timeout cancels the awaiting coroutine only. The thread
    running RefreshWorker keeps going until the gateway call returns, so
    each ads API call carries its own GATEWAY_TIMEOUT_SECONDS deadline and
    JOB_TIMEOUT_SECONDS stays well above it (one gateway call per job).

ARCHITECTURE:
    ┌─────────────────┐   to_thread   ┌───────────────┐   ┌──────────────┐
    │  arq_worker.py  │──────────────▶│ RefreshWorker │──▶│ store_writers│
    │  (transport)    │◀── Retry ─────│  (sync core)  │   └──────────────┘
    └─────────────────┘               └───────────────┘

USAGE:
    arq metricsync.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m metricsync.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - metricsync/services/refresh_worker.py
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import platform
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional
from uuid import uuid4

from arq import cron
from arq.worker import Retry

from metricsync.config import get_settings
from metricsync.database import build_engine, build_session_factory, session_scope
from metricsync.schemas import RefreshJob
from metricsync.services.google_ads_gateway import GoogleAdsGateway
from metricsync.services.heartbeat import heartbeat_loop, write_heartbeat
from metricsync.services.hierarchy_validation import cleanup_old_mismatch_events
from metricsync.services.prewarm_progress import PrewarmProgressTracker
from metricsync.services.refresh_worker import RefreshWorker, RetryableJobError
from metricsync.telemetry import capture_exception, init_observability
from metricsync.workers.arq_enqueue import get_redis_settings

logger = logging.getLogger(__name__)


# =============================================================================
# DISPATCH THROTTLE
# =============================================================================

class DispatchThrottle:
    """Enforce a minimum gap between consecutive job dispatches."""

    def __init__(
        self,
        interval_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._last_dispatch: Optional[float] = None

    async def wait(self) -> None:
        if self._last_dispatch is not None:
            remaining = self.interval_seconds - (self._clock() - self._last_dispatch)
            if remaining > 0:
                await self._sleep(remaining)
        self._last_dispatch = self._clock()


# =============================================================================
# REFRESH JOB
# =============================================================================

async def process_refresh_job(ctx: Dict, payload: Dict) -> Dict:
    """Process one refresh job delivered by arq.

    Args:
        ctx: ARQ context (job_try is 1-based)
        payload: RefreshJob as JSON-compatible dict

    Returns:
        JobResult as dict. Terminal failures are returned, not raised.
    """
    worker: RefreshWorker = ctx["refresh_worker"]
    attempt = ctx.get("job_try") or 1
    max_tries = ctx.get("max_tries") or get_settings().MAX_JOB_TRIES

    try:
        job = RefreshJob.model_validate(payload)
    except Exception as e:
        logger.error("[WORKER] Rejected malformed payload %s: %s", ctx.get("job_id"), e)
        capture_exception(e, extra={"operation": "process_refresh_job", "job_id": ctx.get("job_id")})
        return {"success": False, "error": f"invalid payload: {e}"}

    await ctx["throttle"].wait()

    try:
        result = await asyncio.to_thread(worker.process_job, job, attempt, max_tries)
    except RetryableJobError as e:
        raise Retry(defer=e.retry_after_seconds) from e
    except Exception as e:
        logger.exception("[WORKER] Unexpected failure in %s for %s", job.type.value, job.customer_id)
        capture_exception(e, extra={
            "operation": "process_refresh_job",
            "job_id": ctx.get("job_id"),
            "job_type": job.type.value,
            "customer_id": job.customer_id,
        })
        raise

    return result.to_dict()


# =============================================================================
# SCHEDULED RETENTION
# =============================================================================

async def scheduled_mismatch_cleanup(ctx: Dict) -> Dict:
    """Delete acknowledged mismatch events older than the retention window."""
    retention_days = get_settings().MISMATCH_RETENTION_DAYS

    def _run() -> int:
        with session_scope(ctx["session_factory"]) as db:
            return cleanup_old_mismatch_events(db, retention_days)

    try:
        deleted = await asyncio.to_thread(_run)
    except Exception as e:
        logger.exception("[WORKER] Mismatch retention sweep failed")
        capture_exception(e, extra={"operation": "scheduled_mismatch_cleanup"})
        return {"success": False, "error": str(e)}

    return {"success": True, "deleted": deleted}


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Build clients once and start the heartbeat loop."""
    settings = get_settings()
    init_observability()

    engine = build_engine(settings.DATABASE_URL)
    session_factory = build_session_factory(engine)
    prewarm_tracker = PrewarmProgressTracker()

    ctx["engine"] = engine
    ctx["session_factory"] = session_factory
    ctx["prewarm_tracker"] = prewarm_tracker
    ctx["refresh_worker"] = RefreshWorker(
        session_factory,
        GoogleAdsGateway(timeout_seconds=settings.GATEWAY_TIMEOUT_SECONDS),
        prewarm_observer=prewarm_tracker,
        validation_sample_rate=settings.VALIDATION_SAMPLE_RATE,
        validation_tolerance=settings.VALIDATION_TOLERANCE,
        reporting_timezone=settings.REPORTING_TIMEZONE,
    )
    ctx["throttle"] = DispatchThrottle(settings.DISPATCH_INTERVAL_SECONDS)
    ctx["max_tries"] = settings.MAX_JOB_TRIES
    ctx["worker_id"] = f"worker-{uuid4().hex[:8]}"
    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0

    ctx["heartbeat_task"] = asyncio.create_task(heartbeat_loop(
        ctx["redis"],
        ctx["worker_id"],
        lambda: ctx.get("jobs_processed", 0),
        settings.HEARTBEAT_INTERVAL_SECONDS,
    ))

    logger.info("=" * 60)
    logger.info("[WORKER] Refresh worker starting up (%s)", ctx["worker_id"])
    logger.info("[WORKER] Python: %s, host: %s", platform.python_version(), platform.node())
    logger.info("[WORKER] Queue: %s", settings.REFRESH_QUEUE_NAME)
    logger.info(
        "[WORKER] Concurrency: 1, dispatch interval: %ss, max tries: %d",
        settings.DISPATCH_INTERVAL_SECONDS, settings.MAX_JOB_TRIES,
    )
    logger.info("=" * 60)


async def shutdown(ctx: Dict) -> None:
    """Stop the heartbeat loop and release the engine."""
    task = ctx.get("heartbeat_task")
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    engine = ctx.get("engine")
    if engine is not None:
        engine.dispose()

    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))
    logger.info("[WORKER] Shutting down %s: %d jobs processed, uptime %s",
                ctx.get("worker_id"), ctx.get("jobs_processed", 0), uptime)


async def on_job_end(ctx: Dict) -> None:
    """Count the job and refresh the heartbeat right away."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1
    try:
        await write_heartbeat(
            ctx["redis"],
            ctx["worker_id"],
            ctx["jobs_processed"],
            get_settings().HEARTBEAT_INTERVAL_SECONDS,
        )
    except Exception as e:
        logger.warning("[HEARTBEAT] Post-job heartbeat failed: %s", e)


# =============================================================================
# WORKER SETTINGS
# =============================================================================

_settings = get_settings()


class WorkerSettings:
    """ARQ worker configuration.

    - max_jobs=1: strictly sequential consumer
    - max_tries: transport attempts; the last attempt never raises Retry
    - keep_result=60: finished ids free up quickly for the next refresh
    """

    functions = [process_refresh_job]

    cron_jobs = [
        cron(scheduled_mismatch_cleanup, hour={3}, minute={30}, run_at_startup=False),
    ]

    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = get_redis_settings(_settings.REDIS_URL)

    max_jobs = 1
    job_timeout = _settings.JOB_TIMEOUT_SECONDS
    keep_result = 60
    retry_jobs = True
    max_tries = _settings.MAX_JOB_TRIES
    health_check_interval = 30

    queue_name = _settings.REFRESH_QUEUE_NAME
