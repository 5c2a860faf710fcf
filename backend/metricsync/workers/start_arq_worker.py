#!/usr/bin/env python3
"""Start the ARQ refresh worker.

USAGE:
    python -m metricsync.workers.start_arq_worker

    Or directly:
    arq metricsync.workers.arq_worker.WorkerSettings
"""

import logging
import sys

from metricsync.utils.env import load_env_file

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Load .env, then hand WorkerSettings to arq."""
    load_env_file()

    from arq import run_worker
    from metricsync.workers.arq_worker import WorkerSettings

    logger.info("Starting refresh worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
