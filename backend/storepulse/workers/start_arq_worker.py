#!/usr/bin/env python3
"""Start the ARQ worker for sweeps and backfills.

USAGE:
    python -m storepulse.workers.start_arq_worker

    Or directly:
    arq storepulse.workers.arq_worker.WorkerSettings
"""

import logging
import sys

from arq import run_worker

from storepulse.deps import get_settings

logging.basicConfig(
    level=getattr(logging, get_settings().LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Start the ARQ worker."""
    from storepulse.workers.arq_worker import WorkerSettings

    logger.info("Starting ARQ worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
