#!/usr/bin/env python3
"""Start an ARQ delivery worker for one platform.

USAGE:
    python -m conversion_relay.workers.start_arq_worker meta
    python -m conversion_relay.workers.start_arq_worker google

    Or directly:
    arq conversion_relay.workers.arq_worker.MetaCapiWorkerSettings
"""

import argparse
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)

WORKER_SETTINGS = {
    "meta": "MetaCapiWorkerSettings",
    "google": "GoogleAdsWorkerSettings",
}


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a conversion delivery worker.")
    parser.add_argument("platform", choices=sorted(WORKER_SETTINGS), help="Platform queue to consume")
    return parser.parse_args(argv)


def main(argv=None):
    """Start the ARQ worker for the requested platform."""
    args = parse_args(argv)

    from arq import run_worker
    from conversion_relay.workers import arq_worker

    settings = getattr(arq_worker, WORKER_SETTINGS[args.platform])
    logger.info("Starting %s delivery worker on %s...", args.platform, settings.queue_name)
    run_worker(settings)


if __name__ == "__main__":
    main()
