# node_deployer/run_collector.py
"""Run the metrics collector as its own process."""

import logging
import sys

from node_deployer.collector.collector import CollectorWorker
from node_deployer.container import build_container

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    container = build_container()
    settings = container.settings
    worker = CollectorWorker(
        container.collector,
        cluster_interval=settings.cluster_poll_interval,
        deployment_interval=settings.deployment_poll_interval,
    )

    try:
        worker.run_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
