# node_deployer/run_node_sweeper.py
"""Run the node liveness sweep as its own process."""

import logging
import sys

from node_deployer.container import build_container
from node_deployer.node_manager.sweeper import NodeLivenessSweeper

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    container = build_container()
    sweeper = NodeLivenessSweeper(container.node_registry, poll_interval=container.settings.sweep_interval)

    try:
        sweeper.run_forever()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
