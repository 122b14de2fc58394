# node_deployer/run_orchestrator.py
"""
Run interrupted-operation recovery as its own process.

Rollouts themselves run inside the API process. This worker only resolves
deployments whose operation lease expired (e.g. after an API crash).
"""

import logging
import sys

from node_deployer.container import build_container
from node_deployer.orchestrator.deployment_orchestrator import OrchestratorWorker

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    container = build_container()
    worker = OrchestratorWorker(container.orchestrator, poll_interval=container.settings.recovery_interval)

    try:
        worker.run_forever()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        container.orchestrator.shutdown()


if __name__ == "__main__":
    main()
