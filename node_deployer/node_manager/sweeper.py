"""Background liveness sweep for registered nodes."""

import logging

from node_deployer.core.worker import PollingWorker
from node_deployer.node_manager.service import NodeRegistry

logger = logging.getLogger(__name__)


class NodeLivenessSweeper(PollingWorker):
    """Flips nodes without a recent heartbeat to offline on a fixed interval."""

    name = "node-liveness-sweeper"

    def __init__(self, registry: NodeRegistry, poll_interval: float = 15.0):
        super().__init__(poll_interval)
        self._registry = registry

    def _cycle(self) -> None:
        flipped = self._registry.sweep()
        if flipped:
            logger.info(f"[sweeper] {len(flipped)} node(s) marked offline")
        else:
            logger.debug("[sweeper] all nodes within liveness window")
