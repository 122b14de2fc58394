# node_deployer/core/worker.py
"""
Polling worker base.

A worker runs ``_cycle()`` every ``poll_interval`` seconds, either as the
main loop of a dedicated process (``run_forever``) or on a daemon thread
inside the API process (``start``/``stop``).
"""

import logging
import signal
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class PollingWorker:
    """Fixed-interval background loop with signal-driven shutdown."""

    name = "worker"

    def __init__(self, poll_interval: float):
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ============================================
    # PROCESS MODE
    # ============================================

    def run_forever(self, install_signal_handlers: bool = True) -> None:
        """Run the loop until a signal or ``stop()`` is received."""
        logger.info("=" * 80)
        logger.info(f"{self.name.upper()} STARTED")
        logger.info("=" * 80)
        logger.info(f"Poll interval: {self.poll_interval}s")

        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.poll_interval)

        logger.info(f"{self.name} stopped")

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, stopping...")
        self._stop_event.set()

    # ============================================
    # THREAD MODE
    # ============================================

    def start(self) -> None:
        """Run the loop on a daemon thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run_forever,
            kwargs={"install_signal_handlers": False},
            name=self.name,
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    # ============================================
    # CYCLE
    # ============================================

    def run_once(self) -> None:
        """Single cycle. Errors are logged, never propagated to the loop."""
        try:
            self._cycle()
        except Exception as e:
            logger.error(f"[{self.name}] Error in cycle: {e}", exc_info=True)

    def _cycle(self) -> None:
        raise NotImplementedError
