"""Periodic escalation sweep.

One background thread replaces per-case timers: every poll interval it
reclaims expired delivery leases, applies forced resend rules and checks
open cases for escalation.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from src.guardian_notify.escalation import EscalationController
from src.guardian_notify.queue import DeliveryQueue

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    reclaimed: int = 0
    forced_resends: int = 0
    escalated: int = 0


class EscalationScheduler:
    def __init__(
        self,
        controller: EscalationController,
        queue: DeliveryQueue,
        poll_interval: float = 30.0,
    ) -> None:
        self.controller = controller
        self.queue = queue
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.sweeps = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Run one pass. Each step is isolated so one failure does not skip the rest."""
        now = now or datetime.now(timezone.utc)
        result = SweepResult()
        try:
            result.reclaimed = len(self.queue.reclaim_expired_leases(now))
        except Exception:
            logger.exception("Lease reclaim failed")
        try:
            result.forced_resends = self.controller.apply_forced_resend_rules(now)
        except Exception:
            logger.exception("Forced resend sweep failed")
        try:
            result.escalated = len(self.controller.check_escalations(now))
        except Exception:
            logger.exception("Escalation check failed")
        self.sweeps += 1
        if result.reclaimed or result.forced_resends or result.escalated:
            logger.info(
                "Sweep: reclaimed=%d forced_resends=%d escalated=%d",
                result.reclaimed,
                result.forced_resends,
                result.escalated,
            )
        return result

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="gnotify-escalation")
        self._thread.start()
        logger.info("Escalation scheduler started (interval=%.1fs)", self.poll_interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Escalation scheduler stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.sweep()
            self._stop.wait(self.poll_interval)
