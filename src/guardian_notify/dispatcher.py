"""Dispatch workers.

Workers lease items from the shared delivery queue and call the channel
gateway with a bounded timeout. A timeout is a retryable failure, never a
silent drop. Each gateway call runs on its own daemon thread, so a call that
never returns is abandoned without holding up later deliveries; abandoned
calls are tracked and reported while they stay hung.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.guardian_notify.config import FailureReason
from src.guardian_notify.exceptions import ChannelUnavailable, ConcurrencyConflict, GatewayFailure
from src.guardian_notify.gateway import ChannelGateway, DeliveryResult
from src.guardian_notify.models import Lease, QueuedNotification
from src.guardian_notify.queue import DeliveryQueue

logger = logging.getLogger(__name__)


class DeliveryDispatcher:
    """Pool of workers draining the delivery queue through one gateway."""

    def __init__(
        self,
        queue: DeliveryQueue,
        gateway: ChannelGateway,
        worker_count: int = 2,
        poll_interval: float = 0.5,
        gateway_timeout: Optional[float] = None,
        max_hung_calls: Optional[int] = None,
    ) -> None:
        self.queue = queue
        self.gateway = gateway
        self.worker_count = max(1, worker_count)
        self.poll_interval = poll_interval
        self.gateway_timeout = (
            gateway_timeout if gateway_timeout is not None else queue.config.gateway_timeout_seconds
        )
        self.max_hung_calls = max_hung_calls if max_hung_calls is not None else self.worker_count * 2
        self._hung: List[threading.Thread] = []
        self._hung_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    @property
    def hung_calls(self) -> int:
        """Abandoned gateway calls that have still not returned."""
        with self._hung_lock:
            self._hung = [t for t in self._hung if t.is_alive()]
            return len(self._hung)

    def _abandon(self, call: threading.Thread) -> int:
        with self._hung_lock:
            self._hung = [t for t in self._hung if t.is_alive()]
            self._hung.append(call)
            hung = len(self._hung)
        if hung >= self.max_hung_calls:
            logger.error(
                "%d gateway calls are hung (limit %d); the gateway looks unresponsive",
                hung,
                self.max_hung_calls,
            )
        return hung

    def _call_gateway(self, item: QueuedNotification, lease: Lease) -> DeliveryResult:
        outcome: Dict[str, Any] = {}

        def send() -> None:
            try:
                outcome["result"] = self.gateway.send(item.recipient_id, lease.channel, item.body)
            except Exception as exc:
                outcome["error"] = exc

        call = threading.Thread(
            target=send, daemon=True, name="gnotify-gateway-%s" % item.notification_id[:8]
        )
        call.start()
        call.join(self.gateway_timeout)
        if call.is_alive():
            hung = self._abandon(call)
            logger.warning(
                "Gateway call for %s via %s timed out after %.1fs (%d hung)",
                item.notification_id,
                lease.channel.value,
                self.gateway_timeout,
                hung,
                extra={"notification_id": item.notification_id, "channel": lease.channel.value},
            )
            return DeliveryResult.failed(
                lease.channel,
                FailureReason.TIMEOUT,
                "gateway timed out after %.1fs" % self.gateway_timeout,
            )

        exc = outcome.get("error")
        if exc is None:
            return outcome["result"]
        if isinstance(exc, ChannelUnavailable):
            return DeliveryResult.unavailable(lease.channel, exc.message)
        if isinstance(exc, GatewayFailure):
            return DeliveryResult.failed(lease.channel, exc.reason, exc.message)
        logger.error("Gateway raised for %s", item.notification_id, exc_info=exc)
        return DeliveryResult.failed(lease.channel, FailureReason.UNKNOWN, str(exc))

    def dispatch_one(
        self, worker_id: str = "inline", now: Optional[datetime] = None
    ) -> Optional[QueuedNotification]:
        """Lease, send and complete the next ready item, if any."""
        lease = self.queue.lease(worker_id, now)
        if lease is None:
            return None
        item = self.queue.get(lease.notification_id)
        result = self._call_gateway(item, lease)
        try:
            return self.queue.complete(lease, result, now)
        except ConcurrencyConflict:
            logger.warning(
                "Result for %s arrived after its lease was reclaimed; attempt already counted",
                lease.notification_id,
            )
            return item

    def drain(self, now: Optional[datetime] = None, limit: int = 10_000) -> int:
        """Dispatch until nothing is ready at ``now``. Returns items processed."""
        processed = 0
        while processed < limit:
            if self.dispatch_one("drain", now) is None:
                break
            processed += 1
        if processed:
            logger.info("Processed %d deliveries", processed)
        return processed

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._run, args=("worker-%d" % i,), daemon=True, name="gnotify-worker-%d" % i
            )
            for i in range(self.worker_count)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Started %d dispatch workers", self.worker_count)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Dispatch workers stopped")

    def close(self) -> None:
        self.stop()
        hung = self.hung_calls
        if hung:
            logger.warning("Closing with %d gateway calls still hung", hung)

    def _run(self, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                item = self.dispatch_one(worker_id)
            except Exception:
                logger.exception("Dispatch worker %s failed", worker_id)
                item = None
            if item is None:
                self._stop.wait(self.poll_interval)
