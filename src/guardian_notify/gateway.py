"""Channel gateway contract and a simulated gateway.

Real provider integrations live outside this package. The gateway is the
only blocking external call on the delivery path.
"""

import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional, Protocol, Tuple

from src.guardian_notify.config import AttemptOutcome, DeliveryChannel, FailureReason

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    """Result of a single gateway call."""

    channel: DeliveryChannel
    outcome: AttemptOutcome
    reason: Optional[FailureReason] = None
    error: Optional[str] = None
    confirmed: bool = True
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return self.outcome == AttemptOutcome.SUCCESS

    @classmethod
    def ok(cls, channel: DeliveryChannel, confirmed: bool = True) -> "DeliveryResult":
        return cls(channel=channel, outcome=AttemptOutcome.SUCCESS, confirmed=confirmed)

    @classmethod
    def failed(
        cls,
        channel: DeliveryChannel,
        reason: FailureReason = FailureReason.PROVIDER_ERROR,
        error: Optional[str] = None,
    ) -> "DeliveryResult":
        return cls(
            channel=channel,
            outcome=AttemptOutcome.FAILURE,
            reason=reason,
            error=error or reason.value,
        )

    @classmethod
    def unavailable(cls, channel: DeliveryChannel, error: Optional[str] = None) -> "DeliveryResult":
        return cls(
            channel=channel,
            outcome=AttemptOutcome.NO_CHANNEL,
            reason=FailureReason.CHANNEL_UNAVAILABLE,
            error=error or "channel unavailable",
        )


class ChannelGateway(Protocol):
    def send(self, recipient_id: str, channel: DeliveryChannel, body: str) -> DeliveryResult:
        ...


class SimulatedGateway:
    """In-process gateway that succeeds unless told otherwise.

    Outcomes can be scripted per channel, optionally per recipient. Scripted
    outcomes are consumed in order; once exhausted the gateway falls back to
    success. Every call is recorded in the delivery log.
    """

    def __init__(self, delay_seconds: float = 0.0) -> None:
        self.delay_seconds = delay_seconds
        self._scripts: Dict[Tuple[Optional[str], DeliveryChannel], Deque[DeliveryResult]] = defaultdict(deque)
        self._delivery_log: List[Tuple[str, DeliveryResult]] = []
        self._lock = threading.Lock()

    def script(
        self,
        channel: DeliveryChannel,
        *results: DeliveryResult,
        recipient_id: Optional[str] = None,
    ) -> None:
        with self._lock:
            self._scripts[(recipient_id, channel)].extend(results)

    def fail(
        self,
        channel: DeliveryChannel,
        times: int = 1,
        reason: FailureReason = FailureReason.PROVIDER_ERROR,
        recipient_id: Optional[str] = None,
    ) -> None:
        self.script(
            channel,
            *[DeliveryResult.failed(channel, reason) for _ in range(times)],
            recipient_id=recipient_id,
        )

    def send(self, recipient_id: str, channel: DeliveryChannel, body: str) -> DeliveryResult:
        if self.delay_seconds:
            threading.Event().wait(self.delay_seconds)
        with self._lock:
            result = None
            for key in ((recipient_id, channel), (None, channel)):
                queue = self._scripts.get(key)
                if queue:
                    result = queue.popleft()
                    break
            if result is None:
                result = DeliveryResult.ok(channel)
            self._delivery_log.append((recipient_id, result))
        logger.debug(
            "Simulated %s delivery to %s: %s", channel.value, recipient_id, result.outcome.value
        )
        return result

    def get_delivery_log(self, recipient_id: Optional[str] = None) -> List[DeliveryResult]:
        with self._lock:
            return [r for rid, r in self._delivery_log if recipient_id is None or rid == recipient_id]

    def get_channel_stats(self) -> Dict[str, int]:
        stats: Dict[str, int] = {}
        for result in self.get_delivery_log():
            key = result.channel.value
            stats[key] = stats.get(key, 0) + 1
        return stats
