"""
Drift notification for KSIWatch.

Every STATUS_CHANGED, NEWLY_TRACKED and NO_LONGER_TRACKED drift entry is
turned into one DriftEvent and delivered to the configured notifiers.

Delivery is at-least-once: a failed delivery is retried a bounded number
of times, then parked in an outbox. Each later dispatch tries every parked
delivery once more, without backoff. The outbox is bounded; when full, the
oldest parked delivery is dropped and logged.
Consumers deduplicate on ``DriftEvent.idempotency_key``.
"""

import logging
import threading
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import httpx
from pydantic import BaseModel, ConfigDict

from .models import AggregatedSnapshot, DriftEntry, DriftKind, KSIStatus
from .utils.logging_security import sanitize_error_message_for_log, sanitize_id_for_log

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTBOX = 1000

NOTIFIED_KINDS = (DriftKind.STATUS_CHANGED, DriftKind.NEWLY_TRACKED, DriftKind.NO_LONGER_TRACKED)


class AlertSeverity(str, Enum):
    """Alert severity levels."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


def _severity_for(entry: DriftEntry) -> AlertSeverity:
    if entry.to_status == KSIStatus.FALSE:
        return AlertSeverity.HIGH
    if entry.kind == DriftKind.NO_LONGER_TRACKED:
        return AlertSeverity.MEDIUM
    if entry.to_status in (KSIStatus.PARTIAL, KSIStatus.UNKNOWN):
        return AlertSeverity.MEDIUM if entry.kind == DriftKind.STATUS_CHANGED else AlertSeverity.LOW
    return AlertSeverity.INFO


class DriftEvent(BaseModel):
    """One drift notification."""

    model_config = ConfigDict(frozen=True)

    kind: DriftKind
    control_id: str
    from_status: Optional[KSIStatus] = None
    to_status: Optional[KSIStatus] = None
    run_id: str
    sequence: int
    occurred_at: datetime
    severity: AlertSeverity = AlertSeverity.INFO

    @property
    def idempotency_key(self) -> str:
        """(control_id, from_status, to_status, run_id) joined into one key."""
        before = self.from_status.value if self.from_status else "-"
        after = self.to_status.value if self.to_status else "-"
        return f"{self.control_id}:{before}:{after}:{self.run_id}"

    @classmethod
    def from_snapshot(cls, snapshot: AggregatedSnapshot) -> List["DriftEvent"]:
        return [
            cls(
                kind=entry.kind,
                control_id=entry.control_id,
                from_status=entry.from_status,
                to_status=entry.to_status,
                run_id=snapshot.run_id,
                sequence=snapshot.sequence,
                occurred_at=snapshot.created_at,
                severity=_severity_for(entry),
            )
            for entry in snapshot.drift
            if entry.kind in NOTIFIED_KINDS
        ]


class DriftNotifier(Protocol):
    """External alerting collaborator."""

    def notify(self, event: DriftEvent) -> None: ...


class LoggingNotifier:
    """Writes drift events to the application log."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def notify(self, event: DriftEvent) -> None:
        self.log.info(
            "Drift %s on %s: %s -> %s (run %s, severity %s)",
            event.kind.value,
            sanitize_id_for_log(event.control_id),
            event.from_status.value if event.from_status else "-",
            event.to_status.value if event.to_status else "-",
            event.run_id,
            event.severity.value,
        )


class MemoryNotifier:
    """Collects events in memory, ignoring redeliveries of the same key."""

    def __init__(self):
        self._lock = threading.Lock()
        self._events: Dict[str, DriftEvent] = {}

    def notify(self, event: DriftEvent) -> None:
        with self._lock:
            self._events.setdefault(event.idempotency_key, event)

    @property
    def events(self) -> List[DriftEvent]:
        with self._lock:
            return list(self._events.values())

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class WebhookNotifier:
    """
    POSTs each drift event as JSON to a webhook.

    The idempotency key travels in the ``Idempotency-Key`` header so the
    receiver can discard redeliveries.
    """

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.url = url
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))

    def notify(self, event: DriftEvent) -> None:
        response = self._client.post(
            self.url,
            json=event.model_dump(mode="json"),
            headers={"Idempotency-Key": event.idempotency_key},
        )
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


class NotificationDispatcher:
    """Delivers drift events to every notifier with bounded retries and an outbox."""

    def __init__(
        self,
        notifiers: Sequence[DriftNotifier],
        *,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        max_outbox: int = DEFAULT_MAX_OUTBOX,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.notifiers = list(notifiers)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_outbox = max_outbox
        self._sleep = sleep
        self._lock = threading.Lock()
        self._outbox: List[Tuple[DriftEvent, DriftNotifier]] = []

    @property
    def pending(self) -> List[DriftEvent]:
        with self._lock:
            return [event for event, _ in self._outbox]

    def dispatch(self, events: Iterable[DriftEvent]) -> int:
        """
        Deliver events (after retrying anything left in the outbox).

        Returns:
            Number of successful deliveries
        """
        delivered = self.flush()
        for event in events:
            for notifier in self.notifiers:
                if self._deliver(notifier, event, self.max_retries):
                    delivered += 1
                else:
                    self._park(event, notifier)
        return delivered

    def flush(self) -> int:
        """Try each delivery parked in the outbox once."""
        with self._lock:
            parked, self._outbox = self._outbox, []
        delivered = 0
        for event, notifier in parked:
            if self._deliver(notifier, event, 0):
                delivered += 1
            else:
                self._park(event, notifier)
        return delivered

    def _park(self, event: DriftEvent, notifier: DriftNotifier) -> None:
        with self._lock:
            self._outbox.append((event, notifier))
            overflow = max(len(self._outbox) - self.max_outbox, 0)
            dropped = self._outbox[:overflow]
            del self._outbox[:overflow]
        for lost, _ in dropped:
            logger.error("Drift notification outbox full, dropped %s", lost.idempotency_key)

    def _deliver(self, notifier: DriftNotifier, event: DriftEvent, retries: int) -> bool:
        for attempt in range(retries + 1):
            try:
                notifier.notify(event)
                return True
            except Exception as e:
                logger.warning(
                    "Drift notification %s via %s failed (attempt %d/%d): %s",
                    event.idempotency_key,
                    type(notifier).__name__,
                    attempt + 1,
                    retries + 1,
                    sanitize_error_message_for_log(str(e)),
                )
                if attempt < retries:
                    self._sleep(self.retry_delay * (2**attempt))
        logger.error("Drift notification %s parked for redelivery", event.idempotency_key)
        return False
