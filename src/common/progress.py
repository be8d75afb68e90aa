"""
Progress events for bulk operations.

The batch runner emits a ProgressEvent at every per-item state change.
Consumers subscribe through a ProgressChannel; ProgressTracker is the
stock subscriber that merges events into per-item state (what the UI
shows as finding/found/error chips and the final counts).

Usage:
    channel = ProgressChannel()
    tracker = ProgressTracker()
    channel.subscribe(tracker)
    await runner.run(items, operation, on_progress=channel, phase=ProgressPhase.FINDING)
    tracker.counts(ProgressPhase.FINDING)  # {"pending": 0, "success": 4, "error": 1, ...}
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ProgressPhase(str, Enum):
    """Which bulk step an event belongs to."""
    FINDING = "finding"
    ANALYZING = "analyzing"
    BLOG_ANALYSIS = "blog_analysis"


class ProgressStatus(str, Enum):
    """Per-item status. The batch runner only emits PENDING, SUCCESS and ERROR."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({ProgressStatus.SUCCESS, ProgressStatus.ERROR, ProgressStatus.SKIPPED})


@dataclass(frozen=True)
class ProgressEvent:
    """A single per-item status notification."""
    item_id: str
    phase: ProgressPhase
    status: ProgressStatus
    message: Optional[str] = None
    cost_usd: Optional[float] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        data = {
            "item_id": self.item_id,
            "phase": self.phase.value,
            "status": self.status.value,
            "message": self.message,
            "cost_usd": self.cost_usd,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
        }
        return {k: v for k, v in data.items() if v is not None}


ProgressCallback = Callable[[ProgressEvent], None]


def emit_progress(
    callback: Optional[ProgressCallback],
    event: ProgressEvent,
    log: Optional[logging.Logger] = None,
) -> None:
    """Deliver an event to a callback; callback errors are logged, never raised."""
    if callback is None:
        return
    try:
        callback(event)
    except Exception as e:
        (log or logger).warning(f"Progress callback error for {event.item_id}: {e}")


class ProgressChannel:
    """
    Observer that fans progress events out to subscribers.

    Instances are callable, so a channel can be passed anywhere a
    ProgressCallback is expected. A failing subscriber does not stop
    delivery to the others.
    """

    def __init__(self):
        self._subscribers: List[ProgressCallback] = []

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Add a subscriber. Returns a function that removes it again."""
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: ProgressCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def __call__(self, event: ProgressEvent) -> None:
        for subscriber in list(self._subscribers):
            emit_progress(subscriber, event)


@dataclass
class ItemProgress:
    """Latest known state of one item in one phase."""
    status: ProgressStatus
    message: Optional[str] = None
    cost_usd: Optional[float] = None


class ProgressTracker:
    """
    Subscriber that keeps the latest status per (item, phase).

    Handlers run to completion on the event loop, so no locking is needed
    even though events from concurrent items interleave.
    """

    def __init__(self):
        self._state: Dict[Tuple[str, ProgressPhase], ItemProgress] = {}
        self._history: Dict[str, List[ProgressEvent]] = {}

    def __call__(self, event: ProgressEvent) -> None:
        self._state[(event.item_id, event.phase)] = ItemProgress(
            status=event.status,
            message=event.message,
            cost_usd=event.cost_usd,
        )
        self._history.setdefault(event.item_id, []).append(event)

    def status_of(self, item_id: str, phase: ProgressPhase) -> Optional[ProgressStatus]:
        entry = self._state.get((item_id, phase))
        return entry.status if entry else None

    def message_of(self, item_id: str, phase: ProgressPhase) -> Optional[str]:
        entry = self._state.get((item_id, phase))
        return entry.message if entry else None

    def history(self, item_id: str) -> List[ProgressEvent]:
        """All events seen for an item, in arrival order."""
        return list(self._history.get(item_id, []))

    def counts(self, phase: ProgressPhase) -> Dict[str, int]:
        """Count items by latest status for one phase."""
        counts = {status.value: 0 for status in ProgressStatus}
        for (_, entry_phase), entry in self._state.items():
            if entry_phase == phase:
                counts[entry.status.value] += 1
        return counts

    def completed(self, phase: ProgressPhase) -> int:
        """Number of items that reached a terminal status in a phase."""
        return sum(
            1
            for (_, entry_phase), entry in self._state.items()
            if entry_phase == phase and entry.status in TERMINAL_STATUSES
        )

    def percent_complete(self, phase: ProgressPhase, total: int) -> float:
        """Percentage of `total` items finished in a phase (0-100)."""
        if total <= 0:
            return 100.0
        return min(100.0, self.completed(phase) / total * 100)

    def total_cost(self) -> float:
        """Sum of costs reported on terminal events."""
        return sum(entry.cost_usd or 0.0 for entry in self._state.values())
