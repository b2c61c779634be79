"""Achievement events and the publishers that receive them after commit."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .models import CrownType


class AchievementEventKind(str, Enum):
    EARNED = "earned"
    LOST = "lost"


@dataclass(frozen=True, slots=True)
class AchievementEvent:
    kind: AchievementEventKind
    user_id: str
    segment_id: str
    crown_type: CrownType
    effort_id: Optional[str]
    occurred_at: datetime
    dethroned_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "user_id": self.user_id,
            "segment_id": self.segment_id,
            "crown_type": self.crown_type.value,
            "effort_id": self.effort_id,
            "occurred_at": self.occurred_at.isoformat(),
            "dethroned_by": self.dethroned_by,
        }


EventPublisher = Callable[[Sequence[AchievementEvent]], None]

_log = logging.getLogger(__name__)


def log_publisher(events: Sequence[AchievementEvent]) -> None:
    """Default publisher: write each event to the log."""

    for event in events:
        if event.kind is AchievementEventKind.LOST:
            _log.info(
                "User %s lost %s on segment %s to %s",
                event.user_id,
                event.crown_type.value,
                event.segment_id,
                event.dethroned_by,
            )
        else:
            _log.info(
                "User %s earned %s on segment %s (effort %s)",
                event.user_id,
                event.crown_type.value,
                event.segment_id,
                event.effort_id,
            )


class CollectingPublisher:
    """Publisher that keeps every event in memory (tests, CLI summaries)."""

    def __init__(self) -> None:
        self._events: List[AchievementEvent] = []
        self._lock = threading.Lock()

    def __call__(self, events: Sequence[AchievementEvent]) -> None:
        with self._lock:
            self._events.extend(events)

    @property
    def events(self) -> List[AchievementEvent]:
        with self._lock:
            return list(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


def publish_safely(publisher: EventPublisher, events: Sequence[AchievementEvent]) -> None:
    """Deliver committed events; a failing publisher never undoes the commit."""

    if not events:
        return
    try:
        publisher(list(events))
    except Exception:  # noqa: BLE001
        _log.exception("Achievement event publisher failed for %d events", len(events))


__all__ = [
    "AchievementEvent",
    "AchievementEventKind",
    "CollectingPublisher",
    "EventPublisher",
    "log_publisher",
    "publish_safely",
]
