from __future__ import annotations

import logging
from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Mapping


_LOGGER = logging.getLogger("digpermit.activity")


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


@dataclass(frozen=True, slots=True)
class ActivityEvent:
    sequence: int
    timestamp: str
    operation: str
    permit_id: str
    revision: int
    payload: dict[str, Any]


@dataclass(frozen=True, slots=True)
class PermitSnapshot:
    sequence: int
    timestamp: str
    permit_id: str
    data: dict[str, Any]


class ActivityStream:
    """In-process feed of committed permit operations.

    Subscribers are called synchronously after each recorded event; a failing
    subscriber is logged and does not affect the others.
    """

    def __init__(self, *, max_events: int = 1000) -> None:
        self._sequence = 0
        self._max_events = max(1, int(max_events))
        self._events: list[ActivityEvent] = []
        self._snapshots: list[PermitSnapshot] = []
        self._subscribers: list[Callable[[ActivityEvent], None]] = []
        self._lock = RLock()

    def record(
        self,
        operation: str,
        *,
        permit_id: str,
        revision: int = 0,
        payload: Mapping[str, Any] | None = None,
    ) -> ActivityEvent:
        with self._lock:
            self._sequence += 1
            event = ActivityEvent(
                sequence=self._sequence,
                timestamp=_utc_iso_now(),
                operation=str(operation or "").strip() or "unknown",
                permit_id=str(permit_id or ""),
                revision=max(0, int(revision)),
                payload=deepcopy(dict(payload or {})),
            )
            self._events.append(event)
            if len(self._events) > self._max_events:
                del self._events[: len(self._events) - self._max_events]
            subscribers = tuple(self._subscribers)

        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception as exc:
                _LOGGER.warning(
                    "Activity subscriber failed for %s/%s: %s",
                    event.permit_id,
                    event.operation,
                    exc,
                )
        return event

    def snapshot(self, permit_id: str, data: Mapping[str, Any] | None = None) -> PermitSnapshot:
        with self._lock:
            snapshot = PermitSnapshot(
                sequence=self._sequence,
                timestamp=_utc_iso_now(),
                permit_id=str(permit_id or ""),
                data=deepcopy(dict(data or {})),
            )
            self._snapshots.append(snapshot)
            if len(self._snapshots) > self._max_events:
                del self._snapshots[: len(self._snapshots) - self._max_events]
            return snapshot

    def tail(self, *, limit: int = 100, permit_id: str = "") -> tuple[ActivityEvent, ...]:
        safe_limit = max(1, int(limit))
        with self._lock:
            events = [
                event for event in self._events if not permit_id or event.permit_id == permit_id
            ]
            return tuple(events[-safe_limit:])

    def snapshots(self, *, permit_id: str = "", limit: int = 20) -> tuple[PermitSnapshot, ...]:
        safe_limit = max(1, int(limit))
        with self._lock:
            rows = [
                snapshot
                for snapshot in self._snapshots
                if not permit_id or snapshot.permit_id == permit_id
            ]
            return tuple(rows[-safe_limit:])

    def subscribe(self, callback: Callable[[ActivityEvent], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._subscribers.remove(callback)
                except ValueError:
                    return

        return _unsubscribe
