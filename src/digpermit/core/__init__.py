from __future__ import annotations

from digpermit.core.event_stream import ActivityEvent, ActivityStream, PermitSnapshot

__all__ = [
    "ActivityEvent",
    "ActivityStream",
    "PermitSnapshot",
]
