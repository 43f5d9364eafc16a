from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Deque, Dict, List, Optional

_logger = logging.getLogger("report_ai.telemetry")


@dataclass
class LifecycleEvent:
    """One transition of a field analysis (scheduled, superseded, succeeded...)."""

    name: str
    field_name: str
    session_id: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    at: str = field(default_factory=lambda: datetime.now(UTC).isoformat().replace("+00:00", "Z"))


# Rolling buffer of recent events for diagnostics (best-effort only)
_MAX_BUFFER = 200
_RECENT_EVENTS: Deque[LifecycleEvent] = deque(maxlen=_MAX_BUFFER)


def record_event(event: LifecycleEvent) -> None:
    _RECENT_EVENTS.append(event)
    try:
        _logger.info(
            "analysis_event",
            extra={
                "event_name": event.name,
                "field_name": event.field_name,
                "session_id": event.session_id,
                "event_properties": event.properties,
            },
        )
    except Exception:
        # Logging failures should not surface to callers
        pass


def list_recent_events(limit: int = 50, field_name: Optional[str] = None) -> List[LifecycleEvent]:
    if limit <= 0:
        return []
    events = [e for e in _RECENT_EVENTS if field_name is None or e.field_name == field_name]
    return events[-limit:]


def clear_events() -> None:
    _RECENT_EVENTS.clear()
