"""cadence.triggers — event bus, trigger matching and the date sweep."""

from .date_sweep import DateSweep, sweep_event_id
from .event_bus import PAYLOAD_SCHEMAS, EventBus
from .matcher import ScoreTracker, TriggerMatcher

__all__ = [
    "EventBus",
    "PAYLOAD_SCHEMAS",
    "TriggerMatcher",
    "ScoreTracker",
    "DateSweep",
    "sweep_event_id",
]
