"""DateSweep — turns due entity dates into synthetic date_based events.

date_based triggers have no upstream publisher, so on every tick the sweep
asks the entity service which records have a date at or before
``now - offset_days`` and emits one event per record.  Event ids are derived
from the record and the date value, which makes the trigger-claim guard
suppress repeat firings on later sweeps.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Iterable, Optional

from cadence.exceptions import ServiceError
from cadence.services.base import EntityService
from cadence.types import DateBasedConfig, Event, TriggerType, Workflow, utcnow

logger = logging.getLogger(__name__)

_EVENT_NAMESPACE = uuid.UUID("6b1f4c2e-9a57-4d0b-8f3e-2c7d5a9e1b40")


def sweep_event_id(
    entity_type: str,
    entity_id: str,
    date_field: str,
    date_value: str,
    offset_days: int = 0,
) -> str:
    """Deterministic event id for one (entity, date field, date value)."""
    key = f"{entity_type}:{entity_id}:{date_field}:{date_value}"
    if offset_days:
        key = f"{key}:+{offset_days}d"
    return str(uuid.uuid5(_EVENT_NAMESPACE, key))


class DateSweep:
    """Scans for due dates on behalf of active date_based workflows."""

    def __init__(self, entities: EntityService) -> None:
        self._entities = entities

    async def sweep(
        self, workflows: Iterable[Workflow], now: Optional[datetime] = None
    ) -> list[Event]:
        """Return synthetic events for every entity due under *workflows*.

        Workflows sharing (entity_type, date_field, offset_days) are served by a
        single service query.  A failing query is logged and skipped so the
        remaining groups still fire.
        """
        now = now or utcnow()
        groups: dict[tuple[str, str, int], int] = {}
        for wf in workflows:
            if not wf.active or TriggerType(wf.trigger_type) != TriggerType.DATE_BASED:
                continue
            cfg: DateBasedConfig = wf.trigger_config
            key = (cfg.entity_type, cfg.date_field, cfg.offset_days)
            groups[key] = groups.get(key, 0) + 1

        events: list[Event] = []
        for (entity_type, date_field, offset_days), count in groups.items():
            due_before = now - timedelta(days=offset_days)
            try:
                records = await self._entities.find_due(entity_type, date_field, due_before)
            except ServiceError as exc:
                logger.warning(
                    "[DateSweep] find_due(%s, %s) failed: %s", entity_type, date_field, exc
                )
                continue

            for record in records or []:
                entity_id = record.get("id") or record.get("entity_id")
                date_value = record.get(date_field)
                if entity_id is None or date_value is None:
                    logger.warning(
                        "[DateSweep] skipping %s record without id or %r: %r",
                        entity_type, date_field, record,
                    )
                    continue
                date_value = date_value.isoformat() if hasattr(date_value, "isoformat") else str(date_value)
                payload = {
                    **record,
                    "date_field": date_field,
                    "date_value": date_value,
                    "offset_days": offset_days,
                }
                events.append(Event(
                    id=sweep_event_id(entity_type, str(entity_id), date_field, date_value, offset_days),
                    category=TriggerType.DATE_BASED,
                    entity_type=entity_type,
                    entity_id=str(entity_id),
                    payload=payload,
                    occurred_at=now,
                ))
            logger.debug(
                "[DateSweep] %s.%s (+%dd) for %d workflow(s): %d due",
                entity_type, date_field, offset_days, count, len(records or []),
            )
        return events
