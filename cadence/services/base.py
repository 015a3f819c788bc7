"""Interfaces of the external collaborators the engine calls.

The surrounding application implements these (``cadence.services.http``
ships httpx clients).  Every mutating call receives an idempotency key; the
engine guarantees at-least-once delivery, so implementations must treat a
repeated key as a no-op.

Failures must be raised as ``TransientServiceError`` (retry may help) or
``PermanentServiceError`` (it will not).  Anything else is treated as
permanent by the executor.
"""

from datetime import datetime
from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class TaskService(Protocol):
    async def create(self, fields: dict[str, Any], idempotency_key: str) -> str:
        """Create a task and return its id."""
        ...


@runtime_checkable
class EmailService(Protocol):
    async def send(self, to: str, subject: str, body: str, idempotency_key: str) -> None:
        ...


@runtime_checkable
class EntityService(Protocol):
    async def get(self, entity_type: str, entity_id: str) -> dict[str, Any]:
        """Current field values of a domain record (used for templates)."""
        ...

    async def update_field(
        self,
        entity_type: str,
        entity_id: str,
        field: str,
        value: Any,
        idempotency_key: str,
    ) -> None:
        ...

    async def find_due(
        self, entity_type: str, date_field: str, due_before: datetime
    ) -> list[dict[str, Any]]:
        """Records whose *date_field* is at or before *due_before*.

        Each item must carry ``id`` and the date value under *date_field*.
        """
        ...


@runtime_checkable
class InteractionService(Protocol):
    async def log(self, fields: dict[str, Any], idempotency_key: str) -> Optional[str]:
        ...


class Collaborators:
    """The set of services one engine talks to."""

    def __init__(
        self,
        tasks: TaskService,
        email: EmailService,
        entities: EntityService,
        interactions: InteractionService,
    ) -> None:
        self.tasks = tasks
        self.email = email
        self.entities = entities
        self.interactions = interactions
