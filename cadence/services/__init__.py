"""cadence.services — interfaces and clients for external collaborators."""

from .base import Collaborators, EmailService, EntityService, InteractionService, TaskService
from .http import build_http_collaborators

__all__ = [
    "Collaborators",
    "TaskService",
    "EmailService",
    "EntityService",
    "InteractionService",
    "build_http_collaborators",
]
