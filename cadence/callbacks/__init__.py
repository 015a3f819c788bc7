"""Callback/hook system for CADENCE run lifecycle events."""

from cadence.callbacks.base import BaseCallback, EngineCallback
from cadence.callbacks.logging import LoggingCallback

__all__ = ["EngineCallback", "BaseCallback", "LoggingCallback"]
