"""Fire-and-forget analytics for guided look milestones.

Events are best effort: a failing sink is logged and never interrupts
the workflow turn that emitted it.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol


logger = logging.getLogger("guided-look")

SESSION_STARTED = "session_started"
FIELD_COMPLETED = "field_completed"
COST_SHOWN = "cost_shown"
CONFIRMED = "confirmed"
GENERATION_SUCCEEDED = "generation_succeeded"
GENERATION_FAILED = "generation_failed"
ITEM_SAVED = "item_saved"

EVENTS: tuple[str, ...] = (
    SESSION_STARTED,
    FIELD_COMPLETED,
    COST_SHOWN,
    CONFIRMED,
    GENERATION_SUCCEEDED,
    GENERATION_FAILED,
    ITEM_SAVED,
)


class AnalyticsSink(Protocol):
    async def track(self, event: str, properties: Mapping[str, Any]) -> None:
        ...


class LoggingAnalyticsSink:
    """Writes each event as a structured log line on the analytics logger."""

    def __init__(self, logger_name: str = "guided-look.analytics") -> None:
        self._logger = logging.getLogger(logger_name)

    async def track(self, event: str, properties: Mapping[str, Any]) -> None:
        self._logger.info("%s %s", event, dict(properties))


class RecordingAnalyticsSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def track(self, event: str, properties: Mapping[str, Any]) -> None:
        self.events.append((event, dict(properties)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


async def emit(sink: AnalyticsSink | None, event: str, **properties: Any) -> None:
    if sink is None:
        return
    try:
        await sink.track(event, properties)
    except Exception:
        logger.warning("Analytics sink failed for %s", event, exc_info=True)
