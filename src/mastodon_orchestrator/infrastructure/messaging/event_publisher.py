"""Event publisher implementations."""

from __future__ import annotations

from typing import Any

import structlog

from mastodon_orchestrator.domain.ports.services import EventPublisher


logger = structlog.get_logger(__name__)


class InMemoryEventPublisher(EventPublisher):
    """In-memory event publisher for development/testing."""

    def __init__(self) -> None:
        self._events: list[tuple[str, dict[str, Any]]] = []
        self._handlers: dict[str, list[Any]] = {}

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        self._events.append((event_type, payload))
        logger.debug("event_published", event_type=event_type, payload_keys=list(payload.keys()))

        for handler in self._handlers.get(event_type, []):
            await handler(payload)

    async def publish_batch(self, events: list[tuple[str, dict[str, Any]]]) -> None:
        for event_type, payload in events:
            await self.publish(event_type, payload)

    def subscribe(self, event_type: str, handler: Any) -> None:
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)

    @property
    def published_events(self) -> list[tuple[str, dict[str, Any]]]:
        return list(self._events)

    def event_types(self) -> list[str]:
        return [event_type for event_type, _ in self._events]

    def clear(self) -> None:
        self._events.clear()


class LoggingEventPublisher(EventPublisher):
    """Writes each domain event to the structured log as a progress line."""

    _SKIPPED = frozenset({"event_id", "event_type", "occurred_at", "metadata"})

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        fields = {k: v for k, v in payload.items() if k not in self._SKIPPED}
        if event_type in {"stage.failed", "plan.aborted"}:
            logger.warning(event_type, **fields)
        else:
            logger.info(event_type, **fields)

    async def publish_batch(self, events: list[tuple[str, dict[str, Any]]]) -> None:
        for event_type, payload in events:
            await self.publish(event_type, payload)
