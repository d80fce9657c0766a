from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from ragfuse.app.retrieval.contracts import QueryBundle

LOGGER = logging.getLogger(__name__)

EventCallback = Callable[[dict[str, Any]], Awaitable[None] | None]


def emit_pipeline_telemetry(
    state: dict[str, Any],
    logger: logging.Logger | None = None,
) -> None:
    active_logger = logger or logging.getLogger(__name__)
    request_id = _request_id(state)
    variant_count = _variant_count(state.get("bundle"))
    document_count = _document_count(state.get("documents"))

    for event in _events(state.get("telemetry_events")):
        payload = {
            "request_id": request_id,
            "variant_count": variant_count,
            "document_count": document_count,
            **event,
        }
        active_logger.info("pipeline_event %s", json.dumps(payload, sort_keys=True))


class EventNotifier:
    """Fans pipeline events out to subscribers on background tasks.

    Subscriber failures are logged and dropped; publishing never waits on them.
    """

    def __init__(self, subscribers: list[EventCallback] | None = None) -> None:
        self._subscribers: list[EventCallback] = list(subscribers or [])
        self._pending: set[asyncio.Task[None]] = set()

    def subscribe(self, callback: EventCallback) -> None:
        self._subscribers.append(callback)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def publish(self, event: dict[str, Any]) -> None:
        for callback in self._subscribers:
            task = asyncio.create_task(self._deliver(callback, dict(event)))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def _deliver(self, callback: EventCallback, event: dict[str, Any]) -> None:
        try:
            result = callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning(
                "Event subscriber failed",
                extra={"event": event.get("event")},
                exc_info=exc,
            )


def _request_id(state: dict[str, Any]) -> str:
    request_id = state.get("request_id")
    if isinstance(request_id, str) and request_id.strip():
        return request_id
    return "unknown"


def _variant_count(bundle: Any) -> int:
    if isinstance(bundle, QueryBundle):
        return len(bundle.variants)
    return 0


def _document_count(value: Any) -> int:
    if isinstance(value, list):
        return len(value)
    return 0


def _events(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [event for event in value if isinstance(event, dict)]
