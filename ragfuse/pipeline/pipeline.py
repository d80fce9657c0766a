from __future__ import annotations

import logging
from collections.abc import Sequence
from uuid import uuid4

from ragfuse.app.llm.providers import ChatMessage
from ragfuse.app.retrieval.contracts import RetrievedDocument
from ragfuse.core.config import PipelineConfig
from ragfuse.core.errors import RagFuseError

from .stages import Stage
from .state import PipelineState, apply_update, create_initial_state
from .telemetry import EventNotifier, emit_pipeline_telemetry

LOGGER = logging.getLogger(__name__)


class RetrievalPipeline:
    """Runs named stages in order over one state dict owned by the run."""

    def __init__(
        self,
        stages: Sequence[tuple[str, Stage]],
        config: PipelineConfig | None = None,
        *,
        notifier: EventNotifier | None = None,
    ) -> None:
        self._stages = list(stages)
        self._config = config or PipelineConfig()
        self._notifier = notifier

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def stage_names(self) -> list[str]:
        return [name for name, _ in self._stages]

    async def run(
        self,
        query: str,
        *,
        top_k: int | None = None,
        history: Sequence[ChatMessage] = (),
        request_id: str | None = None,
    ) -> PipelineState:
        state = create_initial_state(
            query,
            request_id=request_id or str(uuid4()),
            top_k=top_k if top_k and top_k > 0 else self._config.top_k,
            history=list(history),
        )
        for name, stage in self._stages:
            try:
                update = await stage(state)
            except RagFuseError as exc:
                apply_update(
                    state,
                    {
                        "errors": [f"{name}: {exc}"],
                        "telemetry_events": [
                            {
                                "event": "pipeline_failed",
                                "stage": name,
                                "error": exc.__class__.__name__,
                            }
                        ],
                    },
                )
                self._publish(state, start=len(state["telemetry_events"]) - 1)
                emit_pipeline_telemetry(state, LOGGER)
                raise
            published_from = len(state.get("telemetry_events", []))
            apply_update(state, update)
            self._publish(state, start=published_from)

        emit_pipeline_telemetry(state, LOGGER)
        return state

    async def retrieve(self, query: str, top_k: int) -> list[RetrievedDocument]:
        state = await self.run(query, top_k=top_k)
        return state.get("documents", [])

    def _publish(self, state: PipelineState, start: int) -> None:
        if self._notifier is None:
            return
        for event in state.get("telemetry_events", [])[start:]:
            self._notifier.publish(
                {"request_id": state.get("request_id", "unknown"), **event}
            )
