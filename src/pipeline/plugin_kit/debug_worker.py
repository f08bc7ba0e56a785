# src/pipeline/plugin_kit/debug_worker.py — v1
"""Debug stage worker for development, demos and tests.

Returns deterministic placeholder payloads without calling any service.
Failures can be scripted per stage, and every call is recorded.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Mapping

from geocopy.pipeline.plugin_kit.base_worker import BaseStageWorker, StageContext

logger = logging.getLogger(__name__)


class DebugStageWorker(BaseStageWorker):
    """Placeholder worker.

    Args:
        delay_s: Simulated latency per call.
        failures: stage -> exceptions raised by successive calls to that
            stage before it starts succeeding.
    """

    def __init__(
        self,
        delay_s: float = 0.0,
        failures: Mapping[str, Iterable[BaseException]] | None = None,
    ) -> None:
        self._delay_s = delay_s
        self._failures: dict[str, list[BaseException]] = {
            stage: list(errors) for stage, errors in (failures or {}).items()
        }
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def invoke(self, stage: str, context: StageContext) -> Any:
        self.calls.append(stage)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self._delay_s:
                await asyncio.sleep(self._delay_s)
            pending = self._failures.get(stage)
            if pending:
                raise pending.pop(0)
            return self._payload(stage, context)
        finally:
            self.in_flight -= 1

    @staticmethod
    def _payload(stage: str, context: StageContext) -> dict[str, Any]:
        request = context.request
        return {
            "stage": stage,
            "product_name": request.product_name,
            "language": request.language,
            "grounded": context.requires_grounding,
            "upstream": sorted(context.upstream),
            "text": f"[{stage}] {request.product_name}",
        }
