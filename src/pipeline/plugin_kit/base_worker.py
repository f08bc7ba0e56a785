# src/pipeline/plugin_kit/base_worker.py — v1
"""Standard stage-worker interface.

A worker produces the payload of one stage. It is an external
collaborator: it may call generation or retrieval services and may
raise; the orchestrator classifies and retries failures.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from geocopy.core.models import GenerationRequest
from geocopy.pipeline.stage_graph import StageSpec


@dataclass(frozen=True)
class StageContext:
    """Everything a worker may read when producing one stage."""

    request: GenerationRequest
    fingerprint: str
    spec: StageSpec
    upstream: dict[str, Any] = field(default_factory=dict)
    requires_grounding: bool = False
    attempt: int = 1

    @property
    def stage(self) -> str:
        return self.spec.stage


class BaseStageWorker(ABC):
    """Interface for anything that can produce stage payloads."""

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    async def invoke(self, stage: str, context: StageContext) -> Any:
        """Produce the payload for stage.

        Payloads must be JSON-serializable so they can be cached.

        Raises:
            Exception: Any failure; PipelineError carries its own
                classification, other exceptions are classified by type.
        """
