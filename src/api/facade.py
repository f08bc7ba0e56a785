# src/api/facade.py — v3
"""Public API facade — single entry point for copy generation.

Usage:
    from geocopy.api.facade import generate
    response = await generate(request, worker)

    async for frame in generate_stream(request, worker):
        ...  # "data: {...}\\n\\n" SSE frames
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from geocopy.api.models import ConfigOverrides, GenerationResponse, StageOutcome
from geocopy.config.settings import Settings, load_settings
from geocopy.pipeline.orchestrator import PipelineOrchestrator
from geocopy.pipeline.state import PipelineState
from geocopy.progress.emitter import ProgressEmitter
from geocopy.progress.sinks import ProgressSink, SSESink, StreamWriter

if TYPE_CHECKING:
    from geocopy.cache.tiered_cache import TieredCache
    from geocopy.core.models import GenerationRequest
    from geocopy.pipeline.plugin_kit.base_worker import BaseStageWorker

logger = logging.getLogger(__name__)


async def generate(
    request: GenerationRequest,
    worker: BaseStageWorker,
    settings: Settings | None = None,
    cache: TieredCache | None = None,
    sink: ProgressSink | None = None,
    abort: asyncio.Event | None = None,
    overrides: ConfigOverrides | None = None,
) -> GenerationResponse:
    """Run the generation pipeline and return a user-facing response.

    Args:
        request: Validated request.
        worker: Stage worker producing section payloads.
        settings: Global settings. Loaded from .env if None.
        cache: Tiered cache. None = no caching.
        sink: Receives progress events while the run proceeds.
        abort: Set to stop scheduling further stages.
        overrides: Per-request setting overrides.

    Returns:
        GenerationResponse; stage failures are reported, not raised. A
        failing sink stops progress delivery but not the run; its error
        is reported in progress_error.
    """
    settings = _apply_overrides(settings or load_settings(), overrides)
    orchestrator = PipelineOrchestrator(worker, cache=cache, settings=settings)

    if sink is None:
        state = await orchestrator.run(request, abort=abort)
        return build_response(state)

    emitter = ProgressEmitter(
        language=request.language, buffer_size=settings.progress_buffer_size
    )
    writer = StreamWriter(emitter, sink)
    writer.start()
    try:
        state = await orchestrator.run(request, emitter=emitter, abort=abort)
        await writer.wait()
    except BaseException:
        await writer.cancel()
        raise
    response = build_response(state)
    if writer.error is not None:
        response.progress_error = str(writer.error) or type(writer.error).__name__
    return response


async def generate_stream(
    request: GenerationRequest,
    worker: BaseStageWorker,
    settings: Settings | None = None,
    cache: TieredCache | None = None,
    abort: asyncio.Event | None = None,
    overrides: ConfigOverrides | None = None,
) -> AsyncIterator[str]:
    """Yield SSE frames while the pipeline runs.

    The last frame is the terminal "complete" or "error" event. Closing
    the iterator early aborts the run.
    """
    settings = settings or load_settings()
    sink = SSESink(buffer_size=settings.progress_buffer_size)
    abort = abort or asyncio.Event()
    task = asyncio.create_task(
        generate(
            request,
            worker,
            settings=settings,
            cache=cache,
            sink=sink,
            abort=abort,
            overrides=overrides,
        ),
        name="generate-stream",
    )
    try:
        async for frame in sink:
            yield frame
        await task
    finally:
        if not task.done():
            abort.set()
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                logger.info("Streaming generation cancelled by consumer")


def build_response(state: PipelineState) -> GenerationResponse:
    """Convert a finished PipelineState into the API response."""
    return GenerationResponse(
        run_id=state.run_id,
        fingerprint=state.fingerprint,
        status=state.status,
        result=state.result,
        stages=[
            StageOutcome(
                stage=r.stage,
                status=r.status,
                error=r.error,
                error_details=r.error_details,
                from_cache=r.from_cache,
                attempts=r.attempts,
            )
            for r in state.stage_results.values()
        ],
        error=state.error,
        last_percentage=state.last_percentage,
        completed_stages=state.completed_stages,
        latency_ms=state.latency_ms,
        cache_hit=state.cache_hit,
        cache_source=state.cache_source,
    )


def _apply_overrides(settings: Settings, overrides: ConfigOverrides | None) -> Settings:
    """Apply per-request config overrides if provided."""
    if overrides is None:
        return settings
    values = overrides.model_dump(exclude_none=True)
    if not values:
        return settings
    current = settings.model_dump()
    current.update(values)
    return Settings(_env_file=None, **current)  # type: ignore[call-arg]
