# tests/unit/api/test_unit_facade.py — v3
"""Tests for api.facade — generate() and generate_stream()."""

from __future__ import annotations

import asyncio
import json

import pytest

from geocopy.api.facade import _apply_overrides, build_response, generate, generate_stream
from geocopy.api.models import ConfigOverrides, GenerationResponse
from geocopy.cache.tiered_cache import TieredCache
from geocopy.core.errors import Errors
from geocopy.pipeline.plugin_kit.debug_worker import DebugStageWorker
from geocopy.progress.sinks import MemorySink


def _frames_to_events(frames: list[str]) -> list[dict]:
    return [json.loads(frame[len("data: "):]) for frame in frames]


class TestGenerate:
    @pytest.mark.asyncio
    async def test_completed_response(self, sample_request, settings):
        response = await generate(sample_request, DebugStageWorker(), settings=settings)
        assert isinstance(response, GenerationResponse)
        assert response.status == "completed"
        assert len(response.stages) == 8
        assert response.last_percentage == 100
        assert response.cache_hit is False
        assert set(response.sections) == {s.stage for s in response.stages}

    @pytest.mark.asyncio
    async def test_sink_receives_events(self, sample_request, settings):
        sink = MemorySink()
        await generate(sample_request, DebugStageWorker(), settings=settings, sink=sink)
        assert sink.closed is True
        assert sink.events[-1].type == "complete"
        assert sink.percentages == sorted(sink.percentages)

    @pytest.mark.asyncio
    async def test_failure_reported_not_raised(self, sample_request, settings):
        worker = DebugStageWorker(failures={"description": [Errors.forbidden()]})
        response = await generate(sample_request, worker, settings=settings)
        assert response.status == "failed"
        assert response.result is None
        assert response.sections == {}
        failed = [s for s in response.stages if s.status == "failed"]
        assert failed[0].error_details.code == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_cache_hit_flag(self, sample_request, settings):
        cache = TieredCache()
        await generate(sample_request, DebugStageWorker(), settings=settings, cache=cache)
        response = await generate(sample_request, DebugStageWorker(), settings=settings, cache=cache)
        assert response.cache_hit is True
        assert response.cache_source == "l1"

    @pytest.mark.asyncio
    async def test_overrides_applied(self, sample_request, settings):
        cache = TieredCache()
        worker = DebugStageWorker()
        overrides = ConfigOverrides(cache_enabled=False)
        await generate(sample_request, worker, settings=settings, cache=cache, overrides=overrides)
        await generate(sample_request, worker, settings=settings, cache=cache, overrides=overrides)
        assert len(worker.calls) == 16

    @pytest.mark.asyncio
    async def test_dead_sink_does_not_block_run(self, sample_request, settings):
        class DeadSink(MemorySink):
            async def send(self, event):
                raise ConnectionError("client gone")

        small_buffer = settings.model_copy(update={"progress_buffer_size": 4})
        sink = DeadSink()
        response = await asyncio.wait_for(
            generate(sample_request, DebugStageWorker(), settings=small_buffer, sink=sink),
            timeout=3,
        )
        assert response.status == "completed"
        assert response.progress_error == "client gone"
        assert sink.closed is True

    @pytest.mark.asyncio
    async def test_no_progress_error_when_sink_healthy(self, sample_request, settings):
        response = await generate(
            sample_request, DebugStageWorker(), settings=settings, sink=MemorySink()
        )
        assert response.progress_error is None


class TestApplyOverrides:
    def test_none(self, settings):
        assert _apply_overrides(settings, None) is settings

    def test_empty(self, settings):
        assert _apply_overrides(settings, ConfigOverrides()) is settings

    def test_merge(self, settings):
        merged = _apply_overrides(settings, ConfigOverrides(recovery_max_retries=1))
        assert merged.recovery_max_retries == 1
        assert merged.cache_l2_backend == settings.cache_l2_backend


class TestGenerateStream:
    @pytest.mark.asyncio
    async def test_frames(self, sample_request, settings):
        frames = [
            frame
            async for frame in generate_stream(sample_request, DebugStageWorker(), settings=settings)
        ]
        assert all(f.startswith("data: ") and f.endswith("\n\n") for f in frames)
        events = _frames_to_events(frames)
        assert events[0]["stage"] == "initializing"
        assert events[-1]["type"] == "complete"
        assert events[-1]["percentage"] == 100
        sequences = [e["sequence"] for e in events]
        assert sequences == sorted(sequences)

    @pytest.mark.asyncio
    async def test_error_terminal_frame(self, sample_request, settings):
        worker = DebugStageWorker(failures={"description": [Errors.validation("bad")]})
        frames = [f async for f in generate_stream(sample_request, worker, settings=settings)]
        last = _frames_to_events(frames)[-1]
        assert last["type"] == "error"
        assert last["data"] == {"completed_stages": []}

    @pytest.mark.asyncio
    async def test_early_close_aborts_run(self, sample_request, settings):
        abort = asyncio.Event()
        worker = DebugStageWorker(delay_s=0.01)
        stream = generate_stream(sample_request, worker, settings=settings, abort=abort)
        first = await stream.__anext__()
        assert first.startswith("data: ")
        await stream.aclose()
        assert abort.is_set()
        assert len(worker.calls) < 8


class TestBuildResponse:
    @pytest.mark.asyncio
    async def test_stage_outcomes(self, sample_request, settings):
        from geocopy.pipeline.orchestrator import PipelineOrchestrator

        worker = DebugStageWorker(failures={"keywords": [Errors.validation("bad")]})
        state = await PipelineOrchestrator(worker, settings=settings).run(sample_request)
        response = build_response(state)
        assert response.status == "partial"
        outcome = {s.stage: s for s in response.stages}["keywords"]
        assert outcome.status == "failed"
        assert outcome.attempts == 1
        assert response.completed_stages == state.completed_stages
