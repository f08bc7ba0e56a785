# src/pipeline/orchestrator.py — v3
"""Pipeline orchestrator — walks the stage graph for one request.

Per run:
  1. Fingerprint the request and consult the whole-result cache.
  2. On a miss, schedule stages in ticks: every eligible non-parallel
     stage runs on its own, then the eligible parallel group runs
     concurrently.
  3. Each stage consults the stage cache, then the worker. Worker failures
     go through the recovery queue; exhausted failures mark the stage
     failed and every transitive dependent skipped.
  4. Derive the run status, assemble the result and write it back.

Progress is reported through a ProgressEmitter; cache failures never
fail the run.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from geocopy.cache.fingerprint import compute_fingerprint
from geocopy.core.errors import classify_error
from geocopy.core.models import GenerationRequest, GenerationResult, PipelineStatus
from geocopy.logging.context import clear_context, set_run_context, set_stage_context
from geocopy.pipeline.plugin_kit.base_worker import BaseStageWorker, StageContext
from geocopy.pipeline.stage_graph import StageGraph, StageSpec
from geocopy.pipeline.state import PipelineState, StageResult
from geocopy.progress.emitter import INITIALIZING, ProgressEmitter
from geocopy.recovery.models import BatchErrorItem
from geocopy.recovery.queue import recover_batch_errors

if TYPE_CHECKING:
    from geocopy.cache.tiered_cache import TieredCache
    from geocopy.config.settings import Settings

logger = logging.getLogger(__name__)

ABORTED = "aborted"


class PipelineOrchestrator:
    """Runs the generation pipeline for one request at a time.

    Args:
        worker: Produces stage payloads.
        cache: Tiered cache; None disables caching.
        settings: Application settings (retry policy, cache switch).
        graph: Stage graph; defaults to the process-wide table.
        sleep: Awaitable sleep used for retry backoff.
        rng: Jitter source for retry backoff.
    """

    def __init__(
        self,
        worker: BaseStageWorker,
        cache: TieredCache | None = None,
        settings: Settings | None = None,
        graph: StageGraph | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        if settings is None:
            from geocopy.config.settings import load_settings

            settings = load_settings()
        self._worker = worker
        self._settings = settings
        self._cache = cache if settings.cache_enabled else None
        self._graph = graph if graph is not None else StageGraph.default()
        self._sleep = sleep
        self._rng = rng

    async def run(
        self,
        request: GenerationRequest,
        emitter: ProgressEmitter | None = None,
        abort: asyncio.Event | None = None,
    ) -> PipelineState:
        """Execute the pipeline for request.

        Args:
            request: Validated generation request.
            emitter: Receives progress events; a private non-publishing
                emitter is used when None.
            abort: Cooperative cancellation signal.

        Returns:
            Final PipelineState (never raises for stage failures).
        """
        start_time = time.monotonic()
        fingerprint = compute_fingerprint(request)
        graph = self._graph.for_profile(request.profile)
        state = PipelineState(
            request=request,
            fingerprint=fingerprint,
            stage_results={s: StageResult(stage=s) for s in graph.stages},
        )
        emitter = emitter or ProgressEmitter(language=request.language, publish=False)
        abort = abort or asyncio.Event()
        set_run_context(state.run_id, fingerprint)
        logger.info(
            "Pipeline start: %s (%s, %d stages)",
            request.product_name, request.profile, len(graph),
        )

        try:
            await emitter.start_stage(INITIALIZING)
            if not await self._serve_cached(state, graph, emitter):
                await emitter.complete_stage(INITIALIZING)
                await self._execute(state, graph, emitter, abort)
                self._finalize(state, aborted=abort.is_set())
                if state.status == "completed" and self._cache is not None:
                    await self._cache.set_result(
                        fingerprint,
                        state.result.model_dump(mode="json"),  # type: ignore[union-attr]
                        product_name=request.product_name,
                        keywords=request.keywords,
                    )
            await self._emit_terminal(state, emitter)
        except Exception as e:
            logger.exception("Pipeline failed unexpectedly")
            state.status = "failed"
            state.error = classify_error(e).message
            if not emitter.closed:
                await emitter.error(state.error)
        finally:
            state.last_percentage = emitter.percentage
            state.latency_ms = int((time.monotonic() - start_time) * 1000)
            clear_context()

        logger.info(
            "Pipeline %s in %dms: %d completed, %d failed, %d skipped",
            state.status,
            state.latency_ms,
            len(state.completed_stages),
            len(state.failed_stages),
            len(state.skipped_stages),
        )
        return state

    # ------------------------------------------------------------------
    # Whole-result cache
    # ------------------------------------------------------------------

    async def _serve_cached(
        self, state: PipelineState, graph: StageGraph, emitter: ProgressEmitter
    ) -> bool:
        if self._cache is None:
            return False
        lookup = await self._cache.get_result(state.fingerprint)
        if not lookup.hit:
            return False
        try:
            result = GenerationResult.model_validate(lookup.value)
        except ValueError as e:
            logger.warning("Discarding unreadable cached result %s: %s", state.fingerprint, e)
            return False
        if not set(graph.stages) <= set(result.sections):
            logger.warning("Cached result %s lacks stages; regenerating", state.fingerprint)
            return False

        logger.info("Whole-result cache hit (%s): %s", lookup.source, state.fingerprint)
        await emitter.complete_stage(INITIALIZING)
        for stage in graph.stages:
            stage_result = state.stage_results[stage]
            stage_result.mark_running()
            await emitter.start_stage(stage)
            stage_result.mark_completed(result.sections[stage], from_cache=True)
            await emitter.complete_stage(stage)
        state.result = result
        state.status = "completed"
        state.cache_source = lookup.source
        return True

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _execute(
        self,
        state: PipelineState,
        graph: StageGraph,
        emitter: ProgressEmitter,
        abort: asyncio.Event,
    ) -> None:
        tick = 0
        while not abort.is_set():
            eligible = graph.eligible(state.statuses())
            if not eligible:
                break
            tick += 1
            sequential = [s for s in eligible if not graph.spec(s).can_parallelize]
            parallel = [s for s in eligible if graph.spec(s).can_parallelize]
            logger.debug("Tick %d: sequential=%s parallel=%s", tick, sequential, parallel)

            for stage in sequential:
                if abort.is_set():
                    break
                await self._run_stage(state, graph, stage, emitter, abort)
                set_stage_context(None)

            if parallel and not abort.is_set():
                await asyncio.gather(
                    *(self._run_stage(state, graph, s, emitter, abort) for s in parallel)
                )

        if abort.is_set():
            for stage in graph.stages:
                if state.stage_results[stage].status == "pending":
                    state.stage_results[stage].mark_skipped(ABORTED)
                    await emitter.skip_stage(stage, ABORTED)

    async def _run_stage(
        self,
        state: PipelineState,
        graph: StageGraph,
        stage: str,
        emitter: ProgressEmitter,
        abort: asyncio.Event,
    ) -> None:
        set_stage_context(stage)
        result = state.stage_results[stage]
        spec = graph.spec(stage)
        result.mark_running()
        await emitter.start_stage(stage)

        if self._cache is not None:
            lookup = await self._cache.get_stage(state.fingerprint, stage)
            if lookup.hit:
                logger.debug("Stage cache hit (%s)", lookup.source)
                result.mark_completed(lookup.value, from_cache=True)
                await emitter.complete_stage(stage)
                return

        ok, outcome = await self._invoke(state, graph, spec, result, abort)

        if abort.is_set():
            # Late result of an aborted run: discarded, never cached.
            result.mark_skipped(ABORTED)
            await emitter.skip_stage(stage, ABORTED)
            return

        if not ok:
            item: BatchErrorItem = outcome
            result.mark_failed(item.error, item.error_details)
            logger.error(
                "Stage %s failed after %d attempts: %s", stage, result.attempts, item.error
            )
            await emitter.fail_stage(stage, item.error)
            await self._cascade_skip(state, graph, stage, emitter)
            return

        result.mark_completed(outcome)
        if self._cache is not None:
            await self._cache.set_stage(
                state.fingerprint,
                stage,
                outcome,
                product_name=state.request.product_name,
                keywords=state.request.keywords,
            )
        await emitter.complete_stage(stage)

    async def _invoke(
        self,
        state: PipelineState,
        graph: StageGraph,
        spec: StageSpec,
        result: StageResult,
        abort: asyncio.Event,
    ) -> tuple[bool, Any]:
        """Call the worker, recovering failures. Returns (ok, payload | BatchErrorItem)."""
        result.attempts = 1
        try:
            return True, await self._worker.invoke(
                spec.stage, self._context(state, graph, spec, attempt=1)
            )
        except Exception as e:
            item = BatchErrorItem.from_exception(spec.stage, e)
            logger.warning(
                "Stage %s attempt 1 failed (%s, retryable=%s): %s",
                spec.stage, item.error_details.category.value,  # type: ignore[union-attr]
                item.retryable, item.error,
            )

        if abort.is_set() or not item.retryable:
            return False, item

        async def process_item(stage: str) -> Any:
            result.attempts += 1
            return await self._worker.invoke(
                stage, self._context(state, graph, spec, attempt=result.attempts)
            )

        settings = self._settings
        recovery = await recover_batch_errors(
            [item],
            process_item,
            max_retries=settings.recovery_max_retries,
            concurrency=settings.recovery_concurrency,
            initial_delay_ms=settings.retry_initial_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            jitter_ratio=settings.retry_jitter_ratio,
            job_id=f"{state.run_id}:{spec.stage}",
            abort=abort,
            sleep=self._sleep,
            rng=self._rng,
        )
        if spec.stage in recovery.results:
            return True, recovery.results[spec.stage]
        return False, recovery.failed_item(spec.stage) or item

    def _context(
        self, state: PipelineState, graph: StageGraph, spec: StageSpec, attempt: int
    ) -> StageContext:
        upstream = {
            dep: state.stage_results[dep].payload
            for dep in graph.dependencies(spec.stage)
            if state.stage_results[dep].status == "completed"
        }
        return StageContext(
            request=state.request,
            fingerprint=state.fingerprint,
            spec=spec,
            upstream=upstream,
            requires_grounding=spec.requires_grounding or state.request.profile == "grounded",
            attempt=attempt,
        )

    async def _cascade_skip(
        self,
        state: PipelineState,
        graph: StageGraph,
        failed: str,
        emitter: ProgressEmitter,
    ) -> None:
        for stage in graph.stages:
            if stage not in graph.dependents(failed):
                continue
            dependent = state.stage_results[stage]
            if dependent.status != "pending":
                continue
            reason = f"dependency '{failed}' failed"
            dependent.mark_skipped(reason)
            await emitter.skip_stage(stage, reason)

    # ------------------------------------------------------------------
    # Outcome
    # ------------------------------------------------------------------

    @staticmethod
    def _finalize(state: PipelineState, aborted: bool) -> None:
        results = state.stage_results.values()
        completed = [r for r in results if r.status == "completed"]

        status: PipelineStatus
        if aborted:
            status = "aborted"
        elif len(completed) == len(state.stage_results):
            status = "completed"
        elif not completed:
            status = "failed"
        else:
            status = "partial"
        state.status = status

        if completed:
            request = state.request
            state.result = GenerationResult(
                fingerprint=state.fingerprint,
                product_name=request.product_name,
                language=request.language,
                profile=request.profile,
                sections={r.stage: r.payload for r in completed},
                stages_completed=[r.stage for r in completed],
            )

        if status == "aborted":
            state.error = "Pipeline aborted"
        elif status == "failed":
            first = next((r for r in results if r.status == "failed"), None)
            state.error = (
                f"Stage '{first.stage}' failed: {first.error}" if first else "No stage completed"
            )

    @staticmethod
    async def _emit_terminal(state: PipelineState, emitter: ProgressEmitter) -> None:
        if state.status in ("completed", "partial"):
            await emitter.complete(
                state.result.model_dump(mode="json") if state.result else None
            )
        else:
            await emitter.error(
                state.error or state.status,
                data={"completed_stages": state.completed_stages},
            )
