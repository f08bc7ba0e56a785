# src/main.py — v3
"""CLI entry point — generate, stages and cache administration commands.

Usage:
    geocopy generate <product_name> --content-file <file> [options]
    geocopy stages [--profile quick]
    geocopy cache-stats
    geocopy cache-prune
    geocopy cache-clear [--product NAME]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from geocopy.version import __version__

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    _setup_logging(args.verbose)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="geocopy",
        description=f"geocopy v{__version__}: staged product copy generation",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- generate ---
    p_generate = subparsers.add_parser(
        "generate", help="Run the pipeline with the debug worker",
    )
    p_generate.add_argument("product_name", help="Product name")
    source = p_generate.add_mutually_exclusive_group(required=True)
    source.add_argument("--content", help="Source content text")
    source.add_argument(
        "--content-file", type=Path,
        help="File with source content (transcript, SRT, ...)",
    )
    p_generate.add_argument(
        "-k", "--keywords", default="",
        help="Comma-separated keywords",
    )
    p_generate.add_argument(
        "--language", choices=["ko", "en"], default=None,
        help="Output language (default: settings.default_language)",
    )
    p_generate.add_argument(
        "--profile", choices=["full", "quick", "grounded"], default="full",
        help="Pipeline profile (default: full)",
    )
    p_generate.add_argument("--launch-date", default=None, help="Product launch date")
    p_generate.add_argument(
        "--stream", action="store_true",
        help="Print SSE progress frames while running",
    )
    p_generate.add_argument(
        "--no-cache", action="store_true",
        help="Bypass the generation cache",
    )
    p_generate.add_argument(
        "--delay", type=float, default=0.0,
        help="Simulated latency per stage in seconds",
    )
    p_generate.set_defaults(func=_cmd_generate)

    # --- stages ---
    p_stages = subparsers.add_parser("stages", help="Show the stage execution plan")
    p_stages.add_argument(
        "--profile", choices=["full", "quick", "grounded"], default="full",
    )
    p_stages.set_defaults(func=_cmd_stages)

    # --- cache ---
    p_stats = subparsers.add_parser("cache-stats", help="Show cache statistics")
    p_stats.set_defaults(func=_cmd_cache_stats)

    p_prune = subparsers.add_parser("cache-prune", help="Remove expired cache entries")
    p_prune.set_defaults(func=_cmd_cache_prune)

    p_clear = subparsers.add_parser("cache-clear", help="Clear cached generations")
    p_clear.add_argument(
        "--product", default=None,
        help="Only invalidate entries of this product",
    )
    p_clear.set_defaults(func=_cmd_cache_clear)

    return parser


async def _cmd_generate(args: argparse.Namespace) -> int:
    """Run one generation and print its summary."""
    from geocopy.cache.cache_factory import open_tiered_cache
    from geocopy.config.settings import load_settings
    from geocopy.core.errors import PipelineError
    from geocopy.core.models import GenerationRequest
    from geocopy.pipeline.plugin_kit.debug_worker import DebugStageWorker

    if args.content_file is not None:
        if not args.content_file.exists():
            logger.error("File not found: %s", args.content_file)
            return 1
        content = args.content_file.read_text(encoding="utf-8")
    else:
        content = args.content

    settings = load_settings()
    try:
        request = GenerationRequest(
            product_name=args.product_name,
            content=content,
            keywords=[k.strip() for k in args.keywords.split(",") if k.strip()],
            language=args.language or settings.default_language,
            profile=args.profile,
            launch_date=args.launch_date,
        )
    except PipelineError as e:
        logger.error("Invalid request: %s", e)
        return 1

    worker = DebugStageWorker(delay_s=args.delay)
    if args.no_cache:
        return await _run_generation(request, worker, settings, None, args.stream)
    async with open_tiered_cache(settings) as cache:
        return await _run_generation(request, worker, settings, cache, args.stream)


async def _run_generation(request, worker, settings, cache, stream: bool) -> int:
    from geocopy.api.facade import generate, generate_stream

    if stream:
        last_frame = None
        async for frame in generate_stream(request, worker, settings=settings, cache=cache):
            sys.stdout.write(frame)
            sys.stdout.flush()
            last_frame = frame
        return _stream_exit_code(last_frame)

    response = await generate(request, worker, settings=settings, cache=cache)
    _print_response_summary(response)
    return 0 if response.status in ("completed", "partial") else 1


def _stream_exit_code(frame: str | None) -> int:
    """0 when the terminal SSE frame is "complete", else 1."""
    if frame is None:
        return 1
    event = json.loads(frame[len("data: "):])
    return 0 if event.get("type") == "complete" else 1


async def _cmd_stages(args: argparse.Namespace) -> int:
    """Print the execution plan of a profile."""
    from geocopy.pipeline.stage_graph import StageGraph

    graph = StageGraph.default().for_profile(args.profile)
    print(f"\nStages for profile '{args.profile}':")
    for index, level in enumerate(graph.levels().levels, start=1):
        print(f"  Level {index}: {', '.join(level)}")
    print()
    for stage in graph.stages:
        spec = graph.spec(stage)
        flags = []
        if spec.requires_grounding or args.profile == "grounded":
            flags.append("grounded")
        if spec.can_parallelize:
            flags.append("parallel")
        deps = ", ".join(graph.dependencies(stage)) or "-"
        print(f"  {stage:24s} deps: {deps:28s} {' '.join(flags)}")
    return 0


async def _cmd_cache_stats(args: argparse.Namespace) -> int:
    """Print cache statistics as JSON."""
    async with _open_cache() as cache:
        stats = await cache.stats()
    print(json.dumps(stats.model_dump(mode="json"), indent=2, ensure_ascii=False))
    return 0


async def _cmd_cache_prune(args: argparse.Namespace) -> int:
    """Remove expired entries from both layers."""
    async with _open_cache() as cache:
        removed = await cache.prune()
    print(f"Pruned {removed['l1']} L1 and {removed['l2']} L2 entries")
    return 0


async def _cmd_cache_clear(args: argparse.Namespace) -> int:
    """Clear the cache, or one product's entries."""
    async with _open_cache() as cache:
        if args.product:
            removed = await cache.invalidate_product(args.product)
            print(f"Invalidated {removed} entries for '{args.product}'")
        else:
            await cache.clear()
            print("Cache cleared")
    return 0


def _open_cache():
    from geocopy.cache.cache_factory import open_tiered_cache
    from geocopy.config.settings import load_settings

    return open_tiered_cache(load_settings(), prune=False)


def _print_response_summary(response: object) -> None:
    """Print a human-readable summary of a GenerationResponse."""
    print(f"\nGeneration {response.status}:")
    print(f"  Run ID:       {response.run_id}")
    print(f"  Fingerprint:  {response.fingerprint}")
    print(f"  Cache:        {response.cache_source or 'miss'}")
    print(f"  Latency:      {response.latency_ms}ms")
    print(f"  Progress:     {response.last_percentage:.0f}%")
    for stage in response.stages:
        line = f"    {stage.stage:24s} {stage.status}"
        if stage.from_cache:
            line += " (cached)"
        if stage.error:
            line += f": {stage.error}"
        print(line)
    if response.error:
        print(f"  Error:        {response.error}")


def _setup_logging(verbose: bool) -> None:
    """Configure logging for CLI usage, honoring log_file and rotation settings."""
    from geocopy.config.settings import ConfigurationError, load_settings
    from geocopy.logging.logger import setup_logging, setup_logging_from_settings

    level = "DEBUG" if verbose else None
    try:
        settings = load_settings()
    except ConfigurationError as e:
        setup_logging(level=level or "INFO", log_format="text")
        logger.warning("Invalid settings, using default logging: %s", e)
        return
    setup_logging_from_settings(settings, level=level)


if __name__ == "__main__":
    sys.exit(main())
