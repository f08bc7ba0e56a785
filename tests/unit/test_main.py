# tests/unit/test_main.py — v3
"""Tests for main.py — CLI entry point."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from geocopy.logging.logger import ROOT_LOGGER
from geocopy.main import _build_parser, _stream_exit_code, main


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger(ROOT_LOGGER)
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Run the CLI against a throwaway cache directory."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CACHE_ROOT", str(tmp_path / "cache"))
    monkeypatch.setenv("LOG_FORMAT", "text")
    return tmp_path


# ---------------------------------------------------------------------------
# Parser tests
# ---------------------------------------------------------------------------

class TestBuildParser:
    def test_version_flag(self):
        parser = _build_parser()
        with pytest.raises(SystemExit) as exc_info:
            parser.parse_args(["--version"])
        assert exc_info.value.code == 0

    def test_generate_subcommand(self):
        args = _build_parser().parse_args(
            ["generate", "Blender", "--content", "text", "-k", "a,b", "--profile", "quick"]
        )
        assert args.command == "generate"
        assert args.product_name == "Blender"
        assert args.keywords == "a,b"
        assert args.profile == "quick"
        assert args.stream is False

    def test_generate_content_file(self):
        args = _build_parser().parse_args(["generate", "P", "--content-file", "in.srt"])
        assert args.content_file == Path("in.srt")
        assert args.content is None

    def test_generate_requires_content(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["generate", "P"])

    def test_content_sources_exclusive(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(
                ["generate", "P", "--content", "x", "--content-file", "y"]
            )

    def test_stages_default_profile(self):
        args = _build_parser().parse_args(["stages"])
        assert args.profile == "full"

    def test_cache_clear_product(self):
        args = _build_parser().parse_args(["cache-clear", "--product", "Blender"])
        assert args.product == "Blender"


# ---------------------------------------------------------------------------
# Command tests
# ---------------------------------------------------------------------------

class TestMain:
    def test_no_command(self, isolated_env, capsys):
        assert main([]) == 1

    def test_stages(self, isolated_env, capsys):
        assert main(["stages", "--profile", "quick"]) == 0
        out = capsys.readouterr().out
        assert "Level 1: description" in out
        assert "step_by_step" not in out

    def test_generate(self, isolated_env, capsys):
        assert main(["generate", "Blender", "--content", "Crushes ice."]) == 0
        out = capsys.readouterr().out
        assert "Generation completed" in out
        assert "grounding_aggregation" in out

    def test_generate_from_file(self, isolated_env, capsys):
        source = isolated_env / "transcript.srt"
        source.write_text("1\n00:00:01,000 --> 00:00:02,000\nHello\n", encoding="utf-8")
        assert main(["generate", "Blender", "--content-file", str(source), "--no-cache"]) == 0

    def test_generate_missing_file(self, isolated_env):
        assert main(["generate", "Blender", "--content-file", "nope.txt"]) == 1

    def test_generate_blank_name(self, isolated_env):
        assert main(["generate", "  ", "--content", "x"]) == 1

    def test_generate_stream(self, isolated_env, capsys):
        assert main(["generate", "Blender", "--content", "x", "--stream", "--no-cache"]) == 0
        frames = [line for line in capsys.readouterr().out.splitlines() if line]
        last = json.loads(frames[-1][len("data: "):])
        assert last["type"] == "complete"

    def test_second_run_hits_l2(self, isolated_env, capsys):
        main(["generate", "Blender", "--content", "x"])
        capsys.readouterr()
        assert main(["generate", "Blender", "--content", "x"]) == 0
        assert "Cache:        l2" in capsys.readouterr().out

    def test_cache_commands(self, isolated_env, capsys):
        main(["generate", "Blender", "--content", "x"])
        capsys.readouterr()

        assert main(["cache-stats"]) == 0
        stats = json.loads(capsys.readouterr().out)
        assert stats["l2"]["total_entries"] == 9

        assert main(["cache-prune"]) == 0
        assert "Pruned 0 L1 and 0 L2" in capsys.readouterr().out

        assert main(["cache-clear", "--product", "blender"]) == 0
        assert "Invalidated 9 entries" in capsys.readouterr().out

        assert main(["cache-clear"]) == 0
        assert "Cache cleared" in capsys.readouterr().out

    def test_generate_stream_error_exit_code(self, isolated_env, monkeypatch, capsys):
        import geocopy.api.facade as facade

        async def failing_stream(*args, **kwargs):
            yield 'data: {"type": "stage_start", "stage": "initializing"}\n\n'
            yield 'data: {"type": "error", "stage": "error", "message": "boom"}\n\n'

        monkeypatch.setattr(facade, "generate_stream", failing_stream)
        assert main(["generate", "Blender", "--content", "x", "--stream", "--no-cache"]) == 1
        assert '"type": "error"' in capsys.readouterr().out


class TestStreamExitCode:
    def test_complete(self):
        assert _stream_exit_code('data: {"type": "complete"}\n\n') == 0

    def test_error(self):
        assert _stream_exit_code('data: {"type": "error"}\n\n') == 1

    def test_no_frames(self):
        assert _stream_exit_code(None) == 1
