# src/pipeline/__init__.py — v1
"""Stage graph, per-run state and the pipeline orchestrator."""
