# src/progress/__init__.py — v1
"""Progress events, the emitter and its sinks."""
