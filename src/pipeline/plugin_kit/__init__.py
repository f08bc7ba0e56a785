# src/pipeline/plugin_kit/__init__.py — v1
"""Stage worker contract and the debug worker."""
