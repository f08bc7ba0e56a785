# src/recovery/__init__.py — v1
"""Backoff, retry and batch error recovery."""
