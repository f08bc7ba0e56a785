# src/cache/__init__.py — v1
"""Two-tier generation cache: in-process L1 over a durable L2 store."""
