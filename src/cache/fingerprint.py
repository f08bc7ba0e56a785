# src/cache/fingerprint.py — v3
"""Request fingerprinting for the generation cache.

A fingerprint identifies one cacheable unit of work. It is the root of
both cache layers: whole results are stored under the fingerprint itself,
stage payloads under "<fingerprint>_<stage>".
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from geocopy.core.models import GenerationRequest

KEY_PREFIX = "gen_"
KEY_HASH_LENGTH = 16
CONTENT_HASH_CHARS = 1000


def normalize_request(request: GenerationRequest) -> dict[str, Any]:
    """Return the fields that identify a request, in canonical form.

    Product name is trimmed and lowercased, only the first 1000 characters
    of the content take part, and keywords are lowercased and sorted so
    their order does not matter.
    """
    return {
        "product_name": request.product_name.strip().lower(),
        "content": request.content[:CONTENT_HASH_CHARS].strip(),
        "keywords": sorted(k.strip().lower() for k in request.keywords),
        "language": request.language,
        "profile": request.profile,
        "launch_date": (request.launch_date or "").strip() or None,
    }


def compute_fingerprint(request: GenerationRequest) -> str:
    """Compute the whole-result cache key for a request.

    Returns:
        "gen_" followed by the first 16 hex characters of a SHA-256 digest.
    """
    payload = json.dumps(
        normalize_request(request),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}{digest[:KEY_HASH_LENGTH]}"


def stage_cache_key(generation_key: str, stage: str) -> str:
    """Key for one stage payload of a fingerprinted request."""
    return f"{generation_key}_{stage}"
