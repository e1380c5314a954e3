from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional


STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_SUMMARY_COMPLETE = "summary_complete"
STATUS_RISKS_COMPLETE = "risks_complete"
STATUS_COMPLETE = "complete"
STATUS_FAILED = "failed"

ANALYSIS_STATUSES = (
    STATUS_PENDING,
    STATUS_IN_PROGRESS,
    STATUS_SUMMARY_COMPLETE,
    STATUS_RISKS_COMPLETE,
    STATUS_COMPLETE,
    STATUS_FAILED,
)

# A pipeline run is between stages in any of these.
RUNNING_STATUSES = frozenset({STATUS_IN_PROGRESS, STATUS_SUMMARY_COMPLETE, STATUS_RISKS_COMPLETE})
TERMINAL_STATUSES = frozenset({STATUS_COMPLETE, STATUS_FAILED})

CACHE_SUMMARY = "summary"
CACHE_RISKS = "risks"
CACHE_FIELDS = "fields"
CACHE_LAST_ANALYZED = "lastAnalyzed"

CACHE_KEYS = (CACHE_SUMMARY, CACHE_RISKS, CACHE_FIELDS)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def normalize_cache(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)
    return {}


def merge_analysis_cache(current: Any, key: str, data: Any, *, analyzed_at: Optional[str] = None) -> Dict[str, Any]:
    """Merge one stage result into the cache without touching the other stages."""
    if not key:
        raise ValueError("cache key is required")
    cache = normalize_cache(current)
    cache[key] = data
    cache[CACHE_LAST_ANALYZED] = analyzed_at or _now_iso()
    return cache


def merge_analysis_cache_batch(current: Any, batch: Dict[str, Any], *, analyzed_at: Optional[str] = None) -> Dict[str, Any]:
    if not isinstance(batch, dict):
        raise ValueError("cache batch must be an object")
    cache = normalize_cache(current)
    for key, value in batch.items():
        if key == CACHE_LAST_ANALYZED:
            continue
        cache[key] = value
    cache[CACHE_LAST_ANALYZED] = analyzed_at or _now_iso()
    return cache


def is_running(status: Any) -> bool:
    return str(status or "") in RUNNING_STATUSES


def clamp_progress(value: Any) -> int:
    try:
        p = int(value)
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, p))


def next_progress(current: Any, incoming: Any) -> int:
    # progress never moves backwards inside one run
    return max(clamp_progress(current), clamp_progress(incoming))
