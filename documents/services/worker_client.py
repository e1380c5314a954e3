from __future__ import annotations

import logging
import time
from typing import Any, Dict

import requests
from django.conf import settings

from ..models import Document

logger = logging.getLogger(__name__)

_WORKER_SESSION = requests.Session()


class WorkerSubmitError(RuntimeError):
    pass


def _get_worker_base_url() -> str:
    return getattr(settings, "WORKER_BASE_URL", "http://127.0.0.1:8001").rstrip("/")


def _get_worker_timeout() -> int:
    # /analyze only enqueues, it should answer quickly
    return int(getattr(settings, "WORKER_TIMEOUT", 30))


def _get_worker_submit_retry() -> int:
    return int(getattr(settings, "WORKER_SUBMIT_RETRY", 1))


def submit_analysis(doc: Document) -> Dict[str, Any]:
    """
    POST {WORKER_BASE_URL}/analyze for the document's current run.

    Returns submit metadata for runtime_meta; raises WorkerSubmitError.
    """
    worker_url = _get_worker_base_url() + "/analyze"
    payload = {
        "document_id": doc.pk,
        "run_id": doc.analysis_run_id,
        "kind": doc.kind,
        "content": doc.content,
        "resolved_risks": doc.resolved_risks if doc.kind == Document.KIND_TEMPLATE else [],
    }

    data: Dict[str, Any] = {}
    last_err = None
    submit_attempts = 0
    submit_started = time.perf_counter()

    for _ in range(max(1, _get_worker_submit_retry())):
        submit_attempts += 1
        try:
            r = _WORKER_SESSION.post(worker_url, json=payload, timeout=_get_worker_timeout())
            r.raise_for_status()
            try:
                data = r.json()
            except ValueError:
                data = {}
            last_err = None
            break
        except requests.RequestException as e:
            logger.warning("worker submit attempt %d failed: %s", submit_attempts, e)
            last_err = e

    if last_err is not None:
        raise WorkerSubmitError(f"submit to worker failed: {last_err}")

    if isinstance(data, dict) and data.get("ok") is False:
        raise WorkerSubmitError(f"worker returned ok=false: {data.get('error')}")

    return {
        "submit_attempts": submit_attempts,
        "submit_seconds": round(time.perf_counter() - submit_started, 3),
        "task_id": data.get("task_id") if isinstance(data, dict) else None,
    }
