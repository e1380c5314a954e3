from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from django.db import transaction
from django.utils import timezone

from packages.analysis_core.result_contract import (
    ANALYSIS_STATUSES,
    STATUS_COMPLETE,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    RUNNING_STATUSES,
    TERMINAL_STATUSES,
    is_running,
    merge_analysis_cache,
    merge_analysis_cache_batch,
    next_progress,
)

from ..models import Document

logger = logging.getLogger(__name__)

STAGE_HISTORY_LIMIT = 120
SUBMITTED_STAGE = "Submitted to worker"

__all__ = [
    "apply_analysis_update",
    "begin_analysis",
    "create_document",
    "delete_document",
    "expire_stale_analyses",
    "mark_submit_failed",
    "merge_analysis_cache",
    "merge_analysis_cache_batch",
    "merge_runtime_meta",
    "record_submission",
    "update_document",
]


def merge_runtime_meta(current: Optional[dict], incoming: Optional[dict], *, stage: str = "", progress: Optional[int] = None) -> dict:
    meta = dict(current) if isinstance(current, dict) else {}

    if isinstance(incoming, dict):
        for k, v in incoming.items():
            if k != "stage_history":
                meta[k] = v

    if stage:
        history = meta.get("stage_history")
        if not isinstance(history, list):
            history = []

        event = {"stage": stage, "ts": timezone.now().isoformat(timespec="seconds")}
        if progress is not None:
            event["progress"] = progress

        last = history[-1] if history else None
        if not (isinstance(last, dict) and last.get("stage") == stage and last.get("progress") == progress):
            history.append(event)
            history = history[-STAGE_HISTORY_LIMIT:]
        meta["stage_history"] = history

    meta["updated_at"] = timezone.now().isoformat(timespec="seconds")
    return meta


def create_document(
    *,
    kind: str,
    title: str,
    content: str,
    owner: str = "",
    folder_id: str = "",
    filename: str = "",
    file_sha256: str = "",
) -> Document:
    if kind not in {Document.KIND_CONTRACT, Document.KIND_TEMPLATE}:
        raise ValueError(f"unknown document kind: {kind}")
    return Document.objects.create(
        kind=kind,
        title=title or filename or "Untitled",
        content=content,
        owner=owner,
        folder_id=folder_id,
        filename=filename,
        file_sha256=file_sha256,
        analysis_status=STATUS_PENDING,
        runtime_meta=merge_runtime_meta(None, None, stage="created", progress=0),
    )


def begin_analysis(document_id: int, force: bool = False) -> Tuple[bool, Document]:
    """
    Take the per-document analysis gate.

    Returns ``(False, doc)`` without changes when the analysis is already
    complete (and not forced) or a run is in flight. Otherwise a fresh run id
    is issued and the document moves to ``in_progress``.
    """
    with transaction.atomic():
        doc = Document.objects.select_for_update().get(pk=document_id)

        if is_running(doc.analysis_status):
            return False, doc
        if doc.analysis_status == STATUS_COMPLETE and not force:
            return False, doc
        if not (doc.content or "").strip():
            raise ValueError("document has no content to analyze")

        doc.analysis_run_id = uuid.uuid4().hex
        doc.analysis_status = STATUS_IN_PROGRESS
        doc.analysis_progress = 0
        doc.analysis_retry_count = 0
        doc.analysis_error = ""
        doc.analysis_stage = "Queued"
        doc.runtime_meta = merge_runtime_meta(
            doc.runtime_meta,
            {"run_id": doc.analysis_run_id, "forced": bool(force)},
            stage="queued",
            progress=0,
        )
        doc.save(
            update_fields=[
                "analysis_run_id",
                "analysis_status",
                "analysis_progress",
                "analysis_retry_count",
                "analysis_error",
                "analysis_stage",
                "runtime_meta",
                "updated_at",
            ]
        )
    logger.info("analysis queued: document=%s run=%s force=%s", doc.pk, doc.analysis_run_id, force)
    return True, doc


def mark_submit_failed(document_id: int, run_id: str, error: str) -> None:
    with transaction.atomic():
        doc = Document.objects.select_for_update().get(pk=document_id)
        if doc.analysis_run_id != run_id:
            return
        doc.analysis_status = STATUS_FAILED
        doc.analysis_error = error
        doc.analysis_stage = "Submit to worker failed"
        doc.runtime_meta = merge_runtime_meta(doc.runtime_meta, {"submit_failed": True}, stage="submit_failed")
        doc.save(update_fields=["analysis_status", "analysis_error", "analysis_stage", "runtime_meta", "updated_at"])


def record_submission(document_id: int, run_id: str, meta: Optional[dict] = None) -> bool:
    """
    Note that the worker accepted ``run_id``. The submitted stage is only
    recorded while the worker has not reported any progress of its own.
    """
    with transaction.atomic():
        doc = Document.objects.select_for_update().get(pk=document_id)
        if doc.analysis_run_id != run_id:
            return False

        update_fields = ["runtime_meta", "updated_at"]
        stage = ""
        if doc.analysis_progress == 0 and doc.analysis_status not in TERMINAL_STATUSES:
            stage = SUBMITTED_STAGE
            doc.analysis_progress = 1
            doc.analysis_stage = stage
            update_fields += ["analysis_progress", "analysis_stage"]

        doc.runtime_meta = merge_runtime_meta(doc.runtime_meta, meta, stage=stage, progress=doc.analysis_progress if stage else None)
        doc.save(update_fields=update_fields)
    return True


def apply_analysis_update(document_id: int, payload: Dict[str, Any]) -> Tuple[bool, str]:
    """
    Apply one worker callback. Returns ``(applied, reason)``.

    Updates for another run, or for a run that already finished, are ignored.
    Progress only moves forward; cache results merge under their own key.
    """
    status = payload.get("status")
    if status is not None and status not in ANALYSIS_STATUSES:
        raise ValueError(f"invalid status: {status}")

    with transaction.atomic():
        doc = Document.objects.select_for_update().get(pk=document_id)

        run_id = str(payload.get("run_id") or "")
        if not run_id or run_id != doc.analysis_run_id:
            logger.info("stale callback ignored: document=%s run=%s current=%s", doc.pk, run_id, doc.analysis_run_id)
            return False, "stale run"
        if doc.analysis_status in TERMINAL_STATUSES:
            logger.info("callback after run end ignored: document=%s status=%s", doc.pk, doc.analysis_status)
            return False, "run finished"

        update_fields: List[str] = []

        if status is not None:
            doc.analysis_status = status
            doc.last_analyzed_at = timezone.now()
            update_fields += ["analysis_status", "last_analyzed_at"]
            if status != STATUS_FAILED and payload.get("error") is None and doc.analysis_error:
                doc.analysis_error = ""
                update_fields.append("analysis_error")

        if payload.get("progress") is not None:
            doc.analysis_progress = next_progress(doc.analysis_progress, payload.get("progress"))
            update_fields.append("analysis_progress")

        if payload.get("stage"):
            doc.analysis_stage = str(payload["stage"])[:255]
            update_fields.append("analysis_stage")

        if payload.get("error") is not None:
            doc.analysis_error = str(payload.get("error") or "")
            update_fields.append("analysis_error")

        if payload.get("retry_count") is not None:
            try:
                doc.analysis_retry_count = max(0, int(payload["retry_count"]))
            except (TypeError, ValueError):
                raise ValueError(f"invalid retry_count: {payload['retry_count']}")
            update_fields.append("analysis_retry_count")

        if payload.get("cache_key"):
            doc.analysis_cache = merge_analysis_cache(doc.analysis_cache, str(payload["cache_key"]), payload.get("cache_data"))
            update_fields.append("analysis_cache")
        elif payload.get("cache_batch") is not None:
            doc.analysis_cache = merge_analysis_cache_batch(doc.analysis_cache, payload["cache_batch"])
            update_fields.append("analysis_cache")

        if isinstance(payload.get("content"), str):
            doc.content = payload["content"]
            update_fields.append("content")

        if update_fields:
            doc.runtime_meta = merge_runtime_meta(
                doc.runtime_meta,
                payload.get("meta") if isinstance(payload.get("meta"), dict) else None,
                stage=str(payload.get("stage") or ""),
                progress=doc.analysis_progress if payload.get("progress") is not None else None,
            )
            update_fields += ["runtime_meta", "updated_at"]
            doc.save(update_fields=sorted(set(update_fields)))

    return True, "ok"


def update_document(
    document_id: int,
    *,
    title: Optional[str] = None,
    content: Optional[str] = None,
    folder_id: Optional[str] = None,
    resolved_risks: Optional[List[Dict[str, Any]]] = None,
    reset_analysis: bool = True,
) -> Document:
    with transaction.atomic():
        doc = Document.objects.select_for_update().get(pk=document_id)
        update_fields: List[str] = []

        if title is not None:
            doc.title = title
            update_fields.append("title")
        if folder_id is not None:
            doc.folder_id = folder_id
            update_fields.append("folder_id")
        if resolved_risks is not None:
            if doc.kind != Document.KIND_TEMPLATE:
                raise ValueError("resolved_risks only applies to templates")
            if not isinstance(resolved_risks, list):
                raise ValueError("resolved_risks must be a list")
            doc.resolved_risks = resolved_risks
            update_fields.append("resolved_risks")
        if content is not None and content != doc.content:
            doc.content = content
            update_fields.append("content")
            if reset_analysis and doc.analysis_status == STATUS_COMPLETE:
                doc.analysis_status = STATUS_PENDING
                doc.analysis_progress = 0
                doc.analysis_stage = "Content changed"
                update_fields += ["analysis_status", "analysis_progress", "analysis_stage"]

        if update_fields:
            doc.save(update_fields=update_fields + ["updated_at"])
    return doc


def delete_document(document_id: int) -> bool:
    deleted, _ = Document.objects.filter(pk=document_id).delete()
    return deleted > 0


def expire_stale_analyses(minutes: int, *, dry_run: bool = False) -> List[int]:
    """Fail runs stuck in a running state with no update for ``minutes``."""
    cutoff = timezone.now() - timedelta(minutes=minutes)
    stale = list(
        Document.objects.filter(analysis_status__in=RUNNING_STATUSES, updated_at__lt=cutoff).values_list("pk", flat=True)
    )
    if dry_run:
        return stale

    expired: List[int] = []
    for pk in stale:
        with transaction.atomic():
            doc = Document.objects.select_for_update().get(pk=pk)
            if doc.analysis_status not in RUNNING_STATUSES:
                continue
            doc.analysis_status = STATUS_FAILED
            doc.analysis_error = f"analysis timed out after {minutes} minutes without progress"
            doc.analysis_stage = "Expired"
            doc.runtime_meta = merge_runtime_meta(doc.runtime_meta, {"expired": True}, stage="expired")
            doc.save(update_fields=["analysis_status", "analysis_error", "analysis_stage", "runtime_meta", "updated_at"])
            expired.append(pk)
    return expired
