import hashlib
import json
import logging
import os

from django.conf import settings
from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt, ensure_csrf_cookie
from django.views.decorators.http import require_http_methods

from analysis_worker.api import llm_client
from packages.analysis_core import map_risks_to_spans, render_template, restore_occurrences
from packages.analysis_core.reconcile import fill_missing_info, format_field_value
from packages.analysis_core.result_contract import CACHE_FIELDS, CACHE_RISKS, normalize_cache

from .models import Document, TemplateVersion
from .services import store
from .services.text_extract import UnsupportedFileType, extract_text
from .services.worker_client import WorkerSubmitError, submit_analysis

logger = logging.getLogger(__name__)


def _require_worker_token(request) -> bool:
    token = (getattr(settings, "WORKER_TOKEN", "") or os.environ.get("WORKER_TOKEN", "")).strip()
    if not token:
        return True
    req_token = request.headers.get("X-Worker-Token") or request.META.get("HTTP_X_WORKER_TOKEN")
    return bool(req_token) and req_token == token


def _json_body(request) -> dict:
    payload = json.loads(request.body.decode("utf-8") or "{}")
    if not isinstance(payload, dict):
        raise ValueError("payload must be json object")
    return payload


def _flag(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _not_found():
    return JsonResponse({"ok": False, "error": "document not found"}, status=404)


def _document_payload(doc: Document, include_content: bool = True) -> dict:
    data = {
        "id": doc.pk,
        "kind": doc.kind,
        "title": doc.title,
        "filename": doc.filename,
        "owner": doc.owner,
        "folder_id": doc.folder_id,
        "file_sha256": doc.file_sha256,
        "analysis_status": doc.analysis_status,
        "analysis_progress": doc.analysis_progress,
        "analysis_stage": doc.analysis_stage,
        "analysis_error": doc.analysis_error,
        "analysis_retry_count": doc.analysis_retry_count,
        "last_analyzed_at": doc.last_analyzed_at.isoformat() if doc.last_analyzed_at else None,
        "created_at": doc.created_at.isoformat() if doc.created_at else None,
        "updated_at": doc.updated_at.isoformat() if doc.updated_at else None,
    }
    if include_content:
        data["content"] = doc.content
        data["analysis_cache"] = normalize_cache(doc.analysis_cache)
        if doc.kind == Document.KIND_TEMPLATE:
            data["resolved_risks"] = doc.resolved_risks or []
    return data


def _version_payload(version: TemplateVersion) -> dict:
    return {
        "id": version.pk,
        "template_id": version.template_id,
        "version_name": version.version_name,
        "vendor_name": version.vendor_name,
        "version_data": version.version_data,
        "generated_content": version.generated_content,
        "created_by": version.created_by,
        "created_at": version.created_at.isoformat() if version.created_at else None,
    }


def _start(document_id: int, force: bool) -> JsonResponse:
    try:
        started, doc = store.begin_analysis(document_id, force=force)
    except Document.DoesNotExist:
        return _not_found()
    except ValueError as e:
        return JsonResponse({"ok": False, "error": str(e)}, status=400)

    if not started:
        if doc.analysis_status == "complete":
            return JsonResponse(
                {
                    "ok": True,
                    "started": False,
                    "message": "analysis already complete",
                    "status": doc.analysis_status,
                    "analysis_cache": normalize_cache(doc.analysis_cache),
                }
            )
        return JsonResponse(
            {
                "ok": False,
                "started": False,
                "error": "analysis already in progress",
                "status": doc.analysis_status,
                "progress": doc.analysis_progress,
            },
            status=409,
        )

    run_id = doc.analysis_run_id
    try:
        submit_meta = submit_analysis(doc)
    except WorkerSubmitError as e:
        logger.error("document %s: %s", doc.pk, e)
        store.mark_submit_failed(doc.pk, run_id, str(e))
        return JsonResponse({"ok": False, "error": str(e)}, status=500)

    store.record_submission(doc.pk, run_id, submit_meta)
    return JsonResponse({"ok": True, "started": True, "document_id": doc.pk, "run_id": run_id})


@require_http_methods(["GET"])
@ensure_csrf_cookie
def api_health(request):
    return JsonResponse({"ok": True, "service": "django"})


@csrf_exempt
@require_http_methods(["POST"])
def upload(request):
    """
    multipart: file (.pdf/.docx/.txt) or content, kind, title, owner, folder_id, analyze
    -> create Document, optionally start its analysis
    """
    kind = (request.POST.get("kind") or Document.KIND_CONTRACT).strip().lower()
    if kind not in {Document.KIND_CONTRACT, Document.KIND_TEMPLATE}:
        return JsonResponse({"ok": False, "error": f"invalid kind: {kind}"}, status=400)

    upload_file = request.FILES.get("file")
    filename = ""
    file_sha256 = ""
    if upload_file is not None:
        max_bytes = int(getattr(settings, "MAX_UPLOAD_BYTES", 20 * 1024 * 1024))
        if upload_file.size is not None and upload_file.size > max_bytes:
            return JsonResponse({"ok": False, "error": f"file too large (max {max_bytes} bytes)"}, status=400)

        filename = getattr(upload_file, "name", "") or "uploaded"
        h = hashlib.sha256()
        chunks = []
        for chunk in upload_file.chunks():
            h.update(chunk)
            chunks.append(chunk)
        file_sha256 = h.hexdigest()

        try:
            content = extract_text(filename, b"".join(chunks))
        except UnsupportedFileType as e:
            return JsonResponse({"ok": False, "error": str(e)}, status=400)
        except Exception as e:
            logger.exception("text extraction failed for %s", filename)
            return JsonResponse({"ok": False, "error": f"could not read file: {e}"}, status=400)
    else:
        content = request.POST.get("content") or ""

    if not content.strip():
        return JsonResponse({"ok": False, "error": "no text content found"}, status=400)

    doc = store.create_document(
        kind=kind,
        title=(request.POST.get("title") or "").strip(),
        content=content,
        owner=(request.POST.get("owner") or "").strip(),
        folder_id=(request.POST.get("folder_id") or "").strip(),
        filename=filename,
        file_sha256=file_sha256,
    )
    logger.info("document %s created: kind=%s chars=%d", doc.pk, kind, len(content))

    if _flag(request.POST.get("analyze")):
        started = _start(doc.pk, force=False)
        if started.status_code != 200:
            return started

    doc.refresh_from_db()
    return JsonResponse({"ok": True, "document": _document_payload(doc)}, status=201)


@csrf_exempt
@require_http_methods(["GET", "PUT", "DELETE"])
def document_detail(request, document_id: int):
    if request.method == "DELETE":
        if not store.delete_document(document_id):
            return _not_found()
        return JsonResponse({"ok": True})

    if request.method == "PUT":
        try:
            payload = _json_body(request)
        except ValueError as e:
            return JsonResponse({"ok": False, "error": str(e) or "invalid json"}, status=400)
        try:
            doc = store.update_document(
                document_id,
                title=payload.get("title"),
                content=payload.get("content"),
                folder_id=payload.get("folder_id"),
                resolved_risks=payload.get("resolved_risks"),
            )
        except Document.DoesNotExist:
            return _not_found()
        except ValueError as e:
            return JsonResponse({"ok": False, "error": str(e)}, status=400)
        return JsonResponse({"ok": True, "document": _document_payload(doc)})

    doc = Document.objects.filter(pk=document_id).first()
    if doc is None:
        return _not_found()
    return JsonResponse({"ok": True, "document": _document_payload(doc)})


@csrf_exempt
@require_http_methods(["POST"])
def start_analysis(request, document_id: int):
    force = False
    if request.body:
        try:
            force = _flag(_json_body(request).get("force"))
        except ValueError as e:
            return JsonResponse({"ok": False, "error": str(e) or "invalid json"}, status=400)
    return _start(document_id, force=force)


@csrf_exempt
@require_http_methods(["POST"])
def refresh_analysis(request, document_id: int):
    return _start(document_id, force=True)


@require_http_methods(["GET"])
def analysis_status(request, document_id: int):
    doc = Document.objects.filter(pk=document_id).first()
    if doc is None:
        return _not_found()

    meta = doc.runtime_meta if isinstance(doc.runtime_meta, dict) else {}
    return JsonResponse(
        {
            "ok": True,
            "id": doc.pk,
            "status": doc.analysis_status,
            "progress": doc.analysis_progress,
            "stage": doc.analysis_stage,
            "error": doc.analysis_error,
            "retry_count": doc.analysis_retry_count,
            "run_id": doc.analysis_run_id,
            "last_analyzed_at": doc.last_analyzed_at.isoformat() if doc.last_analyzed_at else None,
            "analysis_cache": normalize_cache(doc.analysis_cache),
            "stage_history": meta.get("stage_history") or [],
        }
    )


@csrf_exempt
@require_http_methods(["POST"])
def analysis_update(request):
    """
    Worker callback endpoint: /documents/api/analysis/update/
    POST JSON: {document_id,run_id,status,progress,stage,error,retry_count,cache_key,cache_data,content}
    """
    if not _require_worker_token(request):
        return JsonResponse({"ok": False, "error": "unauthorized worker"}, status=403)

    try:
        payload = _json_body(request)
    except ValueError as e:
        return JsonResponse({"ok": False, "error": str(e) or "invalid json"}, status=400)

    document_id = payload.get("document_id")
    if document_id is None or document_id == "":
        return JsonResponse({"ok": False, "error": "missing document_id"}, status=400)

    try:
        document_id_int = int(document_id)
    except (TypeError, ValueError):
        return JsonResponse({"ok": False, "error": f"invalid document_id: {document_id}"}, status=400)

    try:
        applied, reason = store.apply_analysis_update(document_id_int, payload)
    except Document.DoesNotExist:
        return _not_found()
    except ValueError as e:
        return JsonResponse({"ok": False, "error": str(e)}, status=400)
    except Exception as e:
        logger.exception("analysis update failed for document %s", document_id_int)
        return JsonResponse({"ok": False, "error": f"analysis update failed: {e}"}, status=500)

    return JsonResponse({"ok": True, "applied": applied, "reason": reason})


@require_http_methods(["GET"])
def highlights(request, document_id: int):
    doc = Document.objects.filter(pk=document_id).first()
    if doc is None:
        return _not_found()

    cache = normalize_cache(doc.analysis_cache)
    risks = (cache.get(CACHE_RISKS) or {}).get("risks") or []
    fields = cache.get(CACHE_FIELDS) or {}

    cutoff = float(getattr(settings, "RECONCILE_FUZZY_CUTOFF", 85))
    risk_highlights, unmapped = map_risks_to_spans(doc.content, risks, fuzzy_cutoff=cutoff)
    variables = restore_occurrences(doc.content, fields.get("missingInfo") or [])

    return JsonResponse(
        {
            "ok": True,
            "highlights": risk_highlights,
            "unmapped": unmapped,
            "variables": variables,
        }
    )


@csrf_exempt
@require_http_methods(["POST"])
def apply_missing_info(request, document_id: int):
    try:
        payload = _json_body(request)
    except ValueError as e:
        return JsonResponse({"ok": False, "error": str(e) or "invalid json"}, status=400)

    items = payload.get("items")
    if not isinstance(items, list) or not items:
        return JsonResponse({"ok": False, "error": "items must be a non-empty list"}, status=400)
    for item in items:
        if not isinstance(item, dict):
            return JsonResponse({"ok": False, "error": "each item must be an object"}, status=400)
        occurrences = item.get("occurrences") or []
        if not isinstance(occurrences, list) or not all(isinstance(o, dict) for o in occurrences):
            return JsonResponse({"ok": False, "error": "occurrences must be a list of objects"}, status=400)

    doc = Document.objects.filter(pk=document_id).first()
    if doc is None:
        return _not_found()

    updated, stats = fill_missing_info(doc.content, items)
    if not stats["applied"]:
        return JsonResponse({"ok": False, "error": "no values could be applied", "stats": stats}, status=400)

    doc = store.update_document(doc.pk, content=updated, reset_analysis=False)
    logger.info("document %s: applied %d missing-info replacements", doc.pk, stats["applied"])
    return JsonResponse({"ok": True, "content": doc.content, "stats": stats})


def _interactive(request, document_id: int):
    try:
        payload = _json_body(request)
    except ValueError as e:
        return None, None, JsonResponse({"ok": False, "error": str(e) or "invalid json"}, status=400)

    doc = Document.objects.filter(pk=document_id).first()
    if doc is None:
        return None, None, _not_found()
    return doc, payload, None


@csrf_exempt
@require_http_methods(["POST"])
def chat(request, document_id: int):
    doc, payload, error = _interactive(request, document_id)
    if error is not None:
        return error

    question = str(payload.get("question") or "").strip()
    if not question:
        return JsonResponse({"ok": False, "error": "missing question"}, status=400)

    try:
        answer = llm_client.chat_with_document(doc.content, question, payload.get("messages"))
    except Exception as e:
        logger.exception("chat failed for document %s", doc.pk)
        return JsonResponse({"ok": False, "error": f"chat failed: {e}"}, status=500)
    return JsonResponse({"ok": True, "answer": answer})


@csrf_exempt
@require_http_methods(["POST"])
def explain(request, document_id: int):
    doc, payload, error = _interactive(request, document_id)
    if error is not None:
        return error

    selected = str(payload.get("selectedText") or "").strip()
    if not selected:
        return JsonResponse({"ok": False, "error": "missing selectedText"}, status=400)

    try:
        explanation = llm_client.explain_text(str(payload.get("context") or doc.content), selected)
    except Exception as e:
        logger.exception("explain failed for document %s", doc.pk)
        return JsonResponse({"ok": False, "error": f"explain failed: {e}"}, status=500)
    return JsonResponse({"ok": True, "explanation": explanation})


@csrf_exempt
@require_http_methods(["POST"])
def redraft(request, document_id: int):
    doc, payload, error = _interactive(request, document_id)
    if error is not None:
        return error

    selected = str(payload.get("selectedText") or "").strip()
    if not selected:
        return JsonResponse({"ok": False, "error": "missing selectedText"}, status=400)

    try:
        result = llm_client.redraft_text(
            str(payload.get("context") or doc.content),
            selected,
            str(payload.get("instructions") or ""),
        )
    except Exception as e:
        logger.exception("redraft failed for document %s", doc.pk)
        return JsonResponse({"ok": False, "error": f"redraft failed: {e}"}, status=500)
    return JsonResponse({"ok": True, **result})


@csrf_exempt
@require_http_methods(["GET", "POST"])
def versions(request, document_id: int):
    doc = Document.objects.filter(pk=document_id).first()
    if doc is None:
        return _not_found()
    if doc.kind != Document.KIND_TEMPLATE:
        return JsonResponse({"ok": False, "error": "versions are only available for templates"}, status=400)

    if request.method == "GET":
        return JsonResponse({"ok": True, "versions": [_version_payload(v) for v in doc.versions.all()]})

    try:
        payload = _json_body(request)
    except ValueError as e:
        return JsonResponse({"ok": False, "error": str(e) or "invalid json"}, status=400)

    values = payload.get("values")
    if not isinstance(values, list):
        return JsonResponse({"ok": False, "error": "values must be a list"}, status=400)

    formatted = []
    for item in values:
        if not isinstance(item, dict):
            continue
        field_type = str(item.get("fieldType") or "text")
        formatted.append(
            {
                "label": str(item.get("label") or ""),
                "value": format_field_value(str(item.get("value") or ""), field_type),
                "fieldType": field_type,
            }
        )

    generated, unmatched = render_template(doc.content, formatted)
    now = timezone.now()
    version = TemplateVersion.objects.create(
        template=doc,
        version_name=str(payload.get("version_name") or "").strip() or f"Version {now:%Y-%m-%d %H:%M:%S}",
        vendor_name=str(payload.get("vendor_name") or "").strip() or "Default Vendor",
        version_data=formatted,
        generated_content=generated,
        created_by=str(payload.get("created_by") or ""),
        created_at=now,
    )
    return JsonResponse({"ok": True, "version": _version_payload(version), "unmatched": unmatched}, status=201)
