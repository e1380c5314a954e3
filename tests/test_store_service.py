from datetime import timedelta
from io import StringIO

import pytest
from django.core.management import call_command
from django.utils import timezone

from documents.models import Document, TemplateVersion
from documents.services import store

pytestmark = pytest.mark.django_db


def _running(make_document, **kwargs):
    doc = make_document(**kwargs)
    started, doc = store.begin_analysis(doc.pk)
    assert started
    return doc


def test_create_document_defaults(make_document):
    doc = make_document(title="", filename="nda.pdf")
    assert doc.title == "nda.pdf"
    assert doc.analysis_status == "pending"
    assert doc.runtime_meta["stage_history"][0]["stage"] == "created"

    with pytest.raises(ValueError):
        store.create_document(kind="memo", title="x", content="y")


def test_begin_analysis_gates_reentry(make_document):
    doc = make_document()
    started, doc = store.begin_analysis(doc.pk)
    assert started
    assert doc.analysis_status == "in_progress"
    assert doc.analysis_progress == 0
    assert len(doc.analysis_run_id) == 32

    run_id = doc.analysis_run_id
    started, doc = store.begin_analysis(doc.pk, force=True)
    assert not started
    assert doc.analysis_run_id == run_id


def test_begin_analysis_complete_requires_force(make_document):
    doc = make_document()
    Document.objects.filter(pk=doc.pk).update(analysis_status="complete", analysis_run_id="old")

    started, doc = store.begin_analysis(doc.pk)
    assert not started
    assert doc.analysis_run_id == "old"

    started, doc = store.begin_analysis(doc.pk, force=True)
    assert started
    assert doc.analysis_run_id != "old"


def test_begin_analysis_needs_content(make_document):
    doc = make_document(content="   ")
    with pytest.raises(ValueError):
        store.begin_analysis(doc.pk)


def test_apply_update_merges_cache_and_keeps_progress_monotonic(make_document):
    doc = _running(make_document)
    run_id = doc.analysis_run_id

    store.apply_analysis_update(doc.pk, {"run_id": run_id, "status": "summary_complete", "progress": 33})
    store.apply_analysis_update(doc.pk, {"run_id": run_id, "cache_key": "summary", "cache_data": {"overview": "x"}})
    store.apply_analysis_update(doc.pk, {"run_id": run_id, "progress": 20, "stage": "late message"})
    store.apply_analysis_update(doc.pk, {"run_id": run_id, "cache_key": "risks", "cache_data": {"risks": []}})
    store.apply_analysis_update(doc.pk, {"run_id": run_id, "retry_count": 2})

    doc.refresh_from_db()
    assert doc.analysis_progress == 33
    assert doc.analysis_stage == "late message"
    assert doc.analysis_retry_count == 2
    assert doc.analysis_cache["summary"] == {"overview": "x"}
    assert doc.analysis_cache["risks"] == {"risks": []}
    assert doc.analysis_cache["lastAnalyzed"]
    assert doc.last_analyzed_at is not None
    stages = [e["stage"] for e in doc.runtime_meta["stage_history"]]
    assert stages[-1] == "late message"


def test_apply_update_ignores_stale_and_finished_runs(make_document):
    doc = _running(make_document)
    run_id = doc.analysis_run_id

    assert store.apply_analysis_update(doc.pk, {"run_id": "other", "status": "complete"}) == (False, "stale run")
    assert store.apply_analysis_update(doc.pk, {"status": "complete"}) == (False, "stale run")

    assert store.apply_analysis_update(doc.pk, {"run_id": run_id, "status": "complete", "progress": 100}) == (True, "ok")
    assert store.apply_analysis_update(doc.pk, {"run_id": run_id, "status": "in_progress", "progress": 10}) == (
        False,
        "run finished",
    )

    doc.refresh_from_db()
    assert (doc.analysis_status, doc.analysis_progress) == ("complete", 100)


def test_apply_update_failure_keeps_progress(make_document):
    doc = _running(make_document)
    run_id = doc.analysis_run_id
    store.apply_analysis_update(doc.pk, {"run_id": run_id, "status": "risks_complete", "progress": 66})
    store.apply_analysis_update(doc.pk, {"run_id": run_id, "status": "failed", "stage": "Analysis failed", "error": "boom"})

    doc.refresh_from_db()
    assert doc.analysis_status == "failed"
    assert doc.analysis_progress == 66
    assert doc.analysis_error == "boom"


def test_apply_update_rejects_bad_values(make_document):
    doc = _running(make_document)
    with pytest.raises(ValueError):
        store.apply_analysis_update(doc.pk, {"run_id": doc.analysis_run_id, "status": "done"})
    with pytest.raises(ValueError):
        store.apply_analysis_update(doc.pk, {"run_id": doc.analysis_run_id, "retry_count": "many"})


def test_apply_update_content_rewrite_and_batch(make_document):
    doc = _running(make_document, kind="template", content="Between ____ and Acme.")
    store.apply_analysis_update(
        doc.pk,
        {"run_id": doc.analysis_run_id, "content": "Between {{Party}} and Acme.", "cache_batch": {"fields": {"missingInfo": []}}},
    )
    doc.refresh_from_db()
    assert doc.content == "Between {{Party}} and Acme."
    assert doc.analysis_cache["fields"] == {"missingInfo": []}


def test_mark_submit_failed_only_for_current_run(make_document):
    doc = _running(make_document)
    store.mark_submit_failed(doc.pk, "other-run", "nope")
    doc.refresh_from_db()
    assert doc.analysis_status == "in_progress"

    store.mark_submit_failed(doc.pk, doc.analysis_run_id, "submit to worker failed: refused")
    doc.refresh_from_db()
    assert doc.analysis_status == "failed"
    assert doc.analysis_error == "submit to worker failed: refused"


def test_record_submission_sets_stage_before_worker_reports(make_document):
    doc = _running(make_document)
    assert store.record_submission(doc.pk, doc.analysis_run_id, {"task_id": "t-1"})

    doc.refresh_from_db()
    assert (doc.analysis_progress, doc.analysis_stage) == (1, "Submitted to worker")
    assert doc.runtime_meta["task_id"] == "t-1"
    assert doc.runtime_meta["stage_history"][-1]["stage"] == "Submitted to worker"


def test_record_submission_after_worker_progress_keeps_stage(make_document):
    doc = _running(make_document)
    run_id = doc.analysis_run_id
    store.apply_analysis_update(doc.pk, {"run_id": run_id, "status": "in_progress", "progress": 10, "stage": "Starting summary analysis..."})

    assert store.record_submission(doc.pk, run_id, {"task_id": "t-1"})
    assert not store.record_submission(doc.pk, "other-run", {"task_id": "t-2"})

    doc.refresh_from_db()
    assert (doc.analysis_progress, doc.analysis_stage) == (10, "Starting summary analysis...")
    assert doc.runtime_meta["task_id"] == "t-1"
    stages = [e["stage"] for e in doc.runtime_meta["stage_history"]]
    assert "Submitted to worker" not in stages


def test_update_document_content_resets_complete(make_document):
    doc = make_document()
    Document.objects.filter(pk=doc.pk).update(analysis_status="complete", analysis_progress=100)

    doc = store.update_document(doc.pk, title="Renamed")
    assert doc.analysis_status == "complete"

    doc = store.update_document(doc.pk, content="New text")
    assert (doc.analysis_status, doc.analysis_progress) == ("pending", 0)
    assert doc.title == "Renamed"


def test_update_document_without_reset(make_document):
    doc = make_document()
    Document.objects.filter(pk=doc.pk).update(analysis_status="complete", analysis_progress=100)
    doc = store.update_document(doc.pk, content="Filled in", reset_analysis=False)
    assert doc.analysis_status == "complete"


def test_resolved_risks_only_for_templates(make_document):
    contract = make_document()
    with pytest.raises(ValueError):
        store.update_document(contract.pk, resolved_risks=[{"id": "r"}])

    template = make_document(kind="template")
    template = store.update_document(template.pk, resolved_risks=[{"id": "r"}])
    assert template.resolved_risks == [{"id": "r"}]


def test_delete_cascades_versions(make_document):
    template = make_document(kind="template")
    TemplateVersion.objects.create(template=template, version_name="v1", created_at=timezone.now())

    assert store.delete_document(template.pk)
    assert not TemplateVersion.objects.exists()
    assert not store.delete_document(template.pk)


def test_expire_stale_analyses(make_document):
    stale = _running(make_document)
    fresh = _running(make_document)
    idle = make_document()
    Document.objects.filter(pk__in=[stale.pk, idle.pk]).update(updated_at=timezone.now() - timedelta(hours=2))

    assert store.expire_stale_analyses(30, dry_run=True) == [stale.pk]
    stale.refresh_from_db()
    assert stale.analysis_status == "in_progress"

    assert store.expire_stale_analyses(30) == [stale.pk]
    stale.refresh_from_db()
    fresh.refresh_from_db()
    assert stale.analysis_status == "failed"
    assert "timed out" in stale.analysis_error
    assert fresh.analysis_status == "in_progress"


def test_expire_command(make_document):
    doc = _running(make_document)
    Document.objects.filter(pk=doc.pk).update(updated_at=timezone.now() - timedelta(hours=2))

    out = StringIO()
    call_command("expire_stale_analyses", "--minutes", "30", "--dry-run", stdout=out)
    assert f"[dry-run] expire document {doc.pk}" in out.getvalue()

    out = StringIO()
    call_command("expire_stale_analyses", "--minutes", "30", stdout=out)
    assert "affected documents: 1" in out.getvalue()
    doc.refresh_from_db()
    assert doc.analysis_status == "failed"
