import json
from io import BytesIO

import pytest
from django.core.files.uploadedfile import SimpleUploadedFile
from docx import Document as DocxDocument

from documents.models import Document, TemplateVersion
from documents.services import store
from documents.services.worker_client import WorkerSubmitError

pytestmark = pytest.mark.django_db

API = "/documents/api"


def _post_json(client, url, payload, **extra):
    return client.post(url, data=json.dumps(payload), content_type="application/json", **extra)


def _complete(doc, cache):
    Document.objects.filter(pk=doc.pk).update(analysis_status="complete", analysis_progress=100, analysis_cache=cache)


def test_health(client):
    assert client.get(f"{API}/health/").json() == {"ok": True, "service": "django"}


def test_upload_text_file(client):
    f = SimpleUploadedFile("nda.txt", b"Mutual NDA between ____ and Acme.", content_type="text/plain")
    resp = client.post(f"{API}/upload/", {"file": f, "kind": "template", "owner": "u1"})

    assert resp.status_code == 201
    body = resp.json()["document"]
    assert body["kind"] == "template"
    assert body["content"] == "Mutual NDA between ____ and Acme."
    assert body["title"] == "nda.txt"
    assert len(body["file_sha256"]) == 64
    assert body["analysis_status"] == "pending"


def test_upload_docx_file(client):
    doc = DocxDocument()
    doc.add_paragraph("Lease Agreement")
    doc.add_paragraph("The Tenant shall pay rent.")
    buf = BytesIO()
    doc.save(buf)

    f = SimpleUploadedFile("lease.docx", buf.getvalue(), content_type="application/vnd.openxmlformats-officedocument.wordprocessingml.document")
    resp = client.post(f"{API}/upload/", {"file": f})

    assert resp.status_code == 201
    assert resp.json()["document"]["content"] == "Lease Agreement\nThe Tenant shall pay rent."


def test_upload_rejects_bad_input(client, settings):
    bad = SimpleUploadedFile("tool.exe", b"MZ...", content_type="application/octet-stream")
    assert client.post(f"{API}/upload/", {"file": bad}).status_code == 400

    fake_pdf = SimpleUploadedFile("scan.pdf", b"not a pdf", content_type="application/pdf")
    assert client.post(f"{API}/upload/", {"file": fake_pdf}).status_code == 400

    assert client.post(f"{API}/upload/", {"content": "x", "kind": "memo"}).status_code == 400
    assert client.post(f"{API}/upload/", {"content": "   "}).status_code == 400

    settings.MAX_UPLOAD_BYTES = 10
    big = SimpleUploadedFile("big.txt", b"x" * 11, content_type="text/plain")
    assert client.post(f"{API}/upload/", {"file": big}).status_code == 400
    assert not Document.objects.exists()


def test_upload_with_analyze_starts_run(client, submitted):
    resp = client.post(f"{API}/upload/", {"content": "The Tenant shall pay rent.", "analyze": "1"})

    assert resp.status_code == 201
    body = resp.json()["document"]
    assert body["analysis_status"] == "in_progress"
    assert body["analysis_progress"] == 1
    assert submitted[0]["id"] == body["id"]


def test_start_analysis_submits_and_gates(client, make_document, submitted):
    doc = make_document()
    resp = client.post(f"{API}/{doc.pk}/analyze/")
    assert resp.status_code == 200
    assert resp.json()["started"] is True
    assert submitted[0]["run_id"] == resp.json()["run_id"]

    doc.refresh_from_db()
    assert doc.analysis_stage == "Submitted to worker"
    assert doc.runtime_meta["task_id"] == "t-1"

    again = client.post(f"{API}/{doc.pk}/analyze/")
    assert again.status_code == 409
    assert again.json()["status"] == "in_progress"
    assert len(submitted) == 1


def test_start_analysis_returns_cache_when_complete(client, make_document, submitted):
    doc = make_document()
    _complete(doc, {"summary": {"overview": "x"}})

    resp = client.post(f"{API}/{doc.pk}/analyze/")
    assert resp.status_code == 200
    assert resp.json()["started"] is False
    assert resp.json()["analysis_cache"] == {"summary": {"overview": "x"}}
    assert submitted == []

    forced = _post_json(client, f"{API}/{doc.pk}/analyze/", {"force": True})
    assert forced.json()["started"] is True

    Document.objects.filter(pk=doc.pk).update(analysis_status="complete")
    refreshed = client.post(f"{API}/{doc.pk}/refresh/")
    assert refreshed.json()["started"] is True
    assert len(submitted) == 2


def test_start_analysis_submit_failure_marks_failed(client, make_document, monkeypatch):
    def broken(doc):
        raise WorkerSubmitError("submit to worker failed: connection refused")

    monkeypatch.setattr("documents.views.submit_analysis", broken)
    doc = make_document()
    resp = client.post(f"{API}/{doc.pk}/analyze/")

    assert resp.status_code == 500
    assert resp.json()["ok"] is False
    doc.refresh_from_db()
    assert doc.analysis_status == "failed"
    assert "connection refused" in doc.analysis_error


def test_start_analysis_unknown_document(client, db):
    assert client.post(f"{API}/999/analyze/").status_code == 404


def test_document_detail_crud(client, make_document):
    doc = make_document()
    assert client.get(f"{API}/{doc.pk}/").json()["document"]["title"] == "Lease"

    resp = client.put(f"{API}/{doc.pk}/", data=json.dumps({"title": "Lease v2"}), content_type="application/json")
    assert resp.json()["document"]["title"] == "Lease v2"

    bad = client.put(f"{API}/{doc.pk}/", data=json.dumps({"resolved_risks": []}), content_type="application/json")
    assert bad.status_code == 400

    assert client.delete(f"{API}/{doc.pk}/").json() == {"ok": True}
    assert client.get(f"{API}/{doc.pk}/").status_code == 404
    assert client.delete(f"{API}/{doc.pk}/").status_code == 404


def test_status_endpoint(client, make_document):
    doc = make_document()
    _, doc = store.begin_analysis(doc.pk)
    store.apply_analysis_update(doc.pk, {"run_id": doc.analysis_run_id, "status": "summary_complete", "progress": 33, "stage": "Summary analysis complete"})

    body = client.get(f"{API}/{doc.pk}/status/").json()
    assert body["status"] == "summary_complete"
    assert body["progress"] == 33
    assert body["stage"] == "Summary analysis complete"
    assert [e["stage"] for e in body["stage_history"]][-1] == "Summary analysis complete"


def test_analysis_update_requires_worker_token(client, make_document, settings):
    settings.WORKER_TOKEN = "tok"
    doc = make_document()
    _, doc = store.begin_analysis(doc.pk)
    url = f"{API}/analysis/update/"
    payload = {"document_id": doc.pk, "run_id": doc.analysis_run_id, "status": "summary_complete", "progress": 33}

    assert _post_json(client, url, payload).status_code == 403
    assert _post_json(client, url, payload, HTTP_X_WORKER_TOKEN="wrong").status_code == 403

    resp = _post_json(client, url, payload, HTTP_X_WORKER_TOKEN="tok")
    assert resp.json() == {"ok": True, "applied": True, "reason": "ok"}
    doc.refresh_from_db()
    assert doc.analysis_status == "summary_complete"


def test_analysis_update_validation(client, make_document, settings):
    settings.WORKER_TOKEN = ""
    doc = make_document()
    _, doc = store.begin_analysis(doc.pk)
    url = f"{API}/analysis/update/"

    assert client.post(url, data="{not json", content_type="application/json").status_code == 400
    assert _post_json(client, url, {"run_id": "x"}).status_code == 400
    assert _post_json(client, url, {"document_id": "abc"}).status_code == 400
    assert _post_json(client, url, {"document_id": 999, "run_id": "x"}).status_code == 404
    assert _post_json(client, url, {"document_id": doc.pk, "run_id": doc.analysis_run_id, "status": "bogus"}).status_code == 400

    stale = _post_json(client, url, {"document_id": doc.pk, "run_id": "old-run", "status": "complete"})
    assert stale.json() == {"ok": True, "applied": False, "reason": "stale run"}


def test_highlights(client, make_document):
    content = "Recitals. The Tenant shall pay all repairs. Signed by [Tenant Name]."
    doc = make_document(content=content)
    _complete(
        doc,
        {
            "risks": {
                "risks": [
                    {"id": "risk-0", "clause": "the tenant shall pay all repairs", "riskLevel": "high"},
                    {"id": "risk-1", "clause": "A clause that is nowhere in this document at all."},
                ]
            },
            "fields": {
                "missingInfo": [
                    {"id": "name", "label": "Tenant Name", "occurrences": [{"text": "[Tenant Name]", "position": {"start": 0, "end": 13}}]}
                ]
            },
        },
    )

    body = client.get(f"{API}/{doc.pk}/highlights/").json()
    [highlight] = body["highlights"]
    assert highlight["textPosition"] == {"start": 10, "end": 42}
    assert highlight["matchStrategy"] == "case_insensitive"
    assert body["unmapped"] == ["risk-1"]
    assert body["variables"][0]["occurrences"][0]["position"] == {"start": 54, "end": 67}


DATE_ITEM = {"id": "d", "label": "Date", "fieldType": "date", "occurrences": [{"text": "[Date]", "position": {"start": 6, "end": 12}}]}
PARTY_ITEM = {"id": "p", "label": "Party", "fieldType": "text", "occurrences": [{"text": "[Party]", "position": {"start": 21, "end": 28}}]}


def _fill(client, doc, *items):
    return _post_json(client, f"{API}/{doc.pk}/apply-missing-info/", {"items": list(items)})


def test_worker_run_on_contract_places_variable_highlights(client, make_document, settings):
    settings.WORKER_TOKEN = ""
    doc = make_document(content="Dated ____ between ____.")
    _, doc = store.begin_analysis(doc.pk)
    url = f"{API}/analysis/update/"
    run = {"document_id": doc.pk, "run_id": doc.analysis_run_id}
    processed = "Dated [Date] between [Party]."

    fields = {"processedContent": processed, "missingInfo": [DATE_ITEM, PARTY_ITEM]}
    _post_json(client, url, {**run, "cache_key": "fields", "cache_data": fields})
    _post_json(client, url, {**run, "content": processed})
    _post_json(client, url, {**run, "status": "complete", "progress": 100})

    doc.refresh_from_db()
    assert doc.content == processed
    variables = client.get(f"{API}/{doc.pk}/highlights/").json()["variables"]
    assert [v["occurrences"][0]["position"] for v in variables] == [{"start": 6, "end": 12}, {"start": 21, "end": 28}]


def test_apply_missing_info_fills_current_content(client, make_document):
    content = "Dated [Date] between [Party]."
    doc = make_document(content=content)
    _complete(doc, {"fields": {"processedContent": content, "missingInfo": [DATE_ITEM, PARTY_ITEM]}})

    first = _fill(client, doc, {**DATE_ITEM, "userInput": "2025-01-09"})
    assert first.status_code == 200
    assert first.json()["content"] == "Dated 9th day of January, 2025 between [Party]."

    second = _fill(client, doc, {**PARTY_ITEM, "userInput": "Acme"})
    assert second.status_code == 200
    assert second.json()["content"] == "Dated 9th day of January, 2025 between Acme."

    doc.refresh_from_db()
    assert doc.content == "Dated 9th day of January, 2025 between Acme."
    assert doc.analysis_status == "complete"


def test_apply_missing_info_keeps_user_edits(client, make_document):
    content = "Dated [Date] between [Party]."
    doc = make_document(content=content)
    _complete(doc, {"fields": {"processedContent": content, "missingInfo": [DATE_ITEM, PARTY_ITEM]}})

    edited = content + " Extra clause added by user."
    client.put(f"{API}/{doc.pk}/", data=json.dumps({"content": edited}), content_type="application/json")

    resp = _fill(client, doc, {**PARTY_ITEM, "userInput": "Acme"})
    assert resp.json()["content"] == "Dated [Date] between Acme. Extra clause added by user."


def test_apply_missing_info_nothing_applied(client, make_document):
    doc = make_document()
    items = [{"id": "x", "userInput": "v", "occurrences": [{"text": "[Nope]", "position": {"start": 0, "end": 6}}]}]
    assert _post_json(client, f"{API}/{doc.pk}/apply-missing-info/", {"items": items}).status_code == 400
    assert _post_json(client, f"{API}/{doc.pk}/apply-missing-info/", {"items": []}).status_code == 400


def test_apply_missing_info_rejects_malformed_items(client, make_document):
    doc = make_document(content="Dated [Date].")
    url = f"{API}/{doc.pk}/apply-missing-info/"

    assert _post_json(client, url, {"items": ["[Date]"]}).status_code == 400
    assert _post_json(client, url, {"items": [{"userInput": "x", "occurrences": "[Date]"}]}).status_code == 400
    assert _post_json(client, url, {"items": [{"userInput": "x", "occurrences": [None]}]}).status_code == 400

    doc.refresh_from_db()
    assert doc.content == "Dated [Date]."


def test_chat_explain_redraft(client, make_document, monkeypatch):
    doc = make_document()
    seen = {}

    def fake_chat(content, question, previous):
        seen["chat"] = (content, question, previous)
        return "Monthly."

    monkeypatch.setattr("documents.views.llm_client.chat_with_document", fake_chat)
    monkeypatch.setattr("documents.views.llm_client.explain_text", lambda context, selected: f"explains {selected}")
    monkeypatch.setattr(
        "documents.views.llm_client.redraft_text",
        lambda context, selected, instructions: {"redraftedText": selected.upper(), "explanation": instructions},
    )

    chat = _post_json(client, f"{API}/{doc.pk}/chat/", {"question": "When is rent due?", "messages": [{"role": "user", "content": "hi"}]})
    assert chat.json() == {"ok": True, "answer": "Monthly."}
    assert seen["chat"] == (doc.content, "When is rent due?", [{"role": "user", "content": "hi"}])

    explain = _post_json(client, f"{API}/{doc.pk}/explain/", {"selectedText": "pay rent"})
    assert explain.json()["explanation"] == "explains pay rent"

    redraft = _post_json(client, f"{API}/{doc.pk}/redraft/", {"selectedText": "pay rent", "instructions": "shorter"})
    assert redraft.json() == {"ok": True, "redraftedText": "PAY RENT", "explanation": "shorter"}

    assert _post_json(client, f"{API}/{doc.pk}/chat/", {"question": " "}).status_code == 400
    assert _post_json(client, f"{API}/{doc.pk}/explain/", {}).status_code == 400
    assert _post_json(client, f"{API}/999/redraft/", {"selectedText": "x"}).status_code == 404


def test_chat_provider_failure(client, make_document, monkeypatch):
    doc = make_document()

    def down(*args):
        raise RuntimeError("provider down")

    monkeypatch.setattr("documents.views.llm_client.chat_with_document", down)
    resp = _post_json(client, f"{API}/{doc.pk}/chat/", {"question": "Anything?"})
    assert resp.status_code == 500
    assert "provider down" in resp.json()["error"]


def test_template_versions(client, make_document):
    template = make_document(kind="template", content="Agreement with {{Vendor_Name}} dated {{Start_Date}}.")
    values = [
        {"label": "Vendor Name", "value": "Globex", "fieldType": "text"},
        {"label": "Start Date", "value": "2025-03-22", "fieldType": "date"},
        {"label": "Unknown", "value": "x", "fieldType": "text"},
    ]

    resp = _post_json(client, f"{API}/{template.pk}/versions/", {"values": values, "vendor_name": "Globex"})
    assert resp.status_code == 201
    version = resp.json()["version"]
    assert version["generated_content"] == "Agreement with Globex dated 22nd day of March, 2025."
    assert version["vendor_name"] == "Globex"
    assert version["version_name"].startswith("Version ")
    assert resp.json()["unmatched"] == ["Unknown"]

    listed = client.get(f"{API}/{template.pk}/versions/").json()["versions"]
    assert [v["id"] for v in listed] == [version["id"]]
    assert TemplateVersion.objects.get().version_data[1]["value"] == "22nd day of March, 2025"


def test_versions_only_for_templates(client, make_document):
    contract = make_document()
    assert client.get(f"{API}/{contract.pk}/versions/").status_code == 400
    template = make_document(kind="template")
    assert _post_json(client, f"{API}/{template.pk}/versions/", {"values": "nope"}).status_code == 400
