import pytest

from documents.services import store


@pytest.fixture
def make_document(db):
    def _make(kind="contract", content="The Tenant shall pay rent monthly.", **kwargs):
        kwargs.setdefault("title", "Lease")
        return store.create_document(kind=kind, content=content, **kwargs)

    return _make


@pytest.fixture
def submitted(monkeypatch):
    """Replace the worker submission; collects the documents handed to it."""
    sent = []

    def fake_submit(doc):
        sent.append({"id": doc.pk, "run_id": doc.analysis_run_id, "kind": doc.kind})
        return {"submit_attempts": 1, "submit_seconds": 0.01, "task_id": "t-1"}

    monkeypatch.setattr("documents.views.submit_analysis", fake_submit)
    return sent
