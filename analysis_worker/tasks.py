from __future__ import annotations

from typing import Any, Dict, List, Optional

from analysis_worker.celery_app import app


@app.task(name="analysis_worker.analyze_document")
def analyze_document(
    document_id: int,
    run_id: str,
    kind: str,
    content: str,
    resolved_risks: Optional[List[Dict[str, Any]]] = None,
) -> None:
    # Lazy import to avoid circular imports at worker startup
    from analysis_worker.api.main import run_analysis

    run_analysis(document_id, run_id, kind, content, resolved_risks or [])
