# Analysis worker API.
#
# Django submits POST /analyze; the request is queued to Celery and the task
# runs the staged pipeline, reporting every checkpoint back to
# DJANGO_CALLBACK_URL with the X-Worker-Token header.
#
# Suggested .env:
#   OPENAI_API_KEY=...
#   LLM_MODEL=gpt-4o
#   DJANGO_CALLBACK_URL=http://127.0.0.1:8000/documents/api/analysis/update/
#   WORKER_TOKEN=...
#   ANALYSIS_MAX_RETRIES=2
#   ANALYSIS_BACKOFF_BASE=1

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Literal

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from analysis_worker.app_config import bootstrap
from analysis_worker.celery_app import app as celery_app

from .llm_provider import build_llm_client
from .pipeline import AnalysisPipeline
from .store import CallbackStore

BASE_DIR = Path(__file__).resolve().parents[2]
bootstrap(BASE_DIR)

app = FastAPI()
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("analysis_worker")


class AnalyzeReq(BaseModel):
    document_id: int
    run_id: str = Field(min_length=1)
    kind: Literal["contract", "template"]
    content: str = Field(min_length=1)
    resolved_risks: List[Dict[str, Any]] = Field(default_factory=list)


@app.get("/healthz")
def healthz():
    return {"ok": True}


def run_analysis(document_id: int, run_id: str, kind: str, content: str, resolved_risks: List[Dict[str, Any]]) -> Dict[str, Any]:
    cfg = bootstrap(BASE_DIR)
    pipeline = AnalysisPipeline(
        store=CallbackStore(document_id, run_id, cfg.callback),
        client=build_llm_client(),
        max_retries=cfg.pipeline.max_retries,
        backoff_base=cfg.pipeline.backoff_base,
    )
    started = time.perf_counter()
    logger.info("[document %s] analysis start | run=%s kind=%s chars=%d", document_id, run_id, kind, len(content))
    result = pipeline.run(kind, content, resolved_risks)
    logger.info("[document %s] analysis finished in %.1fs", document_id, time.perf_counter() - started)
    return result


@app.post("/analyze")
def analyze(req: AnalyzeReq):
    try:
        task = celery_app.send_task(
            "analysis_worker.analyze_document",
            args=[req.document_id, req.run_id, req.kind, req.content, req.resolved_risks],
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"enqueue failed: {e}")
    return {"ok": True, "document_id": req.document_id, "run_id": req.run_id, "task_id": task.id}
