from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import requests

from analysis_worker.app_config import CallbackConfig

from .pipeline import AnalysisStore

logger = logging.getLogger("analysis_worker")
_CALLBACK_SESSION = requests.Session()


class CallbackError(RuntimeError):
    pass


def notify_django(payload: Dict[str, Any], cfg: Optional[CallbackConfig] = None, session: Any = None) -> None:
    """POST one update to the Django callback, retrying with exponential backoff."""
    cfg = cfg or CallbackConfig.from_env()
    session = session or _CALLBACK_SESSION
    headers = {"X-Worker-Token": cfg.token} if cfg.token else {}

    last_err: Exception | None = None
    for i in range(cfg.retry):
        try:
            r = session.post(cfg.url, json=payload, timeout=cfg.timeout, headers=headers)
            if r.status_code != 200:
                raise CallbackError(f"non-200: {r.status_code} {r.text[:400]}")
            logger.info(
                "[callback] ok: document=%s run=%s status=%s progress=%s stage=%s",
                payload.get("document_id"),
                payload.get("run_id"),
                payload.get("status"),
                payload.get("progress"),
                payload.get("stage"),
            )
            return
        except (requests.RequestException, CallbackError) as e:
            last_err = e
            if i < cfg.retry - 1:
                time.sleep(cfg.backoff * (2**i))

    logger.error("[callback] failed after %d attempts: %s", cfg.retry, last_err)
    raise CallbackError(f"callback failed after {cfg.retry} attempts: {last_err}")


class CallbackStore(AnalysisStore):
    """Reports one pipeline run of one document back to Django over HTTP."""

    def __init__(self, document_id: int, run_id: str, cfg: Optional[CallbackConfig] = None, session: Any = None) -> None:
        self.document_id = document_id
        self.run_id = run_id
        self.cfg = cfg or CallbackConfig.from_env()
        self.session = session

    def _send(self, **fields: Any) -> None:
        payload = {"document_id": self.document_id, "run_id": self.run_id}
        payload.update({k: v for k, v in fields.items() if v is not None})
        notify_django(payload, self.cfg, self.session)

    def update_status(self, status: str, progress: Optional[int], stage: str = "", error: Optional[str] = None) -> None:
        self._send(status=status, progress=progress, stage=stage or None, error=error)

    def update_retry_count(self, count: int) -> None:
        self._send(retry_count=count)

    def merge_cache(self, key: str, data: Any) -> None:
        self._send(cache_key=key, cache_data=data)

    def update_content(self, content: str) -> None:
        self._send(content=content)
