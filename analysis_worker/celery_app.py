from __future__ import annotations

import os
from pathlib import Path

from celery import Celery

from analysis_worker.app_config import _env_flag, _env_int, bootstrap

BASE_DIR = Path(__file__).resolve().parents[1]
bootstrap(BASE_DIR)

BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://127.0.0.1:6379/0")
RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", "redis://127.0.0.1:6379/1")

app = Celery("analysis_worker", broker=BROKER_URL, backend=RESULT_BACKEND)

app.conf.update(
    task_track_started=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone=os.environ.get("CELERY_TIMEZONE", "UTC"),
    enable_utc=True,
    task_ignore_result=_env_flag("CELERY_TASK_IGNORE_RESULT", True),
    result_expires=_env_int("CELERY_RESULT_EXPIRES", 3600),
    worker_prefetch_multiplier=_env_int("CELERY_PREFETCH_MULTIPLIER", 1),
    broker_pool_limit=_env_int("CELERY_BROKER_POOL_LIMIT", 10),
    broker_connection_retry_on_startup=True,
    task_always_eager=_env_flag("CELERY_TASK_ALWAYS_EAGER", False),
)

app.autodiscover_tasks(["analysis_worker"])
