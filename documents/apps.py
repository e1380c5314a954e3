from pathlib import Path

from django.apps import AppConfig


class DocumentsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "documents"

    def ready(self) -> None:
        """Share the worker's LLM configuration; chat, explain and redraft call the provider from Django."""
        from analysis_worker.app_config import bootstrap

        bootstrap(Path(__file__).resolve().parents[1])
