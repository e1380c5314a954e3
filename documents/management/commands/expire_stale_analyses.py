from __future__ import annotations

from django.conf import settings
from django.core.management.base import BaseCommand

from documents.services.store import expire_stale_analyses


class Command(BaseCommand):
    help = "Mark analyses stuck in a running state as failed so they can be restarted."

    def add_arguments(self, parser):
        parser.add_argument(
            "--minutes",
            type=int,
            default=None,
            help="Idle minutes before a run is considered stale (default: settings.ANALYSIS_STALE_MINUTES or 30).",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Only print what would be expired.",
        )

    def handle(self, *args, **options):
        minutes = options.get("minutes")
        if minutes is None:
            minutes = int(getattr(settings, "ANALYSIS_STALE_MINUTES", 30))

        if minutes <= 0:
            self.stdout.write(self.style.WARNING("ANALYSIS_STALE_MINUTES <= 0, nothing to expire."))
            return

        dry_run = bool(options.get("dry_run"))
        ids = expire_stale_analyses(minutes, dry_run=dry_run)
        for pk in ids:
            prefix = "[dry-run] expire" if dry_run else "expired"
            self.stdout.write(f"{prefix} document {pk}")

        self.stdout.write(self.style.SUCCESS(f"expire done. affected documents: {len(ids)}"))
