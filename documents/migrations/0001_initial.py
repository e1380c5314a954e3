import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Document",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "kind",
                    models.CharField(
                        choices=[("contract", "contract"), ("template", "template")],
                        db_index=True,
                        default="contract",
                        max_length=16,
                    ),
                ),
                ("owner", models.CharField(blank=True, db_index=True, default="", max_length=128)),
                ("folder_id", models.CharField(blank=True, default="", max_length=128)),
                ("title", models.CharField(default="", max_length=255)),
                ("filename", models.CharField(blank=True, default="", max_length=255)),
                ("file_sha256", models.CharField(blank=True, db_index=True, default="", max_length=64)),
                ("content", models.TextField(blank=True, default="")),
                ("analysis_cache", models.JSONField(blank=True, default=dict)),
                (
                    "analysis_status",
                    models.CharField(
                        choices=[
                            ("pending", "pending"),
                            ("in_progress", "in_progress"),
                            ("summary_complete", "summary_complete"),
                            ("risks_complete", "risks_complete"),
                            ("complete", "complete"),
                            ("failed", "failed"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("analysis_progress", models.IntegerField(default=0)),
                ("analysis_retry_count", models.IntegerField(default=0)),
                ("analysis_error", models.TextField(blank=True, default="")),
                ("analysis_stage", models.CharField(blank=True, default="", max_length=255)),
                ("analysis_run_id", models.CharField(blank=True, default="", max_length=64)),
                ("last_analyzed_at", models.DateTimeField(blank=True, null=True)),
                ("resolved_risks", models.JSONField(blank=True, default=list)),
                ("runtime_meta", models.JSONField(blank=True, default=dict, null=True)),
            ],
            options={"ordering": ["-updated_at"]},
        ),
        migrations.CreateModel(
            name="TemplateVersion",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("version_name", models.CharField(max_length=255)),
                ("vendor_name", models.CharField(default="Default Vendor", max_length=255)),
                ("version_data", models.JSONField(blank=True, default=list)),
                ("generated_content", models.TextField(blank=True, default="")),
                ("created_by", models.CharField(blank=True, default="", max_length=128)),
                ("created_at", models.DateTimeField()),
                (
                    "template",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="versions",
                        to="documents.document",
                    ),
                ),
            ],
            options={"ordering": ["-created_at"]},
        ),
    ]
