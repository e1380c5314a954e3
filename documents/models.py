from django.db import models


class Document(models.Model):
    KIND_CONTRACT = "contract"
    KIND_TEMPLATE = "template"
    KIND_CHOICES = [
        (KIND_CONTRACT, "contract"),
        (KIND_TEMPLATE, "template"),
    ]

    STATUS_CHOICES = [
        ("pending", "pending"),
        ("in_progress", "in_progress"),
        ("summary_complete", "summary_complete"),
        ("risks_complete", "risks_complete"),
        ("complete", "complete"),
        ("failed", "failed"),
    ]

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    kind = models.CharField(max_length=16, choices=KIND_CHOICES, default=KIND_CONTRACT, db_index=True)
    owner = models.CharField(max_length=128, blank=True, default="", db_index=True)
    folder_id = models.CharField(max_length=128, blank=True, default="")
    title = models.CharField(max_length=255, default="")
    filename = models.CharField(max_length=255, blank=True, default="")
    file_sha256 = models.CharField(max_length=64, blank=True, default="", db_index=True)
    content = models.TextField(blank=True, default="")

    analysis_cache = models.JSONField(blank=True, default=dict)
    analysis_status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    analysis_progress = models.IntegerField(default=0)
    analysis_retry_count = models.IntegerField(default=0)
    analysis_error = models.TextField(blank=True, default="")
    analysis_stage = models.CharField(max_length=255, blank=True, default="")
    analysis_run_id = models.CharField(max_length=64, blank=True, default="")
    last_analyzed_at = models.DateTimeField(blank=True, null=True)

    resolved_risks = models.JSONField(blank=True, default=list)
    runtime_meta = models.JSONField(blank=True, null=True, default=dict)

    class Meta:
        ordering = ["-updated_at"]

    def __str__(self) -> str:
        return f"{self.kind}:{self.pk} {self.title}"


class TemplateVersion(models.Model):
    template = models.ForeignKey(Document, on_delete=models.CASCADE, related_name="versions")
    version_name = models.CharField(max_length=255)
    vendor_name = models.CharField(max_length=255, default="Default Vendor")
    version_data = models.JSONField(blank=True, default=list)
    generated_content = models.TextField(blank=True, default="")
    created_by = models.CharField(max_length=128, blank=True, default="")
    created_at = models.DateTimeField()

    class Meta:
        ordering = ["-created_at"]
