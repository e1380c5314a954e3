from django.contrib import admin

from .models import Document, TemplateVersion


@admin.register(Document)
class DocumentAdmin(admin.ModelAdmin):
    list_display = ("id", "kind", "title", "owner", "analysis_status", "analysis_progress", "updated_at")
    list_filter = ("kind", "analysis_status")
    search_fields = ("title", "filename", "owner")


@admin.register(TemplateVersion)
class TemplateVersionAdmin(admin.ModelAdmin):
    list_display = ("id", "template", "version_name", "vendor_name", "created_at")
