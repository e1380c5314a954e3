from django.urls import path
from . import views

urlpatterns = [
    path("api/health/", views.api_health, name="documents_api_health"),
    path("api/upload/", views.upload, name="documents_api_upload"),
    path("api/analysis/update/", views.analysis_update, name="documents_api_analysis_update"),
    path("api/<int:document_id>/", views.document_detail, name="documents_api_detail"),
    path("api/<int:document_id>/analyze/", views.start_analysis, name="documents_api_analyze"),
    path("api/<int:document_id>/refresh/", views.refresh_analysis, name="documents_api_refresh"),
    path("api/<int:document_id>/status/", views.analysis_status, name="documents_api_status"),
    path("api/<int:document_id>/highlights/", views.highlights, name="documents_api_highlights"),
    path("api/<int:document_id>/apply-missing-info/", views.apply_missing_info, name="documents_api_apply_missing_info"),
    path("api/<int:document_id>/chat/", views.chat, name="documents_api_chat"),
    path("api/<int:document_id>/explain/", views.explain, name="documents_api_explain"),
    path("api/<int:document_id>/redraft/", views.redraft, name="documents_api_redraft"),
    path("api/<int:document_id>/versions/", views.versions, name="documents_api_versions"),
]
