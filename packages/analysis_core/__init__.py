from .normalizer import (
    count_blanks,
    find_blank_patterns,
    find_date_expressions,
    normalize_content,
    render_template,
    restore_occurrences,
    variable_token,
)
from .reconcile import (
    Span,
    apply_replacements,
    fill_missing_info,
    find_all_occurrences,
    format_standard_date,
    locate_quote,
    map_risks_to_spans,
    relocate_occurrence,
)
from .result_contract import (
    ANALYSIS_STATUSES,
    CACHE_FIELDS,
    CACHE_LAST_ANALYZED,
    CACHE_RISKS,
    CACHE_SUMMARY,
    RUNNING_STATUSES,
    STATUS_COMPLETE,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    STATUS_RISKS_COMPLETE,
    STATUS_SUMMARY_COMPLETE,
    is_running,
    merge_analysis_cache,
    merge_analysis_cache_batch,
    next_progress,
)

__all__ = [
    "ANALYSIS_STATUSES",
    "CACHE_FIELDS",
    "CACHE_LAST_ANALYZED",
    "CACHE_RISKS",
    "CACHE_SUMMARY",
    "RUNNING_STATUSES",
    "STATUS_COMPLETE",
    "STATUS_FAILED",
    "STATUS_IN_PROGRESS",
    "STATUS_PENDING",
    "STATUS_RISKS_COMPLETE",
    "STATUS_SUMMARY_COMPLETE",
    "Span",
    "apply_replacements",
    "count_blanks",
    "fill_missing_info",
    "find_all_occurrences",
    "find_blank_patterns",
    "find_date_expressions",
    "format_standard_date",
    "is_running",
    "locate_quote",
    "map_risks_to_spans",
    "merge_analysis_cache",
    "merge_analysis_cache_batch",
    "next_progress",
    "normalize_content",
    "relocate_occurrence",
    "render_template",
    "restore_occurrences",
    "variable_token",
]
