from .risk_schema import (
    SCHEMA_VERSION,
    apply_risk_filter,
    build_risk_analysis,
    clean_clause,
    count_risk_levels,
    first_present,
    normalize_missing_item,
    normalize_risk,
    normalize_risk_analysis,
    normalize_summary,
    normalize_template_summary,
    weighted_risk_score,
)

__all__ = [
    "SCHEMA_VERSION",
    "apply_risk_filter",
    "build_risk_analysis",
    "clean_clause",
    "count_risk_levels",
    "first_present",
    "normalize_missing_item",
    "normalize_risk",
    "normalize_risk_analysis",
    "normalize_summary",
    "normalize_template_summary",
    "weighted_risk_score",
]
