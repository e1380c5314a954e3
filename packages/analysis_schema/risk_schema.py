from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

SCHEMA_VERSION = "1.0.0"

RISK_LEVELS = ("high", "medium", "low")
FIELD_TYPES = ("text", "date", "number", "email", "address")
IMPORTANCE_LEVELS = ("critical", "important", "optional")

DEFAULT_RISK_LEVEL = "medium"
DEFAULT_RISK_SCORE = 5
DEFAULT_CATEGORY = "Other"
DEFAULT_AFFECTED_PARTY = "All parties"
DEFAULT_LOCATION = "Not specified"
NOT_SPECIFIED = "Not specified"

_LEVEL_WEIGHTS = {"high": 8, "medium": 5, "low": 2}

_LEADING_NUMBER_RE = re.compile(r"^\d+\.\s*")
_LEADING_LETTER_RE = re.compile(r"^[a-z]\)\s*", re.IGNORECASE)
_LEADING_BULLET_RE = re.compile(r"^\s*[-•]\s*")
_WS_RE = re.compile(r"\s+")


def _as_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    s = str(value).strip()
    return s or default


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        value = [value]
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


def clean_clause(text: Any) -> str:
    """Strip list markers the model tends to copy from the source and collapse whitespace."""
    clause = _as_str(text)
    clause = _LEADING_NUMBER_RE.sub("", clause)
    clause = _LEADING_LETTER_RE.sub("", clause)
    clause = _LEADING_BULLET_RE.sub("", clause)
    return _WS_RE.sub(" ", clause).strip()


def _risk_level(value: Any) -> str:
    level = _as_str(value).lower()
    return level if level in RISK_LEVELS else DEFAULT_RISK_LEVEL


def _risk_score(value: Any) -> int:
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        return DEFAULT_RISK_SCORE
    if score <= 0:
        return DEFAULT_RISK_SCORE
    return min(10, score)


def normalize_risk(raw: Any, risk_id: str, default_location: str = DEFAULT_LOCATION) -> Dict[str, Any]:
    item = raw if isinstance(raw, dict) else {"clause": raw}
    risk: Dict[str, Any] = {
        "id": risk_id,
        "clause": clean_clause(item.get("clause")),
        "clauseLocation": _as_str(item.get("clauseLocation"), default_location),
        "riskLevel": _risk_level(item.get("riskLevel")),
        "riskScore": _risk_score(item.get("riskScore")),
        "category": _as_str(item.get("category"), DEFAULT_CATEGORY),
        "explanation": _as_str(item.get("explanation")),
        "suggestion": _as_str(item.get("suggestion")),
        "affectedParty": _as_str(item.get("affectedParty"), DEFAULT_AFFECTED_PARTY),
    }
    precedent = _as_str(item.get("legalPrecedent"))
    if precedent:
        risk["legalPrecedent"] = precedent
    return risk


def count_risk_levels(risks: List[Dict[str, Any]]) -> Dict[str, int]:
    counts = {"highRiskCount": 0, "mediumRiskCount": 0, "lowRiskCount": 0}
    for risk in risks:
        level = risk.get("riskLevel")
        if level == "high":
            counts["highRiskCount"] += 1
        elif level == "low":
            counts["lowRiskCount"] += 1
        else:
            counts["mediumRiskCount"] += 1
    return counts


def weighted_risk_score(risks: List[Dict[str, Any]]) -> int:
    if not risks:
        return 1
    total = sum(_LEVEL_WEIGHTS.get(r.get("riskLevel"), _LEVEL_WEIGHTS["medium"]) for r in risks)
    # half-up rounding
    score = int(total / len(risks) + 0.5)
    return max(1, min(10, score))


def build_risk_analysis(
    risks: List[Dict[str, Any]],
    *,
    overall_score: Any = None,
    recommendations: Any = None,
    executive_summary: Any = None,
) -> Dict[str, Any]:
    analysis: Dict[str, Any] = {
        "overallRiskScore": _risk_score(overall_score) if overall_score is not None else weighted_risk_score(risks),
        "totalRisksFound": len(risks),
        "risks": risks,
        "recommendations": _as_str_list(recommendations),
        "executiveSummary": _as_str(executive_summary, "Contract analysis completed."),
    }
    analysis.update(count_risk_levels(risks))
    return analysis


def normalize_risk_analysis(raw: Any, id_prefix: str = "risk") -> Dict[str, Any]:
    data = raw if isinstance(raw, dict) else {}
    items = data.get("risks") if isinstance(data.get("risks"), list) else []
    risks = [normalize_risk(item, f"{id_prefix}-{i}") for i, item in enumerate(items)]
    risks = [r for r in risks if r["clause"]]
    return build_risk_analysis(
        risks,
        overall_score=data.get("overallRiskScore"),
        recommendations=data.get("recommendations"),
        executive_summary=data.get("executiveSummary"),
    )


def apply_risk_filter(
    analysis: Dict[str, Any],
    unique_risks: List[Dict[str, Any]],
    duplicate_ids: List[str],
    *,
    filtering_applied: bool,
) -> Dict[str, Any]:
    """Template risk payload after resolved-risk filtering; counts reflect the kept risks."""
    out = dict(analysis)
    out["originalRisksFound"] = len(analysis.get("risks") or [])
    out["risks"] = unique_risks
    out["totalRisksFound"] = len(unique_risks)
    out["duplicatesFiltered"] = len(duplicate_ids)
    out["smartFilteringApplied"] = bool(filtering_applied)
    out.update(count_risk_levels(unique_risks))
    return out


def normalize_summary(raw: Any) -> Dict[str, Any]:
    data = raw if isinstance(raw, dict) else {}
    key_terms = data.get("key_terms") if isinstance(data.get("key_terms"), dict) else {}
    return {
        "overview": _as_str(data.get("overview"), "No overview available"),
        "contract_type": _as_str(data.get("contract_type"), "Unknown"),
        "key_terms": {
            "duration": _as_str(key_terms.get("duration"), NOT_SPECIFIED),
            "value": _as_str(key_terms.get("value"), NOT_SPECIFIED),
            "payment_terms": _as_str(key_terms.get("payment_terms"), NOT_SPECIFIED),
        },
        "important_dates": _as_str_list(data.get("important_dates")),
        "parties": _as_str_list(data.get("parties")),
        "obligations": _as_str_list(data.get("obligations")),
    }


def normalize_template_summary(raw: Any) -> Dict[str, Any]:
    data = raw if isinstance(raw, dict) else {}
    summary = normalize_summary(data)
    summary["template_type"] = _as_str(data.get("template_type") or data.get("templateType"), summary["contract_type"])
    summary["intended_use"] = _as_str(data.get("intended_use"), NOT_SPECIFIED)
    summary["customization_areas"] = _as_str_list(data.get("customization_areas"))
    return summary


def normalize_missing_item(
    raw: Dict[str, Any],
    index: int,
    occurrences: List[Dict[str, Any]],
) -> Dict[str, Any]:
    field_type = _as_str(raw.get("fieldType"), "text").lower()
    importance = _as_str(raw.get("importance"), "important").lower()
    return {
        "id": _as_str(raw.get("id"), f"field_{index}"),
        "label": _as_str(raw.get("label"), f"Field {index + 1}"),
        "description": _as_str(raw.get("description"), "Information needed"),
        "placeholder": _as_str(raw.get("placeholder"), "Enter information"),
        "fieldType": field_type if field_type in FIELD_TYPES else "text",
        "importance": importance if importance in IMPORTANCE_LEVELS else "important",
        "legalContext": _as_str(raw.get("legalContext")),
        "context": _as_str(raw.get("context")) or (occurrences[0]["context"] if occurrences else ""),
        "occurrences": occurrences,
        "userInput": "",
    }


def first_present(data: Optional[Dict[str, Any]], *keys: str) -> Any:
    if not isinstance(data, dict):
        return None
    for key in keys:
        value = data.get(key)
        if value not in (None, "", []):
            return value
    return None
