from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Tuple

from .reconcile import relocate_occurrence

logger = logging.getLogger(__name__)

BLANK_RE = re.compile(r"_+")

DATE_EXPRESSION_PATTERNS = (
    re.compile(r"(\d+(?:st|nd|rd|th)?\s+day\s+of\s+_+\s+of\s+\w+)", re.IGNORECASE),
    re.compile(r"(_+\s+day\s+of\s+\w+,?\s*\d{4})", re.IGNORECASE),
    re.compile(r"(this\s+_+\s+day\s+of\s+_+)", re.IGNORECASE),
    re.compile(r"(dated\s+_+)", re.IGNORECASE),
    re.compile(r"(on\s+the\s+_+)", re.IGNORECASE),
)

_WS_RE = re.compile(r"\s+")


def variable_token(label: str) -> str:
    return "{{" + _WS_RE.sub("_", (label or "").strip()) + "}}"


def count_blanks(content: str) -> int:
    return len(BLANK_RE.findall(content or ""))


def find_blank_patterns(content: str) -> List[str]:
    """Distinct underscore runs, in order of first appearance."""
    seen: Dict[str, None] = {}
    for m in BLANK_RE.finditer(content or ""):
        seen.setdefault(m.group(0), None)
    return list(seen)


def find_date_expressions(content: str) -> List[str]:
    out: List[str] = []
    lowered = set()
    for pattern in DATE_EXPRESSION_PATTERNS:
        for m in pattern.finditer(content or ""):
            expr = m.group(1)
            if expr.lower() in lowered:
                continue
            lowered.add(expr.lower())
            out.append(expr)
    return out


def _literal_pattern(text: str) -> "re.Pattern[str]":
    # group 1 matches tokens already written, which are left untouched
    return re.compile(r"(\{\{[^{}]*\}\})|" + re.escape(text), re.IGNORECASE)


def _replace_literal(content: str, text: str, token: str) -> Tuple[str, int]:
    count = 0

    def _sub(m: "re.Match[str]") -> str:
        nonlocal count
        if m.group(1):
            return m.group(1)
        count += 1
        return token

    return _literal_pattern(text).sub(_sub, content), count


def normalize_content(content: str, variables: List[Dict[str, Any]]) -> Tuple[str, int]:
    """
    Rewrite every occurrence of each detected variable to its ``{{Label}}`` token.

    Occurrences whose recorded span still matches are replaced by position,
    from the end of the document backwards. The rest fall back to a
    case-insensitive literal replacement across the whole text.
    """
    positioned: List[Tuple[int, int, str]] = []
    literal: List[Tuple[str, str]] = []

    for variable in variables or []:
        label = str(variable.get("label") or "").strip()
        if not label:
            continue
        token = variable_token(label)
        for occurrence in variable.get("occurrences") or []:
            text = str(occurrence.get("text") or "")
            if not text.strip():
                continue
            pos = occurrence.get("position") if isinstance(occurrence.get("position"), dict) else {}
            start, end = pos.get("start"), pos.get("end")
            if isinstance(start, int) and isinstance(end, int) and content[start:end] == text:
                positioned.append((start, end, token))
            else:
                literal.append((text, token))

    replaced = 0
    positioned.sort(key=lambda item: (item[0], item[1]), reverse=True)
    boundary = len(content) + 1
    for start, end, token in positioned:
        # skip spans overlapping one already rewritten
        if end > boundary:
            continue
        content = content[:start] + token + content[end:]
        boundary = start
        replaced += 1

    for text, token in literal:
        content, n = _replace_literal(content, text, token)
        replaced += n

    logger.debug("normalized %d variable occurrences", replaced)
    return content, replaced


def _fallback_patterns(label: str) -> List["re.Pattern[str]"]:
    escaped = re.escape(label)
    return [
        re.compile(r"\[" + escaped + r"\]", re.IGNORECASE),
        re.compile(r"\{\{" + escaped + r"\}\}", re.IGNORECASE),
        re.compile("<" + escaped + ">", re.IGNORECASE),
        re.compile("_" + escaped + "_", re.IGNORECASE),
        re.compile(r"\$\{" + escaped + r"\}", re.IGNORECASE),
    ]


def render_template(content: str, values: List[Dict[str, Any]]) -> Tuple[str, List[str]]:
    """Fill ``{{Label}}`` tokens with values; returns (content, labels that matched nothing)."""
    unmatched: List[str] = []
    for item in values or []:
        label = str(item.get("label") or "").strip()
        value = str(item.get("value") or "")
        if not label or not value.strip():
            continue

        token_re = re.compile(re.escape(variable_token(label)), re.IGNORECASE)
        content, n = token_re.subn(lambda _m, v=value: v, content)
        if n:
            continue

        hits = 0
        for pattern in _fallback_patterns(label):
            content, k = pattern.subn(lambda _m, v=value: v, content)
            hits += k
        if not hits:
            logger.warning("template variable %r not found for replacement", label)
            unmatched.append(label)
    return content, unmatched


def restore_occurrences(content: str, variables: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Re-anchor each variable occurrence against ``content``; unplaceable ones are dropped."""
    out: List[Dict[str, Any]] = []
    for variable in variables or []:
        occurrences = []
        for occurrence in variable.get("occurrences") or []:
            span = relocate_occurrence(content, occurrence)
            if span is None:
                continue
            occurrences.append({**occurrence, "position": {"start": span[0], "end": span[1]}})
        out.append({**variable, "occurrences": occurrences})
    return out
