from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from dateutil import parser as dateparser
from rapidfuzz import fuzz

logger = logging.getLogger(__name__)

STRATEGY_EXACT = "exact"
STRATEGY_CASE_INSENSITIVE = "case_insensitive"
STRATEGY_WHITESPACE = "whitespace_normalized"
STRATEGY_PHRASE = "partial_phrase"
STRATEGY_FUZZY = "fuzzy"

PHRASE_MATCH_MIN_QUOTE = 100
PHRASE_MIN_LENGTH = 30
FUZZY_MIN_QUOTE = 20
DEFAULT_FUZZY_CUTOFF = 85.0
DEFAULT_CONTEXT_CHARS = 80
DEFAULT_SEARCH_RADIUS = 100

_PHRASE_SPLIT = re.compile(r"[.!?;]")

_MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)


@dataclass(frozen=True)
class Span:
    start: int
    end: int
    strategy: str

    def as_dict(self) -> Dict[str, Any]:
        return {"start": self.start, "end": self.end, "strategy": self.strategy}


def _lower_keep_len(s: str) -> str:
    # str.lower() can expand some code points; offsets must stay aligned.
    out = []
    for ch in s:
        low = ch.lower()
        out.append(low if len(low) == 1 else ch)
    return "".join(out)


def _collapse_whitespace(text: str) -> Tuple[str, List[int]]:
    """Collapse whitespace runs to one space; position_map[i] is the source offset of char i."""
    chars: List[str] = []
    position_map: List[int] = []
    was_space = False
    for i, ch in enumerate(text):
        if ch.isspace():
            if was_space:
                continue
            chars.append(" ")
            position_map.append(i)
            was_space = True
        else:
            chars.append(ch)
            position_map.append(i)
            was_space = False
    return "".join(chars), position_map


def _find_exact(text: str, quote: str) -> Optional[Span]:
    idx = text.find(quote)
    if idx == -1:
        return None
    return Span(idx, idx + len(quote), STRATEGY_EXACT)


def _find_case_insensitive(text: str, quote: str, strategy: str = STRATEGY_CASE_INSENSITIVE) -> Optional[Span]:
    idx = _lower_keep_len(text).find(_lower_keep_len(quote))
    if idx == -1:
        return None
    return Span(idx, idx + len(quote), strategy)


def _find_whitespace_normalized(text: str, quote: str, strategy: str = STRATEGY_WHITESPACE) -> Optional[Span]:
    needle, _ = _collapse_whitespace(quote.strip())
    if not needle:
        return None
    haystack, position_map = _collapse_whitespace(text)
    idx = _lower_keep_len(haystack).find(_lower_keep_len(needle))
    if idx == -1:
        return None
    start = position_map[idx]
    end = position_map[idx + len(needle) - 1] + 1
    return Span(start, end, strategy)


def _find_partial_phrase(text: str, quote: str) -> Optional[Span]:
    phrases = [p.strip() for p in _PHRASE_SPLIT.split(quote)]
    phrases = sorted((p for p in phrases if len(p) > PHRASE_MIN_LENGTH), key=len, reverse=True)
    for phrase in phrases:
        span = _find_case_insensitive(text, phrase, STRATEGY_PHRASE) or _find_whitespace_normalized(text, phrase, STRATEGY_PHRASE)
        if span is not None:
            return span
    return None


def _find_fuzzy(text: str, quote: str, score_cutoff: float) -> Optional[Span]:
    needle, _ = _collapse_whitespace(quote.strip())
    haystack, position_map = _collapse_whitespace(text)
    if len(needle) < FUZZY_MIN_QUOTE or len(haystack) < len(needle):
        return None
    alignment = fuzz.partial_ratio_alignment(
        _lower_keep_len(needle),
        _lower_keep_len(haystack),
        score_cutoff=score_cutoff,
    )
    if alignment is None or alignment.dest_end <= alignment.dest_start:
        return None
    start = position_map[alignment.dest_start]
    end = position_map[alignment.dest_end - 1] + 1
    return Span(start, end, STRATEGY_FUZZY)


def locate_quote(text: str, quote: str, *, fuzzy_cutoff: Optional[float] = DEFAULT_FUZZY_CUTOFF) -> Optional[Span]:
    """
    Best-effort character span of ``quote`` inside ``text``.

    Strategies are tried from most to least precise: exact, case-insensitive,
    whitespace-normalized, longest sentence fragment (long quotes only) and
    finally fuzzy alignment. Pass ``fuzzy_cutoff=None`` to disable the last one.
    """
    if not text or not quote:
        return None
    quote = quote.strip()
    if not quote:
        return None

    span = (
        _find_exact(text, quote)
        or _find_case_insensitive(text, quote)
        or _find_whitespace_normalized(text, quote)
    )
    if span is None and len(quote) > PHRASE_MATCH_MIN_QUOTE:
        span = _find_partial_phrase(text, quote)
    if span is None and fuzzy_cutoff is not None:
        span = _find_fuzzy(text, quote, fuzzy_cutoff)
    return span


def _overlaps(start: int, end: int, spans: Iterable[Tuple[int, int]]) -> bool:
    return any(start < e and end > s for s, e in spans)


def map_risks_to_spans(
    text: str,
    risks: List[Dict[str, Any]],
    *,
    fuzzy_cutoff: Optional[float] = DEFAULT_FUZZY_CUTOFF,
) -> Tuple[List[Dict[str, Any]], List[str]]:
    """Return (highlights sorted by start, ids of risks that could not be placed)."""
    highlights: List[Dict[str, Any]] = []
    taken: List[Tuple[int, int]] = []
    unmapped: List[str] = []

    for index, risk in enumerate(risks or []):
        if not isinstance(risk, dict):
            continue
        risk_id = str(risk.get("id") or f"risk-{index}")
        clause = str(risk.get("clause") or "").strip()
        if not clause:
            unmapped.append(risk_id)
            continue

        span = locate_quote(text, clause, fuzzy_cutoff=fuzzy_cutoff)
        if span is None:
            logger.debug("risk %s not found in text: %r", risk_id, clause[:100])
            unmapped.append(risk_id)
            continue

        if _overlaps(span.start, span.end, taken):
            logger.debug("risk %s overlaps an existing highlight at %s", risk_id, span.start)
            unmapped.append(risk_id)
            continue

        taken.append((span.start, span.end))
        highlights.append(
            {
                **risk,
                "id": risk_id,
                "textPosition": {"start": span.start, "end": span.end},
                "matchedText": text[span.start:span.end],
                "matchStrategy": span.strategy,
                "elementId": f"risk-highlight-{risk_id}",
            }
        )

    highlights.sort(key=lambda h: h["textPosition"]["start"])
    return highlights, unmapped


def find_all_occurrences(text: str, needle: str, context_chars: int = DEFAULT_CONTEXT_CHARS) -> List[Dict[str, Any]]:
    occurrences: List[Dict[str, Any]] = []
    if not text or not needle:
        return occurrences
    search_from = 0
    while True:
        idx = text.find(needle, search_from)
        if idx == -1:
            break
        end = idx + len(needle)
        occurrences.append(
            {
                "text": needle,
                "position": {"start": idx, "end": end},
                "context": text[max(0, idx - context_chars):min(len(text), end + context_chars)],
            }
        )
        search_from = idx + 1
    return occurrences


def _occurrence_span(occurrence: Dict[str, Any]) -> Optional[Tuple[int, int]]:
    pos = occurrence.get("position")
    if not isinstance(pos, dict):
        return None
    try:
        start = int(pos.get("start"))
        end = int(pos.get("end"))
    except (TypeError, ValueError):
        return None
    if start < 0 or end <= start:
        return None
    return start, end


def relocate_occurrence(text: str, occurrence: Dict[str, Any], radius: int = DEFAULT_SEARCH_RADIUS) -> Optional[Tuple[int, int]]:
    """Verify a recorded occurrence span, falling back to a nearby and then a global search."""
    needle = str(occurrence.get("text") or "")
    if not needle:
        return None

    recorded = _occurrence_span(occurrence)
    if recorded is not None:
        start, end = recorded
        if text[start:end] == needle:
            return start, end
        window_start = max(0, start - radius)
        window_end = min(len(text), end + radius)
        rel = text[window_start:window_end].find(needle)
        if rel != -1:
            return window_start + rel, window_start + rel + len(needle)

    idx = text.find(needle)
    if idx == -1:
        return None
    return idx, idx + len(needle)


def apply_replacements(text: str, replacements: List[Dict[str, Any]]) -> Tuple[str, int, List[Dict[str, Any]]]:
    """
    Apply ``{start, end, originalText, newText}`` edits from the end of the
    text backwards so earlier offsets stay valid. Returns (text, applied, failed).
    """
    ordered = sorted(replacements, key=lambda r: (int(r["start"]), int(r["end"])), reverse=True)
    applied = 0
    failed: List[Dict[str, Any]] = []
    seen = set()

    for rep in ordered:
        start, end = int(rep["start"]), int(rep["end"])
        if (start, end) in seen:
            continue
        seen.add((start, end))
        original = rep["originalText"]
        new_text = rep["newText"]

        if text[start:end] == original:
            text = text[:start] + new_text + text[end:]
            applied += 1
            continue

        idx = text.find(original)
        if idx != -1:
            text = text[:idx] + new_text + text[idx + len(original):]
            applied += 1
        else:
            logger.warning("replacement text %r not found", original[:60])
            failed.append(rep)

    return text, applied, failed


def _ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def format_standard_date(value: str) -> str:
    """'2025-01-09' -> '9th day of January, 2025'; unparseable input is returned unchanged."""
    raw = (value or "").strip()
    if not raw:
        return value
    try:
        parsed = dateparser.parse(raw)
    except (ValueError, OverflowError):
        return value
    if parsed is None:
        return value
    return f"{_ordinal(parsed.day)} day of {_MONTHS[parsed.month - 1]}, {parsed.year}"


def format_field_value(value: str, field_type: str) -> str:
    if field_type == "date":
        return format_standard_date(value)
    return value


def fill_missing_info(text: str, items: List[Dict[str, Any]]) -> Tuple[str, Dict[str, Any]]:
    replacements: List[Dict[str, Any]] = []
    missing: List[str] = []

    for item in items or []:
        user_input = str(item.get("userInput") or "").strip()
        if not user_input:
            continue
        new_text = format_field_value(user_input, str(item.get("fieldType") or "text"))
        for occurrence in item.get("occurrences") or []:
            span = relocate_occurrence(text, occurrence)
            if span is None:
                missing.append(str(occurrence.get("text") or ""))
                continue
            replacements.append(
                {
                    "start": span[0],
                    "end": span[1],
                    "originalText": text[span[0]:span[1]],
                    "newText": new_text,
                    "itemId": item.get("id"),
                }
            )

    updated, applied, failed = apply_replacements(text, replacements)
    stats = {
        "attempted": len(replacements),
        "applied": applied,
        "failed": [r.get("originalText") for r in failed],
        "notFound": missing,
        "changed": updated != text,
    }
    return updated, stats
