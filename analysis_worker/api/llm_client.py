import json
import logging
import re
import time
from functools import lru_cache
from typing import Any, Dict, List, Optional

from openai import OpenAI

from analysis_worker.app_config import LLMConfig
from packages.analysis_core.normalizer import count_blanks, find_blank_patterns, find_date_expressions
from packages.analysis_core.reconcile import find_all_occurrences
from packages.analysis_schema import (
    build_risk_analysis,
    first_present,
    normalize_missing_item,
    normalize_risk,
    normalize_risk_analysis,
    normalize_summary,
    normalize_template_summary,
    weighted_risk_score,
)

logger = logging.getLogger(__name__)

NOT_A_CONTRACT = "NOT_A_CONTRACT"

SINGLE_PASS_MAX_CHARS = 25000
BLANK_CONVERSION_MAX_CHARS = 30000
STRATEGIC_EXCERPT_MIN_CHARS = 25000
SECTION_MIN_CHARS = 200
SECTION_MAX_CHARS = 8000
SECTION_SKIP_BELOW = 100
WINDOW_SIZE = 4000
WINDOW_OVERLAP = 200
WINDOW_MIN_CHARS = 500
PATTERN_COVERAGE = 0.7
FALLBACK_DETECTION_RATIO = 0.8
OCCURRENCE_CONTEXT_CHARS = 80
FALLBACK_CONTEXT_CHARS = 60

CHUNKED_RECOMMENDATIONS = [
    "Review all high-risk items for immediate attention",
    "Consider legal counsel for contract modifications",
    "Implement risk mitigation strategies for medium-risk items",
    "Establish compliance monitoring for regulatory risks",
    "Document all agreed modifications in writing",
]


class LLMResponseError(RuntimeError):
    """The provider failed or answered with something we could not use."""


class NotAContractError(ValueError):
    """The uploaded document is not a legal contract or template."""


@lru_cache(maxsize=1)
def get_client() -> OpenAI:
    cfg = LLMConfig.from_env()
    return OpenAI(api_key=cfg.api_key, base_url=cfg.base_url, max_retries=0)


LEGAL_EXPERT_SYSTEM_PROMPT = """You are an experienced legal contract analyst specialising in corporate law, contract negotiation and risk assessment.
You know commercial contracts, employment agreements, NDAs and service agreements, the legal precedents behind them and current industry standards.
Your analysis is thorough, precise and actionable. Always cite specific clauses and give practical recommendations."""

SUMMARY_PROMPT = """First, determine if this document is a legal contract, agreement, or legal document.

If it is NOT a legal document (e.g. a resume, article or letter), respond with:
{"error": "NOT_A_CONTRACT", "message": "This document does not appear to be a legal contract or agreement."}

Otherwise respond with a JSON object:
{
  "overview": "Brief overview of the contract",
  "contract_type": "Type of contract (e.g. Service Agreement, NDA)",
  "key_terms": {"duration": "string", "value": "string", "payment_terms": "string"},
  "important_dates": ["string"],
  "parties": ["string"],
  "obligations": ["string"]
}

All values must be strings or arrays of strings. Use "Not specified" or an empty array when information is missing. Respond only with valid JSON.

Document to analyze:
"""

TEMPLATE_SUMMARY_PROMPT = """First, determine if this document is a legal contract template, agreement template, or legal document.

If it is NOT, respond with:
{"error": "NOT_A_CONTRACT", "message": "This document does not appear to be a legal template."}

Otherwise respond with a JSON object describing the TEMPLATE (not a signed deal):
{
  "overview": "What the template is for",
  "contract_type": "Type of agreement the template produces",
  "template_type": "e.g. Service Agreement Template",
  "intended_use": "Who would use it and when",
  "key_terms": {"duration": "string", "value": "string", "payment_terms": "string"},
  "important_dates": ["string"],
  "parties": ["Party roles, e.g. Client, Vendor"],
  "obligations": ["string"],
  "customization_areas": ["Parts a user must fill in or adapt"]
}

Respond only with valid JSON.

Template to analyze:
"""

RISK_RULES = """For EACH risk provide:
- "clause": the CORE risky phrase quoted exactly as written (15-200 words, no surrounding filler, never paraphrased)
- "clauseLocation": section or clause reference
- "riskLevel": high (7-10) | medium (4-6) | low (1-3)
- "riskScore": 1-10
- "category": e.g. Payment Terms, Liability, Termination, IP, Confidentiality, Dispute Resolution, Indemnification
- "explanation": why this creates legal risk (2-3 sentences)
- "suggestion": a specific improvement
- "affectedParty": the party most negatively affected
- "legalPrecedent": relevant precedent or standard practice (optional)"""

RISK_PROMPT = """Perform a COMPREHENSIVE legal risk analysis of this {subject}. Find ALL significant risks, whether 5 or 50.
Analyze every clause systematically, consider risks for all parties, and treat missing protective clauses as risks.

{rules}

Also provide an overall risk score (1-10), a 2-3 sentence executive summary and the top 5 recommendations.

Respond with JSON:
{{"overallRiskScore": number, "executiveSummary": string, "risks": [...], "recommendations": [string]}}

{label}:
{content}"""

SECTION_RISK_PROMPT = """Analyze this SECTION of a larger contract for ALL legal risks.

SECTION: {title}
{content}

{rules}

Use "{title}" as clauseLocation when nothing more precise applies.
Respond with JSON: {{"risks": [...]}}"""

BLANK_CONVERSION_PROMPT = """You are an expert legal document processor. Find ALL underscore patterns (blanks) in the contract and replace each with a specific, contextual bracketed placeholder such as [Execution_Date] or [Company_Name].
Preserve ALL other text, formatting and spacing exactly. No underscore pattern may remain.

Examples:
- "made at Mumbai on the _______________" -> "made at Mumbai on the [Execution_Date]"
- "having CIN No. ____________" -> "having CIN No. [CIN_Number]"
- "__________, having DIN _________" -> "[Director_Name], having DIN [Director_DIN]"

Return only the complete converted contract text."""

MISSING_INFO_SYSTEM = """You are an expert legal analyst. Identify ALL information that is missing, incomplete or must be filled in before this contract can be executed{note}.
Look for underscore blanks, bracketed placeholders like [Something], generic terms that should be specific, and missing dates, amounts, names and addresses."""

MISSING_INFO_PROMPT = """Identify EVERY piece of missing or incomplete information in this contract.

CONTRACT{excerpt}:
{content}

Search patterns:
- Dates: "dated ____", "on the ____", "__ day of __"
- Names: "____, having", "Mr./Ms. ____", "son/daughter of ____"
- Addresses: "residing at ____", "office at ____"
- Amounts: "Rs. ____", "amount of ____", "sum of ____"
- Registration numbers: "CIN No. ____", "PAN ____", "DIN ____"
- Signatures: "signed by ____", "witness ____"

Date expressions must be captured WHOLE (e.g. "__ day of April, 2024", "dated ____") with fieldType "date"; they will be rendered as "9th day of January, 2025".
"targetText" must be copied exactly from the contract so it can be found again.

Respond with JSON:
{{"missingInfo": [{{"id": "unique_id", "label": "User Friendly Label", "description": "What is needed", "placeholder": "Input placeholder",
"fieldType": "text|date|number|email|address", "importance": "critical|important|optional", "legalContext": "Why it matters",
"targetText": "exact text to replace", "context": "surrounding text", "userInput": ""}}]}}"""

COMPARE_RISKS_PROMPT = """You compare newly detected template risks with risks the user already resolved.
A new risk is a DUPLICATE when it describes the same underlying issue in substantially the same clause as a resolved risk, even if worded differently.

NEW RISKS:
{new_risks}

RESOLVED RISKS:
{resolved_risks}

Respond with JSON: {{"duplicateRiskIds": ["ids of NEW risks that duplicate a resolved risk"]}}"""

CHAT_SYSTEM = LEGAL_EXPERT_SYSTEM_PROMPT + """

You are answering questions about a specific contract. Cite clauses or sections, explain legal concepts plainly, warn about risks, and suggest alternatives when appropriate."""

EXPLAIN_SYSTEM = LEGAL_EXPERT_SYSTEM_PROMPT + """

Explain the selected clause: what it means in plain English, its implications for each party, the risks or benefits it creates, and how it compares to standard language."""

REDRAFT_SYSTEM = LEGAL_EXPERT_SYSTEM_PROMPT + """

Redraft the selected text to be clearer, fairer and less risky while keeping it legally valid and preserving its intent.
Respond with JSON: {"redraftedText": "the improved text", "explanation": "what changed and why (2-3 sentences)"}"""


# =========================
# JSON parsing
# =========================
def repair_truncated_json(text: str) -> str:
    """Close a JSON document cut off mid-array, dropping a dangling partial object."""
    completed = (text or "").strip()

    if completed.endswith(", {"):
        completed = completed[:-3]
    elif completed.endswith("{"):
        completed = completed[:-1]
    elif ", {" in completed and not completed.endswith("}"):
        last_complete = completed.rfind("}, {")
        if last_complete != -1:
            completed = completed[: last_complete + 1]

    missing_brackets = completed.count("[") - completed.count("]")
    missing_braces = completed.count("{") - completed.count("}")
    return completed + "]" * max(0, missing_brackets) + "}" * max(0, missing_braces)


def salvage_array(text: str, key: str) -> List[Any]:
    """Decode the complete objects of ``"key": [ ... ]`` one by one, stopping at the first broken one."""
    m = re.search(r'"%s"\s*:\s*\[' % re.escape(key), text or "")
    if not m:
        return []
    decoder = json.JSONDecoder()
    items: List[Any] = []
    pos = m.end()
    while True:
        while pos < len(text) and text[pos] in " \t\r\n,":
            pos += 1
        if pos >= len(text) or text[pos] == "]":
            break
        try:
            item, pos = decoder.raw_decode(text, pos)
        except ValueError:
            break
        items.append(item)
    return items


def _extract_json_object(raw_text: str, salvage_key: Optional[str] = None) -> Dict[str, Any]:
    text = (raw_text or "").strip()
    if not text:
        raise LLMResponseError("empty model response")

    candidates = [text]
    m = re.search(r"\{[\s\S]*\}", text)
    if m and m.group(0) != text:
        candidates.append(m.group(0))
    candidates.append(repair_truncated_json(text))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data

    if salvage_key:
        items = salvage_array(text, salvage_key)
        logger.warning("model JSON unparseable, salvaged %d %s items", len(items), salvage_key)
        return {salvage_key: items}

    raise LLMResponseError(f"model response is not a JSON object: {text[:200]!r}")


# =========================
# transport
# =========================
def _create(messages: List[Dict[str, str]], *, max_tokens: int, temperature: Optional[float], json_mode: bool):
    cfg = LLMConfig.from_env()
    kwargs: Dict[str, Any] = {
        "model": cfg.model,
        "messages": messages,
        "temperature": cfg.temperature if temperature is None else temperature,
        "max_tokens": max_tokens,
        "timeout": cfg.timeout,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}
    resp = get_client().chat.completions.create(**kwargs)
    return (resp.choices[0].message.content or "").strip()


def _with_retry(fn, what: str):
    retries = LLMConfig.from_env().api_retry
    last_exc: Exception | None = None
    for attempt in range(1, retries + 1):
        try:
            return fn()
        except Exception as exc:
            last_exc = exc
            logger.warning("%s attempt %d/%d failed: %s", what, attempt, retries, exc)
            if attempt < retries:
                time.sleep(min(4.0, 0.8 * attempt))
    raise LLMResponseError(f"{what} failed after {retries} attempts: {last_exc}") from last_exc


def call_json(
    messages: List[Dict[str, str]],
    *,
    max_tokens: int = 4000,
    temperature: Optional[float] = None,
    salvage_key: Optional[str] = None,
) -> Dict[str, Any]:
    def _once() -> Dict[str, Any]:
        content = _create(messages, max_tokens=max_tokens, temperature=temperature, json_mode=True)
        return _extract_json_object(content, salvage_key=salvage_key)

    return _with_retry(_once, "LLM json request")


def call_text(
    messages: List[Dict[str, str]],
    *,
    max_tokens: int = 1000,
    temperature: Optional[float] = None,
) -> str:
    def _once() -> str:
        content = _create(messages, max_tokens=max_tokens, temperature=temperature, json_mode=False)
        if not content:
            raise LLMResponseError("empty model response")
        return content

    return _with_retry(_once, "LLM text request")


def _system_user(system: str, user: str) -> List[Dict[str, str]]:
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


# =========================
# summary
# =========================
def _check_not_a_contract(data: Dict[str, Any]) -> None:
    if str(data.get("error") or "").strip().upper() == NOT_A_CONTRACT:
        raise NotAContractError(str(data.get("message") or "document is not a legal contract"))


def summarize_contract(content: str) -> Dict[str, Any]:
    data = call_json(_system_user(LEGAL_EXPERT_SYSTEM_PROMPT, SUMMARY_PROMPT + content), max_tokens=1500)
    _check_not_a_contract(data)
    return normalize_summary(data)


def summarize_template(content: str) -> Dict[str, Any]:
    data = call_json(_system_user(LEGAL_EXPERT_SYSTEM_PROMPT, TEMPLATE_SUMMARY_PROMPT + content), max_tokens=1500)
    _check_not_a_contract(data)
    return normalize_template_summary(data)


# =========================
# risks
# =========================
_SECTION_PATTERNS = (
    (re.compile(r"WHEREAS.*?(?=WHEREAS|NOW,?\s*THEREFORE)", re.IGNORECASE | re.DOTALL), "WHEREAS Clauses"),
    (re.compile(r"NOW,?\s*THEREFORE.*?(?=\d+\.|ARTICLE|SECTION|IN WITNESS)", re.IGNORECASE | re.DOTALL), "Main Agreement"),
    (
        re.compile(r"\b(?:ARTICLE|SECTION)\s+[IVX\d]+[:.].*?(?=ARTICLE|SECTION|IN WITNESS|$)", re.IGNORECASE | re.DOTALL),
        "Article/Section",
    ),
    (
        re.compile(r"\d+\.\s*[A-Z][^.]*\..*?(?=\d+\.|ARTICLE|SECTION|IN WITNESS|$)", re.IGNORECASE | re.DOTALL),
        "Numbered Clause",
    ),
    (re.compile(r"IN WITNESS WHEREOF.*$", re.IGNORECASE | re.DOTALL), "Signature Section"),
)


def split_into_sections(content: str) -> List[Dict[str, str]]:
    """
    Split a long contract into analysable sections.

    Recognised legal structure comes first. When it covers less than 70% of
    the text, overlapping fixed windows are added so nothing goes unread.
    Sections outside 200-8000 chars are dropped; if nothing survives the
    whole document is returned as one section.
    """
    sections: List[Dict[str, str]] = []
    processed = 0

    for pattern, title in _SECTION_PATTERNS:
        for n, match in enumerate(pattern.finditer(content), start=1):
            text = match.group(0).strip()
            if len(text) > SECTION_MIN_CHARS:
                sections.append({"title": f"{title} {n}", "content": text})
                processed += len(text)

    if processed < len(content) * PATTERN_COVERAGE:
        step = WINDOW_SIZE - WINDOW_OVERLAP
        for start in range(0, len(content), step):
            chunk = content[start:start + WINDOW_SIZE]
            if len(chunk.strip()) > WINDOW_MIN_CHARS:
                sections.append({"title": f"Content Section {start // WINDOW_SIZE + 1}", "content": chunk})

    sections = [s for s in sections if SECTION_MIN_CHARS <= len(s["content"]) <= SECTION_MAX_CHARS]
    return sections or [{"title": "Full Contract", "content": content}]


def _analyze_sections(content: str, id_prefix: str) -> Dict[str, Any]:
    sections = split_into_sections(content)
    logger.info("chunked risk analysis over %d sections (%d chars)", len(sections), len(content))

    risks: List[Dict[str, Any]] = []
    attempted = failed = 0
    for i, section in enumerate(sections):
        if len(section["content"].strip()) < SECTION_SKIP_BELOW:
            continue
        attempted += 1
        prompt = SECTION_RISK_PROMPT.format(title=section["title"], content=section["content"], rules=RISK_RULES)
        try:
            data = call_json(_system_user(LEGAL_EXPERT_SYSTEM_PROMPT, prompt), max_tokens=6000)
        except LLMResponseError as exc:
            failed += 1
            logger.error("section %d (%s) analysis failed: %s", i + 1, section["title"], exc)
            continue
        items = data.get("risks") if isinstance(data.get("risks"), list) else []
        for j, item in enumerate(items):
            risk = normalize_risk(item, f"{id_prefix}-{i}-{j}", default_location=section["title"])
            if risk["clause"]:
                risks.append(risk)

    if attempted and failed == attempted:
        raise LLMResponseError(f"all {attempted} contract sections failed risk analysis")

    analysis = build_risk_analysis(
        risks,
        overall_score=weighted_risk_score(risks),
        recommendations=CHUNKED_RECOMMENDATIONS,
    )
    analysis["executiveSummary"] = (
        f"Comprehensive analysis identified {len(risks)} legal risks across {len(sections)} sections. "
        f"{analysis['highRiskCount']} high-priority risks require immediate attention."
    )
    return analysis


def _identify_risks(content: str, subject: str, label: str, id_prefix: str) -> Dict[str, Any]:
    if len(content) > SINGLE_PASS_MAX_CHARS:
        return _analyze_sections(content, id_prefix)
    prompt = RISK_PROMPT.format(subject=subject, rules=RISK_RULES, label=label, content=content)
    data = call_json(_system_user(LEGAL_EXPERT_SYSTEM_PROMPT, prompt), max_tokens=12000)
    analysis = normalize_risk_analysis(data, id_prefix=id_prefix)
    logger.info(
        "risk analysis: %d risks (%d high, %d medium, %d low)",
        analysis["totalRisksFound"],
        analysis["highRiskCount"],
        analysis["mediumRiskCount"],
        analysis["lowRiskCount"],
    )
    return analysis


def identify_risky_terms(content: str) -> Dict[str, Any]:
    return _identify_risks(content, "contract", "CONTRACT TO ANALYZE", "risk")


def identify_template_risks(content: str) -> Dict[str, Any]:
    return _identify_risks(
        content,
        "contract TEMPLATE (judge the template language itself; blanks and placeholders are expected)",
        "TEMPLATE TO ANALYZE",
        "template-risk",
    )


def _risk_digest(risk: Dict[str, Any], fallback_id: str) -> Dict[str, Any]:
    return {
        "id": str(risk.get("id") or fallback_id),
        "clause": str(risk.get("clause") or "")[:400],
        "category": risk.get("category") or "",
        "explanation": str(risk.get("explanation") or "")[:400],
    }


def compare_template_risks(new_risks: List[Dict[str, Any]], resolved_risks: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop new risks the model judges equivalent to already-resolved ones."""
    if not new_risks or not resolved_risks:
        return {"uniqueRisks": list(new_risks or []), "duplicateRiskIds": []}

    new_digest = [_risk_digest(r, f"risk-{i}") for i, r in enumerate(new_risks)]
    resolved_digest = [_risk_digest(r, f"resolved-{i}") for i, r in enumerate(resolved_risks) if isinstance(r, dict)]
    prompt = COMPARE_RISKS_PROMPT.format(
        new_risks=json.dumps(new_digest, ensure_ascii=False),
        resolved_risks=json.dumps(resolved_digest, ensure_ascii=False),
    )
    data = call_json(_system_user(LEGAL_EXPERT_SYSTEM_PROMPT, prompt), max_tokens=2000, temperature=0.1)

    known = {d["id"] for d in new_digest}
    raw_ids = data.get("duplicateRiskIds") if isinstance(data.get("duplicateRiskIds"), list) else []
    duplicates = [str(x) for x in raw_ids if str(x) in known]
    dup_set = set(duplicates)
    unique = [r for r, d in zip(new_risks, new_digest) if d["id"] not in dup_set]
    return {"uniqueRisks": unique, "duplicateRiskIds": duplicates}


# =========================
# missing information
# =========================
_KEY_SECTION_PATTERNS = (
    re.compile(r"this\s+agreement.*?made.*?on.*?between.*?(?=\n\n|\r\n\r\n|whereas|now therefore)", re.IGNORECASE | re.DOTALL),
    re.compile(r"whereas.*?(?=now therefore)", re.IGNORECASE | re.DOTALL),
    re.compile(r"in witness.*$", re.IGNORECASE | re.DOTALL),
    re.compile(r"party.*?(?:name|address).*?(?=\n\n|\r\n\r\n|party|whereas)", re.IGNORECASE | re.DOTALL),
    re.compile(r"signed.*?dated.*?(?=\n\n|\r\n\r\n|$)", re.IGNORECASE | re.DOTALL),
    re.compile(r"amount.*?(?:rupees|dollars|inr|usd).*?(?=\n\n|\r\n\r\n|$)", re.IGNORECASE | re.DOTALL),
    re.compile(r"schedule.*?(?=\n\n|\r\n\r\n|$)", re.IGNORECASE | re.DOTALL),
    re.compile(r"annexure.*?(?=\n\n|\r\n\r\n|$)", re.IGNORECASE | re.DOTALL),
)
_BLANK_OR_BRACKET = re.compile(r"_+|\[.*?\]")


def strategic_excerpt(content: str) -> Dict[str, Any]:
    """Pick the parts of a very long contract most likely to hold blanks."""
    parts: List[str] = []
    lines = content.split("\n")
    for idx, line in enumerate(lines):
        if "_" in line:
            parts.append("\n".join(lines[max(0, idx - 2):idx + 3]))

    for pattern in _KEY_SECTION_PATTERNS:
        m = pattern.search(content)
        if m:
            parts.append(m.group(0))

    if sum(len(p) for p in parts) < 15000:
        window, overlap = 3000, 500
        for start in range(0, len(content), window - overlap):
            chunk = content[start:start + window]
            if _BLANK_OR_BRACKET.search(chunk):
                parts.append(chunk)

    if parts:
        return {"content": "\n\n".join(parts), "mode": "strategic_sections"}
    head, tail = content[:12000], content[-8000:]
    return {"content": head + "\n\n[... MIDDLE SECTION TRUNCATED ...]\n\n" + tail, "mode": "truncated"}


_FALLBACK_LABELS = (
    (re.compile(r"\d+(?:st|nd|rd|th)?\s+day\s+of.*?month\s+of"), "Month Name", "Name of the month", "Enter month (e.g. January)", "text"),
    (re.compile(r"day\s+of.*?,\s*\d{4}"), "Month Name", "Name of the month", "Enter month (e.g. January)", "text"),
    (re.compile(r"^\s*\w*\s+day\s+of"), "Day Number", "Day of the month with ordinal", "Enter day (e.g. 1st, 27th)", "text"),
    (re.compile(r"dated|date"), "Date", "Complete date", "Enter date", "date"),
    (re.compile(r"\bcin\b|corporate identification"), "CIN Number", "Corporate Identification Number", "Enter CIN", "text"),
    (re.compile(r"\bpan\b"), "PAN Number", "Permanent Account Number", "Enter PAN (e.g. ABCDE1234F)", "text"),
    (re.compile(r"\bdin\b"), "DIN Number", "Director Identification Number", "Enter DIN (e.g. 12345678)", "text"),
    (re.compile(r"rupees|amount|rs\.|\$|dollars"), "Amount", "Monetary amount", "Enter amount", "number"),
    (re.compile(r"address|residing"), "Address", "Complete address", "Enter address", "address"),
    (re.compile(r"name|son of|daughter of"), "Name", "Person or entity name", "Enter name", "text"),
)


def _fallback_item(pattern: str, context: str, index: int) -> Dict[str, Any]:
    label = f"Missing Information {index + 1}"
    description = f"Information needed for blank: {pattern}"
    placeholder = "Enter required information"
    field_type = "text"
    lowered = context.lower()
    for regex, lbl, desc, ph, ft in _FALLBACK_LABELS:
        if regex.search(lowered):
            label, description, placeholder, field_type = lbl, desc, ph, ft
            break
    return {
        "id": f"fallback_{index}",
        "label": label,
        "description": description,
        "placeholder": placeholder,
        "fieldType": field_type,
        "importance": "important",
        "legalContext": "Required field identified in contract",
        "targetText": pattern,
        "context": context,
    }


def _context_around(text: str, start: int, length: int, chars: int) -> str:
    return text[max(0, start - chars):min(len(text), start + length + chars)]


def _add_fallback_items(items: List[Dict[str, Any]], content: str) -> int:
    patterns = find_blank_patterns(content)
    detected = [t for t in (first_present(i, "targetText") for i in items) if isinstance(t, str) and "_" in t]
    if len(detected) >= len(patterns) * FALLBACK_DETECTION_RATIO:
        return 0

    added = 0
    targets = {first_present(i, "targetText") for i in items}
    for index, pattern in enumerate(patterns):
        if pattern in targets:
            continue
        pos = content.find(pattern)
        if pos == -1:
            continue
        items.append(_fallback_item(pattern, _context_around(content, pos, len(pattern), FALLBACK_CONTEXT_CHARS), index))
        added += 1
    return added


def _add_date_items(items: List[Dict[str, Any]], content: str) -> List[Dict[str, Any]]:
    date_items: List[Dict[str, Any]] = []
    lowered_content = content.lower()
    for expr in find_date_expressions(content):
        lowered = expr.lower()
        covered = any(
            isinstance(t, str) and t and t.lower() in lowered
            for t in (first_present(i, "targetText") for i in items)
        )
        if covered:
            continue
        pos = lowered_content.find(lowered)
        if pos == -1:
            continue
        date_items.append(
            {
                "id": f"date_{len(date_items)}",
                "label": "Date",
                "description": 'Date that will be formatted as "Xth day of Month, Year"',
                "placeholder": "Select date",
                "fieldType": "date",
                "importance": "critical",
                "legalContext": "Date field requiring standardized format",
                "targetText": expr,
                "context": _context_around(content, pos, len(expr), FALLBACK_CONTEXT_CHARS),
            }
        )

    # a whole date expression supersedes the component blanks inside it
    kept = []
    for item in items:
        target = first_present(item, "targetText")
        if isinstance(target, str) and target and any(target.lower() in d["targetText"].lower() for d in date_items):
            continue
        kept.append(item)
    return kept + date_items


def convert_blanks_to_brackets(content: str) -> str:
    messages = _system_user(
        BLANK_CONVERSION_PROMPT,
        f"Convert ALL underscore patterns in this contract to bracketed placeholders:\n\n{content}",
    )
    return call_text(messages, max_tokens=16000, temperature=0.1)


def extract_missing_info(content: str) -> Dict[str, Any]:
    """
    Detect every fill-in field of a contract and where it occurs.

    1. blanks are rewritten to named bracket placeholders (skipped for very
       long documents);
    2. the model lists missing items, topped up with rule-based items for
       blanks it missed and for whole date expressions;
    3. each item is mapped to all of its occurrences in ``processedContent``.
       Items that cannot be found are dropped.
    """
    original_blanks = count_blanks(content)
    processed = content
    remaining = 0
    conversion_success = True
    size_limited = len(content) > BLANK_CONVERSION_MAX_CHARS

    if original_blanks:
        if size_limited:
            remaining = original_blanks
            conversion_success = False
            logger.info("blank conversion skipped: %d chars", len(content))
        else:
            processed = convert_blanks_to_brackets(content) or content
            remaining = count_blanks(processed)
            conversion_success = remaining == 0
            if remaining == original_blanks:
                logger.warning("blank conversion changed nothing, keeping original text")
                processed = content

    use_original = original_blanks > 0 and remaining == original_blanks
    analyzed = content if use_original else processed

    analysis_content, analysis_type = analyzed, ("full_original" if use_original else "full_processed")
    if len(analyzed) > STRATEGIC_EXCERPT_MIN_CHARS:
        excerpt = strategic_excerpt(analyzed)
        analysis_content, analysis_type = excerpt["content"], excerpt["mode"]

    partial = analysis_type in {"strategic_sections", "truncated"}
    system = MISSING_INFO_SYSTEM.format(note=" (only extracted sections of a long contract are shown)" if partial else "")
    prompt = MISSING_INFO_PROMPT.format(excerpt=" (EXTRACTED SECTIONS)" if partial else "", content=analysis_content)
    data = call_json(_system_user(system, prompt), max_tokens=8000, salvage_key="missingInfo")

    items = [i for i in (data.get("missingInfo") or []) if isinstance(i, dict)]
    detected = len(items)
    fallback_added = _add_fallback_items(items, analyzed)
    items = _add_date_items(items, analyzed)

    mapped: List[Dict[str, Any]] = []
    for index, item in enumerate(items):
        target = first_present(item, "targetText", "bracketedPlaceholder") or ""
        occurrences = find_all_occurrences(analyzed, str(target), OCCURRENCE_CONTEXT_CHARS)
        if occurrences:
            mapped.append(normalize_missing_item(item, index, occurrences))

    logger.info("missing info: %d detected, %d fallback, %d mapped", detected, fallback_added, len(mapped))
    return {
        "missingInfo": mapped,
        "processedContent": analyzed,
        "processingSteps": {
            "step1": {
                "name": "Blank to Bracket Conversion" if original_blanks else "Blank Detection",
                "originalBlanks": original_blanks,
                "remainingBlanks": remaining if original_blanks else 0,
                "conversionSuccess": conversion_success,
                "skipped": original_blanks == 0 or size_limited,
                "sizeLimited": size_limited,
            },
            "step2": {
                "name": "Smart Contract Analysis",
                "itemsDetected": len(items),
                "fallbackItems": fallback_added,
                "validItems": len(mapped),
                "analysisType": analysis_type,
                "contentAnalyzed": len(analysis_content),
                "originalSize": len(analyzed),
            },
            "step3": {
                "name": "Occurrence Mapping",
                "totalOccurrences": sum(len(i["occurrences"]) for i in mapped),
                "mappingStrategy": "full_content_search",
            },
        },
    }


# =========================
# interactive
# =========================
def _clean_history(previous_messages: Any) -> List[Dict[str, str]]:
    out: List[Dict[str, str]] = []
    if not isinstance(previous_messages, list):
        return out
    for m in previous_messages:
        if not isinstance(m, dict):
            continue
        role = str(m.get("role") or "")
        text = m.get("content")
        if role in {"user", "assistant"} and isinstance(text, str) and text.strip():
            out.append({"role": role, "content": text})
    return out


def chat_with_document(content: str, question: str, previous_messages: Any = None) -> str:
    messages = [
        {"role": "system", "content": CHAT_SYSTEM},
        {"role": "user", "content": f"Contract for reference:\n{content}"},
    ]
    messages.extend(_clean_history(previous_messages))
    messages.append({"role": "user", "content": question})
    return call_text(messages, max_tokens=1000, temperature=0.7)


def explain_text(context: str, selected: str) -> str:
    user = f'Contract context: {context}\n\nText to explain: "{selected}"'
    return call_text(_system_user(EXPLAIN_SYSTEM, user), max_tokens=1000, temperature=0.3)


def redraft_text(context: str, selected: str, instructions: str = "") -> Dict[str, str]:
    ask = (
        f"Additional instructions: {instructions}"
        if instructions
        else "Redraft this text to be clearer, fairer and less risky while keeping its purpose."
    )
    user = f'Contract context: {context}\n\nOriginal text: "{selected}"\n\n{ask}'
    data = call_json(_system_user(REDRAFT_SYSTEM, user), max_tokens=1000, temperature=0.4)
    return {
        "redraftedText": str(data.get("redraftedText") or selected),
        "explanation": str(data.get("explanation") or "No specific improvements identified."),
    }
