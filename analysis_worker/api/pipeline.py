from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from packages.analysis_core.normalizer import normalize_content
from packages.analysis_core.result_contract import (
    CACHE_FIELDS,
    CACHE_RISKS,
    CACHE_SUMMARY,
    STATUS_COMPLETE,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_RISKS_COMPLETE,
    STATUS_SUMMARY_COMPLETE,
)
from packages.analysis_schema import apply_risk_filter

from .llm_client import NotAContractError
from .llm_provider import KIND_TEMPLATE, BaseLLMClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (status, progress, stage message) for every pipeline checkpoint
STEP_SUMMARY_START = (STATUS_IN_PROGRESS, 10, "Starting summary analysis...")
STEP_SUMMARY_DONE = (STATUS_SUMMARY_COMPLETE, 33, "Summary analysis complete")
STEP_RISKS_START = (STATUS_IN_PROGRESS, 40, "Starting risk analysis...")
STEP_RISKS_COMPARE = (STATUS_IN_PROGRESS, 50, "Comparing risks with resolved history...")
STEP_RISKS_DONE = (STATUS_RISKS_COMPLETE, 66, "Risk analysis complete")
STEP_FIELDS_START = (STATUS_IN_PROGRESS, 75, "Starting field analysis...")
STEP_FIELDS_DONE = (STATUS_IN_PROGRESS, 90, "Field analysis complete")
STEP_NORMALIZED = (STATUS_IN_PROGRESS, 95, "Template variables normalized")
STEP_COMPLETE = (STATUS_COMPLETE, 100, "Analysis complete")


class AnalysisStore:
    """Where a single document's pipeline run reports its state and results."""

    def update_status(self, status: str, progress: Optional[int], stage: str = "", error: Optional[str] = None) -> None:
        raise NotImplementedError

    def update_retry_count(self, count: int) -> None:
        raise NotImplementedError

    def merge_cache(self, key: str, data: Any) -> None:
        raise NotImplementedError

    def update_content(self, content: str) -> None:
        raise NotImplementedError


def perform_with_retry(
    operation: Callable[[], T],
    *,
    label: str,
    max_retries: int,
    backoff_base: float,
    sleep: Callable[[float], None],
    report_retry: Callable[[int], None],
    non_retryable: Tuple[Type[BaseException], ...] = (),
) -> T:
    """
    Run ``operation`` up to ``max_retries + 1`` times.

    After failure ``n`` the retry count ``n`` is reported and, if attempts
    remain, ``backoff_base * 2 ** (n - 1)`` seconds are slept. A success that
    needed retries resets the reported count to 0.
    """
    attempts = max_retries + 1
    last_exc: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            result = operation()
        except non_retryable:
            raise
        except Exception as exc:
            last_exc = exc
            logger.warning("%s attempt %d/%d failed: %s", label, attempt, attempts, exc)
            report_retry(attempt)
            if attempt < attempts:
                sleep(backoff_base * (2 ** (attempt - 1)))
            continue

        if attempt > 1:
            report_retry(0)
        return result

    assert last_exc is not None
    raise last_exc


class AnalysisPipeline:
    def __init__(
        self,
        store: AnalysisStore,
        client: BaseLLMClient,
        max_retries: int = 2,
        backoff_base: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.client = client
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.sleep = sleep

    def _step(self, step: Tuple[str, int, str], stage: str = "") -> None:
        status, progress, message = step
        self.store.update_status(status, progress, stage or message)

    def _retry(self, operation: Callable[[], T], label: str) -> T:
        return perform_with_retry(
            operation,
            label=label,
            max_retries=self.max_retries,
            backoff_base=self.backoff_base,
            sleep=self.sleep,
            report_retry=self.store.update_retry_count,
            non_retryable=(NotAContractError,),
        )

    def run(self, kind: str, content: str, resolved_risks: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        try:
            return self._run(kind, content, resolved_risks or [])
        except Exception as exc:
            logger.error("analysis failed (%s): %s", kind, exc)
            try:
                self.store.update_status(STATUS_FAILED, None, "Analysis failed", error=str(exc))
            except Exception as report_exc:
                logger.error("could not record failure: %s", report_exc)
            raise

    def _run(self, kind: str, content: str, resolved_risks: List[Dict[str, Any]]) -> Dict[str, Any]:
        self._step(STEP_SUMMARY_START)
        summary = self._retry(lambda: self.client.summarize(kind, content), "summary")
        self.store.merge_cache(CACHE_SUMMARY, summary)
        self._step(STEP_SUMMARY_DONE)

        self._step(STEP_RISKS_START)
        risks = self._retry(lambda: self.client.identify_risks(kind, content), "risks")
        done_message = STEP_RISKS_DONE[2]
        if kind == KIND_TEMPLATE:
            risks = self._filter_resolved(risks, resolved_risks)
            if risks["duplicatesFiltered"]:
                done_message += f" ({risks['duplicatesFiltered']} duplicates filtered)"
        self.store.merge_cache(CACHE_RISKS, risks)
        self._step(STEP_RISKS_DONE, done_message)

        self._step(STEP_FIELDS_START)
        fields = self._retry(lambda: self.client.extract_fields(kind, content), "fields")
        self.store.merge_cache(CACHE_FIELDS, fields)
        self._step(STEP_FIELDS_DONE)

        variables = fields.get("missingInfo") or []
        processed = fields.get("processedContent")
        if kind != KIND_TEMPLATE:
            # occurrence offsets refer to the bracketed text
            if isinstance(processed, str) and processed.strip() and processed != content:
                self.store.update_content(processed)
        elif variables:
            base = processed or content
            normalized, replaced = normalize_content(base, variables)
            logger.info("normalized %d template variable occurrences", replaced)
            if normalized != content:
                self.store.update_content(normalized)
            fields = {**fields, "processedContent": normalized}
            self.store.merge_cache(CACHE_FIELDS, fields)
            self._step(STEP_NORMALIZED)

        self._step(STEP_COMPLETE)
        return {CACHE_SUMMARY: summary, CACHE_RISKS: risks, CACHE_FIELDS: fields}

    def _filter_resolved(self, risks: Dict[str, Any], resolved_risks: List[Dict[str, Any]]) -> Dict[str, Any]:
        found = list(risks.get("risks") or [])
        unique, duplicates = found, []
        if resolved_risks and found:
            self._step(STEP_RISKS_COMPARE)
            try:
                result = self.client.compare_risks(found, resolved_risks)
                unique = list(result.get("uniqueRisks") or [])
                duplicates = list(result.get("duplicateRiskIds") or [])
            except Exception as exc:
                logger.warning("risk comparison failed, keeping all risks: %s", exc)
                unique, duplicates = found, []
        return apply_risk_filter(risks, unique, duplicates, filtering_applied=bool(resolved_risks))
