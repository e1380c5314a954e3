from __future__ import annotations

import logging
import os
from typing import Any, Dict, List

from . import llm_client

logger = logging.getLogger(__name__)

KIND_CONTRACT = "contract"
KIND_TEMPLATE = "template"


class BaseLLMClient:
    """Stage operations the analysis pipeline needs, per document kind."""

    name = "base"

    def summarize(self, kind: str, content: str) -> Dict[str, Any]:
        raise NotImplementedError

    def identify_risks(self, kind: str, content: str) -> Dict[str, Any]:
        raise NotImplementedError

    def extract_fields(self, kind: str, content: str) -> Dict[str, Any]:
        raise NotImplementedError

    def compare_risks(self, new_risks: List[Dict[str, Any]], resolved_risks: List[Dict[str, Any]]) -> Dict[str, Any]:
        raise NotImplementedError


class RemoteLLMClient(BaseLLMClient):
    name = "openai"

    def summarize(self, kind: str, content: str) -> Dict[str, Any]:
        if kind == KIND_TEMPLATE:
            return llm_client.summarize_template(content)
        return llm_client.summarize_contract(content)

    def identify_risks(self, kind: str, content: str) -> Dict[str, Any]:
        if kind == KIND_TEMPLATE:
            return llm_client.identify_template_risks(content)
        return llm_client.identify_risky_terms(content)

    def extract_fields(self, kind: str, content: str) -> Dict[str, Any]:
        return llm_client.extract_missing_info(content)

    def compare_risks(self, new_risks: List[Dict[str, Any]], resolved_risks: List[Dict[str, Any]]) -> Dict[str, Any]:
        return llm_client.compare_template_risks(new_risks, resolved_risks)


def _provider_name() -> str:
    return (os.environ.get("LLM_PROVIDER") or "openai").strip().lower()


def build_llm_client() -> BaseLLMClient:
    provider = _provider_name()
    if provider not in {"openai", "remote"}:
        logger.warning("unknown LLM_PROVIDER=%r, using openai", provider)
    return RemoteLLMClient()
