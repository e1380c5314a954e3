import pytest

from analysis_worker.api.llm_client import LLMResponseError, NotAContractError
from analysis_worker.api.llm_provider import BaseLLMClient
from analysis_worker.api.pipeline import AnalysisPipeline, AnalysisStore, perform_with_retry


class RecordingStore(AnalysisStore):
    def __init__(self):
        self.events = []
        self.cache = {}
        self.content = None

    def update_status(self, status, progress, stage="", error=None):
        self.events.append(("status", status, progress, stage, error))

    def update_retry_count(self, count):
        self.events.append(("retry", count))

    def merge_cache(self, key, data):
        self.events.append(("cache", key))
        self.cache[key] = data

    def update_content(self, content):
        self.events.append(("content",))
        self.content = content

    def statuses(self):
        return [(e[1], e[2]) for e in self.events if e[0] == "status"]


RISKS = {
    "risks": [
        {"id": "risk-0", "clause": "a", "riskLevel": "high"},
        {"id": "risk-1", "clause": "b", "riskLevel": "low"},
    ],
    "totalRisksFound": 2,
    "highRiskCount": 1,
    "mediumRiskCount": 0,
    "lowRiskCount": 1,
}


class FakeClient(BaseLLMClient):
    def __init__(self, fields=None, fail=None, compare=None):
        self.fields = fields if fields is not None else {"missingInfo": [], "processedContent": ""}
        self.fail = dict(fail or {})
        self.compare = compare
        self.calls = []

    def _maybe_fail(self, stage):
        remaining = self.fail.get(stage)
        if remaining:
            if isinstance(remaining, BaseException):
                raise remaining
            self.fail[stage] = remaining - 1
            raise LLMResponseError(f"{stage} failed")

    def summarize(self, kind, content):
        self.calls.append("summary")
        self._maybe_fail("summary")
        return {"overview": "ok"}

    def identify_risks(self, kind, content):
        self.calls.append("risks")
        self._maybe_fail("risks")
        return dict(RISKS)

    def extract_fields(self, kind, content):
        self.calls.append("fields")
        self._maybe_fail("fields")
        return dict(self.fields)

    def compare_risks(self, new_risks, resolved_risks):
        self.calls.append("compare")
        if isinstance(self.compare, BaseException):
            raise self.compare
        return self.compare


def make_pipeline(client, store=None, sleeps=None):
    store = store or RecordingStore()
    sleeps = sleeps if sleeps is not None else []
    return AnalysisPipeline(store, client, max_retries=2, backoff_base=1.0, sleep=sleeps.append), store


def test_contract_run_reports_every_checkpoint_in_order():
    pipeline, store = make_pipeline(FakeClient())
    result = pipeline.run("contract", "Some contract text")

    assert store.statuses() == [
        ("in_progress", 10),
        ("summary_complete", 33),
        ("in_progress", 40),
        ("risks_complete", 66),
        ("in_progress", 75),
        ("in_progress", 90),
        ("complete", 100),
    ]
    assert [e[1] for e in store.events if e[0] == "cache"] == ["summary", "risks", "fields"]
    assert set(result) == {"summary", "risks", "fields"}
    assert store.content is None


def test_partial_results_persist_before_later_failure():
    pipeline, store = make_pipeline(FakeClient(fail={"fields": 10}))

    with pytest.raises(LLMResponseError):
        pipeline.run("contract", "text")

    assert set(store.cache) == {"summary", "risks"}
    last = store.events[-1]
    assert last[:3] == ("status", "failed", None)
    assert last[4] == "fields failed"


def test_stage_retry_backoff_and_retry_count():
    sleeps = []
    pipeline, store = make_pipeline(FakeClient(fail={"summary": 2}), sleeps=sleeps)
    pipeline.run("contract", "text")

    assert sleeps == [1.0, 2.0]
    retries = [e[1] for e in store.events if e[0] == "retry"]
    assert retries == [1, 2, 0]


def test_retry_exhaustion_reraises_last_error():
    sleeps = []
    reported = []
    attempts = []

    def op():
        attempts.append(1)
        raise LLMResponseError(f"attempt {len(attempts)}")

    with pytest.raises(LLMResponseError, match="attempt 3"):
        perform_with_retry(
            op,
            label="risks",
            max_retries=2,
            backoff_base=0.5,
            sleep=sleeps.append,
            report_retry=reported.append,
        )
    assert len(attempts) == 3
    assert sleeps == [0.5, 1.0]
    assert reported == [1, 2, 3]


def test_not_a_contract_is_not_retried():
    client = FakeClient(fail={"summary": NotAContractError("not a contract")})
    pipeline, store = make_pipeline(client)

    with pytest.raises(NotAContractError):
        pipeline.run("contract", "a recipe")

    assert client.calls == ["summary"]
    assert ("status", "failed", None, "Analysis failed", "not a contract") in store.events


def test_template_filters_resolved_duplicates():
    client = FakeClient(compare={"uniqueRisks": [RISKS["risks"][1]], "duplicateRiskIds": ["risk-0"]})
    pipeline, store = make_pipeline(client)
    pipeline.run("template", "template text", resolved_risks=[{"id": "old", "clause": "a"}])

    risks = store.cache["risks"]
    assert risks["totalRisksFound"] == 1
    assert risks["duplicatesFiltered"] == 1
    assert risks["originalRisksFound"] == 2
    assert risks["smartFilteringApplied"] is True
    assert ("in_progress", 50) in store.statuses()
    stage = [e[3] for e in store.events if e[0] == "status" and e[1] == "risks_complete"][0]
    assert stage == "Risk analysis complete (1 duplicates filtered)"


def test_template_comparison_failure_keeps_all_risks():
    client = FakeClient(compare=LLMResponseError("compare down"))
    pipeline, store = make_pipeline(client)
    pipeline.run("template", "template text", resolved_risks=[{"id": "old", "clause": "a"}])

    assert store.cache["risks"]["totalRisksFound"] == 2
    assert store.cache["risks"]["duplicatesFiltered"] == 0


def test_template_without_history_skips_comparison():
    client = FakeClient()
    pipeline, store = make_pipeline(client)
    pipeline.run("template", "template text")

    assert "compare" not in client.calls
    assert store.cache["risks"]["smartFilteringApplied"] is False
    assert ("in_progress", 50) not in store.statuses()


def test_template_variables_are_normalized_and_persisted():
    processed = "Between [Party Name] and Acme, signed [Party Name]."
    fields = {
        "missingInfo": [
            {
                "id": "party",
                "label": "Party Name",
                "occurrences": [
                    {"text": "[Party Name]", "position": {"start": 8, "end": 20}},
                    {"text": "[Party Name]", "position": {"start": 38, "end": 50}},
                ],
            }
        ],
        "processedContent": processed,
    }
    pipeline, store = make_pipeline(FakeClient(fields=fields))
    pipeline.run("template", "Between ____ and Acme, signed ____.")

    expected = "Between {{Party_Name}} and Acme, signed {{Party_Name}}."
    assert store.content == expected
    assert store.cache["fields"]["processedContent"] == expected
    assert store.statuses()[-2:] == [("in_progress", 95), ("complete", 100)]


def test_contract_adopts_bracketed_content_without_normalizing():
    fields = {
        "missingInfo": [{"label": "Name", "occurrences": [{"text": "[Name]", "position": {"start": 0, "end": 6}}]}],
        "processedContent": "[Name] signs.",
    }
    pipeline, store = make_pipeline(FakeClient(fields=fields))
    pipeline.run("contract", "____ signs.")

    assert store.content == "[Name] signs."
    assert store.cache["fields"]["processedContent"] == "[Name] signs."
    assert ("in_progress", 95) not in store.statuses()
    kinds = [e[0] if e[0] != "cache" else e[1] for e in store.events]
    assert kinds.index("content") > kinds.index("fields")


def test_contract_content_untouched_when_nothing_converted():
    fields = {"missingInfo": [], "processedContent": "Plain terms."}
    pipeline, store = make_pipeline(FakeClient(fields=fields))
    pipeline.run("contract", "Plain terms.")

    assert store.content is None
    assert ("content",) not in store.events
