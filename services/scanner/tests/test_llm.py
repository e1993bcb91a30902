from __future__ import annotations

import json
from types import SimpleNamespace

import anthropic
import httpx
import pytest
from scanner.llm import (
    ClaudeClient,
    ExtractionError,
    GenerationError,
    LLMError,
    ScoringError,
    build_llm_client,
    strip_markdown_fences,
)
from scanner.models import AggregatedPreferences, Job

pytestmark = pytest.mark.unit


class FakeMessages:
    def __init__(self, outcomes: list[object]) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, object]] = []

    def create(self, **kwargs: object) -> object:
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=outcome)])


def _client(*outcomes: object) -> tuple[ClaudeClient, FakeMessages, list[float]]:
    messages = FakeMessages(list(outcomes))
    delays: list[float] = []
    client = ClaudeClient(
        "sk-test",
        client=SimpleNamespace(messages=messages),
        sleep=delays.append,
    )
    return client, messages, delays


def _status_error(status_code: int) -> anthropic.APIStatusError:
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    response = httpx.Response(status_code, request=request, json={"error": "busy"})
    return anthropic.APIStatusError("busy", response=response, body=None)


def _job() -> Job:
    return Job(
        id="job-1",
        title="BizOps Lead",
        company="Acme",
        description="Own planning.",
        description_hash="abc",
        locations=["Tel Aviv"],
        role_tags=["BizOps"],
        source="test_source",
        raw_data={},
        active=True,
        created_at="2026-01-01T00:00:00+00:00",
        updated_at="2026-01-01T00:00:00+00:00",
    )


def test_strip_markdown_fences() -> None:
    assert strip_markdown_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_markdown_fences('  {"a": 1} ') == '{"a": 1}'


def test_extract_job_data_normalizes_model_output() -> None:
    payload = {
        "title": "BizOps Lead",
        "company": "null",
        "description": "Own planning.",
        "locations": ["Tel Aviv", "Tel Aviv", ""],
        "role_tags": ["bizops", "Underwater Basket Weaving", "RevOps"],
        "posting_date": "2026-03-01T10:00:00Z",
        "work_mode": "remote",
    }
    client, messages, _ = _client("```json\n" + json.dumps(payload) + "\n```")

    extracted = client.extract_job_data("Own planning.")

    assert extracted.title == "BizOps Lead"
    assert extracted.company is None
    assert extracted.locations == ["Tel Aviv"]
    assert extracted.role_tags == ["BizOps", "RevOps"]
    assert extracted.posting_date == "2026-03-01"
    assert extracted.work_mode == "Remote"
    assert messages.calls[0]["model"] == "claude-sonnet-4-20250514"


def test_extract_job_data_wraps_invalid_json() -> None:
    client, _, _ = _client("not json at all")

    with pytest.raises(ExtractionError):
        client.extract_job_data("Own planning.")


def test_score_job_fit_recomputes_overall_score() -> None:
    client, messages, _ = _client(
        json.dumps(
            {
                "user_to_job_score": 92,
                "job_to_user_score": 95,
                "overall_score": 12,
                "explanation": "Strong match.",
            }
        )
    )

    score = client.score_job_fit(
        "cv text",
        "Own planning.",
        AggregatedPreferences(roles=["BizOps"], locations=["Tel Aviv"], companies=["Acme"]),
        _job(),
    )

    assert score.overall_score == 93.2
    assert "That's a Match!" in score.tags
    prompt = messages.calls[0]["messages"][0]["content"]
    assert "High-Interest Companies: Acme" in prompt


def test_score_job_fit_rejects_non_numeric_scores() -> None:
    client, _, _ = _client(json.dumps({"user_to_job_score": "high", "job_to_user_score": 90}))

    with pytest.raises(ScoringError):
        client.score_job_fit("cv", "jd", AggregatedPreferences(), _job())


def test_complete_retries_transient_failures_with_backoff() -> None:
    client, messages, delays = _client(_status_error(529), _status_error(429), "done")

    assert client.complete("prompt", max_tokens=10) == "done"
    assert len(messages.calls) == 3
    assert delays == [1.0, 2.0]


def test_complete_does_not_retry_client_errors() -> None:
    client, messages, delays = _client(_status_error(400), "unused")

    with pytest.raises(anthropic.APIStatusError):
        client.complete("prompt", max_tokens=10)
    assert len(messages.calls) == 1
    assert delays == []


def test_complete_gives_up_after_max_retries() -> None:
    client, messages, _ = _client(*[_status_error(503) for _ in range(5)])

    with pytest.raises(anthropic.APIStatusError):
        client.complete("prompt", max_tokens=10)
    assert len(messages.calls) == 5


def test_sdk_client_leaves_retries_to_complete(monkeypatch) -> None:
    built: list[dict[str, object]] = []
    messages = FakeMessages([_status_error(529), "done"])

    def fake_anthropic(**kwargs: object) -> SimpleNamespace:
        built.append(kwargs)
        return SimpleNamespace(messages=messages)

    monkeypatch.setattr(anthropic, "Anthropic", fake_anthropic)
    delays: list[float] = []
    client = ClaudeClient("sk-test", sleep=delays.append)

    assert client.complete("prompt", max_tokens=10) == "done"
    assert built == [{"api_key": "sk-test", "max_retries": 0}]
    assert len(messages.calls) == 2
    assert delays == [1.0]


def test_generate_tailored_cv_flattens_sections() -> None:
    client, _, _ = _client(
        json.dumps(
            {
                "sections": {
                    "summary": "Operator.",
                    "experience": ["Head of BizOps"],
                    "education": ["BSc Maths"],
                    "skills": ["SQL", "Python"],
                }
            }
        )
    )

    tailored = client.generate_tailored_cv("base", "jd", "BizOps Lead", "Acme")

    assert tailored.full_text == (
        "Operator.\n\nEXPERIENCE\nHead of BizOps\n\nEDUCATION\nBSc Maths\n\nSKILLS\nSQL, Python"
    )


def test_generate_tailored_cv_requires_sections() -> None:
    client, _, _ = _client(json.dumps({"summary": "no sections"}))

    with pytest.raises(GenerationError):
        client.generate_tailored_cv("base", "jd", "BizOps Lead", "Acme")


def test_generate_cover_letter_returns_plain_text() -> None:
    client, messages, _ = _client("```\nHey team,\nThanks\n```")

    letter = client.generate_cover_letter("base", "jd", "BizOps Lead", "Acme", "Ada", "Hey")

    assert letter == "Hey team,\nThanks"
    assert messages.calls[0]["max_tokens"] == 500


def test_missing_api_key_fails_on_first_request(monkeypatch) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.setenv("ANTHROPIC_MODEL", "claude-test-model")
    client = build_llm_client()

    assert client.model == "claude-test-model"
    with pytest.raises(LLMError):
        client.complete("prompt", max_tokens=10)
    with pytest.raises(ExtractionError):
        client.extract_job_data("Own planning.")
