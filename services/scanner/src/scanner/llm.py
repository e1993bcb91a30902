from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from typing import Any

import anthropic
from common.utils import parse_iso_datetime, unique_in_order

from scanner.models import (
    ROLE_TAXONOMY,
    WORK_MODES,
    AggregatedPreferences,
    CVSections,
    ExtractedJob,
    FitScore,
    Job,
    TailoredCV,
)
from scanner.scoring import build_fit_score

DEFAULT_MODEL = "claude-sonnet-4-20250514"
MAX_RETRIES = 5
BASE_DELAY = 1.0
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 529}
LOGGER = logging.getLogger("gigradar.scanner")

_TAXONOMY_LOOKUP = {tag.lower(): tag for tag in ROLE_TAXONOMY}
_WORK_MODE_LOOKUP = {mode.lower(): mode for mode in WORK_MODES}

EXTRACTION_PROMPT = """Extract structured information from this job description. \
Map the role to one of these taxonomies: {taxonomy}.

Job Description:
{description}

Return ONLY a valid JSON object with this exact structure:
{{
  "title": "extracted job title",
  "company": "company name",
  "description": "full description text",
  "locations": ["location1", "location2"],
  "role_tags": ["tag1", "tag2"],
  "posting_date": "YYYY-MM-DD or null",
  "work_mode": "Remote|Hybrid|Onsite or null"
}}

Rules:
- Never hallucinate or invent information
- Use null for missing fields
- Map role to closest taxonomy match
- Include all mentioned locations
- Return ONLY valid JSON, no markdown or explanations"""

SCORING_PROMPT = """Score the fit between this candidate's CV and the job description.

CANDIDATE CV:
{cv_text}

JOB DESCRIPTION:
Title: {title}
Company: {company}
Locations: {locations}
Role Tags: {role_tags}

{job_description}

USER PREFERENCES:
Preferred Roles: {roles}
Preferred Locations: {preferred_locations}
High-Interest Companies: {companies}

Calculate two scores (0-100):

1. User->Job Fit (60% weight): How well does the CV match the JD requirements?
   - Consider explicit skills, experience, and qualifications ONLY
   - Never invent experience or metrics
   - Base score purely on what's documented in the CV

2. Job->User Fit (40% weight): How well does the job match user preferences?
   - Role taxonomy match
   - Location match
   - Company match (high-interest companies boost score)
   - Unlisted companies should lower this score

Provide 5-7 lines of explanation for both scores.

Return ONLY valid JSON:
{{
  "user_to_job_score": <number 0-100>,
  "job_to_user_score": <number 0-100>,
  "explanation": "5-7 lines explaining both scores"
}}"""

TAILORED_CV_PROMPT = """Rewrite this CV for the "{job_title}" role at {company}.

BASE CV (canonical source):
{base_cv}

TARGET JOB:
{job_description}

Rules:
1. Use ONLY content from the base CV - never invent experience, metrics, or dates
2. Never alter job titles, dates, or company names
3. Reorder and rephrase content to highlight relevant experience
4. Inject keywords from the JD naturally
5. Keep under 1000 words
6. Make it ATS-friendly
7. Maintain professional tone

Return ONLY valid JSON:
{{
  "sections": {{
    "summary": "2-3 sentence summary (optional)",
    "experience": ["experience item 1", "experience item 2"],
    "education": ["education item 1"],
    "skills": ["skill1", "skill2"]
  }}
}}"""

COVER_LETTER_PROMPT = """Write a cover letter for {user_name} applying to the "{job_title}" role at {company}.

CANDIDATE CV:
{base_cv}

JOB DESCRIPTION:
{job_description}

STYLE REFERENCE (match this tone and voice):
{style_example}

Requirements:
- Maximum 200 words
- Short, punchy, direct
- Match the reference style: confident, a bit salty, no fluff
- Reference specific achievements from CV
- Show genuine interest in the company/role
- No generic platitudes

Return ONLY the cover letter text, no JSON, no markdown."""


class LLMError(RuntimeError):
    pass


class ExtractionError(LLMError):
    pass


class ScoringError(LLMError):
    pass


class GenerationError(LLMError):
    pass


def strip_markdown_fences(text: str) -> str:
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    first_newline = stripped.find("\n")
    body = stripped[first_newline + 1 :] if first_newline != -1 else stripped[3:]
    if body.rstrip().endswith("```"):
        body = body.rstrip()[:-3]
    return body.strip()


def parse_json_object(text: str) -> dict[str, Any]:
    parsed = json.loads(strip_markdown_fences(text))
    if not isinstance(parsed, dict):
        raise ValueError("Model response must be a JSON object.")
    return parsed


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = " ".join(str(value).split())
    if not text or text.lower() == "null":
        return None
    return text


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return unique_in_order([_optional_text(item) or "" for item in value])


def normalize_role_tags(values: Any) -> list[str]:
    tags = [_TAXONOMY_LOOKUP.get(tag.lower()) for tag in _string_list(values)]
    return unique_in_order([tag for tag in tags if tag])


def normalize_work_mode(value: Any) -> str | None:
    text = _optional_text(value)
    if text is None:
        return None
    return _WORK_MODE_LOOKUP.get(text.lower())


def normalize_posting_date(value: Any) -> str | None:
    parsed = parse_iso_datetime(_optional_text(value))
    if parsed is None:
        return None
    return parsed.date().isoformat()


def flatten_cv_sections(sections: CVSections) -> str:
    parts: list[str] = []
    if sections.summary:
        parts.append(sections.summary)
    if sections.experience:
        parts.append("EXPERIENCE\n" + "\n\n".join(sections.experience))
    if sections.education:
        parts.append("EDUCATION\n" + "\n".join(sections.education))
    if sections.skills:
        parts.append("SKILLS\n" + ", ".join(sections.skills))
    return "\n\n".join(parts)


class ClaudeClient:
    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str | None = None,
        client: Any | None = None,
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_key = api_key
        self.model = model or DEFAULT_MODEL
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            if not self.api_key:
                raise LLMError("ANTHROPIC_API_KEY is not configured")
            self._client = anthropic.Anthropic(api_key=self.api_key, max_retries=0)
        return self._client

    def complete(self, prompt: str, *, max_tokens: int) -> str:
        for attempt in range(self.max_retries):
            try:
                response = self.client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    messages=[{"role": "user", "content": prompt}],
                )
            except anthropic.APIStatusError as exc:
                if exc.status_code not in RETRYABLE_STATUS_CODES:
                    raise
                if attempt == self.max_retries - 1:
                    raise
                self._backoff(attempt, reason=f"status {exc.status_code}")
                continue
            except anthropic.APIConnectionError:
                if attempt == self.max_retries - 1:
                    raise
                self._backoff(attempt, reason="connection error")
                continue

            block = response.content[0] if response.content else None
            if block is None or getattr(block, "type", None) != "text":
                raise LLMError("Unexpected response type from Claude")
            return block.text
        raise LLMError("Claude request was not attempted")

    def _backoff(self, attempt: int, *, reason: str) -> None:
        delay = self.base_delay * (2**attempt)
        LOGGER.warning(
            json.dumps(
                {
                    "event": "llm_retry",
                    "reason": reason,
                    "attempt": attempt + 1,
                    "max_retries": self.max_retries,
                    "delay_seconds": delay,
                }
            )
        )
        self._sleep(delay)

    def extract_job_data(self, description: str) -> ExtractedJob:
        prompt = EXTRACTION_PROMPT.format(
            taxonomy=", ".join(ROLE_TAXONOMY),
            description=description,
        )
        try:
            payload = parse_json_object(self.complete(prompt, max_tokens=2000))
        except (anthropic.APIError, LLMError, ValueError) as exc:
            raise ExtractionError(f"Failed to extract job data: {exc}") from exc

        return ExtractedJob(
            title=_optional_text(payload.get("title")),
            company=_optional_text(payload.get("company")),
            description=_optional_text(payload.get("description")),
            locations=_string_list(payload.get("locations")),
            role_tags=normalize_role_tags(payload.get("role_tags", payload.get("roleTags"))),
            posting_date=normalize_posting_date(
                payload.get("posting_date", payload.get("postingDate"))
            ),
            work_mode=normalize_work_mode(payload.get("work_mode", payload.get("workMode"))),
        )

    def score_job_fit(
        self,
        cv_text: str,
        job_description: str,
        preferences: AggregatedPreferences,
        job: Job,
    ) -> FitScore:
        prompt = SCORING_PROMPT.format(
            cv_text=cv_text,
            title=job.title,
            company=job.company,
            locations=", ".join(job.locations),
            role_tags=", ".join(job.role_tags),
            job_description=job_description,
            roles=", ".join(preferences.roles),
            preferred_locations=", ".join(preferences.locations),
            companies=", ".join(preferences.companies),
        )
        try:
            payload = parse_json_object(self.complete(prompt, max_tokens=1500))
            return build_fit_score(
                payload.get("user_to_job_score", payload.get("userToJobScore")),
                payload.get("job_to_user_score", payload.get("jobToUserScore")),
                str(payload.get("explanation") or ""),
            )
        except (anthropic.APIError, LLMError, ValueError) as exc:
            raise ScoringError(f"Failed to score job fit: {exc}") from exc

    def generate_tailored_cv(
        self,
        base_cv: str,
        job_description: str,
        job_title: str,
        company: str,
    ) -> TailoredCV:
        prompt = TAILORED_CV_PROMPT.format(
            job_title=job_title,
            company=company,
            base_cv=base_cv,
            job_description=job_description,
        )
        try:
            payload = parse_json_object(self.complete(prompt, max_tokens=3000))
            raw_sections = payload.get("sections")
            if not isinstance(raw_sections, dict):
                raise ValueError("Model response is missing sections.")
            sections = CVSections(
                summary=_optional_text(raw_sections.get("summary")),
                experience=_string_list(raw_sections.get("experience")),
                education=_string_list(raw_sections.get("education")),
                skills=_string_list(raw_sections.get("skills")),
            )
        except (anthropic.APIError, LLMError, ValueError) as exc:
            raise GenerationError(f"Failed to generate tailored CV: {exc}") from exc
        return TailoredCV(sections=sections, full_text=flatten_cv_sections(sections))

    def generate_cover_letter(
        self,
        base_cv: str,
        job_description: str,
        job_title: str,
        company: str,
        user_name: str,
        style_example: str,
    ) -> str:
        prompt = COVER_LETTER_PROMPT.format(
            user_name=user_name,
            job_title=job_title,
            company=company,
            base_cv=base_cv,
            job_description=job_description,
            style_example=style_example,
        )
        try:
            text = self.complete(prompt, max_tokens=500)
        except (anthropic.APIError, LLMError) as exc:
            raise GenerationError(f"Failed to generate cover letter: {exc}") from exc
        return strip_markdown_fences(text)


def build_llm_client(*, api_key: str | None = None, model: str | None = None) -> ClaudeClient:
    resolved_key = (api_key or os.getenv("ANTHROPIC_API_KEY", "")).strip() or None
    resolved_model = (model or os.getenv("ANTHROPIC_MODEL", "")).strip() or DEFAULT_MODEL
    if resolved_key is None:
        LOGGER.warning(json.dumps({"event": "llm_unconfigured", "model": resolved_model}))
    return ClaudeClient(resolved_key, model=resolved_model)
