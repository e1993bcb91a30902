from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
from emailer.sender import LoggingEmailSender
from scanner.context import ScanContext
from scanner.llm import flatten_cv_sections
from scanner.models import (
    AggregatedPreferences,
    CVSections,
    ExtractedJob,
    FitScore,
    Job,
    PreferenceSetCreateRequest,
    RawPosting,
    TailoredCV,
    User,
)
from scanner.notifications import NotificationDispatcher
from scanner.repository import ScannerRepository
from scanner.scoring import build_fit_score

BASE_CV = """Ada Lovelace
EXPERIENCE
Head of Business Operations at Analytical Engines
Built forecasting and board reporting from zero
EDUCATION
BSc Mathematics
SKILLS
SQL, Python, Forecasting"""


class FakeLLM:
    def __init__(self) -> None:
        self.default_scores = (92.0, 95.0)
        self.scores: dict[str, tuple[float, float]] = {}
        self.failing_titles: set[str] = set()
        self.extract_calls = 0
        self.score_calls = 0

    def extract_job_data(self, description: str) -> ExtractedJob:
        self.extract_calls += 1
        return ExtractedJob(
            locations=["Tel Aviv"],
            role_tags=["BizOps"],
            work_mode="Hybrid",
        )

    def score_job_fit(
        self,
        cv_text: str,
        job_description: str,
        preferences: AggregatedPreferences,
        job: Job,
    ) -> FitScore:
        self.score_calls += 1
        if job.title in self.failing_titles:
            raise RuntimeError("model unavailable")
        user_to_job, job_to_user = self.scores.get(job.title, self.default_scores)
        return build_fit_score(user_to_job, job_to_user, "Strong operations background.")

    def generate_tailored_cv(
        self,
        base_cv: str,
        job_description: str,
        job_title: str,
        company: str,
    ) -> TailoredCV:
        sections = CVSections(
            summary=f"Operator ready for {job_title} at {company}.",
            experience=["Head of Business Operations at Analytical Engines"],
            education=["BSc Mathematics"],
            skills=["SQL", "Python"],
        )
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
        return f"Hey {company} team,\n\nI want to run {job_title} for you.\n\nThanks"


class FailingEmailSender(LoggingEmailSender):
    def __init__(self, failing_recipients: set[str]) -> None:
        super().__init__()
        self.failing_recipients = failing_recipients

    def send(self, to: str, subject: str, html: str) -> str:
        if to in self.failing_recipients:
            raise RuntimeError(f"mailbox unavailable for {to}")
        return super().send(to, subject, html)


class StaticJobSource:
    def __init__(self) -> None:
        self.postings: list[RawPosting] = []
        self.calls = 0

    def add(self, title: str, company: str, description: str, **extra: str) -> RawPosting:
        posting = RawPosting(
            title=title,
            company=company,
            description=description,
            source="test_source",
            **extra,
        )
        self.postings.append(posting)
        return posting

    def __call__(self, repository: ScannerRepository) -> list[RawPosting]:
        self.calls += 1
        return list(self.postings)


@pytest.fixture
def repository(tmp_path: Path):
    repo = ScannerRepository(database_path=str(tmp_path / "scanner.sqlite3"))
    repo.connect()
    yield repo
    repo.close()


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def email_sender() -> LoggingEmailSender:
    return LoggingEmailSender()


@pytest.fixture
def job_source() -> StaticJobSource:
    return StaticJobSource()


@pytest.fixture
def failing_email_sender_factory() -> Callable[[set[str]], LoggingEmailSender]:
    return FailingEmailSender


@pytest.fixture
def scan_context(
    repository: ScannerRepository,
    fake_llm: FakeLLM,
    email_sender: LoggingEmailSender,
    job_source: StaticJobSource,
) -> ScanContext:
    return ScanContext(
        repository=repository,
        llm=fake_llm,
        dispatcher=NotificationDispatcher(
            repository,
            email_sender,
            app_url="https://gigradar.test",
        ),
        job_source=job_source,
    )


@pytest.fixture
def make_user(repository: ScannerRepository) -> Callable[..., User]:
    def factory(
        email: str = "ada@example.com",
        name: str = "Ada Lovelace",
        *,
        cv_text: str | None = BASE_CV,
        roles: list[str] | None = None,
        companies: list[str] | None = None,
    ) -> User:
        user = repository.create_user(email=email, name=name)
        if cv_text is not None:
            repository.set_user_cv(user.id, text=cv_text)
        repository.create_preference_set(
            user.id,
            PreferenceSetCreateRequest(
                name="Primary",
                roles=roles or ["BizOps"],
                locations=["Tel Aviv"],
                companies=companies or [],
            ),
        )
        return repository.get_user_or_raise(user.id)

    return factory
