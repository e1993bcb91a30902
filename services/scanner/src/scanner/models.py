from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, EmailStr, Field, HttpUrl, model_validator

MAX_PREFERENCE_SETS = 3
DEFAULT_THRESHOLD = 65
DEFAULT_TIMEZONE = "Asia/Jerusalem"
SCAN_INTERVAL_HOURS = 24
HIGH_FIT_ALERT_SCORE = 85
DIGEST_HIGH_FIT_SCORE = 80
DIGEST_WINDOW_HOURS = 24

ROLE_TAXONOMY = (
    "RevOps",
    "BizOps",
    "CX Ops",
    "GTM Ops",
    "Strategy & Ops",
    "Sales Ops",
    "Chief of Staff",
    "Product Ops",
    "Data Ops",
    "Marketing Ops",
)
WORK_MODES = ("Remote", "Hybrid", "Onsite")

SOURCE_INLINE_JSON = "inline_json"
SOURCE_JSON_URL = "json_url"
SOURCE_TYPES = (SOURCE_INLINE_JSON, SOURCE_JSON_URL)


class TicketStatus(StrEnum):
    IDENTIFIED = "IDENTIFIED"
    SUBMITTED = "SUBMITTED"
    REJECTED = "REJECTED"
    WONT_GO_AFTER = "WONT_GO_AFTER"


class NotificationType(StrEnum):
    NEW_TICKET = "NEW_TICKET"
    DAILY_DIGEST = "DAILY_DIGEST"
    HIGH_FIT_ALERT = "HIGH_FIT_ALERT"


class ArtifactType(StrEnum):
    CV_DOCX = "CV_DOCX"
    CV_PDF = "CV_PDF"
    COVER_LETTER_TXT = "COVER_LETTER_TXT"


class PreferenceSetLimitError(ValueError):
    pass


class UserCreateRequest(BaseModel):
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=120)


class User(BaseModel):
    id: str
    email: str
    name: str
    has_cv: bool = False
    created_at: str
    updated_at: str


class CVUploadResponse(BaseModel):
    user_id: str
    file_name: str
    characters: int
    preview: str
    keywords: list[str]
    sections: dict[str, list[str]] = Field(default_factory=dict)


class CVText(BaseModel):
    user_id: str
    base_cv: str | None


class PreferenceSetCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    active: bool = True
    roles: list[str] = Field(..., min_length=1)
    locations: list[str] = Field(..., min_length=1)
    companies: list[str] = Field(default_factory=list)


class PreferenceSetUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    active: bool | None = None
    roles: list[str] | None = Field(default=None, min_length=1)
    locations: list[str] | None = Field(default=None, min_length=1)
    companies: list[str] | None = None


class PreferenceSet(BaseModel):
    id: str
    user_id: str
    name: str
    active: bool
    roles: list[str]
    locations: list[str]
    companies: list[str]
    created_at: str
    updated_at: str


class AggregatedPreferences(BaseModel):
    roles: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    companies: list[str] = Field(default_factory=list)


class ScanConfig(BaseModel):
    user_id: str
    enabled: bool
    threshold: int = Field(..., ge=0, le=100)
    timezone: str
    snooze_until: str | None = None
    last_scan_at: str | None = None
    next_scan_at: str | None = None
    created_at: str
    updated_at: str


class ScanConfigUpdateRequest(BaseModel):
    enabled: bool | None = None
    threshold: int | None = Field(default=None, ge=0, le=100)
    timezone: str | None = Field(default=None, min_length=1, max_length=64)
    snooze_until: str | None = None
    clear_snooze: bool = False


class RawPosting(BaseModel):
    title: str
    company: str
    description: str
    url: str | None = None
    source: str
    expiry_date: str | None = None


class ExtractedJob(BaseModel):
    title: str | None = None
    company: str | None = None
    description: str | None = None
    locations: list[str] = Field(default_factory=list)
    role_tags: list[str] = Field(default_factory=list)
    posting_date: str | None = None
    work_mode: Literal["Remote", "Hybrid", "Onsite"] | None = None


class Job(BaseModel):
    id: str
    title: str
    company: str
    description: str
    description_hash: str
    url: str | None = None
    locations: list[str]
    role_tags: list[str]
    work_mode: str | None = None
    posting_date: str | None = None
    expiry_date: str | None = None
    source: str
    raw_data: dict[str, Any]
    active: bool
    created_at: str
    updated_at: str


class FitScore(BaseModel):
    user_to_job_score: float = Field(..., ge=0, le=100)
    job_to_user_score: float = Field(..., ge=0, le=100)
    overall_score: float = Field(..., ge=0, le=100)
    explanation: str
    tags: list[str]


class ArtifactMetadata(BaseModel):
    id: str
    ticket_id: str
    type: ArtifactType
    file_name: str
    mime_type: str
    created_at: str


class Ticket(BaseModel):
    id: str
    user_id: str
    job_id: str
    status: TicketStatus
    user_to_job_score: float
    job_to_user_score: float
    overall_score: float
    scoring_explanation: str
    tags: list[str]
    application_method: str | None = None
    snoozed_until: str | None = None
    submitted_at: str | None = None
    archived_at: str | None = None
    created_at: str
    updated_at: str


class TicketWithJob(Ticket):
    job: Job
    artifacts: list[ArtifactMetadata] = Field(default_factory=list)


class TicketUpdateRequest(BaseModel):
    status: TicketStatus | None = None
    application_method: str | None = Field(default=None, max_length=200)
    snoozed_until: str | None = None


class Notification(BaseModel):
    id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    data: dict[str, Any]
    read: bool
    created_at: str


class ArtifactContent(BaseModel):
    type: ArtifactType
    file_name: str
    mime_type: str
    file_data: bytes | None = None
    content: str | None = None

    @model_validator(mode="after")
    def validate_payload(self) -> ArtifactContent:
        if self.file_data is None and self.content is None:
            raise ValueError("Artifact must carry file_data or content.")
        return self


class CVSections(BaseModel):
    summary: str | None = None
    experience: list[str] = Field(default_factory=list)
    education: list[str] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)


class TailoredCV(BaseModel):
    sections: CVSections
    full_text: str


class GenerateArtifactsResponse(BaseModel):
    ticket_id: str
    artifacts: list[ArtifactMetadata]


class IngestedPosting(BaseModel):
    title: str = Field(..., min_length=1)
    company: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    url: str | None = None
    expiry_date: str | None = None


class JobSourceUpsertRequest(BaseModel):
    source_id: str = Field(..., min_length=3, max_length=64, pattern=r"^[a-zA-Z0-9_-]+$")
    name: str = Field(..., min_length=1, max_length=120)
    source_type: Literal["inline_json", "json_url"]
    enabled: bool = True
    postings: list[IngestedPosting] = Field(default_factory=list)
    url: HttpUrl | None = None

    @model_validator(mode="after")
    def validate_source_config(self) -> JobSourceUpsertRequest:
        if self.source_type == SOURCE_INLINE_JSON and not self.postings:
            raise ValueError("Inline source must include at least one posting.")
        if self.source_type == SOURCE_JSON_URL and self.url is None:
            raise ValueError("json_url source must include a url.")
        return self

    def config(self) -> dict[str, Any]:
        if self.source_type == SOURCE_INLINE_JSON:
            return {"postings": [posting.model_dump() for posting in self.postings]}
        return {"url": str(self.url)}


class JobSource(BaseModel):
    source_id: str
    name: str
    source_type: Literal["inline_json", "json_url"]
    enabled: bool
    config: dict[str, Any]
    created_at: str
    updated_at: str


class ScanResult(BaseModel):
    jobs_scanned: int = 0
    tickets_created: int = 0
    errors: list[str] = Field(default_factory=list)
    scan_config: ScanConfig | None = None


class ScanSummary(BaseModel):
    users_scanned: int = 0
    total_tickets_created: int = 0
    errors: list[str] = Field(default_factory=list)


class DigestResult(BaseModel):
    user_id: str
    email: str
    success: bool
    ticket_count: int = 0
    error: str | None = None


class CronScanResponse(BaseModel):
    success: bool
    scan: ScanSummary
    digests: list[DigestResult]


class CronDigestResponse(BaseModel):
    success: bool
    digests: list[DigestResult]


class CountByName(BaseModel):
    name: str
    count: int


class TitleScore(BaseModel):
    title: str
    avg_score: float
    count: int


class DailyCount(BaseModel):
    date: str
    count: int


class Insights(BaseModel):
    new_roles_today: int
    avg_fit_7_days: float
    top_companies: list[CountByName]
    top_titles: list[TitleScore]
    status_distribution: dict[str, int]
    daily_tickets: list[DailyCount]


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]

