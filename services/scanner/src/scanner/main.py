from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
import time
import uuid
from contextlib import asynccontextmanager
from urllib.parse import quote

from common.utils import now_utc_iso
from emailer.sender import EmailSender, build_email_sender
from fastapi import FastAPI, File, HTTPException, Query, Request, Response, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from scanner.context import JobSourceFn, ScanContext
from scanner.cv import (
    CVParseError,
    extract_keywords,
    is_docx_filename,
    parse_cv_sections,
    parse_docx_to_text,
    preview_text,
)
from scanner.documents import MissingCVError, generate_ticket_artifacts
from scanner.insights import build_insights
from scanner.llm import ClaudeClient, LLMError, build_llm_client
from scanner.models import (
    CronDigestResponse,
    CronScanResponse,
    CVText,
    CVUploadResponse,
    GenerateArtifactsResponse,
    Insights,
    JobSource,
    JobSourceUpsertRequest,
    MetricsSnapshot,
    Notification,
    NotificationType,
    PreferenceSet,
    PreferenceSetCreateRequest,
    PreferenceSetLimitError,
    PreferenceSetUpdateRequest,
    ScanConfig,
    ScanConfigUpdateRequest,
    ScanResult,
    TicketStatus,
    TicketUpdateRequest,
    TicketWithJob,
    User,
    UserCreateRequest,
)
from scanner.notifications import NotificationDispatcher
from scanner.orchestrator import scan_jobs_for_all_users, scan_jobs_for_user
from scanner.repository import DuplicateEmailError, ScannerRepository
from scanner.sources import collect_raw_postings

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "gigradar", "scanner.sqlite3")
SCOPE_USERS_WRITE = "users:write"
SCOPE_TICKETS_WRITE = "tickets:write"
SCOPE_SOURCES_WRITE = "sources:write"
SCOPE_SCAN = "scan"
LOGGER = logging.getLogger("gigradar.scanner")


def parse_api_tokens(raw: str) -> dict[str, set[str]]:
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("SCANNER_API_TOKENS_JSON must be a JSON object.")

    token_map: dict[str, set[str]] = {}
    for token, scopes_value in parsed.items():
        if not isinstance(token, str) or not token.strip():
            raise ValueError("Token keys must be non-empty strings.")
        if isinstance(scopes_value, str):
            scopes = {scopes_value.strip()} if scopes_value.strip() else set()
        elif isinstance(scopes_value, list):
            scopes = {
                str(scope).strip()
                for scope in scopes_value
                if isinstance(scope, str) and scope.strip()
            }
        else:
            raise ValueError("Token scopes must be a string or list of strings.")
        token_map[token] = scopes
    return token_map


def build_auth_subject(token: str) -> str:
    token_digest = hashlib.sha1(token.encode()).hexdigest()[:12]
    return f"token:{token_digest}"


def extract_request_token(request: Request) -> str:
    provided = request.headers.get("x-api-key", "").strip()
    if provided:
        return provided
    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer":
        return credentials.strip()
    return ""


class MetricsStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {"requests": 0, "errors": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}

    def observe(self, *, method: str, path: str, status_code: int, duration_ms: float) -> None:
        key = f"{method} {path}"
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            endpoint = self._endpoints.setdefault(
                key,
                {"count": 0, "2xx": 0, "4xx": 0, "5xx": 0, "latency_ms_sum": 0.0},
            )
            endpoint["count"] = int(endpoint["count"]) + 1
            if bucket in ("2xx", "4xx", "5xx"):
                endpoint[bucket] = int(endpoint[bucket]) + 1
            endpoint["latency_ms_sum"] = float(endpoint["latency_ms_sum"]) + duration_ms
            endpoint["latency_ms_avg"] = (
                float(endpoint["latency_ms_sum"]) / int(endpoint["count"])
            )

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints={key: dict(value) for key, value in self._endpoints.items()},
            )


def create_app(
    *,
    database_path: str | None = None,
    api_key: str | None = None,
    api_tokens: dict[str, list[str] | set[str]] | None = None,
    cron_secret: str | None = None,
    llm: ClaudeClient | None = None,
    email_sender: EmailSender | None = None,
    job_source: JobSourceFn | None = None,
    scan_workers: int | None = None,
    app_url: str | None = None,
) -> FastAPI:
    resolved_path = database_path or os.getenv("SCANNER_DB_PATH", DEFAULT_DB_PATH)
    resolved_api_key = (api_key or os.getenv("SCANNER_API_KEY", "")).strip() or None
    resolved_cron_secret = (cron_secret or os.getenv("CRON_SECRET", "")).strip() or None
    resolved_workers = scan_workers or int(os.getenv("SCAN_WORKERS", "1") or "1")
    resolved_token_map: dict[str, set[str]] = {}
    if api_tokens is not None:
        resolved_token_map = {
            token: {str(scope).strip() for scope in scopes if str(scope).strip()}
            for token, scopes in api_tokens.items()
            if token.strip()
        }
    else:
        raw_tokens = os.getenv("SCANNER_API_TOKENS_JSON", "").strip()
        if raw_tokens:
            resolved_token_map = parse_api_tokens(raw_tokens)

    if resolved_api_key:
        resolved_token_map.setdefault(resolved_api_key, set()).add("*")
    if resolved_cron_secret:
        resolved_token_map.setdefault(resolved_cron_secret, set()).add(SCOPE_SCAN)

    repository = ScannerRepository(database_path=resolved_path)
    dispatcher = NotificationDispatcher(
        repository,
        email_sender or build_email_sender(),
        app_url=app_url,
    )
    scan_context = ScanContext(
        repository=repository,
        llm=llm or build_llm_client(),
        dispatcher=dispatcher,
        job_source=job_source or collect_raw_postings,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        app.state.repository = repository
        app.state.scan_context = scan_context
        app.state.scan_workers = resolved_workers
        app.state.auth_token_scopes = resolved_token_map
        app.state.metrics = MetricsStore()
        try:
            yield
        finally:
            await run_in_threadpool(repository.close)

    app = FastAPI(title="GigRadar Scanner", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            request.app.state.metrics.observe(
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=duration_ms,
            )
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "request_complete",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "duration_ms": round(duration_ms, 3),
                        "error": str(exc),
                    }
                )
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        request.app.state.metrics.observe(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers["x-request-id"] = request_id
        LOGGER.info(
            json.dumps(
                {
                    "event": "request_complete",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 3),
                    "source_ip": request.client.host if request.client else None,
                }
            )
        )
        return response

    def require_scope(request: Request, *, action: str, scope: str) -> str | None:
        token_map: dict[str, set[str]] = request.app.state.auth_token_scopes
        if not token_map:
            return None
        provided = extract_request_token(request)
        scopes = token_map.get(provided) if provided else None
        if scopes is None:
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "auth_rejected",
                        "request_id": getattr(request.state, "request_id", None),
                        "action": action,
                        "reason": "missing api key" if not provided else "invalid api key",
                    }
                )
            )
            raise HTTPException(status_code=401, detail="Unauthorized")
        auth_subject = build_auth_subject(provided)
        if "*" not in scopes and scope not in scopes:
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "auth_forbidden",
                        "request_id": getattr(request.state, "request_id", None),
                        "action": action,
                        "scope": scope,
                        "auth_subject": auth_subject,
                    }
                )
            )
            raise HTTPException(status_code=403, detail="Forbidden")
        return auth_subject

    async def get_user_or_404(request: Request, user_id: str) -> User:
        user = await run_in_threadpool(request.app.state.repository.get_user, user_id)
        if user is None:
            raise HTTPException(status_code=404, detail="Unknown user_id")
        return user

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "scanner"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    @app.post("/users", response_model=User)
    async def create_user(payload: UserCreateRequest, request: Request) -> User:
        require_scope(request, action="user_create", scope=SCOPE_USERS_WRITE)
        try:
            return await run_in_threadpool(
                request.app.state.repository.create_user,
                email=str(payload.email),
                name=payload.name,
            )
        except DuplicateEmailError as exc:
            raise HTTPException(status_code=400, detail="User already exists") from exc

    @app.get("/users/{user_id}", response_model=User)
    async def get_user(user_id: str, request: Request) -> User:
        return await get_user_or_404(request, user_id)

    @app.post("/users/{user_id}/cv", response_model=CVUploadResponse)
    async def upload_cv(
        user_id: str,
        request: Request,
        file: UploadFile = File(...),
    ) -> CVUploadResponse:
        require_scope(request, action="cv_upload", scope=SCOPE_USERS_WRITE)
        await get_user_or_404(request, user_id)
        if not is_docx_filename(file.filename):
            raise HTTPException(status_code=400, detail="Only DOCX files are supported")

        data = await file.read()
        try:
            text = await run_in_threadpool(parse_docx_to_text, data)
        except CVParseError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not text:
            raise HTTPException(status_code=400, detail="CV document contains no text")

        await run_in_threadpool(
            request.app.state.repository.set_user_cv,
            user_id,
            text=text,
            docx=data,
        )
        LOGGER.info(
            json.dumps({"event": "cv_uploaded", "user_id": user_id, "characters": len(text)})
        )
        return CVUploadResponse(
            user_id=user_id,
            file_name=file.filename or "",
            characters=len(text),
            preview=preview_text(text),
            keywords=extract_keywords(text),
            sections=parse_cv_sections(text),
        )

    @app.get("/users/{user_id}/cv", response_model=CVText)
    async def get_cv(user_id: str, request: Request) -> CVText:
        await get_user_or_404(request, user_id)
        base_cv = await run_in_threadpool(request.app.state.repository.get_user_cv, user_id)
        if not base_cv:
            raise HTTPException(status_code=404, detail="No CV found")
        return CVText(user_id=user_id, base_cv=base_cv)

    @app.get("/users/{user_id}/preferences", response_model=list[PreferenceSet])
    async def list_preferences(user_id: str, request: Request) -> list[PreferenceSet]:
        await get_user_or_404(request, user_id)
        return await run_in_threadpool(
            request.app.state.repository.list_preference_sets,
            user_id,
        )

    @app.post("/users/{user_id}/preferences", response_model=PreferenceSet)
    async def create_preference(
        user_id: str,
        payload: PreferenceSetCreateRequest,
        request: Request,
    ) -> PreferenceSet:
        require_scope(request, action="preference_create", scope=SCOPE_USERS_WRITE)
        await get_user_or_404(request, user_id)
        try:
            return await run_in_threadpool(
                request.app.state.repository.create_preference_set,
                user_id,
                payload,
            )
        except PreferenceSetLimitError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.patch("/users/{user_id}/preferences/{preference_id}", response_model=PreferenceSet)
    async def update_preference(
        user_id: str,
        preference_id: str,
        payload: PreferenceSetUpdateRequest,
        request: Request,
    ) -> PreferenceSet:
        require_scope(request, action="preference_update", scope=SCOPE_USERS_WRITE)
        try:
            return await run_in_threadpool(
                request.app.state.repository.update_preference_set,
                user_id,
                preference_id,
                payload,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Unknown preference set") from exc

    @app.delete("/users/{user_id}/preferences/{preference_id}")
    async def delete_preference(
        user_id: str,
        preference_id: str,
        request: Request,
    ) -> dict[str, bool]:
        require_scope(request, action="preference_delete", scope=SCOPE_USERS_WRITE)
        deleted = await run_in_threadpool(
            request.app.state.repository.delete_preference_set,
            user_id,
            preference_id,
        )
        if not deleted:
            raise HTTPException(status_code=404, detail="Unknown preference set")
        return {"deleted": True}

    @app.get("/users/{user_id}/scan-config", response_model=ScanConfig)
    async def get_scan_config(user_id: str, request: Request) -> ScanConfig:
        config = await run_in_threadpool(request.app.state.repository.get_scan_config, user_id)
        if config is None:
            raise HTTPException(status_code=404, detail="Unknown user_id")
        return config

    @app.patch("/users/{user_id}/scan-config", response_model=ScanConfig)
    async def update_scan_config(
        user_id: str,
        payload: ScanConfigUpdateRequest,
        request: Request,
    ) -> ScanConfig:
        require_scope(request, action="scan_config_update", scope=SCOPE_USERS_WRITE)
        try:
            return await run_in_threadpool(
                request.app.state.repository.update_scan_config,
                user_id,
                payload,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Unknown user_id") from exc
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.get("/users/{user_id}/tickets", response_model=list[TicketWithJob])
    async def list_tickets(
        user_id: str,
        request: Request,
        status: TicketStatus | None = Query(default=None),
    ) -> list[TicketWithJob]:
        await get_user_or_404(request, user_id)
        return await run_in_threadpool(
            request.app.state.repository.list_tickets,
            user_id,
            status=status,
        )

    @app.get("/users/{user_id}/tickets/{ticket_id}", response_model=TicketWithJob)
    async def get_ticket(user_id: str, ticket_id: str, request: Request) -> TicketWithJob:
        try:
            return await run_in_threadpool(
                request.app.state.repository.get_ticket_detail_or_raise,
                user_id,
                ticket_id,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Unknown ticket_id") from exc

    @app.patch("/users/{user_id}/tickets/{ticket_id}", response_model=TicketWithJob)
    async def update_ticket(
        user_id: str,
        ticket_id: str,
        payload: TicketUpdateRequest,
        request: Request,
    ) -> TicketWithJob:
        require_scope(request, action="ticket_update", scope=SCOPE_TICKETS_WRITE)
        try:
            return await run_in_threadpool(
                request.app.state.repository.update_ticket,
                user_id,
                ticket_id,
                payload,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Unknown ticket_id") from exc
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.post(
        "/users/{user_id}/tickets/{ticket_id}/artifacts",
        response_model=GenerateArtifactsResponse,
    )
    async def generate_artifacts(
        user_id: str,
        ticket_id: str,
        request: Request,
    ) -> GenerateArtifactsResponse:
        require_scope(request, action="artifacts_generate", scope=SCOPE_TICKETS_WRITE)
        context: ScanContext = request.app.state.scan_context
        try:
            artifacts = await run_in_threadpool(
                generate_ticket_artifacts,
                context.repository,
                context.llm,
                user_id=user_id,
                ticket_id=ticket_id,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Unknown ticket_id") from exc
        except MissingCVError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except LLMError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return GenerateArtifactsResponse(ticket_id=ticket_id, artifacts=artifacts)

    @app.get("/users/{user_id}/artifacts/{artifact_id}/download")
    async def download_artifact(user_id: str, artifact_id: str, request: Request) -> Response:
        try:
            artifact = await run_in_threadpool(
                request.app.state.repository.get_artifact_or_raise,
                user_id,
                artifact_id,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Unknown artifact_id") from exc

        body = (
            artifact.file_data
            if artifact.file_data is not None
            else (artifact.content or "").encode("utf-8")
        )
        return Response(
            content=body,
            media_type=artifact.mime_type,
            headers={
                "Content-Disposition": (
                    f"attachment; filename*=UTF-8''{quote(artifact.file_name)}"
                )
            },
        )

    @app.get("/users/{user_id}/insights", response_model=Insights)
    async def insights(user_id: str, request: Request) -> Insights:
        await get_user_or_404(request, user_id)
        return await run_in_threadpool(build_insights, request.app.state.repository, user_id)

    @app.get("/users/{user_id}/notifications", response_model=list[Notification])
    async def list_notifications(
        user_id: str,
        request: Request,
        notification_type: NotificationType | None = Query(default=None, alias="type"),
        limit: int = Query(default=50, ge=1, le=200),
    ) -> list[Notification]:
        await get_user_or_404(request, user_id)
        return await run_in_threadpool(
            request.app.state.repository.list_notifications,
            user_id,
            notification_type=notification_type,
            limit=limit,
        )

    @app.post("/users/{user_id}/scan", response_model=ScanResult)
    async def scan_user(user_id: str, request: Request) -> ScanResult:
        require_scope(request, action="user_scan", scope=SCOPE_SCAN)
        await get_user_or_404(request, user_id)
        return await run_in_threadpool(
            scan_jobs_for_user,
            request.app.state.scan_context,
            user_id,
        )

    @app.post("/job-sources", response_model=JobSource)
    async def upsert_job_source(payload: JobSourceUpsertRequest, request: Request) -> JobSource:
        require_scope(request, action="job_source_upsert", scope=SCOPE_SOURCES_WRITE)
        return await run_in_threadpool(request.app.state.repository.upsert_job_source, payload)

    @app.get("/job-sources", response_model=list[JobSource])
    async def list_job_sources(
        request: Request,
        enabled_only: bool = Query(default=False),
    ) -> list[JobSource]:
        return await run_in_threadpool(request.app.state.repository.list_job_sources, enabled_only)

    @app.api_route("/cron/scan-jobs", methods=["GET", "POST"], response_model=CronScanResponse)
    async def cron_scan_jobs(request: Request) -> CronScanResponse:
        require_scope(request, action="cron_scan", scope=SCOPE_SCAN)
        context: ScanContext = request.app.state.scan_context
        summary = await scan_jobs_for_all_users(
            context,
            max_workers=request.app.state.scan_workers,
        )
        digests = await run_in_threadpool(context.dispatcher.send_daily_digests)
        return CronScanResponse(success=True, scan=summary, digests=digests)

    @app.post("/cron/digest", response_model=CronDigestResponse)
    async def cron_digest(request: Request) -> CronDigestResponse:
        require_scope(request, action="cron_digest", scope=SCOPE_SCAN)
        context: ScanContext = request.app.state.scan_context
        digests = await run_in_threadpool(context.dispatcher.send_daily_digests)
        return CronDigestResponse(success=True, digests=digests)

    return app


app = create_app()
