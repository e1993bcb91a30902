from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any

from common.utils import now_utc_iso, parse_iso_datetime, to_utc_iso

from scanner.models import (
    DEFAULT_THRESHOLD,
    DEFAULT_TIMEZONE,
    MAX_PREFERENCE_SETS,
    ArtifactContent,
    ArtifactMetadata,
    ExtractedJob,
    FitScore,
    Job,
    JobSource,
    JobSourceUpsertRequest,
    Notification,
    NotificationType,
    PreferenceSet,
    PreferenceSetCreateRequest,
    PreferenceSetLimitError,
    PreferenceSetUpdateRequest,
    RawPosting,
    ScanConfig,
    ScanConfigUpdateRequest,
    Ticket,
    TicketStatus,
    TicketUpdateRequest,
    TicketWithJob,
    User,
)


class DuplicateEmailError(ValueError):
    pass


def normalize_timestamp(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    parsed = parse_iso_datetime(value)
    if parsed is None:
        raise ValueError(f"Invalid timestamp: {value}")
    return to_utc_iso(parsed)


def _clean_values(values: list[str]) -> list[str]:
    return [" ".join(value.split()) for value in values if value.strip()]


class ScannerRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    base_cv TEXT,
                    base_cv_docx BLOB,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS preference_sets (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1,
                    roles_json TEXT NOT NULL,
                    locations_json TEXT NOT NULL,
                    companies_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS scan_configs (
                    user_id TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    threshold INTEGER NOT NULL CHECK (threshold BETWEEN 0 AND 100),
                    timezone TEXT NOT NULL,
                    snooze_until TEXT,
                    last_scan_at TEXT,
                    next_scan_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    company TEXT NOT NULL,
                    description TEXT NOT NULL,
                    description_hash TEXT NOT NULL,
                    url TEXT,
                    locations_json TEXT NOT NULL,
                    role_tags_json TEXT NOT NULL,
                    work_mode TEXT,
                    posting_date TEXT,
                    expiry_date TEXT,
                    source TEXT NOT NULL,
                    raw_data_json TEXT NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (title, company, description_hash)
                );

                CREATE TABLE IF NOT EXISTS tickets (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    status TEXT NOT NULL,
                    user_to_job_score REAL NOT NULL,
                    job_to_user_score REAL NOT NULL,
                    overall_score REAL NOT NULL,
                    scoring_explanation TEXT NOT NULL,
                    tags_json TEXT NOT NULL,
                    application_method TEXT,
                    snoozed_until TEXT,
                    submitted_at TEXT,
                    archived_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (user_id, job_id)
                );

                CREATE TABLE IF NOT EXISTS notifications (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS artifacts (
                    id TEXT PRIMARY KEY,
                    ticket_id TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
                    type TEXT NOT NULL,
                    file_data BLOB,
                    content TEXT,
                    file_name TEXT NOT NULL,
                    mime_type TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS job_sources (
                    source_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    source_type TEXT NOT NULL,
                    config_json TEXT NOT NULL,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_tickets_user_created
                    ON tickets (user_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_jobs_active_expiry
                    ON jobs (active, expiry_date);
                CREATE INDEX IF NOT EXISTS idx_notifications_user_created
                    ON notifications (user_id, created_at);
                """
            )
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def create_user(self, *, email: str, name: str) -> User:
        with self._lock:
            now = now_utc_iso()
            user_id = str(uuid.uuid4())
            try:
                with self.connection:
                    self.connection.execute(
                        """
                        INSERT INTO users (id, email, name, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (user_id, email.strip().lower(), name.strip(), now, now),
                    )
                    self.connection.execute(
                        """
                        INSERT INTO scan_configs (
                            user_id,
                            enabled,
                            threshold,
                            timezone,
                            created_at,
                            updated_at
                        )
                        VALUES (?, 1, ?, ?, ?, ?)
                        """,
                        (user_id, DEFAULT_THRESHOLD, DEFAULT_TIMEZONE, now, now),
                    )
            except sqlite3.IntegrityError as exc:
                raise DuplicateEmailError(f"User already exists: {email}") from exc
            return self.get_user_or_raise(user_id)

    def get_user_or_raise(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise KeyError(f"Unknown user_id: {user_id}")
        return user

    def get_user(self, user_id: str) -> User | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT
                    id,
                    email,
                    name,
                    base_cv IS NOT NULL AND base_cv != '' AS has_cv,
                    created_at,
                    updated_at
                FROM users
                WHERE id = ?
                """,
                (user_id,),
            ).fetchone()
            if row is None:
                return None
            return User(
                id=row["id"],
                email=row["email"],
                name=row["name"],
                has_cv=bool(row["has_cv"]),
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )

    def get_user_cv(self, user_id: str) -> str | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT base_cv FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown user_id: {user_id}")
            return row["base_cv"] or None

    def set_user_cv(self, user_id: str, *, text: str, docx: bytes | None = None) -> User:
        with self._lock:
            cursor = self.connection.execute(
                """
                UPDATE users
                SET base_cv = ?, base_cv_docx = ?, updated_at = ?
                WHERE id = ?
                """,
                (text, docx, now_utc_iso(), user_id),
            )
            self.connection.commit()
            if cursor.rowcount == 0:
                raise KeyError(f"Unknown user_id: {user_id}")
            return self.get_user_or_raise(user_id)

    def list_preference_sets(self, user_id: str) -> list[PreferenceSet]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT
                    id,
                    user_id,
                    name,
                    active,
                    roles_json,
                    locations_json,
                    companies_json,
                    created_at,
                    updated_at
                FROM preference_sets
                WHERE user_id = ?
                ORDER BY created_at, rowid
                """,
                (user_id,),
            )
            return [self._to_preference_set(row) for row in cursor.fetchall()]

    def create_preference_set(
        self,
        user_id: str,
        payload: PreferenceSetCreateRequest,
    ) -> PreferenceSet:
        with self._lock:
            self.get_user_or_raise(user_id)
            existing = int(
                self.connection.execute(
                    "SELECT COUNT(1) AS c FROM preference_sets WHERE user_id = ?",
                    (user_id,),
                ).fetchone()["c"]
            )
            if existing >= MAX_PREFERENCE_SETS:
                raise PreferenceSetLimitError(
                    f"Maximum {MAX_PREFERENCE_SETS} preference sets allowed"
                )

            now = now_utc_iso()
            preference_id = str(uuid.uuid4())
            self.connection.execute(
                """
                INSERT INTO preference_sets (
                    id,
                    user_id,
                    name,
                    active,
                    roles_json,
                    locations_json,
                    companies_json,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    preference_id,
                    user_id,
                    payload.name.strip(),
                    int(payload.active),
                    json.dumps(_clean_values(payload.roles)),
                    json.dumps(_clean_values(payload.locations)),
                    json.dumps(_clean_values(payload.companies)),
                    now,
                    now,
                ),
            )
            self.connection.commit()
            return self.get_preference_set_or_raise(user_id, preference_id)

    def get_preference_set_or_raise(self, user_id: str, preference_id: str) -> PreferenceSet:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT
                    id,
                    user_id,
                    name,
                    active,
                    roles_json,
                    locations_json,
                    companies_json,
                    created_at,
                    updated_at
                FROM preference_sets
                WHERE id = ? AND user_id = ?
                """,
                (preference_id, user_id),
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown preference set: {preference_id}")
            return self._to_preference_set(row)

    def update_preference_set(
        self,
        user_id: str,
        preference_id: str,
        payload: PreferenceSetUpdateRequest,
    ) -> PreferenceSet:
        with self._lock:
            current = self.get_preference_set_or_raise(user_id, preference_id)
            name = payload.name.strip() if payload.name is not None else current.name
            active = payload.active if payload.active is not None else current.active
            roles = _clean_values(payload.roles) if payload.roles is not None else current.roles
            locations = (
                _clean_values(payload.locations)
                if payload.locations is not None
                else current.locations
            )
            companies = (
                _clean_values(payload.companies)
                if payload.companies is not None
                else current.companies
            )
            self.connection.execute(
                """
                UPDATE preference_sets
                SET
                    name = ?,
                    active = ?,
                    roles_json = ?,
                    locations_json = ?,
                    companies_json = ?,
                    updated_at = ?
                WHERE id = ? AND user_id = ?
                """,
                (
                    name,
                    int(active),
                    json.dumps(roles),
                    json.dumps(locations),
                    json.dumps(companies),
                    now_utc_iso(),
                    preference_id,
                    user_id,
                ),
            )
            self.connection.commit()
            return self.get_preference_set_or_raise(user_id, preference_id)

    def delete_preference_set(self, user_id: str, preference_id: str) -> bool:
        with self._lock:
            cursor = self.connection.execute(
                "DELETE FROM preference_sets WHERE id = ? AND user_id = ?",
                (preference_id, user_id),
            )
            self.connection.commit()
            return cursor.rowcount > 0

    def get_scan_config(self, user_id: str) -> ScanConfig | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT
                    user_id,
                    enabled,
                    threshold,
                    timezone,
                    snooze_until,
                    last_scan_at,
                    next_scan_at,
                    created_at,
                    updated_at
                FROM scan_configs
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_scan_config(row)

    def get_scan_config_or_raise(self, user_id: str) -> ScanConfig:
        config = self.get_scan_config(user_id)
        if config is None:
            raise KeyError(f"No scan config for user_id: {user_id}")
        return config

    def update_scan_config(self, user_id: str, payload: ScanConfigUpdateRequest) -> ScanConfig:
        with self._lock:
            current = self.get_scan_config_or_raise(user_id)
            enabled = payload.enabled if payload.enabled is not None else current.enabled
            threshold = payload.threshold if payload.threshold is not None else current.threshold
            timezone = payload.timezone or current.timezone
            if payload.clear_snooze:
                snooze_until = None
            elif payload.snooze_until is not None:
                snooze_until = normalize_timestamp(payload.snooze_until)
            else:
                snooze_until = current.snooze_until
            self.connection.execute(
                """
                UPDATE scan_configs
                SET enabled = ?, threshold = ?, timezone = ?, snooze_until = ?, updated_at = ?
                WHERE user_id = ?
                """,
                (int(enabled), threshold, timezone, snooze_until, now_utc_iso(), user_id),
            )
            self.connection.commit()
            return self.get_scan_config_or_raise(user_id)

    def record_scan_run(
        self,
        user_id: str,
        *,
        last_scan_at: str,
        next_scan_at: str,
    ) -> ScanConfig:
        with self._lock:
            self.connection.execute(
                """
                UPDATE scan_configs
                SET last_scan_at = ?, next_scan_at = ?, updated_at = ?
                WHERE user_id = ?
                """,
                (last_scan_at, next_scan_at, now_utc_iso(), user_id),
            )
            self.connection.commit()
            return self.get_scan_config_or_raise(user_id)

    def list_scan_enabled_users(self) -> list[User]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT
                    u.id,
                    u.email,
                    u.name,
                    u.base_cv IS NOT NULL AND u.base_cv != '' AS has_cv,
                    u.created_at,
                    u.updated_at
                FROM users u
                JOIN scan_configs s ON s.user_id = u.id
                WHERE s.enabled = 1
                ORDER BY u.created_at, u.rowid
                """
            )
            return [
                User(
                    id=row["id"],
                    email=row["email"],
                    name=row["name"],
                    has_cv=bool(row["has_cv"]),
                    created_at=row["created_at"],
                    updated_at=row["updated_at"],
                )
                for row in cursor.fetchall()
            ]

    def find_job(self, *, title: str, company: str, description_hash: str) -> Job | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT *
                FROM jobs
                WHERE title = ? AND company = ? AND description_hash = ?
                """,
                (title, company, description_hash),
            ).fetchone()
            if row is None:
                return None
            return self._to_job(row)

    def get_job_or_raise(self, job_id: str) -> Job:
        with self._lock:
            row = self.connection.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                raise KeyError(f"Unknown job_id: {job_id}")
            return self._to_job(row)

    def insert_job(
        self,
        raw: RawPosting,
        extracted: ExtractedJob,
        *,
        description_hash: str,
    ) -> Job:
        with self._lock:
            now = now_utc_iso()
            job_id = str(uuid.uuid4())
            with self.connection:
                self.connection.execute(
                    """
                    INSERT INTO jobs (
                        id,
                        title,
                        company,
                        description,
                        description_hash,
                        url,
                        locations_json,
                        role_tags_json,
                        work_mode,
                        posting_date,
                        expiry_date,
                        source,
                        raw_data_json,
                        active,
                        created_at,
                        updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (
                        job_id,
                        extracted.title,
                        extracted.company,
                        extracted.description,
                        description_hash,
                        raw.url,
                        json.dumps(extracted.locations),
                        json.dumps(extracted.role_tags),
                        extracted.work_mode,
                        extracted.posting_date,
                        normalize_timestamp(raw.expiry_date),
                        raw.source,
                        json.dumps(raw.model_dump()),
                        now,
                        now,
                    ),
                )
            return self.get_job_or_raise(job_id)

    def reactivate_job(self, job_id: str) -> Job:
        with self._lock:
            self.connection.execute(
                "UPDATE jobs SET active = 1, updated_at = ? WHERE id = ?",
                (now_utc_iso(), job_id),
            )
            self.connection.commit()
            return self.get_job_or_raise(job_id)

    def deactivate_expired_jobs(self, *, now_iso: str) -> int:
        with self._lock:
            cursor = self.connection.execute(
                """
                UPDATE jobs
                SET active = 0, updated_at = ?
                WHERE active = 1 AND expiry_date IS NOT NULL AND expiry_date < ?
                """,
                (now_utc_iso(), now_iso),
            )
            self.connection.commit()
            return cursor.rowcount

    def count_jobs(self) -> int:
        with self._lock:
            return int(self.connection.execute("SELECT COUNT(1) AS c FROM jobs").fetchone()["c"])

    def get_ticket_for_pair(self, user_id: str, job_id: str) -> Ticket | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM tickets WHERE user_id = ? AND job_id = ?",
                (user_id, job_id),
            ).fetchone()
            if row is None:
                return None
            return self._to_ticket(row)

    def create_ticket_with_notification(
        self,
        *,
        user_id: str,
        job: Job,
        score: FitScore,
        notification_title: str,
        notification_message: str,
    ) -> Ticket:
        with self._lock:
            now = now_utc_iso()
            ticket_id = str(uuid.uuid4())
            with self.connection:
                self.connection.execute(
                    """
                    INSERT INTO tickets (
                        id,
                        user_id,
                        job_id,
                        status,
                        user_to_job_score,
                        job_to_user_score,
                        overall_score,
                        scoring_explanation,
                        tags_json,
                        created_at,
                        updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        ticket_id,
                        user_id,
                        job.id,
                        TicketStatus.IDENTIFIED.value,
                        score.user_to_job_score,
                        score.job_to_user_score,
                        score.overall_score,
                        score.explanation,
                        json.dumps(score.tags),
                        now,
                        now,
                    ),
                )
                self._insert_notification(
                    user_id=user_id,
                    notification_type=NotificationType.NEW_TICKET,
                    title=notification_title,
                    message=notification_message,
                    data={"ticket_id": ticket_id, "job_id": job.id},
                    created_at=now,
                )
            return self.get_ticket_or_raise(user_id, ticket_id)

    def get_ticket_or_raise(self, user_id: str, ticket_id: str) -> Ticket:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM tickets WHERE id = ? AND user_id = ?",
                (ticket_id, user_id),
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown ticket_id: {ticket_id}")
            return self._to_ticket(row)

    def get_ticket_detail_or_raise(self, user_id: str, ticket_id: str) -> TicketWithJob:
        with self._lock:
            ticket = self.get_ticket_or_raise(user_id, ticket_id)
            job = self.get_job_or_raise(ticket.job_id)
            return TicketWithJob(
                **ticket.model_dump(),
                job=job,
                artifacts=self.list_artifacts(ticket_id),
            )

    def list_tickets(
        self,
        user_id: str,
        *,
        status: TicketStatus | None = None,
        include_archived: bool = False,
        created_since: str | None = None,
    ) -> list[TicketWithJob]:
        with self._lock:
            query = "SELECT * FROM tickets WHERE user_id = ?"
            params: list[Any] = [user_id]
            if status is not None:
                query += " AND status = ?"
                params.append(status.value)
            if not include_archived:
                query += " AND archived_at IS NULL"
            if created_since is not None:
                query += " AND created_at >= ?"
                params.append(created_since)
            query += " ORDER BY overall_score DESC, created_at DESC"
            rows = self.connection.execute(query, tuple(params)).fetchall()
            jobs: dict[str, Job] = {}
            tickets: list[TicketWithJob] = []
            for row in rows:
                ticket = self._to_ticket(row)
                if ticket.job_id not in jobs:
                    jobs[ticket.job_id] = self.get_job_or_raise(ticket.job_id)
                tickets.append(TicketWithJob(**ticket.model_dump(), job=jobs[ticket.job_id]))
            return tickets

    def update_ticket(
        self,
        user_id: str,
        ticket_id: str,
        payload: TicketUpdateRequest,
    ) -> TicketWithJob:
        with self._lock:
            current = self.get_ticket_or_raise(user_id, ticket_id)
            now = now_utc_iso()
            status = payload.status or current.status
            submitted_at = current.submitted_at
            if (
                status == TicketStatus.SUBMITTED
                and current.status != TicketStatus.SUBMITTED
                and submitted_at is None
            ):
                submitted_at = now
            application_method = (
                payload.application_method
                if payload.application_method is not None
                else current.application_method
            )
            snoozed_until = (
                normalize_timestamp(payload.snoozed_until)
                if payload.snoozed_until is not None
                else current.snoozed_until
            )
            self.connection.execute(
                """
                UPDATE tickets
                SET
                    status = ?,
                    application_method = ?,
                    snoozed_until = ?,
                    submitted_at = ?,
                    updated_at = ?
                WHERE id = ? AND user_id = ?
                """,
                (
                    status.value,
                    application_method,
                    snoozed_until,
                    submitted_at,
                    now,
                    ticket_id,
                    user_id,
                ),
            )
            self.connection.commit()
            return self.get_ticket_detail_or_raise(user_id, ticket_id)

    def add_notification(
        self,
        *,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: dict[str, Any],
    ) -> Notification:
        with self._lock:
            with self.connection:
                notification_id = self._insert_notification(
                    user_id=user_id,
                    notification_type=notification_type,
                    title=title,
                    message=message,
                    data=data,
                    created_at=now_utc_iso(),
                )
            row = self.connection.execute(
                "SELECT * FROM notifications WHERE id = ?",
                (notification_id,),
            ).fetchone()
            return self._to_notification(row)

    def _insert_notification(
        self,
        *,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: dict[str, Any],
        created_at: str,
    ) -> str:
        notification_id = str(uuid.uuid4())
        self.connection.execute(
            """
            INSERT INTO notifications (
                id,
                user_id,
                type,
                title,
                message,
                data_json,
                read,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (
                notification_id,
                user_id,
                notification_type.value,
                title,
                message,
                json.dumps(data),
                created_at,
            ),
        )
        return notification_id

    def list_notifications(
        self,
        user_id: str,
        *,
        notification_type: NotificationType | None = None,
        limit: int = 50,
    ) -> list[Notification]:
        with self._lock:
            query = "SELECT * FROM notifications WHERE user_id = ?"
            params: list[Any] = [user_id]
            if notification_type is not None:
                query += " AND type = ?"
                params.append(notification_type.value)
            query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
            params.append(limit)
            cursor = self.connection.execute(query, tuple(params))
            return [self._to_notification(row) for row in cursor.fetchall()]

    def replace_artifacts(
        self,
        ticket_id: str,
        artifacts: list[ArtifactContent],
    ) -> list[ArtifactMetadata]:
        with self._lock:
            now = now_utc_iso()
            with self.connection:
                self.connection.execute(
                    "DELETE FROM artifacts WHERE ticket_id = ?",
                    (ticket_id,),
                )
                for artifact in artifacts:
                    self.connection.execute(
                        """
                        INSERT INTO artifacts (
                            id,
                            ticket_id,
                            type,
                            file_data,
                            content,
                            file_name,
                            mime_type,
                            created_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            str(uuid.uuid4()),
                            ticket_id,
                            artifact.type.value,
                            artifact.file_data,
                            artifact.content,
                            artifact.file_name,
                            artifact.mime_type,
                            now,
                        ),
                    )
            return self.list_artifacts(ticket_id)

    def list_artifacts(self, ticket_id: str) -> list[ArtifactMetadata]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT id, ticket_id, type, file_name, mime_type, created_at
                FROM artifacts
                WHERE ticket_id = ?
                ORDER BY rowid
                """,
                (ticket_id,),
            )
            return [ArtifactMetadata(**dict(row)) for row in cursor.fetchall()]

    def get_artifact_or_raise(self, user_id: str, artifact_id: str) -> ArtifactContent:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT a.type, a.file_name, a.mime_type, a.file_data, a.content
                FROM artifacts a
                JOIN tickets t ON t.id = a.ticket_id
                WHERE a.id = ? AND t.user_id = ?
                """,
                (artifact_id, user_id),
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown artifact_id: {artifact_id}")
            return ArtifactContent(
                type=row["type"],
                file_name=row["file_name"],
                mime_type=row["mime_type"],
                file_data=row["file_data"],
                content=row["content"],
            )

    def upsert_job_source(self, payload: JobSourceUpsertRequest) -> JobSource:
        with self._lock:
            now = now_utc_iso()
            self.connection.execute(
                """
                INSERT INTO job_sources (
                    source_id,
                    name,
                    source_type,
                    config_json,
                    enabled,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source_id) DO UPDATE SET
                    name = excluded.name,
                    source_type = excluded.source_type,
                    config_json = excluded.config_json,
                    enabled = excluded.enabled,
                    updated_at = excluded.updated_at
                """,
                (
                    payload.source_id,
                    payload.name,
                    payload.source_type,
                    json.dumps(payload.config()),
                    int(payload.enabled),
                    now,
                    now,
                ),
            )
            self.connection.commit()
            return self.get_job_source_or_raise(payload.source_id)

    def get_job_source_or_raise(self, source_id: str) -> JobSource:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM job_sources WHERE source_id = ?",
                (source_id,),
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown source_id: {source_id}")
            return self._to_job_source(row)

    def list_job_sources(self, enabled_only: bool = False) -> list[JobSource]:
        with self._lock:
            query = "SELECT * FROM job_sources"
            if enabled_only:
                query += " WHERE enabled = 1"
            query += " ORDER BY source_id"
            cursor = self.connection.execute(query)
            return [self._to_job_source(row) for row in cursor.fetchall()]

    def count_tickets_since(self, user_id: str, since: str) -> int:
        with self._lock:
            row = self.connection.execute(
                "SELECT COUNT(1) AS c FROM tickets WHERE user_id = ? AND created_at >= ?",
                (user_id, since),
            ).fetchone()
            return int(row["c"])

    def average_score_since(self, user_id: str, since: str) -> float | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT AVG(overall_score) AS avg_score
                FROM tickets
                WHERE user_id = ? AND created_at >= ?
                """,
                (user_id, since),
            ).fetchone()
            return row["avg_score"]

    def top_companies_since(self, user_id: str, since: str, *, limit: int) -> list[tuple[str, int]]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT j.company AS company, COUNT(1) AS c
                FROM tickets t
                JOIN jobs j ON j.id = t.job_id
                WHERE t.user_id = ? AND t.created_at >= ?
                GROUP BY j.company
                ORDER BY c DESC, j.company
                LIMIT ?
                """,
                (user_id, since, limit),
            )
            return [(row["company"], int(row["c"])) for row in cursor.fetchall()]

    def top_titles(
        self,
        user_id: str,
        *,
        min_score: float,
        limit: int,
    ) -> list[tuple[str, float, int]]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT j.title AS title, AVG(t.overall_score) AS avg_score, COUNT(1) AS c
                FROM tickets t
                JOIN jobs j ON j.id = t.job_id
                WHERE t.user_id = ? AND t.overall_score >= ?
                GROUP BY j.title
                ORDER BY avg_score DESC, j.title
                LIMIT ?
                """,
                (user_id, min_score, limit),
            )
            return [
                (row["title"], float(row["avg_score"]), int(row["c"]))
                for row in cursor.fetchall()
            ]

    def status_counts(self, user_id: str) -> dict[str, int]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT status, COUNT(1) AS c
                FROM tickets
                WHERE user_id = ? AND archived_at IS NULL
                GROUP BY status
                """,
                (user_id,),
            )
            return {row["status"]: int(row["c"]) for row in cursor.fetchall()}

    def daily_ticket_counts(self, user_id: str, since: str) -> dict[str, int]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT substr(created_at, 1, 10) AS day, COUNT(1) AS c
                FROM tickets
                WHERE user_id = ? AND created_at >= ?
                GROUP BY day
                """,
                (user_id, since),
            )
            return {row["day"]: int(row["c"]) for row in cursor.fetchall()}

    def _to_preference_set(self, row: sqlite3.Row) -> PreferenceSet:
        return PreferenceSet(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            active=bool(row["active"]),
            roles=json.loads(row["roles_json"]),
            locations=json.loads(row["locations_json"]),
            companies=json.loads(row["companies_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _to_scan_config(self, row: sqlite3.Row) -> ScanConfig:
        return ScanConfig(
            user_id=row["user_id"],
            enabled=bool(row["enabled"]),
            threshold=int(row["threshold"]),
            timezone=row["timezone"],
            snooze_until=row["snooze_until"],
            last_scan_at=row["last_scan_at"],
            next_scan_at=row["next_scan_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _to_job(self, row: sqlite3.Row) -> Job:
        return Job(
            id=row["id"],
            title=row["title"],
            company=row["company"],
            description=row["description"],
            description_hash=row["description_hash"],
            url=row["url"],
            locations=json.loads(row["locations_json"]),
            role_tags=json.loads(row["role_tags_json"]),
            work_mode=row["work_mode"],
            posting_date=row["posting_date"],
            expiry_date=row["expiry_date"],
            source=row["source"],
            raw_data=json.loads(row["raw_data_json"]),
            active=bool(row["active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _to_ticket(self, row: sqlite3.Row) -> Ticket:
        return Ticket(
            id=row["id"],
            user_id=row["user_id"],
            job_id=row["job_id"],
            status=row["status"],
            user_to_job_score=float(row["user_to_job_score"]),
            job_to_user_score=float(row["job_to_user_score"]),
            overall_score=float(row["overall_score"]),
            scoring_explanation=row["scoring_explanation"],
            tags=json.loads(row["tags_json"]),
            application_method=row["application_method"],
            snoozed_until=row["snoozed_until"],
            submitted_at=row["submitted_at"],
            archived_at=row["archived_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _to_notification(self, row: sqlite3.Row) -> Notification:
        return Notification(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            title=row["title"],
            message=row["message"],
            data=json.loads(row["data_json"]),
            read=bool(row["read"]),
            created_at=row["created_at"],
        )

    def _to_job_source(self, row: sqlite3.Row) -> JobSource:
        return JobSource(
            source_id=row["source_id"],
            name=row["name"],
            source_type=row["source_type"],
            enabled=bool(row["enabled"]),
            config=json.loads(row["config_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
