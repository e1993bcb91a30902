from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from common.utils import now_utc, to_utc_iso
from emailer.sender import EmailSender
from emailer.templates import (
    DigestSummary,
    TicketSummary,
    render_daily_digest,
    render_high_fit_alert,
)

from scanner.models import (
    DIGEST_HIGH_FIT_SCORE,
    DIGEST_WINDOW_HOURS,
    DigestResult,
    NotificationType,
    TicketWithJob,
)
from scanner.repository import ScannerRepository

LOGGER = logging.getLogger("gigradar.scanner")


def summarize_digest(tickets: list[TicketWithJob]) -> DigestSummary:
    if not tickets:
        return DigestSummary(total_new=0, high_fit_count=0, avg_score=0.0)
    scores = [ticket.overall_score for ticket in tickets]
    return DigestSummary(
        total_new=len(tickets),
        high_fit_count=sum(1 for score in scores if score >= DIGEST_HIGH_FIT_SCORE),
        avg_score=sum(scores) / len(scores),
    )


def to_ticket_summary(ticket: TicketWithJob) -> TicketSummary:
    return TicketSummary(
        id=ticket.id,
        job_title=ticket.job.title,
        company=ticket.job.company,
        overall_score=ticket.overall_score,
        tags=list(ticket.tags),
    )


class NotificationDispatcher:
    def __init__(
        self,
        repository: ScannerRepository,
        email_sender: EmailSender,
        *,
        app_url: str | None = None,
    ) -> None:
        self.repository = repository
        self.email_sender = email_sender
        self.app_url = app_url

    def send_high_fit_alert(self, user_id: str, alert: TicketSummary) -> bool:
        user = self.repository.get_user(user_id)
        if user is None or not user.email:
            LOGGER.info(json.dumps({"event": "high_fit_alert_skipped", "user_id": user_id}))
            return False

        subject, html = render_high_fit_alert(user.name or "there", alert, app_url=self.app_url)
        message_id = self.email_sender.send(user.email, subject, html)
        self.repository.add_notification(
            user_id=user_id,
            notification_type=NotificationType.HIGH_FIT_ALERT,
            title=f"High Fit Alert: {alert.job_title}",
            message=f"{alert.company} - Score: {round(alert.overall_score)}",
            data={"ticket_id": alert.id, "message_id": message_id},
        )
        LOGGER.info(
            json.dumps(
                {
                    "event": "high_fit_alert_sent",
                    "user_id": user_id,
                    "ticket_id": alert.id,
                    "overall_score": alert.overall_score,
                }
            )
        )
        return True

    def send_daily_digests(self, *, now: datetime | None = None) -> list[DigestResult]:
        window_end = now or now_utc()
        since = to_utc_iso(window_end - timedelta(hours=DIGEST_WINDOW_HOURS))
        results: list[DigestResult] = []

        for user in self.repository.list_scan_enabled_users():
            try:
                tickets = self.repository.list_tickets(
                    user.id,
                    include_archived=True,
                    created_since=since,
                )
                if not tickets:
                    continue
                summary = summarize_digest(tickets)
                subject, html = render_daily_digest(
                    user.name or "there",
                    [to_ticket_summary(ticket) for ticket in tickets],
                    summary,
                    app_url=self.app_url,
                )
                self.email_sender.send(user.email, subject, html)
                plural = "" if len(tickets) == 1 else "s"
                self.repository.add_notification(
                    user_id=user.id,
                    notification_type=NotificationType.DAILY_DIGEST,
                    title="Daily Digest Sent",
                    message=f"{len(tickets)} new job{plural} in your digest",
                    data={"ticket_count": len(tickets)},
                )
                results.append(
                    DigestResult(
                        user_id=user.id,
                        email=user.email,
                        success=True,
                        ticket_count=len(tickets),
                    )
                )
            except Exception as exc:
                LOGGER.exception(
                    json.dumps(
                        {"event": "digest_failed", "user_id": user.id, "error": str(exc)}
                    )
                )
                results.append(
                    DigestResult(
                        user_id=user.id,
                        email=user.email,
                        success=False,
                        error=str(exc),
                    )
                )

        LOGGER.info(
            json.dumps(
                {
                    "event": "digests_complete",
                    "sent": sum(1 for result in results if result.success),
                    "failed": sum(1 for result in results if not result.success),
                }
            )
        )
        return results
