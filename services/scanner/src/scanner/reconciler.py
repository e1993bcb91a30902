from __future__ import annotations

import json
import logging
import sqlite3

from emailer.templates import TicketSummary

from scanner.context import ScanContext
from scanner.models import HIGH_FIT_ALERT_SCORE, AggregatedPreferences, Job
from scanner.scoring import build_fit_score

LOGGER = logging.getLogger("gigradar.scanner")


def reconcile_ticket(
    context: ScanContext,
    *,
    user_id: str,
    job: Job,
    cv_text: str,
    preferences: AggregatedPreferences,
    threshold: float,
) -> bool:
    repository = context.repository
    if repository.get_ticket_for_pair(user_id, job.id) is not None:
        return False

    reported = context.llm.score_job_fit(cv_text, job.description, preferences, job)
    score = build_fit_score(
        reported.user_to_job_score,
        reported.job_to_user_score,
        reported.explanation,
    )
    if score.overall_score < threshold:
        LOGGER.info(
            json.dumps(
                {
                    "event": "ticket_below_threshold",
                    "user_id": user_id,
                    "job_id": job.id,
                    "overall_score": score.overall_score,
                    "threshold": threshold,
                }
            )
        )
        return False

    try:
        ticket = repository.create_ticket_with_notification(
            user_id=user_id,
            job=job,
            score=score,
            notification_title=f"New Job Match: {job.title}",
            notification_message=f"{job.company} - Score: {round(score.overall_score)}",
        )
    except sqlite3.IntegrityError:
        LOGGER.info(
            json.dumps({"event": "ticket_exists", "user_id": user_id, "job_id": job.id})
        )
        return False

    LOGGER.info(
        json.dumps(
            {
                "event": "ticket_created",
                "user_id": user_id,
                "ticket_id": ticket.id,
                "job_id": job.id,
                "overall_score": ticket.overall_score,
            }
        )
    )

    if ticket.overall_score >= HIGH_FIT_ALERT_SCORE:
        context.dispatcher.send_high_fit_alert(
            user_id,
            TicketSummary(
                id=ticket.id,
                job_title=job.title,
                company=job.company,
                overall_score=ticket.overall_score,
                tags=list(ticket.tags),
            ),
        )
    return True
