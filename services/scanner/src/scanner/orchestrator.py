from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from functools import partial

from common.utils import now_utc, parse_iso_datetime, to_utc_iso
from fastapi.concurrency import run_in_threadpool

from scanner.context import ScanContext
from scanner.dedup import upsert_job
from scanner.models import SCAN_INTERVAL_HOURS, ScanResult, ScanSummary
from scanner.preferences import aggregate_preferences
from scanner.reconciler import reconcile_ticket
from scanner.worker import ScanWorkerPool

LOGGER = logging.getLogger("gigradar.scanner")


def scan_jobs_for_user(
    context: ScanContext,
    user_id: str,
    *,
    now: datetime | None = None,
) -> ScanResult:
    repository = context.repository
    result = ScanResult()
    try:
        user = repository.get_user(user_id)
        scan_config = repository.get_scan_config(user_id)
        if user is None or scan_config is None or not scan_config.enabled:
            return result
        cv_text = repository.get_user_cv(user_id)
        if not cv_text:
            LOGGER.info(json.dumps({"event": "scan_skipped", "user_id": user_id, "reason": "no_cv"}))
            return result

        started = now or now_utc()
        snooze_until = parse_iso_datetime(scan_config.snooze_until)
        if snooze_until is not None and snooze_until > started:
            LOGGER.info(
                json.dumps(
                    {
                        "event": "scan_skipped",
                        "user_id": user_id,
                        "reason": "snoozed",
                        "snooze_until": scan_config.snooze_until,
                    }
                )
            )
            return result

        preferences = aggregate_preferences(repository.list_preference_sets(user_id))
        postings = context.job_source(repository)
        result.jobs_scanned = len(postings)

        for raw in postings:
            try:
                extracted = context.llm.extract_job_data(raw.description)
                job, _ = upsert_job(repository, raw, extracted)
                created = reconcile_ticket(
                    context,
                    user_id=user_id,
                    job=job,
                    cv_text=cv_text,
                    preferences=preferences,
                    threshold=scan_config.threshold,
                )
                if created:
                    result.tickets_created += 1
            except Exception as exc:
                LOGGER.warning(
                    json.dumps(
                        {
                            "event": "job_processing_failed",
                            "user_id": user_id,
                            "title": raw.title,
                            "company": raw.company,
                            "error": str(exc),
                        }
                    )
                )
                result.errors.append(f"Error processing job {raw.title} at {raw.company}: {exc}")

        finished = now or now_utc()
        result.scan_config = repository.record_scan_run(
            user_id,
            last_scan_at=to_utc_iso(finished),
            next_scan_at=to_utc_iso(finished + timedelta(hours=SCAN_INTERVAL_HOURS)),
        )
        LOGGER.info(
            json.dumps(
                {
                    "event": "user_scan_complete",
                    "user_id": user_id,
                    "jobs_scanned": result.jobs_scanned,
                    "tickets_created": result.tickets_created,
                    "errors": len(result.errors),
                }
            )
        )
    except Exception as exc:
        LOGGER.exception(json.dumps({"event": "user_scan_failed", "user_id": user_id}))
        result.errors.append(f"Scan failed: {exc}")
    return result


async def scan_jobs_for_all_users(
    context: ScanContext,
    *,
    max_workers: int = 1,
    now: datetime | None = None,
) -> ScanSummary:
    summary = ScanSummary()
    try:
        users = await run_in_threadpool(context.repository.list_scan_enabled_users)
        pool = ScanWorkerPool(partial(scan_jobs_for_user, context, now=now), max_workers=max_workers)
        for user in users:
            await pool.enqueue(user.id)
        results = await pool.drain()

        for user in users:
            user_result = results.get(user.id)
            if user_result is None:
                continue
            summary.users_scanned += 1
            summary.total_tickets_created += user_result.tickets_created
            summary.errors.extend(user_result.errors)

        sweep_at = to_utc_iso(now or now_utc())
        deactivated = await run_in_threadpool(
            partial(context.repository.deactivate_expired_jobs, now_iso=sweep_at)
        )
        catalog_size = await run_in_threadpool(context.repository.count_jobs)
        LOGGER.info(
            json.dumps(
                {
                    "event": "scan_sweep_complete",
                    "users_scanned": summary.users_scanned,
                    "total_tickets_created": summary.total_tickets_created,
                    "errors": len(summary.errors),
                    "jobs_deactivated": deactivated,
                    "jobs_in_catalog": catalog_size,
                }
            )
        )
    except Exception as exc:
        LOGGER.exception(json.dumps({"event": "global_scan_failed", "error": str(exc)}))
        summary.errors.append(f"Global scan error: {exc}")
    return summary
