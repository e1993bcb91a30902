from __future__ import annotations

import json
import logging
import sqlite3

from common.utils import content_digest, normalize_whitespace

from scanner.models import ExtractedJob, Job, RawPosting
from scanner.repository import ScannerRepository

LOGGER = logging.getLogger("gigradar.scanner")


def description_hash(text: str) -> str:
    return content_digest(text)


def resolve_extracted_job(raw: RawPosting, extracted: ExtractedJob) -> ExtractedJob:
    return extracted.model_copy(
        update={
            "title": normalize_whitespace(extracted.title or raw.title),
            "company": normalize_whitespace(extracted.company or raw.company),
            "description": extracted.description or raw.description,
        }
    )


def upsert_job(
    repository: ScannerRepository,
    raw: RawPosting,
    extracted: ExtractedJob,
) -> tuple[Job, bool]:
    resolved = resolve_extracted_job(raw, extracted)
    if not resolved.title or not resolved.company:
        raise ValueError("Job posting needs a title and a company.")
    digest = description_hash(resolved.description or "")

    existing = repository.find_job(
        title=resolved.title,
        company=resolved.company,
        description_hash=digest,
    )
    if existing is not None:
        return repository.reactivate_job(existing.id), False

    try:
        job = repository.insert_job(raw, resolved, description_hash=digest)
    except sqlite3.IntegrityError:
        concurrent = repository.find_job(
            title=resolved.title,
            company=resolved.company,
            description_hash=digest,
        )
        if concurrent is None:
            raise
        LOGGER.info(
            json.dumps(
                {"event": "job_insert_conflict", "job_id": concurrent.id, "title": concurrent.title}
            )
        )
        return repository.reactivate_job(concurrent.id), False
    return job, True
