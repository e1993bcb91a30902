from __future__ import annotations

import json
import logging
from typing import Any

import httpx
from common.utils import normalize_whitespace, parse_iso_datetime, to_utc_iso

from scanner.models import SOURCE_INLINE_JSON, SOURCE_TYPES, JobSource, RawPosting
from scanner.repository import ScannerRepository

LOGGER = logging.getLogger("gigradar.scanner")


def load_source_payload(source: JobSource, *, timeout: float = 15.0) -> Any:
    if source.source_type not in SOURCE_TYPES:
        raise ValueError(f"Unsupported source type: {source.source_type}")

    if source.source_type == SOURCE_INLINE_JSON:
        return source.config.get("postings", [])

    url = str(source.config.get("url", "")).strip()
    if not url:
        raise ValueError("Missing url in job source config.")
    with httpx.Client(timeout=timeout) as client:
        response = client.get(url)
        response.raise_for_status()
        return response.json()


def to_raw_postings(source_id: str, payload: Any) -> list[RawPosting]:
    if isinstance(payload, dict):
        raw_items = payload.get("postings", [])
    elif isinstance(payload, list):
        raw_items = payload
    else:
        raise ValueError("Source payload must be a JSON object or list.")

    if not isinstance(raw_items, list):
        raise ValueError("Source payload postings must be a list.")

    postings: list[RawPosting] = []
    for item in raw_items:
        if not isinstance(item, dict):
            continue
        title = normalize_whitespace(str(item.get("title") or ""))
        company = normalize_whitespace(str(item.get("company") or ""))
        description = str(item.get("description") or "").strip()
        if not title or not company or not description:
            continue
        url = str(item.get("url") or item.get("apply_url") or "").strip() or None
        raw_expiry = item.get("expiry_date") or item.get("expiryDate")
        expiry = parse_iso_datetime(str(raw_expiry)) if raw_expiry else None
        postings.append(
            RawPosting(
                title=title,
                company=company,
                description=description,
                url=url,
                source=source_id,
                expiry_date=to_utc_iso(expiry) if expiry else None,
            )
        )
    return postings


def collect_raw_postings(repository: ScannerRepository) -> list[RawPosting]:
    postings: list[RawPosting] = []
    for source in repository.list_job_sources(enabled_only=True):
        try:
            postings.extend(to_raw_postings(source.source_id, load_source_payload(source)))
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning(
                json.dumps(
                    {"event": "job_source_failed", "source_id": source.source_id, "error": str(exc)}
                )
            )
    return postings
