from __future__ import annotations

from datetime import UTC, datetime, timedelta

from common.utils import now_utc, to_utc_iso

from scanner.models import CountByName, DailyCount, Insights, TitleScore
from scanner.repository import ScannerRepository

INSIGHT_WINDOW_DAYS = 7
TOP_LIMIT = 5
TOP_TITLE_MIN_SCORE = 80


def build_insights(
    repository: ScannerRepository,
    user_id: str,
    *,
    now: datetime | None = None,
) -> Insights:
    current = (now or now_utc()).astimezone(UTC)
    today = current.replace(hour=0, minute=0, second=0, microsecond=0)
    week_ago = to_utc_iso(current - timedelta(days=INSIGHT_WINDOW_DAYS))
    first_day = today - timedelta(days=INSIGHT_WINDOW_DAYS - 1)

    avg_score = repository.average_score_since(user_id, week_ago)
    daily_counts = repository.daily_ticket_counts(user_id, to_utc_iso(first_day))

    return Insights(
        new_roles_today=repository.count_tickets_since(user_id, to_utc_iso(today)),
        avg_fit_7_days=round(avg_score or 0.0, 1),
        top_companies=[
            CountByName(name=company, count=count)
            for company, count in repository.top_companies_since(
                user_id,
                week_ago,
                limit=TOP_LIMIT,
            )
        ],
        top_titles=[
            TitleScore(title=title, avg_score=round(score, 2), count=count)
            for title, score, count in repository.top_titles(
                user_id,
                min_score=TOP_TITLE_MIN_SCORE,
                limit=TOP_LIMIT,
            )
        ],
        status_distribution=repository.status_counts(user_id),
        daily_tickets=[
            DailyCount(date=day, count=daily_counts.get(day, 0))
            for day in (
                (first_day + timedelta(days=offset)).date().isoformat()
                for offset in range(INSIGHT_WINDOW_DAYS)
            )
        ],
    )
