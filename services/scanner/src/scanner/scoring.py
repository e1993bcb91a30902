from __future__ import annotations

import math
from typing import Any

from scanner.models import FitScore

USER_TO_JOB_WEIGHT = 0.6
JOB_TO_USER_WEIGHT = 0.4

TAG_HIGH_FIT_USER = "You're a High Fit!"
TAG_HIGH_FIT_JOB = "They're a High Fit for you!"
TAG_MATCH = "That's a Match!"
TAG_STRETCH = "Stretch Role"
TAG_LEFT_FIELD = "Left Field"


def clamp_score(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Score is not numeric: {value!r}") from exc
    if math.isnan(score):
        raise ValueError("Score is not numeric: nan")
    return max(0.0, min(score, 100.0))


def compute_overall_score(user_to_job: float, job_to_user: float) -> float:
    weighted = USER_TO_JOB_WEIGHT * user_to_job + JOB_TO_USER_WEIGHT * job_to_user
    return round(min(weighted, 100.0), 2)


def derive_fit_tags(user_to_job: float, job_to_user: float) -> list[str]:
    tags: list[str] = []
    if user_to_job >= 90:
        tags.append(TAG_HIGH_FIT_USER)
    if job_to_user >= 90:
        tags.append(TAG_HIGH_FIT_JOB)
    if user_to_job >= 90 and job_to_user >= 90:
        tags.append(TAG_MATCH)
    if 70 <= user_to_job < 85:
        tags.append(TAG_STRETCH)
    if job_to_user < 60 and user_to_job >= 75:
        tags.append(TAG_LEFT_FIELD)
    return tags


def build_fit_score(user_to_job: Any, job_to_user: Any, explanation: str) -> FitScore:
    user_score = clamp_score(user_to_job)
    job_score = clamp_score(job_to_user)
    return FitScore(
        user_to_job_score=user_score,
        job_to_user_score=job_score,
        overall_score=compute_overall_score(user_score, job_score),
        explanation=explanation.strip(),
        tags=derive_fit_tags(user_score, job_score),
    )
