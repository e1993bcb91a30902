from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from scanner.llm import ClaudeClient
from scanner.models import RawPosting
from scanner.notifications import NotificationDispatcher
from scanner.repository import ScannerRepository

JobSourceFn = Callable[[ScannerRepository], list[RawPosting]]


@dataclass
class ScanContext:
    repository: ScannerRepository
    llm: ClaudeClient
    dispatcher: NotificationDispatcher
    job_source: JobSourceFn
