from __future__ import annotations

import threading

import pytest
from scanner.models import ScanResult
from scanner.worker import ScanWorkerPool

pytestmark = pytest.mark.unit


def test_worker_pool_requires_at_least_one_worker() -> None:
    with pytest.raises(ValueError):
        ScanWorkerPool(lambda user_id: ScanResult(), max_workers=0)


@pytest.mark.asyncio
async def test_worker_pool_scans_every_queued_user() -> None:
    seen: list[str] = []
    lock = threading.Lock()

    def scan_user(user_id: str) -> ScanResult:
        with lock:
            seen.append(user_id)
        return ScanResult(jobs_scanned=1, tickets_created=len(user_id))

    pool = ScanWorkerPool(scan_user, max_workers=3)
    for user_id in ("a", "bb", "ccc", "dddd"):
        await pool.enqueue(user_id)

    results = await pool.drain()

    assert sorted(seen) == ["a", "bb", "ccc", "dddd"]
    assert {user_id: result.tickets_created for user_id, result in results.items()} == {
        "a": 1,
        "bb": 2,
        "ccc": 3,
        "dddd": 4,
    }
    assert pool.queue.empty()


@pytest.mark.asyncio
async def test_worker_pool_isolates_crashing_scans() -> None:
    def scan_user(user_id: str) -> ScanResult:
        if user_id == "broken":
            raise RuntimeError("boom")
        return ScanResult(tickets_created=1)

    pool = ScanWorkerPool(scan_user)
    assert await pool.enqueue("broken") == 1
    assert await pool.enqueue("healthy") == 2

    results = await pool.drain()

    assert results["broken"].errors == ["Scan failed: boom"]
    assert results["healthy"].tickets_created == 1


@pytest.mark.asyncio
async def test_draining_an_empty_pool_returns_no_results() -> None:
    pool = ScanWorkerPool(lambda user_id: ScanResult(), max_workers=2)
    assert await pool.drain() == {}
