from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable

from fastapi.concurrency import run_in_threadpool

from scanner.models import ScanResult

LOGGER = logging.getLogger("gigradar.scanner")


class ScanWorkerPool:
    def __init__(
        self,
        scan_user: Callable[[str], ScanResult],
        *,
        max_workers: int = 1,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.scan_user = scan_user
        self.max_workers = max_workers
        self.queue: asyncio.Queue[str] = asyncio.Queue()
        self.results: dict[str, ScanResult] = {}

    async def enqueue(self, user_id: str) -> int:
        await self.queue.put(user_id)
        return self.queue.qsize()

    async def run(self) -> None:
        while True:
            user_id = await self.queue.get()
            try:
                self.results[user_id] = await run_in_threadpool(self.scan_user, user_id)
            except Exception as exc:
                LOGGER.exception(
                    json.dumps({"event": "user_scan_crashed", "user_id": user_id, "error": str(exc)})
                )
                self.results[user_id] = ScanResult(errors=[f"Scan failed: {exc}"])
            finally:
                self.queue.task_done()

    async def drain(self) -> dict[str, ScanResult]:
        workers = [asyncio.create_task(self.run()) for _ in range(self.max_workers)]
        try:
            await self.queue.join()
        finally:
            for worker in workers:
                worker.cancel()
            for worker in workers:
                with contextlib.suppress(asyncio.CancelledError):
                    await worker
        return self.results
