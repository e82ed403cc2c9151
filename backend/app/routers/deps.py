from __future__ import annotations

from typing import Optional

from app.services.jobs.queue import JobQueue, SqlJobQueue


_queue: Optional[JobQueue] = None


def get_queue() -> JobQueue:
    """FastAPI dependency returning the process-wide SQL job queue.

    Tests replace it through ``app.dependency_overrides[get_queue]``.
    """

    global _queue
    if _queue is None:
        _queue = SqlJobQueue()
    return _queue
