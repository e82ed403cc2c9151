"""
Background workers for the mail archiver.

Workers:
- job_worker: leases jobs from the durable queue and runs full, incremental
  and folder syncs, auto-delete evaluations and mbox imports
"""

from app.workers.job_worker import JobWorker, get_worker_heartbeat

__all__ = ["JobWorker", "get_worker_heartbeat"]
