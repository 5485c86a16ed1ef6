"""
Worker Module

Durable job queue and the worker pool that runs it.

Components:
- JobDispatcher: enqueue, status, cancel, retention
- InMemoryJobStore / SqlJobStore: job persistence with atomic claims
- WorkerPool: claims jobs and runs them through the engine
"""

from tasktree.worker.alerts import Alert, InMemoryAlertSink, LoggingAlertSink
from tasktree.worker.dispatcher import JobDispatcher
from tasktree.worker.jobs import EnqueueRequest, InMemoryJobStore, Job, JobStatus
from tasktree.worker.ratelimit import SlidingWindowRateLimiter
from tasktree.worker.store import SqlJobStore
from tasktree.worker.worker import WorkerConfig, WorkerPool

__all__ = [
    "Alert",
    "EnqueueRequest",
    "InMemoryAlertSink",
    "InMemoryJobStore",
    "Job",
    "JobDispatcher",
    "JobStatus",
    "LoggingAlertSink",
    "SlidingWindowRateLimiter",
    "SqlJobStore",
    "WorkerConfig",
    "WorkerPool",
]
