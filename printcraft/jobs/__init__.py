"""
Background job system for image generation.

Components:
- JobStore: SQLite-backed job records with lease compare-and-set
- JobScheduler: lease-based work queue with backoff and dead-lettering
- WorkerPool / GenerationWorker: bounded-concurrency job processing
- JobFinalizer: shared completion path for polling and callbacks
- GenerationService: operations behind the HTTP API
"""

from printcraft.jobs.models import Job, JobStatus, ErrorKind, Outcome, QueueEntry
from printcraft.jobs.database import JobStore, JobNotFoundError
from printcraft.jobs.queue import JobScheduler
from printcraft.jobs.finalizer import JobFinalizer, CallbackResult
from printcraft.jobs.worker import WorkerPool, GenerationWorker
from printcraft.jobs.service import GenerationService, InvalidRequestError, CreationRateLimitedError

__all__ = [
    "Job",
    "JobStatus",
    "ErrorKind",
    "Outcome",
    "QueueEntry",
    "JobStore",
    "JobNotFoundError",
    "JobScheduler",
    "JobFinalizer",
    "CallbackResult",
    "WorkerPool",
    "GenerationWorker",
    "GenerationService",
    "InvalidRequestError",
    "CreationRateLimitedError",
]
