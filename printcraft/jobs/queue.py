"""
Work queue for generation jobs.

A lease-based queue kept in the same SQLite database as the Job Store:
entries become visible at `not_before`, are leased to one worker for the
lease duration, and reappear automatically when a lease expires without
being extended (visibility timeout). Any durable queue offering the same
enqueue/dequeue/extend/dead-letter operations can replace it.
"""

import uuid
from typing import Dict, Any, Optional, List

from printcraft.config import PipelineSettings
from printcraft.jobs.backoff import compute_backoff
from printcraft.jobs.database import JobStore
from printcraft.jobs.models import QueueEntry
from printcraft.utils.logging import job_logger as logger
from printcraft.utils.timeutil import utc_iso


class JobScheduler:
    """
    Durable lease-based work queue.

    Usage:
        scheduler = JobScheduler(store, settings)
        await scheduler.initialize()

        await scheduler.enqueue(job.id)
        job_id = await scheduler.dequeue("worker-1")
    """

    def __init__(self, store: JobStore, settings: PipelineSettings):
        self.store = store
        self.settings = settings
        self._initialized = False

    async def initialize(self):
        """Create the queue table (the store must already be connected)"""
        if self._initialized:
            return

        conn = self.store.conn
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS job_queue (
                job_id TEXT PRIMARY KEY,
                not_before TEXT NOT NULL,
                lease_holder TEXT,
                lease_token TEXT,
                lease_expires_at TEXT,
                dead_lettered INTEGER NOT NULL DEFAULT 0,
                dead_letter_reason TEXT,
                enqueued_at TEXT NOT NULL
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_job_queue_ready
            ON job_queue(dead_lettered, not_before)
        """)
        await conn.commit()
        self._initialized = True

    # =========================================================================
    # Enqueue / Dequeue
    # =========================================================================

    async def enqueue(self, job_id: str, not_before: Optional[str] = None) -> bool:
        """
        Make a job eligible for processing at `not_before` (default: now).

        Re-enqueueing an existing entry resets its visibility and clears any
        lease. Dead-lettered entries are never revived.
        """
        conn = self.store.conn
        now = utc_iso()
        cursor = await conn.execute("""
            INSERT INTO job_queue (job_id, not_before, enqueued_at)
            VALUES (?, ?, ?)
            ON CONFLICT(job_id) DO UPDATE SET
                not_before = excluded.not_before,
                lease_holder = NULL,
                lease_token = NULL,
                lease_expires_at = NULL
            WHERE job_queue.dead_lettered = 0
        """, (job_id, not_before or now, now))
        await conn.commit()
        return cursor.rowcount == 1

    async def dequeue(self, worker_id: str) -> Optional[str]:
        """
        Lease the next visible job to `worker_id`.

        Returns None when nothing is ready or when `concurrency_limit`
        leases are already active. The claim is a single UPDATE, so two
        workers can never lease the same entry.
        """
        conn = self.store.conn
        now = utc_iso()
        token = uuid.uuid4().hex

        cursor = await conn.execute("""
            UPDATE job_queue
            SET lease_holder = ?, lease_token = ?, lease_expires_at = ?
            WHERE job_id = (
                SELECT job_id FROM job_queue
                WHERE dead_lettered = 0
                  AND not_before <= ?
                  AND (lease_expires_at IS NULL OR lease_expires_at <= ?)
                ORDER BY not_before ASC, enqueued_at ASC
                LIMIT 1
            )
            AND (
                SELECT COUNT(*) FROM job_queue
                WHERE dead_lettered = 0
                  AND lease_holder IS NOT NULL
                  AND lease_expires_at > ?
            ) < ?
        """, (
            worker_id,
            token,
            utc_iso(self.settings.lease_duration),
            now,
            now,
            now,
            self.settings.concurrency_limit
        ))
        await conn.commit()

        if cursor.rowcount != 1:
            return None

        cursor = await conn.execute(
            "SELECT job_id FROM job_queue WHERE lease_token = ?", (token,)
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def extend_lease(self, job_id: str, worker_id: str) -> bool:
        """
        Heartbeat: push out both the queue visibility timeout and the job
        lease. False means the lease was lost and the worker must stop.
        """
        conn = self.store.conn
        now = utc_iso()
        cursor = await conn.execute("""
            UPDATE job_queue
            SET lease_expires_at = ?
            WHERE job_id = ? AND lease_holder = ? AND lease_expires_at > ?
        """, (utc_iso(self.settings.lease_duration), job_id, worker_id, now))
        await conn.commit()

        if cursor.rowcount != 1:
            return False
        return await self.store.renew_lease(job_id, worker_id, self.settings.lease_duration)

    async def ack(self, job_id: str):
        """Remove a finished job from scheduling (the job record is kept)"""
        conn = self.store.conn
        await conn.execute(
            "DELETE FROM job_queue WHERE job_id = ? AND dead_lettered = 0",
            (job_id,)
        )
        await conn.commit()

    # =========================================================================
    # Retry & Dead-letter
    # =========================================================================

    async def requeue_with_backoff(self, job_id: str, attempt: int) -> float:
        """
        Schedule another attempt after an exponential, jittered delay.

        Returns the delay in seconds.
        """
        delay = compute_backoff(
            attempt,
            base=self.settings.base_backoff,
            cap=self.settings.max_backoff,
            jitter=self.settings.backoff_jitter
        )
        await self.enqueue(job_id, not_before=utc_iso(delay))

        logger.warning(
            "Job requeued with backoff",
            job_id=job_id,
            attempt=attempt,
            delay_seconds=round(delay, 3)
        )
        return delay

    async def dead_letter(self, job_id: str, reason: str = "attempts exhausted"):
        """
        Remove a job from further scheduling after retry exhaustion.

        The job's terminal status has already been written by the worker;
        only the queue entry is touched.
        """
        conn = self.store.conn
        now = utc_iso()
        await conn.execute("""
            INSERT INTO job_queue (job_id, not_before, dead_lettered, dead_letter_reason, enqueued_at)
            VALUES (?, ?, 1, ?, ?)
            ON CONFLICT(job_id) DO UPDATE SET
                dead_lettered = 1,
                dead_letter_reason = excluded.dead_letter_reason,
                lease_holder = NULL,
                lease_token = NULL,
                lease_expires_at = NULL
        """, (job_id, now, reason, now))
        await conn.commit()

        logger.warning("Job dead-lettered", job_id=job_id, reason=reason)

    async def dead_letters(self, limit: int = 50) -> List[QueueEntry]:
        conn = self.store.conn
        cursor = await conn.execute("""
            SELECT job_id, not_before, dead_letter_reason, enqueued_at
            FROM job_queue
            WHERE dead_lettered = 1
            ORDER BY enqueued_at DESC
            LIMIT ?
        """, (limit,))
        rows = await cursor.fetchall()
        return [
            QueueEntry(
                job_id=row[0],
                not_before=row[1],
                dead_lettered=True,
                dead_letter_reason=row[2],
                enqueued_at=row[3],
            )
            for row in rows
        ]

    async def get_entry(self, job_id: str) -> Optional[QueueEntry]:
        conn = self.store.conn
        cursor = await conn.execute("""
            SELECT job_id, not_before, lease_holder, lease_expires_at,
                   dead_lettered, dead_letter_reason, enqueued_at
            FROM job_queue WHERE job_id = ?
        """, (job_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return QueueEntry(
            job_id=row[0],
            not_before=row[1],
            lease_holder=row[2],
            lease_expires_at=row[3],
            dead_lettered=bool(row[4]),
            dead_letter_reason=row[5],
            enqueued_at=row[6],
        )

    # =========================================================================
    # Recovery & Stats
    # =========================================================================

    async def recover_orphans(self) -> int:
        """
        Re-enqueue non-terminal jobs that have no queue entry at all
        (e.g. the process died between creating and enqueueing a job).

        Returns the number of recovered jobs.
        """
        conn = self.store.conn
        active_ids = await self.store.list_active_ids()
        if not active_ids:
            return 0

        placeholders = ", ".join("?" for _ in active_ids)
        cursor = await conn.execute(
            f"SELECT job_id FROM job_queue WHERE job_id IN ({placeholders})",
            tuple(active_ids)
        )
        queued = {row[0] for row in await cursor.fetchall()}

        recovered = 0
        for job_id in active_ids:
            if job_id not in queued:
                await self.enqueue(job_id)
                recovered += 1

        if recovered:
            logger.warning("Recovered orphaned jobs", count=recovered)
        return recovered

    async def stats(self) -> Dict[str, Any]:
        """Queue statistics for the admin dashboard"""
        conn = self.store.conn
        now = utc_iso()
        cursor = await conn.execute("""
            SELECT
                SUM(CASE WHEN dead_lettered = 0 AND not_before <= ?
                          AND (lease_expires_at IS NULL OR lease_expires_at <= ?) THEN 1 ELSE 0 END),
                SUM(CASE WHEN dead_lettered = 0 AND not_before > ?
                          AND (lease_expires_at IS NULL OR lease_expires_at <= ?) THEN 1 ELSE 0 END),
                SUM(CASE WHEN dead_lettered = 0 AND lease_expires_at > ? THEN 1 ELSE 0 END),
                SUM(CASE WHEN dead_lettered = 1 THEN 1 ELSE 0 END)
            FROM job_queue
        """, (now, now, now, now, now))
        row = await cursor.fetchone()

        return {
            "ready": row[0] or 0,
            "delayed": row[1] or 0,
            "leased": row[2] or 0,
            "dead_lettered": row[3] or 0,
            "concurrency_limit": self.settings.concurrency_limit,
        }
