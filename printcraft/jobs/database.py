"""
Job Store: durable record of every generation job and its lifecycle.
Uses aiosqlite for async SQLite operations.

Every mutating method is a single conditional UPDATE, so compare-and-set
semantics hold against concurrent lease attempts. try_lease() is the only
method that moves a job out of 'pending'.
"""

import json
import uuid
from pathlib import Path
from typing import Optional, Dict, Any, List

import aiosqlite

from printcraft.jobs.models import Job, JobStatus, ErrorKind, Outcome, TERMINAL_STATUSES
from printcraft.utils.logging import job_logger as logger
from printcraft.utils.timeutil import utc_iso


class JobNotFoundError(Exception):
    """Raised when a job id does not exist."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


_TERMINAL_SQL = "(" + ", ".join(f"'{s.value}'" for s in sorted(TERMINAL_STATUSES)) + ")"

_JOB_COLUMNS = """
    job_id, owner_id, request, status, attempts, max_attempts, provider_ref,
    progress, result, error_message, error_kind, cancel_requested,
    lease_holder, lease_expires_at, created_at, leased_at, started_at,
    completed_at, updated_at
"""


class JobStore:
    """Handles generation job database operations"""

    def __init__(self, db_path: str = "generation_jobs.db"):
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("JobStore is not connected; call connect() first")
        return self._conn

    async def connect(self):
        """Connect to database and create tables if needed"""
        db_file = Path(self.db_path)
        db_dir = db_file.parent
        if db_dir and str(db_dir) != "." and not db_dir.exists():
            db_dir.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._create_tables()

    async def _create_tables(self):
        """Create required tables"""
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS generation_jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT UNIQUE NOT NULL,
                owner_id TEXT NOT NULL,
                request TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',

                -- Attempt accounting
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL,

                -- Provider correlation and progress
                provider_ref TEXT,
                progress INTEGER NOT NULL DEFAULT 0,

                -- Output (storage reference) or failure description
                result TEXT,
                error_message TEXT,
                error_kind TEXT,

                cancel_requested INTEGER NOT NULL DEFAULT 0,

                -- Lease (mutual exclusion between workers)
                lease_holder TEXT,
                lease_expires_at TEXT,

                -- Finalize claim (guards the artifact upload)
                finalize_claimant TEXT,
                finalize_expires_at TEXT,

                -- Timestamps
                created_at TEXT NOT NULL,
                leased_at TEXT,
                started_at TEXT,
                completed_at TEXT,
                updated_at TEXT NOT NULL
            )
        """)

        await self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_generation_jobs_owner
            ON generation_jobs(owner_id, created_at)
        """)

        await self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_generation_jobs_status
            ON generation_jobs(status)
        """)

        await self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_generation_jobs_provider_ref
            ON generation_jobs(provider_ref)
        """)

        await self.conn.commit()

    @staticmethod
    def _row_to_job(row: aiosqlite.Row) -> Job:
        return Job(
            id=row["job_id"],
            owner_id=row["owner_id"],
            request=json.loads(row["request"]),
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            provider_ref=row["provider_ref"],
            progress=row["progress"],
            result=row["result"],
            error=row["error_message"],
            error_kind=ErrorKind(row["error_kind"]) if row["error_kind"] else None,
            cancel_requested=bool(row["cancel_requested"]),
            lease_holder=row["lease_holder"],
            lease_expires_at=row["lease_expires_at"],
            created_at=row["created_at"],
            leased_at=row["leased_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            updated_at=row["updated_at"],
        )

    async def _update(self, sql: str, params: tuple) -> bool:
        """Run a conditional UPDATE and report whether it matched a row."""
        cursor = await self.conn.execute(sql, params)
        await self.conn.commit()
        return cursor.rowcount == 1

    # =========================================================================
    # Creation & Retrieval
    # =========================================================================

    async def create(
        self,
        request: Dict[str, Any],
        owner_id: str,
        max_attempts: int
    ) -> Job:
        """
        Create a new generation job in 'pending'.

        Args:
            request: Opaque provider parameters, stored verbatim
            owner_id: Authenticated caller id
            max_attempts: Attempt budget captured at creation time

        Returns:
            The created job
        """
        job_id = f"gen_{uuid.uuid4().hex[:16]}"
        now = utc_iso()

        await self.conn.execute("""
            INSERT INTO generation_jobs
            (job_id, owner_id, request, status, max_attempts, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            job_id,
            owner_id,
            json.dumps(request),
            JobStatus.PENDING.value,
            max_attempts,
            now,
            now
        ))
        await self.conn.commit()

        logger.info("Job created", job_id=job_id, owner_id=owner_id)
        return await self.get(job_id)

    async def get(self, job_id: str) -> Job:
        """Get a job by its id, raising JobNotFoundError if absent"""
        cursor = await self.conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM generation_jobs WHERE job_id = ?",
            (job_id,)
        )
        row = await cursor.fetchone()
        if not row:
            raise JobNotFoundError(job_id)
        return self._row_to_job(row)

    async def find_by_provider_ref(self, provider_ref: str) -> Optional[Job]:
        """Map an inbound provider callback to its job"""
        cursor = await self.conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM generation_jobs WHERE provider_ref = ?",
            (provider_ref,)
        )
        row = await cursor.fetchone()
        return self._row_to_job(row) if row else None

    async def list_for_owner(
        self,
        owner_id: str,
        limit: int = 20,
        offset: int = 0
    ) -> List[Job]:
        """Get an owner's jobs, newest first"""
        cursor = await self.conn.execute(f"""
            SELECT {_JOB_COLUMNS} FROM generation_jobs
            WHERE owner_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ? OFFSET ?
        """, (owner_id, limit, offset))
        rows = await cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    async def count_for_owner(self, owner_id: str) -> int:
        cursor = await self.conn.execute(
            "SELECT COUNT(*) FROM generation_jobs WHERE owner_id = ?",
            (owner_id,)
        )
        row = await cursor.fetchone()
        return row[0]

    async def counts_by_status(self) -> Dict[str, int]:
        """Job counts keyed by every status value (zero-filled)"""
        cursor = await self.conn.execute(
            "SELECT status, COUNT(*) FROM generation_jobs GROUP BY status"
        )
        rows = await cursor.fetchall()
        counts = {status.value: 0 for status in JobStatus}
        for row in rows:
            counts[row[0]] = row[1]
        return counts

    async def list_active_ids(self, limit: int = 500) -> List[str]:
        """Ids of jobs that have not reached a terminal state"""
        cursor = await self.conn.execute(f"""
            SELECT job_id FROM generation_jobs
            WHERE status NOT IN {_TERMINAL_SQL}
            ORDER BY created_at ASC
            LIMIT ?
        """, (limit,))
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    # =========================================================================
    # Leasing
    # =========================================================================

    async def try_lease(self, job_id: str, lease_holder: str, lease_duration: float) -> bool:
        """
        Atomically claim a job for one worker.

        Succeeds for a 'pending' job, or for a non-terminal job whose lease is
        absent or expired. A pending job moves to 'leased'; a job that was
        already processing keeps its status so the lifecycle never regresses.
        """
        now = utc_iso()
        acquired = await self._update(f"""
            UPDATE generation_jobs
            SET lease_holder = ?,
                lease_expires_at = ?,
                leased_at = ?,
                status = CASE WHEN status = 'pending' THEN 'leased' ELSE status END,
                updated_at = ?
            WHERE job_id = ?
              AND status NOT IN {_TERMINAL_SQL}
              AND (
                  status = 'pending'
                  OR lease_holder IS NULL
                  OR lease_expires_at IS NULL
                  OR lease_expires_at <= ?
              )
        """, (
            lease_holder,
            utc_iso(lease_duration),
            now,
            now,
            job_id,
            now
        ))

        if acquired:
            logger.debug("Lease acquired", job_id=job_id, holder=lease_holder)
        return acquired

    async def renew_lease(self, job_id: str, lease_holder: str, lease_duration: float) -> bool:
        """Extend a lease still held by lease_holder. False means it was lost."""
        now = utc_iso()
        return await self._update(f"""
            UPDATE generation_jobs
            SET lease_expires_at = ?, updated_at = ?
            WHERE job_id = ?
              AND lease_holder = ?
              AND lease_expires_at > ?
              AND status NOT IN {_TERMINAL_SQL}
        """, (utc_iso(lease_duration), now, job_id, lease_holder, now))

    async def release_lease(self, job_id: str, lease_holder: str) -> bool:
        return await self._update("""
            UPDATE generation_jobs
            SET lease_holder = NULL, lease_expires_at = NULL, updated_at = ?
            WHERE job_id = ? AND lease_holder = ?
        """, (utc_iso(), job_id, lease_holder))

    # =========================================================================
    # Processing
    # =========================================================================

    async def begin_processing(self, job_id: str, lease_holder: str) -> Optional[Job]:
        """
        Start a new attempt: increment attempts and mark 'processing'.

        Returns the updated job, or None if the lease is no longer held or
        the attempt budget is already spent.
        """
        now = utc_iso()
        started = await self._update("""
            UPDATE generation_jobs
            SET attempts = attempts + 1,
                status = 'processing',
                started_at = ?,
                updated_at = ?
            WHERE job_id = ?
              AND lease_holder = ?
              AND lease_expires_at > ?
              AND status IN ('leased', 'processing')
              AND attempts < max_attempts
        """, (now, now, job_id, lease_holder, now))

        if not started:
            return None
        return await self.get(job_id)

    async def set_provider_ref(self, job_id: str, lease_holder: str, provider_ref: str) -> bool:
        return await self._update("""
            UPDATE generation_jobs
            SET provider_ref = ?, updated_at = ?
            WHERE job_id = ? AND lease_holder = ? AND status = 'processing'
        """, (provider_ref, utc_iso(), job_id, lease_holder))

    async def update_progress(self, job_id: str, pct: int) -> bool:
        """
        Record progress. Only increases are written while processing.

        Returns True if the stored value changed.
        """
        pct = max(0, min(100, int(pct)))
        return await self._update("""
            UPDATE generation_jobs
            SET progress = ?, updated_at = ?
            WHERE job_id = ? AND status = 'processing' AND progress < ?
        """, (pct, utc_iso(), job_id, pct))

    async def record_retry(
        self,
        job_id: str,
        lease_holder: str,
        error_message: str,
        error_kind: ErrorKind,
        keep_provider_ref: bool = False
    ) -> bool:
        """
        Note a transient failure and give up the lease so the job can be
        re-leased after backoff.

        The provider request is forgotten so the next attempt starts a fresh
        one, unless `keep_provider_ref` is set: then the next attempt resumes
        polling the request that is still running.
        """
        return await self._update("""
            UPDATE generation_jobs
            SET error_message = ?,
                error_kind = ?,
                provider_ref = CASE WHEN ? THEN provider_ref ELSE NULL END,
                lease_holder = NULL,
                lease_expires_at = NULL,
                updated_at = ?
            WHERE job_id = ? AND lease_holder = ? AND status = 'processing'
        """, (error_message, error_kind.value, int(keep_provider_ref), utc_iso(), job_id, lease_holder))

    async def request_cancel(self, job_id: str) -> Job:
        """
        Flag a job for cancellation. The status is left alone; the worker
        that owns the job observes the flag and finalizes it.
        """
        await self.conn.execute(f"""
            UPDATE generation_jobs
            SET cancel_requested = 1, updated_at = ?
            WHERE job_id = ? AND status NOT IN {_TERMINAL_SQL}
        """, (utc_iso(), job_id))
        await self.conn.commit()
        return await self.get(job_id)

    # =========================================================================
    # Finalization
    # =========================================================================

    async def claim_finalization(self, job_id: str, claimant: str, ttl: float) -> bool:
        """
        Claim the right to run the success path (artifact upload) for a job.

        Only one claimant wins while the claim is live; an expired claim
        (claimant crashed mid-upload) can be taken over.
        """
        now = utc_iso()
        return await self._update(f"""
            UPDATE generation_jobs
            SET finalize_claimant = ?, finalize_expires_at = ?, updated_at = ?
            WHERE job_id = ?
              AND status NOT IN {_TERMINAL_SQL}
              AND (
                  finalize_claimant IS NULL
                  OR finalize_claimant = ?
                  OR finalize_expires_at <= ?
              )
        """, (claimant, utc_iso(ttl), now, job_id, claimant, now))

    async def finalization_expires_at(self, job_id: str) -> Optional[str]:
        """Expiry of the live finalization claim on a job, if any"""
        cursor = await self.conn.execute("""
            SELECT finalize_expires_at FROM generation_jobs
            WHERE job_id = ? AND finalize_claimant IS NOT NULL AND finalize_expires_at > ?
        """, (job_id, utc_iso()))
        row = await cursor.fetchone()
        return row[0] if row else None

    async def release_finalization(self, job_id: str, claimant: str) -> bool:
        return await self._update("""
            UPDATE generation_jobs
            SET finalize_claimant = NULL, finalize_expires_at = NULL
            WHERE job_id = ? AND finalize_claimant = ?
        """, (job_id, claimant))

    async def finalize(self, job_id: str, outcome: Outcome) -> bool:
        """
        Write the terminal outcome.

        Returns False (and changes nothing) if the job is already terminal,
        which makes duplicate completions harmless.
        """
        now = utc_iso()
        finalized = await self._update(f"""
            UPDATE generation_jobs
            SET status = ?,
                result = ?,
                error_message = CASE WHEN ? = 'succeeded' THEN NULL ELSE COALESCE(?, error_message) END,
                error_kind = CASE WHEN ? = 'succeeded' THEN NULL ELSE COALESCE(?, error_kind) END,
                progress = CASE WHEN ? = 'succeeded' THEN 100 ELSE progress END,
                lease_holder = NULL,
                lease_expires_at = NULL,
                finalize_claimant = NULL,
                finalize_expires_at = NULL,
                completed_at = ?,
                updated_at = ?
            WHERE job_id = ? AND status NOT IN {_TERMINAL_SQL}
        """, (
            outcome.status.value,
            outcome.result,
            outcome.status.value,
            outcome.error,
            outcome.status.value,
            outcome.error_kind.value if outcome.error_kind else None,
            outcome.status.value,
            now,
            now,
            job_id
        ))

        if finalized:
            logger.info(
                "Job finalized",
                job_id=job_id,
                status=outcome.status.value,
                error_kind=outcome.error_kind.value if outcome.error_kind else None
            )
        return finalized

    async def close(self):
        """Close database connection"""
        if self._conn:
            await self._conn.close()
            self._conn = None
