# import-service/src/job_store.py
"""Persistent record of import jobs.

Both stores refuse edges the state machine does not allow and never let
``progress.percent`` go down; a refused write is logged and reported by a
False return rather than raised.
"""
import abc
import json
from typing import Dict, List, Optional

import asyncpg
from asyncpg import Pool

from errors import Conflict, NotFound
from log import get_logger
from models import (
    TRANSITIONS,
    ImportJob,
    JobKind,
    JobProgress,
    JobResult,
    Status,
    TargetCollection,
    utcnow,
)

logger = get_logger(__name__)


class JobStore(abc.ABC):
    @abc.abstractmethod
    async def create(self, job: ImportJob, exclusive: bool = False) -> None:
        """Insert a pending job; raise Conflict if ``exclusive`` and one of its kind is active."""

    @abc.abstractmethod
    async def get(self, job_id: str) -> ImportJob:
        """Snapshot of a job; raise NotFound."""

    @abc.abstractmethod
    async def list_active(self, kind: Optional[JobKind] = None) -> List[ImportJob]:
        ...

    @abc.abstractmethod
    async def mark_running(self, job_id: str, progress: JobProgress) -> bool:
        ...

    @abc.abstractmethod
    async def update_progress(self, job_id: str, progress: JobProgress) -> bool:
        ...

    @abc.abstractmethod
    async def complete(self, job_id: str, progress: JobProgress, result: JobResult) -> bool:
        ...

    @abc.abstractmethod
    async def fail(self, job_id: str, detail: str, result: Optional[JobResult] = None) -> bool:
        ...

    @abc.abstractmethod
    async def fail_interrupted(self, detail: str) -> int:
        """Fail every pending/running job; returns how many were changed."""


class InMemoryJobStore(JobStore):
    def __init__(self) -> None:
        self._jobs: Dict[str, ImportJob] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    async def create(self, job, exclusive=False):
        if exclusive:
            for other in self._jobs.values():
                if other.kind == job.kind and not other.status.is_terminal:
                    raise Conflict(f"a {job.kind.value} job is already {other.status.value} (id={other.id})")
        self._jobs[job.id] = job.model_copy(deep=True)

    async def get(self, job_id):
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(f"job {job_id} not found")
        return job.model_copy(deep=True)

    async def list_active(self, kind=None):
        return [
            j.model_copy(deep=True)
            for j in self._jobs.values()
            if not j.status.is_terminal and (kind is None or j.kind == kind)
        ]

    def _move(self, job_id: str, target: Status, **fields) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(f"job {job_id} not found")
        if target != job.status and target not in TRANSITIONS[job.status]:
            logger.warning("refused transition job_id=%s %s -> %s", job_id, job.status.value, target.value)
            return False
        progress = fields.get("progress")
        if progress is not None and progress.percent < job.progress.percent:
            fields["progress"] = progress.model_copy(update={"percent": job.progress.percent})
        self._jobs[job_id] = job.model_copy(update=dict(fields, status=target, updatedAt=utcnow()))
        return True

    async def mark_running(self, job_id, progress):
        if self._jobs.get(job_id) is not None and self._jobs[job_id].status != Status.pending:
            return False
        return self._move(job_id, Status.running, progress=progress)

    async def update_progress(self, job_id, progress):
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(f"job {job_id} not found")
        if job.status != Status.running:
            return False
        return self._move(job_id, Status.running, progress=progress)

    async def complete(self, job_id, progress, result):
        job = self._jobs.get(job_id)
        if job is not None and job.status != Status.running:
            logger.warning("refused completion job_id=%s status=%s", job_id, job.status.value)
            return False
        return self._move(job_id, Status.completed, progress=progress, result=result, completedAt=utcnow())

    async def fail(self, job_id, detail, result=None):
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(f"job {job_id} not found")
        fields = {"errorDetail": detail, "completedAt": utcnow()}
        if result is not None:
            fields["result"] = result
        if job.status.is_terminal:
            return False
        return self._move(job_id, Status.failed, **fields)

    async def fail_interrupted(self, detail):
        changed = 0
        for job_id, job in list(self._jobs.items()):
            if not job.status.is_terminal:
                changed += await self.fail(job_id, detail)
        return changed


# ---- PostgreSQL ----

INSERT_JOB = """
INSERT INTO import_jobs(
  id, kind, exclusive, status, source_ref, target_collection, notify_address,
  created_at, updated_at, progress
) VALUES($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb);
"""

SELECT_JOB = "SELECT * FROM import_jobs WHERE id=$1;"

SELECT_ACTIVE = """
SELECT * FROM import_jobs
WHERE status IN ('pending', 'running') AND ($1::text IS NULL OR kind = $1)
ORDER BY created_at;
"""

MARK_RUNNING = """
UPDATE import_jobs SET status='running', progress=$2::jsonb, updated_at=now()
WHERE id=$1 AND status='pending';
"""

# percent guard keeps progress monotonic even with out-of-order writers
UPDATE_PROGRESS = """
UPDATE import_jobs SET progress=$2::jsonb, updated_at=now()
WHERE id=$1 AND status='running'
  AND COALESCE((progress->>'percent')::int, 0) <= $3;
"""

COMPLETE_JOB = """
UPDATE import_jobs
SET status='completed', progress=$2::jsonb, result=$3::jsonb, completed_at=now(), updated_at=now()
WHERE id=$1 AND status='running';
"""

FAIL_JOB = """
UPDATE import_jobs
SET status='failed', error_detail=$2, result=COALESCE($3::jsonb, result), completed_at=now(), updated_at=now()
WHERE id=$1 AND status IN ('pending', 'running');
"""

FAIL_INTERRUPTED = """
UPDATE import_jobs
SET status='failed', error_detail=$1, completed_at=now(), updated_at=now()
WHERE status IN ('pending', 'running');
"""


def _changed(command_tag: str) -> int:
    # asyncpg returns e.g. "UPDATE 1"
    try:
        return int(command_tag.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


def _loads(value):
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value


def _row_to_job(row) -> ImportJob:
    result = _loads(row["result"])
    return ImportJob(
        id=row["id"],
        kind=JobKind(row["kind"]),
        status=Status(row["status"]),
        sourceRef=row["source_ref"],
        targetCollection=TargetCollection(row["target_collection"]),
        notifyAddress=row["notify_address"],
        createdAt=row["created_at"],
        updatedAt=row["updated_at"],
        completedAt=row["completed_at"],
        progress=JobProgress(**(_loads(row["progress"]) or {})),
        result=JobResult(**result) if result is not None else None,
        errorDetail=row["error_detail"],
    )


class PostgresJobStore(JobStore):
    def __init__(self, pool: Pool):
        self.pool = pool

    async def create(self, job, exclusive=False):
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    INSERT_JOB,
                    job.id, job.kind.value, exclusive, job.status.value, job.sourceRef,
                    job.targetCollection.value, job.notifyAddress, job.createdAt, job.updatedAt,
                    job.progress.model_dump_json(),
                )
        except asyncpg.UniqueViolationError as e:
            raise Conflict(f"a {job.kind.value} job is already active") from e

    async def get(self, job_id):
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(SELECT_JOB, job_id)
        if row is None:
            raise NotFound(f"job {job_id} not found")
        return _row_to_job(row)

    async def list_active(self, kind=None):
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(SELECT_ACTIVE, kind.value if kind else None)
        return [_row_to_job(r) for r in rows]

    async def mark_running(self, job_id, progress):
        async with self.pool.acquire() as conn:
            tag = await conn.execute(MARK_RUNNING, job_id, progress.model_dump_json())
        return _changed(tag) == 1

    async def update_progress(self, job_id, progress):
        async with self.pool.acquire() as conn:
            tag = await conn.execute(UPDATE_PROGRESS, job_id, progress.model_dump_json(), progress.percent)
        return _changed(tag) == 1

    async def complete(self, job_id, progress, result):
        async with self.pool.acquire() as conn:
            tag = await conn.execute(COMPLETE_JOB, job_id, progress.model_dump_json(), result.model_dump_json())
        if _changed(tag) != 1:
            logger.warning("refused completion job_id=%s", job_id)
            return False
        return True

    async def fail(self, job_id, detail, result=None):
        async with self.pool.acquire() as conn:
            tag = await conn.execute(FAIL_JOB, job_id, detail, result.model_dump_json() if result else None)
        return _changed(tag) == 1

    async def fail_interrupted(self, detail):
        async with self.pool.acquire() as conn:
            tag = await conn.execute(FAIL_INTERRUPTED, detail)
        return _changed(tag)
