# import-service/src/loader.py
import abc
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import asyncpg
from asyncpg import Pool

from errors import BatchInsertError
from log import get_logger
from models import TargetCollection, TargetEntity, ValidationError
from run_state import RunState

logger = get_logger(__name__)

PROVIDER_COLUMNS = (
    "name", "first_name", "last_name", "email", "phone", "city", "state", "zip_code",
    "current_employer", "current_job_title", "bio", "additional_info", "source",
    "linkedin_url", "specializations", "license_number", "license_state", "npi",
)
COMPANY_COLUMNS = (
    "name", "company_type", "description", "website", "founded_year", "employee_count",
    "services", "company_locations", "address", "city", "state", "zip_code",
)
SCHOOL_COLUMNS = (
    "name", "city", "state", "description", "accreditation", "tuition_per_year",
    "program_length_months", "faculty_count", "average_class_size",
    "programs_offered", "specializations",
)
JOB_LISTING_COLUMNS = (
    "title", "city", "state", "description", "requirements", "employment_type",
    "experience_level", "salary_min", "salary_max", "is_remote", "company_id",
)


def _insert_sql(table: str, columns: Sequence[str]) -> str:
    placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
    return f"INSERT INTO {table}({', '.join(columns)}) VALUES({placeholders});"


INSERT_STATEMENTS: Dict[TargetCollection, Tuple[str, Tuple[str, ...]]] = {
    TargetCollection.providers: (_insert_sql("providers", PROVIDER_COLUMNS), PROVIDER_COLUMNS),
    TargetCollection.companies: (_insert_sql("companies", COMPANY_COLUMNS), COMPANY_COLUMNS),
    TargetCollection.schools: (_insert_sql("schools", SCHOOL_COLUMNS), SCHOOL_COLUMNS),
    TargetCollection.job_listings: (_insert_sql("job_listings", JOB_LISTING_COLUMNS), JOB_LISTING_COLUMNS),
}


class BatchSink(abc.ABC):
    @abc.abstractmethod
    async def write_batch(self, collection: TargetCollection, entities: List[TargetEntity]) -> None:
        """Persist all entities in one write or raise BatchInsertError."""
        raise NotImplementedError  # pragma: no cover


class PostgresSink(BatchSink):
    def __init__(self, pool: Pool):
        self.pool = pool

    async def write_batch(self, collection, entities):
        sql, columns = INSERT_STATEMENTS[collection]
        rows = [tuple(getattr(e, c) for c in columns) for e in entities]
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(sql, rows)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise BatchInsertError(collection.value, len(rows), e) from e


class BatchWriter:
    """Groups entities into fixed-size batches; a failed batch never stops the run."""

    def __init__(
        self,
        sink: BatchSink,
        collection: TargetCollection,
        batch_size: int,
        pause_seconds: float = 0.05,
        long_pause_seconds: float = 1.0,
        long_pause_every: int = 100_000,
        on_flush: Optional[Callable[[RunState], Awaitable[None]]] = None,
    ):
        self.sink = sink
        self.collection = collection
        self.batch_size = max(1, batch_size)
        self.pause_seconds = pause_seconds
        self.long_pause_seconds = long_pause_seconds
        self.long_pause_every = long_pause_every
        self.on_flush = on_flush
        self._batch: List[TargetEntity] = []
        self._first_row = 0
        self._next_long_pause = long_pause_every

    @property
    def pending(self) -> int:
        return len(self._batch)

    async def add(self, entity: TargetEntity, row_number: int, state: RunState) -> None:
        if not self._batch:
            self._first_row = row_number
        self._batch.append(entity)
        if len(self._batch) >= self.batch_size:
            await self.flush(state)

    async def flush(self, state: RunState) -> None:
        if not self._batch:
            return
        batch, self._batch = self._batch, []
        try:
            await self.sink.write_batch(self.collection, batch)
            state.successful += len(batch)
        except BatchInsertError as e:
            logger.error("batch failed job_id=%s first_row=%d size=%d: %s", state.job_id, self._first_row, len(batch), e)
            state.failed += len(batch)
            state.batches_failed += 1
            state.record_errors([ValidationError(
                rowNumber=self._first_row,
                field="database",
                rawValue=None,
                message=f"Database error: {e.cause}",
            )])
        state.batches_written += 1

        if self.on_flush is not None:
            await self.on_flush(state)

        await asyncio.sleep(self.pause_seconds)
        if self.long_pause_every and state.decoded >= self._next_long_pause:
            self._next_long_pause = (state.decoded // self.long_pause_every + 1) * self.long_pause_every
            await asyncio.sleep(self.long_pause_seconds)
