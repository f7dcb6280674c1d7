# import-service/src/progress.py
import time
from typing import Callable, Optional

from job_store import JobStore
from log import get_logger
from models import JobProgress
from run_state import RunState

logger = get_logger(__name__)


class ByteEstimate:
    """Percent from bytes received over the (heuristic) expected size."""

    def __init__(self, source):
        self.source = source

    def fraction(self, state: RunState) -> float:
        total = getattr(self.source, "estimated_total_bytes", 0) or 0
        return self.source.bytes_received / total if total > 0 else 0.0

    def total(self) -> Optional[int]:
        return None


class RowEstimate:
    """Percent from rows processed over rows known to exist."""

    def __init__(self, total_rows: Callable[[], Optional[int]]):
        self._total_rows = total_rows

    def fraction(self, state: RunState) -> float:
        total = self._total_rows()
        return state.decoded / total if total else 0.0

    def total(self) -> Optional[int]:
        return self._total_rows()


class ProgressReporter:
    """Throttled progress writes: one per interval plus explicit milestones."""

    def __init__(
        self,
        store: JobStore,
        job_id: str,
        estimate,
        interval_seconds: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.job_id = job_id
        self.estimate = estimate
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.percent = 0
        self.writes = 0
        self._last_write: Optional[float] = None

    def snapshot(self, state: RunState, message: Optional[str] = None) -> JobProgress:
        # 100 is reserved for completion
        pct = min(99, int(self.estimate.fraction(state) * 100))
        self.percent = max(self.percent, pct)
        return JobProgress(
            percent=self.percent,
            message=message or (
                f"processed {state.decoded} rows: {state.successful} imported, "
                f"{state.failed} failed, {state.duplicates} duplicates, {state.skipped} skipped"
            ),
            processedCount=state.decoded,
            totalCount=self.estimate.total(),
        )

    async def start(self, state: RunState, message: str = "starting") -> bool:
        self._last_write = self.clock()
        self.writes += 1
        return await self.store.mark_running(self.job_id, self.snapshot(state, message))

    async def milestone(self, state: RunState, message: Optional[str] = None) -> None:
        await self._write(state, message)

    async def tick(self, state: RunState) -> None:
        if self._last_write is None or self.clock() - self._last_write >= self.interval_seconds:
            await self._write(state, None)

    async def _write(self, state: RunState, message: Optional[str]) -> None:
        self._last_write = self.clock()
        self.writes += 1
        await self.store.update_progress(self.job_id, self.snapshot(state, message))

    async def complete(self, state: RunState) -> bool:
        self.percent = 100
        self.writes += 1
        progress = JobProgress(
            percent=100,
            message="done",
            processedCount=state.decoded,
            totalCount=self.estimate.total() if self.estimate.total() is not None else state.decoded,
        )
        return await self.store.complete(self.job_id, progress, state.result())
