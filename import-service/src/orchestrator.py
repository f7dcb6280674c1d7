# import-service/src/orchestrator.py
import asyncio
import traceback
from typing import Dict, Optional
from uuid import uuid4

import httpx

from decoder import count_data_rows, decode_records
from dedup import Deduplicator
from errors import InvalidSubmission
from job_store import JobStore
from loader import BatchSink, BatchWriter
from log import get_logger
from models import ImportJob, JobKind, TargetCollection
from notify import LogNotifier, Notifier
from pipeline import run_import
from progress import ByteEstimate, ProgressReporter, RowEstimate
from reference_data import ReferenceData
from run_state import RunState
from settings import Settings
from sources import LocalObjectStore, ObjectStore, RemoteStreamSource, StoredObjectSource
from transform import header_rule_for
from workbook import WorkbookRecords, is_workbook

logger = get_logger(__name__)

INTERRUPTED_DETAIL = "interrupted: the service restarted before this run finished; resubmit the job"


class JobOrchestrator:
    """Accepts submissions and owns the detached run of each job."""

    def __init__(
        self,
        store: JobStore,
        sink: BatchSink,
        reference: ReferenceData,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        object_store: Optional[ObjectStore] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.store = store
        self.sink = sink
        self.reference = reference
        self.settings = settings
        self.http_client = http_client
        self.object_store = object_store or LocalObjectStore(settings.data_dir)
        self.notifier = notifier or LogNotifier()
        self._submit_lock = asyncio.Lock()
        self._tasks: Dict[str, asyncio.Task] = {}

    # ---- submission ----

    def _resolve(self, kind: JobKind, source_ref: Optional[str], target: Optional[TargetCollection]):
        if kind == JobKind.registry_import:
            if target not in (None, TargetCollection.providers):
                raise InvalidSubmission("registry imports only load providers")
            url = source_ref or self.settings.registry_url
            if not url.startswith(("http://", "https://")):
                raise InvalidSubmission(f"registry source must be an http(s) URL: {url}")
            return url, TargetCollection.providers
        if target is None:
            raise InvalidSubmission("targetCollection is required for uploads")
        if not source_ref:
            raise InvalidSubmission("sourceReference is required for uploads")
        return source_ref, target

    async def submit(
        self,
        kind: JobKind,
        source_ref: Optional[str] = None,
        target_collection: Optional[TargetCollection] = None,
        notify_address: Optional[str] = None,
    ) -> str:
        source_ref, target = self._resolve(kind, source_ref, target_collection)
        job = ImportJob(
            id=str(uuid4()),
            kind=kind,
            sourceRef=source_ref,
            targetCollection=target,
            notifyAddress=notify_address,
        )
        async with self._submit_lock:
            await self.store.create(job, exclusive=kind.value in self.settings.exclusive_kinds)

        task = asyncio.create_task(self._supervise(job), name=f"import-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))
        logger.info("submitted job_id=%s kind=%s source=%s target=%s", job.id, kind.value, source_ref, target.value)
        return job.id

    async def status(self, job_id: str) -> ImportJob:
        return await self.store.get(job_id)

    async def wait(self, job_id: str) -> ImportJob:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return await self.store.get(job_id)

    async def recover_interrupted(self) -> int:
        changed = await self.store.fail_interrupted(INTERRUPTED_DETAIL)
        if changed:
            logger.warning("marked %d interrupted job(s) failed", changed)
        return changed

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ---- background run ----

    async def _supervise(self, job: ImportJob) -> None:
        state = RunState(job_id=job.id, max_errors=self.settings.max_recorded_errors)
        try:
            await self._run(job, state)
        except asyncio.CancelledError:
            await self._fail(job, state, "cancelled: the service shut down during the run")
            raise
        except Exception as e:
            logger.exception("failed job_id=%s: %s", job.id, e)
            await self._fail(job, state, f"{type(e).__name__}: {e}\n{traceback.format_exc()}")
        await self._notify(job)

    async def _fail(self, job: ImportJob, state: RunState, detail: str) -> None:
        try:
            await self.store.fail(job.id, detail, state.result() if state.decoded else None)
        except Exception:
            logger.exception("could not record failure job_id=%s", job.id)

    async def _run(self, job: ImportJob, state: RunState) -> None:
        s = self.settings
        if job.kind == JobKind.registry_import:
            if self.http_client is None:
                raise RuntimeError("registry imports need an HTTP client")
            source = RemoteStreamSource(job.sourceRef, self.http_client, s.registry_estimated_bytes)
            estimate = ByteEstimate(source)
            batch_size = s.stream_batch_size
        else:
            source = StoredObjectSource(self.object_store, job.sourceRef, s.fetch_retries, s.fetch_backoff_seconds)
            estimate = RowEstimate(lambda: source.total_rows)
            batch_size = s.object_batch_size

        reporter = ProgressReporter(self.store, job.id, estimate, s.progress_interval_seconds)
        if not await reporter.start(state):
            logger.warning("job_id=%s was no longer pending; run skipped", job.id)
            return
        logger.info("start job_id=%s kind=%s source=%s", job.id, job.kind.value, job.sourceRef)

        rule = header_rule_for(job.kind, job.targetCollection)
        if isinstance(source, StoredObjectSource):
            payload = await source.fetch()
            if is_workbook(job.sourceRef):
                workbook = await asyncio.to_thread(WorkbookRecords, payload, rule)
                source.total_rows = workbook.total_rows
                records = workbook.records()
            else:
                source.total_rows = count_data_rows(payload.decode("utf-8-sig", errors="replace"))
                records = decode_records(source.text_chunks(), rule, s.max_line_chars)
            await reporter.milestone(state, f"fetched {source.bytes_received} bytes, ~{source.total_rows} rows")
        else:
            records = decode_records(source.text_chunks(), rule, s.max_line_chars)

        writer = BatchWriter(
            self.sink,
            job.targetCollection,
            batch_size,
            pause_seconds=s.batch_pause_seconds,
            long_pause_seconds=s.long_pause_seconds,
            long_pause_every=s.long_pause_every_rows,
            on_flush=reporter.milestone,
        )
        await run_import(job, state, records, self.reference, writer, Deduplicator(), reporter)
        await reporter.complete(state)
        logger.info(
            "done job_id=%s decoded=%d successful=%d failed=%d duplicates=%d skipped=%d errors_dropped=%d",
            job.id, state.decoded, state.successful, state.failed, state.duplicates, state.skipped,
            state.errors_dropped,
        )

    async def _notify(self, job: ImportJob) -> None:
        if not job.notifyAddress:
            return
        try:
            final = await self.store.get(job.id)
            detail = final.errorDetail.splitlines()[0] if final.errorDetail else None
            summary = {"status": final.status.value, "errorDetail": detail}
            if final.result is not None:
                summary.update(final.result.model_dump(exclude={"errors"}))
            await self.notifier.notify(job.notifyAddress, job.id, summary)
        except Exception:
            logger.exception("notification failed job_id=%s address=%s", job.id, job.notifyAddress)
