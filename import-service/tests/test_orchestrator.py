# import-service/tests/test_orchestrator.py
import asyncio

import httpx
import pytest

from errors import Conflict
from models import ImportJob, JobKind, Status, TargetCollection
from orchestrator import INTERRUPTED_DETAIL, JobOrchestrator

from conftest import (
    REGISTRY_HEADER,
    MemoryObjectStore,
    RecordingNotifier,
    RecordingSink,
    csv_bytes,
    fast_settings,
    registry_row,
)
from test_workbook import xlsx_bytes

REGISTRY_URL = "https://registry.example/npidata.csv"

PROVIDER_HEADER = ["first_name", "last_name", "email", "city", "state"]


def _provider_rows(count, nameless=()):
    rows = []
    for i in range(count):
        first, last = ("", "") if i in nameless else (f"First{i}", f"Last{i}")
        rows.append([first, last, f"p{i}@example.com", "Austin", "TX"])
    return rows


def _registry_client(body=b"", gate=None):
    async def handler(request):
        if gate is not None:
            await gate.wait()
        return httpx.Response(200, content=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def _until_running(store, job_id):
    for _ in range(200):
        if (await store.get(job_id)).status == Status.running:
            return
        await asyncio.sleep(0.005)
    raise AssertionError("job never started")


def test_upload_with_rejected_rows(orchestrator, object_store, sink):
    object_store.objects["providers.csv"] = csv_bytes(PROVIDER_HEADER, _provider_rows(10, nameless={2, 6}))

    async def run():
        job_id = await orchestrator.submit(JobKind.generic_upload, "providers.csv", TargetCollection.providers)
        return await orchestrator.wait(job_id)

    job = asyncio.run(run())
    assert job.status == Status.completed
    assert job.completedAt is not None
    r = job.result
    assert (r.totalRows, r.successfulRows, r.failedRows, r.duplicateRows) == (10, 8, 2, 0)
    # header is row 1, so data index 2 is row 4
    assert [e.rowNumber for e in r.errors] == [4, 8]
    assert all(e.field == "name" for e in r.errors)
    assert len(sink.rows) == 8
    assert job.progress.percent == 100
    assert job.progress.processedCount == 10


def test_exclusive_kind_conflicts_while_running(store, sink, reference):
    body = csv_bytes(REGISTRY_HEADER, [registry_row("1234567890", "225100000X")])

    async def run():
        gate = asyncio.Event()
        client = _registry_client(body, gate)
        orch = JobOrchestrator(store, sink, reference, fast_settings(registry_url=REGISTRY_URL), http_client=client)
        first = await orch.submit(JobKind.registry_import)
        await _until_running(store, first)
        with pytest.raises(Conflict):
            await orch.submit(JobKind.registry_import)
        jobs_after_conflict = len(store)
        gate.set()
        job = await orch.wait(first)
        await client.aclose()
        return jobs_after_conflict, job

    jobs_after_conflict, job = asyncio.run(run())
    assert jobs_after_conflict == 1
    assert job.status == Status.completed
    assert job.result.successfulRows == 1


def test_failing_batch_does_not_fail_the_job(store, reference):
    sink = RecordingSink(fail_on_calls={2})
    objects = MemoryObjectStore({"big.csv": csv_bytes(PROVIDER_HEADER, _provider_rows(2000))})
    orch = JobOrchestrator(store, sink, reference, fast_settings(object_batch_size=500), object_store=objects)

    async def run():
        job_id = await orch.submit(JobKind.generic_upload, "big.csv", TargetCollection.providers)
        return await orch.wait(job_id)

    job = asyncio.run(run())
    assert job.status == Status.completed
    assert job.result.totalRows == 2000
    assert job.result.successfulRows == 1500
    assert job.result.failedRows == 500
    (err,) = job.result.errors
    assert err.field == "database"
    assert err.rowNumber == 502
    assert store.percents == sorted(store.percents)


def test_skipped_registry_rows_still_count_as_processed(store, sink, reference):
    body = csv_bytes(REGISTRY_HEADER, [
        registry_row("1000000001", "207Q00000X"),
        registry_row("1000000002", "225100000X"),
        registry_row("1000000003", "363L00000X"),
        registry_row("1000000002", "225100000X"),
    ])

    async def run():
        client = _registry_client(body)
        orch = JobOrchestrator(store, sink, reference, fast_settings(), http_client=client)
        job_id = await orch.submit(JobKind.registry_import, REGISTRY_URL)
        job = await orch.wait(job_id)
        await client.aclose()
        return job

    job = asyncio.run(run())
    assert job.status == Status.completed
    assert job.targetCollection == TargetCollection.providers
    r = job.result
    assert (r.totalRows, r.successfulRows, r.skippedRows, r.duplicateRows, r.failedRows) == (4, 1, 2, 1, 0)
    assert job.progress.processedCount == 4
    assert [p.npi for p in sink.rows] == ["1000000002"]


def test_registry_source_error_fails_job(store, sink, reference):
    async def run():
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
        orch = JobOrchestrator(store, sink, reference, fast_settings(), http_client=client)
        job_id = await orch.submit(JobKind.registry_import, REGISTRY_URL)
        job = await orch.wait(job_id)
        await client.aclose()
        return job

    job = asyncio.run(run())
    assert job.status == Status.failed
    assert job.errorDetail.startswith("SourceUnavailable: GET https://registry.example/npidata.csv returned 404")
    assert job.completedAt is not None


def test_bad_header_fails_job(orchestrator, object_store):
    object_store.objects["schools.csv"] = csv_bytes(["title", "zip"], [["x", "1"]])

    async def run():
        job_id = await orchestrator.submit(JobKind.generic_upload, "schools.csv", TargetCollection.schools)
        return await orchestrator.wait(job_id)

    job = asyncio.run(run())
    assert job.status == Status.failed
    assert job.errorDetail.startswith("ParseFatal")


def test_unexpected_error_is_recorded(store, reference, object_store):
    class BrokenSink(RecordingSink):
        async def write_batch(self, collection, entities):
            raise RuntimeError("sink exploded")

    object_store.objects["schools.csv"] = csv_bytes(["name", "city", "state"], [["Summit", "Denver", "CO"]])
    orch = JobOrchestrator(store, BrokenSink(), reference, fast_settings(), object_store=object_store)

    async def run():
        job_id = await orch.submit(JobKind.generic_upload, "schools.csv", TargetCollection.schools)
        return await orch.wait(job_id)

    job = asyncio.run(run())
    assert job.status == Status.failed
    assert "RuntimeError: sink exploded" in job.errorDetail
    # counters gathered before the failure are kept
    assert job.result.totalRows == 1


def test_transient_fetch_is_retried(store, sink, reference):
    objects = MemoryObjectStore(
        {"schools.csv": csv_bytes(["name", "city", "state"], [["Summit", "Denver", "CO"]])},
        transient_failures=2,
    )
    orch = JobOrchestrator(store, sink, reference, fast_settings(), object_store=objects)

    async def run():
        job_id = await orch.submit(JobKind.generic_upload, "schools.csv", TargetCollection.schools)
        return await orch.wait(job_id)

    job = asyncio.run(run())
    assert job.status == Status.completed
    assert objects.attempts == 3


def test_shutdown_fails_running_job(store, sink, reference):
    async def run():
        gate = asyncio.Event()
        client = _registry_client(b"", gate)
        orch = JobOrchestrator(store, sink, reference, fast_settings(), http_client=client)
        job_id = await orch.submit(JobKind.registry_import, REGISTRY_URL)
        await _until_running(store, job_id)
        await orch.shutdown()
        await client.aclose()
        return await store.get(job_id)

    job = asyncio.run(run())
    assert job.status == Status.failed
    assert job.errorDetail.startswith("cancelled")


def test_recover_interrupted(store, orchestrator):
    async def run():
        for job_id in ("a", "b"):
            await store.create(ImportJob(id=job_id, kind=JobKind.generic_upload, sourceRef="x.csv",
                                         targetCollection=TargetCollection.schools))
        await store.mark_running("b", (await store.get("b")).progress)
        changed = await orchestrator.recover_interrupted()
        return changed, await store.get("a"), await store.get("b")

    changed, a, b = asyncio.run(run())
    assert changed == 2
    assert a.status == b.status == Status.failed
    assert a.errorDetail == INTERRUPTED_DETAIL


def test_notification_sent_after_terminal_state(orchestrator, object_store, notifier):
    object_store.objects["schools.csv"] = csv_bytes(["name", "city", "state"], [["Summit", "Denver", "CO"]])

    async def run():
        job_id = await orchestrator.submit(JobKind.generic_upload, "schools.csv", TargetCollection.schools,
                                           notify_address="ops@example.com")
        return await orchestrator.wait(job_id)

    job = asyncio.run(run())
    ((address, job_id, summary),) = notifier.calls
    assert address == "ops@example.com"
    assert job_id == job.id
    assert summary["status"] == "completed"
    assert summary["successfulRows"] == 1
    assert "errors" not in summary


def test_notification_failure_keeps_outcome(store, sink, reference, object_store):
    object_store.objects["schools.csv"] = csv_bytes(["name", "city", "state"], [["Summit", "Denver", "CO"]])
    notifier = RecordingNotifier(fail=True)
    orch = JobOrchestrator(store, sink, reference, fast_settings(), object_store=object_store, notifier=notifier)

    async def run():
        job_id = await orch.submit(JobKind.generic_upload, "schools.csv", TargetCollection.schools,
                                   notify_address="ops@example.com")
        return await orch.wait(job_id)

    job = asyncio.run(run())
    assert len(notifier.calls) == 1
    assert job.status == Status.completed


def test_workbook_upload(orchestrator, object_store, sink):
    object_store.objects["companies.xlsx"] = xlsx_bytes([
        ["name", "company_type", "city", "state"],
        ["Acme Clinic", "Clinic", "Austin", "TX"],
        ["Northside Rehab", None, "Austin", "TX"],
        ["ACME CLINIC", "Clinic", "austin", "tx"],
        ["Blue Sky Partners", None, "Reno", "NV"],
    ])

    async def run():
        job_id = await orchestrator.submit(JobKind.generic_upload, "companies.xlsx", TargetCollection.companies)
        return await orchestrator.wait(job_id)

    job = asyncio.run(run())
    assert job.status == Status.completed
    r = job.result
    assert (r.totalRows, r.successfulRows, r.failedRows, r.duplicateRows) == (4, 2, 1, 1)
    assert r.errors[0].rowNumber == 5
    assert [c.company_type for c in sink.rows] == ["Clinic", "Rehabilitation Center"]


def test_non_exclusive_uploads_run_side_by_side(orchestrator, object_store):
    object_store.objects["schools.csv"] = csv_bytes(["name", "city", "state"], [["Summit", "Denver", "CO"]])

    async def run():
        ids = [
            await orchestrator.submit(JobKind.generic_upload, "schools.csv", TargetCollection.schools)
            for _ in range(3)
        ]
        return [await orchestrator.wait(i) for i in ids]

    jobs = asyncio.run(run())
    assert len({j.id for j in jobs}) == 3
    assert all(j.status == Status.completed for j in jobs)
