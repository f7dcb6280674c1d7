# import-service/tests/test_progress.py
import asyncio

from job_store import InMemoryJobStore
from models import ImportJob, JobKind, Status, TargetCollection
from progress import ByteEstimate, ProgressReporter, RowEstimate
from run_state import RunState


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class FakeSource:
    estimated_total_bytes = 1000
    bytes_received = 0


def _job():
    return ImportJob(id="job-1", kind=JobKind.generic_upload, sourceRef="x.csv",
                     targetCollection=TargetCollection.schools)


def test_ticks_are_throttled():
    async def run():
        store = InMemoryJobStore()
        await store.create(_job())
        clock = FakeClock()
        state = RunState(job_id="job-1")
        reporter = ProgressReporter(store, "job-1", RowEstimate(lambda: 100), interval_seconds=3.0, clock=clock)
        assert await reporter.start(state)
        for i in range(10):
            state.decoded += 1
            clock.now += 0.5
            await reporter.tick(state)
        return reporter, await store.get("job-1")

    reporter, job = asyncio.run(run())
    # start at t=0, one tick at t=3.0; t=5.0 is still inside the interval
    assert reporter.writes == 2
    assert job.status == Status.running
    assert job.progress.processedCount == 6
    assert job.progress.totalCount == 100


def test_percent_capped_below_100_until_complete():
    async def run():
        store = InMemoryJobStore()
        await store.create(_job())
        source = FakeSource()
        state = RunState(job_id="job-1")
        reporter = ProgressReporter(store, "job-1", ByteEstimate(source), interval_seconds=0)
        await reporter.start(state)
        source.bytes_received = 5000  # estimate was low
        await reporter.milestone(state)
        during = (await store.get("job-1")).progress.percent
        await reporter.complete(state)
        return during, await store.get("job-1")

    during, job = asyncio.run(run())
    assert during == 99
    assert job.status == Status.completed
    assert job.progress.percent == 100
    assert job.progress.message == "done"
    assert job.result.totalRows == 0


def test_percent_never_decreases():
    async def run():
        store = InMemoryJobStore()
        await store.create(_job())
        total = {"rows": 10}
        state = RunState(job_id="job-1")
        reporter = ProgressReporter(store, "job-1", RowEstimate(lambda: total["rows"]), interval_seconds=0)
        await reporter.start(state)
        state.decoded = 5
        await reporter.milestone(state)
        total["rows"] = 100  # a revised estimate would move the bar back
        state.decoded = 6
        await reporter.milestone(state)
        return await store.get("job-1")

    job = asyncio.run(run())
    assert job.progress.percent == 50
    assert job.progress.processedCount == 6


def test_start_refused_when_not_pending():
    async def run():
        store = InMemoryJobStore()
        await store.create(_job())
        await store.fail("job-1", "stopped")
        reporter = ProgressReporter(store, "job-1", RowEstimate(lambda: None))
        return await reporter.start(RunState(job_id="job-1"))

    assert asyncio.run(run()) is False
