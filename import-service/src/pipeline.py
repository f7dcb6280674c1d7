# import-service/src/pipeline.py
from contextlib import aclosing
from typing import AsyncIterator

from dedup import Deduplicator
from loader import BatchWriter
from models import ImportJob, RawRecord
from progress import ProgressReporter
from reference_data import ReferenceData
from run_state import RunState
from transform import Rejected, Skipped, transform


async def run_import(
    job: ImportJob,
    state: RunState,
    records: AsyncIterator[RawRecord],
    reference: ReferenceData,
    writer: BatchWriter,
    dedup: Deduplicator,
    reporter: ProgressReporter,
) -> RunState:
    """Drive decode -> transform -> dedup -> batch for one job, in order."""
    async with aclosing(records):
        async for record in records:
            state.decoded += 1
            outcome = transform(record, job.kind, job.targetCollection, reference)
            if isinstance(outcome, Skipped):
                state.skipped += 1
            elif isinstance(outcome, Rejected):
                state.failed += 1
                state.record_errors(outcome.errors)
            elif dedup.admit(outcome.entity):
                await writer.add(outcome.entity, record.row_number, state)
            else:
                state.duplicates += 1
            await reporter.tick(state)

    await writer.flush(state)
    return state
