# import-service/src/run_state.py
from dataclasses import dataclass, field
from typing import Iterable, List

from models import JobResult, ValidationError


@dataclass
class RunState:
    """Counters for a single import run.

    Created by the orchestrator and passed to every stage. ``decoded``
    counts every row the decoder produced, skipped rows included.
    """

    job_id: str
    max_errors: int = 100
    decoded: int = 0
    successful: int = 0
    failed: int = 0
    duplicates: int = 0
    skipped: int = 0
    batches_written: int = 0
    batches_failed: int = 0
    errors: List[ValidationError] = field(default_factory=list)
    errors_dropped: int = 0

    def record_errors(self, errors: Iterable[ValidationError]) -> None:
        for err in errors:
            if len(self.errors) < self.max_errors:
                self.errors.append(err)
            else:
                self.errors_dropped += 1

    def result(self) -> JobResult:
        return JobResult(
            totalRows=self.decoded,
            successfulRows=self.successful,
            failedRows=self.failed,
            duplicateRows=self.duplicates,
            skippedRows=self.skipped,
            errors=list(self.errors),
        )
