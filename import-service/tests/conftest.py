import os
import sys
from typing import Dict, Iterable, List, Optional, Sequence

import pytest

# ---- Make import-service/src importable ----
THIS_DIR = os.path.dirname(__file__)
SRC_DIR = os.path.abspath(os.path.join(THIS_DIR, '..', 'src'))
REFERENCE_DIR = os.path.abspath(os.path.join(THIS_DIR, '..', 'reference'))
assert os.path.isdir(SRC_DIR), f"src/ not found at {SRC_DIR}"
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)
# --------------------------------------------

from fastapi.testclient import TestClient

from errors import BatchInsertError, SourceUnavailable, TransientFetchError
from job_store import InMemoryJobStore
from loader import BatchSink
from main import create_app
from notify import Notifier
from orchestrator import JobOrchestrator
from reference_data import load_reference_data
from settings import Settings
from sources import ObjectStore


def fast_settings(**overrides) -> Settings:
    base = dict(
        job_store="memory",
        batch_pause_seconds=0.0,
        long_pause_seconds=0.0,
        progress_interval_seconds=0.0,
        fetch_backoff_seconds=0.0,
    )
    base.update(overrides)
    return Settings(**base)


def csv_bytes(header: Sequence[str], rows: Iterable[Sequence[str]]) -> bytes:
    def cell(v: str) -> str:
        return f'"{v}"' if "," in v else v
    lines = [",".join(header)] + [",".join(cell(v) for v in row) for row in rows]
    return ("\n".join(lines) + "\n").encode("utf-8")


REGISTRY_HEADER = [
    "NPI",
    "Entity Type Code",
    "Provider Organization Name (Legal Business Name)",
    "Provider Last Name (Legal Name)",
    "Provider First Name",
    "Provider Credential Text",
    "Provider Business Mailing Address City Name",
    "Provider Business Mailing Address State Name",
    "Provider Business Mailing Address Postal Code",
    "Provider Business Practice Location Address City Name",
    "Provider Business Practice Location Address State Name",
    "Provider Business Practice Location Address Postal Code",
    "Provider Enumeration Date",
    "Healthcare Provider Taxonomy Code_1",
    "Healthcare Provider Taxonomy Code_2",
]


def registry_row(npi, taxonomy, first="Jane", last="Doe", org="", entity="1",
                 city="Austin", state="TX", zip_code="787011234", taxonomy2=""):
    return [npi, entity, org, last, first, "PT", "", "", "", city, state, zip_code,
            "05/23/2007", taxonomy, taxonomy2]


class RecordingSink(BatchSink):
    def __init__(self, fail_on_calls: Iterable[int] = ()):
        self.fail_on_calls = set(fail_on_calls)
        self.calls = 0
        self.batches: List[list] = []

    async def write_batch(self, collection, entities):
        self.calls += 1
        if self.calls in self.fail_on_calls:
            raise BatchInsertError(collection.value, len(entities), RuntimeError("duplicate key value"))
        self.batches.append(list(entities))

    @property
    def rows(self) -> list:
        return [e for batch in self.batches for e in batch]


class MemoryObjectStore(ObjectStore):
    def __init__(self, objects: Optional[Dict[str, bytes]] = None, transient_failures: int = 0):
        self.objects = dict(objects or {})
        self.transient_failures = transient_failures
        self.attempts = 0

    async def fetch(self, key):
        self.attempts += 1
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientFetchError("503 from object storage")
        if key not in self.objects:
            raise SourceUnavailable(f"object not found: {key}")
        return self.objects[key]


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    async def notify(self, address, job_id, result_summary):
        self.calls.append((address, job_id, result_summary))
        if self.fail:
            raise RuntimeError("mail relay down")


class RecordingStore(InMemoryJobStore):
    """Keeps every percent that was written, in order."""

    def __init__(self):
        super().__init__()
        self.percents: List[int] = []

    async def mark_running(self, job_id, progress):
        ok = await super().mark_running(job_id, progress)
        self.percents.append(self._jobs[job_id].progress.percent)
        return ok

    async def update_progress(self, job_id, progress):
        ok = await super().update_progress(job_id, progress)
        self.percents.append(self._jobs[job_id].progress.percent)
        return ok

    async def complete(self, job_id, progress, result):
        ok = await super().complete(job_id, progress, result)
        self.percents.append(self._jobs[job_id].progress.percent)
        return ok


@pytest.fixture(scope="session")
def reference():
    return load_reference_data(REFERENCE_DIR)


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def object_store():
    return MemoryObjectStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(store, sink, reference, object_store, notifier):
    return JobOrchestrator(store, sink, reference, fast_settings(), object_store=object_store, notifier=notifier)


@pytest.fixture
def client(orchestrator):
    with TestClient(create_app(orchestrator)) as c:
        yield c
