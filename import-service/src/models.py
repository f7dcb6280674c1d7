# import-service/src/models.py
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobKind(str, Enum):
    registry_import = "registry_import"
    generic_upload = "generic_upload"


class Status(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Status.completed, Status.failed)


# Allowed forward edges; nothing leaves a terminal state.
TRANSITIONS = {
    Status.pending: {Status.running, Status.failed},
    Status.running: {Status.completed, Status.failed},
    Status.completed: set(),
    Status.failed: set(),
}


class TargetCollection(str, Enum):
    providers = "providers"
    companies = "companies"
    schools = "schools"
    job_listings = "job_listings"


class ValidationError(BaseModel):
    """One row-level problem. Recorded once, never edited."""

    model_config = ConfigDict(frozen=True)

    rowNumber: int
    field: str
    rawValue: Optional[str] = None
    message: str


class JobProgress(BaseModel):
    percent: int = Field(default=0, ge=0, le=100)
    message: str = ""
    processedCount: int = 0
    totalCount: Optional[int] = None


class JobResult(BaseModel):
    totalRows: int = 0
    successfulRows: int = 0
    failedRows: int = 0
    duplicateRows: int = 0
    skippedRows: int = 0
    errors: List[ValidationError] = Field(default_factory=list)


class ImportJob(BaseModel):
    id: str
    kind: JobKind
    status: Status = Status.pending
    sourceRef: str
    targetCollection: TargetCollection
    notifyAddress: Optional[str] = None
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)
    completedAt: Optional[datetime] = None
    progress: JobProgress = Field(default_factory=JobProgress)
    result: Optional[JobResult] = None
    errorDetail: Optional[str] = None


# ---- API payloads ----

class SubmitRequest(BaseModel):
    jobKind: JobKind
    sourceReference: Optional[str] = None
    targetCollection: Optional[TargetCollection] = None
    notifyAddress: Optional[str] = None

    @field_validator("sourceReference", "notifyAddress")
    @classmethod
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = v.strip()
        return v or None


class SubmitResponse(BaseModel):
    jobId: str
    status: Status
    message: str


class JobStatusResponse(BaseModel):
    jobId: str
    status: Status
    progress: int = 0
    message: Optional[str] = None


# ---- pipeline records ----

@dataclass(frozen=True)
class RawRecord:
    """One decoded row; ``row_number`` counts the header as row 1."""

    row_number: int
    values: Dict[str, str]
    # normalized header name -> original names; built once per source
    columns: Optional[Dict[str, Tuple[str, ...]]] = None


class _Entity(BaseModel):
    collection: ClassVar[TargetCollection]

    def identity(self) -> Tuple[Optional[str], ...]:
        raise NotImplementedError


class ProviderRecord(_Entity):
    collection: ClassVar[TargetCollection] = TargetCollection.providers

    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    current_employer: Optional[str] = None
    current_job_title: Optional[str] = None
    bio: Optional[str] = None
    additional_info: Optional[str] = None
    source: Optional[str] = None
    linkedin_url: Optional[str] = None
    specializations: List[str] = Field(default_factory=list)
    license_number: Optional[str] = None
    license_state: Optional[str] = None
    npi: Optional[str] = None

    def identity(self):
        if self.npi:
            return ("npi", self.npi)
        return ("name", self.name, self.city, self.state, self.zip_code)


class CompanyRecord(_Entity):
    collection: ClassVar[TargetCollection] = TargetCollection.companies

    name: str
    company_type: str
    description: Optional[str] = None
    website: Optional[str] = None
    founded_year: Optional[int] = None
    employee_count: Optional[int] = None
    services: List[str] = Field(default_factory=list)
    company_locations: List[str] = Field(default_factory=list)
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None

    def identity(self):
        return (self.name, self.city, self.state)


class SchoolRecord(_Entity):
    collection: ClassVar[TargetCollection] = TargetCollection.schools

    name: str
    city: str
    state: str
    description: Optional[str] = None
    accreditation: Optional[str] = None
    tuition_per_year: Optional[float] = None
    program_length_months: Optional[int] = None
    faculty_count: Optional[int] = None
    average_class_size: Optional[int] = None
    programs_offered: List[str] = Field(default_factory=list)
    specializations: List[str] = Field(default_factory=list)

    def identity(self):
        return (self.name, self.city, self.state)


class JobListingRecord(_Entity):
    collection: ClassVar[TargetCollection] = TargetCollection.job_listings

    title: str
    city: str
    state: str
    description: Optional[str] = None
    requirements: Optional[str] = None
    employment_type: Optional[str] = None
    experience_level: Optional[str] = None
    salary_min: Optional[int] = None
    salary_max: Optional[int] = None
    is_remote: Optional[bool] = None
    company_id: Optional[str] = None

    def identity(self):
        return (self.title, self.company_id, self.city, self.state)


TargetEntity = Union[ProviderRecord, CompanyRecord, SchoolRecord, JobListingRecord]
