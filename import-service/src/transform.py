# import-service/src/transform.py
"""Row classification: RawRecord -> Accepted | Skipped | Rejected.

Everything here is pure; reference data is passed in.
"""
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Tuple, Union

from decoder import HeaderRule, index_header, normalize_header
from models import (
    CompanyRecord,
    JobKind,
    JobListingRecord,
    ProviderRecord,
    RawRecord,
    SchoolRecord,
    TargetCollection,
    TargetEntity,
    ValidationError,
)
from reference_data import ReferenceData

ZIP_MAX_LEN = 10
# postgres integer columns
INT_MIN, INT_MAX = -2 ** 31, 2 ** 31 - 1
REGISTRY_SOURCE = "NPI Registry"
TAXONOMY_COLUMNS = tuple(f"healthcare_provider_taxonomy_code_{i}" for i in range(1, 16))

# column names asked for by the transformer are a small fixed set
_normalized = lru_cache(maxsize=1024)(normalize_header)

TRUE_WORDS = {"y", "yes", "true", "1"}
FALSE_WORDS = {"n", "no", "false", "0"}

# "569 West 4th Street, Benson, AZ 85602, USA"
STATE_ZIP_RE = re.compile(r"^([A-Za-z]{2})\s*(\d{5}(?:-\d{4})?)?$")
COUNTRY_SUFFIX_RE = re.compile(r",?\s*USA$", re.IGNORECASE)


@dataclass(frozen=True)
class Accepted:
    entity: TargetEntity


@dataclass(frozen=True)
class Skipped:
    reason: str


@dataclass(frozen=True)
class Rejected:
    errors: Tuple[ValidationError, ...]


Outcome = Union[Accepted, Skipped, Rejected]


# ---- header rules ----

REGISTRY_HEADER_RULE = HeaderRule(required=(
    ("NPI",),
    ("Entity Type Code",),
    ("Healthcare Provider Taxonomy Code_1",),
))

UPLOAD_HEADER_RULES: Dict[TargetCollection, HeaderRule] = {
    TargetCollection.providers: HeaderRule(required=(("first_name", "last_name"),)),
    TargetCollection.companies: HeaderRule(required=(("name", "company", "company_name"),)),
    TargetCollection.schools: HeaderRule(required=(("name",), ("city",), ("state",))),
    TargetCollection.job_listings: HeaderRule(required=(("title",), ("city",), ("state",))),
}


def header_rule_for(kind: JobKind, target: TargetCollection) -> HeaderRule:
    if kind == JobKind.registry_import:
        return REGISTRY_HEADER_RULE
    return UPLOAD_HEADER_RULES[target]


# ---- normalization helpers ----

class _Row:
    """Case/spacing-insensitive view over a RawRecord.

    Lookups go through the header index the decoder built once per source,
    so a row costs nothing until a column is asked for.
    """

    def __init__(self, record: RawRecord):
        self.number = record.row_number
        self._values = record.values
        self._columns = record.columns if record.columns is not None else index_header(list(record.values))

    def get(self, *names: str) -> Optional[str]:
        for name in names:
            for column in self._columns.get(_normalized(name), ()):
                value = (self._values.get(column) or "").strip()
                if value:
                    return value
        return None


def truncate_zip(value: Optional[str]) -> Optional[str]:
    return value[:ZIP_MAX_LEN] if value else None


def display_name(first: Optional[str], last: Optional[str]) -> Optional[str]:
    return " ".join(p for p in (first, last) if p) or None


def split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def parse_full_address(full: Optional[str]) -> Dict[str, Optional[str]]:
    if not full:
        return {}
    cleaned = COUNTRY_SUFFIX_RE.sub("", full).strip()
    parts = [p.strip() for p in cleaned.split(",")]
    if len(parts) < 3:
        return {"address": cleaned}
    parsed: Dict[str, Optional[str]] = {
        "address": ", ".join(parts[:-2]),
        "city": parts[-2],
    }
    m = STATE_ZIP_RE.match(parts[-1])
    if m:
        parsed["state"] = m.group(1).upper()
        parsed["zip_code"] = m.group(2)
    return parsed


class _Checker:
    """Collects ValidationErrors for one row."""

    def __init__(self, row: _Row):
        self.row = row
        self.errors: List[ValidationError] = []

    def error(self, field: str, raw: Optional[str], message: str) -> None:
        self.errors.append(ValidationError(rowNumber=self.row.number, field=field, rawValue=raw, message=message))

    def required(self, field: str, *names: str, message: Optional[str] = None) -> Optional[str]:
        value = self.row.get(*(names or (field,)))
        if not value:
            self.error(field, value, message or f"{field.replace('_', ' ').capitalize()} is required")
        return value

    def integer(self, field: str, *names: str) -> Optional[int]:
        raw = self.row.get(*(names or (field,)))
        if raw is None:
            return None
        try:
            number = float(raw.replace(",", ""))
        except ValueError:
            self.error(field, raw, f"{field} must be a whole number")
            return None
        if not number.is_integer():
            self.error(field, raw, f"{field} must be a whole number")
            return None
        if not INT_MIN <= number <= INT_MAX:
            self.error(field, raw, f"{field} is out of range")
            return None
        return int(number)

    def decimal(self, field: str, *names: str) -> Optional[float]:
        raw = self.row.get(*(names or (field,)))
        if raw is None:
            return None
        try:
            return float(raw.replace(",", "").lstrip("$"))
        except ValueError:
            self.error(field, raw, f"{field} must be a number")
            return None

    def boolean(self, field: str, *names: str) -> Optional[bool]:
        raw = self.row.get(*(names or (field,)))
        if raw is None:
            return None
        word = raw.lower()
        if word in TRUE_WORDS:
            return True
        if word in FALSE_WORDS:
            return False
        self.error(field, raw, f"{field} must be yes/no")
        return None

    def outcome(self, build: Callable[[], TargetEntity]) -> Outcome:
        if self.errors:
            return Rejected(tuple(self.errors))
        return Accepted(build())


# ---- classification-filtered mode ----

def transform_registry(record: RawRecord, ref: ReferenceData) -> Outcome:
    row = _Row(record)
    codes = [c for c in (row.get(col) for col in TAXONOMY_COLUMNS) if c]
    allowed = [c for c in codes if c in ref.allowed_codes]
    if not allowed:
        return Skipped("no allow-listed taxonomy code")

    is_individual = row.get("Entity Type Code") == "1"
    org_name = row.get("Provider Organization Name (Legal Business Name)")
    if is_individual:
        first = row.get("Provider First Name")
        last = row.get("Provider Last Name (Legal Name)")
        name = display_name(first, last)
        employer = None
    else:
        first = last = None
        name = org_name
        employer = org_name

    city = row.get(
        "Provider Business Practice Location Address City Name",
        "Provider Business Mailing Address City Name",
    )
    state = row.get(
        "Provider Business Practice Location Address State Name",
        "Provider Business Mailing Address State Name",
    )
    zip_code = row.get(
        "Provider Business Practice Location Address Postal Code",
        "Provider Business Mailing Address Postal Code",
    )
    phone = row.get(
        "Provider Business Practice Location Address Telephone Number",
        "Provider Business Mailing Address Telephone Number",
    )

    specializations: List[str] = []
    for code in allowed:
        label = ref.label_for(code)
        if label != ref.generic_label and label not in specializations:
            specializations.append(label)

    npi = row.get("NPI")
    info = [f"NPI: {npi}"]
    enumerated = row.get("Provider Enumeration Date")
    if enumerated:
        info.append(f"Enumeration: {enumerated}")
    credential = row.get("Provider Credential Text")
    if credential:
        info.append(f"Credentials: {credential}")

    check = _Checker(row)
    if not name:
        check.error("name", None, "Provider name is required")
    if not city:
        check.error("city", None, "City is required")
    if not state:
        check.error("state", None, "State is required")

    return check.outcome(lambda: ProviderRecord(
        name=name,
        first_name=first,
        last_name=last,
        current_employer=employer,
        city=city,
        state=state,
        zip_code=truncate_zip(zip_code),
        phone=phone,
        specializations=specializations,
        license_number=row.get("Provider License Number_1"),
        license_state=row.get("Provider License Number State Code_1"),
        source=REGISTRY_SOURCE,
        additional_info=", ".join(info),
        npi=npi,
    ))


# ---- schema-validated mode ----

def validate_provider(record: RawRecord, ref: ReferenceData) -> Outcome:
    row = _Row(record)
    check = _Checker(row)
    first = row.get("first_name")
    last = row.get("last_name")
    if not first and not last:
        check.error("name", "", "First name or last name is required")
    info = row.get("additional_info")
    skills = split_list(row.get("skill_set", "specializations"))
    return check.outcome(lambda: ProviderRecord(
        name=row.get("name", "full_name") or display_name(first, last),
        first_name=first,
        last_name=last,
        email=row.get("email"),
        phone=row.get("phone"),
        city=row.get("city"),
        state=row.get("state_province", "state"),
        zip_code=truncate_zip(row.get("zip", "zip_code", "postal_code")),
        current_employer=row.get("current_employer"),
        current_job_title=row.get("current_job_title"),
        additional_info=info,
        bio=info,
        source=row.get("source"),
        linkedin_url=row.get("linkedin", "linkedin_url"),
        specializations=[ref.label_for(s) if s in ref.allowed_codes else s for s in skills],
        license_number=row.get("license_number"),
        license_state=row.get("license_state"),
        npi=row.get("npi"),
    ))


def validate_company(record: RawRecord, ref: ReferenceData) -> Outcome:
    row = _Row(record)
    check = _Checker(row)
    name = check.required("name", "name", "company", "company_name", message="Name is required")
    company_type = row.get("company_type") or ref.category_for(name)
    if not company_type:
        check.error("company_type", row.get("company_type"), "Company type is required")
    parsed = parse_full_address(row.get("full_address", "address_full"))
    founded = check.integer("founded_year")
    employees = check.integer("employee_count")
    return check.outcome(lambda: CompanyRecord(
        name=name,
        company_type=company_type,
        description=row.get("description"),
        website=row.get("website"),
        founded_year=founded,
        employee_count=employees,
        services=split_list(row.get("services")),
        company_locations=split_list(row.get("company_locations")),
        address=row.get("address") or parsed.get("address"),
        city=row.get("city") or parsed.get("city"),
        state=row.get("state") or parsed.get("state"),
        zip_code=truncate_zip(row.get("zip_code", "zip") or parsed.get("zip_code")),
    ))


def validate_school(record: RawRecord, ref: ReferenceData) -> Outcome:
    row = _Row(record)
    check = _Checker(row)
    name = check.required("name", message="Name is required")
    city = check.required("city", message="City is required")
    state = check.required("state", message="State is required")
    tuition = check.decimal("tuition_per_year")
    length = check.integer("program_length_months")
    faculty = check.integer("faculty_count")
    class_size = check.integer("average_class_size")
    return check.outcome(lambda: SchoolRecord(
        name=name,
        city=city,
        state=state,
        description=row.get("description"),
        accreditation=row.get("accreditation"),
        tuition_per_year=tuition,
        program_length_months=length,
        faculty_count=faculty,
        average_class_size=class_size,
        programs_offered=split_list(row.get("programs_offered")),
        specializations=split_list(row.get("specializations")),
    ))


def validate_job_listing(record: RawRecord, ref: ReferenceData) -> Outcome:
    row = _Row(record)
    check = _Checker(row)
    title = check.required("title", message="Title is required")
    city = check.required("city", message="City is required")
    state = check.required("state", message="State is required")
    salary_min = check.integer("salary_min")
    salary_max = check.integer("salary_max")
    if salary_min is not None and salary_max is not None and salary_min > salary_max:
        check.error("salary_max", row.get("salary_max"), "salary_max must not be below salary_min")
    remote = check.boolean("is_remote")
    return check.outcome(lambda: JobListingRecord(
        title=title,
        city=city,
        state=state,
        description=row.get("description"),
        requirements=row.get("requirements"),
        employment_type=row.get("employment_type"),
        experience_level=row.get("experience_level"),
        salary_min=salary_min,
        salary_max=salary_max,
        is_remote=remote,
        company_id=row.get("company_id"),
    ))


UPLOAD_VALIDATORS: Dict[TargetCollection, Callable[[RawRecord, ReferenceData], Outcome]] = {
    TargetCollection.providers: validate_provider,
    TargetCollection.companies: validate_company,
    TargetCollection.schools: validate_school,
    TargetCollection.job_listings: validate_job_listing,
}


def transform(record: RawRecord, kind: JobKind, target: TargetCollection, ref: ReferenceData) -> Outcome:
    if kind == JobKind.registry_import:
        return transform_registry(record, ref)
    return UPLOAD_VALIDATORS[target](record, ref)
