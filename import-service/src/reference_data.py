# import-service/src/reference_data.py
import json
import os
from dataclasses import dataclass
from functools import cached_property
from typing import Dict, FrozenSet, Optional, Tuple

from errors import ImportPipelineError
from log import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReferenceData:
    taxonomy_version: str
    taxonomy_labels: Dict[str, str]
    generic_label: str
    category_version: str
    category_rules: Tuple[Tuple[str, str], ...]

    @cached_property
    def allowed_codes(self) -> FrozenSet[str]:
        return frozenset(self.taxonomy_labels)

    def label_for(self, code: str) -> str:
        return self.taxonomy_labels.get(code, self.generic_label)

    def category_for(self, name: Optional[str]) -> Optional[str]:
        """First category whose keyword appears in the name, else None."""
        if not name:
            return None
        lowered = name.lower()
        for keyword, category in self.category_rules:
            if keyword in lowered:
                return category
        return None


def _read_json(path: str) -> dict:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise ImportPipelineError(f"cannot load reference data {path}: {e}") from e


def load_reference_data(directory: str) -> ReferenceData:
    if not os.path.isdir(directory):
        raise ImportPipelineError(
            f"reference data directory not found: {directory}; set REFERENCE_DATA_DIR to the reference/ folder"
        )
    taxonomy = _read_json(os.path.join(directory, "taxonomy.json"))
    categories = _read_json(os.path.join(directory, "categories.json"))

    data = ReferenceData(
        taxonomy_version=str(taxonomy.get("version", "unknown")),
        taxonomy_labels={str(k).strip(): str(v) for k, v in taxonomy["codes"].items()},
        generic_label=str(taxonomy.get("generic_label", "")),
        category_version=str(categories.get("version", "unknown")),
        category_rules=tuple(
            (str(r["keyword"]).lower(), str(r["category"])) for r in categories["rules"]
        ),
    )
    logger.info(
        "reference data loaded taxonomy=%s (%d codes) categories=%s (%d rules)",
        data.taxonomy_version, len(data.taxonomy_labels),
        data.category_version, len(data.category_rules),
    )
    return data
