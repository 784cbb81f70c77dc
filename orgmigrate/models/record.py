"""Report row models: conformance issues and unresolved parent references."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from enum import Enum
from datetime import datetime

from ..constants import CSV_ISSUE_REPORT_COLUMNS, MISSING_PARENT_REPORT_COLUMNS


class IssueType(str, Enum):
    """Kinds of anomaly found in flat input files."""
    MISSING_FILE = "MISSING CSV FILE"
    MISSING_COLUMN = "MISSING COLUMN IN THE CSV FILE"
    MISSING_PARENT = "MISSING PARENT RECORD FOR THE GIVEN LOOKUP VALUE"
    CONFLICT = "LOOKUP ID/REFERENCE CONFLICT"


def _now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S")


@dataclass(frozen=True)
class CsvIssueRow:
    """One anomaly found while validating or repairing a flat file."""
    object_name: str
    error: str
    field_name: str = ""
    field_value: Optional[Any] = None
    parent_object_name: str = ""
    parent_field_name: str = ""
    parent_field_value: Optional[Any] = None
    date_update: str = field(default_factory=_now, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a report row keyed by the report columns."""
        values = [
            self.date_update,
            self.object_name,
            self.field_name,
            self.field_value,
            self.parent_object_name,
            self.parent_field_name,
            self.parent_field_value,
            self.error,
        ]
        return dict(zip(CSV_ISSUE_REPORT_COLUMNS, values))


@dataclass(frozen=True)
class MissingParentRow:
    """A record whose lookup could not be resolved on the target at write time."""
    record_id: str
    field_name: str
    reference_field_name: str
    object_name: str
    parent_object_name: str
    parent_external_id_field: str
    missing_value: Optional[Any] = None
    date_update: str = field(default_factory=_now, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a report row keyed by the report columns."""
        values = [
            self.date_update,
            self.record_id,
            self.field_name,
            self.reference_field_name,
            self.object_name,
            self.parent_object_name,
            self.parent_external_id_field,
            self.missing_value,
        ]
        return dict(zip(MISSING_PARENT_REPORT_COLUMNS, values))
