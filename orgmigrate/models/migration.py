"""Migration execution models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime
import uuid


class MigrationStatus(str, Enum):
    """Status of a migration run."""
    PENDING = "pending"
    LOADING = "loading"
    SETUP = "setup"
    PROCESSING_CSV = "processing_csv"
    PREPARING = "preparing"
    RETRIEVING = "retrieving"
    UPDATING = "updating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EndpointType(str, Enum):
    """Kind of endpoint on either side of the run."""
    ORG = "org"  # Live data service over REST
    CSVFILE = "csvfile"  # Directory of delimited files


@dataclass
class CrudSummary:
    """Per-object counts of written records, split by pass label."""
    object_name: str
    passes: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def add(self, pass_label: str, inserted: int = 0, updated: int = 0, deleted: int = 0) -> None:
        counts = self.passes.setdefault(pass_label, {"inserted": 0, "updated": 0, "deleted": 0})
        counts["inserted"] += inserted
        counts["updated"] += updated
        counts["deleted"] += deleted

    @property
    def inserted(self) -> int:
        return sum(c["inserted"] for c in self.passes.values())

    @property
    def updated(self) -> int:
        return sum(c["updated"] for c in self.passes.values())

    @property
    def deleted(self) -> int:
        return sum(c["deleted"] for c in self.passes.values())

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.deleted

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "object_name": self.object_name,
            "passes": self.passes,
            "inserted": self.inserted,
            "updated": self.updated,
            "deleted": self.deleted,
        }


@dataclass
class MigrationStep:
    """A single step in a migration process."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    entity: str = ""
    status: MigrationStatus = MigrationStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    records_processed: int = 0
    records_succeeded: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "entity": self.entity,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "records_processed": self.records_processed,
            "records_succeeded": self.records_succeeded,
            "records_failed": self.records_failed,
            "records_skipped": self.records_skipped,
            "errors": self.errors,
            "warnings": self.warnings,
        }

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


@dataclass
class MigrationRun:
    """A complete migration run."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    status: MigrationStatus = MigrationStatus.PENDING

    # Configuration
    config_path: Optional[str] = None
    validate_only: bool = False

    # Timing
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Progress
    steps: List[MigrationStep] = field(default_factory=list)
    current_step: Optional[str] = None

    # Statistics
    total_records_processed: int = 0
    total_records_succeeded: int = 0
    total_records_failed: int = 0
    total_records_skipped: int = 0

    # Results
    task_order: Dict[str, List[str]] = field(default_factory=dict)
    object_summaries: Dict[str, CrudSummary] = field(default_factory=dict)
    csv_issues_count: int = 0
    missing_parents_count: int = 0
    correctness_risks: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    # Metadata
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "config_path": self.config_path,
            "validate_only": self.validate_only,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "steps": [s.to_dict() for s in self.steps],
            "current_step": self.current_step,
            "total_records_processed": self.total_records_processed,
            "total_records_succeeded": self.total_records_succeeded,
            "total_records_failed": self.total_records_failed,
            "total_records_skipped": self.total_records_skipped,
            "task_order": self.task_order,
            "object_summaries": {k: v.to_dict() for k, v in self.object_summaries.items()},
            "csv_issues_count": self.csv_issues_count,
            "missing_parents_count": self.missing_parents_count,
            "correctness_risks": self.correctness_risks,
            "errors": self.errors,
            "metadata": self.metadata,
        }

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def add_step(self, name: str, entity: str = "") -> MigrationStep:
        """Add a new step to the migration."""
        step = MigrationStep(name=name, entity=entity)
        self.steps.append(step)
        return step

    def update_totals(self) -> None:
        """Update total statistics from steps."""
        self.total_records_processed = sum(s.records_processed for s in self.steps)
        self.total_records_succeeded = sum(s.records_succeeded for s in self.steps)
        self.total_records_failed = sum(s.records_failed for s in self.steps)
        self.total_records_skipped = sum(s.records_skipped for s in self.steps)


@dataclass
class MigrationConfig:
    """Runtime configuration for a migration: endpoints and output locations."""
    name: str = "migration"
    path: str = "."  # Directory holding export.json and the source csv files

    source: EndpointType = EndpointType.CSVFILE
    source_url: Optional[str] = None
    source_token: Optional[str] = None
    target: EndpointType = EndpointType.CSVFILE
    target_url: Optional[str] = None
    target_token: Optional[str] = None

    # Execution options
    noprompt: bool = False
    batch_size: int = 200
    rate_limit: float = 10.0
    max_retries: int = 3
    describe_workers: int = 4

    # Output
    output_dir: Optional[str] = None  # Defaults to <path>/target

    @property
    def script_path(self) -> str:
        return f"{self.path.rstrip('/')}/export.json"

    @property
    def resolved_output_dir(self) -> str:
        return self.output_dir or f"{self.path.rstrip('/')}/target"
