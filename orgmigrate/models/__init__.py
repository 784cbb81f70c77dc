"""Data models for the migration engine."""

from .schema import FieldDescribe, ObjectSchema
from .script import (
    DataMedia,
    LookupField,
    MigrationObject,
    MigrationScript,
    MockField,
    Operation,
    QuerySpec,
    parse_query,
)
from .migration import (
    CrudSummary,
    EndpointType,
    MigrationConfig,
    MigrationRun,
    MigrationStep,
    MigrationStatus,
)
from .record import CsvIssueRow, IssueType, MissingParentRow
from .task import MigrationTask, TaskSideData

__all__ = [
    "FieldDescribe",
    "ObjectSchema",
    "DataMedia",
    "LookupField",
    "MigrationObject",
    "MigrationScript",
    "MockField",
    "Operation",
    "QuerySpec",
    "parse_query",
    "CrudSummary",
    "EndpointType",
    "MigrationConfig",
    "MigrationRun",
    "MigrationStep",
    "MigrationStatus",
    "CsvIssueRow",
    "IssueType",
    "MissingParentRow",
    "MigrationTask",
    "TaskSideData",
]
