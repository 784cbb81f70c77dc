"""Base interface for the data services on either side of a migration."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging

from ..models.schema import ObjectSchema
from ..models.script import DataMedia, Operation, QuerySpec

logger = logging.getLogger(__name__)


@dataclass
class CrudResult:
    """Result of one create/update/delete call."""
    object_name: str
    operation: Operation
    records: List[Dict[str, Any]] = field(default_factory=list)  # Same order as the input
    total_attempted: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def success_rate(self) -> float:
        if self.total_attempted == 0:
            return 0.0
        return self.total_succeeded / self.total_attempted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_name": self.object_name,
            "operation": self.operation.value,
            "total_attempted": self.total_attempted,
            "total_succeeded": self.total_succeeded,
            "total_failed": self.total_failed,
            "success_rate": self.success_rate,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "errors": self.errors,
        }


class DataService(ABC):
    """
    Base class for migration endpoints.

    A data service answers schema questions, runs queries and executes
    create/update/delete calls. Batching and retries are its own concern.
    """

    def __init__(self, batch_size: int = 200):
        """
        Initialize the service.

        Args:
            batch_size: Number of records per write call
        """
        self.batch_size = batch_size

    @property
    @abstractmethod
    def media(self) -> DataMedia:
        """Whether this endpoint is a live org or a file directory."""
        pass

    @abstractmethod
    def describe(self, object_name: str, is_source: bool) -> Optional[ObjectSchema]:
        """
        Describe an object.

        Args:
            object_name: API name of the object
            is_source: True when describing the source side

        Returns:
            ObjectSchema, or None if the object does not exist or cannot be described
        """
        pass

    def polymorphic_fields(self, object_name: str) -> List[str]:
        """Names of lookup fields of the object that reference several object types."""
        schema = self.describe(object_name, True)
        if schema is None:
            return []
        return [name for name, f in schema.fields.items() if f.is_lookup and f.is_polymorphic]

    @abstractmethod
    def query(self, query: QuerySpec, use_bulk: bool = False) -> List[Dict[str, Any]]:
        """
        Run a query.

        Args:
            query: Parsed query with optional IN filters
            use_bulk: Prefer a bulk retrieval channel where the service has one

        Returns:
            Flat records; relationship values use dotted keys such as ``Account.Name``
        """
        pass

    @abstractmethod
    def execute_crud(
        self,
        object_name: str,
        records: List[Dict[str, Any]],
        operation: Operation,
    ) -> CrudResult:
        """
        Create, update or delete records.

        Args:
            object_name: API name of the object
            records: Records to write; updates and deletes carry ``Id``
            operation: Insert, Update, Delete or HardDelete

        Returns:
            CrudResult whose records match the input order; inserted records carry their new ``Id``
        """
        pass

    def _batches(self, records: List[Dict[str, Any]]):
        for i in range(0, len(records), self.batch_size):
            yield records[i:i + self.batch_size]
