"""Data services for both sides of a migration."""

from .base import CrudResult, DataService
from .api_loader import RestDataService
from .file_loader import CsvFileService

__all__ = [
    "CrudResult",
    "DataService",
    "RestDataService",
    "CsvFileService",
]
