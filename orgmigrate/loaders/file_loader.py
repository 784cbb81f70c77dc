"""Flat-file directory endpoint: one delimited file per object."""

import logging
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..constants import CSV_FILE_SUFFIX, ID_FIELD
from ..extractors.csv_extractor import CsvFileIO
from ..models.schema import ObjectSchema
from ..models.script import DataMedia, Operation, QuerySpec
from .base import CrudResult, DataService

logger = logging.getLogger(__name__)


class CsvFileService(DataService):
    """
    Data service backed by a directory of ``<Object><suffix>.csv`` files.

    Files carry no metadata, so ``describe`` returns None and the run
    describes objects from the other side. Queries evaluate IN filters
    and LIMIT only; a raw WHERE predicate cannot be evaluated on a file.
    """

    def __init__(self, directory: str, csv_io: Optional[CsvFileIO] = None, suffix: str = "", batch_size: int = 200):
        """
        Initialize the file service.

        Args:
            directory: Directory holding the files
            csv_io: Flat-file reader/writer
            suffix: Appended to the object name to form the file name
            batch_size: Unused for files, kept for interface symmetry
        """
        super().__init__(batch_size)
        self.directory = directory
        self.csv_io = csv_io or CsvFileIO()
        self.suffix = suffix
        self._rows: Dict[str, "OrderedDict[str, Dict[str, Any]]"] = {}
        self._columns: Dict[str, List[str]] = {}

    @property
    def media(self) -> DataMedia:
        return DataMedia.FILE

    def file_path(self, object_name: str) -> str:
        return str(Path(self.directory) / f"{object_name}{self.suffix}{CSV_FILE_SUFFIX}")

    def describe(self, object_name: str, is_source: bool) -> Optional[ObjectSchema]:
        return None

    def polymorphic_fields(self, object_name: str) -> List[str]:
        return []

    def _load(self, object_name: str) -> "OrderedDict[str, Dict[str, Any]]":
        if object_name in self._rows:
            return self._rows[object_name]

        rows: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        path = self.file_path(object_name)
        columns: List[str] = []
        if self.csv_io.exists(path):
            columns, raw_rows = self.csv_io.read_all(path)
            for index, row in enumerate(raw_rows):
                key = row.get(ID_FIELD) or f"__row{index}"
                rows[str(key)] = row
        else:
            logger.warning(f"{object_name}: file {path} does not exist")

        self._rows[object_name] = rows
        self._columns[object_name] = columns
        return rows

    def query(self, query: QuerySpec, use_bulk: bool = False) -> List[Dict[str, Any]]:
        """Return copies of the rows matching the IN filters."""
        rows = self._load(query.object_name)
        result = [dict(row) for row in rows.values() if query.matches(row)]
        if query.limit is not None:
            result = result[:query.limit]
        logger.debug(f"{query.object_name}: {len(result)} row(s) read from {self.file_path(query.object_name)}")
        return result

    def execute_crud(
        self,
        object_name: str,
        records: List[Dict[str, Any]],
        operation: Operation,
    ) -> CrudResult:
        """Write records into the object's file, replacing rows with the same Id."""
        result = CrudResult(object_name=object_name, operation=operation)
        result.started_at = datetime.utcnow()

        rows = self._load(object_name)
        columns = self._columns.setdefault(object_name, [])
        for record in records:
            record_id = record.get(ID_FIELD)
            if operation in (Operation.DELETE, Operation.HARD_DELETE):
                rows.pop(str(record_id), None)
            else:
                key = str(record_id) if record_id else f"__row{len(rows)}"
                rows[key] = dict(record)
                for column in record:
                    if column not in columns:
                        columns.append(column)
            result.records.append(dict(record))
            result.total_attempted += 1
            result.total_succeeded += 1

        ordered = ([ID_FIELD] if ID_FIELD in columns else []) + [c for c in columns if c != ID_FIELD]
        self.csv_io.write_all(self.file_path(object_name), list(rows.values()), ordered)
        result.completed_at = datetime.utcnow()
        logger.info(f"{object_name}: {operation.value} {result.total_succeeded} record(s) into {self.file_path(object_name)}")
        return result
