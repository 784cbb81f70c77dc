"""Runtime task models: one task per migrated object with source/target record state."""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from ..constants import ID_FIELD
from .migration import CrudSummary
from .script import MigrationObject, QuerySpec


@dataclass
class TaskSideData:
    """Records retrieved from one side (source or target) for a task."""
    is_source: bool
    id_records_map: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    ext_id_to_record_id: Dict[str, str] = field(default_factory=dict)
    query_count: int = 0
    queried_values: Dict[str, Set[str]] = field(default_factory=dict)
    query: Optional[QuerySpec] = None

    @property
    def records(self) -> List[Dict[str, Any]]:
        return list(self.id_records_map.values())

    def get_by_external_id(self, value: Optional[str]) -> Optional[Dict[str, Any]]:
        if value is None:
            return None
        record_id = self.ext_id_to_record_id.get(value)
        return self.id_records_map.get(record_id) if record_id else None

    def take_unqueried(self, field_name: str, values) -> List[str]:
        """Return values not yet used in an IN filter on ``field_name`` and mark them used."""
        seen = self.queried_values.setdefault(field_name, set())
        fresh = []
        for value in values:
            if value in (None, "") or value in seen:
                continue
            seen.add(value)
            fresh.append(value)
        return fresh


@dataclass(eq=False)
class MigrationTask:
    """A MigrationObject plus everything retrieved and written for it during a run."""
    obj: MigrationObject
    source: TaskSideData = field(default_factory=lambda: TaskSideData(is_source=True))
    target: TaskSideData = field(default_factory=lambda: TaskSideData(is_source=False))
    source_to_target: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    summary: Optional[CrudSummary] = None
    process_all_source: bool = False
    process_all_target: bool = False
    mock_counter: int = 0

    def __post_init__(self):
        if self.summary is None:
            self.summary = CrudSummary(object_name=self.obj.name)

    @property
    def name(self) -> str:
        return self.obj.name

    def side(self, is_source: bool) -> TaskSideData:
        return self.source if is_source else self.target

    def register_records(self, records: List[Dict[str, Any]], is_source: bool) -> int:
        """
        Merge queried records into the side data.

        Target records are linked to source records through the external id.

        Returns:
            Number of records not seen before
        """
        data = self.side(is_source)
        added = 0
        for record in records:
            record_id = record.get(ID_FIELD)
            if record_id in (None, ""):
                record_id = f"__{uuid.uuid4().hex}"
                record[ID_FIELD] = record_id
            record_id = str(record_id)
            if record_id not in data.id_records_map:
                added += 1
            data.id_records_map[record_id] = record
            ext_id = self.obj.get_external_id_value(record)
            if ext_id is not None:
                data.ext_id_to_record_id[ext_id] = record_id
            if not is_source and ext_id is not None:
                source_id = self.source.ext_id_to_record_id.get(ext_id)
                if source_id is not None:
                    self.source_to_target[source_id] = record
        return added

    def link_inserted(self, source_record: Dict[str, Any], target_record: Dict[str, Any]) -> None:
        """Remember a freshly inserted target record for its source record."""
        target_id = str(target_record[ID_FIELD])
        self.target.id_records_map[target_id] = target_record
        ext_id = self.obj.get_external_id_value(target_record)
        if ext_id is not None:
            self.target.ext_id_to_record_id[ext_id] = target_id
        self.source_to_target[str(source_record[ID_FIELD])] = target_record
