"""Multi-pass retrieval and write execution across ordered tasks."""

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..constants import (
    ID_FIELD,
    MAX_IN_CLAUSE_VALUES,
    MISSING_PARENT_LOOKUP_RECORDS_ERRORS_FILENAME,
    MISSING_PARENT_REPORT_COLUMNS,
    OBJECTS_NOT_TO_USE_IN_FILTERED_QUERY,
)
from ..errors import UserAbortError
from ..extractors.csv_extractor import CsvFileIO
from ..loaders.base import DataService
from ..models.migration import CrudSummary
from ..models.record import MissingParentRow
from ..models.script import (
    DataMedia,
    LookupField,
    Operation,
    QuerySpec,
    compose_complex_value,
    is_complex_field,
    parse_query,
)
from ..models.task import MigrationTask
from .hooks import ON_AFTER_UPDATE, ON_BEFORE, ON_BEFORE_UPDATE, HookRunner, NullHookRunner

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
ConfirmCallback = Callable[[str], bool]


class RetrievalPass(str, Enum):
    """States of the retrieval sequence, in execution order."""
    INITIAL = "initial"
    BACKWARD_1 = "backward-1"
    BACKWARD_2 = "backward-2"
    FORWARD_REVERSED_1 = "forward-reversed-1"
    FORWARD_REVERSED_2 = "forward-reversed-2"
    DESTINATION = "destination"
    DONE = "done"

    @property
    def is_backwards(self) -> bool:
        return self in (RetrievalPass.BACKWARD_1, RetrievalPass.BACKWARD_2)

    @property
    def is_forwards(self) -> bool:
        return self in (
            RetrievalPass.INITIAL,
            RetrievalPass.FORWARD_REVERSED_1,
            RetrievalPass.FORWARD_REVERSED_2,
        )

    @property
    def is_reversed(self) -> bool:
        return self in (RetrievalPass.FORWARD_REVERSED_1, RetrievalPass.FORWARD_REVERSED_2)

    @property
    def queries_target(self) -> bool:
        return self is RetrievalPass.DESTINATION

    def next(self) -> "RetrievalPass":
        if self is RetrievalPass.DONE:
            return self
        members = list(RetrievalPass)
        return members[members.index(self) + 1]


class WritePass(str, Enum):
    """Labels of the write passes, also used as summary keys."""
    FORWARD = "forward"
    BACKWARD_1 = "backward-1"
    BACKWARD_2 = "backward-2"
    DELETE_HIERARCHY = "delete-hierarchy"


DELETE_OLD_DATA_LABEL = "delete-old-data"
DELETE_SOURCE_LABEL = "delete-source"


def _record_value(record: Record, column: str) -> Optional[str]:
    value = record.get(column)
    if value in (None, "") and is_complex_field(column):
        value = compose_complex_value(record, column)
    return None if value in (None, "") else str(value)


def _normalize(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().lower()


def _chunks(values: List[str], size: int = MAX_IN_CLAUSE_VALUES):
    for i in range(0, len(values), size):
        yield values[i:i + size]


class ReconciliationEngine:
    """
    Retrieves records in a fixed sequence of directional passes, then writes them.

    Retrieval walks the query order six times (initial, two backward, two
    forward-reversed, destination) so references that point forward or
    backward in the order, or form cycles, get their records fetched.
    Writes run a forward pass, two backward passes for an org target, and
    an optional delete-by-hierarchy pass. Lookup ids are translated to target
    ids on the way; references that cannot be translated are collected in
    the missing-parent report.
    """

    def __init__(
        self,
        source: DataService,
        target: DataService,
        tasks: List[MigrationTask],
        hooks: Optional[HookRunner] = None,
        confirm: Optional[ConfirmCallback] = None,
        prompt_on_missing_parents: bool = True,
        reports_dir: Optional[str] = None,
        csv_io: Optional[CsvFileIO] = None,
        source_files: Optional[DataService] = None,
    ):
        """
        Initialize the engine.

        Args:
            source: Source endpoint
            target: Target endpoint
            tasks: All tasks of the run
            hooks: Lifecycle hook runner
            confirm: Prompt callback; returns True to continue
            prompt_on_missing_parents: Ask before continuing with unresolved references
            reports_dir: Directory for the missing-parent report
            csv_io: Writer for the report
            source_files: Flat-file source read by objects flagged with useSourceCSVFile
        """
        self.source = source
        self.target = target
        self.tasks = list(tasks)
        self.hooks = hooks or NullHookRunner()
        self.confirm = confirm
        self.prompt_on_missing_parents = prompt_on_missing_parents
        self.reports_dir = reports_dir
        self.csv_io = csv_io or CsvFileIO()
        self.source_files = source_files

        self.missing_parents: List[MissingParentRow] = []
        self._missing_keys: Set[Tuple[str, str, str]] = set()
        self._continue_confirmed = False
        self._tasks_by_name = {t.name: t for t in self.tasks}
        self._query_order: List[MigrationTask] = list(self.tasks)
        self._update_order: List[MigrationTask] = []

    def _source_service(self, task: MigrationTask) -> DataService:
        if task.obj.use_source_csv_file and self.source_files is not None:
            return self.source_files
        return self.source

    @property
    def target_is_org(self) -> bool:
        return self.target.media == DataMedia.ORG

    # ==================================================================
    # Delete old data
    # ==================================================================

    def delete_old_data(self, delete_order: List[MigrationTask]) -> int:
        """
        Delete existing target records of objects flagged for it, children first.

        Returns:
            Number of deleted records
        """
        if not self.target_is_org:
            return 0

        total = 0
        for task in delete_order:
            obj = task.obj
            if obj.operation in (Operation.DELETE_SOURCE, Operation.DELETE_HIERARCHY):
                continue
            if not (obj.delete_old_data or obj.operation in (Operation.DELETE, Operation.HARD_DELETE)):
                continue

            if obj.delete_query:
                query = parse_query(obj.delete_query, obj.target_object_name)
            elif obj.operation in (Operation.DELETE, Operation.HARD_DELETE) and obj.parsed_query:
                query = QuerySpec(object_name=obj.target_object_name, where=obj.parsed_query.where)
            else:
                query = QuerySpec(object_name=obj.target_object_name)
            query.fields = [ID_FIELD]

            records = self.target.query(query)
            if not records:
                logger.info(f"{obj.name}: no target records to delete")
                continue

            operation = Operation.HARD_DELETE if obj.is_hard_delete else Operation.DELETE
            result = self.target.execute_crud(
                obj.target_object_name, [{ID_FIELD: r[ID_FIELD]} for r in records], operation
            )
            task.summary.add(DELETE_OLD_DATA_LABEL, deleted=result.total_succeeded)
            total += result.total_succeeded
            logger.info(f"{obj.name}: deleted {result.total_succeeded} old target record(s)")

        return total

    # ==================================================================
    # Retrieval
    # ==================================================================

    def retrieve(self, query_order: List[MigrationTask]) -> Dict[str, bool]:
        """
        Run the retrieval pass sequence over the query order.

        Returns:
            Object name -> whether any source or target record was retrieved
        """
        self._query_order = list(query_order)
        state = RetrievalPass.INITIAL
        while state is not RetrievalPass.DONE:
            logger.info(f"Retrieval pass: {state.value}")
            retrieved = False
            for task in self._query_order:
                retrieved = self._retrieve_task(task, state) or retrieved
            if not retrieved:
                logger.info(f"Retrieval pass {state.value}: noRecords")
            state = state.next()

        for task in self._query_order:
            logger.info(
                f"{task.name}: source {len(task.source.id_records_map)} record(s) in {task.source.query_count} "
                f"quer{'y' if task.source.query_count == 1 else 'ies'}, "
                f"target {len(task.target.id_records_map)} record(s)"
            )
            self.hooks.run_event(ON_BEFORE, task.name)

        return {
            task.name: bool(task.source.id_records_map or task.target.id_records_map)
            for task in self._query_order
        }

    def _retrieve_task(self, task: MigrationTask, state: RetrievalPass) -> bool:
        if task.obj.operation in (Operation.DELETE, Operation.HARD_DELETE):
            return False
        if state.queries_target:
            return self._retrieve_target(task)

        has_records = False
        service = self._source_service(task)
        if service.media == DataMedia.FILE:
            if state is RetrievalPass.INITIAL:
                self._run_queries(task, [task.obj.parsed_query.copy()], is_source=True)
                has_records = True
        elif task.process_all_source:
            if state is RetrievalPass.INITIAL:
                self._run_queries(task, [task.obj.parsed_query.copy()], is_source=True)
                has_records = True
        else:
            queries = self._filtered_source_queries(task, state)
            if queries:
                self._run_queries(task, queries, is_source=True)
                has_records = True

        if service.media == DataMedia.ORG and state.is_forwards:
            has_records = self._retrieve_self_references(task) or has_records
        return has_records

    def _run_queries(self, task: MigrationTask, queries: List[QuerySpec], is_source: bool) -> int:
        service = self._source_service(task) if is_source else self.target
        side = task.side(is_source)
        records: List[Record] = []
        for query in queries:
            logger.debug(f"{task.name}: {query.to_soql()}")
            rows = service.query(query)
            if not is_source:
                rows = [self._to_source_names(task, r) for r in rows]
            records.extend(rows)
            side.query_count += 1

        added = task.register_records(records, is_source)
        logger.info(f"{task.name}: {added} new {'source' if is_source else 'target'} record(s)")
        return added

    def _base_filtered_query(self, task: MigrationTask) -> QuerySpec:
        return task.obj.parsed_query.copy(limit=None, order_by="", in_filters=[])

    def _in_queries(self, task: MigrationTask, base: QuerySpec, field_name: str, values, is_source: bool) -> List[QuerySpec]:
        values = [str(v) for v in values if v not in (None, "") and not str(v).startswith("__")]
        fresh = task.side(is_source).take_unqueried(field_name, values)
        return [base.with_in_filter(field_name, chunk) for chunk in _chunks(fresh)]

    def _filtered_source_queries(self, task: MigrationTask, state: RetrievalPass) -> List[QuerySpec]:
        base = self._base_filtered_query(task)
        queries: List[QuerySpec] = []

        if state.is_reversed:
            if task.name in OBJECTS_NOT_TO_USE_IN_FILTERED_QUERY:
                return []
            values: List[str] = []
            for other in self.tasks:
                for lookup in other.obj.lookups.values():
                    if lookup.parent is task.obj:
                        values.extend(r.get(lookup.name) for r in other.source.records)
            return self._in_queries(task, base, ID_FIELD, values, is_source=True)

        index = self._query_order.index(task)
        prev_names = {t.name for t in self._query_order[:index]}
        next_names = {t.name for t in self._query_order[index + 1:]}
        for lookup in task.obj.lookups.values():
            if lookup.parent is None or lookup.parent.name in OBJECTS_NOT_TO_USE_IN_FILTERED_QUERY:
                continue
            parent_task = self._tasks_by_name.get(lookup.parent.name)
            if parent_task is None:
                continue
            related = prev_names if state.is_backwards else next_names
            if parent_task.name in related:
                queries.extend(self._in_queries(
                    task, base, lookup.name, list(parent_task.source.id_records_map), is_source=True
                ))
        return queries

    def _retrieve_self_references(self, task: MigrationTask) -> bool:
        values: List[str] = []
        for lookup in task.obj.lookups.values():
            if lookup.is_self_reference:
                values.extend(r.get(lookup.name) for r in task.source.records)
        values = [v for v in values if v not in (None, "") and str(v) not in task.source.id_records_map]
        if not values:
            return False
        queries = self._in_queries(task, self._base_filtered_query(task), ID_FIELD, values, is_source=True)
        if not queries:
            return False
        logger.debug(f"{task.name}: querying {len(values)} self-referenced record(s)")
        self._run_queries(task, queries, is_source=True)
        return True

    # --- target side ------------------------------------------------------

    def _target_query(self, task: MigrationTask) -> QuerySpec:
        obj = task.obj
        fields = [ID_FIELD]
        for name in obj.external_id_fields + obj.fields_to_update:
            mapped = obj.map_field_to_target(name)
            if mapped not in fields:
                fields.append(mapped)
        return QuerySpec(
            object_name=obj.target_object_name,
            fields=fields,
            where=obj.parsed_query.where if obj.parsed_query and not obj.field_mapping else "",
        )

    def _to_source_names(self, task: MigrationTask, record: Record) -> Record:
        if not task.obj.field_mapping:
            return record
        reverse = {target: source for source, target in task.obj.field_mapping.items()}
        return {reverse.get(k, k): v for k, v in record.items()}

    def _retrieve_target(self, task: MigrationTask) -> bool:
        obj = task.obj
        if not self.target_is_org or obj.operation == Operation.INSERT:
            return False

        base = self._target_query(task)
        if task.process_all_target:
            queries = [base]
        else:
            if obj.has_complex_external_id or obj.external_id == ID_FIELD:
                return False
            field_name = obj.map_field_to_target(obj.external_id)
            queries = self._in_queries(
                task, base, field_name, list(task.source.ext_id_to_record_id), is_source=False
            )
            if not queries:
                return False

        self._run_queries(task, queries, is_source=False)
        return True

    # ==================================================================
    # Execution
    # ==================================================================

    def execute(self, update_order: List[MigrationTask], delete_order: List[MigrationTask]) -> Dict[str, CrudSummary]:
        """
        Run the write passes.

        Returns:
            Object name -> CrudSummary with per-pass counts
        """
        self._update_order = list(update_order)

        passes = [WritePass.FORWARD]
        if self.target_is_org:
            passes += [WritePass.BACKWARD_1, WritePass.BACKWARD_2]

        for write_pass in passes:
            logger.info(f"Write pass: {write_pass.value}")
            for task in self._update_order:
                self._update_task(task, write_pass)
            if write_pass is WritePass.FORWARD:
                self._delete_source_records(delete_order)

        if any(t.obj.operation == Operation.DELETE_HIERARCHY for t in delete_order):
            logger.info(f"Write pass: {WritePass.DELETE_HIERARCHY.value}")
            self._delete_by_hierarchy(delete_order)

        for task in self.tasks:
            summary = task.summary
            if summary.total:
                logger.info(
                    f"{task.name}: inserted {summary.inserted}, updated {summary.updated}, deleted {summary.deleted}"
                )
        return {task.name: task.summary for task in self.tasks}

    def _fields_for_pass(self, task: MigrationTask, write_pass: WritePass) -> List[str]:
        index = self._update_order.index(task)
        update_names = {t.name for t in self._update_order}
        prev_names = {t.name for t in self._update_order[:index]}
        next_names = {t.name for t in self._update_order[index + 1:]}

        fields = []
        for name in task.obj.fields_to_update:
            lookup = task.obj.lookups.get(name)
            if write_pass is WritePass.FORWARD:
                if lookup is None:
                    fields.append(name)
                elif lookup.parent is not None and (
                    lookup.parent.name in prev_names or lookup.parent.name not in update_names
                ):
                    fields.append(name)
            elif lookup is not None and lookup.parent is not None and (
                lookup.parent.name in next_names or lookup.parent.name == task.name
            ):
                fields.append(name)
        return fields

    def _resolve_lookup(
        self,
        task: MigrationTask,
        lookup: LookupField,
        source: Record,
        missing: List[MissingParentRow],
    ) -> Optional[str]:
        parent_id = source.get(lookup.name)
        reference = _record_value(source, lookup.reference_column) if lookup.reference_column else None
        if parent_id in (None, "") and not reference:
            return None

        parent_task = self._tasks_by_name.get(lookup.parent.name)
        target_record = None
        if parent_task is not None:
            parent_source = None
            if parent_id not in (None, ""):
                parent_source = parent_task.source.id_records_map.get(str(parent_id))
            if parent_source is None:
                parent_source = parent_task.source.get_by_external_id(reference)
            if parent_source is not None:
                target_record = parent_task.source_to_target.get(str(parent_source[ID_FIELD]))
            if target_record is None:
                target_record = parent_task.target.get_by_external_id(reference)

        if target_record is not None and target_record.get(ID_FIELD):
            return str(target_record[ID_FIELD])

        missing.append(MissingParentRow(
            record_id=str(source.get(ID_FIELD)),
            field_name=lookup.name,
            reference_field_name=lookup.reference_column,
            object_name=task.name,
            parent_object_name=lookup.parent.name,
            parent_external_id_field=lookup.parent.external_id,
            missing_value=reference or str(parent_id),
        ))
        return None

    def _differs(self, cloned: Record, target: Record) -> bool:
        for name, value in cloned.items():
            if name == ID_FIELD:
                continue
            if _normalize(value) != _normalize(target.get(name)):
                return True
        return False

    def _with_mocks(self, task: MigrationTask, record: Record) -> Record:
        """Copy of ``record`` with mock rules applied using the next counter value."""
        if not task.obj.mock_fields:
            return record
        mocked = dict(record)
        for mock in task.obj.mock_fields:
            if mock.name in mocked:
                mocked[mock.name] = mock.apply(mocked[mock.name], task.mock_counter + 1)
        return mocked

    def _advance_mocks(self, task: MigrationTask) -> None:
        if task.obj.mock_fields:
            task.mock_counter += 1

    def _to_target_names(self, task: MigrationTask, record: Record) -> Record:
        return {task.obj.map_field_to_target(k): v for k, v in record.items()}

    def _update_task(self, task: MigrationTask, write_pass: WritePass) -> None:
        obj = task.obj
        if not obj.can_update:
            return

        if not self.target_is_org:
            if write_pass is WritePass.FORWARD:
                self._write_file_target(task)
            return

        fields = self._fields_for_pass(task, write_pass)
        if not fields:
            return

        to_insert: List[Tuple[Record, Record]] = []
        to_update: List[Tuple[Record, Record, Record]] = []
        missing: List[MissingParentRow] = []

        for source_id, source in task.source.id_records_map.items():
            cloned: Record = {}
            for name in fields:
                lookup = obj.lookups.get(name)
                if lookup is not None:
                    cloned[name] = self._resolve_lookup(task, lookup, source, missing)
                else:
                    cloned[name] = source.get(name)

            target = task.source_to_target.get(source_id)
            if write_pass is WritePass.FORWARD:
                if target is None and obj.operation in (Operation.INSERT, Operation.UPSERT):
                    to_insert.append((source, self._with_mocks(task, cloned)))
                    self._advance_mocks(task)
                    continue
                if target is None or obj.operation not in (Operation.UPDATE, Operation.UPSERT):
                    continue
                if obj.skip_existing_records:
                    continue
                cloned = self._with_mocks(task, cloned)
            elif target is None:
                continue

            if obj.skip_records_comparison or self._differs(cloned, target):
                to_update.append((source, cloned, target))
                if write_pass is WritePass.FORWARD:
                    self._advance_mocks(task)

        if missing:
            self._handle_missing_parents(task, missing)

        if not to_insert and not to_update:
            return

        self.hooks.run_event(ON_BEFORE_UPDATE, task.name)
        inserted = self._insert(task, to_insert) if to_insert else 0
        updated = self._update(task, to_update) if to_update else 0
        task.summary.add(write_pass.value, inserted=inserted, updated=updated)
        self.hooks.run_event(ON_AFTER_UPDATE, task.name)
        logger.info(f"{task.name} [{write_pass.value}]: inserted {inserted}, updated {updated}")

    def _insert(self, task: MigrationTask, items: List[Tuple[Record, Record]]) -> int:
        payload = [self._to_target_names(task, cloned) for _, cloned in items]
        result = self.target.execute_crud(task.obj.target_object_name, payload, Operation.INSERT)
        inserted = 0
        for (source, cloned), output in zip(items, result.records):
            new_id = output.get(ID_FIELD)
            if not new_id:
                continue
            target_record = dict(cloned)
            target_record[ID_FIELD] = new_id
            task.link_inserted(source, target_record)
            inserted += 1
        return inserted

    def _update(self, task: MigrationTask, items: List[Tuple[Record, Record, Record]]) -> int:
        payload = []
        for _, cloned, target in items:
            record = self._to_target_names(task, cloned)
            record[ID_FIELD] = target[ID_FIELD]
            payload.append(record)
        result = self.target.execute_crud(task.obj.target_object_name, payload, Operation.UPDATE)
        failed = {str(e.get("record_id")) for e in result.errors}
        for _, cloned, target in items:
            if str(target[ID_FIELD]) not in failed:
                target.update(cloned)
        return result.total_succeeded

    def _write_file_target(self, task: MigrationTask) -> None:
        columns = [ID_FIELD] + [f for f in task.obj.fields_in_query if f != ID_FIELD]
        records = []
        for source in task.source.records:
            record = {c: source.get(c) if not is_complex_field(c) else _record_value(source, c) for c in columns}
            if str(record.get(ID_FIELD, "")).startswith("__"):
                record[ID_FIELD] = None
            records.append(self._to_target_names(task, self._with_mocks(task, record)))
            self._advance_mocks(task)
        if not records:
            return
        self.hooks.run_event(ON_BEFORE_UPDATE, task.name)
        result = self.target.execute_crud(task.obj.target_object_name, records, Operation.INSERT)
        task.summary.add(WritePass.FORWARD.value, inserted=result.total_succeeded)
        self.hooks.run_event(ON_AFTER_UPDATE, task.name)

    # --- deletes ------------------------------------------------------------

    def _delete_source_records(self, delete_order: List[MigrationTask]) -> None:
        if self.source.media != DataMedia.ORG:
            return
        for task in delete_order:
            if task.obj.operation != Operation.DELETE_SOURCE or self._source_service(task) is not self.source:
                continue
            ids = [r[ID_FIELD] for r in task.source.records if not str(r[ID_FIELD]).startswith("__")]
            if not ids:
                continue
            operation = Operation.HARD_DELETE if task.obj.is_hard_delete else Operation.DELETE
            result = self.source.execute_crud(task.name, [{ID_FIELD: i} for i in ids], operation)
            task.summary.add(DELETE_SOURCE_LABEL, deleted=result.total_succeeded)
            logger.info(f"{task.name}: deleted {result.total_succeeded} source record(s)")

    def _delete_by_hierarchy(self, delete_order: List[MigrationTask]) -> None:
        if not self.target_is_org:
            return
        for task in delete_order:
            if task.obj.operation != Operation.DELETE_HIERARCHY:
                continue
            ids = []
            for target in task.source_to_target.values():
                if target.get(ID_FIELD) and target[ID_FIELD] not in ids:
                    ids.append(target[ID_FIELD])
            if not ids:
                continue
            operation = Operation.HARD_DELETE if task.obj.is_hard_delete else Operation.DELETE
            result = self.target.execute_crud(task.obj.target_object_name, [{ID_FIELD: i} for i in ids], operation)
            task.summary.add(WritePass.DELETE_HIERARCHY.value, deleted=result.total_succeeded)
            logger.info(f"{task.name}: deleted {result.total_succeeded} target record(s) by hierarchy")

    # --- missing parents --------------------------------------------------

    def _handle_missing_parents(self, task: MigrationTask, rows: List[MissingParentRow]) -> None:
        new_rows = []
        for row in rows:
            key = (row.object_name, row.record_id, row.field_name)
            if key not in self._missing_keys:
                self._missing_keys.add(key)
                new_rows.append(row)
        if not new_rows:
            return

        self.missing_parents.extend(new_rows)
        self.write_missing_parents_report()
        logger.warning(f"{task.name}: {len(new_rows)} record(s) reference parent records missing in the target")

        if not self.prompt_on_missing_parents or self._continue_confirmed or self.confirm is None:
            return
        if not self.confirm(f"{task.name}: {len(new_rows)} record(s) have missing parent records. Continue?"):
            raise UserAbortError(f"{task.name}: aborted on missing parent records")
        self._continue_confirmed = True

    def write_missing_parents_report(self) -> Optional[str]:
        if not self.reports_dir or not self.missing_parents:
            return None
        path = str(Path(self.reports_dir) / MISSING_PARENT_LOOKUP_RECORDS_ERRORS_FILENAME)
        self.csv_io.write_all(path, [r.to_dict() for r in self.missing_parents], MISSING_PARENT_REPORT_COLUMNS)
        return path
