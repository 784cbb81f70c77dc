"""Validation and repair of flat input files before they are used as a migration source."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from ..constants import (
    COMPLEX_FIELDS_SEPARATOR,
    CSV_ISSUE_REPORT_COLUMNS,
    ERRORS_FIELD_NAME,
    ID_FIELD,
    REFERENCE_FIELD_SEPARATOR,
    RECORD_TYPE_OBJECT_NAME,
)
from ..extractors.csv_extractor import CsvFileIO
from ..models.record import CsvIssueRow, IssueType
from ..models.script import compose_complex_value, is_complex_field, split_complex_field
from .record_cache import CacheEntry, RecordCache

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


@dataclass
class LookupPair:
    """Paired id/reference columns of one lookup field, e.g. ``AccountId`` / ``Account.Name``."""
    id_column: str
    reference_column: str
    parent_object: str
    parent_external_id: str
    is_self_reference: bool = False

    @property
    def relationship_name(self) -> str:
        return self.reference_column.split(REFERENCE_FIELD_SEPARATOR, 1)[0]


@dataclass
class CsvFileRef:
    """Where an object's raw input lives, where its repaired copy goes, and its canonical columns."""
    object_name: str
    raw_path: str
    path: str
    fields: List[str] = field(default_factory=list)
    external_id: str = ID_FIELD


@dataclass
class ConformanceOptions:
    exclude_ids: bool = False
    allow_generated_ids: bool = False
    defer_id_fix: bool = False


@dataclass
class _RepairContext:
    """State of one validate-and-repair call."""
    cache: RecordCache
    files: Dict[str, CsvFileRef]
    required_fields: Dict[str, List[str]]
    lookup_pairs: Dict[str, List[LookupPair]]
    issues: List[CsvIssueRow] = field(default_factory=list)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _record_value(row: Row, column: str) -> Optional[str]:
    value = row.get(column)
    if _is_empty(value) and is_complex_field(column):
        value = compose_complex_value(row, column)
    return None if _is_empty(value) else str(value)


def _join_parts(row: Row, columns: List[str]) -> Optional[str]:
    """Join part columns the way composite external id values are joined."""
    values = [row.get(c) for c in columns]
    if all(_is_empty(v) for v in values):
        return None
    return COMPLEX_FIELDS_SEPARATOR.join("" if _is_empty(v) else str(v) for v in values)


def order_columns(columns: List[str]) -> List[str]:
    """Id first, Errors last, everything else in its current order."""
    middle = [c for c in columns if c not in (ID_FIELD, ERRORS_FIELD_NAME)]
    head = [ID_FIELD] if ID_FIELD in columns else []
    tail = [ERRORS_FIELD_NAME] if ERRORS_FIELD_NAME in columns else []
    return head + middle + tail


class ConformanceEngine:
    """
    Validates and repairs flat input files so every lookup reference resolves.

    Every call receives the run's RecordCache explicitly. Repair runs in three
    passes over all files: structural (column names and ids), relational
    (lookup id/reference pairs) and a final identifier pass. Only files whose
    cache entry turned dirty are rewritten; the rest are copied from the raw
    input.
    """

    def __init__(self, csv_io: CsvFileIO, options: Optional[ConformanceOptions] = None):
        """
        Initialize the engine.

        Args:
            csv_io: Flat-file reader/writer
            options: Repair switches
        """
        self.csv_io = csv_io
        self.options = options or ConformanceOptions()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def validate_and_repair(
        self,
        files: Dict[str, CsvFileRef],
        required_fields: Dict[str, List[str]],
        lookup_pairs: Dict[str, List[LookupPair]],
        cache: RecordCache,
    ) -> List[CsvIssueRow]:
        """
        Validate raw files, repair them into their working copies and return all issues.

        Args:
            files: Object name -> file locations and canonical columns
            required_fields: Object name -> columns that must be present
            lookup_pairs: Object name -> writable lookup column pairs
            cache: Run-scoped record cache

        Returns:
            List of CsvIssueRow, in discovery order
        """
        ctx = _RepairContext(cache=cache, files=files, required_fields=required_fields, lookup_pairs=lookup_pairs)

        for name in files:
            ctx.issues.extend(self.validate_file(files[name], required_fields.get(name, []), lookup_pairs.get(name, [])))

        for name in files:
            self._repair_structure(ctx, files[name])

        for name in files:
            self._repair_relations(ctx, files[name])

        self._final_id_pass(ctx)
        self.save(ctx.cache, files)

        self._log_summary(ctx)
        return ctx.issues

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_file(
        self,
        ref: CsvFileRef,
        required_fields: List[str],
        lookup_pairs: List[LookupPair],
    ) -> List[CsvIssueRow]:
        """Check that the raw file exists and carries the required columns."""
        issues: List[CsvIssueRow] = []
        if not self.csv_io.exists(ref.raw_path):
            if not self.options.exclude_ids:
                issues.append(CsvIssueRow(object_name=ref.object_name, error=IssueType.MISSING_FILE.value))
            return issues

        columns, _ = self.csv_io.read_all(ref.raw_path)
        present = {c.strip().lower() for c in columns}
        skip_when_ids_excluded = {ID_FIELD.lower()} | {p.id_column.lower() for p in lookup_pairs}
        reported: Set[str] = set()

        def report(field_name: str) -> None:
            if field_name.lower() in reported:
                return
            if self.options.exclude_ids and field_name.lower() in skip_when_ids_excluded:
                return
            reported.add(field_name.lower())
            issues.append(CsvIssueRow(
                object_name=ref.object_name,
                field_name=field_name,
                error=IssueType.MISSING_COLUMN.value,
            ))

        for field_name in required_fields:
            if field_name.lower() not in present and not self._has_legacy_columns(field_name, present):
                report(field_name)

        for pair in lookup_pairs:
            if pair.reference_column.lower() in present and pair.id_column.lower() not in present:
                report(pair.id_column)

        if issues:
            logger.debug(f"{ref.object_name}: {len(issues)} validation issue(s) in {ref.raw_path}")
        return issues

    def _has_legacy_columns(self, column: str, present: Set[str]) -> bool:
        if not is_complex_field(column):
            return False
        return any(part.lower() in present for part in split_complex_field(column))

    # ------------------------------------------------------------------
    # Loading and saving
    # ------------------------------------------------------------------

    def _load(self, ctx: _RepairContext, ref: CsvFileRef) -> CacheEntry:
        entry = ctx.cache.get(ref.path)
        if entry is not None:
            return entry

        if not self.csv_io.exists(ref.raw_path):
            entry = ctx.cache.put(ref.path, [], [])
            entry.dirty = True
            return entry

        columns, rows = self.csv_io.read_all(ref.raw_path)
        entry = ctx.cache.put(ref.path, rows, columns, id_column=ID_FIELD if ID_FIELD in columns else None)
        logger.debug(f"{ref.object_name}: loaded {len(rows)} rows from {ref.raw_path}")
        return entry

    def save(self, cache: RecordCache, files: Dict[str, CsvFileRef]) -> int:
        """
        Write dirty cache entries; copy untouched files from the raw input.

        Returns:
            Number of files rewritten
        """
        written = 0
        for ref in files.values():
            entry = cache.get(ref.path)
            if entry is None:
                continue
            ordered = order_columns(entry.columns)
            if entry.columns != ordered:
                entry.columns = ordered
                cache.mark_dirty(ref.path)

            if entry.dirty or not self.csv_io.exists(ref.raw_path):
                self.csv_io.write_all(ref.path, list(entry.rows.values()), entry.columns)
                written += 1
                logger.debug(f"{ref.object_name}: wrote repaired file {ref.path}")
            elif Path(ref.raw_path).resolve() != Path(ref.path).resolve():
                self.csv_io.copy(ref.raw_path, ref.path)
        return written

    def write_issues_report(self, issues: List[CsvIssueRow], path: str) -> None:
        """Persist the issues report; an existing report is replaced."""
        self.csv_io.write_all(path, [i.to_dict() for i in issues], CSV_ISSUE_REPORT_COLUMNS)
        logger.info(f"Wrote {len(issues)} issue(s) to {path}")

    # ------------------------------------------------------------------
    # Column helpers
    # ------------------------------------------------------------------

    def _set(self, ctx: _RepairContext, ref: CsvFileRef, row: Row, column: str, value: Any) -> None:
        entry = ctx.cache.get(ref.path)
        if column not in entry.columns:
            entry.columns.append(column)
        if row.get(column) != value or column not in row:
            row[column] = value
            ctx.cache.mark_dirty(ref.path)

    def _rename_column(self, ctx: _RepairContext, ref: CsvFileRef, old: str, new: str) -> None:
        entry = ctx.cache.get(ref.path)
        for row in entry.rows.values():
            value = row.pop(old, None)
            if new not in row or _is_empty(row.get(new)):
                row[new] = value
        entry.columns = [c for c in entry.columns if c != old]
        if new not in entry.columns:
            entry.columns.append(new)
        ctx.cache.mark_dirty(ref.path)

    def _drop_column(self, ctx: _RepairContext, ref: CsvFileRef, column: str) -> None:
        entry = ctx.cache.get(ref.path)
        for row in entry.rows.values():
            row.pop(column, None)
        entry.columns = [c for c in entry.columns if c != column]
        ctx.cache.mark_dirty(ref.path)

    # ------------------------------------------------------------------
    # Pass 1: structure
    # ------------------------------------------------------------------

    def _repair_structure(self, ctx: _RepairContext, ref: CsvFileRef) -> None:
        entry = self._load(ctx, ref)
        if not entry.rows:
            return

        for column in list(entry.columns):
            if column != column.strip():
                self._rename_column(ctx, ref, column, column.strip())

        canonical = {f.lower(): f for f in ref.fields}
        for column in list(entry.columns):
            target = canonical.get(column.lower())
            if target and target != column:
                self._rename_column(ctx, ref, column, target)

        if ID_FIELD not in entry.columns:
            entry.missing_id_column = True
            if not self.options.defer_id_fix:
                for key, row in entry.rows.items():
                    row[ID_FIELD] = key
                entry.columns.insert(0, ID_FIELD)
                ctx.cache.mark_dirty(ref.path)
                logger.debug(f"{ref.object_name}: generated Id column for {len(entry.rows)} rows")

    # ------------------------------------------------------------------
    # Pass 2: relations
    # ------------------------------------------------------------------

    def _repair_relations(self, ctx: _RepairContext, ref: CsvFileRef) -> None:
        entry = self._load(ctx, ref)
        if not entry.rows:
            return

        if entry.missing_id_column or self.options.exclude_ids:
            self._update_child_id_columns(ctx, ref)

        self._fix_legacy_record_type_columns(ctx, ref)

        for pair in ctx.lookup_pairs.get(ref.object_name, []):
            self._repair_lookup(ctx, ref, pair)

        allowed = {f.lower() for f in ref.fields} | {ID_FIELD.lower(), ERRORS_FIELD_NAME.lower()}
        for column in list(entry.columns):
            if column.lower() not in allowed:
                self._drop_column(ctx, ref, column)

    def _update_child_id_columns(self, ctx: _RepairContext, parent_ref: CsvFileRef) -> None:
        """Point children's lookup id columns at the parent's (possibly new) ids via the reference column."""
        if parent_ref.external_id == ID_FIELD:
            return
        parent_entry = ctx.cache.get(parent_ref.path)
        by_ext_id: Dict[str, Row] = {}
        for row in parent_entry.rows.values():
            key = _record_value(row, parent_ref.external_id)
            if key:
                by_ext_id[key] = row

        for child_name, pairs in ctx.lookup_pairs.items():
            child_ref = ctx.files.get(child_name)
            if child_ref is None:
                continue
            for pair in pairs:
                if pair.parent_object != parent_ref.object_name:
                    continue
                child_entry = self._load(ctx, child_ref)
                if pair.reference_column not in child_entry.columns:
                    continue
                for row in child_entry.rows.values():
                    ext_value = _record_value(row, pair.reference_column)
                    parent_row = by_ext_id.get(ext_value) if ext_value else None
                    if parent_row is not None and not _is_empty(parent_row.get(ID_FIELD)):
                        self._set(ctx, child_ref, row, pair.id_column, parent_row[ID_FIELD])

    def _fix_legacy_record_type_columns(self, ctx: _RepairContext, ref: CsvFileRef) -> None:
        if ref.object_name == RECORD_TYPE_OBJECT_NAME:
            return
        for pair in ctx.lookup_pairs.get(ref.object_name, []):
            if pair.parent_object != RECORD_TYPE_OBJECT_NAME:
                continue
            entry = ctx.cache.get(ref.path)
            if pair.reference_column in entry.columns:
                continue
            legacy = [
                f"{pair.relationship_name}{REFERENCE_FIELD_SEPARATOR}{part}"
                for part in split_complex_field(pair.parent_external_id)
            ]
            if not any(c in entry.columns for c in legacy):
                continue
            for row in entry.rows.values():
                self._set(ctx, ref, row, pair.reference_column, _join_parts(row, legacy))
            for column in legacy:
                if column in entry.columns and column != pair.reference_column:
                    self._drop_column(ctx, ref, column)
            logger.debug(f"{ref.object_name}: rewrote legacy RecordType columns into {pair.reference_column}")

    def _repair_lookup(self, ctx: _RepairContext, ref: CsvFileRef, pair: LookupPair) -> None:
        parent_ref = ctx.files.get(pair.parent_object)
        if parent_ref is None:
            return
        entry = ctx.cache.get(ref.path)
        parent_entry = self._load(ctx, parent_ref)

        parents_by_ref: Dict[str, Row] = {}
        parents_by_id: Dict[str, Row] = {}
        for row in parent_entry.rows.values():
            key = _record_value(row, pair.parent_external_id)
            if key:
                parents_by_ref[key] = row
            row_id = row.get(ID_FIELD)
            if not _is_empty(row_id):
                parents_by_id[str(row_id)] = row

        has_id = pair.id_column in entry.columns
        has_ref = pair.reference_column in entry.columns

        for row in list(entry.rows.values()):
            id_value = _record_value(row, pair.id_column) if has_id else None
            ref_value = _record_value(row, pair.reference_column) if has_ref else None
            if id_value and ref_value:
                self._resolve_conflict(ctx, ref, pair, row, parents_by_id, parents_by_ref)
            elif id_value:
                self._fill_missing_reference(ctx, ref, parent_ref, pair, row, parents_by_id, parents_by_ref)
            else:
                self._fill_missing_id(ctx, ref, parent_ref, pair, row, parents_by_id, parents_by_ref)

    def _resolve_conflict(self, ctx, ref, pair, row, parents_by_id, parents_by_ref) -> None:
        id_value = _record_value(row, pair.id_column)
        ref_value = _record_value(row, pair.reference_column)
        if not id_value or not ref_value:
            return

        parent_by_id = parents_by_id.get(id_value)
        if parent_by_id is not None:
            expected = _record_value(parent_by_id, pair.parent_external_id)
            if expected and expected != ref_value:
                self._set(ctx, ref, row, pair.reference_column, expected)
            return

        parent_by_ref = parents_by_ref.get(ref_value)
        if parent_by_ref is not None:
            expected_id = _record_value(parent_by_ref, ID_FIELD)
            if expected_id and expected_id != id_value:
                self._set(ctx, ref, row, pair.id_column, expected_id)
            return

        ctx.issues.append(CsvIssueRow(
            object_name=ref.object_name,
            field_name=pair.id_column,
            field_value=id_value,
            parent_object_name=pair.parent_object,
            parent_field_name=pair.parent_external_id,
            parent_field_value=ref_value,
            error=IssueType.CONFLICT.value,
        ))

    def _compose_legacy_reference(self, ctx, ref, pair, row) -> Optional[str]:
        parts = split_complex_field(pair.parent_external_id)
        if len(parts) <= 1:
            return None
        legacy = [f"{pair.relationship_name}{REFERENCE_FIELD_SEPARATOR}{p}" for p in parts]
        if not any(c in row for c in legacy):
            return None
        value = _join_parts(row, legacy)
        entry = ctx.cache.get(ref.path)
        for column in legacy:
            row.pop(column, None)
        entry.columns = [c for c in entry.columns if c not in legacy]
        return value

    def _fill_missing_id(self, ctx, ref, parent_ref, pair, row, parents_by_id, parents_by_ref) -> None:
        entry = ctx.cache.get(ref.path)
        if pair.reference_column not in row:
            composed = self._compose_legacy_reference(ctx, ref, pair, row)
            if composed is not None:
                self._set(ctx, ref, row, pair.reference_column, composed or None)

        if pair.reference_column not in entry.columns:
            if self.options.allow_generated_ids:
                self._set(ctx, ref, row, pair.id_column, ctx.cache.next_id())
                self._set(ctx, ref, row, pair.reference_column, ctx.cache.next_id())
            else:
                self._set(ctx, ref, row, pair.id_column, None)
                self._set(ctx, ref, row, pair.reference_column, None)
            return

        ref_value = _record_value(row, pair.reference_column)
        if not ref_value:
            self._set(ctx, ref, row, pair.id_column, None)
            return

        parent_row = parents_by_ref.get(ref_value)
        if parent_row is None:
            ctx.issues.append(CsvIssueRow(
                object_name=ref.object_name,
                field_name=pair.reference_column,
                field_value=ref_value,
                parent_object_name=pair.parent_object,
                parent_field_name=pair.parent_external_id,
                error=IssueType.MISSING_PARENT.value,
            ))
            if pair.is_self_reference or not self.options.allow_generated_ids:
                self._set(ctx, ref, row, pair.id_column, None)
                return
            new_id = ctx.cache.next_id()
            self._set(ctx, ref, row, pair.id_column, new_id)
            parent_row = self._add_parent_row(ctx, parent_ref, {ID_FIELD: new_id, pair.parent_external_id: ref_value})
            parents_by_ref[ref_value] = parent_row
            parents_by_id[new_id] = parent_row
            return

        parent_id = _record_value(parent_row, ID_FIELD)
        self._set(ctx, ref, row, pair.id_column, parent_id)

    def _fill_missing_reference(self, ctx, ref, parent_ref, pair, row, parents_by_id, parents_by_ref) -> None:
        id_value = _record_value(row, pair.id_column)
        if not id_value:
            self._set(ctx, ref, row, pair.reference_column, None)
            return

        parent_row = parents_by_id.get(id_value)
        if parent_row is not None:
            self._set(ctx, ref, row, pair.reference_column, _record_value(parent_row, pair.parent_external_id))
            return

        ctx.issues.append(CsvIssueRow(
            object_name=ref.object_name,
            field_name=pair.id_column,
            field_value=id_value,
            parent_object_name=pair.parent_object,
            parent_field_name=ID_FIELD,
            error=IssueType.MISSING_PARENT.value,
        ))
        if self.options.allow_generated_ids and not pair.is_self_reference:
            new_ref = ctx.cache.next_id()
            self._set(ctx, ref, row, pair.reference_column, new_ref)
            parent_row = self._add_parent_row(ctx, parent_ref, {ID_FIELD: id_value, pair.parent_external_id: new_ref})
            parents_by_ref[new_ref] = parent_row
            parents_by_id[id_value] = parent_row
        else:
            self._set(ctx, ref, row, pair.reference_column, None)

    def _add_parent_row(self, ctx: _RepairContext, parent_ref: CsvFileRef, values: Row) -> Row:
        entry = self._load(ctx, parent_ref)
        for column in values:
            if column not in entry.columns:
                entry.columns.append(column)
        row = {c: values.get(c) for c in entry.columns}
        key = str(values[ID_FIELD])
        if key in entry.rows:
            key = ctx.cache.next_id()
        entry.rows[key] = row
        ctx.cache.reserve(str(values[ID_FIELD]))
        ctx.cache.mark_dirty(parent_ref.path)
        logger.debug(f"{parent_ref.object_name}: created missing parent row {values}")
        return row

    # ------------------------------------------------------------------
    # Pass 3: identifiers
    # ------------------------------------------------------------------

    def _final_id_pass(self, ctx: _RepairContext) -> None:
        reported = {
            (i.object_name, i.field_name, i.error.lower()) for i in ctx.issues
        }
        for ref in ctx.files.values():
            entry = ctx.cache.get(ref.path)
            if entry is None or not entry.rows:
                continue

            existing = next((c for c in entry.columns if c.lower() == ID_FIELD.lower()), None)
            if existing is None:
                entry.missing_id_column = True
                for row in entry.rows.values():
                    row[ID_FIELD] = None
                entry.columns.insert(0, ID_FIELD)
                ctx.cache.mark_dirty(ref.path)
            elif existing != ID_FIELD:
                self._rename_column(ctx, ref, existing, ID_FIELD)

            used: Set[str] = set()
            regenerated = 0
            for row in entry.rows.values():
                current = row.get(ID_FIELD)
                current = "" if current is None else str(current).strip()
                if not current or current in used:
                    current = ctx.cache.next_id()
                    regenerated += 1
                if row.get(ID_FIELD) != current:
                    row[ID_FIELD] = current
                    ctx.cache.mark_dirty(ref.path)
                used.add(current)
            if regenerated:
                logger.debug(f"{ref.object_name}: generated {regenerated} identifier(s)")

            if entry.missing_id_column and not self.options.exclude_ids:
                key = (ref.object_name, ID_FIELD, IssueType.MISSING_COLUMN.value.lower())
                if key not in reported:
                    reported.add(key)
                    ctx.issues.append(CsvIssueRow(
                        object_name=ref.object_name,
                        field_name=ID_FIELD,
                        error=IssueType.MISSING_COLUMN.value,
                    ))

    def _log_summary(self, ctx: _RepairContext) -> None:
        by_object: Dict[str, int] = {}
        for issue in ctx.issues:
            by_object[issue.object_name] = by_object.get(issue.object_name, 0) + 1
        for name, count in by_object.items():
            logger.warning(f"{name}: {count} issue(s) found in the csv file")
        logger.info(f"CSV repair finished: {len(ctx.cache.dirty_paths)} file(s) updated, {len(ctx.issues)} issue(s)")
