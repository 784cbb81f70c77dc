"""Builds the per-object dependency graph from declarations and described metadata."""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple

from ..constants import (
    COMPLEX_FIELDS_QUERY_PREFIX,
    DEFAULT_EXTERNAL_IDS,
    ID_FIELD,
    REFERENCE_FIELD_SEPARATOR,
    RESTRICTED_OBJECTS,
)
from ..errors import CommandInitializationError, ExternalIdNotFoundError, MissingFieldsError
from ..loaders.base import DataService
from ..models.schema import ObjectSchema
from ..models.script import (
    DataMedia,
    LookupField,
    MigrationObject,
    MigrationScript,
    Operation,
    is_complex_field,
    parse_query,
)
from ..models.task import MigrationTask

logger = logging.getLogger(__name__)

EXPLICIT_PARENT_SEPARATOR = "$"


def _split_explicit_parent(field_name: str) -> Tuple[str, str]:
    """``WhatId$Account`` -> (``WhatId``, ``Account``)."""
    if (
        EXPLICIT_PARENT_SEPARATOR in field_name
        and not field_name.startswith(COMPLEX_FIELDS_QUERY_PREFIX)
        and REFERENCE_FIELD_SEPARATOR not in field_name
    ):
        name, parent = field_name.split(EXPLICIT_PARENT_SEPARATOR, 1)
        return name, parent
    return field_name, ""


class DependencyGraph:
    """
    Turns declared objects into linked, described and normalized migration objects.

    Handles:
    - Exclusion of declared, missing and unreferenced objects
    - Schema description, optionally concurrent across objects
    - External id defaults and validation
    - Lookup linking, including auto-added parents
    - Operation downgrades driven by metadata
    """

    def __init__(
        self,
        script: MigrationScript,
        source: DataService,
        target: DataService,
        max_workers: int = 4,
    ):
        """
        Initialize the graph builder.

        Args:
            script: Declared migration
            source: Source endpoint
            target: Target endpoint
            max_workers: Thread count for concurrent describe calls
        """
        self.script = script
        self.source = source
        self.target = target
        self.max_workers = max_workers
        self._explicit_parents: Dict[str, Dict[str, str]] = {}

    @property
    def objects(self) -> List[MigrationObject]:
        return self.script.active_objects

    def get_object(self, name: str) -> Optional[MigrationObject]:
        obj = self.script.get_object(name)
        return obj if obj is not None and not obj.excluded else None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def build(self) -> List[MigrationTask]:
        """
        Build the graph and return one task per surviving object.

        Raises:
            CommandInitializationError: on structural problems in the declarations
        """
        if self.source.media == DataMedia.FILE and self.target.media == DataMedia.FILE:
            raise CommandInitializationError("At least one side of the migration must be an org")

        self._apply_declared_exclusions()
        for obj in self.objects:
            self._prepare_query(obj)

        self._describe_all(self.objects)
        for obj in self.objects:
            self._filter_query_fields(obj)
        for obj in self.objects:
            self._resolve_external_id(obj)

        self._link_lookups()
        self._prune_excluded_references()
        self._normalize_operations()

        tasks = self._create_tasks()
        logger.info(f"Dependency graph built: {len(tasks)} object(s)")
        return tasks

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    def _apply_declared_exclusions(self) -> None:
        excluded = {name.lower() for name in self.script.excluded_objects}
        seen = set()
        for index, obj in enumerate(self.script.objects):
            obj.declaration_index = index
            if obj.excluded:
                continue
            if obj.name.lower() in excluded:
                obj.excluded = True
                logger.warning(f"{obj.name}: excluded by configuration")
            elif obj.name.lower() in seen:
                obj.excluded = True
                logger.warning(f"{obj.name}: declared more than once, keeping the first declaration")
            seen.add(obj.name.lower())

    def _prepare_query(self, obj: MigrationObject) -> None:
        if obj.parsed_query is None:
            obj.parsed_query = parse_query(obj.query or f"SELECT Id FROM {obj.name}", obj.name)

        explicit = {}
        fields = []
        for name in obj.parsed_query.fields:
            field_name, parent = _split_explicit_parent(name)
            if parent:
                explicit[field_name] = parent
            fields.append(field_name)
        obj.parsed_query.fields = fields
        self._explicit_parents[obj.name] = explicit

        if not obj.external_id and obj.name in DEFAULT_EXTERNAL_IDS:
            obj.external_id = DEFAULT_EXTERNAL_IDS[obj.name]

    # ------------------------------------------------------------------
    # Describe
    # ------------------------------------------------------------------

    def _describe(self, obj: MigrationObject) -> Tuple[Optional[ObjectSchema], Optional[ObjectSchema]]:
        source_schema = None
        target_schema = None
        if self.source.media == DataMedia.ORG:
            source_schema = self.source.describe(obj.name, True)
        if self.target.media == DataMedia.ORG:
            target_schema = self.target.describe(obj.target_object_name, False)
        return source_schema, target_schema

    def _describe_all(self, objects: List[MigrationObject]) -> None:
        if self.script.concurrent_describe and len(objects) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                results = list(executor.map(self._describe, objects))
        else:
            results = [self._describe(obj) for obj in objects]

        for obj, (source_schema, target_schema) in zip(objects, results):
            self._apply_schemas(obj, source_schema, target_schema)

    def _apply_schemas(self, obj: MigrationObject, source_schema, target_schema) -> bool:
        missing_source = self.source.media == DataMedia.ORG and source_schema is None
        missing_target = self.target.media == DataMedia.ORG and target_schema is None
        if missing_source or missing_target:
            side = "source" if missing_source else "target"
            logger.warning(f"{obj.name}: object does not exist in the {side} metadata and will be excluded")
            obj.excluded = True
            return False

        obj.source_schema = source_schema or target_schema
        obj.target_schema = target_schema or source_schema
        return True

    # ------------------------------------------------------------------
    # Fields and external ids
    # ------------------------------------------------------------------

    def _filter_query_fields(self, obj: MigrationObject) -> None:
        schema = obj.source_schema
        kept: List[str] = []
        for name in obj.parsed_query.fields:
            if REFERENCE_FIELD_SEPARATOR in name or is_complex_field(name):
                kept.append(name)
                continue
            describe = schema.get_field(name)
            if describe is None:
                logger.warning(f"{obj.name}: field '{name}' does not exist in metadata and was removed from the query")
                continue
            kept.append(describe.name)

        if not kept:
            raise MissingFieldsError(obj.name)

        if kept == [ID_FIELD] and not obj.is_delete_operation:
            logger.warning(f"{obj.name}: no fields left besides Id, the object will be excluded")
            obj.excluded = True
            return

        obj.parsed_query.fields = kept
        obj.ensure_field_in_query(ID_FIELD)

    def _default_external_id(self, obj: MigrationObject) -> str:
        if obj.name in DEFAULT_EXTERNAL_IDS:
            return DEFAULT_EXTERNAL_IDS[obj.name]
        fields = list(obj.source_schema.fields.values())
        for predicate in (
            lambda f: f.name_field,
            lambda f: f.auto_number,
            lambda f: f.unique and not f.is_lookup,
        ):
            for describe in fields:
                if describe.name != ID_FIELD and predicate(describe):
                    return describe.name
        return ID_FIELD

    def _resolve_external_id(self, obj: MigrationObject) -> None:
        if obj.excluded:
            return
        if not obj.external_id:
            obj.external_id = self._default_external_id(obj)
            logger.debug(f"{obj.name}: using default external id '{obj.external_id}'")

        parts = []
        for part in obj.external_id_fields:
            if REFERENCE_FIELD_SEPARATOR in part:
                parts.append(part)
                continue
            describe = obj.source_schema.get_field(part)
            if describe is None:
                raise ExternalIdNotFoundError(obj.name, part)
            parts.append(describe.name)
        obj.external_id = ";".join(parts)

        if obj.has_complex_external_id:
            obj.ensure_field_in_query(obj.complex_external_id)
        else:
            obj.ensure_field_in_query(obj.external_id)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _link_lookups(self) -> None:
        index = 0
        while index < len(self.script.objects):
            obj = self.script.objects[index]
            index += 1
            if obj.excluded:
                continue
            self._link_object_lookups(obj)

    def _polymorphic_fields(self, obj: MigrationObject) -> List[str]:
        if self.source.media == DataMedia.ORG:
            return self.source.polymorphic_fields(obj.name)
        return self.target.polymorphic_fields(obj.target_object_name)

    def _link_object_lookups(self, obj: MigrationObject) -> None:
        explicit = self._explicit_parents.get(obj.name, {})
        polymorphic = {name.lower() for name in self._polymorphic_fields(obj)}
        obj.lookups = {}

        for name in list(obj.parsed_query.fields):
            if name == ID_FIELD or REFERENCE_FIELD_SEPARATOR in name or is_complex_field(name):
                continue
            describe = obj.source_schema.get_field(name)
            if describe is None or not describe.is_lookup or not describe.reference_to:
                continue

            lookup = LookupField(
                name=describe.name,
                owner_name=obj.name,
                reference_to=list(describe.reference_to),
                relationship_name=describe.relationship_name,
                is_master_detail=describe.is_master_detail,
                is_polymorphic=describe.is_polymorphic or describe.name.lower() in polymorphic,
                explicit_parent=explicit.get(describe.name, ""),
                writable=describe.creatable or describe.updateable,
            )

            parent_name = self._choose_parent(lookup)
            if parent_name:
                parent = self._find_or_add_parent(obj, lookup, parent_name)
                if parent is None:
                    obj.remove_field_from_query(lookup.name)
                    continue
                lookup.parent = parent
            else:
                logger.warning(
                    f"{obj.name}.{lookup.name}: polymorphic lookup has no declared parent among "
                    f"{', '.join(lookup.reference_to)}"
                )

            obj.lookups[lookup.name] = lookup
            if lookup.parent is not None and lookup.parent.external_id != ID_FIELD:
                obj.ensure_field_in_query(lookup.reference_column)

    def _choose_parent(self, lookup: LookupField) -> str:
        if lookup.explicit_parent:
            return lookup.explicit_parent
        if not lookup.is_polymorphic:
            return lookup.reference_to[0]
        for candidate in lookup.reference_to:
            if self.get_object(candidate) is not None:
                return candidate
        return ""

    def _find_or_add_parent(self, obj: MigrationObject, lookup: LookupField, parent_name: str) -> Optional[MigrationObject]:
        declared = self.script.get_object(parent_name)
        if declared is not None:
            if declared.excluded:
                logger.warning(f"{obj.name}.{lookup.name}: parent {parent_name} is excluded, field removed")
                return None
            return declared

        excluded = {name.lower() for name in self.script.excluded_objects}
        if parent_name.lower() in excluded:
            logger.warning(f"{obj.name}.{lookup.name}: parent {parent_name} is excluded, field removed")
            return None

        parent = MigrationObject(
            name=parent_name,
            query=f"SELECT Id FROM {parent_name}",
            operation=Operation.READONLY,
            master=False,
            is_auto_added=True,
            declaration_index=len(self.script.objects),
        )
        self._prepare_query(parent)
        source_schema, target_schema = self._describe(parent)
        if not self._apply_schemas(parent, source_schema, target_schema):
            return None
        self._resolve_external_id(parent)
        self.script.objects.append(parent)
        logger.info(f"{parent_name}: added automatically as the parent of {obj.name}.{lookup.name}")
        return parent

    def _prune_excluded_references(self) -> None:
        changed = True
        while changed:
            changed = False
            for obj in self.objects:
                for name, lookup in list(obj.lookups.items()):
                    if lookup.parent is not None and lookup.parent.excluded:
                        del obj.lookups[name]
                        obj.remove_field_from_query(name)
                        obj.remove_field_from_query(lookup.reference_column)
                        logger.warning(f"{obj.name}.{name}: parent {lookup.parent.name} is excluded, field removed")
                        changed = True

            for obj in self.objects:
                if obj.is_auto_added and not obj.has_child_lookups(self.objects):
                    obj.excluded = True
                    logger.warning(f"{obj.name}: added automatically but no longer referenced, excluded")
                    changed = True

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _normalize_operations(self) -> None:
        for obj in self.objects:
            original = obj.operation
            schema = obj.target_schema

            if obj.name in RESTRICTED_OBJECTS and obj.operation != Operation.READONLY:
                obj.operation = Operation.READONLY
            elif obj.operation == Operation.UPSERT:
                if schema.createable and schema.updateable:
                    pass
                elif schema.createable:
                    obj.operation = Operation.INSERT
                elif schema.updateable:
                    obj.operation = Operation.UPDATE
                else:
                    obj.operation = Operation.READONLY
            elif obj.operation == Operation.INSERT and not schema.createable:
                obj.operation = Operation.READONLY
            elif obj.operation == Operation.UPDATE and not schema.updateable:
                obj.operation = Operation.READONLY
            elif obj.is_delete_operation and not schema.deletable:
                obj.operation = Operation.READONLY

            if obj.can_update and not obj.fields_to_update:
                obj.operation = Operation.READONLY

            if obj.delete_old_data and not schema.deletable:
                logger.warning(f"{obj.name}: target records cannot be deleted, deleteOldData ignored")
                obj.delete_old_data = False

            if obj.operation != original:
                logger.warning(f"{obj.name}: operation {original.value} changed to {obj.operation.value}")

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _create_tasks(self) -> List[MigrationTask]:
        objects = self.objects
        tasks = []
        for obj in objects:
            process_all = obj.master or obj.is_special_object or obj.is_without_relationships(objects)
            task = MigrationTask(
                obj=obj,
                process_all_source=obj.process_all_source or process_all,
                process_all_target=(
                    obj.process_all_target
                    or process_all
                    or obj.has_complex_external_id
                    or obj.has_autonumber_external_id
                ),
            )
            tasks.append(task)
            logger.debug(
                f"{obj.name}: operation={obj.operation.value}, external id={obj.external_id}, "
                f"lookups={list(obj.lookups)}"
            )
        return tasks
