"""Shared fixtures: an in-memory data service and object schemas."""

from __future__ import annotations

import itertools
from typing import Any, Dict, List, Optional

import pytest

from orgmigrate.loaders.base import CrudResult, DataService
from orgmigrate.models.config import ScriptModel
from orgmigrate.models.schema import ObjectSchema
from orgmigrate.models.script import DataMedia, MigrationScript, Operation, QuerySpec, default_relationship_name


def text_field(name: str, **extra: Any) -> Dict[str, Any]:
    return {"name": name, "type": "string", **extra}


def lookup_field(name: str, *reference_to: str, **extra: Any) -> Dict[str, Any]:
    data = {
        "name": name,
        "type": "reference",
        "referenceTo": list(reference_to),
        "relationshipName": default_relationship_name(name),
    }
    data.update(extra)
    return data


def make_schema(name: str, fields: Optional[List[Dict[str, Any]]] = None, **flags: Any) -> ObjectSchema:
    return ObjectSchema.from_dict({"name": name, "fields": list(fields or []), **flags})


def make_script(objects: List[Dict[str, Any]], **options: Any) -> MigrationScript:
    return ScriptModel.model_validate({"objects": objects, **options}).to_script()


class InMemoryDataService(DataService):
    """
    Dictionary-backed data service.

    Queries evaluate IN filters and LIMIT; a raw WHERE predicate is ignored.
    Every query and write is recorded for assertions.
    """

    def __init__(
        self,
        schemas: Optional[List[ObjectSchema]] = None,
        tables: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        media: DataMedia = DataMedia.ORG,
        id_prefix: str = "T",
    ):
        super().__init__(batch_size=200)
        self._media = media
        self.schemas = {s.name: s for s in (schemas or [])}
        self.tables = {name: [dict(r) for r in rows] for name, rows in (tables or {}).items()}
        self.id_prefix = id_prefix
        self.queries: List[QuerySpec] = []
        self.crud_calls: List[tuple] = []
        self._ids = itertools.count(1)

    @property
    def media(self) -> DataMedia:
        return self._media

    def describe(self, object_name: str, is_source: bool) -> Optional[ObjectSchema]:
        return self.schemas.get(object_name)

    def query(self, query: QuerySpec, use_bulk: bool = False) -> List[Dict[str, Any]]:
        self.queries.append(query)
        fields = query.expanded_fields()
        rows = [r for r in self.tables.get(query.object_name, []) if query.matches(r)]
        if query.limit is not None:
            rows = rows[:query.limit]
        return [{f: row.get(f) for f in fields} for row in rows]

    def execute_crud(self, object_name: str, records: List[Dict[str, Any]], operation: Operation) -> CrudResult:
        result = CrudResult(object_name=object_name, operation=operation)
        table = self.tables.setdefault(object_name, [])
        for record in records:
            self.crud_calls.append((object_name, operation, dict(record)))
            output = dict(record)
            if operation == Operation.INSERT:
                output["Id"] = f"{self.id_prefix}{next(self._ids):03d}"
                table.append(dict(output))
            elif operation == Operation.UPDATE:
                for row in table:
                    if row.get("Id") == record["Id"]:
                        row.update(record)
            else:
                table[:] = [r for r in table if r.get("Id") != record["Id"]]
            result.records.append(output)
            result.total_attempted += 1
            result.total_succeeded += 1
        return result

    def calls(self, object_name: str, operation: Operation) -> List[Dict[str, Any]]:
        return [r for name, op, r in self.crud_calls if name == object_name and op == operation]

    def row(self, object_name: str, **match: Any) -> Optional[Dict[str, Any]]:
        for row in self.tables.get(object_name, []):
            if all(row.get(k) == v for k, v in match.items()):
                return row
        return None


def account_contact_schemas() -> List[ObjectSchema]:
    return [
        make_schema("Account", [
            text_field("Name", nameField=True),
            text_field("Industry"),
            lookup_field("ParentId", "Account"),
        ]),
        make_schema("Contact", [
            text_field("LastName", nameField=True),
            text_field("Email", unique=True),
            lookup_field("AccountId", "Account"),
            lookup_field("ReportsToId", "Contact"),
        ]),
        make_schema("Opportunity", [
            text_field("Name", nameField=True),
            lookup_field("AccountId", "Account"),
        ]),
        make_schema("Task", [
            text_field("Subject", nameField=True),
            lookup_field("WhatId", "Account", "Opportunity"),
        ]),
        make_schema("User", [text_field("Username", unique=True), text_field("LastName")]),
        make_schema("RecordType", [
            text_field("DeveloperName"),
            text_field("NamespacePrefix"),
            text_field("SobjectType"),
            text_field("Name", nameField=True),
        ]),
    ]


@pytest.fixture
def schemas() -> List[ObjectSchema]:
    return account_contact_schemas()


@pytest.fixture
def source_org(schemas) -> InMemoryDataService:
    return InMemoryDataService(schemas, id_prefix="S")


@pytest.fixture
def target_org(schemas) -> InMemoryDataService:
    return InMemoryDataService(account_contact_schemas(), id_prefix="T")
