"""Tests for the migration file models and query parsing."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from orgmigrate.errors import MalformedQueryError
from orgmigrate.models.config import load_script
from orgmigrate.models.script import (
    MigrationObject,
    Operation,
    QuerySpec,
    compose_complex_value,
    get_complex_field,
    is_complex_field,
    parse_query,
    split_complex_field,
)


class TestParseQuery:
    """SELECT statement parsing"""

    def test_all_clauses(self):
        query = parse_query("SELECT Id, Name FROM Account WHERE Industry = 'Tech' ORDER BY Name LIMIT 5")

        assert query.object_name == "Account"
        assert query.fields == ["Id", "Name"]
        assert query.where == "Industry = 'Tech'"
        assert query.order_by == "Name"
        assert query.limit == 5
        assert query.is_limited

    def test_duplicate_fields_collapsed(self):
        assert parse_query("select Id, name, Name from Account").fields == ["Id", "name"]

    @pytest.mark.parametrize("text", ["", "UPDATE Account", "SELECT FROM Account", "SELECT Id,, Name FROM Account"])
    def test_malformed(self, text):
        with pytest.raises(MalformedQueryError):
            parse_query(text, "Account")

    def test_object_mismatch(self):
        with pytest.raises(MalformedQueryError, match="selects from Contact"):
            parse_query("SELECT Id FROM Contact", "Account")


class TestQuerySpec:
    """Rendering and filtering"""

    def test_to_soql_with_filters(self):
        query = QuerySpec(
            "Account",
            ["Id", "Name"],
            where="Industry = 'Tech'",
            order_by="Name",
            limit=5,
            in_filters=[("Id", ["1", "O'Brien"])],
        )

        assert query.to_soql() == (
            "SELECT Id, Name FROM Account WHERE (Industry = 'Tech') AND Id IN ('1', 'O\\'Brien') "
            "ORDER BY Name LIMIT 5"
        )

    def test_complex_fields_expanded(self):
        query = QuerySpec("RecordType", ["Id", "$$DeveloperName$SobjectType", "DeveloperName"])

        assert query.expanded_fields() == ["Id", "DeveloperName", "SobjectType"]

    def test_matches(self):
        query = QuerySpec("Account", ["Id"]).with_in_filter("Id", ["1"])

        assert query.matches({"Id": "1"})
        assert not query.matches({"Id": "2"})


class TestComplexFields:
    """Composite external ids"""

    def test_compose_and_split(self):
        assert get_complex_field("DeveloperName;SobjectType") == "$$DeveloperName$SobjectType"
        assert split_complex_field("RecordType.$$DeveloperName$SobjectType") == [
            "RecordType.DeveloperName",
            "RecordType.SobjectType",
        ]
        assert is_complex_field("RecordType.$$DeveloperName$SobjectType")
        assert not is_complex_field("Account.Name")

    def test_compose_value(self):
        record = {"DeveloperName": "Business", "NamespacePrefix": None, "SobjectType": "Account"}

        assert compose_complex_value(record, "$$DeveloperName$NamespacePrefix$SobjectType") == "Business;;Account"
        assert compose_complex_value({}, "$$DeveloperName$SobjectType") is None

    def test_external_id_value(self):
        obj = MigrationObject(name="RecordType", external_id="DeveloperName;SobjectType")

        assert obj.has_complex_external_id
        assert obj.get_external_id_value({"DeveloperName": "Business", "SobjectType": "Account"}) == "Business;Account"


class TestScriptFile:
    """export.json loading"""

    def test_load_with_defaults(self, tmp_path):
        path = tmp_path / "export.json"
        path.write_text(json.dumps({
            "objects": [
                {"query": "SELECT Id, Name FROM Account", "operation": "upsert", "externalId": " Name "},
                {"query": "SELECT Id FROM Contact", "operation": "Delete", "deleteOldData": True},
            ],
            "keepObjectOrder": True,
        }), encoding="utf-8")

        script = load_script(str(path), overrides={"excludedObjects": ["Case"]})

        account, contact = script.objects
        assert account.operation == Operation.UPSERT
        assert account.external_id == "Name"
        assert account.parsed_query.fields == ["Id", "Name"]
        assert contact.declaration_index == 1
        assert contact.can_delete
        assert script.keep_object_order
        assert script.excluded_objects == ["Case"]
        assert script.create_target_csv_files

    def test_unknown_operation_rejected(self, tmp_path):
        path = tmp_path / "export.json"
        path.write_text(json.dumps({"objects": [{"query": "SELECT Id FROM Account", "operation": "Merge"}]}), encoding="utf-8")

        with pytest.raises(ValidationError):
            load_script(str(path))

    def test_operation_parse(self):
        assert Operation.parse("hardDelete") == Operation.HARD_DELETE
        assert Operation.parse(Operation.READONLY) is Operation.READONLY
        with pytest.raises(ValueError):
            Operation.parse("Merge")
