"""Tests for building linked migration objects from declarations and metadata."""

from __future__ import annotations

import pytest

from conftest import InMemoryDataService, account_contact_schemas, make_schema, make_script, text_field
from orgmigrate.errors import CommandInitializationError, ExternalIdNotFoundError, MissingFieldsError
from orgmigrate.models.script import DataMedia, Operation
from orgmigrate.services.dependency_graph import DependencyGraph


def build(objects, source, target, **options):
    script = make_script(objects, **options)
    tasks = DependencyGraph(script, source, target).build()
    return script, {t.name: t for t in tasks}


class TestLinking:
    """Lookup resolution"""

    def test_missing_parent_is_added_readonly(self, source_org, target_org):
        script, tasks = build(
            [{"query": "SELECT Id, LastName, AccountId FROM Contact", "operation": "Upsert", "externalId": "LastName"}],
            source_org,
            target_org,
        )

        assert list(tasks) == ["Contact", "Account"]
        account = tasks["Account"].obj
        assert account.is_auto_added
        assert account.operation == Operation.READONLY
        assert account.external_id == "Name"
        contact = tasks["Contact"].obj
        assert contact.lookups["AccountId"].parent is account
        assert "Account.Name" in contact.fields_in_query

    def test_declared_parent_is_reused(self, source_org, target_org):
        _, tasks = build(
            [
                {"query": "SELECT Id, LastName, AccountId FROM Contact", "operation": "Upsert"},
                {"query": "SELECT Id, Name FROM Account", "operation": "Upsert"},
            ],
            source_org,
            target_org,
        )

        assert tasks["Contact"].obj.lookups["AccountId"].parent is tasks["Account"].obj
        assert not tasks["Account"].obj.is_auto_added

    def test_excluded_parent_removes_lookup_field(self, source_org, target_org):
        _, tasks = build(
            [{"query": "SELECT Id, LastName, AccountId FROM Contact", "operation": "Upsert"}],
            source_org,
            target_org,
            excludedObjects=["Account"],
        )

        contact = tasks["Contact"].obj
        assert list(tasks) == ["Contact"]
        assert "AccountId" not in contact.lookups
        assert "AccountId" not in contact.fields_in_query

    def test_self_reference(self, source_org, target_org):
        _, tasks = build(
            [{"query": "SELECT Id, LastName, ReportsToId FROM Contact", "operation": "Upsert"}],
            source_org,
            target_org,
        )

        lookup = tasks["Contact"].obj.lookups["ReportsToId"]
        assert lookup.is_self_reference
        assert "ReportsTo.LastName" in tasks["Contact"].obj.fields_in_query


class TestPolymorphic:
    """Lookups referencing several object types"""

    def test_first_declared_candidate_wins(self, source_org, target_org):
        _, tasks = build(
            [
                {"query": "SELECT Id, Subject, WhatId FROM Task", "operation": "Upsert"},
                {"query": "SELECT Id, Name FROM Opportunity", "operation": "Upsert"},
            ],
            source_org,
            target_org,
        )

        assert tasks["Task"].obj.lookups["WhatId"].parent_name == "Opportunity"

    def test_explicit_parent(self, source_org, target_org):
        _, tasks = build(
            [{"query": "SELECT Id, Subject, WhatId$Account FROM Task", "operation": "Upsert"}],
            source_org,
            target_org,
        )

        task = tasks["Task"].obj
        assert "WhatId" in task.fields_in_query
        assert task.lookups["WhatId"].parent_name == "Account"
        assert tasks["Account"].obj.is_auto_added

    def test_unresolved_lookup_kept_without_parent(self, source_org, target_org, caplog):
        _, tasks = build(
            [{"query": "SELECT Id, Subject, WhatId FROM Task", "operation": "Upsert"}],
            source_org,
            target_org,
        )

        lookup = tasks["Task"].obj.lookups["WhatId"]
        assert lookup.is_polymorphic_unresolved
        assert list(tasks) == ["Task"]
        assert "no declared parent" in caplog.text


class TestMetadata:
    """Describe-driven exclusions and external ids"""

    def test_default_external_ids(self, source_org, target_org):
        _, tasks = build(
            [
                {"query": "SELECT Id, Username FROM User", "operation": "Readonly"},
                {"query": "SELECT Id, Name FROM RecordType", "operation": "Readonly"},
            ],
            source_org,
            target_org,
        )

        assert tasks["User"].obj.external_id == "Username"
        record_type = tasks["RecordType"].obj
        assert record_type.external_id == "DeveloperName;NamespacePrefix;SobjectType"
        assert "$$DeveloperName$NamespacePrefix$SobjectType" in record_type.fields_in_query

    def test_unknown_external_id(self, source_org, target_org):
        with pytest.raises(ExternalIdNotFoundError):
            build(
                [{"query": "SELECT Id, Name FROM Account", "operation": "Upsert", "externalId": "Code__c"}],
                source_org,
                target_org,
            )

    def test_object_missing_from_metadata_is_excluded(self, source_org, target_org):
        script, tasks = build(
            [
                {"query": "SELECT Id, Name FROM Widget__c", "operation": "Upsert"},
                {"query": "SELECT Id, Name FROM Account", "operation": "Upsert"},
            ],
            source_org,
            target_org,
        )

        assert list(tasks) == ["Account"]
        assert script.get_object("Widget__c").excluded

    def test_unknown_fields_dropped_from_query(self, source_org, target_org):
        _, tasks = build(
            [{"query": "SELECT Id, Name, Bogus__c FROM Account", "operation": "Upsert"}],
            source_org,
            target_org,
        )

        assert tasks["Account"].obj.fields_in_query == ["Id", "Name"]

    def test_no_fields_left(self, source_org, target_org):
        with pytest.raises(MissingFieldsError):
            build([{"query": "SELECT Bogus__c FROM Account", "operation": "Upsert"}], source_org, target_org)

    def test_id_only_query_is_excluded(self, source_org, target_org):
        _, tasks = build(
            [
                {"query": "SELECT Id FROM Opportunity", "operation": "Upsert"},
                {"query": "SELECT Id, Name FROM Account", "operation": "Upsert"},
            ],
            source_org,
            target_org,
        )

        assert "Opportunity" not in tasks

    def test_both_sides_files_rejected(self, schemas):
        source = InMemoryDataService(schemas, media=DataMedia.FILE)
        target = InMemoryDataService(schemas, media=DataMedia.FILE)

        with pytest.raises(CommandInitializationError):
            build([{"query": "SELECT Id, Name FROM Account", "operation": "Upsert"}], source, target)


class TestOperations:
    """Operation downgrades"""

    def test_upsert_becomes_update_when_target_cannot_create(self, source_org):
        schemas = [s for s in account_contact_schemas() if s.name != "Account"]
        schemas.append(make_schema("Account", [text_field("Name", nameField=True)], createable=False))
        target = InMemoryDataService(schemas)

        _, tasks = build([{"query": "SELECT Id, Name FROM Account", "operation": "Upsert"}], source_org, target)

        assert tasks["Account"].obj.operation == Operation.UPDATE

    def test_restricted_object_becomes_readonly(self, source_org, target_org):
        _, tasks = build([{"query": "SELECT Id, Username FROM User", "operation": "Upsert"}], source_org, target_org)

        assert tasks["User"].obj.operation == Operation.READONLY

    def test_delete_old_data_ignored_when_not_deletable(self, source_org):
        schemas = [s for s in account_contact_schemas() if s.name != "Account"]
        schemas.append(make_schema("Account", [text_field("Name", nameField=True)], deletable=False))
        target = InMemoryDataService(schemas)

        _, tasks = build(
            [{"query": "SELECT Id, Name FROM Account", "operation": "Upsert", "deleteOldData": True}],
            source_org,
            target,
        )

        assert not tasks["Account"].obj.delete_old_data

    def test_unrelated_object_processes_all_records(self, source_org, target_org):
        _, tasks = build(
            [{"query": "SELECT Id, Name FROM Account", "operation": "Upsert", "master": False}],
            source_org,
            target_org,
        )

        assert tasks["Account"].process_all_source
        assert tasks["Account"].process_all_target
