"""Tests for query, update and delete ordering."""

from __future__ import annotations

import logging

from orgmigrate.models.script import LookupField, MigrationObject, Operation
from orgmigrate.models.task import MigrationTask
from orgmigrate.services.task_ordering import TaskOrder, TaskOrderingEngine


def make_obj(name, operation=Operation.UPSERT, index=0, **kwargs):
    return MigrationObject(name=name, operation=operation, declaration_index=index, **kwargs)


def link(child, field_name, parent, master_detail=False):
    child.lookups[field_name] = LookupField(
        name=field_name,
        owner_name=child.name,
        reference_to=[parent.name],
        is_master_detail=master_detail,
        parent=parent,
    )


def make_tasks(*objects):
    return [MigrationTask(obj=o) for o in objects]


def names(tasks):
    return [t.name for t in tasks]


class TestParentFirst:
    """Hard edges"""

    def test_lookup_parent_before_child(self):
        contact = make_obj("Contact", index=0, delete_old_data=True)
        account = make_obj("Account", index=1, delete_old_data=True)
        link(contact, "AccountId", account)

        order = TaskOrderingEngine().build_order(make_tasks(contact, account))

        assert names(order.query) == ["Account", "Contact"]
        assert names(order.update) == ["Account", "Contact"]
        assert names(order.delete) == ["Contact", "Account"]
        assert order.correctness_risks == []

    def test_record_type_and_readonly_first_in_query_order(self):
        account = make_obj("Account", index=0)
        user = make_obj("User", Operation.READONLY, index=1)
        record_type = make_obj("RecordType", Operation.READONLY, index=2)
        link(account, "RecordTypeId", record_type)

        order = TaskOrderingEngine().build_order(make_tasks(account, user, record_type))

        assert names(order.query) == ["RecordType", "User", "Account"]
        assert names(order.update) == ["Account"]
        assert order.delete == []

    def test_readonly_objects_keep_declared_order(self):
        user = make_obj("User", Operation.READONLY, index=0)
        group = make_obj("Group", Operation.READONLY, index=1)

        order = TaskOrderingEngine().build_order(make_tasks(group, user))

        assert names(order.query) == ["User", "Group"]

    def test_every_task_appears_once(self):
        a = make_obj("A", index=0)
        b = make_obj("B", index=1)
        c = make_obj("C", index=2)
        link(c, "BId", b)
        link(b, "AId", a)
        link(a, "CId", c)

        order = TaskOrderingEngine().build_order(make_tasks(a, b, c))

        assert sorted(names(order.query)) == ["A", "B", "C"]
        assert sorted(names(order.update)) == ["A", "B", "C"]


class TestCycles:
    """Cycle breaking"""

    def test_lookup_cycle_broken_by_declaration_order(self, caplog):
        a = make_obj("A", index=0)
        b = make_obj("B", index=1)
        link(a, "BId", b)
        link(b, "AId", a)

        with caplog.at_level(logging.WARNING):
            order = TaskOrderingEngine().build_order(make_tasks(b, a))

        assert names(order.update) == ["A", "B"]
        assert "cycle" in caplog.text

    def test_cycle_never_places_child_before_its_master(self):
        detail = make_obj("Detail", index=0)
        master = make_obj("Master", index=1)
        link(detail, "MasterId", master, master_detail=True)
        link(master, "LatestDetailId", detail)

        order = TaskOrderingEngine().build_order(make_tasks(detail, master))

        assert names(order.update) == ["Master", "Detail"]
        assert names(order.query) == ["Master", "Detail"]


class TestOverrides:
    """Soft precedence rules and bounded passes"""

    def test_special_query_order_applies_to_query_only(self):
        account = make_obj("Account", index=0)
        relation = make_obj("AccountContactRelation", index=1)
        link(relation, "AccountId", account)

        order = TaskOrderingEngine().build_order(make_tasks(account, relation))

        assert names(order.query) == ["AccountContactRelation", "Account"]
        assert names(order.update) == ["Account", "AccountContactRelation"]

    def test_non_master_relation_stays_behind_master_parents(self):
        account = make_obj("Account", index=0)
        contact = make_obj("Contact", index=1)
        relation = make_obj("AccountContactRelation", index=2, master=False)
        link(relation, "AccountId", account)
        link(relation, "ContactId", contact)

        order = TaskOrderingEngine().build_order(make_tasks(account, contact, relation))

        assert names(order.query) == ["Account", "Contact", "AccountContactRelation"]
        assert order.correctness_risks == []

    def test_conflicting_rules_are_recorded_as_risk(self, caplog):
        a = make_obj("A", index=0)
        b = make_obj("B", index=1)
        engine = TaskOrderingEngine(max_iterations=10)
        result = TaskOrder()

        with caplog.at_level(logging.WARNING):
            ordered = engine._apply_precedence(make_tasks(a, b), {"A": ["B"], "B": ["A"]}, result, "query")

        assert sorted(names(ordered)) == ["A", "B"]
        assert len(result.correctness_risks) == 1
        assert "did not settle" in result.correctness_risks[0]
        assert "Correctness risk" in caplog.text


    def test_unsettled_master_detail_chain_is_recorded_as_risk(self):
        a = make_obj("A", index=0)
        b = make_obj("B", index=1)
        c = make_obj("C", index=2)
        link(c, "BId", b, master_detail=True)
        link(b, "AId", a, master_detail=True)
        result = TaskOrder()

        ordered = TaskOrderingEngine(max_iterations=1)._stabilize(make_tasks(c, b, a), result, "update")

        assert names(ordered) == ["A", "B", "C"]
        assert result.correctness_risks == ["update order: master/detail precedence did not settle within 1 iterations"]

    def test_master_detail_chain_settles(self):
        a = make_obj("A", index=0)
        b = make_obj("B", index=1)
        c = make_obj("C", index=2)
        link(c, "BId", b, master_detail=True)
        link(b, "AId", a, master_detail=True)
        result = TaskOrder()

        ordered = TaskOrderingEngine()._stabilize(make_tasks(c, b, a), result, "update")

        assert names(ordered) == ["A", "B", "C"]
        assert result.correctness_risks == []


class TestDeclaredOrder:
    """keepObjectOrder mode"""

    def test_declared_order_with_record_type_first(self):
        contact = make_obj("Contact", index=0, delete_old_data=True)
        account = make_obj("Account", index=1, delete_old_data=True)
        record_type = make_obj("RecordType", Operation.READONLY, index=2)
        link(contact, "AccountId", account)

        order = TaskOrderingEngine().build_order(make_tasks(contact, account, record_type), declared_order_only=True)

        assert names(order.query) == ["RecordType", "Contact", "Account"]
        assert names(order.update) == ["Contact", "Account"]
        assert names(order.delete) == ["Contact", "Account"]


class TestLegacyChain:
    """Insertion heuristic"""

    def test_parent_spliced_before_child(self):
        contact = make_obj("Contact", index=0)
        account = make_obj("Account", index=1)
        record_type = make_obj("RecordType", Operation.READONLY, index=2)
        link(contact, "AccountId", account)

        order = TaskOrderingEngine(use_legacy_chain=True).build_order(make_tasks(contact, account, record_type))

        assert names(order.query) == ["RecordType", "Account", "Contact"]
        assert names(order.update) == ["Account", "Contact"]
