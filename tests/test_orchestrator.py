"""End-to-end runs of the migration pipeline."""

from __future__ import annotations

import json

import pytest

from conftest import InMemoryDataService, account_contact_schemas
from orgmigrate.constants import CSV_ISSUES_ERRORS_FILENAME
from orgmigrate.extractors.csv_extractor import CsvFileIO
from orgmigrate.models.migration import EndpointType, MigrationConfig, MigrationStatus
from orgmigrate.models.script import Operation
from orgmigrate.orchestrator import MigrationOrchestrator
from orgmigrate.services.hooks import ON_AFTER, ON_BEFORE, ON_DATA_RETRIEVED, CallbackHookRunner

EXPORT = {
    "objects": [
        {"query": "SELECT Id, Name, Industry FROM Account", "operation": "Upsert"},
        {"query": "SELECT Id, LastName, AccountId FROM Contact", "operation": "Upsert"},
    ],
}


@pytest.fixture
def workdir(tmp_path):
    (tmp_path / "export.json").write_text(json.dumps(EXPORT), encoding="utf-8")
    (tmp_path / "Account.csv").write_text("Id,Name,Industry\nA1,Acme,Tech\n", encoding="utf-8")
    (tmp_path / "Contact.csv").write_text(
        "Id,LastName,AccountId,Account.Name\nC1,Smith,A1,Acme\n", encoding="utf-8"
    )
    return tmp_path


@pytest.fixture
def target():
    return InMemoryDataService(account_contact_schemas())


def make_orchestrator(workdir, target, **kwargs):
    config = MigrationConfig(
        path=str(workdir),
        source=EndpointType.CSVFILE,
        target=EndpointType.ORG,
        noprompt=kwargs.pop("noprompt", False),
    )
    return MigrationOrchestrator(config, target=target, **kwargs)


def load_report(workdir):
    reports = sorted((workdir / "target" / "logs").glob("migration_report_*.json"))
    assert reports
    return json.loads(reports[-1].read_text(encoding="utf-8"))


class TestRun:
    """Complete runs from flat files into an org"""

    def test_files_to_org(self, workdir, target):
        hooks = CallbackHookRunner()

        run = make_orchestrator(workdir, target, hooks=hooks).run_migration()

        assert run.status == MigrationStatus.COMPLETED
        account = target.row("Account", Name="Acme")
        assert target.row("Contact", LastName="Smith")["AccountId"] == account["Id"]
        assert run.task_order["update"] == ["Account", "Contact"]
        assert run.object_summaries["Contact"].inserted == 1
        assert (workdir / "source" / "Account_source.csv").exists()
        assert [c for c in hooks.calls if c[1] is None] == [(ON_BEFORE, None), (ON_DATA_RETRIEVED, None), (ON_AFTER, None)]

    def test_report_saved(self, workdir, target):
        make_orchestrator(workdir, target).run_migration()

        report = load_report(workdir)
        assert report["status"] == "completed"
        assert report["object_summaries"]["Account"]["inserted"] == 1
        assert report["csv_issues_count"] == 0

    def test_target_files_written(self, workdir, target):
        make_orchestrator(workdir, target).run_migration()

        _, rows = CsvFileIO().read_all(str(workdir / "target" / "Account_Upsert_target.csv"))
        assert rows[0]["Name"] == "Acme"
        assert rows[0]["Id"] == target.row("Account", Name="Acme")["Id"]

    def test_missing_org_url_fails(self, workdir):
        config = MigrationConfig(path=str(workdir), source=EndpointType.CSVFILE, target=EndpointType.ORG)

        run = MigrationOrchestrator(config).run_migration()

        assert run.status == MigrationStatus.FAILED
        assert run.errors[0]["type"] == "CommandInitializationError"
        assert load_report(workdir)["status"] == "failed"

    def test_compute_order(self, workdir, target):
        order = make_orchestrator(workdir, target).compute_order()

        assert [t.name for t in order.query] == ["Account", "Contact"]
        assert target.crud_calls == []


class TestFlatFileIssues:
    """Validation outcomes"""

    @pytest.fixture
    def broken(self, workdir):
        (workdir / "Contact.csv").unlink()
        return workdir

    def test_validate_only_writes_nothing(self, broken, target):
        run = make_orchestrator(broken, target).run_migration(validate_only=True)

        assert run.status == MigrationStatus.COMPLETED
        assert run.csv_issues_count == 1
        assert target.crud_calls == []
        _, issues = CsvFileIO().read_all(str(broken / CSV_ISSUES_ERRORS_FILENAME))
        assert issues[0]["sObject name"] == "Contact"

    def test_declined_prompt_cancels(self, broken, target):
        prompts = []

        run = make_orchestrator(broken, target, confirm=lambda m: prompts.append(m) or False).run_migration()

        assert run.status == MigrationStatus.CANCELLED
        assert len(prompts) == 1
        assert target.crud_calls == []

    def test_noprompt_continues(self, broken, target):
        prompts = []

        run = make_orchestrator(
            broken, target, confirm=lambda m: prompts.append(m) or False, noprompt=True
        ).run_migration()

        assert run.status == MigrationStatus.COMPLETED
        assert prompts == []
        assert len(target.calls("Account", Operation.INSERT)) == 1


class TestSourceFileObjects:
    """Objects read from flat files while the source is an org"""

    def test_flagged_object_read_from_file(self, workdir, target):
        (workdir / "export.json").write_text(json.dumps({"objects": [
            EXPORT["objects"][0],
            dict(EXPORT["objects"][1], useSourceCSVFile=True),
        ]}), encoding="utf-8")
        source = InMemoryDataService(
            account_contact_schemas(), {"Account": [{"Id": "A1", "Name": "Acme", "Industry": "Tech"}]}, id_prefix="S"
        )
        config = MigrationConfig(path=str(workdir), source=EndpointType.ORG, target=EndpointType.ORG)

        run = MigrationOrchestrator(config, source=source, target=target).run_migration()

        assert run.status == MigrationStatus.COMPLETED
        assert target.row("Contact", LastName="Smith")["AccountId"] == target.row("Account", Name="Acme")["Id"]
        assert [q for q in source.queries if q.object_name == "Contact"] == []
        assert (workdir / "source" / "Contact_source.csv").exists()
        assert not (workdir / "source" / "Account_source.csv").exists()
