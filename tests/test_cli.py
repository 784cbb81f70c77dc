"""Tests for the command line interface."""

from __future__ import annotations

import argparse
import json

import pytest

from conftest import InMemoryDataService, account_contact_schemas
from orgmigrate import cli
from orgmigrate.models.migration import EndpointType
from orgmigrate.orchestrator import MigrationOrchestrator

ORG_URL = "https://example.test/services/data/v58.0"


def namespace(**overrides):
    values = dict(
        path=".", source="csvfile", target="csvfile", token=None, source_token=None,
        target_token=None, output=None, name="migration", noprompt=False,
    )
    values.update(overrides)
    return argparse.Namespace(**values)


@pytest.fixture
def workdir(tmp_path):
    (tmp_path / "export.json").write_text(json.dumps({"objects": [
        {"query": "SELECT Id, Name FROM Account", "operation": "Upsert"},
        {"query": "SELECT Id, LastName, AccountId FROM Contact", "operation": "Upsert"},
    ]}), encoding="utf-8")
    (tmp_path / "Account.csv").write_text("Id,Name\nA1,Acme\n", encoding="utf-8")
    (tmp_path / "Contact.csv").write_text("Id,LastName,AccountId,Account.Name\nC1,Smith,A1,Acme\n", encoding="utf-8")
    return tmp_path


@pytest.fixture
def target(monkeypatch):
    """Route org endpoints to an in-memory service."""
    service = InMemoryDataService(account_contact_schemas())
    monkeypatch.setattr(
        cli, "MigrationOrchestrator",
        lambda config, **kwargs: MigrationOrchestrator(config, target=service, **kwargs),
    )
    return service


class TestBuildConfig:
    """Argument translation"""

    def test_file_source_org_target(self):
        config = cli.build_config(namespace(target=ORG_URL, token="shared", target_token="own"))

        assert config.source == EndpointType.CSVFILE
        assert config.source_url is None
        assert config.target == EndpointType.ORG
        assert config.target_url == ORG_URL
        assert config.source_token == "shared"
        assert config.target_token == "own"

    def test_output_default(self):
        config = cli.build_config(namespace(path="/data/run"))

        assert config.resolved_output_dir == "/data/run/target"
        assert config.script_path == "/data/run/export.json"


class TestCommands:
    """Subcommands"""

    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 2
        assert "usage" in capsys.readouterr().out

    def test_order(self, workdir, target, capsys):
        code = cli.main(["order", "--path", str(workdir), "--target", ORG_URL])

        out = capsys.readouterr().out
        assert code == 0
        assert "Query order: Account, Contact" in out
        assert "Update order: Account, Contact" in out
        assert target.crud_calls == []

    def test_order_with_two_file_endpoints_fails(self, workdir, capsys):
        code = cli.main(["order", "--path", str(workdir)])

        assert code == 1
        assert "must be an org" in capsys.readouterr().out

    def test_run(self, workdir, target, capsys):
        code = cli.main(["run", "--path", str(workdir), "--target", ORG_URL, "--noprompt"])

        out = capsys.readouterr().out
        assert code == 0
        assert "Status: completed" in out
        assert "Contact: inserted 1" in out
        assert target.row("Contact", LastName="Smith")["AccountId"] == target.row("Account", Name="Acme")["Id"]

    def test_validate_never_prompts(self, workdir, target, monkeypatch):
        (workdir / "Contact.csv").unlink()
        monkeypatch.setattr("builtins.input", lambda message: pytest.fail("prompted during validation"))

        code = cli.main(["validate", "--path", str(workdir), "--target", ORG_URL])

        assert code == 0
        assert target.crud_calls == []
        assert (workdir / "CSVIssuesReport.csv").exists()

    def test_run_declined_prompt(self, workdir, target, monkeypatch, capsys):
        (workdir / "Contact.csv").unlink()
        monkeypatch.setattr("builtins.input", lambda message: "n")

        code = cli.main(["run", "--path", str(workdir), "--target", ORG_URL])

        assert code == 1
        assert "Status: cancelled" in capsys.readouterr().out
