import sys
from pathlib import Path

import pytest
from typer.testing import CliRunner

from bulkpipe.cli import main as cli_main
from bulkpipe.cli.main import EXIT_FAILURE, EXIT_USAGE, app
from tests.mocks.bulk import FakeBulkAPI

runner = CliRunner()


@pytest.fixture
def fake_api(monkeypatch) -> FakeBulkAPI:
    api = FakeBulkAPI()
    monkeypatch.setattr(cli_main, "client_factory", api.client_factory())
    return api


@pytest.fixture(autouse=True)
def credentials(monkeypatch):
    monkeypatch.setenv("BULKPIPE_LOGIN_URL", "https://login.example.com")
    monkeypatch.setenv("BULKPIPE_USERNAME", "user@example.com")
    monkeypatch.setenv("BULKPIPE_PASSWORD", "secret")
    monkeypatch.setenv("BULKPIPE_POLL_INTERVAL_SECONDS", "0.01")
    monkeypatch.setenv("BULKPIPE_QUEUED_RETRY_DELAY_SECONDS", "0.01")


@pytest.fixture
def accounts_csv(tmp_path: Path) -> Path:
    path = tmp_path / "accounts.csv"
    path.write_text("Name,Active\nAcme,true\nGlobex,false\nInitech,\n", encoding="utf-8")
    return path


def test_load_csv_file(fake_api: FakeBulkAPI, accounts_csv: Path):
    result = runner.invoke(
        app,
        ["load", "insert", "--object", "Account", "-i", str(accounts_csv), "-b", "2"],
    )
    assert result.exit_code == 0, result.output
    assert "finished" in result.output
    assert fake_api.batch_submissions == 2
    assert list(fake_api.batch_requests.values()) == [
        [{"Name": "Acme", "Active": True}, {"Name": "Globex", "Active": False}],
        [{"Name": "Initech", "Active": None}],
    ]
    assert [state for _, state in fake_api.state_changes] == ["Closed"]


def test_load_from_stdin(fake_api: FakeBulkAPI):
    result = runner.invoke(
        app,
        ["load", "delete", "--object", "Account"],
        input="Id\n001\n002\n",
    )
    assert result.exit_code == 0, result.output
    assert list(fake_api.batch_requests.values()) == [[{"Id": "001"}, {"Id": "002"}]]


def test_load_with_progress(fake_api: FakeBulkAPI, accounts_csv: Path):
    result = runner.invoke(
        app,
        ["load", "insert", "--object", "Account", "-i", str(accounts_csv), "--show-progress"],
    )
    assert result.exit_code == 0, result.output
    assert "(final)" in result.output


def test_upsert_command(fake_api: FakeBulkAPI, accounts_csv: Path):
    result = runner.invoke(app, ["upsert", "Account", "Name", "-i", str(accounts_csv)])
    assert result.exit_code == 0, result.output
    job = next(iter(fake_api.jobs.values()))
    assert job["operation"] == "upsert"
    assert job["externalIdFieldName"] == "Name"


def test_upsert_without_external_id_is_a_usage_error(fake_api: FakeBulkAPI, accounts_csv: Path):
    result = runner.invoke(
        app, ["load", "upsert", "--object", "Account", "-i", str(accounts_csv)]
    )
    assert result.exit_code == EXIT_USAGE
    assert fake_api.requests == []


def test_missing_credentials_is_a_usage_error(monkeypatch, fake_api: FakeBulkAPI):
    monkeypatch.delenv("BULKPIPE_PASSWORD")
    result = runner.invoke(app, ["load", "insert", "--object", "Account"], input="Name\nA\n")
    assert result.exit_code == EXIT_USAGE
    assert "password" in result.output


def test_sql_requires_db_url(fake_api: FakeBulkAPI):
    result = runner.invoke(
        app, ["load", "insert", "--object", "Account", "--sql", "SELECT 1 AS Name"]
    )
    assert result.exit_code == EXIT_USAGE


def test_load_sql_rows(fake_api: FakeBulkAPI, tmp_path: Path):
    db_url = f"sqlite:///{tmp_path / 'empty.db'}"
    result = runner.invoke(
        app,
        [
            "load",
            "insert",
            "--object",
            "Account",
            "--sql",
            "SELECT 'Acme' AS Name UNION ALL SELECT 'Globex'",
            "--db-url",
            db_url,
        ],
    )
    assert result.exit_code == 0, result.output
    assert list(fake_api.batch_requests.values()) == [[{"Name": "Acme"}, {"Name": "Globex"}]]


def test_query_is_not_a_load_operation(fake_api: FakeBulkAPI):
    result = runner.invoke(app, ["load", "query", "--object", "Account"])
    assert result.exit_code == 2
    assert fake_api.requests == []


def test_missing_input_file(fake_api: FakeBulkAPI, tmp_path: Path):
    result = runner.invoke(
        app, ["load", "insert", "--object", "Account", "-i", str(tmp_path / "missing.csv")]
    )
    assert result.exit_code == 2


def test_failed_job_exits_with_failure_status(monkeypatch, accounts_csv: Path):
    api = FakeBulkAPI(batch_outcome="Failed")
    monkeypatch.setattr(cli_main, "client_factory", api.client_factory())
    result = runner.invoke(
        app,
        ["load", "insert", "--object", "Account", "-i", str(accounts_csv), "--fail-on-error"],
    )
    assert result.exit_code == EXIT_FAILURE


def test_rejected_batch_aborts_job(monkeypatch, accounts_csv: Path):
    api = FakeBulkAPI(reject_batch_number=2)
    monkeypatch.setattr(cli_main, "client_factory", api.client_factory())
    result = runner.invoke(
        app, ["load", "insert", "--object", "Account", "-i", str(accounts_csv), "-b", "1"]
    )
    assert result.exit_code == EXIT_FAILURE
    assert [state for _, state in api.state_changes] == ["Aborted"]


def test_export_to_stdout(monkeypatch):
    api = FakeBulkAPI(
        query_result_sets=[
            [
                {"attributes": {"type": "Account"}, "Id": "001", "Name": "Acme"},
                {"attributes": {"type": "Account"}, "Id": "002", "Name": "Globex"},
            ]
        ]
    )
    monkeypatch.setattr(cli_main, "client_factory", api.client_factory())
    result = runner.invoke(app, ["export", "SELECT Id, Name FROM Account"])
    assert result.exit_code == 0, result.output
    assert "Id,Name\n001,Acme\n002,Globex\n" in result.output
    job = next(iter(api.jobs.values()))
    assert job["operation"] == "query"
    assert job["object"] == "Account"


def test_export_to_file(monkeypatch, tmp_path: Path):
    api = FakeBulkAPI(query_result_sets=[[{"Id": "001"}]])
    monkeypatch.setattr(cli_main, "client_factory", api.client_factory())
    output = tmp_path / "accounts.csv"
    result = runner.invoke(app, ["export", "SELECT Id FROM Account", "-o", str(output)])
    assert result.exit_code == 0, result.output
    assert output.read_text(encoding="utf-8") == "Id\n001\n"
    assert "Exported" in result.output


def test_export_of_failed_query(monkeypatch):
    api = FakeBulkAPI(batch_outcome="Failed")
    monkeypatch.setattr(cli_main, "client_factory", api.client_factory())
    result = runner.invoke(app, ["export", "SELECT Id FROM Account"])
    assert result.exit_code == EXIT_FAILURE


def test_export_without_from_is_a_usage_error(fake_api: FakeBulkAPI):
    result = runner.invoke(app, ["export", "SELECT Id"])
    assert result.exit_code == EXIT_USAGE


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0


def test_entry_point_maps_usage_errors(monkeypatch):
    monkeypatch.setattr(sys, "argv", ["bulkpipe", "load", "query", "--object", "Account"])
    with pytest.raises(SystemExit) as excinfo:
        cli_main.main()
    assert excinfo.value.code == EXIT_USAGE
