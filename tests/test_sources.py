"""
Tests for CSV and SQL record sources in bulkpipe.sources.
"""

import io
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text

from bulkpipe.exceptions import ConfigError
from bulkpipe.sources import (
    awrite_csv_records,
    iter_csv_records,
    iter_sql_records,
    resolve_sql,
    write_csv_records,
)


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """
    Create a small SQLite database of accounts.
    """
    url = f"sqlite:///{tmp_path / 'accounts.db'}"
    engine = create_engine(url)
    with engine.begin() as connection:
        connection.execute(text("CREATE TABLE accounts (name TEXT, employees INTEGER)"))
        connection.execute(
            text("INSERT INTO accounts (name, employees) VALUES (:name, :employees)"),
            [{"name": f"acct-{index}", "employees": index} for index in range(5)],
        )
    engine.dispose()
    return url


def test_iter_csv_records():
    stream = io.StringIO("Name,Active,Note\nAcme,true,\nGlobex,false,big\n")
    assert list(iter_csv_records(stream)) == [
        {"Name": "Acme", "Active": "true", "Note": ""},
        {"Name": "Globex", "Active": "false", "Note": "big"},
    ]


def test_iter_csv_records_drops_extra_cells():
    stream = io.StringIO("Name\nAcme,extra\n")
    assert list(iter_csv_records(stream)) == [{"Name": "Acme"}]


def test_write_csv_records():
    stream = io.StringIO()
    count = write_csv_records(
        [
            {"Id": "001", "Name": "Acme", "Active": True, "Owner": None},
            {"Id": "002", "Name": "Globex", "Active": False},
        ],
        stream,
    )
    assert count == 2
    assert stream.getvalue() == "Id,Name,Active,Owner\n001,Acme,true,\n002,Globex,false,\n"


def test_write_csv_records_serializes_nested_values():
    stream = io.StringIO()
    write_csv_records([{"Id": "001", "Owner": {"Name": "Ann"}}], stream)
    assert stream.getvalue() == 'Id,Owner\n001,"{""Name"": ""Ann""}"\n'


def test_write_no_rows_writes_nothing():
    stream = io.StringIO()
    assert write_csv_records([], stream) == 0
    assert stream.getvalue() == ""


@pytest.mark.asyncio
async def test_awrite_csv_records():
    async def rows():
        yield {"Id": "001"}
        yield {"Id": "002"}

    stream = io.StringIO()
    assert await awrite_csv_records(rows(), stream) == 2
    assert stream.getvalue() == "Id\n001\n002\n"


def test_resolve_sql_literal_and_file(tmp_path: Path):
    assert resolve_sql("  select 1") == "  select 1"
    query_file = tmp_path / "query.sql"
    query_file.write_text("SELECT name FROM accounts", encoding="utf-8")
    assert resolve_sql(str(query_file)) == "SELECT name FROM accounts"


def test_resolve_sql_rejects_unknown_input(tmp_path: Path):
    with pytest.raises(ConfigError):
        resolve_sql(str(tmp_path / "missing.sql"))


def test_iter_sql_records(db_url: str):
    records = list(
        iter_sql_records(
            url=db_url,
            sql="SELECT name AS Name, employees AS Employees FROM accounts ORDER BY employees",
            yield_per=2,
        )
    )
    assert len(records) == 5
    assert records[0] == {"Name": "acct-0", "Employees": 0}
    assert records[-1] == {"Name": "acct-4", "Employees": 4}


def test_iter_sql_records_from_file(db_url: str, tmp_path: Path):
    query_file = tmp_path / "accounts.sql"
    query_file.write_text("SELECT name FROM accounts WHERE employees > 2", encoding="utf-8")
    assert list(iter_sql_records(url=db_url, sql=str(query_file))) == [
        {"name": "acct-3"},
        {"name": "acct-4"},
    ]
