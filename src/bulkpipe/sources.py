"""
Record sources and sinks feeding the batch accumulator and draining query readers.
"""

from __future__ import annotations

import csv
import json
import re
import typing as t
from collections.abc import AsyncIterable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path

import structlog
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from bulkpipe.exceptions import ConfigError
from bulkpipe.models import Record

log = structlog.get_logger(__name__)

DEFAULT_YIELD_PER = 1000

_SQL_STATEMENT = re.compile(r"^\s*(select|with)\b", re.IGNORECASE)


def iter_csv_records(stream: t.TextIO) -> Iterator[Record]:
    """
    Yield one record per CSV row, keyed by the header row.

    All values are strings; normalization happens in the accumulator.

    Parameters
    ----------
    stream : typing.TextIO
        Text stream opened with ``newline=""``.
    """
    reader = csv.DictReader(stream)
    for row in reader:
        # Cells beyond the header land under the None key.
        yield {key: value for key, value in row.items() if key is not None}


def _render_cell(value: t.Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(obj=value)
    return str(object=value)


class CsvRecordWriter:
    """
    Write records as CSV, taking the header from the first record.

    Keys missing from a later record are written as empty cells; keys that
    were not in the first record are ignored.
    """

    def __init__(self, stream: t.TextIO) -> None:
        self._stream = stream
        self._writer: csv.DictWriter | None = None
        self._row_count = 0

    @property
    def row_count(self) -> int:
        return self._row_count

    def write(self, row: Mapping[str, t.Any]) -> None:
        if self._writer is None:
            self._writer = csv.DictWriter(
                self._stream,
                fieldnames=list(row.keys()),
                extrasaction="ignore",
                lineterminator="\n",
            )
            self._writer.writeheader()
        self._writer.writerow({key: _render_cell(value) for key, value in row.items()})
        self._row_count += 1


def write_csv_records(rows: Iterable[Mapping[str, t.Any]], stream: t.TextIO) -> int:
    """
    Write ``rows`` to ``stream`` as CSV.

    Returns
    -------
    int
        Number of data rows written.
    """
    writer = CsvRecordWriter(stream)
    for row in rows:
        writer.write(row)
    return writer.row_count


async def awrite_csv_records(rows: AsyncIterable[Mapping[str, t.Any]], stream: t.TextIO) -> int:
    """Asynchronous variant of :func:`write_csv_records`."""
    writer = CsvRecordWriter(stream)
    async for row in rows:
        writer.write(row)
    return writer.row_count


def resolve_sql(sql: str) -> str:
    """
    Return the statement text for ``sql``.

    Parameters
    ----------
    sql : str
        Either a literal ``SELECT``/``WITH`` statement or the path of a file
        containing one.

    Raises
    ------
    ConfigError
        If ``sql`` is neither a statement nor an existing file.
    """
    if _SQL_STATEMENT.match(sql):
        return sql
    path = Path(sql).expanduser()
    if not path.is_file():
        raise ConfigError(f"'{sql}' is neither a SELECT statement nor an existing file")
    return path.read_text(encoding="utf-8")


@contextmanager
def get_engine(url: str) -> Iterator[Engine]:
    engine = create_engine(url, echo=False)
    try:
        yield engine
    finally:
        engine.dispose()


def iter_sql_records(
    url: str, sql: str, *, yield_per: int = DEFAULT_YIELD_PER
) -> Iterator[Record]:
    """
    Stream the rows of a SQL query as records.

    Rows are fetched ``yield_per`` at a time with a server-side cursor where
    the database driver supports one, so large tables are never loaded whole.

    Parameters
    ----------
    url : str
        SQLAlchemy database URL.
    sql : str
        Statement text or path of a file holding it, see :func:`resolve_sql`.
    yield_per : int, optional
        Number of rows fetched per round trip.
    """
    statement = resolve_sql(sql)
    row_count = 0
    with get_engine(url) as engine, engine.connect() as connection:
        result = connection.execution_options(yield_per=yield_per).execute(text(statement))
        for row in result.mappings():
            row_count += 1
            yield dict(row)
    log.debug(event="SQL source exhausted", row_count=row_count)
