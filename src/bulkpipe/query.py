"""
Query jobs exposed as an asynchronous stream of records.
"""

from __future__ import annotations

import asyncio
import re
import typing as t
from collections.abc import AsyncIterator

import structlog

from bulkpipe.client import BulkClient
from bulkpipe.exceptions import ConfigError, PollingError, RemoteError
from bulkpipe.models import Record, StatusSnapshot

log = structlog.get_logger(__name__)

_SOQL_TOKEN = re.compile(r"'(?:[^'\\]|\\.)*'|[()]|[A-Za-z_][\w.]*|\S")

# Envelope added by the remote API to every query row.
ROW_METADATA_FIELDS = ("attributes",)


def extract_object_name(soql: str) -> str:
    """
    Return the object queried by a SOQL statement.

    The object is the identifier following the first ``FROM`` outside of
    parentheses, so relationship subqueries in the field list are skipped.

    Parameters
    ----------
    soql : str
        SOQL statement, e.g. ``SELECT Id FROM Account``.

    Returns
    -------
    str
        Object API name.

    Raises
    ------
    ConfigError
        If no top-level ``FROM`` clause is found.
    """
    depth = 0
    tokens = _SOQL_TOKEN.findall(soql)
    for index, token in enumerate(tokens):
        if token == "(":
            depth += 1
        elif token == ")":
            depth = max(depth - 1, 0)
        elif depth == 0 and token.upper() == "FROM" and index + 1 < len(tokens):
            candidate = tokens[index + 1]
            if candidate[0].isalpha() or candidate[0] == "_":
                return candidate
    raise ConfigError(f"cannot find the queried object in: {soql!r}")


def strip_row_metadata(row: Record) -> Record:
    return {key: value for key, value in row.items() if key not in ROW_METADATA_FIELDS}


class QueryResultReader:
    """
    Run a query job and iterate over its result rows.

    ``open`` submits the query and starts monitoring; iterating waits for the
    terminal snapshot and then streams the rows of every result set of the
    query batch, without the remote ``attributes`` envelope.

    Parameters
    ----------
    client : BulkClient
        Client configured with the ``query`` operation.
    query_text : str
        Query submitted verbatim as the job's only batch.
    """

    def __init__(self, client: BulkClient, query_text: str) -> None:
        self._client = client
        self._query_text = query_text
        self._open_task: asyncio.Task[None] | None = None
        self._row_count = 0
        self._result_error: PollingError | None = None
        self._result_failed = asyncio.Event()

    @property
    def client(self) -> BulkClient:
        return self._client

    @property
    def row_count(self) -> int:
        return self._row_count

    async def open(self) -> QueryResultReader:
        """
        Submit the query and start monitoring. Safe to call more than once.
        """
        if self._open_task is None:
            self._open_task = asyncio.ensure_future(self._open())
        await self._open_task
        return self

    async def _open(self) -> None:
        batch = await self._client.submit_query(self._query_text)
        log.info(event="Query submitted", batch_id=batch.id, job_id=batch.job_id)
        self._client.on_final(self._log_final)
        self._client.on_polling_error(self._record_result_error)
        self._client.start_monitoring()

    @staticmethod
    def _log_final(snapshot: StatusSnapshot) -> None:
        log.debug(
            event="Query job final",
            is_error=snapshot.is_error,
            result_count=len(snapshot.query_result_ids),
        )

    def _record_result_error(self, error: PollingError) -> None:
        # Once the job and its batch are final only result retrieval is left,
        # and the monitor would retry it on every tick.
        if not (self._client.is_job_final() and self._client.are_batches_final()):
            return
        if self._result_error is None:
            self._result_error = error
            self._result_failed.set()

    async def _wait_for_final(self) -> StatusSnapshot:
        final = asyncio.ensure_future(self._client.wait_for_final())
        failed = asyncio.ensure_future(self._result_failed.wait())
        try:
            await asyncio.wait({final, failed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            final.cancel()
            failed.cancel()
        if final.done() and not final.cancelled():
            return final.result()
        await self._client.stop_monitoring()
        log.warning(event="Query results unavailable", error=str(object=self._result_error))
        raise self._result_error

    async def rows(self) -> AsyncIterator[Record]:
        """
        Yield result rows once the query job is final.

        Raises
        ------
        RemoteError
            If the job or its batch ended in error.
        PollingError
            If the result sets of a finished query could not be fetched.
        """
        await self.open()
        snapshot = await self._wait_for_final()
        if snapshot.is_error:
            raise RemoteError(operation="query", payload=snapshot.summary())
        batch_id = snapshot.batches[0].id if snapshot.batches else None
        for result_id in snapshot.query_result_ids:
            async for row in self._client.iter_query_result_rows(
                batch_id=batch_id, result_id=result_id
            ):
                self._row_count += 1
                yield strip_row_metadata(row)
        log.info(event="Query rows streamed", row_count=self._row_count)

    def __aiter__(self) -> AsyncIterator[Record]:
        return self.rows()

    async def aclose(self) -> None:
        await self._client.stop_monitoring()

    async def __aenter__(self) -> QueryResultReader:
        return await self.open()

    async def __aexit__(self, exc_type: t.Any, exc_val: t.Any, exc_tb: t.Any) -> None:
        await self.aclose()
