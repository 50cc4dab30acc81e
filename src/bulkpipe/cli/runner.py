"""
Asynchronous drivers behind the CLI commands.

Both drivers abort the remote job on any failure, including a cancellation
caused by an interrupt, and give the abort at most ``abort_grace_seconds``.
"""

from __future__ import annotations

import asyncio
import typing as t
from collections.abc import AsyncIterable, Iterable, Mapping

import httpx
import structlog

from bulkpipe.accumulator import BatchAccumulator
from bulkpipe.client import BulkClient
from bulkpipe.exceptions import BulkPipeError, RemoteError
from bulkpipe.logging import logging_context
from bulkpipe.models import JobTransition, StatusSnapshot
from bulkpipe.query import QueryResultReader
from bulkpipe.sources import awrite_csv_records
from bulkpipe.status import MonitorState

log = structlog.get_logger(__name__)

SnapshotPrinter = t.Callable[[StatusSnapshot], t.Any]


async def abort_job_quietly(
    client: BulkClient, *, grace_seconds: float
) -> JobTransition | None:
    """
    Try once to abort the job of ``client`` within ``grace_seconds``.

    Failures are logged, not raised, since the caller is already handling
    an error of its own.
    """
    if not client.has_job:
        return None
    try:
        transition = await asyncio.wait_for(client.abort_job(), timeout=grace_seconds)
    except (TimeoutError, httpx.HTTPError, BulkPipeError) as error:
        log.warning(event="Best-effort abort failed", error=str(object=error) or type(error).__name__)
        return None
    log.info(event="Abort requested", changed=transition.changed, message=transition.message)
    return transition


class ErrorGuard:
    """
    Snapshot subscriber that fails the run on the first erroneous snapshot.
    """

    def __init__(self) -> None:
        self.failed_snapshot: StatusSnapshot | None = None

    def __call__(self, snapshot: StatusSnapshot) -> None:
        if snapshot.is_error and self.failed_snapshot is None:
            self.failed_snapshot = snapshot
        self.raise_if_failed()

    def raise_if_failed(self) -> None:
        if self.failed_snapshot is not None:
            raise RemoteError(operation="job", payload=self.failed_snapshot.summary())


async def _iterate(
    records: Iterable[Mapping[str, t.Any]] | AsyncIterable[Mapping[str, t.Any]],
) -> t.AsyncIterator[Mapping[str, t.Any]]:
    if isinstance(records, AsyncIterable):
        async for record in records:
            yield record
    else:
        for record in records:
            yield record


async def run_load(
    client: BulkClient,
    records: Iterable[Mapping[str, t.Any]] | AsyncIterable[Mapping[str, t.Any]],
    *,
    batch_size: int,
    fail_on_error: bool = False,
    on_snapshot: SnapshotPrinter | None = None,
    abort_grace_seconds: float = 5.0,
) -> StatusSnapshot:
    """
    Load ``records`` into a new job and wait for its terminal snapshot.

    Monitoring starts as soon as the first batch has created the job.

    Parameters
    ----------
    client : BulkClient
        Client configured with a loading operation.
    records : Iterable | AsyncIterable
        Parsed records.
    batch_size : int
        Records per batch.
    fail_on_error : bool, optional
        Raise as soon as a snapshot reports an error instead of waiting for
        the terminal snapshot.
    on_snapshot : typing.Callable | None, optional
        Called with every progress and final snapshot.
    abort_grace_seconds : float, optional
        Upper bound on the abort attempt made when the run fails.

    Returns
    -------
    StatusSnapshot
        Terminal snapshot of the job.

    Raises
    ------
    RemoteError
        With ``fail_on_error``, when a snapshot reports an error.
    """
    accumulator = BatchAccumulator(client, batch_size=batch_size)
    guard = ErrorGuard()
    if on_snapshot is not None:
        client.on_progress(on_snapshot)
        client.on_final(on_snapshot)
    if fail_on_error:
        client.on_progress(guard)
        client.on_final(guard)

    with logging_context(object=client.options.object, operation=client.operation.value):
        try:
            async for record in _iterate(records):
                await accumulator.accept(record)
                if client.has_job and client.monitor.state == MonitorState.IDLE:
                    client.start_monitoring()
                if client.monitor.state == MonitorState.TERMINAL:
                    # A subscriber failed the run while records were still coming.
                    guard.raise_if_failed()
            await accumulator.finish()
            snapshot = await client.wait_for_final()
        except (Exception, asyncio.CancelledError):
            await abort_job_quietly(client, grace_seconds=abort_grace_seconds)
            raise
        finally:
            await client.stop_monitoring()
    return snapshot


async def run_export(
    client: BulkClient,
    query_text: str,
    stream: t.TextIO,
    *,
    on_snapshot: SnapshotPrinter | None = None,
    abort_grace_seconds: float = 5.0,
) -> int:
    """
    Run a query job and write its rows to ``stream`` as CSV.

    Returns
    -------
    int
        Number of rows written.

    Raises
    ------
    RemoteError
        If the query job ends in error.
    """
    reader = QueryResultReader(client, query_text)
    if on_snapshot is not None:
        client.on_progress(on_snapshot)
        client.on_final(on_snapshot)
    with logging_context(object=client.options.object, operation=client.operation.value):
        try:
            async with reader:
                return await awrite_csv_records(reader, stream)
        except (Exception, asyncio.CancelledError):
            await abort_job_quietly(client, grace_seconds=abort_grace_seconds)
            raise
