"""
Buffering stage turning a record stream into fixed-size batch submissions.
"""

from __future__ import annotations

import typing as t
from collections.abc import AsyncIterable, Iterable, Mapping

import structlog

from bulkpipe.client import BulkClient
from bulkpipe.exceptions import InvalidStateError
from bulkpipe.models import JobTransition, Record

log = structlog.get_logger(__name__)

DEFAULT_BATCH_SIZE = 1000


def normalize_record(record: Mapping[str, t.Any]) -> Record:
    """
    Normalize a parsed record before submission.

    String values that are blank once trimmed become ``None``; the exact
    strings ``"true"`` and ``"false"`` become booleans. Everything else is
    passed through unchanged, so no other type inference happens.

    Parameters
    ----------
    record : Mapping[str, typing.Any]
        Parsed key/value record.

    Returns
    -------
    Record
        A new, normalized record.
    """
    normalized: Record = {}
    for key, value in record.items():
        if isinstance(value, str):
            if value.strip() == "":
                value = None
            elif value == "true":
                value = True
            elif value == "false":
                value = False
        normalized[key] = value
    return normalized


class BatchAccumulator:
    """
    Group records into batches of ``batch_size`` and submit them in order.

    Each full batch is submitted before the next record is accepted, so at
    most one batch is in flight. :meth:`finish` submits the remainder and
    closes the job.

    Parameters
    ----------
    client : BulkClient
        Client owning the job the batches are added to.
    batch_size : int, optional
        Number of records per submitted batch.
    """

    def __init__(self, client: BulkClient, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._client = client
        self._batch_size = batch_size
        self._rows: list[Record] = []
        self._finished = False
        self._failure: BaseException | None = None
        self._accepted_records = 0
        self._submitted_batches = 0

    @property
    def client(self) -> BulkClient:
        return self._client

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def accepted_records(self) -> int:
        return self._accepted_records

    @property
    def submitted_batches(self) -> int:
        return self._submitted_batches

    @property
    def pending_records(self) -> int:
        return len(self._rows)

    def _ensure_accepting(self) -> None:
        if self._failure is not None:
            raise InvalidStateError(
                "accumulation aborted after a failed batch submission"
            ) from self._failure
        if self._finished:
            raise InvalidStateError("accumulator is already finished")

    async def accept(self, record: Mapping[str, t.Any]) -> None:
        """
        Normalize and buffer one record, submitting the batch once it is full.

        Parameters
        ----------
        record : Mapping[str, typing.Any]
            Parsed key/value record.
        """
        self._ensure_accepting()
        self._rows.append(normalize_record(record))
        self._accepted_records += 1
        if len(self._rows) >= self._batch_size:
            await self._flush()

    async def finish(self) -> JobTransition:
        """
        Submit the remaining records, then close the job.

        Returns
        -------
        JobTransition
            Outcome of the close request. With no records at all no job
            exists and the close is an informational no-op.
        """
        self._ensure_accepting()
        self._finished = True
        await self._flush()
        transition = await self._client.close_job()
        log.info(
            event="Accumulation finished",
            accepted_records=self._accepted_records,
            submitted_batches=self._submitted_batches,
            job_state=transition.state.value if transition.state else None,
        )
        return transition

    async def consume(
        self, records: Iterable[Mapping[str, t.Any]] | AsyncIterable[Mapping[str, t.Any]]
    ) -> JobTransition:
        """
        Accept every record of ``records`` and finish.

        Parameters
        ----------
        records : Iterable | AsyncIterable
            Record source, e.g. a CSV reader or a SQL row stream.

        Returns
        -------
        JobTransition
            Outcome of the final close request.
        """
        if isinstance(records, AsyncIterable):
            async for record in records:
                await self.accept(record)
        else:
            for record in records:
                await self.accept(record)
        return await self.finish()

    async def _flush(self) -> None:
        rows, self._rows = self._rows, []
        if not rows:
            return
        try:
            batch = await self._client.submit_batch(rows)
        except Exception as error:
            self._failure = error
            log.error(
                event="Batch submission failed",
                record_count=len(rows),
                submitted_batches=self._submitted_batches,
                error=str(object=error),
            )
            raise
        self._submitted_batches += 1
        log.debug(
            event="Flushed batch",
            batch_id=batch.id if batch else None,
            record_count=len(rows),
            submitted_batches=self._submitted_batches,
        )
