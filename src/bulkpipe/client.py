"""
Asynchronous client for bulk jobs composed of batches.

The client owns the remote job lifecycle: login, job creation, batch
submission, status refreshes, result retrieval and the close/abort
transition. Polling lives in :class:`bulkpipe.monitor.JobMonitor`, which the
client owns and drives through the same methods.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import decimal
import json
import typing as t
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

import httpx
import structlog

from bulkpipe.auth import login
from bulkpipe.exceptions import InvalidStateError, RemoteError
from bulkpipe.models import (
    BatchInfo,
    JobInfo,
    JobOptions,
    JobTransition,
    Record,
    SessionInfo,
    StatusSnapshot,
    compute_is_error,
)
from bulkpipe.monitor import JobMonitor, PollingErrorCallback, SnapshotCallback
from bulkpipe.status import JobState, Operation
from bulkpipe.streaming import JsonArrayStreamDecoder, UnexpectedJsonPayload

log = structlog.get_logger(__name__)

SESSION_HEADER = "X-SFDC-Session"
JSON_CONTENT_TYPE = "application/json; charset=UTF-8"


def _json_default(value: t.Any) -> t.Any:
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, bytes):
        return value.decode(encoding="utf-8")
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_records(*, records: t.Sequence[Record]) -> bytes:
    """
    Serialize a batch of records into a JSON array body.

    Parameters
    ----------
    records : typing.Sequence[Record]
        Records to serialize. Dates and decimals coming from SQL sources are
        rendered as strings.

    Returns
    -------
    bytes
        UTF-8 encoded JSON array.
    """
    return json.dumps(obj=list(records), default=_json_default).encode(encoding="utf-8")


class BulkClient:
    """
    Manage one remote bulk job and its batches.

    Parameters
    ----------
    options : JobOptions
        Validated connection and job options.
    client_factory : typing.Callable[[], httpx.AsyncClient] | None, optional
        Factory for the HTTP client used by every call.
    poll_interval_seconds : float, optional
        Delay between two status refreshes of the job monitor.
    queued_retry_delay_seconds : float, optional
        Delay before re-checking a job that is still ``Queued`` when a close
        or abort is requested.
    request_timeout_seconds : float | None, optional
        Per-request timeout of the default client factory. ``None`` disables
        timeouts.
    fail_on_record_errors : bool, optional
        If ``True``, per-record failures inside a completed batch make the
        whole job count as an error.
    """

    def __init__(
        self,
        options: JobOptions,
        *,
        client_factory: t.Callable[[], httpx.AsyncClient] | None = None,
        poll_interval_seconds: float = 3.0,
        queued_retry_delay_seconds: float = 0.5,
        request_timeout_seconds: float | None = None,
        fail_on_record_errors: bool = True,
    ) -> None:
        self._options = options
        self._client_factory: t.Callable[[], httpx.AsyncClient] = client_factory or (
            lambda: httpx.AsyncClient(timeout=request_timeout_seconds)
        )
        self._queued_retry_delay_seconds = queued_retry_delay_seconds
        self._fail_on_record_errors = fail_on_record_errors

        self._session: SessionInfo | None = None
        self._job: JobInfo | None = None
        self._batches: list[BatchInfo] = []
        self._query_result_ids: list[str] = []
        self._abort_requested = False

        self._job_lock = asyncio.Lock()
        self._transition_lock = asyncio.Lock()
        self._monitor = JobMonitor(client=self, poll_interval_seconds=poll_interval_seconds)

        log.debug(
            event="Initialized BulkClient",
            object=options.object,
            operation=options.operation.value,
            api_version=options.api_version,
            poll_interval_seconds=poll_interval_seconds,
        )

    @property
    def options(self) -> JobOptions:
        return self._options

    @property
    def operation(self) -> Operation:
        return self._options.operation

    @property
    def monitor(self) -> JobMonitor:
        return self._monitor

    @property
    def has_job(self) -> bool:
        return self._job is not None

    @property
    def job_info(self) -> JobInfo | None:
        return self._job.model_copy(deep=True) if self._job is not None else None

    @property
    def batch_infos(self) -> tuple[BatchInfo, ...]:
        return tuple(batch.model_copy(deep=True) for batch in self._batches)

    @property
    def query_result_ids(self) -> tuple[str, ...]:
        return tuple(self._query_result_ids)

    def is_job_final(self) -> bool:
        return self._job is not None and self._job.is_terminal

    def are_batches_final(self) -> bool:
        """
        Check whether no batch is still pending.

        A batch is never judged final before its job is final.
        """
        if not self.is_job_final():
            return False
        return not any(batch.is_pending for batch in self._batches)

    def is_error(self) -> bool:
        return compute_is_error(
            job=self._job,
            batches=self._batches,
            fail_on_record_errors=self._fail_on_record_errors,
        )

    def snapshot(self, *, is_final: bool = False) -> StatusSnapshot:
        """
        Take an immutable copy of the current job and batch status.

        Parameters
        ----------
        is_final : bool, optional
            Mark the snapshot as the terminal report.

        Returns
        -------
        StatusSnapshot
            Snapshot detached from the client state.
        """
        return StatusSnapshot(
            job=self.job_info,
            batches=self.batch_infos,
            query_result_ids=self.query_result_ids,
            is_error=self.is_error(),
            is_final=is_final,
        )

    def describe(self) -> dict[str, t.Any]:
        return {
            "options": self._options.redacted(),
            "state": {
                "logged_in": self._session is not None,
                "job": self._job.model_dump(mode="json") if self._job else None,
                "batches": [batch.model_dump(mode="json") for batch in self._batches],
                "query_result_ids": list(self._query_result_ids),
                "is_error": self.is_error(),
                "monitor": self._monitor.state.value,
            },
        }

    def on_progress(self, callback: SnapshotCallback) -> SnapshotCallback:
        return self._monitor.on_progress(callback)

    def on_final(self, callback: SnapshotCallback) -> SnapshotCallback:
        return self._monitor.on_final(callback)

    def on_polling_error(self, callback: PollingErrorCallback) -> PollingErrorCallback:
        return self._monitor.on_polling_error(callback)

    def start_monitoring(self) -> None:
        self._monitor.start()

    async def stop_monitoring(self) -> None:
        await self._monitor.stop()

    async def wait_for_final(self) -> StatusSnapshot:
        return await self._monitor.wait_for_final()

    def _instance_url(self) -> str:
        if self._session is not None:
            parsed = urlparse(url=self._session.server_url)
            if parsed.scheme and parsed.netloc:
                return f"{parsed.scheme}://{parsed.netloc}"
        return self._options.login_url

    def _job_collection_url(self) -> str:
        return f"{self._instance_url()}/services/async/{self._options.api_version}/job"

    def _job_url(self) -> str:
        return f"{self._job_collection_url()}/{self._require_job().id}"

    def _batch_url(self, batch_id: str | None = None) -> str:
        url = f"{self._job_url()}/batch"
        return f"{url}/{batch_id}" if batch_id else url

    def _session_headers(self) -> dict[str, str]:
        if self._session is None:
            raise InvalidStateError("not authenticated")
        return {SESSION_HEADER: self._session.session_id}

    def _require_job(self) -> JobInfo:
        if self._job is None:
            raise InvalidStateError("no job has been created")
        return self._job

    @staticmethod
    def _decode_response(*, response: httpx.Response, operation: str) -> t.Any:
        """
        Decode a JSON response, raising on remote-reported exceptions.

        Parameters
        ----------
        response : httpx.Response
            Response to decode. Its body must already be read.
        operation : str
            Operation name used in error messages.

        Returns
        -------
        typing.Any
            Decoded JSON payload.

        Raises
        ------
        RemoteError
            If the payload carries an ``exceptionCode``.
        httpx.HTTPStatusError
            If the status is an error and the body is not a remote exception.
        """
        try:
            payload = response.json()
        except ValueError:
            response.raise_for_status()
            raise RemoteError(operation=operation, payload=response.text)
        if isinstance(payload, dict) and payload.get("exceptionCode"):
            log.error(
                event="Remote API reported an exception",
                operation=operation,
                exception_code=payload.get("exceptionCode"),
                exception_message=payload.get("exceptionMessage"),
            )
            raise RemoteError(operation=operation, payload=payload)
        response.raise_for_status()
        return payload

    async def _request_json(
        self,
        *,
        operation: str,
        method: str,
        url: str,
        json_body: t.Any = None,
        content: bytes | None = None,
        content_type: str | None = None,
    ) -> t.Any:
        headers = self._session_headers()
        if content_type is not None:
            headers["Content-Type"] = content_type
        async with self._client_factory() as client:
            response = await client.request(
                method=method,
                url=url,
                headers=headers,
                json=json_body,
                content=content,
            )
        return self._decode_response(response=response, operation=operation)

    async def authenticate(self) -> SessionInfo:
        """
        Log in once and reuse the session for the lifetime of the job.

        Returns
        -------
        SessionInfo
            Cached or freshly obtained session.

        Raises
        ------
        AuthError
            If the login exchange fails.
        """
        if self._session is None:
            self._session = await login(
                options=self._options,
                client_factory=self._client_factory,
            )
        return self._session

    async def ensure_job(self) -> JobInfo:
        """
        Return the job of this client, creating it on first use.

        Returns
        -------
        JobInfo
            Copy of the job descriptor.

        Raises
        ------
        RemoteError
            If the remote API rejects the job creation.
        """
        async with self._job_lock:
            if self._job is None:
                await self.authenticate()
                body: dict[str, t.Any] = {
                    "operation": self._options.operation.value,
                    "object": self._options.object,
                    "contentType": self._options.content_type,
                    "concurrencyMode": self._options.concurrency_mode.value,
                }
                if self._options.external_id_field_name:
                    body["externalIdFieldName"] = self._options.external_id_field_name
                payload = await self._request_json(
                    operation="createJob",
                    method="POST",
                    url=self._job_collection_url(),
                    json_body=body,
                )
                self._job = JobInfo.model_validate(payload)
                log.info(
                    event="Created job",
                    job_id=self._job.id,
                    state=self._job.state.value,
                    object=self._options.object,
                    operation=self._options.operation.value,
                )
        return self._require_job().model_copy(deep=True)

    async def submit_batch(self, records: t.Sequence[Record]) -> BatchInfo | None:
        """
        Add one batch of records to the job.

        An empty batch is a no-op: no login and no job creation happen, since
        some operations erase jobs that end up without batches.

        Parameters
        ----------
        records : typing.Sequence[Record]
            Records of the batch.

        Returns
        -------
        BatchInfo | None
            Descriptor of the created batch, ``None`` for an empty batch.

        Raises
        ------
        InvalidStateError
            If the job is not ``Open``, e.g. because it was already closed.
        RemoteError
            If the remote API rejects the batch.
        """
        if not records:
            log.debug(event="Skipping empty batch")
            return None
        job = await self.ensure_job()
        if job.state != JobState.OPEN:
            raise InvalidStateError(f"Invalid job state: {job.state.value}")
        payload = await self._request_json(
            operation="addBatch",
            method="POST",
            url=self._batch_url(),
            content=encode_records(records=records),
            content_type=JSON_CONTENT_TYPE,
        )
        batch = BatchInfo.model_validate(payload)
        self._batches.append(batch)
        log.info(
            event="Submitted batch",
            job_id=job.id,
            batch_id=batch.id,
            state=batch.state.value,
            record_count=len(records),
            batch_count=len(self._batches),
        )
        return batch.model_copy(deep=True)

    async def submit_query(self, query_text: str) -> BatchInfo:
        """
        Submit a query as the single batch of a query job, then close the job.

        Parameters
        ----------
        query_text : str
            Query text sent verbatim as the batch body.

        Returns
        -------
        BatchInfo
            Descriptor of the query batch.
        """
        if self._options.operation != Operation.QUERY:
            raise InvalidStateError(
                f"submit_query requires a query job, not {self._options.operation.value}"
            )
        job = await self.ensure_job()
        payload = await self._request_json(
            operation="query",
            method="POST",
            url=self._batch_url(),
            content=query_text.encode(encoding="utf-8"),
            content_type=JSON_CONTENT_TYPE,
        )
        batch = BatchInfo.model_validate(payload)
        self._batches.append(batch)
        log.info(event="Submitted query", job_id=job.id, batch_id=batch.id)
        # Query jobs take no further batches.
        await self.close_job()
        return batch.model_copy(deep=True)

    async def refresh_job_info(self) -> JobInfo | None:
        """
        Fetch the job descriptor unless the job is missing or already final.
        """
        if self._job is None or self._job.is_terminal:
            return self.job_info
        payload = await self._request_json(
            operation="getJobInfo",
            method="GET",
            url=self._job_url(),
        )
        self._job = JobInfo.model_validate(payload)
        log.debug(
            event="Refreshed job info",
            job_id=self._job.id,
            state=self._job.state.value,
            batches_completed=self._job.number_batches_completed,
            batches_total=self._job.number_batches_total,
        )
        return self.job_info

    async def refresh_batch_infos(self) -> tuple[BatchInfo, ...]:
        """
        Fetch all batch descriptors unless there are none or all are final.

        The remote list replaces the local one. A batch known locally but
        missing from the remote list, e.g. submitted while the refresh was in
        flight, is kept after the remote entries.
        """
        if not self._batches or self.are_batches_final():
            return self.batch_infos
        payload = await self._request_json(
            operation="getBatchInfo",
            method="GET",
            url=self._batch_url(),
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("batchInfo", []), list):
            raise RemoteError(operation="getBatchInfo", payload=payload)
        remote = [BatchInfo.model_validate(item) for item in payload.get("batchInfo", [])]
        remote_ids = {batch.id for batch in remote}
        self._batches = remote + [batch for batch in self._batches if batch.id not in remote_ids]
        log.debug(
            event="Refreshed batch infos",
            job_id=self._job.id if self._job else None,
            batch_count=len(self._batches),
            pending_count=sum(1 for batch in self._batches if batch.is_pending),
        )
        return self.batch_infos

    async def fetch_batch_info(self, batch_id: str) -> BatchInfo:
        payload = await self._request_json(
            operation="getBatchInfo",
            method="GET",
            url=self._batch_url(batch_id),
        )
        batch = BatchInfo.model_validate(payload)
        for index, known in enumerate(self._batches):
            if known.id == batch.id:
                self._batches[index] = batch
                break
        return batch.model_copy(deep=True)

    async def fetch_batch_result(self, batch_id: str) -> t.Any:
        """
        Fetch the outcome of a batch.

        For insert, update, upsert and delete jobs the payload is a list of
        per-record outcomes. For query jobs it is the list of result-set ids,
        which is also captured so that rows can be streamed afterwards.
        """
        payload = await self._fetch_batch_artifact(batch_id=batch_id, artifact="result")
        if self._options.operation == Operation.QUERY:
            self._query_result_ids = [str(result_id) for result_id in payload or []]
            log.debug(
                event="Captured query result ids",
                batch_id=batch_id,
                result_count=len(self._query_result_ids),
            )
        return payload

    async def fetch_batch_request(self, batch_id: str) -> t.Any:
        return await self._fetch_batch_artifact(batch_id=batch_id, artifact="request")

    async def _fetch_batch_artifact(
        self, *, batch_id: str, artifact: t.Literal["result", "request"]
    ) -> t.Any:
        return await self._request_json(
            operation=f"getBatch{artifact.capitalize()}",
            method="GET",
            url=f"{self._batch_url(batch_id)}/{artifact}",
        )

    def _resolve_result_pair(
        self, *, batch_id: str | None, result_id: str | None
    ) -> tuple[str, str]:
        batch_id = batch_id or (self._batches[0].id if self._batches else None)
        result_id = result_id or (self._query_result_ids[0] if self._query_result_ids else None)
        if batch_id is None or result_id is None:
            raise InvalidStateError("no query result is available yet")
        return batch_id, result_id

    @asynccontextmanager
    async def _stream_query_result(
        self, *, batch_id: str, result_id: str
    ) -> AsyncIterator[httpx.Response]:
        url = f"{self._batch_url(batch_id)}/result/{result_id}"
        async with self._client_factory() as client:
            async with client.stream(
                method="GET", url=url, headers=self._session_headers()
            ) as response:
                if response.is_error:
                    await response.aread()
                    self._decode_response(response=response, operation="getQueryResult")
                yield response

    async def probe_query_result(
        self, batch_id: str | None = None, result_id: str | None = None
    ) -> bool:
        """
        Open a result set and wait for its first chunk.

        Returns
        -------
        bool
            ``True`` if the result set produced any data.
        """
        batch_id, result_id = self._resolve_result_pair(batch_id=batch_id, result_id=result_id)
        async with self._stream_query_result(batch_id=batch_id, result_id=result_id) as response:
            async for chunk in response.aiter_bytes():
                if chunk:
                    return True
        return False

    async def iter_query_result_rows(
        self, batch_id: str | None = None, result_id: str | None = None
    ) -> AsyncIterator[Record]:
        """
        Stream decoded rows of one query result set.

        Parameters
        ----------
        batch_id : str | None, optional
            Query batch id, defaults to the first known batch.
        result_id : str | None, optional
            Result-set id, defaults to the first captured result id.

        Yields
        ------
        Record
            One decoded row, as returned by the remote API.
        """
        batch_id, result_id = self._resolve_result_pair(batch_id=batch_id, result_id=result_id)
        log.debug(event="Streaming query result", batch_id=batch_id, result_id=result_id)
        decoder = JsonArrayStreamDecoder()
        row_count = 0
        async with self._stream_query_result(batch_id=batch_id, result_id=result_id) as response:
            try:
                async for text in response.aiter_text():
                    for row in decoder.feed(text):
                        row_count += 1
                        yield row
                for row in decoder.close():
                    row_count += 1
                    yield row
            except UnexpectedJsonPayload as error:
                raise RemoteError(operation="getQueryResult", payload=error.payload) from error
        log.debug(
            event="Streamed query result",
            batch_id=batch_id,
            result_id=result_id,
            row_count=row_count,
        )

    async def close_job(self) -> JobTransition:
        return await self._change_job_state(target=JobState.CLOSED)

    async def abort_job(self) -> JobTransition:
        self._abort_requested = True
        return await self._change_job_state(target=JobState.ABORTED)

    async def _change_job_state(self, *, target: JobState) -> JobTransition:
        """
        Close or abort the job if, and only if, it is ``Open``.

        A job that is still ``Queued`` is re-checked after a short delay,
        since the remote service may not have finished provisioning it. An
        abort requested while a close waits takes precedence.
        """
        async with self._transition_lock:
            while self._job is not None and self._job.state == JobState.QUEUED:
                log.debug(
                    event="Job still queued, retrying state change",
                    job_id=self._job.id,
                    target=target.value,
                    delay_seconds=self._queued_retry_delay_seconds,
                )
                await asyncio.sleep(self._queued_retry_delay_seconds)
                await self.refresh_job_info()

            if self._job is None:
                log.info(event="No job exists, nothing to do", target=target.value)
                return JobTransition(changed=False, message="No job exists. Nothing to do.")

            if self._job.state != JobState.OPEN:
                log.info(
                    event="Job is not open, nothing to do",
                    job_id=self._job.id,
                    state=self._job.state.value,
                    target=target.value,
                )
                return JobTransition(
                    changed=False,
                    state=self._job.state,
                    message=f"Job is already {self._job.state.value}.",
                )

            if self._abort_requested:
                target = JobState.ABORTED
            payload = await self._request_json(
                operation=f"changeJobState:{target.value}",
                method="POST",
                url=self._job_url(),
                json_body={"state": target.value},
            )
            self._job = JobInfo.model_validate(payload)
            log.info(event="Changed job state", job_id=self._job.id, state=self._job.state.value)
            return JobTransition(changed=True, state=self._job.state)
