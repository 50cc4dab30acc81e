"""
Timed status polling for a bulk job.

``JobMonitor`` is an explicit state machine (idle -> polling -> terminal).
Registering a callback never starts polling; the owner calls :meth:`start`.
"""

from __future__ import annotations

import asyncio
import inspect
import typing as t

import httpx
import structlog

from bulkpipe.exceptions import BulkPipeError, PollingError
from bulkpipe.models import StatusSnapshot
from bulkpipe.status import BatchState, MonitorState, Operation

if t.TYPE_CHECKING:
    from bulkpipe.client import BulkClient

log = structlog.get_logger(__name__)

SnapshotCallback = t.Callable[[StatusSnapshot], t.Any]
PollingErrorCallback = t.Callable[[PollingError], t.Any]


class JobMonitor:
    """
    Poll job and batch status until the job reaches a terminal outcome.

    Parameters
    ----------
    client : BulkClient
        Client whose job is polled. All network calls go through it.
    poll_interval_seconds : float
        Delay before each status refresh.

    Notes
    -----
    Refresh failures are wrapped in ``PollingError`` and handed to
    ``on_polling_error`` subscribers; the loop keeps running. The terminal
    snapshot is reported at most once.
    """

    def __init__(self, *, client: BulkClient, poll_interval_seconds: float = 3.0) -> None:
        self._client = client
        self._poll_interval_seconds = poll_interval_seconds
        self._state = MonitorState.IDLE
        self._task: asyncio.Task[None] | None = None
        self._final_future: asyncio.Future[StatusSnapshot] | None = None
        self._final_snapshot: StatusSnapshot | None = None
        self._tick_count = 0

        self._progress_callbacks: list[SnapshotCallback] = []
        self._final_callbacks: list[SnapshotCallback] = []
        self._error_callbacks: list[PollingErrorCallback] = []

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def final_snapshot(self) -> StatusSnapshot | None:
        return self._final_snapshot

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def on_progress(self, callback: SnapshotCallback) -> SnapshotCallback:
        self._progress_callbacks.append(callback)
        return callback

    def on_final(self, callback: SnapshotCallback) -> SnapshotCallback:
        self._final_callbacks.append(callback)
        return callback

    def on_polling_error(self, callback: PollingErrorCallback) -> PollingErrorCallback:
        self._error_callbacks.append(callback)
        return callback

    def _get_final_future(self) -> asyncio.Future[StatusSnapshot]:
        if self._final_future is None:
            self._final_future = asyncio.get_running_loop().create_future()
        return self._final_future

    def start(self) -> None:
        """
        Start polling. Repeated calls, or calls after the terminal report,
        are no-ops.
        """
        if self._state != MonitorState.IDLE:
            log.debug(event="Monitor already started", state=self._state.value)
            return
        self._get_final_future()
        self._state = MonitorState.POLLING
        self._task = asyncio.create_task(
            self._run(),
            name=f"bulkpipe_job_monitor_{id(self)}",
        )
        log.debug(
            event="Monitor started",
            poll_interval_seconds=self._poll_interval_seconds,
        )

    async def stop(self) -> None:
        """
        Cancel polling. A monitor that already reported stays terminal.
        """
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                log.debug(event="Monitor task cancelled")
        if self._state == MonitorState.POLLING:
            self._state = MonitorState.IDLE
        log.debug(event="Monitor stopped", state=self._state.value)

    async def wait_for_final(self) -> StatusSnapshot:
        """
        Wait for the terminal snapshot, starting polling if it is idle.

        Returns
        -------
        StatusSnapshot
            The terminal snapshot.
        """
        future = self._get_final_future()
        if self._state == MonitorState.IDLE:
            self.start()
        return await asyncio.shield(future)

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._poll_interval_seconds)
                if await self._tick():
                    return
                # A subscriber stopped, or stopped and restarted, the monitor.
                if self._task is not asyncio.current_task():
                    log.debug(event="Monitor task superseded", state=self._state.value)
                    return
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log.error(
                event="Monitor stopped on unexpected error",
                error_type=type(error).__name__,
                error=str(object=error),
            )
            self._state = MonitorState.TERMINAL
            future = self._get_final_future()
            if not future.done():
                future.set_exception(error)

    async def _tick(self) -> bool:
        """
        Run one poll iteration.

        Returns
        -------
        bool
            ``True`` once the terminal snapshot was reported.
        """
        self._tick_count += 1
        client = self._client
        if not client.has_job:
            # Nothing was ever submitted: vacuous success.
            log.info(event="No job was created, reporting final state")
            await self._report_final()
            return True

        try:
            await client.refresh_job_info()
            await client.refresh_batch_infos()
            is_final = client.is_job_final() and client.are_batches_final()
            if is_final and client.operation == Operation.QUERY:
                await self._prepare_query_results()
        except (httpx.HTTPError, BulkPipeError, ValueError) as error:
            job = client.job_info
            polling_error = PollingError(
                f"status refresh failed: {error}",
                job_id=job.id if job else None,
            )
            polling_error.__cause__ = error
            log.warning(
                event="Polling error",
                job_id=polling_error.job_id,
                tick=self._tick_count,
                error=str(object=error),
            )
            await self._emit(callbacks=self._error_callbacks, value=polling_error)
            return False

        if is_final:
            await self._report_final()
            return True

        snapshot = client.snapshot()
        log.debug(event="Poll tick", tick=self._tick_count, **snapshot.summary())
        await self._emit(callbacks=self._progress_callbacks, value=snapshot)
        return False

    async def _prepare_query_results(self) -> None:
        """
        Capture result-set ids and wait until the first result set streams.
        """
        batches = self._client.batch_infos
        if not batches or batches[0].state != BatchState.COMPLETED:
            return
        batch_id = batches[0].id
        await self._client.fetch_batch_result(batch_id)
        if self._client.query_result_ids:
            await self._client.probe_query_result(batch_id=batch_id)

    async def _report_final(self) -> None:
        if self._state == MonitorState.TERMINAL:
            return
        self._state = MonitorState.TERMINAL
        snapshot = self._client.snapshot(is_final=True)
        self._final_snapshot = snapshot
        log.info(event="Job reached final state", tick=self._tick_count, **snapshot.summary())
        await self._emit(callbacks=self._final_callbacks, value=snapshot)
        future = self._get_final_future()
        if not future.done():
            future.set_result(snapshot)

    @staticmethod
    async def _emit(*, callbacks: t.Sequence[t.Callable[[t.Any], t.Any]], value: t.Any) -> None:
        for callback in list(callbacks):
            result = callback(value)
            if inspect.isawaitable(result):
                await result
