"""
Bulkpipe-specific runtime exceptions.
"""

from __future__ import annotations

import json
import typing as t


class BulkPipeError(Exception):
    """
    Base class for every error raised by bulkpipe.
    """


class ConfigError(BulkPipeError, ValueError):
    """
    A required job or connection option is missing or invalid.

    Notes
    -----
    Raised at construction time, before any network call is attempted.
    """


class AuthError(BulkPipeError):
    """
    The login exchange failed or its response could not be parsed.
    """


class RemoteError(BulkPipeError):
    """
    The remote API reported an exception for a call.

    Parameters
    ----------
    operation : str
        Client operation that received the error, e.g. ``"createJob"``.
    payload : typing.Any
        Decoded error payload returned by the remote API.
    """

    def __init__(self, operation: str, payload: t.Any) -> None:
        self.operation = operation
        self.payload = payload
        super().__init__(f"{operation}: {_render_payload(payload=payload)}")

    @property
    def exception_code(self) -> str | None:
        if isinstance(self.payload, dict):
            return self.payload.get("exceptionCode")
        return None


class InvalidStateError(BulkPipeError):
    """
    An operation was attempted against a job or stage in the wrong state.
    """


class PollingError(BulkPipeError):
    """
    A status refresh failed while the job monitor was polling.

    Notes
    -----
    Delivered to ``on_polling_error`` subscribers, never raised by the poll
    loop itself. The original failure is available as ``__cause__``.
    """

    def __init__(self, message: str, *, job_id: str | None = None) -> None:
        self.job_id = job_id
        super().__init__(message)


def _render_payload(*, payload: t.Any) -> str:
    try:
        return json.dumps(obj=payload, default=str)
    except (TypeError, ValueError):
        return repr(payload)
