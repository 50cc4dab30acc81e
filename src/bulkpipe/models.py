from __future__ import annotations

import typing as t
from datetime import datetime, timezone

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from bulkpipe.exceptions import ConfigError
from bulkpipe.status import (
    BATCH_ERROR_STATES,
    BATCH_PENDING_STATES,
    JOB_ERROR_STATES,
    JOB_TERMINAL_STATES,
    BatchState,
    ConcurrencyMode,
    JobState,
    Operation,
)


Record = dict[str, t.Any]


class JobOptions(BaseModel):
    """
    Immutable connection and job parameters for one bulk job.

    Use :meth:`build` rather than the constructor to get a ``ConfigError``
    instead of a pydantic ``ValidationError`` on bad input.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    login_url: str = Field(description="instance URL used for the login exchange")
    api_version: str = Field(description="remote API version, e.g. 37.0")
    username: str
    password: str = Field(repr=False)
    token: str = Field(default="", repr=False, description="security token appended to password")
    object: str = Field(description="remote object API name, e.g. Account")
    operation: Operation
    external_id_field_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("external_id_field_name", "externalIdFieldName"),
    )
    concurrency_mode: ConcurrencyMode = Field(
        default=ConcurrencyMode.PARALLEL,
        validation_alias=AliasChoices("concurrency_mode", "concurrencyMode"),
    )
    # JSON only: any other content type makes the remote answer in XML.
    content_type: t.Literal["JSON"] = "JSON"

    @field_validator("login_url", "api_version", "username", "password", "object", mode="before")
    @classmethod
    def require_non_empty(cls, value: t.Any) -> t.Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError("value is required")
        return value

    @field_validator("login_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @field_validator("api_version", mode="before")
    @classmethod
    def coerce_api_version(cls, value: t.Any) -> t.Any:
        if isinstance(value, (int, float)):
            return f"{float(value):.1f}"
        return value

    @model_validator(mode="after")
    def require_external_id_for_upsert(self) -> JobOptions:
        if self.operation == Operation.UPSERT and not self.external_id_field_name:
            raise ValueError("external_id_field_name is required for upsert")
        return self

    @classmethod
    def build(cls, **options: t.Any) -> JobOptions:
        """
        Validate options and build a ``JobOptions``.

        Raises
        ------
        ConfigError
            If a required option is missing or invalid.
        """
        try:
            return cls(**options)
        except ValidationError as error:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in item['loc']) or 'options'}: {item['msg']}"
                for item in error.errors()
            )
            raise ConfigError(f"invalid job options: {problems}") from error

    def redacted(self) -> dict[str, t.Any]:
        data = self.model_dump(mode="json")
        data["password"] = "***"
        data["token"] = "***"
        return data


class SessionInfo(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    session_id: str = Field(
        repr=False, validation_alias=AliasChoices("session_id", "sessionId")
    )
    server_url: str = Field(validation_alias=AliasChoices("server_url", "serverUrl"))
    metadata_server_url: str | None = Field(
        default=None, validation_alias=AliasChoices("metadata_server_url", "metadataServerUrl")
    )
    user_id: str | None = Field(default=None, validation_alias=AliasChoices("user_id", "userId"))
    sandbox: bool | None = None
    password_expired: bool | None = Field(
        default=None, validation_alias=AliasChoices("password_expired", "passwordExpired")
    )


class JobInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    state: JobState
    operation: Operation | None = None
    object: str | None = None
    external_id_field_name: str | None = Field(default=None, alias="externalIdFieldName")
    concurrency_mode: str | None = Field(default=None, alias="concurrencyMode")
    number_batches_queued: int = Field(default=0, alias="numberBatchesQueued")
    number_batches_in_progress: int = Field(default=0, alias="numberBatchesInProgress")
    number_batches_completed: int = Field(default=0, alias="numberBatchesCompleted")
    number_batches_failed: int = Field(default=0, alias="numberBatchesFailed")
    number_batches_total: int = Field(default=0, alias="numberBatchesTotal")
    number_records_processed: int = Field(default=0, alias="numberRecordsProcessed")
    number_records_failed: int = Field(default=0, alias="numberRecordsFailed")

    @property
    def is_terminal(self) -> bool:
        return self.state in JOB_TERMINAL_STATES


class BatchInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    job_id: str | None = Field(default=None, alias="jobId")
    state: BatchState
    state_message: str | None = Field(default=None, alias="stateMessage")
    number_records_processed: int = Field(default=0, alias="numberRecordsProcessed")
    number_records_failed: int = Field(default=0, alias="numberRecordsFailed")

    @property
    def is_pending(self) -> bool:
        return self.state in BATCH_PENDING_STATES


def compute_is_error(
    *,
    job: JobInfo | None,
    batches: t.Iterable[BatchInfo],
    fail_on_record_errors: bool = True,
) -> bool:
    """
    Decide whether a job and its batches represent a failed outcome.

    Parameters
    ----------
    job : JobInfo | None
        Current job descriptor. ``None`` means nothing was ever submitted,
        which counts as success.
    batches : typing.Iterable[BatchInfo]
        Current batch descriptors.
    fail_on_record_errors : bool
        If ``True``, a batch with ``number_records_failed > 0`` is an error
        even when the batch itself completed.

    Returns
    -------
    bool
        ``True`` when the outcome is an error.
    """
    if job is None:
        return False
    if job.state in JOB_ERROR_STATES:
        return True
    for batch in batches:
        if batch.state in BATCH_ERROR_STATES:
            return True
        if fail_on_record_errors and batch.number_records_failed > 0:
            return True
    return False


class StatusSnapshot(BaseModel):
    """
    Immutable copy of job and batch status taken at one poll tick.
    """

    model_config = ConfigDict(frozen=True)

    job: JobInfo | None = None
    batches: tuple[BatchInfo, ...] = ()
    query_result_ids: tuple[str, ...] = ()
    is_error: bool = False
    is_final: bool = False
    taken_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def batch_state_counts(self) -> dict[str, int]:
        counts = {state.value: 0 for state in BatchState}
        for batch in self.batches:
            counts[batch.state.value] += 1
        return counts

    def summary(self) -> dict[str, t.Any]:
        """
        Compact progress view used for progress display and logging.
        """
        if self.job is None:
            return {"job": None, "is_error": self.is_error, "is_final": self.is_final}
        return {
            "job": {"id": self.job.id, "state": self.job.state.value},
            "batches": self.batch_state_counts(),
            "records": {
                "processed": sum(b.number_records_processed for b in self.batches),
                "failed": sum(b.number_records_failed for b in self.batches),
            },
            "is_error": self.is_error,
            "is_final": self.is_final,
        }


class JobTransition(BaseModel):
    """
    Outcome of a close or abort request.
    """

    model_config = ConfigDict(frozen=True)

    changed: bool
    state: JobState | None = None
    message: str | None = None
