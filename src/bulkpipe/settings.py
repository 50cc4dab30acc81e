"""
Connection settings and runtime knobs, loaded from ``.env``, a TOML file and
``BULKPIPE_*`` environment variables.
"""

from __future__ import annotations

import os
import tomllib
import typing as t
from pathlib import Path

import httpx
import structlog
from dotenv import load_dotenv
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from bulkpipe.client import BulkClient
from bulkpipe.exceptions import ConfigError
from bulkpipe.models import JobOptions
from bulkpipe.status import ConcurrencyMode, Operation

log = structlog.get_logger(__name__)

ENV_PREFIX = "BULKPIPE_"
CONFIG_TABLE = "bulk_api"
DEFAULT_LOGIN_URL = "https://login.salesforce.com"
DEFAULT_API_VERSION = "37.0"


class BulkSettings(BaseModel):
    """
    Settings shared by every job started from one configuration.

    TOML keys may use either snake_case or the camelCase spelling of the
    remote API (``loginUrl``, ``apiVersion``...).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    login_url: str = Field(
        default=DEFAULT_LOGIN_URL,
        validation_alias=AliasChoices("login_url", "loginUrl"),
    )
    api_version: str = Field(
        default=DEFAULT_API_VERSION,
        validation_alias=AliasChoices("api_version", "apiVersion"),
    )
    username: str
    password: str = Field(repr=False)
    token: str = Field(default="", repr=False)

    batch_size: int = Field(
        default=1000, ge=1, validation_alias=AliasChoices("batch_size", "batchSize")
    )
    poll_interval_seconds: float = Field(
        default=3.0,
        gt=0,
        validation_alias=AliasChoices("poll_interval_seconds", "pollInterval"),
    )
    queued_retry_delay_seconds: float = Field(default=0.5, ge=0)
    request_timeout_seconds: float | None = Field(default=None, gt=0)
    abort_grace_seconds: float = Field(default=5.0, gt=0)
    concurrency_mode: ConcurrencyMode = Field(
        default=ConcurrencyMode.PARALLEL,
        validation_alias=AliasChoices("concurrency_mode", "concurrencyMode"),
    )
    fail_on_record_errors: bool = True

    @field_validator("username", "password", mode="before")
    @classmethod
    def require_credentials(cls, value: t.Any) -> t.Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError("value is required")
        return value

    @field_validator("api_version", mode="before")
    @classmethod
    def coerce_api_version(cls, value: t.Any) -> t.Any:
        if isinstance(value, (int, float)):
            return f"{float(value):.1f}"
        return value

    def job_options(
        self,
        *,
        object: str,
        operation: Operation | str,
        external_id_field_name: str | None = None,
        concurrency_mode: ConcurrencyMode | str | None = None,
    ) -> JobOptions:
        """
        Build validated job options from these settings.

        Raises
        ------
        ConfigError
            If the job options are incomplete, e.g. an upsert without an
            external id field.
        """
        return JobOptions.build(
            login_url=self.login_url,
            api_version=self.api_version,
            username=self.username,
            password=self.password,
            token=self.token,
            object=object,
            operation=operation,
            external_id_field_name=external_id_field_name,
            concurrency_mode=concurrency_mode or self.concurrency_mode,
        )

    def client(
        self,
        options: JobOptions,
        *,
        client_factory: t.Callable[[], httpx.AsyncClient] | None = None,
    ) -> BulkClient:
        return BulkClient(
            options,
            client_factory=client_factory,
            poll_interval_seconds=self.poll_interval_seconds,
            queued_retry_delay_seconds=self.queued_retry_delay_seconds,
            request_timeout_seconds=self.request_timeout_seconds,
            fail_on_record_errors=self.fail_on_record_errors,
        )


def read_config_file(config_path: str | Path) -> dict[str, t.Any]:
    """
    Read the ``[bulk_api]`` table of a TOML configuration file.

    Raises
    ------
    ConfigError
        If the file is missing or is not valid TOML.
    """
    path = Path(config_path).expanduser()
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError as error:
        raise ConfigError(f"config file at path: '{path.as_posix()}' does not exist") from error
    except tomllib.TOMLDecodeError as error:
        raise ConfigError(f"config file at path: '{path.as_posix()}' is invalid: {error}") from error
    table = data.get(CONFIG_TABLE, {})
    if not isinstance(table, dict):
        raise ConfigError(f"'{CONFIG_TABLE}' in '{path.as_posix()}' must be a table")
    return table


def read_env_overrides(environ: t.Mapping[str, str] | None = None) -> dict[str, str]:
    environ = os.environ if environ is None else environ
    overrides = {}
    for name in BulkSettings.model_fields:
        value = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if value is not None and value != "":
            overrides[name] = value
    return overrides


def load_settings(
    config_path: str | Path | None = None,
    *,
    dotenv_path: str | Path | None = None,
    environ: t.Mapping[str, str] | None = None,
) -> BulkSettings:
    """
    Load settings, later sources overriding earlier ones.

    Order: ``.env`` file (into the process environment, without overriding
    variables that are already set), the ``[bulk_api]`` table of
    ``config_path``, then ``BULKPIPE_*`` environment variables.

    Parameters
    ----------
    config_path : str | Path | None, optional
        TOML configuration file.
    dotenv_path : str | Path | None, optional
        Explicit ``.env`` file; by default one is searched from the working
        directory upwards.
    environ : typing.Mapping[str, str] | None, optional
        Environment to read overrides from instead of ``os.environ``. No
        ``.env`` file is loaded when it is given.

    Raises
    ------
    ConfigError
        If credentials are missing or a value is invalid.
    """
    if environ is None:
        load_dotenv(dotenv_path=dotenv_path)
    values: dict[str, t.Any] = {}
    if config_path is not None:
        values.update(read_config_file(config_path=config_path))
    # Env overrides must win over the camelCase spelling of the same key.
    overrides = read_env_overrides(environ=environ)
    for name in overrides:
        field = BulkSettings.model_fields[name]
        alias = field.validation_alias
        if isinstance(alias, AliasChoices):
            for choice in alias.choices:
                values.pop(choice, None)
    values.update(overrides)
    try:
        settings = BulkSettings.model_validate(values)
    except ValidationError as error:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in item['loc']) or 'settings'}: {item['msg']}"
            for item in error.errors()
        )
        raise ConfigError(f"invalid settings: {problems}") from error
    log.debug(
        event="Loaded settings",
        config_path=str(config_path) if config_path else None,
        login_url=settings.login_url,
        api_version=settings.api_version,
    )
    return settings
