import typing as t

import pytest

from bulkpipe.client import BulkClient
from bulkpipe.models import JobOptions
from tests.mocks.bulk import FakeBulkAPI

BULKPIPE_ENV_VARS = (
    "BULKPIPE_LOGIN_URL",
    "BULKPIPE_API_VERSION",
    "BULKPIPE_USERNAME",
    "BULKPIPE_PASSWORD",
    "BULKPIPE_TOKEN",
    "BULKPIPE_BATCH_SIZE",
    "BULKPIPE_POLL_INTERVAL_SECONDS",
    "BULKPIPE_QUEUED_RETRY_DELAY_SECONDS",
    "BULKPIPE_REQUEST_TIMEOUT_SECONDS",
    "BULKPIPE_ABORT_GRACE_SECONDS",
    "BULKPIPE_CONCURRENCY_MODE",
    "BULKPIPE_FAIL_ON_RECORD_ERRORS",
)


@pytest.fixture(autouse=True)
def test_clear_env(monkeypatch):
    for name in BULKPIPE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_api() -> FakeBulkAPI:
    """
    Create an in-memory bulk API.
    """
    return FakeBulkAPI()


@pytest.fixture
def make_options() -> t.Callable[..., JobOptions]:
    def _make_options(**overrides: t.Any) -> JobOptions:
        options = {
            "login_url": "https://login.example.com/",
            "api_version": "37.0",
            "username": "user@example.com",
            "password": "secret",
            "token": "TOKEN",
            "object": "Account",
            "operation": "insert",
        }
        options.update(overrides)
        return JobOptions.build(**options)

    return _make_options


@pytest.fixture
def make_client(
    fake_api: FakeBulkAPI, make_options: t.Callable[..., JobOptions]
) -> t.Callable[..., BulkClient]:
    """
    Build clients talking to ``fake_api`` with short polling delays.
    """

    def _make_client(*, api: FakeBulkAPI | None = None, **overrides: t.Any) -> BulkClient:
        client_kwargs = {
            key: overrides.pop(key)
            for key in ("fail_on_record_errors",)
            if key in overrides
        }
        return BulkClient(
            make_options(**overrides),
            client_factory=(api or fake_api).client_factory(),
            poll_interval_seconds=0.01,
            queued_retry_delay_seconds=0.01,
            **client_kwargs,
        )

    return _make_client
