from datetime import datetime, timedelta, timezone

import pytest

from tierhunt.store import InMemoryStore

ENV_VARS = (
    "TIERHUNT_CONFIG",
    "OCI_REGION",
    "OCI_COMPARTMENT_ID",
    "OCI_TENANCY_OCID",
    "OCI_SUBNET_ID",
    "OCI_IMAGE_ID",
    "OCI_AD",
    "TELEGRAM_TOKEN",
    "TELEGRAM_USER_ID",
    "CACHE_ENABLED",
    "CACHE_TTL_HOURS",
    "TRANSIENT_ERROR_MAX_RETRIES",
    "TRANSIENT_ERROR_RETRY_DELAY",
    "TIERHUNT_TIMEOUT_SECONDS",
    "LOG_LEVEL",
    "CHECK_EXISTING_INSTANCE",
    "OPERATING_SYSTEM",
    "OS_VERSION",
)


class FakeClock:
    """Settable UTC clock for time-dependent components."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    # Don't pick up a developer's tierhunt.yaml, .env or exported credentials
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()
