"""
CI Failure History Test Configuration

Shared fixtures for all tests.
"""
import pytest
import pytest_asyncio

from failure_history.config import JenkinsConfig, ScanConfig, ServiceConfig, StorageConfig
from failure_history.jenkins import JenkinsClient
from failure_history.storage import InMemoryStore, SQLStore
from tests.fixtures.jenkins import BASE_URL, FakeJenkins


# =============================================================================
# FIXTURES: Configuration
# =============================================================================

@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Keep the developer's config file and env out of the tests."""
    monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "missing.yml"))
    for var in ("JENKINS_URL", "JENKINS_USERNAME", "JENKINS_PASSWORD", "DATABASE_URL"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def jenkins_config() -> JenkinsConfig:
    return JenkinsConfig(base_url=BASE_URL, username="ci-bot", password="s3cret")


@pytest.fixture
def service_config(jenkins_config) -> ServiceConfig:
    return ServiceConfig(
        jenkins=jenkins_config,
        scan=ScanConfig(window_days=5, max_batch=10),
        storage=StorageConfig(backend="memory"),
    )


# =============================================================================
# FIXTURES: CI server & store
# =============================================================================

@pytest.fixture
def ci() -> FakeJenkins:
    return FakeJenkins()


@pytest.fixture
def jenkins(ci, jenkins_config) -> JenkinsClient:
    return JenkinsClient(jenkins_config, client=ci.client())


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    """SQLStore on a fresh SQLite file."""
    s = SQLStore(f"sqlite+aiosqlite:///{tmp_path / 'history.db'}")
    await s.init()
    yield s
    await s.close()

