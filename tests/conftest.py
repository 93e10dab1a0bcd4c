"""
Pytest configuration and shared fixtures.
Engine tests run against the in-memory environment (no AWS calls at all).
AWS handler tests use moto (AWS mocks in-process).
"""
import boto3
import pytest
from moto import mock_aws

from provisioner.aws.environment import AwsEnvironment
from provisioner.executor import DeploymentContext
from provisioner.journal import DeploymentJournal, FileJournalStore
from provisioner.memory import InMemoryEnvironment
from urlshortener.config import DeploymentConfig

REGION = "us-east-1"
ACCOUNT_ID = "123456789012"


@pytest.fixture(autouse=True)
def aws_env(monkeypatch):
    """Set fake AWS credentials so boto3 doesn't error in tests."""
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "test")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "test")
    monkeypatch.setenv("JOURNAL_TABLE", "test-journal")
    # configuration must come from the test, not from the developer's shell
    for var in ("TABLE_NAME", "DOMAIN_NAME", "ACCOUNT_ID", "REGION", "SUBDOMAIN", "SORT_KEY",
                "SHORTCODE_INDEX", "AUTH_ENABLED", "ARTIFACT", "STAGE_NAME", "STACK_NAME",
                "REMOVABLE_TABLE"):
        monkeypatch.delenv(var, raising=False)


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return DeploymentConfig.from_sources({}, environ={})


@pytest.fixture
def memory_env():
    return InMemoryEnvironment(region=REGION, account_id=ACCOUNT_ID, hosted_zones=("example.com",))


@pytest.fixture
def journal():
    return DeploymentJournal("test-deployment")


@pytest.fixture
def file_journal(tmp_path):
    return DeploymentJournal("test-deployment", FileJournalStore(tmp_path / "journal"))


@pytest.fixture
def make_context(memory_env, journal, clock):
    """Build a DeploymentContext; defaults to the in-memory env, shared journal and fake clock."""

    def _make(**overrides):
        kwargs = {
            "deployment_name": "test-deployment",
            "environment": memory_env,
            "journal": journal,
            "certificate_timeout": 60.0,
            "poll_interval": 15.0,
            "clock": clock,
            "sleep": clock.sleep,
        }
        kwargs.update(overrides)
        return DeploymentContext(**kwargs)

    return _make


@pytest.fixture
def aws(aws_env):
    """AwsEnvironment wired to moto; yields inside the mock so every client is mocked."""
    with mock_aws():
        yield AwsEnvironment(region=REGION, account_id=ACCOUNT_ID, session=boto3.session.Session())


@pytest.fixture
def journal_table(aws_env):
    with mock_aws():
        client = boto3.client("dynamodb", region_name=REGION)
        client.create_table(
            TableName="test-journal",
            AttributeDefinitions=[{"AttributeName": "deployment", "AttributeType": "S"}],
            KeySchema=[{"AttributeName": "deployment", "KeyType": "HASH"}],
            BillingMode="PAY_PER_REQUEST",
        )
        yield boto3.resource("dynamodb", region_name=REGION).Table("test-journal")
