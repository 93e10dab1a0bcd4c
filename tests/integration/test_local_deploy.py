"""
Integration: the whole URL shortener stack through the CLI's building blocks
against one in-memory environment, the way an operator would drive it.

  1. first deploy fails at the usage plan (injected)
  2. second deploy resumes and completes; earlier nodes are not re-created
  3. the journal on disk yields the endpoint and key the smoke test uses
  4. /generate: key required, burst of three -> 2 admitted + 1 throttled
  5. third deploy is a no-op
  6. teardown removes the development table and its grant, keeps the rest

Run: pytest tests/integration/ -m integration
"""
import pytest

from provisioner.descriptors import ResourceKind
from provisioner.errors import ProvisioningFailure
from provisioner.executor import DeploymentContext, deploy, teardown
from provisioner.gateway import LocalGateway
from provisioner.journal import DeploymentJournal, FileJournalStore, NodeState, RunState
from provisioner.memory import InMemoryEnvironment
from smoke_test import endpoint_and_key
from urlshortener.config import DeploymentConfig
from urlshortener.stack import url_shortener_stack

pytestmark = pytest.mark.integration


@pytest.fixture
def config():
    return DeploymentConfig.from_sources(
        {"stackName": "IntegrationStack", "domainName": "short.example", "removableTable": "true"},
        environ={"TABLE_NAME": "IntegrationShortcodes"},
    )


@pytest.fixture
def env(config):
    return InMemoryEnvironment(region=config.region, hosted_zones=(config.domain_name,), issue_after_polls=1)


@pytest.fixture
def journal_dir(tmp_path):
    return tmp_path / "journal"


def _run(operation, config, env, journal_dir, clock, **kwargs):
    journal = DeploymentJournal(config.stack_name, FileJournalStore(journal_dir))
    context = DeploymentContext(
        deployment_name=config.stack_name,
        environment=env,
        journal=journal,
        certificate_timeout=300,
        poll_interval=5,
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )
    return operation(url_shortener_stack(config), context)


def test_operator_flow(config, env, journal_dir, clock):
    # 1. injected failure
    env.fail_on["GenerateUsagePlan"] = ProvisioningFailure("LimitExceededException", "GenerateUsagePlan")
    first = _run(deploy, config, env, journal_dir, clock)
    assert first.run_state == RunState.FAILED
    assert first.first_failure == "GenerateUsagePlan"
    provisioned_first = {n.logical_id for n in first.nodes if n.state == NodeState.PROVISIONED}
    assert "ApiStage" in provisioned_first

    # 2. resume
    env.fail_on.clear()
    creates_before = len(env.calls_for("create"))
    second = _run(deploy, config, env, journal_dir, clock, max_workers=3)
    assert second.succeeded, second.render()
    assert not provisioned_first & set(env.calls_for("create")[creates_before:])
    assert second.custom_domain_url == "https://app.short.example/"
    assert clock.sleeps == [5]

    # 3. smoke-test inputs come from the journal file
    endpoint, key = endpoint_and_key(str(journal_dir), config.stack_name)
    assert endpoint == second.endpoint
    assert key

    # 4. rate-limited route
    document = FileJournalStore(journal_dir).load(config.stack_name)
    gateway = LocalGateway.from_environment(env, document.nodes["ShortcodesApi"].outputs["apiId"])
    assert gateway.request("POST", "/generate", now=50.0).status == 403
    statuses = [gateway.request("POST", "/generate", api_key=key, now=50.0).status for _ in range(3)]
    assert sorted(statuses) == [200, 200, 429]
    assert len(gateway.invocations) == 2

    # 5. no-op
    mutations_before = [c for c in env.calls if c[0] in ("create", "update")]
    third = _run(deploy, config, env, journal_dir, clock)
    assert third.succeeded
    assert [c for c in env.calls if c[0] in ("create", "update")] == mutations_before

    # 6. teardown
    removed = _run(teardown, config, env, journal_dir, clock)
    assert removed.run_state == RunState.COMPLETED
    actions = {n.logical_id: n.action for n in removed.nodes}
    assert actions["ShortcodesTable"] == actions["ShortcodesTableReadWrite"] == "deleted"
    assert env.entries(ResourceKind.DATA_STORE) == []
    assert len(env.entries(ResourceKind.COMPUTE_UNIT)) == 1
    document = FileJournalStore(journal_dir).load(config.stack_name)
    assert document.nodes["ShortcodesTable"].state == NodeState.ROLLED_BACK
