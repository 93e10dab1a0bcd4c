"""
Executor Scenarios
==================
Runs the URL shortener descriptor set (and a few small ones) against the
in-memory environment and checks the apply contract:

  1. Idempotent upsert: a second run with no changes creates/updates nothing
  2. Partial failure halts forward progress, earlier nodes stay Provisioned
  3. Re-running resumes with the failed and pending nodes, in order
  4. A changed desired state converges by update, not re-create
  5. Grants are attached only after principal and resource exist
  6. Cancellation stops before the next node; in-flight work completes
  7. Concurrent apply respects every dependency
  8. Teardown removes only removable nodes, in reverse order, even when
     a kept node still references them
"""
import pytest
from botocore.exceptions import ClientError

from provisioner.descriptors import ResourceKind
from provisioner.errors import ProvisioningFailure
from provisioner.executor import deploy, plan_deployment, teardown
from provisioner.journal import DeploymentJournal, FileJournalStore, NodeState, RunState
from provisioner.resources import data_store, routing_layer
from urlshortener.config import DeploymentConfig
from urlshortener.stack import url_shortener_stack


@pytest.fixture
def stack(config):
    return url_shortener_stack(config)


def _states(journal):
    return {lid: r.state for lid, r in journal.snapshot().items()}


# ---------------------------------------------------------------------------
# Idempotent upsert
# ---------------------------------------------------------------------------

def test_full_deploy_completes(stack, make_context, memory_env):
    report = deploy(stack, make_context())

    assert report.succeeded
    assert report.first_failure is None
    assert all(n.state == NodeState.PROVISIONED for n in report.nodes)
    assert report.endpoint.startswith("https://")
    assert report.endpoint.endswith(".execute-api.us-east-1.amazonaws.com/prod/")
    assert report.custom_domain_url == "https://app.example.com/"


def test_second_run_changes_nothing(stack, make_context, memory_env):
    deploy(stack, make_context())
    before = len(memory_env.calls)

    report = deploy(stack, make_context())

    second = memory_env.calls[before:]
    assert report.succeeded
    assert [op for op, _ in second if op in ("create", "update", "delete")] == []
    assert {n.action for n in report.nodes} == {"unchanged"}


def test_changed_input_updates_in_place(make_context, memory_env):
    deploy(url_shortener_stack(DeploymentConfig()), make_context())
    creates_before = len(memory_env.calls_for("create"))

    report = deploy(url_shortener_stack(DeploymentConfig(artifact="s3://bucket/main.zip")), make_context())

    assert report.succeeded
    actions = {n.logical_id: n.action for n in report.nodes}
    assert actions["URLShortenerHandler"] == "updated"
    # dependents converge too, their fingerprints include the handler's
    assert actions["ShortcodesTableReadWrite"] == "updated"
    assert actions["ShortcodesTable"] == "unchanged"
    assert actions["ApiCertificate"] == "unchanged"
    assert memory_env.calls_for("create")[creates_before:] == []


def test_drifted_resource_is_recreated(stack, make_context, memory_env):
    deploy(stack, make_context())
    # somebody deleted the API key out of band
    memory_env.resources[ResourceKind.API_KEY].clear()
    creates_before = len(memory_env.calls_for("create"))

    report = deploy(stack, make_context())

    assert report.succeeded
    assert memory_env.calls_for("create")[creates_before:] == ["GenerateApiKey"]
    # the usage plan now binds the new key id
    (key,) = memory_env.entries(ResourceKind.API_KEY)
    (plan,) = memory_env.entries(ResourceKind.USAGE_PLAN)
    assert plan["inputs"]["keyIds"] == [key["outputs"]["keyId"]]


def test_recreated_dependency_reaches_its_dependents(stack, make_context, memory_env):
    deploy(stack, make_context())
    # user pool deleted out of band, it comes back with a new id and ARN
    memory_env.resources[ResourceKind.IDENTITY_PROVIDER].clear()

    report = deploy(stack, make_context())

    assert report.succeeded
    actions = {n.logical_id: n.action for n in report.nodes}
    assert actions["UserPool"] == "created"
    assert actions["URLShortenerHandler"] == "updated"
    assert actions["RouteShortcodesGet"] == "updated"
    assert actions["RouteRedirect"] == "unchanged"
    assert actions["ShortcodesTable"] == "unchanged"

    (pool,) = memory_env.entries(ResourceKind.IDENTITY_PROVIDER)
    (handler,) = memory_env.entries(ResourceKind.COMPUTE_UNIT)
    assert handler["inputs"]["environment"]["USER_POOL_ID"] == pool["outputs"]["userPoolId"]
    assert handler["inputs"]["environment"]["USER_POOL_CLIENT_ID"] == pool["outputs"]["userPoolClientId"]
    guarded = [e for e in memory_env.entries(ResourceKind.ROUTE) if e["inputs"]["authorizer"]]
    assert guarded
    assert {tuple(e["inputs"]["authorizer"]["providerArns"]) for e in guarded} == {(pool["outputs"]["userPoolArn"],)}

    # and the converged state is stable
    assert {n.action for n in deploy(stack, make_context()).nodes} == {"unchanged"}


# ---------------------------------------------------------------------------
# Partial failure and resumption
# ---------------------------------------------------------------------------

def test_failure_halts_and_keeps_earlier_nodes(stack, make_context, memory_env, journal):
    memory_env.fail_on["ShortcodesApi"] = ProvisioningFailure("API limit exceeded", "ShortcodesApi")

    report = deploy(stack, make_context())

    assert not report.succeeded
    assert report.run_state == RunState.FAILED
    assert report.first_failure == "ShortcodesApi"
    states = _states(journal)
    assert states["ShortcodesTable"] == NodeState.PROVISIONED
    assert states["ShortcodesTableReadWrite"] == NodeState.PROVISIONED
    assert states["ShortcodesApi"] == NodeState.FAILED
    assert states["RouteGenerate"] == NodeState.PENDING
    assert journal.get("ShortcodesApi").error_type == "ProvisioningFailure"
    assert "RouteGenerate" not in memory_env.calls_for("lookup")


def test_rerun_retries_only_failed_and_pending_in_order(stack, make_context, memory_env):
    memory_env.fail_on["ShortcodesApi"] = ProvisioningFailure("API limit exceeded", "ShortcodesApi")
    first = deploy(stack, make_context())
    already = {n.logical_id for n in first.nodes if n.state == NodeState.PROVISIONED}
    memory_env.fail_on.clear()
    creates_before = len(memory_env.calls_for("create"))

    report = deploy(stack, make_context())

    assert report.succeeded
    created = memory_env.calls_for("create")[creates_before:]
    assert not already & set(created)
    remaining = [lid for lid in plan_deployment(stack).order if lid not in already]
    assert [lid for lid in created if lid != "HostedZone"] == [lid for lid in remaining if lid != "HostedZone"]
    assert created[0] == "ShortcodesApi"


def test_resume_from_persisted_journal(stack, make_context, memory_env, file_journal, tmp_path):
    memory_env.fail_on["GenerateUsagePlan"] = ProvisioningFailure("throttled", "GenerateUsagePlan")
    deploy(stack, make_context(journal=file_journal))
    memory_env.fail_on.clear()

    # a fresh process only has the file on disk
    reloaded = DeploymentJournal("test-deployment", FileJournalStore(tmp_path / "journal"))
    creates_before = len(memory_env.calls_for("create"))
    report = deploy(stack, make_context(journal=reloaded))

    assert report.succeeded
    assert memory_env.calls_for("create")[creates_before] == "GenerateUsagePlan"


def test_unresolved_reference_fails_the_node(stack, make_context, memory_env, journal, monkeypatch):
    build = memory_env.build_outputs

    def without_arn(kind, logical_id, inputs):
        outputs = build(kind, logical_id, inputs)
        if kind == ResourceKind.DATA_STORE:
            outputs.pop("tableArn")
        return outputs

    monkeypatch.setattr(memory_env, "build_outputs", without_arn)
    report = deploy(stack, make_context())

    assert report.first_failure == "ShortcodesTableReadWrite"
    assert journal.get("ShortcodesTableReadWrite").error_type == "UnresolvedReference"
    assert journal.get("ShortcodesTableReadWrite").error.startswith("ShortcodesTableReadWrite: cannot resolve")
    assert "ShortcodesTableReadWrite" not in memory_env.calls_for("create")


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------

def test_grant_follows_principal_and_resource(stack, make_context, memory_env):
    deploy(stack, make_context())
    creates = memory_env.calls_for("create")

    grant_at = creates.index("ShortcodesTableReadWrite")
    assert creates.index("ShortcodesTable") < grant_at
    assert creates.index("URLShortenerHandler") < grant_at


def test_grant_is_least_privilege(stack, make_context, memory_env):
    deploy(stack, make_context())
    document = memory_env.policy("URLShortenerStack-handler-role", "ShortcodesTableReadWritePolicy")

    (statement,) = document["Statement"]
    assert "dynamodb:*" not in statement["Action"]
    assert all(a.startswith("dynamodb:") and not a.endswith("*") for a in statement["Action"])
    assert statement["Resource"][0].endswith(":table/DefaultTableName")
    assert statement["Resource"][1].endswith(":table/DefaultTableName/index/*")


def test_client_error_on_grant_is_a_grant_failure(stack, make_context, memory_env, journal):
    memory_env.fail_on["ShortcodesTableReadWrite"] = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "not allowed"}}, "PutRolePolicy"
    )

    report = deploy(stack, make_context())

    assert report.first_failure == "ShortcodesTableReadWrite"
    assert journal.get("ShortcodesTableReadWrite").error_type == "GrantFailure"
    assert journal.get("URLShortenerHandler").state == NodeState.PROVISIONED


def test_unexpected_error_marks_node_and_propagates(stack, make_context, memory_env, journal):
    memory_env.fail_on["ShortcodesTable"] = RuntimeError("bug")

    with pytest.raises(RuntimeError):
        deploy(stack, make_context())
    assert journal.get("ShortcodesTable").state == NodeState.FAILED


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

def test_cancel_stops_before_next_node(stack, make_context, memory_env, journal):
    ctx = make_context()
    memory_env.hooks[("create", "URLShortenerHandler")] = ctx.cancel

    report = deploy(stack, ctx)

    assert report.cancelled
    assert report.run_state == RunState.FAILED
    # the in-flight node finished and was recorded
    assert journal.get("URLShortenerHandler").state == NodeState.PROVISIONED
    assert journal.get("ShortcodesTableReadWrite").state == NodeState.PENDING
    assert memory_env.calls_for("create")[-1] == "URLShortenerHandler"
    assert "Run was cancelled" in report.render()


def test_cancelled_run_resumes(stack, make_context, memory_env):
    ctx = make_context()
    memory_env.hooks[("create", "ShortcodesApi")] = ctx.cancel
    deploy(stack, ctx)
    memory_env.hooks.clear()

    report = deploy(stack, make_context())

    assert report.succeeded
    assert memory_env.calls_for("create").count("ShortcodesApi") == 1


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

def test_concurrent_apply_respects_dependencies(stack, make_context, memory_env):
    plan = plan_deployment(stack)

    report = deploy(stack, make_context(max_workers=4))

    assert report.succeeded
    creates = memory_env.calls_for("create")
    for logical_id in creates:
        for dependency in plan.graph.depends_on(logical_id):
            if dependency in creates:
                assert creates.index(dependency) < creates.index(logical_id)


def test_concurrent_failure_stops_new_work(stack, make_context, memory_env, journal):
    memory_env.fail_on["RouteRedirect"] = ProvisioningFailure("boom", "RouteRedirect")

    report = deploy(stack, make_context(max_workers=4))

    assert report.run_state == RunState.FAILED
    assert journal.get("RouteRedirect").state == NodeState.FAILED
    assert journal.get("ApiStage").state == NodeState.PENDING
    assert "ApiStage" not in memory_env.calls_for("create")


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------

def test_teardown_removes_only_removable_nodes(make_context, memory_env, journal):
    descriptors = [
        data_store("Scratch", table_name="scratch", partition_key="pk", removable=True),
        routing_layer("Api", api_name="api"),
    ]
    deploy(descriptors, make_context())

    report = teardown(descriptors, make_context())

    assert report.run_state == RunState.COMPLETED
    assert memory_env.calls_for("delete") == ["Scratch"]
    assert journal.get("Scratch").state == NodeState.ROLLED_BACK
    assert journal.get("Api").state == NodeState.PROVISIONED
    assert memory_env.entries(ResourceKind.DATA_STORE) == []


def test_teardown_removes_development_table_and_its_grant(make_context, memory_env, journal):
    descriptors = url_shortener_stack(DeploymentConfig(removableTable=True))
    deploy(descriptors, make_context())

    report = teardown(descriptors, make_context())

    assert report.run_state == RunState.COMPLETED
    assert memory_env.calls_for("delete") == ["ShortcodesTableReadWrite", "ShortcodesTable"]
    assert memory_env.entries(ResourceKind.DATA_STORE) == []
    assert memory_env.entries(ResourceKind.GRANT) == []
    assert journal.get("ShortcodesTable").state == NodeState.ROLLED_BACK
    # the handler is kept and still names the table
    assert journal.get("URLShortenerHandler").state == NodeState.PROVISIONED
    assert len(memory_env.entries(ResourceKind.COMPUTE_UNIT)) == 1


def test_teardown_of_a_missing_resource_is_absent(make_context, memory_env, journal):
    descriptors = [data_store("Scratch", table_name="scratch", partition_key="pk", removable=True)]
    deploy(descriptors, make_context())
    memory_env.resources[ResourceKind.DATA_STORE].clear()

    report = teardown(descriptors, make_context())

    assert {n.logical_id: n.action for n in report.nodes} == {"Scratch": "absent"}
    assert memory_env.calls_for("delete") == []
    assert journal.get("Scratch").state == NodeState.ROLLED_BACK


def test_redeploy_after_development_teardown_restores_table_and_grant(make_context, memory_env):
    descriptors = url_shortener_stack(DeploymentConfig(removableTable=True))
    deploy(descriptors, make_context())
    teardown(descriptors, make_context())
    creates_before = len(memory_env.calls_for("create"))

    report = deploy(descriptors, make_context())

    assert report.succeeded
    assert memory_env.calls_for("create")[creates_before:] == ["ShortcodesTable", "ShortcodesTableReadWrite"]
    assert report.nodes[0].action == "created"


def test_redeploy_after_teardown_recreates(make_context, memory_env):
    descriptors = [data_store("Scratch", table_name="scratch", partition_key="pk", removable=True)]
    deploy(descriptors, make_context())
    teardown(descriptors, make_context())

    report = deploy(descriptors, make_context())

    assert report.succeeded
    assert memory_env.calls_for("create") == ["Scratch", "Scratch"]
