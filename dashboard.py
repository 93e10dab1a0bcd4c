"""
URL Shortener Provisioner: Deployment Dashboard
Shows the deployment journal node by node, and runs local (in-memory)
deployments to demonstrate failure, resumption and the /generate rate limit.

Usage:
  streamlit run dashboard.py                          # journals under .urlstack/
  JOURNAL_TABLE=urlstack-journal streamlit run dashboard.py
"""
import os
import time

import streamlit as st

from provisioner.errors import ProvisioningFailure
from provisioner.executor import DeploymentContext, deploy
from provisioner.gateway import LocalGateway
from provisioner.journal import DeploymentJournal, DynamoJournalStore, FileJournalStore, NodeState
from provisioner.memory import InMemoryEnvironment
from urlshortener.config import DeploymentConfig
from urlshortener.stack import url_shortener_stack

# ── Config ─────────────────────────────────────────────────────────────────
JOURNAL_DIR = ".urlstack"
JOURNAL_TABLE = os.environ.get("JOURNAL_TABLE")

STATE_ICON = {
    NodeState.PENDING:      "⚪",
    NodeState.PROVISIONING: "🔵",
    NodeState.PROVISIONED:  "🟢",
    NodeState.FAILED:       "🔴",
    NodeState.ROLLED_BACK:  "↩️",
}


def _node_rows(nodes) -> list:
    return [
        {
            "Node":    r.logical_id,
            "Kind":    r.kind,
            "State":   f"{STATE_ICON.get(r.state, '⚪')} {r.state.value}",
            "Error":   f"{r.error_type}: {r.error}" if r.error else "",
            "Updated": r.updated_at.isoformat()[:19].replace("T", " "),
        }
        for r in nodes
    ]


# ── Local deployment (session scoped) ──────────────────────────────────────
def _local_session():
    if "env" not in st.session_state:
        config = DeploymentConfig.from_sources({})
        st.session_state["config"] = config
        st.session_state["env"] = InMemoryEnvironment(
            region=config.region, hosted_zones=(config.domain_name,)
        )
        st.session_state["journal"] = DeploymentJournal(config.stack_name)
    return st.session_state["config"], st.session_state["env"], st.session_state["journal"]


def run_local(fail_at: str | None) -> None:
    config, env, journal = _local_session()
    env.fail_on.clear()
    if fail_at:
        env.fail_on[fail_at] = ProvisioningFailure("Injected failure", fail_at)
    before = len(env.calls_for("create"))
    ctx = DeploymentContext(deployment_name=config.stack_name, environment=env, journal=journal)
    report = deploy(url_shortener_stack(config), ctx)
    st.session_state["report"] = report
    st.session_state["creates"] = env.calls_for("create")[before:]


# ── Page layout ────────────────────────────────────────────────────────────
st.set_page_config(page_title="URL Shortener Provisioner", page_icon="🔗", layout="wide")
st.title("🔗 URL Shortener — Deployment Dashboard")
st.caption("Dependency-ordered provisioning · resumable journal · usage-plan rate limiting")

journal_tab, local_tab = st.tabs(["📒 Journals", "🧪 Local deployment"])

with journal_tab:
    store = DynamoJournalStore(JOURNAL_TABLE) if JOURNAL_TABLE else FileJournalStore(JOURNAL_DIR)
    deployments = store.list_deployments()
    if not deployments:
        st.info(f"No journals in `{JOURNAL_TABLE or JOURNAL_DIR}` yet, run `urlstack deploy` first.")
    else:
        name = st.selectbox("Deployment", deployments)
        document = store.load(name)
        nodes = list(document.nodes.values())
        provisioned = sum(r.state == NodeState.PROVISIONED for r in nodes)
        c1, c2, c3 = st.columns(3)
        c1.metric("Run state", document.run_state.value)
        c2.metric("Provisioned", f"{provisioned}/{len(nodes)}")
        c3.metric("Failed", sum(r.state == NodeState.FAILED for r in nodes))
        st.dataframe(_node_rows(nodes), use_container_width=True, hide_index=True)

        outputs = {r.logical_id: r.outputs for r in nodes if r.outputs}
        with st.expander("Outputs"):
            st.json(outputs)

with local_tab:
    config, env, journal = _local_session()
    left, right = st.columns([1, 1.5])

    with left:
        st.subheader("🚀 Deploy")
        order = [d.logical_id for d in url_shortener_stack(config)]
        fail_at = st.selectbox("Inject failure at", ["(none)"] + order)
        if st.button("Deploy / resume", type="primary", use_container_width=True):
            run_local(None if fail_at == "(none)" else fail_at)
            st.rerun()
        st.caption(
            "Deploy with an injected failure, then deploy again with **(none)**: "
            "only the failed and pending nodes are created the second time."
        )

    with right:
        st.subheader("📋 Last run")
        report = st.session_state.get("report")
        if report is None:
            st.info("No local run yet.")
        else:
            st.caption(f"run state **{report.run_state.value}** · first failure `{report.first_failure}`")
            st.caption(f"created this run: {', '.join(st.session_state['creates']) or 'nothing'}")
            st.dataframe(
                [
                    {"Node": n.logical_id, "Kind": n.kind,
                     "State": f"{STATE_ICON.get(n.state, '⚪')} {n.state.value}",
                     "Action": n.action or ""}
                    for n in report.nodes
                ],
                use_container_width=True, hide_index=True,
            )

    st.divider()
    st.subheader("⏱️ /generate rate limit")
    report = st.session_state.get("report")
    if report is None or not report.succeeded:
        st.info("Complete a local deployment to exercise the gateway.")
    else:
        api_id = journal.get("ShortcodesApi").outputs["apiId"]
        key = journal.get("GenerateApiKey").outputs["keyValue"]
        burst = st.slider("Requests sent at the same instant", 1, 10, 3)
        with_key = st.checkbox("Send API key", value=True)
        if st.button("Send burst"):
            gateway = LocalGateway.from_environment(env, api_id)
            now = time.monotonic()
            results = [
                gateway.request("POST", "/generate", api_key=key if with_key else None, now=now).status
                for _ in range(burst)
            ]
            st.write({status: results.count(status) for status in sorted(set(results))})
            st.caption(f"Handler invocations: {len(gateway.invocations)}")
