"""
Deployment journal: lifecycle transitions, file persistence and the
DynamoDB store's optimistic locking (moto).
"""
import pytest

from provisioner.errors import JournalConflict
from provisioner.journal import (
    DeploymentJournal, DynamoJournalStore, FileJournalStore, JournalDocument, NodeState, RunState,
    describe, dump_outputs,
)


def test_prepare_creates_pending_records(journal):
    journal.prepare([("Table", "DataStore"), ("Api", "RoutingLayer")])
    assert journal.get("Table").state == NodeState.PENDING
    assert journal.get("Api").kind == "RoutingLayer"
    assert journal.run_state == RunState.PLANNING


def test_prepare_keeps_existing_records(journal):
    journal.prepare([("Table", "DataStore")])
    journal.transition("Table", NodeState.PROVISIONED, outputs={"tableName": "t"}, fingerprint="abc")
    journal.prepare([("Table", "DataStore")])
    record = journal.get("Table")
    assert record.state == NodeState.PROVISIONED
    assert record.outputs == {"tableName": "t"}


def test_interrupted_node_returns_to_pending(journal):
    journal.prepare([("Table", "DataStore")])
    journal.transition("Table", NodeState.PROVISIONING)
    journal.prepare([("Table", "DataStore")])
    assert journal.get("Table").state == NodeState.PENDING


def test_transition_records_error(journal):
    journal.prepare([("Grant", "Grant")])
    journal.transition("Grant", NodeState.FAILED, error="AccessDenied", error_type="GrantFailure")
    record = journal.get("Grant")
    assert (record.state, record.error_type) == (NodeState.FAILED, "GrantFailure")
    assert "GrantFailure: AccessDenied" in describe(journal.document)


def test_snapshot_is_a_copy(journal):
    journal.prepare([("Table", "DataStore")])
    snapshot = journal.snapshot()
    journal.transition("Table", NodeState.PROVISIONED)
    assert snapshot["Table"].state == NodeState.PENDING


class TestFileStore:
    def test_every_transition_is_persisted(self, tmp_path):
        store = FileJournalStore(tmp_path)
        journal = DeploymentJournal("stack", store)
        journal.prepare([("Table", "DataStore")])
        journal.transition("Table", NodeState.PROVISIONED, outputs={"tableName": "t"})

        reloaded = DeploymentJournal("stack", store)
        assert reloaded.get("Table").state == NodeState.PROVISIONED
        assert reloaded.get("Table").outputs == {"tableName": "t"}
        assert not list(tmp_path.glob("*.tmp"))

    def test_list_deployments(self, tmp_path):
        store = FileJournalStore(tmp_path / "j")
        assert store.list_deployments() == []
        DeploymentJournal("b", store).set_run_state(RunState.APPLYING)
        DeploymentJournal("a", store).set_run_state(RunState.APPLYING)
        assert store.list_deployments() == ["a", "b"]

    def test_missing_journal_loads_as_none(self, tmp_path):
        assert FileJournalStore(tmp_path).load("nothing") is None

    def test_dump_outputs(self, tmp_path):
        journal = DeploymentJournal("stack", FileJournalStore(tmp_path))
        journal.prepare([("Table", "DataStore"), ("Api", "RoutingLayer")])
        journal.transition("Table", NodeState.PROVISIONED, outputs={"tableName": "t"})
        assert '"tableName": "t"' in dump_outputs(journal.document)
        assert "Api" not in dump_outputs(journal.document)


class TestDynamoStore:
    def test_round_trip_and_version(self, journal_table):
        store = DynamoJournalStore()
        journal = DeploymentJournal("stack", store)
        journal.prepare([("Table", "DataStore")])
        journal.transition("Table", NodeState.PROVISIONED, outputs={"tableName": "t"})

        item = journal_table.get_item(Key={"deployment": "stack"})["Item"]
        assert int(item["version"]) == journal.document.version == 2

        reloaded = DeploymentJournal("stack", DynamoJournalStore("test-journal"))
        assert reloaded.get("Table").outputs == {"tableName": "t"}
        assert reloaded.document.version == 2

    def test_concurrent_writer_conflicts(self, journal_table):
        first = DeploymentJournal("stack", DynamoJournalStore())
        first.prepare([("Table", "DataStore")])
        second = DeploymentJournal("stack", DynamoJournalStore())

        second.transition("Table", NodeState.PROVISIONING)
        with pytest.raises(JournalConflict, match="modified by another run"):
            first.transition("Table", NodeState.PROVISIONING)

    def test_first_write_conflicts_with_existing_item(self, journal_table):
        DeploymentJournal("stack", DynamoJournalStore()).prepare([("Table", "DataStore")])
        stale = DynamoJournalStore()
        # a document created without loading does not know the stored version
        with pytest.raises(JournalConflict):
            stale.save(JournalDocument(deployment="stack"))

    def test_summaries_without_parsing_documents(self, journal_table):
        for name in ("beta", "alpha"):
            journal = DeploymentJournal(name, DynamoJournalStore())
            journal.prepare([("Table", "DataStore")])
        DeploymentJournal("beta", DynamoJournalStore()).set_run_state(RunState.COMPLETED)

        store = DynamoJournalStore()
        summaries = store.summaries()

        assert store.list_deployments() == ["alpha", "beta"]
        assert [(s["deployment"], s["version"], s["runState"]) for s in summaries] == [
            ("alpha", 1, "Planning"),
            ("beta", 2, "Completed"),
        ]
        assert isinstance(summaries[0]["version"], int)
