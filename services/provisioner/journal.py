"""
Deployment Journal
==================
Per-node lifecycle state for one deployment, owned by the executor for the
duration of a run and persisted after every transition so a later run can
resume where this one stopped.

  Pending -> Provisioning -> Provisioned
                          -> Failed
  Provisioned -> RolledBack            (teardown only)

Stores:
  FileJournalStore    one JSON document per deployment under a directory
  DynamoJournalStore  one item per deployment, written with optimistic locking
"""
from __future__ import annotations

import json
import os
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from pydantic import BaseModel, Field

from provisioner.errors import JournalConflict
from shared.dynamodb import (
    OptimisticLockError,
    decimal_to_python,
    get_table,
    put_item_with_optimistic_lock,
)
from shared.logger import get_logger

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class NodeState(str, Enum):
    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    PROVISIONED = "Provisioned"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


class RunState(str, Enum):
    PLANNING = "Planning"
    APPLYING = "Applying"
    COMPLETED = "Completed"
    FAILED = "Failed"


class NodeRecord(BaseModel):
    logical_id: str
    kind: str
    state: NodeState = NodeState.PENDING
    fingerprint: str | None = None
    inputs_digest: str | None = None
    outputs: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    error_type: str | None = None
    updated_at: datetime = Field(default_factory=_now)


class JournalDocument(BaseModel):
    deployment: str
    run_state: RunState = RunState.PLANNING
    version: int = 0
    nodes: dict[str, NodeRecord] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=_now)


class DeploymentJournal:
    def __init__(self, deployment: str, store: "JournalStore | None" = None):
        self.deployment = deployment
        self._store = store
        self._lock = threading.RLock()
        loaded = store.load(deployment) if store else None
        self.document = loaded or JournalDocument(deployment=deployment)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def run_state(self) -> RunState:
        return self.document.run_state

    def get(self, logical_id: str) -> NodeRecord | None:
        with self._lock:
            return self.document.nodes.get(logical_id)

    def snapshot(self) -> dict[str, NodeRecord]:
        with self._lock:
            return dict(self.document.nodes)

    # ------------------------------------------------------------------
    # Writes (executor only)
    # ------------------------------------------------------------------

    def prepare(self, nodes: Iterable[tuple[str, str]]) -> None:
        """Make sure every (logical_id, kind) has a record. A node left
        Provisioning by an interrupted run goes back to Pending."""
        with self._lock:
            for logical_id, kind in nodes:
                record = self.document.nodes.get(logical_id)
                if record is None:
                    self.document.nodes[logical_id] = NodeRecord(logical_id=logical_id, kind=kind)
                elif record.state == NodeState.PROVISIONING:
                    self.document.nodes[logical_id] = record.model_copy(
                        update={"state": NodeState.PENDING, "updated_at": _now()}
                    )
            self._persist()

    def transition(self, logical_id: str, state: NodeState, **changes: Any) -> NodeRecord:
        with self._lock:
            record = self.document.nodes[logical_id]
            updated = record.model_copy(update={**changes, "state": state, "updated_at": _now()})
            self.document.nodes[logical_id] = updated
            self._persist()
            return updated

    def set_run_state(self, state: RunState) -> None:
        with self._lock:
            self.document.run_state = state
            self._persist()

    def _persist(self) -> None:
        self.document.updated_at = _now()
        if self._store is not None:
            self._store.save(self.document)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class JournalStore:
    def load(self, deployment: str) -> JournalDocument | None:
        raise NotImplementedError

    def save(self, document: JournalDocument) -> None:
        raise NotImplementedError

    def list_deployments(self) -> list[str]:
        raise NotImplementedError


class FileJournalStore(JournalStore):
    def __init__(self, directory: str | os.PathLike = ".urlstack"):
        self.directory = Path(directory)

    def path_for(self, deployment: str) -> Path:
        return self.directory / f"{deployment}.json"

    def load(self, deployment: str) -> JournalDocument | None:
        path = self.path_for(deployment)
        if not path.exists():
            return None
        return JournalDocument.model_validate_json(path.read_text())

    def save(self, document: JournalDocument) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(document.deployment)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(document.model_dump_json(indent=2))
        os.replace(tmp, path)

    def list_deployments(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))


class DynamoJournalStore(JournalStore):
    """
    Item layout: {"deployment": <name>, "version": <n>, "runState": <state>,
    "updatedAt": <iso>, "document": <json>}. runState and updatedAt are
    copies kept at the top level so a scan can summarise deployments
    without parsing documents.
    Each save is a compare-and-swap on `version`; a mismatch means another
    run wrote the journal since we loaded it and raises JournalConflict.
    """

    KEY = "deployment"

    def __init__(self, table_name: str | None = None):
        self.table_name = table_name or os.environ.get("JOURNAL_TABLE", "urlstack-journal")
        self._table = get_table(self.table_name)

    def load(self, deployment: str) -> JournalDocument | None:
        item = self._table.get_item(Key={self.KEY: deployment}).get("Item")
        if not item:
            return None
        document = JournalDocument.model_validate_json(item["document"])
        document.version = int(item["version"])
        return document

    def save(self, document: JournalDocument) -> None:
        item = {
            self.KEY: document.deployment,
            "version": document.version,
            "runState": document.run_state.value,
            "updatedAt": document.updated_at.isoformat(),
            "document": document.model_dump_json(exclude={"version"}),
        }
        try:
            put_item_with_optimistic_lock(self._table, item, key_attribute=self.KEY)
        except OptimisticLockError as e:
            raise JournalConflict(
                f"Journal for {document.deployment} was modified by another run"
            ) from e
        document.version += 1
        logger.debug(
            "Journal saved",
            extra={"deployment": document.deployment, "version": document.version},
        )

    def summaries(self) -> list[dict[str, Any]]:
        """deployment, version, runState and updatedAt for every stored journal."""
        kwargs: dict[str, Any] = {
            "ProjectionExpression": "#d, #v, #r, #u",
            "ExpressionAttributeNames": {
                "#d": self.KEY, "#v": "version", "#r": "runState", "#u": "updatedAt",
            },
        }
        items: list[dict[str, Any]] = []
        while True:
            page = self._table.scan(**kwargs)
            items.extend(page.get("Items", []))
            if "LastEvaluatedKey" not in page:
                break
            kwargs["ExclusiveStartKey"] = page["LastEvaluatedKey"]
        return sorted((decimal_to_python(i) for i in items), key=lambda i: i[self.KEY])

    def list_deployments(self) -> list[str]:
        return [s[self.KEY] for s in self.summaries()]


def describe(document: JournalDocument) -> str:
    """Human-readable one-line-per-node rendering used by `status`."""
    lines = [f"{document.deployment}: {document.run_state.value}"]
    for record in document.nodes.values():
        line = f"  {record.logical_id:<32} {record.kind:<18} {record.state.value}"
        if record.error:
            line += f"  ({record.error_type}: {record.error})"
        lines.append(line)
    return "\n".join(lines)


def dump_outputs(document: JournalDocument) -> str:
    return json.dumps(
        {lid: r.outputs for lid, r in document.nodes.items() if r.outputs},
        indent=2,
        default=str,
    )
