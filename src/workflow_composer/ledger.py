"""Deployment audit/history ledger.

Objective:
    Keep an append-only history of deployment attempts keyed by
    ``(profile_id, attempt_id)``, plus snapshots of deployed graphs so a
    rollback can re-deploy the last-known-good graph.

Responsibilities:
    - Assign strictly increasing attempt ids per profile.
    - Enforce at most one ``pending`` record per profile.
    - Refuse to change a record once ``finished_at`` is set.
    - Answer the lookups the orchestrator needs (latest, history, last
      success, last written graph, current external graph id).
    - Optionally persist every write as a JSON line and replay on start-up.

High-level call tree:
    - :class:`DeploymentLedger`
        - :meth:`begin` -> pending record
        - :meth:`finish` -> terminal record
        - :meth:`append` -> record written directly in a terminal state
        - :meth:`store_graph` / :meth:`get_graph`
        - :meth:`_load` (replay from ``path``)

Operational notes:
    - A pending record found during replay belongs to a process that died
      mid-deployment; it is finished as ``failed`` so the profile is not
      blocked forever.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from .config import DeploymentStatus
from .errors import LedgerError
from .models import ConcreteGraph, DeploymentRecord

logger = logging.getLogger(__name__)

# Statuses meaning "the graph of this record is live on the engine".
LIVE_STATUSES = frozenset({DeploymentStatus.SUCCESS, DeploymentStatus.ROLLED_BACK})

ORPHANED_PENDING_DETAIL = "process terminated while deployment was pending"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentLedger:
    """
    Append-only store of :class:`DeploymentRecord` objects.

    Attributes:
        path: Optional JSON-lines file receiving every write.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        """
        Initialize the ledger, replaying ``path`` when it exists.

        Args:
            path: JSON-lines file for durable history (None keeps it in memory).
        """
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self._records: dict[str, list[DeploymentRecord]] = {}
        self._graphs: dict[str, ConcreteGraph] = {}

        if self.path and self.path.exists():
            self._load()

    def _persist(self, entry: dict[str, Any]) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, sort_keys=True) + "\n")
            handle.flush()

    def _persist_record(self, record: DeploymentRecord) -> None:
        self._persist({"type": "record", "data": record.model_dump(mode="json", by_alias=True)})

    def _load(self) -> None:
        """Replay the JSON-lines file; the last line per attempt wins."""
        with self.path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupt ledger line %s in %s", line_number, self.path)
                    continue

                if entry.get("type") == "graph":
                    graph = ConcreteGraph.model_validate(entry["data"])
                    self._graphs[entry["id"]] = graph
                elif entry.get("type") == "record":
                    record = DeploymentRecord.model_validate(entry["data"])
                    self._put(record)

        for records in self._records.values():
            for record in records:
                if record.status == DeploymentStatus.PENDING:
                    logger.warning(
                        "Finishing orphaned pending attempt %s for profile %s",
                        record.attempt_id,
                        record.profile_id,
                    )
                    self.finish(
                        record, DeploymentStatus.FAILED, error_detail=ORPHANED_PENDING_DETAIL
                    )

    def _put(self, record: DeploymentRecord) -> None:
        records = self._records.setdefault(record.profile_id, [])
        index = record.attempt_id - 1
        if index < len(records):
            records[index] = record
        elif index == len(records):
            records.append(record)
        else:
            raise LedgerError(
                f"Attempt id gap for profile {record.profile_id}: {record.attempt_id}"
            )

    def _next_attempt_id(self, profile_id: str) -> int:
        return len(self._records.get(profile_id, [])) + 1

    def begin(
        self,
        profile_id: str,
        content_hash: Optional[str] = None,
        previous_graph_id: Optional[str] = None,
        external_graph_id: Optional[str] = None,
        rollback_of: Optional[int] = None,
    ) -> DeploymentRecord:
        """
        Open a new attempt in ``pending`` status.

        Raises:
            LedgerError: If the profile already has a pending attempt.
        """
        with self._lock:
            latest = self.latest(profile_id)
            if latest is not None and latest.status == DeploymentStatus.PENDING:
                raise LedgerError(
                    f"Profile {profile_id} already has pending attempt {latest.attempt_id}"
                )

            record = DeploymentRecord(
                profile_id=profile_id,
                attempt_id=self._next_attempt_id(profile_id),
                status=DeploymentStatus.PENDING,
                content_hash=content_hash,
                previous_graph_id=previous_graph_id,
                external_graph_id=external_graph_id,
                rollback_of=rollback_of,
                started_at=utcnow(),
            )
            self._put(record)
            self._persist_record(record)
            return record

    def finish(self, record: DeploymentRecord, status: DeploymentStatus, **fields: Any) -> DeploymentRecord:
        """
        Move a pending attempt to a terminal status.

        Args:
            record: The pending record returned by :meth:`begin`.
            status: Terminal status.
            **fields: Other record fields to set (``external_graph_id``,
                ``graph_written``, ``activation_status``, ``error_detail``).

        Returns:
            DeploymentRecord: The finished record.

        Raises:
            LedgerError: If the record is unknown or already finished.
        """
        if status == DeploymentStatus.PENDING:
            raise LedgerError("Cannot finish an attempt with status pending")

        with self._lock:
            records = self._records.get(record.profile_id, [])
            index = record.attempt_id - 1
            if index >= len(records):
                raise LedgerError(
                    f"Unknown attempt {record.attempt_id} for profile {record.profile_id}"
                )
            stored = records[index]
            if stored.is_finished:
                raise LedgerError(
                    f"Attempt {record.attempt_id} for profile {record.profile_id} is final"
                )

            update = dict(fields)
            update.update({"status": status, "finished_at": utcnow()})
            finished = stored.model_copy(update=update)
            records[index] = finished
            self._persist_record(finished)
            return finished

    def append(self, profile_id: str, status: DeploymentStatus, **fields: Any) -> DeploymentRecord:
        """Write a record that is terminal from the start (e.g. ``unchanged``)."""
        if status == DeploymentStatus.PENDING:
            raise LedgerError("Use begin() for pending attempts")

        with self._lock:
            latest = self.latest(profile_id)
            if latest is not None and latest.status == DeploymentStatus.PENDING:
                raise LedgerError(
                    f"Profile {profile_id} already has pending attempt {latest.attempt_id}"
                )
            now = utcnow()
            record = DeploymentRecord(
                profile_id=profile_id,
                attempt_id=self._next_attempt_id(profile_id),
                status=status,
                started_at=fields.pop("started_at", now),
                finished_at=now,
                **fields,
            )
            self._put(record)
            self._persist_record(record)
            return record

    def latest(self, profile_id: str) -> Optional[DeploymentRecord]:
        with self._lock:
            records = self._records.get(profile_id)
            return records[-1] if records else None

    def history(self, profile_id: str) -> list[DeploymentRecord]:
        """Every record of a profile, oldest first."""
        with self._lock:
            return list(self._records.get(profile_id, []))

    def last_success(self, profile_id: str) -> Optional[DeploymentRecord]:
        """Most recent record whose graph went live (success or rolled back)."""
        with self._lock:
            for record in reversed(self._records.get(profile_id, [])):
                if record.status in LIVE_STATUSES:
                    return record
            return None

    def last_written(self, profile_id: str) -> Optional[DeploymentRecord]:
        """Most recent record whose graph reached the engine."""
        with self._lock:
            for record in reversed(self._records.get(profile_id, [])):
                if record.graph_written:
                    return record
            return None

    def current_external_id(self, profile_id: str) -> Optional[str]:
        """External graph id of the profile's deployed graph, if any."""
        with self._lock:
            for record in reversed(self._records.get(profile_id, [])):
                if record.external_graph_id:
                    return record.external_graph_id
            return None

    def store_graph(self, graph: ConcreteGraph) -> str:
        """Keep a snapshot of ``graph`` under its content hash."""
        graph_id = graph.content_hash
        with self._lock:
            if graph_id not in self._graphs:
                self._graphs[graph_id] = graph
                self._persist(
                    {
                        "type": "graph",
                        "id": graph_id,
                        "data": graph.model_dump(mode="json", by_alias=True),
                    }
                )
        return graph_id

    def get_graph(self, graph_id: str) -> Optional[ConcreteGraph]:
        with self._lock:
            return self._graphs.get(graph_id)
