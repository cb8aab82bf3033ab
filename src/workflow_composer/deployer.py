"""Deployment orchestrator.

Objective:
    Push a concrete graph to the execution engine for one tenant, exactly
    once per distinct content, and keep an auditable record of every attempt.

Responsibilities:
    - Serialize deployments per profile (single-flight, non-blocking).
    - Skip the engine entirely when the graph is already live (idempotence by
      content hash).
    - Create the graph on first deployment, update it in place afterwards so
      the external id is preserved.
    - Verify activation and record the live status.
    - Roll back to the last known-good graph on explicit request.

High-level call tree:
    - :class:`DeploymentOrchestrator`
        - :meth:`DeploymentOrchestrator.deploy`
            - :meth:`DeploymentOrchestrator._profile_lock`
            - :meth:`DeploymentOrchestrator._deploy_locked`
                - :meth:`DeploymentLedger.begin`
                - :func:`call_with_retry` -> create_graph / update_graph
                - :func:`call_with_retry` -> get_graph_status
                - :meth:`DeploymentLedger.finish` (always, in ``finally``)
        - :meth:`DeploymentOrchestrator.rollback`

State machine per profile:
    ``idle -> pending -> {success | failed}``; ``failed -> rolled_back`` only
    through :meth:`DeploymentOrchestrator.rollback`.

Operational notes:
    - A refused concurrent deploy or rollback writes no record. A build
      failure waits for the lock and is always recorded.
    - An activation failure is reported through the outcome, not raised, and
      never triggers an automatic rollback.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Protocol

from .config import DeploymentStatus, GraphStatus, OutcomeKind
from .errors import DeploymentInProgressError, RollbackUnavailableError
from .ledger import DeploymentLedger
from .models import ConcreteGraph, DeploymentOutcome, DeploymentRecord
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


class ExecutionEngine(Protocol):
    """The three engine operations the orchestrator calls."""

    def create_graph(self, graph: dict, timeout: Optional[float] = None) -> str: ...

    def update_graph(self, external_id: str, graph: dict, timeout: Optional[float] = None) -> bool: ...

    def get_graph_status(self, external_id: str, timeout: Optional[float] = None) -> GraphStatus: ...


class DeploymentOrchestrator:
    """
    Deploys concrete graphs and records every attempt.

    Attributes:
        engine: Execution engine client.
        ledger: Deployment history.
        policy: Retry policy for engine calls.
        timeout: Default per-request timeout in seconds.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        ledger: DeploymentLedger,
        policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.engine = engine
        self.ledger = ledger
        self.policy = policy or RetryPolicy()
        self.timeout = timeout

        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def _profile_lock(self, profile_id: str, wait: bool = False) -> Iterator[None]:
        with self._registry_lock:
            lock = self._locks.setdefault(profile_id, threading.Lock())

        if not lock.acquire(blocking=wait):
            logger.warning("Refusing concurrent deployment for profile %s", profile_id)
            raise DeploymentInProgressError(profile_id)
        try:
            yield
        finally:
            lock.release()

    def deploy(
        self,
        profile_id: str,
        graph: ConcreteGraph,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> DeploymentOutcome:
        """
        Deploy ``graph`` for ``profile_id``.

        Args:
            profile_id: Tenant identifier.
            graph: Fully injected graph.
            cancel: Optional cancellation signal.
            deadline: Optional absolute :func:`time.monotonic` deadline.

        Returns:
            DeploymentOutcome: ``deployed``, ``unchanged`` or
            ``activation_failed``.

        Raises:
            DeploymentInProgressError: If the profile is already deploying.
            DeploymentFailedError: If the engine write failed (after retries).
            DeploymentCancelledError: If cancelled or past the deadline.
        """
        with self._profile_lock(profile_id):
            return self._deploy_locked(profile_id, graph, cancel, deadline)

    def record_failure(self, profile_id: str, error_detail: str) -> DeploymentRecord:
        """
        Record an attempt that failed before reaching the engine.

        Waits for a running deployment of the same profile to finish so the
        failure lands after its record.
        """
        with self._profile_lock(profile_id, wait=True):
            return self.ledger.append(
                profile_id,
                DeploymentStatus.FAILED,
                external_graph_id=self.ledger.current_external_id(profile_id),
                error_detail=error_detail,
            )

    def rollback(
        self,
        profile_id: str,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> DeploymentOutcome:
        """
        Re-deploy the last known-good graph after a failed attempt.

        Args:
            profile_id: Tenant identifier.
            cancel: Optional cancellation signal.
            deadline: Optional absolute :func:`time.monotonic` deadline.

        Returns:
            DeploymentOutcome: ``rolled_back``, or ``unchanged`` when the
            engine still holds the known-good graph.

        Raises:
            RollbackUnavailableError: If the latest attempt did not fail or no
                known-good graph was recorded.
        """
        with self._profile_lock(profile_id):
            latest = self.ledger.latest(profile_id)
            if latest is None or latest.status != DeploymentStatus.FAILED:
                raise RollbackUnavailableError(
                    f"Nothing to roll back for profile {profile_id}: latest attempt did not fail"
                )
            if not latest.previous_graph_id:
                raise RollbackUnavailableError(
                    f"No known-good graph recorded before attempt {latest.attempt_id} "
                    f"of profile {profile_id}"
                )

            snapshot = self.ledger.get_graph(latest.previous_graph_id)
            if snapshot is None:
                raise RollbackUnavailableError(
                    f"Graph snapshot {latest.previous_graph_id} is not stored"
                )

            logger.info(
                "Rolling back profile %s (attempt %s) to graph %s",
                profile_id,
                latest.attempt_id,
                latest.previous_graph_id[:12],
            )
            return self._deploy_locked(
                profile_id, snapshot, cancel, deadline, rollback_of=latest.attempt_id
            )

    def _deploy_locked(
        self,
        profile_id: str,
        graph: ConcreteGraph,
        cancel: Optional[threading.Event],
        deadline: Optional[float],
        rollback_of: Optional[int] = None,
    ) -> DeploymentOutcome:
        content_hash = graph.content_hash
        last_success = self.ledger.last_success(profile_id)
        last_written = self.ledger.last_written(profile_id)
        previous_graph_id = last_success.content_hash if last_success else None

        # The engine still holds this exact graph: nothing to write.
        if (
            last_success is not None
            and last_success.content_hash == content_hash
            and last_written is not None
            and last_written.content_hash == content_hash
        ):
            status = DeploymentStatus.ROLLED_BACK if rollback_of else DeploymentStatus.UNCHANGED
            record = self.ledger.append(
                profile_id,
                status,
                content_hash=content_hash,
                previous_graph_id=previous_graph_id,
                external_graph_id=last_success.external_graph_id,
                activation_status=last_success.activation_status,
                rollback_of=rollback_of,
            )
            logger.info("Graph %s already live for profile %s", content_hash[:12], profile_id)
            return DeploymentOutcome(
                kind=OutcomeKind.UNCHANGED,
                record=record,
                external_graph_id=record.external_graph_id,
                content_hash=content_hash,
                activation_status=record.activation_status,
                strategy=graph.strategy,
            )

        existing_id = self.ledger.current_external_id(profile_id)
        record = self.ledger.begin(
            profile_id,
            content_hash=content_hash,
            previous_graph_id=previous_graph_id,
            external_graph_id=existing_id,
            rollback_of=rollback_of,
        )

        status = DeploymentStatus.FAILED
        fields: dict = {}
        try:
            self.ledger.store_graph(graph)

            if existing_id:
                call_with_retry(
                    "update_graph",
                    lambda timeout: self.engine.update_graph(existing_id, graph.graph, timeout=timeout),
                    self.policy,
                    cancel=cancel,
                    deadline=deadline,
                    timeout=self.timeout,
                )
                external_id = existing_id
            else:
                external_id = call_with_retry(
                    "create_graph",
                    lambda timeout: self.engine.create_graph(graph.graph, timeout=timeout),
                    self.policy,
                    cancel=cancel,
                    deadline=deadline,
                    timeout=self.timeout,
                )
            fields.update(external_graph_id=external_id, graph_written=True)

            live_status = call_with_retry(
                "get_graph_status",
                lambda timeout: self.engine.get_graph_status(external_id, timeout=timeout),
                self.policy,
                cancel=cancel,
                deadline=deadline,
                timeout=self.timeout,
            )
            fields["activation_status"] = live_status

            if live_status == GraphStatus.ACTIVE:
                status = DeploymentStatus.ROLLED_BACK if rollback_of else DeploymentStatus.SUCCESS
            else:
                fields["error_detail"] = f"Graph not active after deployment: {live_status.value}"
                logger.error(
                    "Graph %s for profile %s is %s after deployment",
                    external_id,
                    profile_id,
                    live_status.value,
                )
        except Exception as e:
            fields["error_detail"] = str(e)
            logger.error("Deployment attempt %s for profile %s failed: %s", record.attempt_id, profile_id, e)
            raise
        finally:
            record = self.ledger.finish(record, status, **fields)

        if status == DeploymentStatus.FAILED:
            kind = OutcomeKind.ACTIVATION_FAILED
        elif rollback_of:
            kind = OutcomeKind.ROLLED_BACK
        else:
            kind = OutcomeKind.DEPLOYED

        logger.info(
            "Profile %s attempt %s: %s (graph %s)",
            profile_id,
            record.attempt_id,
            kind.value,
            record.external_graph_id,
        )
        return DeploymentOutcome(
            kind=kind,
            record=record,
            external_graph_id=record.external_graph_id,
            content_hash=content_hash,
            activation_status=record.activation_status,
            strategy=graph.strategy,
        )
