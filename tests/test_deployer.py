import threading

import pytest

from src.workflow_composer.config import (
    CompositionStrategy,
    DeploymentStatus,
    GraphStatus,
    OutcomeKind,
)
from src.workflow_composer.deployer import DeploymentOrchestrator
from src.workflow_composer.errors import (
    DeploymentCancelledError,
    DeploymentFailedError,
    DeploymentInProgressError,
    EngineRequestError,
    RollbackUnavailableError,
    TransientEngineError,
)
from src.workflow_composer.ledger import DeploymentLedger
from src.workflow_composer.models import ConcreteGraph


def _graph(name: str) -> ConcreteGraph:
    return ConcreteGraph(
        profile_id="acme",
        strategy=CompositionStrategy.UNIFIED,
        graph={"name": name, "nodes": [{"name": "Mailbox Trigger"}]},
    )


@pytest.fixture
def ledger() -> DeploymentLedger:
    return DeploymentLedger()


@pytest.fixture
def orchestrator(engine, ledger, fast_policy) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(engine, ledger, policy=fast_policy, timeout=5.0)


class TestDeploy:
    """Create, update, idempotence and activation."""

    def test_first_deploy_creates_graph(self, orchestrator, engine, ledger) -> None:
        graph = _graph("g1")

        outcome = orchestrator.deploy("acme", graph)

        assert outcome.kind == OutcomeKind.DEPLOYED
        assert outcome.success
        assert outcome.external_graph_id == "wf-1"
        assert outcome.activation_status == GraphStatus.ACTIVE
        assert outcome.content_hash == graph.content_hash
        engine.create_graph.assert_called_once_with(graph.graph, timeout=5.0)
        engine.update_graph.assert_not_called()

        record = ledger.latest("acme")
        assert record.status == DeploymentStatus.SUCCESS
        assert record.graph_written is True
        assert record.previous_graph_id is None
        assert ledger.get_graph(graph.content_hash) == graph

    def test_identical_deploy_is_unchanged(self, orchestrator, engine, ledger) -> None:
        """Two deploys of the same graph call the engine once."""

        first = orchestrator.deploy("acme", _graph("g1"))
        second = orchestrator.deploy("acme", _graph("g1"))

        assert engine.create_graph.call_count == 1
        engine.update_graph.assert_not_called()
        assert engine.get_graph_status.call_count == 1

        assert second.kind == OutcomeKind.UNCHANGED
        assert second.external_graph_id == first.external_graph_id
        assert [r.status for r in ledger.history("acme")] == [
            DeploymentStatus.SUCCESS,
            DeploymentStatus.UNCHANGED,
        ]

    def test_changed_graph_updates_in_place(self, orchestrator, engine, ledger) -> None:
        first = _graph("g1")
        orchestrator.deploy("acme", first)

        outcome = orchestrator.deploy("acme", _graph("g2"))

        assert outcome.kind == OutcomeKind.DEPLOYED
        assert outcome.external_graph_id == "wf-1"
        engine.create_graph.assert_called_once()
        assert engine.update_graph.call_args.args[0] == "wf-1"
        assert ledger.latest("acme").previous_graph_id == first.content_hash

    def test_inactive_graph_is_activation_failure(self, orchestrator, engine, ledger) -> None:
        """No exception and no automatic rollback when the graph does not activate."""

        engine.get_graph_status.return_value = GraphStatus.INACTIVE

        outcome = orchestrator.deploy("acme", _graph("g1"))

        assert outcome.kind == OutcomeKind.ACTIVATION_FAILED
        assert not outcome.success
        assert outcome.external_graph_id == "wf-1"
        record = ledger.latest("acme")
        assert record.status == DeploymentStatus.FAILED
        assert record.activation_status == GraphStatus.INACTIVE
        assert record.graph_written is True
        assert len(ledger.history("acme")) == 1

    def test_redeploy_after_activation_failure_writes_again(self, orchestrator, engine) -> None:
        engine.get_graph_status.return_value = GraphStatus.INACTIVE
        orchestrator.deploy("acme", _graph("g1"))

        engine.get_graph_status.return_value = GraphStatus.ACTIVE
        outcome = orchestrator.deploy("acme", _graph("g1"))

        assert outcome.kind == OutcomeKind.DEPLOYED
        engine.update_graph.assert_called_once()


class TestFailures:
    """Retries, rejections and cancellation."""

    def test_transient_failure_is_retried(self, orchestrator, engine, ledger) -> None:
        engine.create_graph.side_effect = [TransientEngineError("503", status_code=503), "wf-1"]

        outcome = orchestrator.deploy("acme", _graph("g1"))

        assert outcome.kind == OutcomeKind.DEPLOYED
        assert engine.create_graph.call_count == 2
        assert len(ledger.history("acme")) == 1

    def test_rejection_fails_without_retry(self, orchestrator, engine, ledger) -> None:
        engine.create_graph.side_effect = EngineRequestError("invalid", status_code=400)

        with pytest.raises(DeploymentFailedError) as excinfo:
            orchestrator.deploy("acme", _graph("g1"))

        assert excinfo.value.retryable is False
        assert engine.create_graph.call_count == 1
        record = ledger.latest("acme")
        assert record.status == DeploymentStatus.FAILED
        assert record.graph_written is False
        assert "invalid" in record.error_detail

    def test_exhausted_retries_leave_failed_record(self, orchestrator, engine, ledger) -> None:
        engine.create_graph.side_effect = TransientEngineError("down", status_code=502)

        with pytest.raises(DeploymentFailedError) as excinfo:
            orchestrator.deploy("acme", _graph("g1"))

        assert excinfo.value.attempts == 4
        assert isinstance(excinfo.value.cause, TransientEngineError)
        assert ledger.latest("acme").status == DeploymentStatus.FAILED

    def test_cancellation_leaves_failed_record_and_releases_lock(
        self, orchestrator, engine, ledger
    ) -> None:
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(DeploymentCancelledError):
            orchestrator.deploy("acme", _graph("g1"), cancel=cancel)

        record = ledger.latest("acme")
        assert record.status == DeploymentStatus.FAILED
        assert record.is_finished
        engine.create_graph.assert_not_called()

        assert orchestrator.deploy("acme", _graph("g1")).kind == OutcomeKind.DEPLOYED

    def test_unexpected_exception_still_finishes_record(self, orchestrator, engine, ledger) -> None:
        engine.get_graph_status.side_effect = RuntimeError("bug")

        with pytest.raises(RuntimeError):
            orchestrator.deploy("acme", _graph("g1"))

        record = ledger.latest("acme")
        assert record.status == DeploymentStatus.FAILED
        assert record.graph_written is True
        assert record.external_graph_id == "wf-1"


class TestConcurrency:
    """Per-profile single flight."""

    def test_concurrent_deploy_is_refused(self, orchestrator, engine, ledger) -> None:
        started = threading.Event()
        release = threading.Event()

        def slow_create(graph, timeout=None):
            started.set()
            release.wait(5)
            return "wf-1"

        engine.create_graph.side_effect = slow_create
        results = []
        worker = threading.Thread(
            target=lambda: results.append(orchestrator.deploy("acme", _graph("g1")))
        )
        worker.start()
        assert started.wait(5)

        with pytest.raises(DeploymentInProgressError):
            orchestrator.deploy("acme", _graph("g2"))

        release.set()
        worker.join(5)

        assert results[0].kind == OutcomeKind.DEPLOYED
        assert engine.create_graph.call_count == 1
        assert len(ledger.history("acme")) == 1

    def test_build_failure_waits_for_running_deploy(self, orchestrator, engine, ledger) -> None:
        started = threading.Event()
        release = threading.Event()

        def slow_create(graph, timeout=None):
            started.set()
            release.wait(5)
            return "wf-1"

        engine.create_graph.side_effect = slow_create
        worker = threading.Thread(target=orchestrator.deploy, args=("acme", _graph("g1")))
        worker.start()
        assert started.wait(5)

        recorder = threading.Thread(
            target=orchestrator.record_failure, args=("acme", "label mismatch")
        )
        recorder.start()
        recorder.join(0.2)
        assert recorder.is_alive()

        release.set()
        worker.join(5)
        recorder.join(5)

        history = ledger.history("acme")
        assert [r.status for r in history] == [DeploymentStatus.SUCCESS, DeploymentStatus.FAILED]
        assert history[1].error_detail == "label mismatch"
        assert history[1].external_graph_id == "wf-1"

    def test_other_profiles_are_not_blocked(self, orchestrator, engine, ledger) -> None:
        started = threading.Event()
        release = threading.Event()

        def slow_create(graph, timeout=None):
            if graph["name"] == "slow":
                started.set()
                release.wait(5)
            return "wf-" + graph["name"]

        engine.create_graph.side_effect = slow_create
        worker = threading.Thread(target=orchestrator.deploy, args=("acme", _graph("slow")))
        worker.start()
        assert started.wait(5)

        outcome = orchestrator.deploy("globex", _graph("fast"))

        release.set()
        worker.join(5)
        assert outcome.external_graph_id == "wf-fast"
        assert ledger.latest("acme").status == DeploymentStatus.SUCCESS


class TestRollback:
    """Restoring the last known-good graph."""

    def test_rollback_redeploys_previous_success(self, orchestrator, engine, ledger) -> None:
        good = _graph("g1")
        orchestrator.deploy("acme", good)
        engine.get_graph_status.return_value = GraphStatus.ERROR
        orchestrator.deploy("acme", _graph("g2"))

        engine.get_graph_status.return_value = GraphStatus.ACTIVE
        engine.update_graph.reset_mock()
        outcome = orchestrator.rollback("acme")

        assert outcome.kind == OutcomeKind.ROLLED_BACK
        assert outcome.content_hash == good.content_hash
        engine.update_graph.assert_called_once_with("wf-1", good.graph, timeout=5.0)

        record = ledger.latest("acme")
        assert record.status == DeploymentStatus.ROLLED_BACK
        assert record.rollback_of == 2
        assert record.content_hash == good.content_hash
        assert ledger.last_success("acme").attempt_id == 3

    def test_rollback_when_engine_was_never_touched(self, orchestrator, engine, ledger) -> None:
        """A failed write leaves the good graph live; rollback only records it."""

        orchestrator.deploy("acme", _graph("g1"))
        engine.update_graph.side_effect = EngineRequestError("invalid", status_code=400)
        with pytest.raises(DeploymentFailedError):
            orchestrator.deploy("acme", _graph("g2"))

        outcome = orchestrator.rollback("acme")

        assert outcome.kind == OutcomeKind.UNCHANGED
        assert engine.update_graph.call_count == 1
        record = ledger.latest("acme")
        assert record.status == DeploymentStatus.ROLLED_BACK
        assert record.graph_written is False
        assert record.rollback_of == 2

    def test_rollback_requires_failed_latest(self, orchestrator) -> None:
        with pytest.raises(RollbackUnavailableError):
            orchestrator.rollback("acme")

        orchestrator.deploy("acme", _graph("g1"))
        with pytest.raises(RollbackUnavailableError):
            orchestrator.rollback("acme")

    def test_rollback_requires_known_good_graph(self, orchestrator, engine) -> None:
        engine.get_graph_status.return_value = GraphStatus.INACTIVE
        orchestrator.deploy("acme", _graph("g1"))

        with pytest.raises(RollbackUnavailableError):
            orchestrator.rollback("acme")

    def test_record_failure_appends_failed_record(self, orchestrator, ledger) -> None:
        orchestrator.deploy("acme", _graph("g1"))

        record = orchestrator.record_failure("acme", "label mismatch")

        assert record.status == DeploymentStatus.FAILED
        assert record.external_graph_id == "wf-1"
        assert record.error_detail == "label mismatch"
