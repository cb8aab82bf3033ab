from unittest.mock import MagicMock

import pytest

from src.workflow_composer.catalog import InMemoryCategoryCatalog
from src.workflow_composer.config import CompositionStrategy, DeploymentStatus, OutcomeKind
from src.workflow_composer.errors import (
    CategoryNotFoundError,
    LabelBindingMismatchError,
    ProfileInactiveError,
    ProfileNotFoundError,
    UnresolvedPlaceholderError,
)
from src.workflow_composer.ledger import DeploymentLedger
from src.workflow_composer.pipeline import DeploymentPipeline
from src.workflow_composer.retry import RetryPolicy


@pytest.fixture
def tenants(profile, label_ids, credential) -> MagicMock:
    """One stub standing in for the profile, label and credential collaborators."""

    tenants = MagicMock()
    tenants.get_profile.return_value = profile
    tenants.get_label_ids.return_value = label_ids
    tenants.get_binding.return_value = credential
    return tenants


@pytest.fixture
def catalog(retail, wholesale) -> InMemoryCategoryCatalog:
    return InMemoryCategoryCatalog([retail, wholesale])


@pytest.fixture
def pipeline(settings, catalog, tenants, engine) -> DeploymentPipeline:
    return DeploymentPipeline(
        settings=settings,
        catalog=catalog,
        profiles=tenants,
        labels=tenants,
        credentials=tenants,
        engine=engine,
        ledger=DeploymentLedger(),
    )


def test_compose_and_deploy_end_to_end(pipeline, engine, tenants) -> None:
    """Profile -> score -> build -> inject -> deploy."""

    outcome = pipeline.compose_and_deploy("acme")

    assert outcome.kind == OutcomeKind.DEPLOYED
    assert outcome.strategy == CompositionStrategy.UNIFIED
    deployed_graph = engine.create_graph.call_args.args[0]
    assert deployed_graph["name"] == "Acme Co Email Automation (unified)"
    tenants.get_binding.assert_called_with("acme", "gmail")

    history = pipeline.get_history("acme")
    assert [r.status for r in history] == [DeploymentStatus.SUCCESS]
    assert pipeline.get_status("acme") == DeploymentStatus.SUCCESS


def test_repeat_deploy_is_unchanged(pipeline, engine) -> None:
    pipeline.compose_and_deploy("acme")
    outcome = pipeline.compose_and_deploy("acme")

    assert outcome.kind == OutcomeKind.UNCHANGED
    assert engine.create_graph.call_count == 1
    engine.update_graph.assert_not_called()


def test_catalog_edit_applies_to_next_deploy(pipeline, catalog, wholesale, engine) -> None:
    pipeline.compose_and_deploy("acme")

    edited = wholesale.model_copy(deep=True)
    edited.behavior_rules.classification[1].keywords.append("pallet")
    catalog.add(edited)

    outcome = pipeline.compose_and_deploy("acme")

    assert outcome.kind == OutcomeKind.DEPLOYED
    assert engine.update_graph.call_args.args[0] == "wf-1"


def test_compose_does_not_deploy(pipeline, engine) -> None:
    template, graph = pipeline.compose("acme")

    assert template.strategy == CompositionStrategy.UNIFIED
    assert graph.profile_id == "acme"
    engine.create_graph.assert_not_called()
    assert pipeline.get_history("acme") == []


def test_first_selected_category_wins_equal_rules(pipeline, profile) -> None:
    assert profile.selected_categories == ["wholesale", "retail"]

    template, _ = pipeline.compose("acme")

    classifier = next(
        node for node in template.graph_template["nodes"] if node["name"] == "Classifier: all"
    )
    orders = next(r for r in classifier["parameters"]["rules"] if r["intentKey"] == "orders")
    assert orders["sourceCategory"] == "wholesale"
    assert template.category_ids == ["wholesale", "retail"]

    discarded = template.merged_taxonomy.find("orders").discarded_rules
    assert [(d.category_id, d.reason) for d in discarded] == [("retail", "declaration_order")]

    profile.selected_categories = ["retail", "wholesale"]
    template, _ = pipeline.compose("acme")
    assert template.merged_taxonomy.find("orders").discarded_rules[0].category_id == "wholesale"


def test_label_mismatch_is_recorded_and_raised(pipeline, tenants, label_ids, engine) -> None:
    del label_ids["support"]

    with pytest.raises(LabelBindingMismatchError) as excinfo:
        pipeline.compose_and_deploy("acme")

    assert excinfo.value.offending == ["support"]
    engine.create_graph.assert_not_called()
    record = pipeline.get_history("acme")[-1]
    assert record.status == DeploymentStatus.FAILED
    assert "support" in record.error_detail


def test_missing_credential_is_recorded(pipeline, tenants, engine) -> None:
    tenants.get_binding.return_value = None

    with pytest.raises(UnresolvedPlaceholderError):
        pipeline.compose_and_deploy("acme")

    assert pipeline.get_status("acme") == DeploymentStatus.FAILED
    engine.create_graph.assert_not_called()


def test_unknown_category_is_recorded(pipeline, profile) -> None:
    profile.selected_categories = ["retail", "florist"]

    with pytest.raises(CategoryNotFoundError):
        pipeline.compose_and_deploy("acme")

    assert pipeline.get_status("acme") == DeploymentStatus.FAILED


def test_inactive_profile_is_refused_without_record(pipeline, profile, engine) -> None:
    profile.active = False

    with pytest.raises(ProfileInactiveError):
        pipeline.compose_and_deploy("acme")

    assert pipeline.get_history("acme") == []
    engine.create_graph.assert_not_called()


def test_unknown_profile_propagates(pipeline, tenants) -> None:
    tenants.get_profile.side_effect = ProfileNotFoundError("ghost")

    with pytest.raises(ProfileNotFoundError):
        pipeline.compose_and_deploy("ghost")

    assert pipeline.get_history("ghost") == []


def test_rollback_delegates_to_orchestrator(pipeline) -> None:
    pipeline.orchestrator = MagicMock()

    pipeline.rollback("acme")

    pipeline.orchestrator.rollback.assert_called_once_with("acme", cancel=None, deadline=None)


def test_settings_drive_retry_policy(pipeline, settings) -> None:
    policy = settings.retry_policy()
    assert isinstance(policy, RetryPolicy)
    assert (policy.base_delay, policy.max_delay, policy.jitter_range) == (0.0, 0.0, 0.0)
    assert pipeline.orchestrator.policy.max_retries == settings.retry_max_retries
    assert pipeline.orchestrator.timeout == settings.engine_timeout_seconds
