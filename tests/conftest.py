from unittest.mock import MagicMock

import pytest

from src.workflow_composer.config import GraphStatus, MailboxProvider, Settings
from src.workflow_composer.models import (
    BusinessFacts,
    BusinessProfile,
    CategoryDefinition,
    CredentialBinding,
)
from src.workflow_composer.retry import RetryPolicy


@pytest.fixture
def retail() -> CategoryDefinition:
    """Retail category: orders (with returns), support and a generic urgent rule."""

    return CategoryDefinition.model_validate(
        {
            "categoryId": "retail",
            "labelTaxonomy": [
                {
                    "name": "Orders",
                    "intentKey": "orders",
                    "children": [{"name": "Returns", "intentKey": "returns"}],
                },
                {"name": "Support", "intentKey": "support"},
                {"name": "Urgent", "intentKey": "urgent"},
            ],
            "behaviorRules": {
                "classification": [
                    {"intentKey": "orders", "keywords": ["order", "purchase"]},
                    {"intentKey": "support", "keywords": ["help"]},
                    {"intentKey": "urgent", "keywords": ["urgent", "asap"]},
                ],
                "responses": [
                    {
                        "intentKey": "support",
                        "tone": "friendly",
                        "template": "Thanks for reaching out to {{fact:business_name}}",
                    },
                    {
                        "intentKey": "urgent",
                        "tone": "calm",
                        "template": "We received your urgent request and will reply shortly.",
                    },
                ],
            },
        }
    )


@pytest.fixture
def wholesale() -> CategoryDefinition:
    """Supplier-management category with supplier-scoped urgent rules."""

    return CategoryDefinition.model_validate(
        {
            "categoryId": "wholesale",
            "labelTaxonomy": [
                {"name": "Orders", "intentKey": "orders"},
                {"name": "Support", "intentKey": "support"},
                {"name": "Suppliers", "intentKey": "suppliers"},
                {"name": "Urgent", "intentKey": "urgent"},
            ],
            "behaviorRules": {
                "classification": [
                    {"intentKey": "orders", "keywords": ["bulk order"]},
                    {"intentKey": "suppliers", "keywords": ["invoice", "shipment"]},
                    {
                        "intentKey": "urgent",
                        "keywords": ["urgent", "delayed shipment"],
                        "scope": {"entityType": "supplier", "entityName": "Acme Supplies"},
                    },
                ],
                "responses": [
                    {"intentKey": "support", "tone": "formal"},
                    {
                        "intentKey": "urgent",
                        "tone": "direct",
                        "template": "Your account manager at {{fact:business_name}} will call you today.",
                        "scope": {"entityType": "supplier", "entityName": "Acme Supplies"},
                    },
                ],
            },
        }
    )


@pytest.fixture
def services() -> CategoryDefinition:
    """Shares orders/support with retail but not urgent (hybrid range)."""

    return CategoryDefinition.model_validate(
        {
            "categoryId": "services",
            "labelTaxonomy": [
                {"name": "Orders", "intentKey": "orders"},
                {"name": "Support", "intentKey": "support"},
                {"name": "Bookings", "intentKey": "bookings"},
            ],
            "behaviorRules": {
                "classification": [{"intentKey": "bookings", "keywords": ["appointment"]}],
            },
        }
    )


@pytest.fixture
def legal() -> CategoryDefinition:
    """Nothing in common with the other categories."""

    return CategoryDefinition.model_validate(
        {
            "categoryId": "legal",
            "labelTaxonomy": [
                {"name": "Contracts", "intentKey": "contracts"},
                {"name": "Compliance", "intentKey": "compliance"},
            ],
            "behaviorRules": {
                "classification": [{"intentKey": "contracts", "keywords": ["contract"]}],
            },
        }
    )


@pytest.fixture
def label_ids() -> dict[str, str]:
    """Provisioned labels for every intent key used by the fixtures."""

    keys = [
        "orders",
        "returns",
        "support",
        "urgent",
        "suppliers",
        "bookings",
        "contracts",
        "compliance",
    ]
    return {key: f"Label_{key}" for key in keys}


@pytest.fixture
def profile() -> BusinessProfile:
    return BusinessProfile(
        profile_id="acme",
        selected_categories=["wholesale", "retail"],
        facts=BusinessFacts(
            business_name="Acme Co",
            contact_email="hello@acme.test",
            contact_phone="+1 555 0100",
            timezone="Europe/Brussels",
        ),
        mailbox_provider=MailboxProvider.GMAIL,
    )


@pytest.fixture
def credential() -> CredentialBinding:
    return CredentialBinding(
        profile_id="acme", provider_id="gmail", external_credential_id="cred-42"
    )


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Retry policy without delays."""

    return RetryPolicy(max_retries=3, base_delay=0.0, max_delay=0.0, jitter_range=0.0)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        engine_base_url="http://engine.test:5678/",
        engine_api_key="test-key",
        engine_timeout_seconds=5.0,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        retry_jitter_range=0.0,
    )


@pytest.fixture
def engine() -> MagicMock:
    """Execution engine stub: creates "wf-1" and reports it active."""

    engine = MagicMock()
    engine.create_graph.return_value = "wf-1"
    engine.update_graph.return_value = True
    engine.get_graph_status.return_value = GraphStatus.ACTIVE
    return engine
