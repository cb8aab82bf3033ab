"""Composition and deployment pipeline.

Objective:
    Coordinate the end-to-end flow for one tenant:
    1) Load the business profile and its selected categories
    2) Score category compatibility
    3) Build the composite template for the chosen strategy
    4) Inject tenant labels, facts and credentials
    5) Deploy the concrete graph (or report it unchanged)

Responsibilities:
    - Compose the core components (catalog, tenant collaborators, engine
      client, ledger, deployment orchestrator).
    - Provide an imperative API (:meth:`DeploymentPipeline.compose_and_deploy`)
      that can be called from the CLI, the FastAPI webapp, or other scripts.
    - Record build-time failures in the ledger so the tenant's history shows
      every attempt.

High-level call tree:
    - :class:`DeploymentPipeline`
        - :meth:`DeploymentPipeline.compose_and_deploy`
            - :meth:`DeploymentPipeline.compose`
                - :meth:`CatalogSnapshot.fetch`
                - :func:`score_categories`
                - :func:`build_composite`
                - :meth:`BindingSet.for_profile`
                - :func:`inject`
            - :meth:`DeploymentOrchestrator.deploy`
        - :meth:`DeploymentPipeline.rollback`
        - :meth:`DeploymentPipeline.get_history`
    - :func:`deploy_profile` convenience wrapper

Operational notes:
    - The catalog is read fresh for every call; edits apply to the next
      deployment.
    - Build-time errors are never retried.
"""

import logging
import threading
from typing import Optional

from .builder import build_composite
from .catalog import (
    CatalogSnapshot,
    CategoryCatalog,
    CredentialStore,
    FileCategoryCatalog,
    FileTenantDirectory,
    LabelProvisioner,
    ProfileStore,
)
from .config import DeploymentStatus, Settings, get_settings
from .deployer import DeploymentOrchestrator, ExecutionEngine
from .engine_client import ExecutionEngineClient
from .errors import PipelineError, ProfileInactiveError
from .injector import inject
from .ledger import DeploymentLedger
from .models import (
    BindingSet,
    BusinessProfile,
    CompositeTemplate,
    ConcreteGraph,
    DeploymentOutcome,
    DeploymentRecord,
)
from .scorer import score_categories

logger = logging.getLogger(__name__)


class DeploymentPipeline:
    """
    Composes and deploys a tenant's automation graph.

    Every collaborator can be injected, which keeps tests free of files and
    network access. Missing collaborators are built from settings.

    Attributes:
        settings: Application settings.
        catalog: Category definitions.
        profiles: Business profile store.
        labels: Label provisioning collaborator.
        credentials: Credential store.
        ledger: Deployment history.
        orchestrator: Deployment orchestrator.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        catalog: Optional[CategoryCatalog] = None,
        profiles: Optional[ProfileStore] = None,
        labels: Optional[LabelProvisioner] = None,
        credentials: Optional[CredentialStore] = None,
        engine: Optional[ExecutionEngine] = None,
        ledger: Optional[DeploymentLedger] = None,
    ) -> None:
        """
        Initialize the pipeline with all components.

        Args:
            settings: Application settings (loads from env if None).
            catalog: Category catalog (directory catalog if None).
            profiles: Profile store (tenants file if None).
            labels: Label provisioner (tenants file if None).
            credentials: Credential store (tenants file if None).
            engine: Execution engine client (REST client if None).
            ledger: Deployment ledger (from ``settings.ledger_path`` if None).
        """
        self.settings = settings or get_settings()

        tenants = None
        if profiles is None or labels is None or credentials is None:
            tenants = FileTenantDirectory(self.settings.tenants_file)

        self.catalog = catalog or FileCategoryCatalog(self.settings.catalog_dir)
        self.profiles = profiles or tenants
        self.labels = labels or tenants
        self.credentials = credentials or tenants
        self.ledger = ledger or DeploymentLedger(self.settings.ledger_path)
        self.orchestrator = DeploymentOrchestrator(
            engine or ExecutionEngineClient(self.settings),
            self.ledger,
            policy=self.settings.retry_policy(),
            timeout=self.settings.engine_timeout_seconds,
        )

    def _load_profile(self, profile_id: str) -> BusinessProfile:
        profile = self.profiles.get_profile(profile_id)
        if not profile.active:
            raise ProfileInactiveError(profile_id)
        return profile

    def compose(self, profile_id: str) -> tuple[CompositeTemplate, ConcreteGraph]:
        """
        Build and inject the tenant's graph without deploying it.

        Args:
            profile_id: Tenant identifier.

        Returns:
            tuple[CompositeTemplate, ConcreteGraph]: Template and concrete graph.

        Raises:
            ProfileNotFoundError: If the profile does not exist.
            ProfileInactiveError: If the profile is deactivated.
            CategoryNotFoundError: If a selected category is not in the catalog.
            InsufficientInputError: If no category was selected.
            UnresolvedPlaceholderError: If a fact or credential is missing.
            LabelBindingMismatchError: If labels are missing or not provisioned.
        """
        profile = self._load_profile(profile_id)
        snapshot = CatalogSnapshot.fetch(self.catalog, profile.selected_categories)

        score = score_categories(snapshot.categories)
        template = build_composite(
            snapshot.categories,
            score,
            priority=profile.selected_categories,
            provider=profile.mailbox_provider,
        )

        provider_id = profile.mailbox_provider.value
        binding = self.credentials.get_binding(profile_id, provider_id)
        if binding is None:
            logger.warning("No %s credential bound for profile %s", provider_id, profile_id)

        bindings = BindingSet.for_profile(
            profile,
            self.labels.get_label_ids(profile_id),
            [binding] if binding else [],
        )
        graph = inject(template, bindings, profile_id)

        logger.info(
            "Composed %s graph for profile %s (score=%.3f, categories=%s)",
            template.strategy.value,
            profile_id,
            score,
            ",".join(template.category_ids),
        )
        return template, graph

    def compose_and_deploy(
        self,
        profile_id: str,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> DeploymentOutcome:
        """
        Compose the tenant's graph and deploy it.

        Args:
            profile_id: Tenant identifier.
            cancel: Optional cancellation signal.
            deadline: Optional absolute :func:`time.monotonic` deadline.

        Returns:
            DeploymentOutcome: What the deployment did.

        Raises:
            PipelineError: Any build or deployment error (see :meth:`compose`
                and :meth:`DeploymentOrchestrator.deploy`).
        """
        profile = self._load_profile(profile_id)
        logger.info(
            "Starting composition for profile %s (%s categories)",
            profile_id,
            len(profile.selected_categories),
        )

        try:
            _, graph = self.compose(profile_id)
        except PipelineError as e:
            logger.error("Composition failed for profile %s: %s", profile_id, e)
            self.orchestrator.record_failure(profile_id, str(e))
            raise

        return self.orchestrator.deploy(profile_id, graph, cancel=cancel, deadline=deadline)

    def rollback(
        self,
        profile_id: str,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> DeploymentOutcome:
        """Restore the last known-good graph after a failed deployment."""
        return self.orchestrator.rollback(profile_id, cancel=cancel, deadline=deadline)

    def get_history(self, profile_id: str) -> list[DeploymentRecord]:
        """Every deployment record of the profile, oldest first."""
        return self.ledger.history(profile_id)

    def get_status(self, profile_id: str) -> Optional[DeploymentStatus]:
        latest = self.ledger.latest(profile_id)
        return latest.status if latest else None


def deploy_profile(profile_id: str) -> DeploymentOutcome:
    """Convenience wrapper to compose and deploy one profile.

    Args:
        profile_id: Tenant identifier.

    Returns:
        DeploymentOutcome: What the deployment did.
    """
    pipeline = DeploymentPipeline()
    return pipeline.compose_and_deploy(profile_id)
