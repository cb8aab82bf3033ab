"""Pydantic data models used across the application.

Objective:
    Centralize all strongly-typed data structures representing:
    - Category definitions read from the catalog (taxonomy + behavior rules)
    - Tenant data (business profile, facts, credential references)
    - Composition outputs (merged taxonomy with provenance, composite template)
    - Injection inputs/outputs (binding set, concrete graph)
    - Deployment history (records and outcomes)

Design notes:
    - Models use camelCase aliases matching the catalog/tenant JSON documents
      (e.g. ``intentKey`` -> :attr:`LabelNode.intent_key`).
    - ``model_config = ConfigDict(populate_by_name=True)`` allows constructing
      models with either alias names or pythonic field names.

High-level structure:
    - Catalog primitives:
        - :class:`LabelNode`
        - :class:`RuleScope`, :class:`ClassificationRule`, :class:`ResponseRule`
        - :class:`BehaviorRules`
        - :class:`CategoryDefinition`
    - Tenant primitives:
        - :class:`BusinessFacts`, :class:`BusinessProfile`
        - :class:`CredentialBinding`
    - Composition primitives:
        - :class:`DiscardedRule`, :class:`MergedLabelNode`, :class:`MergedTaxonomy`
        - :class:`CompositeTemplate`
    - Injection primitives:
        - :class:`BindingSet`, :class:`ConcreteGraph`
    - Deployment primitives:
        - :class:`DeploymentRecord`, :class:`DeploymentOutcome`

Call tree usage:
    - :func:`src.workflow_composer.builder.build_composite`:
        - returns :class:`CompositeTemplate`
    - :func:`src.workflow_composer.injector.inject`:
        - returns :class:`ConcreteGraph`
    - :class:`src.workflow_composer.deployer.DeploymentOrchestrator`:
        - writes :class:`DeploymentRecord`, returns :class:`DeploymentOutcome`
"""

import hashlib
import json
import re
from datetime import datetime
from typing import Any, Iterable, Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import (
    CompositionStrategy,
    DeploymentStatus,
    GraphStatus,
    MailboxProvider,
    OutcomeKind,
)

# {{labelId:support}}, {{fact:business_name}}, {{credential:gmail}}.
# Engine expressions such as "={{ $json.id }}" never match (spaces, "$").
PLACEHOLDER_RE = re.compile(r"\{\{([A-Za-z]+):([^{}\s]+)\}\}")


def iter_strings(value: Any) -> Iterator[str]:
    """Yield every string value nested in dicts/lists (dict keys excluded)."""
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_strings(item)


def find_placeholders(value: Any) -> list[str]:
    """Return the sorted, de-duplicated placeholder tokens found in ``value``."""
    tokens = set()
    for text in iter_strings(value):
        for match in PLACEHOLDER_RE.finditer(text):
            tokens.add(match.group(0))
    return sorted(tokens)


def canonical_json(value: Any) -> str:
    """Serialize ``value`` deterministically (sorted keys, compact separators)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class LabelNode(BaseModel):
    """One node of a category's label taxonomy.

    ``intent_key`` is the stable identity of the label; ``name`` is only the
    display name.
    """

    name: str
    intent_key: str = Field(alias="intentKey")
    children: list["LabelNode"] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    def walk(self) -> Iterator["LabelNode"]:
        """Yield this node and all descendants depth-first."""
        yield self
        for child in self.children:
            yield from child.walk()


class RuleScope(BaseModel):
    """Named sub-entity a rule is restricted to (a supplier, a manager...)."""

    entity_type: str = Field(default="", alias="entityType")
    entity_name: str = Field(default="", alias="entityName")

    model_config = ConfigDict(populate_by_name=True)


def _specificity(scope: Optional[RuleScope]) -> int:
    if scope is None:
        return 0
    return sum(1 for part in (scope.entity_type, scope.entity_name) if part.strip())


class ClassificationRule(BaseModel):
    """Keyword/intent rule routing an email to the label of ``intent_key``."""

    intent_key: str = Field(alias="intentKey")
    keywords: list[str] = Field(default_factory=list)
    scope: Optional[RuleScope] = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def specificity(self) -> int:
        """Number of populated scope fields; 0 means a generic rule."""
        return _specificity(self.scope)


class ResponseRule(BaseModel):
    """Reply behavior (tone and template) for emails of ``intent_key``."""

    intent_key: str = Field(alias="intentKey")
    tone: str = ""
    template: str = ""
    scope: Optional[RuleScope] = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def specificity(self) -> int:
        """Number of populated scope fields; 0 means a generic rule."""
        return _specificity(self.scope)


class BehaviorRules(BaseModel):
    """Classification and response rules of one category."""

    classification: list[ClassificationRule] = Field(default_factory=list)
    responses: list[ResponseRule] = Field(default_factory=list)

    def referenced_intents(self) -> set[str]:
        """Intent keys referenced by any rule."""
        return {r.intent_key for r in self.classification} | {
            r.intent_key for r in self.responses
        }


class CategoryDefinition(BaseModel):
    """
    One service category's contribution to a composite workflow.

    Attributes:
        category_id: Stable identifier, unique within the catalog.
        label_taxonomy: Ordered top-level label nodes.
        behavior_rules: Classification and response rules keyed by intent key.
        version: Catalog version tag of this definition.
    """

    category_id: str = Field(alias="categoryId")
    label_taxonomy: list[LabelNode] = Field(default_factory=list, alias="labelTaxonomy")
    behavior_rules: BehaviorRules = Field(default_factory=BehaviorRules, alias="behaviorRules")
    version: str = "1"

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def _check_intents(self) -> "CategoryDefinition":
        seen: set[str] = set()
        for node in self.iter_nodes():
            if node.intent_key in seen:
                raise ValueError(
                    f"Duplicate intentKey '{node.intent_key}' in category {self.category_id}"
                )
            seen.add(node.intent_key)

        unknown = self.behavior_rules.referenced_intents() - seen
        if unknown:
            raise ValueError(
                f"Rules of category {self.category_id} reference unknown intentKey(s): "
                f"{', '.join(sorted(unknown))}"
            )

        for kind, rules in (
            ("classification", self.behavior_rules.classification),
            ("response", self.behavior_rules.responses),
        ):
            keys = [r.intent_key for r in rules]
            if len(keys) != len(set(keys)):
                raise ValueError(
                    f"Category {self.category_id} defines more than one {kind} rule per intentKey"
                )
        return self

    def iter_nodes(self) -> Iterator[LabelNode]:
        """Yield every taxonomy node depth-first."""
        for node in self.label_taxonomy:
            yield from node.walk()

    def intent_keys(self) -> set[str]:
        """All intent keys of the taxonomy."""
        return {node.intent_key for node in self.iter_nodes()}


class BusinessFacts(BaseModel):
    """Business facts exposed to ``{{fact:<name>}}`` placeholders."""

    business_name: str = Field(alias="businessName")
    contact_email: str = Field(default="", alias="contactEmail")
    contact_phone: str = Field(default="", alias="contactPhone")
    timezone: str = "UTC"
    currency: str = "USD"
    locale: str = "en-US"

    model_config = ConfigDict(populate_by_name=True)

    def as_bindings(self) -> dict[str, str]:
        """Return ``{fact_name: value}`` for every populated fact."""
        return {k: v for k, v in self.model_dump().items() if v is not None}


class BusinessProfile(BaseModel):
    """
    A tenant.

    Profiles are soft-deactivated (``active=False``), never deleted.

    Attributes:
        profile_id: Tenant identifier.
        selected_categories: Category ids chosen by the tenant. On an
            equal-specificity rule conflict the category listed first wins.
        facts: Business facts.
        mailbox_provider: Connected mailbox provider.
        active: False once the tenant has been deactivated.
    """

    profile_id: str = Field(alias="profileId")
    selected_categories: list[str] = Field(alias="selectedCategories")
    facts: BusinessFacts
    mailbox_provider: MailboxProvider = Field(
        default=MailboxProvider.GMAIL, alias="mailboxProvider"
    )
    active: bool = True

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("selected_categories")
    @classmethod
    def _check_selection(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("selectedCategories must not be empty")
        if len(value) != len(set(value)):
            raise ValueError("selectedCategories must not contain duplicates")
        return value


class CredentialBinding(BaseModel):
    """Reference to a credential stored in the execution engine.

    Only the external id is ever handled here, never secret material.
    """

    profile_id: str = Field(alias="profileId")
    provider_id: str = Field(alias="providerId")
    external_credential_id: str = Field(alias="externalCredentialId")

    model_config = ConfigDict(populate_by_name=True)


class DiscardedRule(BaseModel):
    """A rule that lost conflict resolution, kept for auditability."""

    intent_key: str = Field(alias="intentKey")
    rule_kind: str = Field(alias="ruleKind")
    category_id: str = Field(alias="categoryId")
    rule: dict[str, Any]
    superseded_by: str = Field(alias="supersededBy")
    reason: str

    model_config = ConfigDict(populate_by_name=True)


class MergedLabelNode(BaseModel):
    """Label node of the merged taxonomy, with category provenance."""

    name: str
    intent_key: str = Field(alias="intentKey")
    provenance: list[str] = Field(default_factory=list)
    discarded_rules: list[DiscardedRule] = Field(default_factory=list, alias="discardedRules")
    children: list["MergedLabelNode"] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    def walk(self) -> Iterator["MergedLabelNode"]:
        """Yield this node and all descendants depth-first."""
        yield self
        for child in self.children:
            yield from child.walk()


class MergedTaxonomy(BaseModel):
    """Single label tree produced by the builder."""

    nodes: list[MergedLabelNode] = Field(default_factory=list)

    def iter_nodes(self) -> Iterator[MergedLabelNode]:
        for node in self.nodes:
            yield from node.walk()

    def intent_keys(self) -> list[str]:
        """Intent keys in tree order, without duplicates."""
        keys: list[str] = []
        for node in self.iter_nodes():
            if node.intent_key not in keys:
                keys.append(node.intent_key)
        return keys

    def find(self, intent_key: str) -> Optional[MergedLabelNode]:
        """Return the first node carrying ``intent_key``."""
        for node in self.iter_nodes():
            if node.intent_key == intent_key:
                return node
        return None

    def discarded_rules(self) -> list[DiscardedRule]:
        """Every rule dropped during conflict resolution."""
        return [rule for node in self.iter_nodes() for rule in node.discarded_rules]


class CompositeTemplate(BaseModel):
    """
    Output of the builder, input to the injector.

    Attributes:
        strategy: Composition strategy chosen from the compatibility score.
        category_ids: Categories in priority order.
        score: Compatibility score the strategy was chosen from.
        merged_taxonomy: Label tree with provenance and discarded rules.
        graph_template: Automation graph still carrying placeholder tokens.
    """

    strategy: CompositionStrategy
    category_ids: list[str] = Field(alias="categoryIds")
    score: float
    merged_taxonomy: MergedTaxonomy = Field(alias="mergedTaxonomy")
    graph_template: dict[str, Any] = Field(alias="graphTemplate")

    model_config = ConfigDict(populate_by_name=True)

    def placeholders(self) -> list[str]:
        """Every placeholder token present in the graph template."""
        return find_placeholders(self.graph_template)


class BindingSet(BaseModel):
    """
    Tenant-specific values for every placeholder class.

    Attributes:
        label_ids: ``intentKey -> label/folder id`` for ``{{labelId:*}}``.
        facts: ``fact name -> value`` for ``{{fact:*}}``.
        credentials: ``providerId -> external credential id`` for
            ``{{credential:*}}``.
        provisioned_label_ids: Label ids that currently exist in the tenant's
            mailbox. Defaults to the values of ``label_ids``.
    """

    label_ids: dict[str, str] = Field(default_factory=dict, alias="labelIds")
    facts: dict[str, str] = Field(default_factory=dict)
    credentials: dict[str, str] = Field(default_factory=dict)
    provisioned_label_ids: Optional[set[str]] = Field(
        default=None, alias="provisionedLabelIds"
    )

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def for_profile(
        cls,
        profile: BusinessProfile,
        label_ids: dict[str, str],
        credentials: Iterable[CredentialBinding],
    ) -> "BindingSet":
        """Assemble a binding set from tenant collaborators' data.

        Args:
            profile: Tenant profile supplying facts.
            label_ids: Provisioned labels from the label-provisioning collaborator.
            credentials: Credential references for the tenant.

        Returns:
            BindingSet: Bindings for injection.
        """
        return cls(
            label_ids=dict(label_ids),
            facts=profile.facts.as_bindings(),
            credentials={c.provider_id: c.external_credential_id for c in credentials},
            provisioned_label_ids=set(label_ids.values()),
        )

    def lookup(self, kind: str, key: str) -> Optional[str]:
        """Return the bound value for ``{{kind:key}}`` or None."""
        if kind == "labelId":
            return self.label_ids.get(key)
        if kind == "fact":
            return self.facts.get(key)
        if kind == "credential":
            return self.credentials.get(key)
        return None

    def current_label_ids(self) -> set[str]:
        if self.provisioned_label_ids is None:
            return set(self.label_ids.values())
        return set(self.provisioned_label_ids)


class ConcreteGraph(BaseModel):
    """Composite template with every placeholder resolved; ready to deploy."""

    profile_id: str = Field(alias="profileId")
    strategy: CompositionStrategy
    graph: dict[str, Any]
    resolved: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    @property
    def content_hash(self) -> str:
        """SHA-256 of the canonical JSON form of :attr:`graph`."""
        return hashlib.sha256(canonical_json(self.graph).encode("utf-8")).hexdigest()


class DeploymentRecord(BaseModel):
    """
    One deployment attempt.

    A record is final once ``finished_at`` is set and is never changed again.

    Attributes:
        profile_id: Tenant identifier.
        attempt_id: Strictly increasing per profile, starting at 1.
        status: Attempt status.
        content_hash: Hash of the graph this attempt deployed.
        previous_graph_id: Content hash of the last-known-good graph before
            this attempt; the ledger keeps a snapshot under that id.
        external_graph_id: Engine-side graph identifier, when known.
        graph_written: Whether a create/update call reached the engine.
        activation_status: Live status read back from the engine.
        rollback_of: Attempt id this record rolled back.
        started_at: When the attempt started.
        finished_at: When the attempt reached a terminal status.
        error_detail: Failure description.
    """

    profile_id: str = Field(alias="profileId")
    attempt_id: int = Field(alias="attemptId", ge=1)
    status: DeploymentStatus
    content_hash: Optional[str] = Field(default=None, alias="contentHash")
    previous_graph_id: Optional[str] = Field(default=None, alias="previousGraphId")
    external_graph_id: Optional[str] = Field(default=None, alias="externalGraphId")
    graph_written: bool = Field(default=False, alias="graphWritten")
    activation_status: Optional[GraphStatus] = Field(default=None, alias="activationStatus")
    rollback_of: Optional[int] = Field(default=None, alias="rollbackOf")
    started_at: datetime = Field(alias="startedAt")
    finished_at: Optional[datetime] = Field(default=None, alias="finishedAt")
    error_detail: Optional[str] = Field(default=None, alias="errorDetail")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None


class DeploymentOutcome(BaseModel):
    """Result returned by deploy, rollback and compose-and-deploy."""

    kind: OutcomeKind
    record: DeploymentRecord
    external_graph_id: Optional[str] = None
    content_hash: Optional[str] = None
    activation_status: Optional[GraphStatus] = None
    strategy: Optional[CompositionStrategy] = None

    @property
    def success(self) -> bool:
        return self.kind != OutcomeKind.ACTIVATION_FAILED
