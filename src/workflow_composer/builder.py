"""Composite template builder.

Objective:
    Merge the selected categories into one automation-graph template that
    still carries placeholder tokens. The injector later resolves them per
    tenant.

Core strategy:
    1. Choose a composition strategy from the compatibility score
       (:func:`select_strategy`).
    2. Resolve behavior-rule conflicts between categories
       (:func:`resolve_rules`): the more specific rule wins, then the
       category listed first in the priority order. Losers are kept in the
       merged taxonomy's provenance.
    3. Merge the label taxonomies according to the strategy.
    4. Lay out the graph: trigger, business context, classifier/responder
       section(s), label applicator.

Strategies:
    - ``unified``: one taxonomy, one classifier, one responder.
    - ``hybrid``: nodes shared by several categories are merged and handled
      by a shared sub-graph; category-specific nodes get their own
      sub-graphs behind one pre-classification router.
    - ``modular``: no taxonomy merge; one independent sub-graph per category
      joined only at the trigger and at the label applicator.

    Sections are named ``all``, ``shared`` or ``category:<id>``; node names
    are unique within a graph.

High-level call tree:
    - :func:`build_composite`
        - :func:`select_strategy`
        - :func:`resolve_rules`
        - :func:`_merge_nodes` / :func:`_modular_taxonomy`
        - :class:`_GraphLayout`

Operational notes:
    - Pure function of its inputs: no clocks, counters or randomness in the
      output. The deployment orchestrator relies on this for idempotence.
"""

import logging
import re
from collections import defaultdict
from typing import Any, Optional, Sequence

from .config import (
    HYBRID_THRESHOLD,
    UNIFIED_THRESHOLD,
    CompositionStrategy,
    MailboxProvider,
)
from .errors import InsufficientInputError
from .models import (
    CategoryDefinition,
    ClassificationRule,
    CompositeTemplate,
    DiscardedRule,
    LabelNode,
    MergedLabelNode,
    MergedTaxonomy,
    ResponseRule,
)
from .scorer import normalize_name

logger = logging.getLogger(__name__)

FACT_KEYS = (
    "business_name",
    "contact_email",
    "contact_phone",
    "timezone",
    "currency",
    "locale",
)

SHARED_ROUTE = "shared"
UNIFIED_SECTION = "all"


def _category_section(category_id: str) -> str:
    # Never equal to SHARED_ROUTE or UNIFIED_SECTION, whatever the id.
    return f"category:{category_id}"


def select_strategy(score: float) -> CompositionStrategy:
    """
    Map a compatibility score to a composition strategy.

    Boundaries are closed on the lower side: ``0.70`` is unified and ``0.40``
    is hybrid.

    Args:
        score: Compatibility score in ``[0, 1]``.

    Returns:
        CompositionStrategy: Chosen strategy.

    Raises:
        ValueError: If ``score`` is outside ``[0, 1]``.
    """
    if not 0.0 <= score <= 1.0:
        raise ValueError(f"Compatibility score must be within [0, 1], got {score}")
    if score >= UNIFIED_THRESHOLD:
        return CompositionStrategy.UNIFIED
    if score >= HYBRID_THRESHOLD:
        return CompositionStrategy.HYBRID
    return CompositionStrategy.MODULAR


class ResolvedRules:
    """Winning rules per intent key plus everything that lost.

    Attributes:
        classification: ``intentKey -> (category_id, rule)``.
        responses: ``intentKey -> (category_id, rule)``.
        discarded: ``intentKey -> [DiscardedRule]``.
        contested: Intent keys for which categories supplied different rules.
    """

    def __init__(self) -> None:
        self.classification: dict[str, tuple[str, ClassificationRule]] = {}
        self.responses: dict[str, tuple[str, ResponseRule]] = {}
        self.discarded: dict[str, list[DiscardedRule]] = defaultdict(list)
        self.contested: set[str] = set()


def _resolve_kind(
    kind: str,
    candidates: dict[str, list[tuple[int, str, Any]]],
    winners: dict[str, tuple[str, Any]],
    resolved: ResolvedRules,
) -> None:
    for intent_key, entries in candidates.items():
        # Highest specificity first, then declaration order.
        ranked = sorted(entries, key=lambda e: (-e[2].specificity, e[0]))
        _, winner_category, winner_rule = ranked[0]
        winners[intent_key] = (winner_category, winner_rule)

        winner_dump = winner_rule.model_dump(by_alias=True, exclude_none=True)
        for _, category_id, rule in ranked[1:]:
            dump = rule.model_dump(by_alias=True, exclude_none=True)
            if dump == winner_dump:
                continue
            resolved.contested.add(intent_key)
            reason = (
                "specificity"
                if rule.specificity < winner_rule.specificity
                else "declaration_order"
            )
            resolved.discarded[intent_key].append(
                DiscardedRule(
                    intent_key=intent_key,
                    rule_kind=kind,
                    category_id=category_id,
                    rule=dump,
                    superseded_by=winner_category,
                    reason=reason,
                )
            )
            logger.debug(
                "Discarded %s rule for %s from %s (kept %s, reason=%s)",
                kind,
                intent_key,
                category_id,
                winner_category,
                reason,
            )


def resolve_rules(ordered: Sequence[CategoryDefinition]) -> ResolvedRules:
    """
    Pick one classification and one response rule per intent key.

    Identical rules from several categories are not conflicts. When rules
    differ, the more specific one wins (a rule scoped to a named supplier or
    manager outranks a generic one); equal specificity falls back to the
    order of ``ordered``.

    Args:
        ordered: Categories in priority order.

    Returns:
        ResolvedRules: Winners, discarded rules and contested intent keys.
    """
    classification: dict[str, list[tuple[int, str, Any]]] = defaultdict(list)
    responses: dict[str, list[tuple[int, str, Any]]] = defaultdict(list)

    for rank, category in enumerate(ordered):
        for rule in category.behavior_rules.classification:
            classification[rule.intent_key].append((rank, category.category_id, rule))
        for rule in category.behavior_rules.responses:
            responses[rule.intent_key].append((rank, category.category_id, rule))

    resolved = ResolvedRules()
    _resolve_kind("classification", classification, resolved.classification, resolved)
    _resolve_kind("response", responses, resolved.responses, resolved)
    return resolved


def _merge_nodes(sources: Sequence[tuple[str, Sequence[LabelNode]]]) -> list[MergedLabelNode]:
    """Merge sibling node lists by intent key, keeping first-seen order.

    Args:
        sources: ``(category_id, nodes)`` pairs in priority order.

    Returns:
        list[MergedLabelNode]: Merged siblings with provenance and children
        merged recursively.
    """
    order: list[str] = []
    merged: dict[str, MergedLabelNode] = {}
    child_sources: dict[str, list[tuple[str, Sequence[LabelNode]]]] = defaultdict(list)

    for category_id, nodes in sources:
        for node in nodes:
            key = node.intent_key
            if key not in merged:
                order.append(key)
                merged[key] = MergedLabelNode(name=node.name, intent_key=key)
            if category_id not in merged[key].provenance:
                merged[key].provenance.append(category_id)
            if node.children:
                child_sources[key].append((category_id, node.children))

    for key, children in child_sources.items():
        merged[key].children = _merge_nodes(children)

    return [merged[key] for key in order]


def _warn_name_collisions(nodes: Sequence[MergedLabelNode]) -> None:
    by_name: dict[str, set[str]] = defaultdict(set)
    for node in nodes:
        by_name[normalize_name(node.name)].add(node.intent_key)
    for name, keys in by_name.items():
        if len(keys) > 1:
            logger.warning(
                "Top-level label '%s' maps to several intent keys (%s); kept separate",
                name,
                ", ".join(sorted(keys)),
            )


def _shared_top_level_keys(ordered: Sequence[CategoryDefinition]) -> set[str]:
    counts: dict[str, int] = defaultdict(int)
    for category in ordered:
        for node in category.label_taxonomy:
            counts[node.intent_key] += 1
    return {key for key, count in counts.items() if count > 1}


def _unified_taxonomy(ordered: Sequence[CategoryDefinition]) -> list[MergedLabelNode]:
    nodes = _merge_nodes([(c.category_id, c.label_taxonomy) for c in ordered])
    _warn_name_collisions(nodes)
    return nodes


def _hybrid_taxonomy(
    ordered: Sequence[CategoryDefinition],
) -> tuple[list[MergedLabelNode], dict[str, list[MergedLabelNode]]]:
    """Shared top-level nodes merged first, then each category's own nodes.

    Returns:
        tuple: ``(shared_nodes, {category_id: specific_nodes})``.
    """
    shared_keys = _shared_top_level_keys(ordered)
    shared = _merge_nodes(
        [
            (c.category_id, [n for n in c.label_taxonomy if n.intent_key in shared_keys])
            for c in ordered
        ]
    )
    specific = {
        c.category_id: _merge_nodes(
            [(c.category_id, [n for n in c.label_taxonomy if n.intent_key not in shared_keys])]
        )
        for c in ordered
    }
    _warn_name_collisions(shared + [n for nodes in specific.values() for n in nodes])
    return shared, specific


def _modular_taxonomy(ordered: Sequence[CategoryDefinition]) -> dict[str, list[MergedLabelNode]]:
    return {c.category_id: _merge_nodes([(c.category_id, c.label_taxonomy)]) for c in ordered}


def _label_paths(nodes: Sequence[MergedLabelNode]) -> dict[str, list[str]]:
    """Map each intent key to the display-name path of its first node."""
    paths: dict[str, list[str]] = {}

    def visit(node: MergedLabelNode, prefix: list[str]) -> None:
        path = prefix + [node.name]
        paths.setdefault(node.intent_key, path)
        for child in node.children:
            visit(child, path)

    for node in nodes:
        visit(node, [])
    return paths


def _intents_of(nodes: Sequence[MergedLabelNode]) -> list[str]:
    keys: list[str] = []
    for node in nodes:
        for item in node.walk():
            if item.intent_key not in keys:
                keys.append(item.intent_key)
    return keys


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


class _GraphLayout:
    """Accumulates nodes and connections in the execution-engine format."""

    def __init__(self, provider: MailboxProvider, resolved: ResolvedRules,
                 paths: dict[str, list[str]]) -> None:
        self.provider = provider
        self.resolved = resolved
        self.paths = paths
        self.nodes: list[dict[str, Any]] = []
        self._ids: set[str] = set()
        self.connections: dict[str, dict[str, list[list[dict[str, Any]]]]] = {}

    @property
    def credential_token(self) -> str:
        return f"{{{{credential:{self.provider.value}}}}}"

    def add(self, name: str, node_type: str, parameters: dict[str, Any]) -> str:
        if any(node["name"] == name for node in self.nodes):
            raise ValueError(f"Duplicate node name: {name}")
        node_id = base = _slug(name) or "node"
        suffix = 2
        while node_id in self._ids:
            node_id = f"{base}-{suffix}"
            suffix += 1
        self._ids.add(node_id)
        self.nodes.append(
            {
                "id": node_id,
                "name": name,
                "type": node_type,
                "typeVersion": 1,
                "parameters": parameters,
            }
        )
        return name

    def connect(self, source: str, targets: Sequence[str]) -> None:
        """Connect ``source`` to ``targets``; one output per target."""
        self.connections[source] = {
            "main": [[{"node": target, "type": "main", "index": 0}] for target in targets]
        }

    def trigger(self) -> str:
        return self.add(
            "Mailbox Trigger",
            "mailbox.trigger",
            {
                "provider": self.provider.value,
                "credentialId": self.credential_token,
                "pollTimes": {"item": [{"mode": "everyMinute"}]},
                "filters": {"labelIds": ["INBOX"], "includeSpamTrash": False},
            },
        )

    def context(self, category_ids: Sequence[str]) -> str:
        return self.add(
            "Business Context",
            "core.set",
            {
                "values": {key: f"{{{{fact:{key}}}}}" for key in FACT_KEYS},
                "categories": list(category_ids),
            },
        )

    def section(self, label: str, intent_keys: Sequence[str],
                category_ids: Sequence[str], with_branches: bool) -> tuple[str, str]:
        """Add a classifier + responder pair for ``intent_keys``.

        Returns:
            tuple[str, str]: Classifier and responder node names.
        """
        rules = []
        responses = []
        branches = []
        for key in intent_keys:
            if key in self.resolved.classification:
                category_id, rule = self.resolved.classification[key]
                entry = rule.model_dump(by_alias=True, exclude_none=True)
                entry.update({"labelPath": self.paths.get(key, []), "sourceCategory": category_id})
                rules.append(entry)
            if key in self.resolved.responses:
                category_id, rule = self.resolved.responses[key]
                entry = rule.model_dump(by_alias=True, exclude_none=True)
                entry["sourceCategory"] = category_id
                responses.append(entry)
                if with_branches and key in self.resolved.contested:
                    branches.append({"intentKey": key, "categoryId": category_id})

        classifier = self.add(
            f"Classifier: {label}",
            "ai.classifier",
            {
                "categories": list(category_ids),
                "labels": [{"intentKey": k, "labelPath": self.paths.get(k, [])} for k in intent_keys],
                "rules": rules,
                "outputKey": "intentKey",
                "fallbackIntent": None,
            },
        )
        responder_params: dict[str, Any] = {
            "rules": responses,
            "signature": "{{fact:business_name}}",
            "contact": {"email": "{{fact:contact_email}}", "phone": "{{fact:contact_phone}}"},
            "locale": "{{fact:locale}}",
        }
        if with_branches:
            responder_params["branches"] = branches
        responder = self.add(f"Responder: {label}", "ai.responder", responder_params)
        self.connect(classifier, [responder])
        return classifier, responder

    def router(self, name: str, routes: Sequence[tuple[str, Sequence[str]]]) -> str:
        return self.add(
            name,
            "ai.router",
            {
                "dataPropertyName": "route",
                "routes": [
                    {"output": index, "target": target, "intentKeys": list(keys)}
                    for index, (target, keys) in enumerate(routes)
                ],
            },
        )

    def label_applicator(self, intent_keys: Sequence[str]) -> str:
        return self.add(
            "Apply Labels",
            "mailbox.applyLabels",
            {
                "credentialId": self.credential_token,
                "messageId": "={{ $json.id }}",
                "labelMap": {key: f"{{{{labelId:{key}}}}}" for key in intent_keys},
            },
        )

    def render(self, strategy: CompositionStrategy) -> dict[str, Any]:
        return {
            "name": f"{{{{fact:business_name}}}} Email Automation ({strategy.value})",
            "nodes": self.nodes,
            "connections": self.connections,
            "settings": {
                "executionOrder": "v1",
                "saveManualExecutions": True,
                "timezone": "{{fact:timezone}}",
            },
        }


def _order_categories(
    categories: Sequence[CategoryDefinition], priority: Optional[Sequence[str]]
) -> list[CategoryDefinition]:
    by_id: dict[str, CategoryDefinition] = {}
    for category in categories:
        if category.category_id in by_id:
            raise ValueError(f"Duplicate category: {category.category_id}")
        by_id[category.category_id] = category

    order = list(priority) if priority is not None else sorted(by_id)
    missing = set(by_id) - set(order)
    if missing:
        raise ValueError(f"Categories missing from priority order: {', '.join(sorted(missing))}")
    return [by_id[category_id] for category_id in order if category_id in by_id]


def build_composite(
    categories: Sequence[CategoryDefinition],
    score: float,
    priority: Optional[Sequence[str]] = None,
    provider: MailboxProvider = MailboxProvider.GMAIL,
) -> CompositeTemplate:
    """
    Build a composite template for a category selection.

    Args:
        categories: Category definitions (any order).
        score: Compatibility score from
            :func:`src.workflow_composer.scorer.score_categories`.
        priority: Category ids in tie-break order. Defaults to sorted ids,
            so the result does not depend on selection order.
        provider: Mailbox provider whose credential the graph references.

    Returns:
        CompositeTemplate: Template with unresolved placeholders.

    Raises:
        InsufficientInputError: If ``categories`` is empty.
        ValueError: On an out-of-range score, duplicate categories or a
            category missing from ``priority``.
    """
    if not categories:
        raise InsufficientInputError("Cannot build a template from zero categories")

    strategy = select_strategy(score)
    ordered = _order_categories(categories, priority)
    category_ids = [c.category_id for c in ordered]
    resolved = resolve_rules(ordered)

    logger.info(
        "Building %s template for %s (score=%.3f)", strategy.value, ", ".join(category_ids), score
    )

    if strategy == CompositionStrategy.UNIFIED:
        taxonomy_nodes = _unified_taxonomy(ordered)
        layout = _GraphLayout(provider, resolved, _label_paths(taxonomy_nodes))
        all_keys = _intents_of(taxonomy_nodes)

        trigger = layout.trigger()
        context = layout.context(category_ids)
        classifier, responder = layout.section(
            UNIFIED_SECTION, all_keys, category_ids, with_branches=True
        )
        applicator = layout.label_applicator(all_keys)
        layout.connect(trigger, [context])
        layout.connect(context, [classifier])
        layout.connect(responder, [applicator])

    elif strategy == CompositionStrategy.HYBRID:
        shared, specific = _hybrid_taxonomy(ordered)
        taxonomy_nodes = shared + [n for cid in category_ids for n in specific[cid]]
        layout = _GraphLayout(provider, resolved, _label_paths(taxonomy_nodes))
        all_keys = _intents_of(taxonomy_nodes)

        routes: list[tuple[str, list[str]]] = []
        if shared:
            routes.append((SHARED_ROUTE, _intents_of(shared)))
        routes += [
            (_category_section(cid), _intents_of(specific[cid]))
            for cid in category_ids
            if specific[cid]
        ]

        trigger = layout.trigger()
        context = layout.context(category_ids)
        router = layout.router("Pre-classification Router", routes)
        sections = []
        owners_by_route = {_category_section(cid): [cid] for cid in category_ids}
        owners_by_route[SHARED_ROUTE] = category_ids
        for target, keys in routes:
            sections.append(
                layout.section(target, keys, owners_by_route[target], with_branches=True)
            )
        applicator = layout.label_applicator(all_keys)
        layout.connect(trigger, [context])
        layout.connect(context, [router])
        layout.connect(router, [classifier for classifier, _ in sections])
        for _, responder in sections:
            layout.connect(responder, [applicator])

    else:
        per_category = _modular_taxonomy(ordered)
        taxonomy_nodes = [n for cid in category_ids for n in per_category[cid]]
        layout = _GraphLayout(provider, resolved, _label_paths(taxonomy_nodes))
        all_keys = _intents_of(taxonomy_nodes)

        routes = [
            (_category_section(cid), _intents_of(per_category[cid])) for cid in category_ids
        ]

        trigger = layout.trigger()
        context = layout.context(category_ids)
        router = layout.router("Category Router", routes)
        sections = [
            layout.section(target, keys, [cid], with_branches=False)
            for cid, (target, keys) in zip(category_ids, routes)
        ]
        applicator = layout.label_applicator(all_keys)
        layout.connect(trigger, [context])
        layout.connect(context, [router])
        layout.connect(router, [classifier for classifier, _ in sections])
        for _, responder in sections:
            layout.connect(responder, [applicator])

    taxonomy = MergedTaxonomy(nodes=taxonomy_nodes)
    for intent_key, discarded in resolved.discarded.items():
        node = taxonomy.find(intent_key)
        if node is not None:
            node.discarded_rules.extend(discarded)

    return CompositeTemplate(
        strategy=strategy,
        category_ids=category_ids,
        score=score,
        merged_taxonomy=taxonomy,
        graph_template=layout.render(strategy),
    )
