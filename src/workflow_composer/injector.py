"""Runtime data injection.

Objective:
    Turn a :class:`src.workflow_composer.models.CompositeTemplate` into a
    :class:`src.workflow_composer.models.ConcreteGraph` by replacing every
    placeholder token with the tenant's value.

Placeholder classes:
    - ``{{labelId:<intentKey>}}`` -> provisioned label/folder id
    - ``{{fact:<name>}}`` -> business fact (``business_name``, ``timezone``...)
    - ``{{credential:<providerId>}}`` -> external credential id

Validation:
    - Any fact/credential (or unknown-class) token without a binding fails
      with :class:`UnresolvedPlaceholderError` naming every such token.
    - After substitution, every label referenced by the graph must exist in
      the tenant's provisioned label set. Problems are reported together as
      one :class:`LabelBindingMismatchError`.
    - A partially injected graph is never returned.

High-level call tree:
    - :func:`inject`
        - :class:`_Substitution` (walks the graph, records every value)
        - :func:`src.workflow_composer.models.find_placeholders`

Operational notes:
    - Pure computation; the template is never mutated.
"""

import logging
import re
from typing import Any

from .errors import LabelBindingMismatchError, UnresolvedPlaceholderError
from .models import (
    PLACEHOLDER_RE,
    BindingSet,
    CompositeTemplate,
    ConcreteGraph,
    find_placeholders,
)

logger = logging.getLogger(__name__)


class _Substitution:
    """One injection pass over a graph."""

    def __init__(self, bindings: BindingSet) -> None:
        self.bindings = bindings
        self.resolved: dict[str, str] = {}
        self.unresolved: set[str] = set()
        self.missing_intents: set[str] = set()
        self.label_values: set[str] = set()

    def _replace(self, match: "re.Match[str]") -> str:
        token, kind, key = match.group(0), match.group(1), match.group(2)
        value = self.bindings.lookup(kind, key)
        if value is None:
            if kind == "labelId":
                self.missing_intents.add(key)
            else:
                self.unresolved.add(token)
            return token

        self.resolved[token] = value
        if kind == "labelId":
            self.label_values.add(value)
        return value

    def apply(self, value: Any) -> Any:
        if isinstance(value, str):
            return PLACEHOLDER_RE.sub(self._replace, value)
        if isinstance(value, dict):
            return {key: self.apply(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self.apply(item) for item in value]
        return value


def inject(template: CompositeTemplate, bindings: BindingSet, profile_id: str) -> ConcreteGraph:
    """
    Resolve every placeholder of ``template`` against ``bindings``.

    Args:
        template: Composite template from the builder.
        bindings: Tenant bindings.
        profile_id: Tenant the graph is built for.

    Returns:
        ConcreteGraph: Fully concrete graph plus the token -> value map.

    Raises:
        UnresolvedPlaceholderError: If a fact/credential token has no binding.
        LabelBindingMismatchError: If labels are missing or not provisioned.
    """
    substitution = _Substitution(bindings)
    graph = substitution.apply(template.graph_template)

    if substitution.unresolved:
        raise UnresolvedPlaceholderError(substitution.unresolved)

    unknown = substitution.label_values - bindings.current_label_ids()
    if substitution.missing_intents or unknown:
        logger.warning(
            "Label mismatch for profile %s: missing=%s unknown=%s",
            profile_id,
            sorted(substitution.missing_intents),
            sorted(unknown),
        )
        raise LabelBindingMismatchError(substitution.missing_intents, unknown)

    # Bound values must not smuggle new tokens into the graph.
    leftover = find_placeholders(graph)
    if leftover:
        raise UnresolvedPlaceholderError(leftover)

    logger.debug(
        "Injected %s placeholder(s) for profile %s", len(substitution.resolved), profile_id
    )
    return ConcreteGraph(
        profile_id=profile_id,
        strategy=template.strategy,
        graph=graph,
        resolved=substitution.resolved,
    )
