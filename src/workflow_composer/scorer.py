"""Category compatibility scoring.

Objective:
    Estimate how well a set of categories can share one automation graph.
    The builder turns the score into a composition strategy.

Algorithm:
    For every unordered pair of categories:
    - Jaccard similarity of the normalized top-level taxonomy node names.
    - Overlap coefficient of their intent keys (``|A & B| / min(|A|, |B|)``).
    - Pair score = mean of the two.
    The aggregate is the minimum pair score: the weakest pairwise fit caps the
    overall compatibility.

High-level call tree:
    - :func:`score_categories`
        - :func:`pairwise_scores`
            - :func:`pair_score`
                - :func:`top_level_names`
                - :func:`jaccard` / :func:`overlap_ratio`

Operational notes:
    - Pure computation; no I/O.
"""

import logging
import re
from itertools import combinations
from typing import Sequence

from .errors import InsufficientInputError
from .models import CategoryDefinition

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_name(name: str) -> str:
    """Lower-case a display name and collapse internal whitespace."""
    return _WHITESPACE_RE.sub(" ", name).strip().lower()


def top_level_names(category: CategoryDefinition) -> set[str]:
    return {normalize_name(node.name) for node in category.label_taxonomy}


def jaccard(a: set[str], b: set[str]) -> float:
    """Jaccard similarity; two empty sets are identical (1.0)."""
    union = a | b
    if not union:
        return 1.0
    return len(a & b) / len(union)


def overlap_ratio(a: set[str], b: set[str]) -> float:
    """Overlap coefficient; two empty sets give 1.0, one empty set 0.0."""
    if not a and not b:
        return 1.0
    smaller = min(len(a), len(b))
    if smaller == 0:
        return 0.0
    return len(a & b) / smaller


def pair_score(first: CategoryDefinition, second: CategoryDefinition) -> float:
    """Score one pair of categories in ``[0, 1]``."""
    names = jaccard(top_level_names(first), top_level_names(second))
    intents = overlap_ratio(first.intent_keys(), second.intent_keys())
    return (names + intents) / 2


def pairwise_scores(
    categories: Sequence[CategoryDefinition],
) -> dict[tuple[str, str], float]:
    """Score every unordered pair.

    Keys are ``(category_id, category_id)`` tuples with ids sorted so the
    result does not depend on input order.
    """
    scores: dict[tuple[str, str], float] = {}
    for first, second in combinations(categories, 2):
        key = tuple(sorted((first.category_id, second.category_id)))
        scores[key] = pair_score(first, second)
    return scores


def score_categories(categories: Sequence[CategoryDefinition]) -> float:
    """
    Compute the aggregate compatibility score of a category selection.

    Args:
        categories: Selected category definitions.

    Returns:
        float: Minimum pairwise score; ``1.0`` for a single category.

    Raises:
        InsufficientInputError: If ``categories`` is empty.
    """
    if not categories:
        raise InsufficientInputError("Cannot score an empty category selection")

    if len(categories) == 1:
        return 1.0

    scores = pairwise_scores(categories)
    for (first, second), value in sorted(scores.items()):
        logger.debug("Compatibility %s <-> %s: %.3f", first, second, value)

    return min(scores.values())
