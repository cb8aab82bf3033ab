import pytest

from src.workflow_composer.errors import InsufficientInputError
from src.workflow_composer.models import CategoryDefinition
from src.workflow_composer.scorer import (
    jaccard,
    normalize_name,
    overlap_ratio,
    pair_score,
    pairwise_scores,
    score_categories,
)


def test_normalize_name_collapses_case_and_whitespace() -> None:
    """Display names differing only in case/spacing normalize identically."""

    assert normalize_name("  Customer   Support ") == "customer support"
    assert normalize_name("ORDERS") == normalize_name("orders")


def test_set_similarity_edge_cases() -> None:
    """Empty sets are identical; one empty side shares nothing."""

    assert jaccard(set(), set()) == 1.0
    assert jaccard({"a"}, set()) == 0.0
    assert jaccard({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)

    assert overlap_ratio(set(), set()) == 1.0
    assert overlap_ratio({"a"}, set()) == 0.0
    assert overlap_ratio({"a", "b"}, {"a", "b", "c", "d"}) == 1.0


def test_pair_score_averages_names_and_intents(retail, services) -> None:
    """Names: 2 shared of 4 (0.5); intents: 2 shared, smaller set has 3."""

    assert pair_score(retail, services) == pytest.approx((0.5 + 2 / 3) / 2)


def test_pair_score_is_symmetric(retail, wholesale) -> None:
    assert pair_score(retail, wholesale) == pair_score(wholesale, retail)
    assert pair_score(retail, wholesale) == pytest.approx(0.75)


def test_single_category_scores_one(legal) -> None:
    assert score_categories([legal]) == 1.0


def test_empty_selection_is_rejected() -> None:
    with pytest.raises(InsufficientInputError):
        score_categories([])


def test_aggregate_is_weakest_pair(retail, wholesale, legal) -> None:
    """A single incompatible category pulls the whole selection down."""

    assert score_categories([retail, wholesale]) == pytest.approx(0.75)
    assert score_categories([retail, wholesale, legal]) == 0.0


def test_score_does_not_depend_on_order(retail, wholesale, services) -> None:
    forward = score_categories([retail, wholesale, services])
    backward = score_categories([services, wholesale, retail])

    assert forward == backward
    assert set(pairwise_scores([retail, services])) == {("retail", "services")}
    assert set(pairwise_scores([services, retail])) == {("retail", "services")}


def test_names_compared_after_normalization() -> None:
    """Same intent keys and names differing only in case score 1.0."""

    first = CategoryDefinition(
        category_id="a",
        label_taxonomy=[{"name": "Support", "intentKey": "support"}],
    )
    second = CategoryDefinition(
        category_id="b",
        label_taxonomy=[{"name": " support ", "intentKey": "support"}],
    )

    assert score_categories([first, second]) == 1.0
