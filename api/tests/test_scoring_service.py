"""Tests for point composition, grade bands and narrative selection."""

import pytest

from app.models.scan import POINTS_MAX, IndicatorSet
from app.services.scoring_service import (
    BAND_NARRATIVES,
    GRADE_BANDS,
    LOWEST_BAND_NARRATIVE,
    NARRATIVE_RULES,
    compose,
    grade_from_points,
    select_narrative,
)


def _clean_tree(**overrides) -> IndicatorSet:
    """A checked tree with nothing wrong in it."""
    values = dict(filesystem_checked=True, has_tests=True, test_files_count=10, branch_count=3)
    values.update(overrides)
    return IndicatorSet(**values)


def test_clean_human_repo_scores_zero():
    card = compose(0.0, _clean_tree())
    assert card.points == 0
    assert card.grade == "F"
    assert card.narrative == "Write code like it's 2019."
    assert card.breakdown == []


def test_ratio_contributes_up_to_sixty():
    assert compose(1.0, _clean_tree()).points == 60
    assert compose(0.5, _clean_tree()).points == 30
    assert compose(0.333, _clean_tree()).points == 19


def test_every_flag_adds_its_weight():
    indicators = _clean_tree(
        no_linting=True,
        no_ci_cd=True,
        ai_without_config=True,
        dependency_tree_committed=True,
        mega_commit=True,
        no_gitignore=True,
        no_readme=True,
        todo_flood=True,
        single_branch=True,
    )
    card = compose(0.0, indicators)
    assert card.points == 10 + 10 + 10 + 15 + 10 + 10 + 10 + 5 + 5
    assert [f.label for f in card.breakdown] == [
        "No linting",
        "No CI/CD",
        "AI without config",
        "node_modules committed",
        "Mega commit",
        "No .gitignore",
        "No README",
        "TODO flood",
        "Single branch",
    ]


def test_unresolved_mega_commit_contributes_nothing():
    assert compose(0.0, _clean_tree(mega_commit=None)).points == 0


def test_tests_points_only_when_tree_was_inspected():
    assert compose(0.0, _clean_tree(has_tests=False, test_files_count=0)).points == 20
    assert compose(0.0, _clean_tree(test_files_count=2)).points == 10
    assert compose(0.0, IndicatorSet(filesystem_checked=False)).points == 0


def test_security_and_dependency_contributions_are_capped():
    card = compose(0.0, _clean_tree(env_files_count=5, secret_hint_count=1, dependency_count=1000))
    labels = {f.label: f.points for f in card.breakdown}
    assert labels[".env committed"] == 60
    assert labels["Hardcoded secrets"] == 20
    assert labels["Dependency bloat"] == 10
    assert compose(0.0, _clean_tree(dependency_count=45)).points == 4


def test_points_are_clamped_to_max():
    worst = IndicatorSet(
        filesystem_checked=True,
        no_linting=True,
        no_ci_cd=True,
        ai_without_config=True,
        dependency_tree_committed=True,
        mega_commit=True,
        no_gitignore=True,
        no_readme=True,
        todo_flood=True,
        single_branch=True,
        env_files_count=10,
        secret_hint_count=10,
        dependency_count=10_000,
    )
    card = compose(1.0, worst)
    assert card.points == POINTS_MAX
    assert card.grade == "S+"


@pytest.mark.parametrize("ratio", [-1.0, 0.0, 0.2, 0.95, 1.0, 7.0])
def test_points_stay_in_range(ratio):
    card = compose(ratio, IndicatorSet(filesystem_checked=True, env_files_count=3, secret_hint_count=3))
    assert 0 <= card.points <= POINTS_MAX


@pytest.mark.parametrize(
    "points,grade",
    [
        (0, "F"),
        (19, "F"),
        (20, "D"),
        (30, "C"),
        (40, "C+"),
        (50, "B"),
        (60, "B+"),
        (70, "A"),
        (80, "A+"),
        (90, "S"),
        (100, "S"),
        (101, "S+"),
        (200, "S+"),
    ],
)
def test_grade_bands(points, grade):
    assert grade_from_points(points) == grade


def test_grade_is_total_and_monotonic():
    order = [g for _, g in reversed(GRADE_BANDS)]
    order.insert(0, "F")
    ranks = [order.index(grade_from_points(p)) for p in range(POINTS_MAX + 1)]
    assert ranks == sorted(ranks)


def test_narrative_rule_order():
    texts = [text for _, text in NARRATIVE_RULES]
    assert texts == [
        "You're the project manager now.",
        "Ships fast, tests never.",
        "Write code like it's 2019.",
        "node_modules is the real project.",
        "10K lines of YOLO.",
        "Secrets? What secrets?",
    ]


def test_contextual_narratives_take_precedence():
    assert select_narrative(150, 0.97, _clean_tree()) == "You're the project manager now."
    assert select_narrative(150, 0.92, _clean_tree(has_tests=False)) == "Ships fast, tests never."
    assert select_narrative(10, 0.5, _clean_tree(dependency_count=900)) == "node_modules is the real project."
    assert (
        select_narrative(10, 0.5, _clean_tree(has_tests=False, source_line_count=20_000))
        == "10K lines of YOLO."
    )
    assert select_narrative(10, 0.5, _clean_tree(env_files_count=1)) == "Secrets? What secrets?"


def test_band_narratives_when_no_rule_matches():
    indicators = _clean_tree()
    assert select_narrative(120, 0.5, indicators) == BAND_NARRATIVES[0][1]
    assert select_narrative(55, 0.5, indicators) == "Half human, half machine."
    assert select_narrative(5, 0.5, indicators) == LOWEST_BAND_NARRATIVE
