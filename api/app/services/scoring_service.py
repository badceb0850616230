"""Score composer: weighted points, grade bands and narrative selection.

Grades and narratives are ordered rule tables so tests can assert on order
and coverage directly.
"""

from __future__ import annotations

from typing import Callable, List, Tuple

from app.models.scan import POINTS_MAX, IndicatorSet, ScoreCard, ScoreFactor

RATIO_WEIGHT = 60
NO_TESTS_POINTS = 20
FEW_TESTS_POINTS = 10
FEW_TESTS_THRESHOLD = 3
PER_ENV_FILE_POINTS = 20
PER_SECRET_POINTS = 20
SECURITY_CAP = 60
DEPENDENCY_BLOAT_MAX = 10
DEPENDENCY_BLOAT_SCALE = 100

# (field, label, points when the flag is set), in breakdown order.
FLAG_WEIGHTS: Tuple[Tuple[str, str, int], ...] = (
    ("no_linting", "No linting", 10),
    ("no_ci_cd", "No CI/CD", 10),
    ("ai_without_config", "AI without config", 10),
    ("dependency_tree_committed", "node_modules committed", 15),
    ("mega_commit", "Mega commit", 10),
    ("no_gitignore", "No .gitignore", 10),
    ("no_readme", "No README", 10),
    ("todo_flood", "TODO flood", 5),
    ("single_branch", "Single branch", 5),
)

GRADE_BANDS: Tuple[Tuple[int, str], ...] = (
    (101, "S+"),
    (90, "S"),
    (80, "A+"),
    (70, "A"),
    (60, "B+"),
    (50, "B"),
    (40, "C+"),
    (30, "C"),
    (20, "D"),
)
LOWEST_GRADE = "F"

NarrativeRule = Tuple[Callable[[float, IndicatorSet], bool], str]

NARRATIVE_RULES: Tuple[NarrativeRule, ...] = (
    (lambda ratio, ind: ratio > 0.95, "You're the project manager now."),
    (
        lambda ratio, ind: ratio > 0.9 and ind.filesystem_checked and not ind.has_tests,
        "Ships fast, tests never.",
    ),
    (lambda ratio, ind: ratio == 0, "Write code like it's 2019."),
    (lambda ratio, ind: ind.dependency_count > 500, "node_modules is the real project."),
    (
        lambda ratio, ind: ind.filesystem_checked
        and not ind.has_tests
        and ind.source_line_count > 10_000,
        "10K lines of YOLO.",
    ),
    (lambda ratio, ind: ind.env_files_count > 0, "Secrets? What secrets?"),
)

BAND_NARRATIVES: Tuple[Tuple[int, str], ...] = (
    (101, "Beyond vibe. You are the vibe."),
    (90, "The AI is the senior dev here."),
    (80, "You prompt, Claude delivers."),
    (70, "More vibes than version control."),
    (60, "Solid vibe-to-code ratio."),
    (50, "Half human, half machine."),
    (40, "Training wheels still on."),
    (30, "Mostly artisanal, free-range code."),
    (20, "You actually read the docs?"),
)
LOWEST_BAND_NARRATIVE = "Handcrafted with mass-produced tears."


def grade_from_points(points: int) -> str:
    for floor, grade in GRADE_BANDS:
        if points >= floor:
            return grade
    return LOWEST_GRADE


def select_narrative(points: int, ratio: float, indicators: IndicatorSet) -> str:
    for predicate, text in NARRATIVE_RULES:
        if predicate(ratio, indicators):
            return text
    for floor, text in BAND_NARRATIVES:
        if points >= floor:
            return text
    return LOWEST_BAND_NARRATIVE


def score_factors(ratio: float, indicators: IndicatorSet) -> List[ScoreFactor]:
    """Non-zero point contributions in a fixed order."""
    ratio = min(max(ratio, 0.0), 1.0)
    factors: List[ScoreFactor] = [ScoreFactor(label="AI ratio", points=int(ratio * RATIO_WEIGHT))]

    if indicators.filesystem_checked:
        if not indicators.has_tests:
            factors.append(ScoreFactor(label="No tests", points=NO_TESTS_POINTS))
        elif indicators.test_files_count < FEW_TESTS_THRESHOLD:
            factors.append(ScoreFactor(label="Few tests", points=FEW_TESTS_POINTS))

    if indicators.env_files_count:
        factors.append(
            ScoreFactor(
                label=".env committed",
                points=min(indicators.env_files_count * PER_ENV_FILE_POINTS, SECURITY_CAP),
            )
        )
    if indicators.secret_hint_count:
        factors.append(
            ScoreFactor(
                label="Hardcoded secrets",
                points=min(indicators.secret_hint_count * PER_SECRET_POINTS, SECURITY_CAP),
            )
        )

    bloat = int(min(indicators.dependency_count / DEPENDENCY_BLOAT_SCALE, 1.0) * DEPENDENCY_BLOAT_MAX)
    if bloat:
        factors.append(ScoreFactor(label="Dependency bloat", points=bloat))

    for field_name, label, points in FLAG_WEIGHTS:
        if getattr(indicators, field_name) is True:
            factors.append(ScoreFactor(label=label, points=points))

    return [factor for factor in factors if factor.points > 0]


def compose(ratio: float, indicators: IndicatorSet) -> ScoreCard:
    factors = score_factors(ratio, indicators)
    points = min(max(sum(factor.points for factor in factors), 0), POINTS_MAX)
    return ScoreCard(
        points=points,
        grade=grade_from_points(points),
        narrative=select_narrative(points, ratio, indicators),
        breakdown=factors,
    )
