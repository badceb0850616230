"""Tests for commit attribution classification."""

import pytest

from app.models.scan import AttributionTag, AttributionTally, CommitRecord
from app.services.attribution_service import ATTRIBUTION_RULES, classify, classify_commit


def test_claude_trailer_is_attributed():
    message = "fix bug\n\nCo-Authored-By: Claude <noreply@anthropic.com>"
    assert classify(message) == AttributionTag.CLAUDE_CODE


@pytest.mark.parametrize(
    "message,expected",
    [
        ("feat: x\n\n🤖 Generated with Claude Code", AttributionTag.CLAUDE_CODE),
        ("wip\n\nCo-authored-by: Cursor <cursoragent@cursor.com>", AttributionTag.CURSOR),
        ("aider: add retry to fetcher", AttributionTag.AIDER),
        ("refactor\n\nCo-authored-by: aider (gpt-4) <noreply@aider.chat>", AttributionTag.AIDER),
        ("chore: bump\n\nGenerated by Codex", AttributionTag.CODEX_CLI),
        ("docs\n\nCo-authored-by: Copilot <175728472+Copilot@users.noreply.github.com>", AttributionTag.GITHUB_COPILOT),
        ("tests\n\nCo-authored-by: Gemini <noreply@google.com>", AttributionTag.GEMINI_CLI),
        ("plain human commit", AttributionTag.HUMAN),
    ],
)
def test_known_tools_are_detected(message, expected):
    assert classify(message) == expected


def test_google_address_alone_is_not_gemini():
    assert classify("merge\n\nCo-authored-by: Someone <noreply@google.com>") == AttributionTag.HUMAN


def test_first_matching_rule_wins():
    # Both Cursor and Copilot trailers are present; Cursor comes first in the table.
    message = "x\n\nCo-authored-by: Copilot <c@github.com>\nCo-authored-by: Cursor <c@cursor.com>"
    assert classify(message) == AttributionTag.CURSOR


def test_rule_table_order():
    tags = [tag for _, tag in ATTRIBUTION_RULES]
    assert tags == [
        AttributionTag.CLAUDE_CODE,
        AttributionTag.CURSOR,
        AttributionTag.AIDER,
        AttributionTag.CODEX_CLI,
        AttributionTag.GITHUB_COPILOT,
        AttributionTag.GEMINI_CLI,
    ]
    assert AttributionTag.HUMAN not in tags


def test_every_rule_is_reachable():
    for groups, tag in ATTRIBUTION_RULES:
        sample = " ".join(groups[0])
        assert classify(sample) == tag


@pytest.mark.parametrize("message", [None, "", 42, b"Co-Authored-By: Claude", ["x"]])
def test_non_text_is_human_and_never_raises(message):
    assert classify(message) == AttributionTag.HUMAN


def test_classification_is_deterministic():
    message = "feat\n\nCo-Authored-By: Claude <noreply@anthropic.com>"
    assert {classify(message) for _ in range(50)} == {AttributionTag.CLAUDE_CODE}


def test_classify_commit_keeps_subject_line():
    record = classify_commit("abc123", "subject\n\nbody\nCo-Authored-By: Claude", author="dev")
    assert record.hash == "abc123"
    assert record.message == "subject"
    assert record.author == "dev"
    assert record.attribution_tag == AttributionTag.CLAUDE_CODE


def test_tally_ratio_and_primary_tool():
    tally = AttributionTally()
    for idx, tag in enumerate(
        [AttributionTag.HUMAN, AttributionTag.CURSOR, AttributionTag.CLAUDE_CODE, AttributionTag.CLAUDE_CODE]
    ):
        tally.add(CommitRecord(hash=f"c{idx}", attribution_tag=tag))
    assert tally.total_commits == 4
    assert tally.attributed_commits == 3
    assert tally.human_commits == 1
    assert tally.ratio == pytest.approx(0.75)
    assert tally.primary_tool == AttributionTag.CLAUDE_CODE
    assert tally.oldest_commit_id == "c3"


def test_tally_primary_tool_ties_break_alphabetically():
    tally = AttributionTally()
    tally.add(CommitRecord(hash="a", attribution_tag=AttributionTag.CURSOR))
    tally.add(CommitRecord(hash="b", attribution_tag=AttributionTag.AIDER))
    assert tally.primary_tool == AttributionTag.AIDER


def test_empty_tally_has_zero_ratio():
    tally = AttributionTally()
    assert tally.ratio == 0.0
    assert tally.primary_tool == AttributionTag.HUMAN
