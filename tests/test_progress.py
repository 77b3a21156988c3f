"""
Tests for per-phase progress detection, progress percent and the QA verdict.
"""

import pytest

from conftest import snapshot
from prp_loop.models import Phase, PHASE_ORDER
from prp_loop.progress import (
    PROGRESS_RULES,
    QARetryAction,
    QAVerdict,
    detect_progress,
    progress_percent,
    qa_retry_action,
    qa_verdict,
)


class TestIdenticalSnapshots:

    @pytest.mark.parametrize("phase", PHASE_ORDER)
    def test_identical_snapshots_are_no_progress(self, phase):
        counters = {
            "tests_generated": 4, "criteria_covered": 2, "tests_passing": 3,
            "tests_failing": 1, "tests_total": 4, "refactorings_applied": 2,
            "files_modified": 1, "docs_generated": 1, "has_adr": True,
            "checks_passing": 5, "blocking_issues": 1,
        }
        previous = snapshot(phase, 0, **counters)
        current = snapshot(phase, 1, **counters)
        assert detect_progress(phase, current, previous) is False

    @pytest.mark.parametrize("phase", [Phase.GREEN, Phase.REFACTOR, Phase.QA])
    def test_no_previous_without_zero_baseline(self, phase):
        current = snapshot(phase, 0, tests_passing=10, refactorings_applied=3, checks_passing=4)
        assert detect_progress(phase, current, None) is False


class TestRed:

    def test_first_snapshot_compares_against_zero(self):
        assert detect_progress(Phase.RED, snapshot(Phase.RED, 0, tests_generated=2), None) is True
        assert detect_progress(Phase.RED, snapshot(Phase.RED, 0), None) is False

    def test_criteria_covered_counts(self):
        previous = snapshot(Phase.RED, 0, tests_generated=4, criteria_covered=1)
        current = snapshot(Phase.RED, 1, tests_generated=4, criteria_covered=2)
        assert detect_progress(Phase.RED, current, previous) is True


class TestGreen:

    def test_more_passing(self):
        previous = snapshot(Phase.GREEN, 0, tests_passing=3, tests_total=10)
        current = snapshot(Phase.GREEN, 1, tests_passing=4, tests_total=10)
        assert detect_progress(Phase.GREEN, current, previous) is True

    def test_fewer_failing_with_same_total(self):
        previous = snapshot(Phase.GREEN, 0, tests_failing=5, tests_total=10)
        current = snapshot(Phase.GREEN, 1, tests_failing=4, tests_total=10)
        assert detect_progress(Phase.GREEN, current, previous) is True

    def test_fewer_failing_by_deleting_tests_is_not_progress(self):
        previous = snapshot(Phase.GREEN, 0, tests_failing=5, tests_total=10)
        current = snapshot(Phase.GREEN, 1, tests_failing=2, tests_total=7)
        assert detect_progress(Phase.GREEN, current, previous) is False


class TestRefactor:

    def test_refactoring_with_green_tests(self):
        previous = snapshot(Phase.REFACTOR, 0, refactorings_applied=1, tests_failing=0)
        current = snapshot(Phase.REFACTOR, 1, refactorings_applied=2, tests_failing=0)
        assert detect_progress(Phase.REFACTOR, current, previous) is True

    def test_breaking_tests_vetoes_progress(self):
        previous = snapshot(Phase.REFACTOR, 0, files_modified=1, tests_failing=0)
        current = snapshot(Phase.REFACTOR, 1, files_modified=3, tests_failing=1)
        assert detect_progress(Phase.REFACTOR, current, previous) is False


class TestDocument:

    def test_adr_becoming_true(self):
        previous = snapshot(Phase.DOCUMENT, 0, docs_generated=2, has_adr=False)
        current = snapshot(Phase.DOCUMENT, 1, docs_generated=2, has_adr=True)
        assert detect_progress(Phase.DOCUMENT, current, previous) is True

    def test_first_snapshot_with_adr(self):
        assert detect_progress(Phase.DOCUMENT, snapshot(Phase.DOCUMENT, 0, has_adr=True), None) is True


class TestQA:

    def test_fewer_blocking_issues(self):
        previous = snapshot(Phase.QA, 0, blocking_issues=3, checks_passing=5)
        current = snapshot(Phase.QA, 1, blocking_issues=2, checks_passing=5)
        assert detect_progress(Phase.QA, current, previous) is True

    def test_more_blocking_issues(self):
        previous = snapshot(Phase.QA, 0, blocking_issues=1, checks_passing=5)
        current = snapshot(Phase.QA, 1, blocking_issues=2, checks_passing=5)
        assert detect_progress(Phase.QA, current, previous) is False


def test_every_phase_has_a_rule():
    assert set(PROGRESS_RULES) == set(PHASE_ORDER)


def test_rules_are_read_only():
    with pytest.raises(TypeError):
        PROGRESS_RULES[Phase.RED] = PROGRESS_RULES[Phase.GREEN]


class TestProgressPercent:

    def test_none(self):
        assert progress_percent(None) == 0

    @pytest.mark.parametrize("snap,expected", [
        (snapshot(Phase.RED, 0, tests_generated=3, criteria_count=6), 50),
        (snapshot(Phase.RED, 0, tests_generated=9, criteria_count=6), 100),
        (snapshot(Phase.GREEN, 0, tests_passing=8, tests_total=10), 80),
        (snapshot(Phase.GREEN, 0, tests_passing=0, tests_total=0), 0),
        (snapshot(Phase.REFACTOR, 1), 40),
        (snapshot(Phase.DOCUMENT, 0, docs_generated=3, has_adr=True), 100),
        (snapshot(Phase.DOCUMENT, 0, docs_generated=1), 25),
        (snapshot(Phase.QA, 0, checks_passing=3, checks_total=4), 75),
    ])
    def test_phase_percent(self, snap, expected):
        assert progress_percent(snap) == expected


class TestQAVerdict:

    def test_verdict(self):
        assert qa_verdict(0) == QAVerdict.APPROVE
        assert qa_verdict(1) == QAVerdict.REJECT

    @pytest.mark.parametrize("attempt,verdict,action", [
        (1, QAVerdict.APPROVE, QARetryAction.SHIP),
        (1, QAVerdict.REJECT, QARetryAction.GREEN),
        (2, QAVerdict.REJECT, QARetryAction.GREEN),
        (3, QAVerdict.REJECT, QARetryAction.ESCALATE),
    ])
    def test_retry_action(self, attempt, verdict, action):
        assert qa_retry_action(attempt, verdict) == action
