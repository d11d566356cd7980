import pytest

from conftest import FakeClock
from skill_arena.errors import IntegrityViolation
from skill_arena.models import EnvironmentCheck
from skill_arena.proctoring import (
    ABSENCE_REASON,
    CLIPBOARD_REASON,
    DEVICE_VIOLATION,
    ENVIRONMENT_REASON,
    ENVIRONMENT_VIOLATION,
    EXAM_THRESHOLDS,
    INTERVIEW_THRESHOLDS,
    LIGHTING_VIOLATION,
    TAB_SWITCH_REASON,
    TRIAL_THRESHOLDS,
    EngineStatus,
    ProctorEngine,
    VerdictOutcome,
    environment_reasons,
    environment_ready,
    round_void_feedback,
    threshold_reasons,
)

DARK_ROOM = EnvironmentCheck(lighting=False, single_person=True, no_devices=True, feedback="Too dark")
PHONE_IN_FRAME = EnvironmentCheck(lighting=True, single_person=True, no_devices=False)
CLEAN = EnvironmentCheck(lighting=True, single_person=True, no_devices=True)


class Grader:
    def __init__(self, result="graded"):
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return self.result


def switch_tabs(engine, times, elapsed_ms=100):
    for _ in range(times):
        engine.on_visibility_hidden()
        engine.on_visibility_shown(elapsed_ms)


def test_environment_reasons_name_each_failed_rule():
    check = EnvironmentCheck(lighting=False, single_person=True, no_devices=False)
    assert environment_reasons(check) == [LIGHTING_VIOLATION, DEVICE_VIOLATION]
    assert not environment_ready(check)
    assert environment_ready(CLEAN)


def test_threshold_reasons_are_strictly_greater_than():
    assert threshold_reasons(TRIAL_THRESHOLDS, 2, 0, 5000, 2) == []
    assert threshold_reasons(TRIAL_THRESHOLDS, 3, 1, 5001, 3) == [
        CLIPBOARD_REASON,
        TAB_SWITCH_REASON,
        ABSENCE_REASON,
        ENVIRONMENT_REASON,
    ]


# ============================================================================
# TRIAL (whole-attempt void)
# ============================================================================

async def test_three_tab_switches_void_the_trial_without_grading():
    engine = ProctorEngine(TRIAL_THRESHOLDS)
    grader = Grader()
    switch_tabs(engine, 3)

    verdict = await engine.judge(grader)

    assert verdict.outcome == VerdictOutcome.VOID
    assert verdict.reasons == [TAB_SWITCH_REASON]
    assert verdict.feedback == "VERIFICATION REJECTED: Excessive window switching."
    assert grader.calls == 0
    assert engine.status == EngineStatus.VOID


async def test_two_tab_switches_are_tolerated():
    engine = ProctorEngine(TRIAL_THRESHOLDS)
    grader = Grader()
    switch_tabs(engine, 2)

    verdict = await engine.judge(grader)

    assert verdict.accepted
    assert verdict.result == "graded"
    assert grader.calls == 1


async def test_single_paste_voids_the_trial():
    engine = ProctorEngine(TRIAL_THRESHOLDS)
    assert engine.on_clipboard_attempt("paste") is True
    verdict = await engine.judge(Grader())
    assert verdict.reasons == [CLIPBOARD_REASON]


async def test_long_absence_voids_the_trial():
    clock = FakeClock()
    engine = ProctorEngine(TRIAL_THRESHOLDS, clock=clock)
    engine.on_visibility_hidden()
    clock.advance(6000)
    engine.on_visibility_shown()

    assert engine.focus_lost_ms == 6000
    assert engine.tab_switch_count == 1
    verdict = await engine.judge(Grader())
    assert verdict.reasons == [ABSENCE_REASON]


async def test_environment_violations_over_limit_void_the_trial():
    engine = ProctorEngine(TRIAL_THRESHOLDS)
    engine.on_environment_snapshot_result(DARK_ROOM)
    engine.on_environment_snapshot_result(PHONE_IN_FRAME)
    assert engine.environment_violations == ["Too dark", ENVIRONMENT_VIOLATION]
    assert engine.on_environment_snapshot_result(CLEAN) == []

    engine.on_environment_snapshot_result(DARK_ROOM)
    verdict = await engine.judge(Grader())
    assert verdict.reasons == [ENVIRONMENT_REASON]


def test_loose_variant_ignores_blur():
    engine = ProctorEngine(TRIAL_THRESHOLDS)
    assert engine.on_blur() is False
    assert engine.violations == []


async def test_verdict_freezes_the_log():
    engine = ProctorEngine(TRIAL_THRESHOLDS)
    grader = Grader()
    first = await engine.judge(grader)

    switch_tabs(engine, 5)
    engine.on_clipboard_attempt()
    second = await engine.judge(grader)

    assert engine.tab_switch_count == 0
    assert engine.paste_count == 0
    assert second is first
    assert grader.calls == 1


# ============================================================================
# EXAM (disqualification cap + debounce)
# ============================================================================

def test_exam_disqualifies_on_fifth_violation():
    clock = FakeClock()
    reported = []
    engine = ProctorEngine(EXAM_THRESHOLDS, clock=clock, on_disqualified=reported.append)

    for n in range(1, 6):
        assert engine.on_blur()
        assert engine.status == (EngineStatus.DISQUALIFIED if n == 5 else EngineStatus.ACTIVE)
        clock.advance(3000)

    assert len(reported) == 1
    assert len(reported[0]) == 5
    engine.on_blur()
    assert len(engine.violations) == 5


def test_exam_debounces_bursts():
    clock = FakeClock()
    engine = ProctorEngine(EXAM_THRESHOLDS, clock=clock)

    engine.on_visibility_hidden()
    engine.on_blur()
    clock.advance(2999)
    engine.on_blur()
    assert len(engine.violations) == 1

    clock.advance(1)
    engine.on_blur()
    assert len(engine.violations) == 2


async def test_exam_judge_after_disqualification_fails_without_grading():
    clock = FakeClock()
    engine = ProctorEngine(EXAM_THRESHOLDS, clock=clock)
    for _ in range(5):
        engine.on_clipboard_attempt("copy")
        clock.advance(3000)

    grader = Grader()
    verdict = await engine.judge(grader)
    assert verdict.outcome == VerdictOutcome.FAILED
    assert grader.calls == 0
    assert verdict.feedback.startswith("DISQUALIFIED:")


# ============================================================================
# INTERVIEW (round-scoped)
# ============================================================================

async def test_round_violation_voids_only_that_round():
    engine = ProctorEngine(INTERVIEW_THRESHOLDS)
    engine.start_round()
    engine.on_visibility_hidden()
    engine.on_environment_snapshot_result(DARK_ROOM)
    engine.on_environment_snapshot_result(DARK_ROOM)

    grader = Grader(85)
    voided = await engine.judge_round(grader)
    assert voided.outcome == VerdictOutcome.VOID
    assert voided.reasons == ["Navigation Violation: Tab switching detected.", LIGHTING_VIOLATION]
    assert round_void_feedback(voided.reasons) == (
        "SECURITY VOID: Multiple integrity violations recorded: "
        "Navigation Violation: Tab switching detected. | " + LIGHTING_VIOLATION
    )
    assert grader.calls == 0

    engine.start_round()
    clean = await engine.judge_round(grader)
    assert clean.accepted
    assert clean.result == 85
    assert len(engine.violations) == 3


def test_summary_uses_client_field_names():
    engine = ProctorEngine(INTERVIEW_THRESHOLDS)
    engine.on_blur()
    summary = engine.summary()
    assert summary["flow"] == "interview"
    assert summary["violations"] == ["Focus Lost: Outside Window Interaction"]
    assert summary["roundViolations"] == ["Focus Lost: Outside Window Interaction"]
    assert summary["tabSwitchCount"] == 0


async def test_rejected_verdict_raises_integrity_violation():
    engine = ProctorEngine(TRIAL_THRESHOLDS)
    engine.on_clipboard_attempt("paste")
    verdict = await engine.judge(Grader())

    with pytest.raises(IntegrityViolation) as exc:
        verdict.raise_for_integrity()
    assert exc.value.reasons == [CLIPBOARD_REASON]
    assert exc.value.message == verdict.feedback
