import asyncio

import pytest

from conftest import CLEAN_ROOM, FakeClock
from skill_arena.assessments import (
    ENVIRONMENT_REQUIRED,
    NO_SPOKEN_INPUT,
    ExamRoom,
    InterviewRoom,
    TrialRoom,
    _ProctoredRoom,
    round_half_up,
)
from skill_arena.proctoring import LIGHTING_VIOLATION, ROUND_VOID_SPOKEN

DARK_ROOM = {"lighting": False, "singlePerson": True, "noDevices": True, "feedback": "Face not visible"}

TRIAL = {
    "questions": [
        {"id": 1, "text": "What is a race condition?", "category": "Concept"},
        {"id": 2, "text": "Design a rate limiter.", "category": "Design"},
    ],
    "constraints": ["No copy-paste"],
}
EVALUATION = {
    "score": {
        "problemSolving": 80, "executionSpeed": 70, "conceptualDepth": 75,
        "aiLeverage": 60, "riskAwareness": 65, "average": 70,
    },
    "feedback": "Good fundamentals",
}
MCQS = {"questions": [
    {"id": 1, "question": "2+2?", "options": ["4", "5"], "correctIndex": 0},
    {"id": 2, "question": "3+3?", "options": ["5", "6"], "correctIndex": 1},
]}
THEORY = {"questions": [{"id": 1, "question": "Explain idempotency."}]}
PRACTICAL = {"tasks": [{"id": 1, "task": "Write a retry decorator", "constraints": ["No libraries"]}]}


def test_round_half_up():
    assert round_half_up(66.5) == 67
    assert round_half_up(2.5) == 3
    assert round_half_up(56.4) == 56


# ============================================================================
# TRIAL
# ============================================================================

async def ready_trial(ollama, **kwargs):
    judge, stub = ollama({
        "technical interview questions": TRIAL,
        "Analyze this webcam": [CLEAN_ROOM, DARK_ROOM],
        "Evaluate the user's performance": EVALUATION,
    })
    trial = TrialRoom("Backend", judge, **kwargs)
    assert await trial.prepare()
    assert trial.status == "setup"
    assert trial.begin() == ENVIRONMENT_REQUIRED
    await trial.check_environment("data:image/png;base64,AAAA")
    assert trial.begin() is None
    assert trial.status == "active"
    return trial, stub


async def test_trial_voided_by_tab_switching_skips_grading(ollama):
    trial, stub = await ready_trial(ollama)
    for _ in range(3):
        trial.on_visibility_hidden()
        trial.on_visibility_shown(200)

    result = await trial.submit()

    assert trial.rejected
    assert trial.status == "completed"
    assert result.score.average == 0
    assert result.feedback == "VERIFICATION REJECTED: Excessive window switching."
    assert stub.prompts_containing("Evaluate the user's performance") == []


async def test_trial_graded_when_clean(ollama):
    trial, stub = await ready_trial(ollama)
    trial.answer(1, "Two threads racing on shared state")

    result = await trial.submit()
    again = await trial.submit()

    assert not trial.rejected
    assert result.score.average == 70
    assert again is result
    prompts = stub.prompts_containing("Evaluate the user's performance")
    assert len(prompts) == 1
    assert "A1: Two threads racing on shared state" in prompts[0]["prompt"]
    assert "A2: (No Answer)" in prompts[0]["prompt"]


async def test_trial_timer_submits_once(ollama):
    trial, stub = await ready_trial(ollama, duration=2)
    trial.tick()
    trial.tick()
    result = await trial.submit()
    await asyncio.sleep(0)

    assert trial.status == "completed"
    assert result.feedback == "Good fundamentals"
    prompts = stub.prompts_containing("Evaluate the user's performance")
    assert len(prompts) == 1
    assert "TIME SPENT: 2s" in prompts[0]["prompt"]


async def test_trial_monitoring_records_environment_violations(ollama):
    trial, _ = await ready_trial(ollama)
    assert await trial.monitor("AAAA") == [LIGHTING_VIOLATION]
    assert trial.proctor.environment_violations == ["Face not visible"]


async def test_trial_generation_failure(ollama):
    judge, _ = ollama(status_code=500)
    trial = TrialRoom("Backend", judge)
    assert not await trial.prepare()
    assert trial.status == "generating"
    assert trial.error


# ============================================================================
# INTERVIEW
# ============================================================================

async def test_interview_voids_only_the_violating_round(ollama):
    judge, stub = ollama({
        "Analyze this webcam": CLEAN_ROOM,
        "Generate interview question": {"text": "Explain the CAP theorem.", "timeLimit": 90},
        "Evaluate this spoken answer": {"score": 80, "feedback": "Clear", "spokenFeedback": "Well done."},
    })
    room = InterviewRoom("Distributed Systems", judge, rounds=2)
    assert await room.start() == ENVIRONMENT_REQUIRED
    await room.check_environment("AAAA")
    assert await room.start() is None
    assert room.round == 1
    assert room.question.time_limit == 90

    room.on_visibility_hidden()
    voided = await room.submit_answer("Consistency, availability, partition tolerance")
    assert voided.score == 0
    assert voided.feedback == (
        "SECURITY VOID: Multiple integrity violations recorded: "
        "Navigation Violation: Tab switching detected."
    )
    assert voided.spoken_feedback == ROUND_VOID_SPOKEN

    await room.next_question()
    assert room.round == 2
    clean = await room.submit_answer("")
    assert clean.score == 80
    assert room.history[1].answer == NO_SPOKEN_INPUT
    assert len(stub.prompts_containing("Evaluate this spoken answer")) == 1

    assert await room.next_question() is None
    assert room.status == "summary"
    assert room.overall_score() == 40
    report = room.report()
    assert [r["score"] for r in report["history"]] == [0, 80]
    assert report["integrity"]["tabSwitchCount"] == 1


# ============================================================================
# EXAM
# ============================================================================

def exam_judge(ollama, **extra):
    answers = {
        "Analyze this webcam": CLEAN_ROOM,
        "MCQ questions": MCQS,
        "theory questions": THEORY,
        "practical coding tasks": PRACTICAL,
        "Grade the theory": {"theoryScore": 80, "practicalScore": 70, "feedback": "Pass"},
    }
    answers.update(extra)
    return ollama(answers)


async def started_exam(ollama, clock=None):
    judge, stub = exam_judge(ollama)
    exam = ExamRoom("Python", judge, has_access=True, clock=clock)
    await exam.check_environment("AAAA")
    assert await exam.start() is None
    assert exam.status == "mcq"
    return exam, stub


async def test_exam_requires_payment_then_environment(ollama):
    judge, _ = exam_judge(ollama)
    exam = ExamRoom("Python", judge)
    assert exam.status == "payment"
    assert await exam.start() is None

    exam.grant_access()
    assert exam.status == "setup"
    assert await exam.start() == ENVIRONMENT_REQUIRED


async def test_exam_scores_and_certifies(ollama):
    exam, stub = await started_exam(ollama)
    exam.answer_mcq(1, 0)
    exam.answer_mcq(2, 0)
    assert await exam.submit_section() is None
    assert exam.status == "theory"

    exam.answer_mcq(2, 1)
    exam.answer_theory(1, "Same effect when repeated")
    await exam.submit_section()
    assert exam.status == "practical"
    exam.answer_practical(1, "def retry(fn): ...")

    score = await exam.submit_section()

    assert exam.status == "results"
    assert (score.mcq, score.theory, score.practical) == (50, 80, 70)
    assert score.total == 67
    assert score.certified
    assert "Same effect when repeated" in stub.prompts_containing("Grade the theory")[0]["prompt"]


async def test_exam_below_certification_score(ollama):
    judge, _ = exam_judge(ollama, **{"Grade the theory": {"theoryScore": 40, "practicalScore": 30}})
    exam = ExamRoom("Python", judge, has_access=True)
    await exam.check_environment("AAAA")
    await exam.start()
    for _ in range(3):
        score = await exam.submit_section()
    assert score.total == 23
    assert not score.certified


async def test_exam_fails_on_fifth_violation_and_discards_input(ollama):
    clock = FakeClock()
    exam, stub = await started_exam(ollama, clock=clock)

    for n in range(5):
        exam.on_blur()
        if n < 4:
            assert exam.status == "mcq"
        clock.advance(3000)

    assert exam.status == "failed"
    assert len(exam.violations) == 5
    assert exam.countdown.expired

    exam.answer_mcq(1, 0)
    assert exam.mcqs[0].user_answer is None
    assert await exam.submit_section() is None
    assert exam.status == "failed"
    assert stub.prompts_containing("Grade the theory") == []


async def test_exam_generation_failure_returns_to_setup(ollama):
    judge, _ = ollama({"Analyze this webcam": CLEAN_ROOM, "MCQ questions": MCQS, "theory questions": THEORY})
    exam = ExamRoom("Python", judge, has_access=True)
    await exam.check_environment("AAAA")

    error = await exam.start()

    assert exam.status == "setup"
    assert error == exam.error


async def expire_section(exam):
    exam.countdown.remaining = 1
    exam.tick()
    assert exam.countdown.expired


async def test_exam_section_timer_moves_to_next_section(ollama):
    exam, _ = await started_exam(ollama)
    await expire_section(exam)
    await asyncio.gather(*exam._background)

    assert exam.status == "theory"
    assert exam.countdown.remaining == 5400
    assert not exam._background


async def test_exam_timer_and_manual_submit_advance_once(ollama):
    exam, _ = await started_exam(ollama)
    await expire_section(exam)
    await exam.submit_section()
    await asyncio.gather(*exam._background)

    assert exam.status == "theory"
    assert not exam.countdown.expired


async def test_exam_practical_timer_grades_the_exam(ollama):
    exam, stub = await started_exam(ollama)
    await exam.submit_section()
    await exam.submit_section()
    assert exam.status == "practical"
    exam.answer_practical(1, "def retry(fn): ...")

    await expire_section(exam)
    await asyncio.gather(*exam._background)

    assert exam.status == "results"
    assert exam.score.theory == 80
    assert len(stub.prompts_containing("Grade the theory")) == 1


def test_rooms_must_define_monitoring():
    with pytest.raises(TypeError):
        _ProctoredRoom("Python", None, None)
