"""
Proctored assessment flows: skill trial, voice interview and certification exam.

Each room owns one ProctorEngine configured for its flow and asks the AI
judge for content and grades. Integrity decisions are taken by the engine
before the judge is consulted.
"""
import asyncio
import logging
import math
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Set

from .errors import IntegrityViolation
from .judge import JudgeAdapter
from .models import (
    EnvironmentCheck,
    ExamMCQ,
    ExamPractical,
    ExamScore,
    ExamTheory,
    InterviewEvaluation,
    InterviewQuestion,
    InterviewRound,
    PerformanceEvaluation,
    SkillDNAScore,
    TrialQuestion,
)
from .proctoring import (
    EXAM_THRESHOLDS,
    INTERVIEW_THRESHOLDS,
    ROUND_VOID_SPOKEN,
    TRIAL_THRESHOLDS,
    VOID_SCORE,
    EngineStatus,
    ProctorEngine,
    VerdictOutcome,
    environment_ready,
    round_void_feedback,
)
from .race import Countdown

logger = logging.getLogger(__name__)

TRIAL_DURATION = 3600
TRIAL_QUESTIONS = 10
INTERVIEW_ROUNDS = 20
MCQ_TIME = 1800
THEORY_TIME = 5400
PRACTICAL_TIME = 3600
CERTIFICATION_SCORE = 60

ENVIRONMENT_REQUIRED = "Environment verification must pass before you can begin."
NO_SPOKEN_INPUT = "(System: No spoken input detected)"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class _ProctoredRoom(ABC):
    """Shared setup gate and browser-signal plumbing"""

    def __init__(self, domain: str, judge: JudgeAdapter, proctor: ProctorEngine):
        self.domain = domain
        self.judge = judge
        self.proctor = proctor
        self.environment: Optional[EnvironmentCheck] = None
        self.error = ""
        self._background: Set[asyncio.Task] = set()

    @property
    @abstractmethod
    def monitoring(self) -> bool:
        """True while browser signals and snapshots count as violations"""

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Automatic submission for {self.domain} failed: {task.exception()!r}")

    async def check_environment(self, image_b64: str) -> EnvironmentCheck:
        """Setup-time camera verification"""
        self.environment = await self.judge.analyze_environment_snapshot(image_b64)
        return self.environment

    @property
    def environment_verified(self) -> bool:
        return self.environment is not None and environment_ready(self.environment)

    async def monitor(self, image_b64: str) -> List[str]:
        """Periodic snapshot while the assessment runs"""
        if not self.monitoring:
            return []
        result = await self.judge.analyze_environment_snapshot(image_b64)
        if not self.monitoring:
            return []
        return self.proctor.on_environment_snapshot_result(result)

    def on_visibility_hidden(self) -> None:
        if self.monitoring:
            self.proctor.on_visibility_hidden()

    def on_visibility_shown(self, elapsed_ms: Optional[int] = None) -> None:
        if self.monitoring:
            self.proctor.on_visibility_shown(elapsed_ms)

    def on_blur(self) -> None:
        if self.monitoring:
            self.proctor.on_blur()

    def on_clipboard_attempt(self, action: str = "paste") -> bool:
        if self.monitoring:
            return self.proctor.on_clipboard_attempt(action)
        return True


# ============================================================================
# SKILL TRIAL
# ============================================================================

class TrialRoom(_ProctoredRoom):
    """generating -> setup -> active -> analyzing -> completed"""

    def __init__(
        self,
        domain: str,
        judge: JudgeAdapter,
        duration: int = TRIAL_DURATION,
        question_count: int = TRIAL_QUESTIONS,
        clock: Optional[Callable[[], int]] = None,
    ):
        super().__init__(domain, judge, ProctorEngine(TRIAL_THRESHOLDS, clock=clock))
        self.duration = duration
        self.question_count = question_count
        self.status = "generating"
        self.questions: List[TrialQuestion] = []
        self.constraints: List[str] = []
        self.answers: Dict[int, str] = {}
        self.countdown = Countdown(duration, on_expire=self._time_up)
        self.result: Optional[PerformanceEvaluation] = None
        self._submission: Optional[asyncio.Future] = None

    @property
    def monitoring(self) -> bool:
        return self.status == "active"

    async def prepare(self) -> bool:
        content = await self.judge.generate_skill_trial(self.domain, self.question_count)
        if not content.questions:
            self.error = "Could not generate the trial. Check the AI service and try again."
            return False
        self.questions = content.questions[: self.question_count]
        self.constraints = content.constraints
        self.status = "setup"
        return True

    def begin(self) -> Optional[str]:
        if self.status != "setup":
            return None
        if not self.environment_verified:
            return ENVIRONMENT_REQUIRED
        self.status = "active"
        return None

    def answer(self, question_id: int, text: str) -> None:
        if self.status == "active":
            self.answers[question_id] = text

    def _time_up(self) -> None:
        self._spawn(self.submit())

    async def submit(self) -> PerformanceEvaluation:
        """Idempotent: the first call (manual or timer) wins, later calls get the same result"""
        if self._submission is None:
            self._submission = asyncio.ensure_future(self._submit())
        return await self._submission

    async def _submit(self) -> PerformanceEvaluation:
        time_spent = self.duration - self.countdown.remaining
        self.countdown.expire()
        self.status = "analyzing"

        async def grade():
            task_summary = "\n".join(f"[{q.category}] Q{q.id}: {q.text}" for q in self.questions)
            solution_summary = "\n".join(f"A{q.id}: {self.answers.get(q.id) or '(No Answer)'}" for q in self.questions)
            return await self.judge.evaluate_performance(
                self.domain,
                task_summary,
                solution_summary,
                "N/A",
                time_spent,
                self.proctor.summary(),
            )

        verdict = await self.proctor.judge(grade)
        try:
            verdict.raise_for_integrity()
            self.result = verdict.result
        except IntegrityViolation as e:
            self.result = PerformanceEvaluation(score=SkillDNAScore(), feedback=e.message)
        self.status = "completed"
        return self.result

    @property
    def rejected(self) -> bool:
        return self.proctor.status == EngineStatus.VOID

    def tick(self) -> None:
        if self.status == "active":
            self.countdown.tick()

    async def run(self, interval: float = 1.0) -> None:
        while self.status in ("setup", "active") and not self.countdown.expired:
            await asyncio.sleep(interval)
            self.tick()


# ============================================================================
# VOICE INTERVIEW
# ============================================================================

class InterviewRoom(_ProctoredRoom):
    """
    setup -> active <-> evaluating -> summary

    Violations are round-scoped: any violation during a question zeroes
    that answer. The session-wide list is kept for the report only.
    """

    def __init__(
        self,
        domain: str,
        judge: JudgeAdapter,
        rounds: int = INTERVIEW_ROUNDS,
        clock: Optional[Callable[[], int]] = None,
    ):
        super().__init__(domain, judge, ProctorEngine(INTERVIEW_THRESHOLDS, clock=clock))
        self.rounds = rounds
        self.status = "setup"
        self.round = 0
        self.question: Optional[InterviewQuestion] = None
        self.last_score = 0
        self.history: List[InterviewRound] = []

    @property
    def monitoring(self) -> bool:
        return self.status in ("active", "evaluating")

    async def start(self) -> Optional[str]:
        if self.status != "setup":
            return None
        if not self.environment_verified:
            return ENVIRONMENT_REQUIRED
        await self.next_question()
        return None

    async def next_question(self) -> Optional[InterviewQuestion]:
        self.proctor.start_round()
        if self.round >= self.rounds:
            self.finish()
            return None
        self.round += 1
        self.question = await self.judge.generate_interview_question(self.domain, self.last_score, self.round)
        self.status = "active"
        return self.question

    async def submit_answer(self, transcript: str) -> InterviewEvaluation:
        if self.status != "active" or self.question is None:
            raise RuntimeError("No question is waiting for an answer")
        answer = (transcript or "").strip() or NO_SPOKEN_INPUT
        question = self.question
        self.status = "evaluating"

        verdict = await self.proctor.judge_round(
            lambda: self.judge.evaluate_interview_response(self.domain, question.text, answer)
        )
        if verdict.outcome == VerdictOutcome.ACCEPTED:
            evaluation = verdict.result
        else:
            evaluation = InterviewEvaluation(
                score=VOID_SCORE,
                feedback=round_void_feedback(verdict.reasons),
                spoken_feedback=ROUND_VOID_SPOKEN,
            )

        self.history.append(InterviewRound(
            round=self.round,
            question=question.text,
            answer=answer,
            score=evaluation.score,
            feedback=evaluation.feedback,
        ))
        self.last_score = evaluation.score
        return evaluation

    def finish(self) -> None:
        self.status = "summary"
        self.question = None

    def overall_score(self) -> int:
        return round_half_up(sum(r.score for r in self.history) / max(len(self.history), 1))

    def report(self) -> dict:
        return {
            "domain": self.domain,
            "score": self.overall_score(),
            "history": [r.to_document() for r in self.history],
            "integrity": self.proctor.summary(),
        }


# ============================================================================
# CERTIFICATION EXAM
# ============================================================================

SECTION_TIMES = {"mcq": MCQ_TIME, "theory": THEORY_TIME, "practical": PRACTICAL_TIME}
NEXT_SECTION = {"mcq": "theory", "theory": "practical"}


class ExamRoom(_ProctoredRoom):
    """
    payment | setup -> loading -> mcq -> theory -> practical -> grading -> results

    Reaching the violation cap moves to the terminal `failed` state at once,
    from any section, and every later input is discarded.
    """

    def __init__(
        self,
        domain: str,
        judge: JudgeAdapter,
        has_access: bool = False,
        clock: Optional[Callable[[], int]] = None,
    ):
        super().__init__(
            domain,
            judge,
            ProctorEngine(EXAM_THRESHOLDS, clock=clock, on_disqualified=self._disqualified),
        )
        self.status = "setup" if has_access else "payment"
        self.mcqs: List[ExamMCQ] = []
        self.theory: List[ExamTheory] = []
        self.practical: List[ExamPractical] = []
        self.countdown: Optional[Countdown] = None
        self.score: Optional[ExamScore] = None

    @property
    def monitoring(self) -> bool:
        return self.status in SECTION_TIMES

    @property
    def violations(self) -> List[str]:
        return [v.reason for v in self.proctor.violations]

    def grant_access(self) -> None:
        """Checkout completed"""
        if self.status == "payment":
            self.status = "setup"

    async def start(self) -> Optional[str]:
        if self.status != "setup":
            return None
        if not self.environment_verified:
            return ENVIRONMENT_REQUIRED

        self.status = "loading"
        self.mcqs, self.theory, self.practical = await asyncio.gather(
            self.judge.generate_exam_mcqs(self.domain),
            self.judge.generate_exam_theory(self.domain),
            self.judge.generate_exam_practical(self.domain),
        )
        if self.status != "loading":
            return None
        if not (self.mcqs and self.theory and self.practical):
            self.status = "setup"
            self.error = "Exam generation failed. Check the AI service and try again."
            logger.error(f"Exam generation for {self.domain} returned an empty section")
            return self.error

        self._enter_section("mcq")
        return None

    def _enter_section(self, section: str) -> None:
        self.status = section
        self.countdown = Countdown(SECTION_TIMES[section], on_expire=lambda: self._section_time_up(section))

    def _section_time_up(self, section: str) -> None:
        if self.status == section:
            self._spawn(self.submit_section(expected=section))

    def _disqualified(self, reasons: List[str]) -> None:
        logger.info(f"Exam for {self.domain} failed on integrity: {len(reasons)} violations")
        self.status = "failed"
        if self.countdown:
            self.countdown.on_expire = None
            self.countdown.expire()

    def answer_mcq(self, question_id: int, option_index: int) -> None:
        if self.status != "mcq":
            return
        for q in self.mcqs:
            if q.id == question_id:
                q.user_answer = option_index

    def answer_theory(self, question_id: int, text: str) -> None:
        if self.status != "theory":
            return
        for t in self.theory:
            if t.id == question_id:
                t.user_answer = text

    def answer_practical(self, task_id: int, text: str) -> None:
        if self.status != "practical":
            return
        for p in self.practical:
            if p.id == task_id:
                p.user_answer = text

    async def submit_section(self, expected: Optional[str] = None) -> Optional[ExamScore]:
        """
        Close the current section. A timer submission passes the section it
        fired for and is dropped once that section is already closed.
        """
        section = self.status
        if section not in SECTION_TIMES:
            return None
        if expected is not None and section != expected:
            return None
        if self.countdown:
            self.countdown.on_expire = None
            self.countdown.expire()
        if section in NEXT_SECTION:
            self._enter_section(NEXT_SECTION[section])
            return None
        return await self._finish()

    async def _finish(self) -> Optional[ExamScore]:
        self.status = "grading"
        correct = sum(1 for q in self.mcqs if q.user_answer == q.correct_index)
        mcq_percent = round_half_up(correct / len(self.mcqs) * 100) if self.mcqs else 0

        verdict = await self.proctor.judge(
            lambda: self.judge.grade_exam_sections(self.domain, self.theory, self.practical)
        )
        if verdict.outcome != VerdictOutcome.ACCEPTED:
            self.status = "failed"
            return None

        grade = verdict.result
        total = round_half_up((mcq_percent + grade.theory_score + grade.practical_score) / 3)
        self.score = ExamScore(
            mcq=mcq_percent,
            theory=grade.theory_score,
            practical=grade.practical_score,
            total=total,
            feedback=grade.feedback,
            certified=total >= CERTIFICATION_SCORE,
        )
        self.status = "results"
        return self.score

    def tick(self) -> None:
        if self.countdown and self.monitoring:
            self.countdown.tick()
