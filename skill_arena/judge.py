"""
AI Judge Adapter - scenario/question generation and grading through Ollama.

Every call is retried with exponential backoff and parsed defensively.
Apart from scenario generation (where the caller owns the fallback), each
operation returns deterministic default data once retries are exhausted, so
no caller ever blocks on, or crashes because of, the AI service.
"""
import json
import logging
import re
from typing import Any, Callable, List, Optional

import httpx
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from .config import Settings
from .errors import AIAdapterFailure
from .models import (
    Checkpoint,
    EnvironmentCheck,
    ExamGrade,
    ExamMCQ,
    ExamPractical,
    ExamTheory,
    InterviewEvaluation,
    InterviewQuestion,
    PerformanceEvaluation,
    Scenario,
    StepValidation,
    TrialContent,
    TrialQuestion,
)

logger = logging.getLogger(__name__)

ENVIRONMENT_SERVICE_ERROR = "Verification failed (Service Error). Please ensure good connection and retry."
SCORING_ERROR = "Error during AI scoring"

JSON_ONLY = "Return ONLY valid JSON. No markdown, no commentary."

_DATA_URL_PREFIX = re.compile(r"^data:image/(png|jpeg|jpg);base64,")


# ============================================================================
# SECURITY HELPERS
# ============================================================================

def strip_prompt_injection(text: str) -> str:
    """Strip common prompt injection patterns from user input"""
    if not text:
        return text
    patterns = [
        r'ignore\s+(previous|above|all)\s+instructions?',
        r'(system|assistant|user)\s*:\s*',
        r'<\s*(system|assistant|user)\s*>',
        r'\[\s*(INST|SYS|END)\s*\]',
        r'###\s*(instruction|system|prompt)',
        r'act\s+as\s+(if|though)',
        r'new\s+role',
        r'forget\s+(your|all|previous)',
    ]
    cleaned = text
    for pattern in patterns:
        cleaned = re.sub(pattern, '[REMOVED]', cleaned, flags=re.IGNORECASE)
    return cleaned[:10000]


def extract_json(text: str, opening: str = "{") -> Any:
    """Parse the first JSON object (or array) in a model response, ignoring surrounding chatter"""
    closing = "}" if opening == "{" else "]"
    start = text.find(opening)
    end = text.rfind(closing) + 1
    if start >= 0 and end > start:
        return json.loads(text[start:end])
    return json.loads(text)


def fallback_scenario(domain: str) -> Scenario:
    """Fixed scenario published when generation fails, so a lobby is never stuck"""
    return Scenario(
        task_description=f"Implement a solution for the {domain} challenge. Ensure your code handles edge cases.",
        checkpoints=[
            Checkpoint(id=1, title="Initialize Structure", description="Setup the basic class or function"),
            Checkpoint(id=2, title="Core Logic", description="Implement the main algorithm"),
            Checkpoint(id=3, title="Edge Cases", description="Handle invalid inputs"),
        ],
    )


def _clamp_score(value: Any, top: int = 100) -> int:
    try:
        return max(0, min(top, int(round(float(value)))))
    except (TypeError, ValueError):
        return 0


# ============================================================================
# OLLAMA CLIENT
# ============================================================================

class OllamaClient:
    def __init__(
        self,
        base_url: str,
        model: str,
        vision_model: str,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.vision_model = vision_model
        self.timeout = timeout
        self.transport = transport

    async def generate(
        self,
        prompt: str,
        system: str = "",
        images: Optional[List[str]] = None,
        model: Optional[str] = None,
    ) -> str:
        payload = {
            "model": model or self.model,
            "prompt": prompt,
            "system": system,
            "stream": False,
            "format": "json",
            "options": {
                "temperature": 0.2,
                "top_p": 0.8
            }
        }
        if images:
            payload["images"] = images
            payload["options"]["temperature"] = 0

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}/api/generate", json=payload)
            response.raise_for_status()
            return response.json()["response"]


# ============================================================================
# JUDGE ADAPTER
# ============================================================================

class JudgeAdapter:
    def __init__(
        self,
        client: OllamaClient,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        environment_retry_delay: float = 3.0,
    ):
        self.client = client
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.environment_retry_delay = environment_retry_delay

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "JudgeAdapter":
        client = OllamaClient(
            settings.ollama_url,
            settings.ollama_model,
            settings.ollama_vision_model,
            timeout=settings.ai_timeout,
            transport=transport,
        )
        return cls(
            client,
            max_attempts=settings.ai_max_attempts,
            backoff_seconds=settings.ai_backoff_seconds,
            environment_retry_delay=settings.environment_retry_delay,
        )

    async def _ask(
        self,
        operation: str,
        prompt: str,
        system: str,
        parse: Callable[[str], Any],
        images: Optional[List[str]] = None,
        model: Optional[str] = None,
        attempts: Optional[int] = None,
        wait=None,
    ) -> Any:
        """
        Call the model and parse its answer, retrying transport errors and
        unparseable output alike. Raises AIAdapterFailure when retries run out.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts or self.max_attempts),
            wait=wait or wait_exponential(multiplier=self.backoff_seconds, max=10),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    text = await self.client.generate(prompt, system, images=images, model=model)
                    return parse(text)
        except Exception as e:
            raise AIAdapterFailure(operation, e) from e

    async def _ask_or(self, fallback: Any, operation: str, *args, **kwargs) -> Any:
        try:
            return await self._ask(operation, *args, **kwargs)
        except AIAdapterFailure as e:
            logger.error(f"{operation} failed after retries, using fallback: {e.cause!r}")
            return fallback

    # ------------------------------------------------------------------
    # Arena
    # ------------------------------------------------------------------

    async def generate_challenge_scenario(self, domain: str) -> Scenario:
        """Raises AIAdapterFailure; the caller publishes fallback_scenario instead"""
        system = f"You are a competitive programming problem setter. {JSON_ONLY}"
        prompt = f"""Create a coding challenge for {domain} with incremental checkpoints.

Return ONLY this JSON object:
{{
    "taskDescription": "Full problem statement",
    "checkpoints": [
        {{"id": 1, "title": "Short step title", "description": "What this step must achieve", "completed": false}}
    ]
}}

Use 3 to 5 checkpoints, ordered from setup to edge cases."""

        def parse(text: str) -> Scenario:
            data = extract_json(text)
            checkpoints = []
            for i, cp in enumerate(data.get("checkpoints") or [], start=1):
                if not cp.get("title"):
                    continue
                checkpoints.append(Checkpoint(
                    id=int(cp.get("id") or i),
                    title=str(cp["title"]),
                    description=str(cp.get("description", "")),
                ))
            task = str(data.get("taskDescription") or "").strip()
            if not task or not checkpoints:
                raise ValueError("scenario without task description or checkpoints")
            return Scenario(task_description=task, checkpoints=checkpoints)

        return await self._ask("generate_challenge_scenario", prompt, system, parse)

    async def validate_challenge_step(self, domain: str, step_title: str, code: str) -> StepValidation:
        system = f"You are a strict code reviewer. {JSON_ONLY}"
        code = strip_prompt_injection(code or "")
        prompt = f"""Validate the code for step "{step_title}" in {domain}.

CODE:
{code if code else "(no code provided)"}

Return ONLY this JSON:
{{
    "success": <true if the step is correctly implemented>,
    "score": <number 0 to 100>,
    "feedback": "One or two sentences"
}}"""

        def parse(text: str) -> StepValidation:
            data = extract_json(text)
            return StepValidation(
                success=bool(data.get("success", False)),
                score=_clamp_score(data.get("score", 0)),
                feedback=str(data.get("feedback", "")),
            )

        return await self._ask_or(
            StepValidation(success=False, score=0, feedback="AI judge unavailable. Please try validating again."),
            "validate_challenge_step", prompt, system, parse,
        )

    # ------------------------------------------------------------------
    # Proctoring
    # ------------------------------------------------------------------

    async def analyze_environment_snapshot(self, image_b64: str) -> EnvironmentCheck:
        """Single retry with a fixed delay; a failed check counts as all three flags failing"""
        system = f"Role: Strict Exam Proctor AI. {JSON_ONLY}"
        prompt = """Analyze this webcam snapshot for interview integrity violations.

ANALYSIS RULES:
1. lighting: true only if a human face is clearly visible, centered, and well-lit.
2. singlePerson: true only if exactly 1 person is visible.
3. noDevices: true only if NO mobile phones, tablets, or written notes are visible. Headsets are permitted.

Any ambiguity must result in false.

Return ONLY this JSON:
{"lighting": true, "singlePerson": true, "noDevices": true, "feedback": "Short explanation"}"""
        image = _DATA_URL_PREFIX.sub("", image_b64 or "")

        def parse(text: str) -> EnvironmentCheck:
            return EnvironmentCheck.model_validate(extract_json(text))

        return await self._ask_or(
            EnvironmentCheck(feedback=ENVIRONMENT_SERVICE_ERROR),
            "analyze_environment_snapshot", prompt, system, parse,
            images=[image],
            model=self.client.vision_model,
            attempts=2,
            wait=wait_fixed(self.environment_retry_delay),
        )

    # ------------------------------------------------------------------
    # Trial
    # ------------------------------------------------------------------

    async def generate_skill_trial(self, domain: str, count: int = 10) -> TrialContent:
        system = f"You are an expert technical interviewer. {JSON_ONLY}"
        prompt = f"""Generate {count} technical interview questions for {domain}.

Return ONLY this JSON:
{{
    "questions": [{{"id": 1, "text": "The complete question?", "category": "Concept"}}],
    "constraints": ["Rule the candidate must respect"]
}}"""

        def parse(text: str) -> TrialContent:
            data = extract_json(text)
            questions = []
            for i, q in enumerate(data.get("questions") or [], start=1):
                if not q.get("text"):
                    continue
                questions.append(TrialQuestion(
                    id=int(q.get("id") or i),
                    text=str(q["text"]),
                    category=str(q.get("category") or "Concept"),
                ))
            return TrialContent(
                questions=questions[:count],
                constraints=[str(c) for c in data.get("constraints") or []],
            )

        return await self._ask_or(TrialContent(), "generate_skill_trial", prompt, system, parse)

    async def evaluate_performance(
        self,
        domain: str,
        task_summary: str,
        solution_summary: str,
        user_reasoning: str,
        time_spent: int,
        anti_cheat: dict,
    ) -> PerformanceEvaluation:
        system = f"You are an expert assessor producing a Skill DNA profile. {JSON_ONLY}"
        prompt = f"""Evaluate the user's performance for {domain}.

TASK: {task_summary}
SOLUTION: {strip_prompt_injection(solution_summary or "") or "(no answers provided)"}
REASONING: {strip_prompt_injection(user_reasoning or "") or "(none)"}
TIME SPENT: {time_spent}s
INTEGRITY LOG: {json.dumps(anti_cheat)}

Every score is 0 to 100. Return ONLY this JSON:
{{
    "score": {{
        "problemSolving": 0, "executionSpeed": 0, "conceptualDepth": 0,
        "aiLeverage": 0, "riskAwareness": 0, "average": 0
    }},
    "feedback": "Two or three sentences"
}}"""

        def parse(text: str) -> PerformanceEvaluation:
            return PerformanceEvaluation.model_validate(extract_json(text))

        return await self._ask_or(
            PerformanceEvaluation(feedback=SCORING_ERROR),
            "evaluate_performance", prompt, system, parse,
        )

    # ------------------------------------------------------------------
    # Interview
    # ------------------------------------------------------------------

    async def generate_interview_question(self, domain: str, last_score: int, round_num: int) -> InterviewQuestion:
        system = f"You are a senior technical interviewer adapting difficulty to the candidate. {JSON_ONLY}"
        prompt = f"""Generate interview question #{round_num} for {domain}. Previous score: {last_score}.
Make it harder after a strong answer and easier after a weak one.

Return ONLY this JSON:
{{"text": "The question, phrased to be spoken aloud", "timeLimit": 120}}"""

        def parse(text: str) -> InterviewQuestion:
            question = InterviewQuestion.model_validate(extract_json(text))
            if not question.text.strip():
                raise ValueError("empty interview question")
            return question

        return await self._ask_or(
            InterviewQuestion(
                text=f"Question {round_num}: describe a {domain} problem you solved recently and the trade-offs you made.",
                time_limit=120,
            ),
            "generate_interview_question", prompt, system, parse,
        )

    async def evaluate_interview_response(self, domain: str, question: str, answer: str) -> InterviewEvaluation:
        system = f"You are an expert technical interviewer. Score responses objectively and consistently. {JSON_ONLY}"
        answer = strip_prompt_injection(answer or "")
        prompt = f"""Evaluate this spoken answer for {domain}.

QUESTION: {question}
ANSWER: {answer if answer else "(no answer provided)"}

Return ONLY this JSON:
{{
    "score": <number 0 to 100>,
    "feedback": "Written feedback",
    "spokenFeedback": "One short sentence to read aloud"
}}"""

        def parse(text: str) -> InterviewEvaluation:
            data = extract_json(text)
            return InterviewEvaluation(
                score=_clamp_score(data.get("score", 0)),
                feedback=str(data.get("feedback", "")),
                spoken_feedback=str(data.get("spokenFeedback", "")),
            )

        return await self._ask_or(
            InterviewEvaluation(score=0, feedback=SCORING_ERROR, spoken_feedback="I could not evaluate that answer."),
            "evaluate_interview_response", prompt, system, parse,
        )

    # ------------------------------------------------------------------
    # Exam
    # ------------------------------------------------------------------

    async def generate_exam_mcqs(self, domain: str, count: int = 20) -> List[ExamMCQ]:
        system = f"You are a certification exam author. {JSON_ONLY}"
        prompt = f"""Generate {count} MCQ questions for {domain}.

Return ONLY this JSON:
{{"questions": [{{"id": 1, "question": "Question text?", "options": ["A", "B", "C", "D"], "correctIndex": 0}}]}}"""

        def parse(text: str) -> List[ExamMCQ]:
            clean = []
            for q in extract_json(text).get("questions") or []:
                try:
                    mcq = ExamMCQ.model_validate(q)
                except ValidationError:
                    continue
                if 0 <= mcq.correct_index < len(mcq.options):
                    clean.append(mcq)
            return clean

        return await self._ask_or([], "generate_exam_mcqs", prompt, system, parse)

    async def generate_exam_theory(self, domain: str, count: int = 5) -> List[ExamTheory]:
        system = f"You are a certification exam author. {JSON_ONLY}"
        prompt = f"""Generate {count} theory questions for {domain}.

Return ONLY this JSON:
{{"questions": [{{"id": 1, "question": "Open question requiring a written answer"}}]}}"""

        def parse(text: str) -> List[ExamTheory]:
            clean = []
            for q in extract_json(text).get("questions") or []:
                try:
                    clean.append(ExamTheory.model_validate(q))
                except ValidationError:
                    continue
            return clean

        return await self._ask_or([], "generate_exam_theory", prompt, system, parse)

    async def generate_exam_practical(self, domain: str, count: int = 2) -> List[ExamPractical]:
        system = f"You are a certification exam author. {JSON_ONLY}"
        prompt = f"""Generate {count} practical coding tasks for {domain}.

Return ONLY this JSON:
{{"tasks": [{{"id": 1, "task": "What to build", "constraints": ["constraint"]}}]}}"""

        def parse(text: str) -> List[ExamPractical]:
            clean = []
            for t in extract_json(text).get("tasks") or []:
                try:
                    clean.append(ExamPractical.model_validate(t))
                except ValidationError:
                    continue
            return clean

        return await self._ask_or([], "generate_exam_practical", prompt, system, parse)

    async def grade_exam_sections(
        self,
        domain: str,
        theory: List[ExamTheory],
        practical: List[ExamPractical],
    ) -> ExamGrade:
        system = f"You are a strict certification grader. {JSON_ONLY}"
        theory_answers = [
            {"question": t.question, "answer": strip_prompt_injection(t.user_answer or "")} for t in theory
        ]
        practical_answers = [
            {"task": p.task, "answer": strip_prompt_injection(p.user_answer or "")} for p in practical
        ]
        prompt = f"""Grade the theory and practical sections for {domain}.

THEORY: {json.dumps(theory_answers)}
PRACTICAL: {json.dumps(practical_answers)}

Empty answers score 0. Return ONLY this JSON:
{{"theoryScore": <0 to 100>, "practicalScore": <0 to 100>, "feedback": "Overall feedback"}}"""

        def parse(text: str) -> ExamGrade:
            data = extract_json(text)
            return ExamGrade(
                theory_score=_clamp_score(data.get("theoryScore", 0)),
                practical_score=_clamp_score(data.get("practicalScore", 0)),
                feedback=str(data.get("feedback", "")),
            )

        return await self._ask_or(ExamGrade(feedback=SCORING_ERROR), "grade_exam_sections", prompt, system, parse)
