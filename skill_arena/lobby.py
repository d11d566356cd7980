"""
Arena client - one user's view of the challenge arena.

Drives the host generation protocol, derives its mode from the latest
session snapshot only, runs offline practice races against bots, and turns
teardown into a fire-and-forget leave. After `close()` every pending
callback or background result is ignored.
"""
import asyncio
import logging
import random
from enum import Enum
from typing import List, Optional, Set, Tuple

from .challenge import OFFLINE_CODE, ChallengeSessionManager
from .config import Settings
from .errors import ArenaError, ScenarioNotReady
from .judge import JudgeAdapter, fallback_scenario
from .models import (
    ChallengeSession,
    Checkpoint,
    JoinResult,
    Participant,
    ParticipantStatus,
    Scenario,
    SessionStatus,
    StepValidation,
    UserIdentity,
)
from .proctoring import ARENA_THRESHOLDS, ProctorEngine
from .race import ActivityFeed, Countdown, PracticeRace, rank_participants

logger = logging.getLogger(__name__)

PASSING_SCORE = 60
QUEUE_DELAY = 3.0

OFFLINE_MESSAGE = "Multiplayer backend is not reachable. Try a practice race instead."
LEAVE_FIRST = "Leave the current session before joining another"


async def obtain_scenario(judge: JudgeAdapter, domain: str, timeout: float) -> Tuple[Scenario, bool]:
    """AI scenario, or the fixed fallback on any failure or timeout. Second item: True if fallback."""
    try:
        scenario = await asyncio.wait_for(judge.generate_challenge_scenario(domain), timeout=timeout)
    except Exception as e:
        logger.warning(f"Scenario generation for {domain} failed ({e!r}), using fallback")
        return fallback_scenario(domain), True
    return scenario, False


class ArenaMode(str, Enum):
    LOBBY = "lobby"
    WAITING = "waiting"
    QUEUE = "queue"
    RACE = "race"
    RESULTS = "results"


class ArenaClient:
    def __init__(
        self,
        user: UserIdentity,
        manager: ChallengeSessionManager,
        judge: JudgeAdapter,
        race_duration: int = 600,
        scenario_timeout: float = 45.0,
        queue_delay: float = QUEUE_DELAY,
        tick_interval: float = 1.0,
        rng: Optional[random.Random] = None,
    ):
        self.user = user
        self.manager = manager
        self.judge = judge
        self.race_duration = race_duration
        self.scenario_timeout = scenario_timeout
        self.queue_delay = queue_delay
        self.tick_interval = tick_interval
        self.rng = rng

        self.mode = ArenaMode.LOBBY
        self.domain = ""
        self.session_code = ""
        self.is_host = False
        self.is_private = False
        self.session: Optional[ChallengeSession] = None
        self.is_generating_task = False
        self.generated_task_ready = False

        self.task = ""
        self.checkpoints: List[Checkpoint] = []
        self.participants: List[Participant] = []
        self.feed = ActivityFeed()
        self.countdown: Optional[Countdown] = None
        self.practice: Optional[PracticeRace] = None
        self.proctor = ProctorEngine(ARENA_THRESHOLDS)
        self.last_violation = ""
        self.closed = False

        self._validating = False
        self._unsubscribe = None
        self._generation_task: Optional[asyncio.Task] = None
        self._queue_task: Optional[asyncio.Task] = None
        self._race_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        user: UserIdentity,
        manager: ChallengeSessionManager,
        judge: JudgeAdapter,
        settings: Settings,
    ) -> "ArenaClient":
        return cls(
            user,
            manager,
            judge,
            race_duration=settings.race_duration,
            scenario_timeout=settings.scenario_timeout,
        )

    @property
    def violation_count(self) -> int:
        return len(self.proctor.violations)

    def standings(self) -> List[Participant]:
        return rank_participants(self.participants)

    # ------------------------------------------------------------------
    # Private sessions
    # ------------------------------------------------------------------

    async def create_private_session(self, domain: str) -> Optional[str]:
        """
        Host flow. Enters the waiting room right away and generates the
        scenario in the background. Returns an error message, or None.
        """
        if self.closed or self.mode != ArenaMode.LOBBY:
            return None
        code = await self.manager.create_session(self.user, domain)
        if self.closed:
            return None
        if code == OFFLINE_CODE:
            return OFFLINE_MESSAGE

        self.domain = domain
        self.is_host = True
        self.is_generating_task = True
        self.generated_task_ready = False
        self._enter_waiting_room(code)
        self._generation_task = asyncio.get_running_loop().create_task(self._generate_scenario(code, domain))
        return None

    async def _generate_scenario(self, code: str, domain: str) -> None:
        try:
            scenario, fell_back = await obtain_scenario(self.judge, domain, self.scenario_timeout)
            if fell_back and not self.closed:
                self.feed.add("Error: AI Generation failed. Using fallback scenario.")

            try:
                await self.manager.set_scenario(
                    code, scenario.task_description, scenario.checkpoints, requested_by=self.user.id
                )
            except ArenaError as e:
                logger.warning(f"Could not publish scenario for {code}: {e.message}")
                if not self.closed:
                    self.feed.add(f"Error: {e.message}")
                return

            if self.closed or self.session_code != code:
                return
            self._load_scenario(scenario)
            self.generated_task_ready = True
        finally:
            self.is_generating_task = False

    async def join_private_session(self, code: str) -> JoinResult:
        code = (code or "").strip().upper()
        if not code:
            return JoinResult(success=False, reason="Enter a session code")
        if self.closed:
            return JoinResult(success=False, reason="Arena closed")
        if self.mode != ArenaMode.LOBBY:
            return JoinResult(success=False, reason=LEAVE_FIRST)

        result = await self.manager.join_session(code, self.user)
        if not result.success:
            return result
        if self.closed or self.mode != ArenaMode.LOBBY:
            # entered another session while this join was in flight
            self._leave_in_background(code)
            return JoinResult(success=False, reason="Arena closed" if self.closed else LEAVE_FIRST)
        self.is_host = False
        self._enter_waiting_room(code)
        return result

    async def start_private_race(self) -> Optional[str]:
        """Host only, and only once a scenario (real or fallback) is published"""
        if not self.is_host or not self.session_code:
            return "Only the host can start the race"
        if not self.generated_task_ready:
            return ScenarioNotReady(self.session_code).message
        try:
            await self.manager.start_session(self.session_code, requested_by=self.user.id)
        except ArenaError as e:
            return e.message
        return None

    def leave_lobby(self) -> None:
        if self.session_code and self.mode in (ArenaMode.WAITING, ArenaMode.RACE):
            self._leave_in_background(self.session_code)
        self._reset_to_lobby()

    def _enter_waiting_room(self, code: str) -> None:
        if self._unsubscribe:
            self._unsubscribe()
        self.session_code = code
        self.is_private = True
        self.mode = ArenaMode.WAITING
        self._unsubscribe = self.manager.subscribe_to_session(code, self._on_snapshot)

    def _on_snapshot(self, session: Optional[ChallengeSession]) -> None:
        if self.closed:
            return
        if session is None:
            if self.mode in (ArenaMode.WAITING, ArenaMode.RACE):
                logger.info(f"Session {self.session_code} disappeared, back to lobby")
                self._reset_to_lobby()
            return

        self.session = session
        self.participants = session.participants
        if self.mode == ArenaMode.WAITING and session.status == SessionStatus.ACTIVE:
            self._load_scenario(Scenario(task_description=session.task_description, checkpoints=session.checkpoints))
            self.generated_task_ready = True
            self._begin_race()
            self.feed.add("Private Session Started!")
        elif session.status == SessionStatus.FINISHED:
            if self.mode == ArenaMode.WAITING:
                self.mode = ArenaMode.RESULTS
            self._finish_race()

    # ------------------------------------------------------------------
    # Practice races
    # ------------------------------------------------------------------

    def find_match(self, domain: str) -> None:
        """Public queue: a bot race starts after a short matchmaking delay"""
        if self.closed or self.mode != ArenaMode.LOBBY:
            return
        self.domain = domain
        self.is_private = False
        self.mode = ArenaMode.QUEUE
        self._queue_task = asyncio.get_running_loop().create_task(self._start_public_race(domain))

    async def _start_public_race(self, domain: str) -> None:
        await asyncio.sleep(self.queue_delay)
        scenario, _ = await obtain_scenario(self.judge, domain, self.scenario_timeout)
        if self.closed or self.mode != ArenaMode.QUEUE:
            return

        self._load_scenario(scenario)
        me = Participant(id=self.user.id, name=self.user.name or "You", avatar="ME")
        self.practice = PracticeRace(
            me,
            duration=self.race_duration,
            rng=self.rng,
            feed=self.feed,
            on_finish=self._finish_race,
        )
        self.participants = self.practice.participants
        self.proctor = ProctorEngine(ARENA_THRESHOLDS)
        self.mode = ArenaMode.RACE
        self.feed.add("Race Started! Good luck!")
        self._race_task = asyncio.get_running_loop().create_task(self.practice.run(self.tick_interval))

    # ------------------------------------------------------------------
    # Race
    # ------------------------------------------------------------------

    def _begin_race(self) -> None:
        self.proctor = ProctorEngine(ARENA_THRESHOLDS)
        self.mode = ArenaMode.RACE
        self.countdown = Countdown(self.race_duration, on_expire=self._on_time_up)
        self._race_task = asyncio.get_running_loop().create_task(self.countdown.run(self.tick_interval))

    def _on_time_up(self) -> None:
        if self.closed or self.mode != ArenaMode.RACE:
            return
        if self.is_host and self.session_code:
            self._spawn(self.manager.finish_session(self.session_code))
        self._finish_race()

    def _finish_race(self) -> None:
        if self.closed or self.mode != ArenaMode.RACE:
            return
        self.mode = ArenaMode.RESULTS
        if self.countdown:
            self.countdown.expire()

    async def validate_checkpoint(self, checkpoint_id: int, code: str) -> Optional[StepValidation]:
        if self._validating or self.mode != ArenaMode.RACE:
            return None
        checkpoint = next((c for c in self.checkpoints if c.id == checkpoint_id), None)
        if checkpoint is None:
            return None

        self._validating = True
        try:
            result = await self.judge.validate_challenge_step(self.domain, checkpoint.title, code)
        finally:
            self._validating = False
        if self.closed or self.mode != ArenaMode.RACE:
            return result

        if not (result.success and result.score > PASSING_SCORE):
            self.feed.add(f"AI Judge: Checkpoint failed. {result.feedback}")
            return result

        checkpoint.completed = True
        total = len(self.checkpoints)
        done = sum(1 for c in self.checkpoints if c.completed)
        progress = done * 100 // total
        self.feed.add(f'AI Judge: Your solution for "{checkpoint.title}" passed! (+{100 // total}%)')
        await self._report_progress(progress)
        return result

    async def _report_progress(self, progress: int) -> None:
        status = ParticipantStatus.FINISHED if progress == 100 else ParticipantStatus.CODING
        if self.practice is not None and not self.is_private:
            self.practice.set_my_progress(progress)
            return

        for p in self.participants:
            if p.id == self.user.id:
                p.progress = max(p.progress, progress)
                p.status = status
        if progress == 100:
            self._finish_race()
        if self.session_code:
            await self.manager.update_progress(self.session_code, self.user.id, progress, status)

    # ------------------------------------------------------------------
    # Anti-cheat signals (counted and surfaced, never fatal in the arena)
    # ------------------------------------------------------------------

    def on_visibility_hidden(self) -> None:
        if self.mode == ArenaMode.RACE and not self.closed:
            before = self.violation_count
            self.proctor.on_visibility_hidden()
            self._surface_violation(before)

    def on_visibility_shown(self, elapsed_ms: Optional[int] = None) -> None:
        if self.mode == ArenaMode.RACE and not self.closed:
            self.proctor.on_visibility_shown(elapsed_ms)

    def on_blur(self) -> None:
        if self.mode == ArenaMode.RACE and not self.closed:
            before = self.violation_count
            self.proctor.on_blur()
            self._surface_violation(before)

    def on_clipboard_attempt(self, action: str = "paste") -> bool:
        if self.mode != ArenaMode.RACE or self.closed:
            return False
        before = self.violation_count
        cancel = self.proctor.on_clipboard_attempt(action)
        self._surface_violation(before)
        return cancel

    def _surface_violation(self, before: int) -> None:
        if self.violation_count > before:
            self.last_violation = self.proctor.violations[-1].reason
            self.feed.add(f"⚠️ WARNING: {self.last_violation}")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Navigation away. Never blocks; the leave is fire-and-forget."""
        if self.closed:
            return
        if self.session_code and self.mode in (ArenaMode.WAITING, ArenaMode.RACE):
            self._leave_in_background(self.session_code)
        self._stop_background()
        self.closed = True

    def _reset_to_lobby(self) -> None:
        self._stop_background()
        self.session_code = ""
        self.is_host = False
        self.is_private = False
        self.session = None
        self.participants = []
        self.task = ""
        self.checkpoints = []
        self.practice = None
        self.countdown = None
        self.generated_task_ready = False
        self.is_generating_task = False
        self.mode = ArenaMode.LOBBY

    def _stop_background(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        for task in (self._generation_task, self._queue_task, self._race_task):
            if task is not None and not task.done():
                task.cancel()
        self._generation_task = self._queue_task = self._race_task = None

    def _leave_in_background(self, code: str) -> None:
        self._spawn(self.manager.leave_session(code, self.user.id))

    def _spawn(self, coro) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop, background store call dropped")
            return
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Background store call failed: {task.exception()!r}")

    def _load_scenario(self, scenario: Scenario) -> None:
        self.task = scenario.task_description
        self.checkpoints = [c.model_copy() for c in scenario.checkpoints]
