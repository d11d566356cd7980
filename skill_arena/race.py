"""
Race clock, bot simulation for practice races, and final ranking.
"""
import asyncio
import logging
import random
import time
from typing import Callable, List, Optional, Sequence

from .models import Participant, ParticipantStatus

logger = logging.getLogger(__name__)

BOT_ROSTER = [
    ("Dev_Slayer", "DS"),
    ("NullPtr_Ex", "NP"),
    ("Algo_Rhythm", "AR"),
    ("Git_Push_Force", "GP"),
]
PRACTICE_BOTS = 3
BOT_ADVANCE_CHANCE = 0.15
BOT_MAX_STEP = 15
FEED_SIZE = 5


def now_ms() -> int:
    return int(time.time() * 1000)


def format_time(seconds: int) -> str:
    """600 -> '10:00'"""
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


def rank_participants(participants: Sequence[Participant]) -> List[Participant]:
    """
    Final standings: progress descending. Ties keep join order (sorted() is
    stable); score is not used as a tiebreak.
    """
    return sorted(participants, key=lambda p: p.progress, reverse=True)


class Countdown:
    """
    One-second countdown that fires `on_expire` exactly once.

    `tick()` and `expire()` are safe to call after expiry; they do nothing.
    """

    def __init__(self, seconds: int, on_expire: Optional[Callable[[], None]] = None):
        self.remaining = max(0, int(seconds))
        self.on_expire = on_expire
        self.expired = False

    def tick(self) -> int:
        if self.expired:
            return 0
        self.remaining = max(0, self.remaining - 1)
        if self.remaining == 0:
            self.expire()
        return self.remaining

    def expire(self) -> bool:
        """Returns True only for the call that actually expired the clock"""
        if self.expired:
            return False
        self.expired = True
        self.remaining = 0
        if self.on_expire:
            self.on_expire()
        return True

    def display(self) -> str:
        return format_time(self.remaining)

    async def run(self, interval: float = 1.0) -> None:
        if self.remaining == 0:
            self.expire()
        while not self.expired:
            await asyncio.sleep(interval)
            self.tick()


def make_bots(count: int = PRACTICE_BOTS) -> List[Participant]:
    return [
        Participant(id=f"bot-{i}", name=name, avatar=avatar, is_bot=True)
        for i, (name, avatar) in enumerate(BOT_ROSTER[:count])
    ]


class BotSimulator:
    """Advances bot progress on a random schedule, not every tick"""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def step(self, participants: List[Participant]) -> List[str]:
        """Mutates bots in place and returns the feed messages produced"""
        messages = []
        for bot in participants:
            if not bot.is_bot or bot.status == ParticipantStatus.FINISHED:
                continue
            if self.rng.random() >= BOT_ADVANCE_CHANCE:
                continue

            before = bot.progress
            after = min(100, before + self.rng.randrange(BOT_MAX_STEP))
            if after >= 33 and before < 33:
                messages.append(f"{bot.name} completed Checkpoint 1!")
            if after >= 66 and before < 66:
                messages.append(f"{bot.name} completed Checkpoint 2!")
            if after >= 100:
                messages.append(f"{bot.name} finished the race!")
                bot.status = ParticipantStatus.FINISHED
            bot.progress = after
        return messages


class ActivityFeed:
    """Newest-first list of the last few race events"""

    def __init__(self, size: int = FEED_SIZE):
        self.size = size
        self.messages: List[str] = []

    def add(self, message: str) -> None:
        self.messages = [message] + self.messages[: self.size - 1]

    def clear(self) -> None:
        self.messages = []


class PracticeRace:
    """
    Offline race against simulated bots. Nothing here touches the session
    store; the local participant list is the whole state.
    """

    def __init__(
        self,
        me: Participant,
        duration: int = 600,
        bots: int = PRACTICE_BOTS,
        rng: Optional[random.Random] = None,
        feed: Optional[ActivityFeed] = None,
        on_finish: Optional[Callable[[], None]] = None,
    ):
        self.participants: List[Participant] = [me] + make_bots(bots)
        self.me_id = me.id
        self.feed = feed or ActivityFeed()
        self.simulator = BotSimulator(rng)
        self.on_finish = on_finish
        self.countdown = Countdown(duration, on_expire=self._finish)
        self.finished = False

    def _finish(self) -> None:
        if self.finished:
            return
        self.finished = True
        logger.debug("Practice race finished")
        if self.on_finish:
            self.on_finish()

    def tick(self) -> None:
        if self.finished:
            return
        self.countdown.tick()
        if self.finished:
            return
        for message in self.simulator.step(self.participants):
            self.feed.add(message)

    def set_my_progress(self, progress: int) -> None:
        me = self.me
        me.progress = max(me.progress, max(0, min(100, progress)))
        if me.progress == 100:
            me.status = ParticipantStatus.FINISHED
            self.countdown.expire()

    @property
    def me(self) -> Participant:
        return next(p for p in self.participants if p.id == self.me_id)

    def standings(self) -> List[Participant]:
        return rank_participants(self.participants)

    async def run(self, interval: float = 1.0) -> None:
        while not self.finished:
            await asyncio.sleep(interval)
            self.tick()
