from skill_arena.models import Participant, ParticipantStatus
from skill_arena.race import (
    ActivityFeed,
    BotSimulator,
    Countdown,
    PracticeRace,
    format_time,
    make_bots,
    rank_participants,
)


class ScriptedRandom:
    """random() and randrange() answer from fixed scripts"""

    def __init__(self, rolls, steps):
        self.rolls = list(rolls)
        self.steps = list(steps)

    def random(self):
        return self.rolls.pop(0)

    def randrange(self, stop):
        return min(self.steps.pop(0), stop - 1)


def test_format_time():
    assert format_time(600) == "10:00"
    assert format_time(65) == "1:05"
    assert format_time(-3) == "0:00"


def test_countdown_fires_once():
    fired = []
    countdown = Countdown(2, on_expire=lambda: fired.append(True))
    assert countdown.tick() == 1
    assert countdown.display() == "0:01"
    assert countdown.tick() == 0
    countdown.tick()
    assert countdown.expire() is False
    assert fired == [True]


def test_manual_expiry_beats_the_clock():
    fired = []
    countdown = Countdown(600, on_expire=lambda: fired.append(True))
    assert countdown.expire() is True
    assert countdown.tick() == 0
    assert fired == [True]


async def test_countdown_run_stops_on_expiry():
    fired = []
    countdown = Countdown(3, on_expire=lambda: fired.append(True))
    await countdown.run(interval=0)
    assert countdown.expired
    assert fired == [True]


def test_make_bots():
    bots = make_bots()
    assert [b.name for b in bots] == ["Dev_Slayer", "NullPtr_Ex", "Algo_Rhythm"]
    assert all(b.is_bot and b.progress == 0 for b in bots)


def test_bot_simulator_announces_checkpoints():
    bot = Participant(id="bot-0", name="Dev_Slayer", is_bot=True, progress=30)
    human = Participant(id="me", name="Me", progress=10)
    simulator = BotSimulator(ScriptedRandom(rolls=[0.1, 0.9], steps=[14]))

    messages = simulator.step([bot, human])

    assert bot.progress == 44
    assert human.progress == 10
    assert messages == ["Dev_Slayer completed Checkpoint 1!"]

    simulator.rng = ScriptedRandom(rolls=[0.0], steps=[14])
    bot.progress = 90
    assert simulator.step([bot]) == ["Dev_Slayer finished the race!"]
    assert bot.progress == 100
    assert bot.status == ParticipantStatus.FINISHED


def test_bot_simulator_skips_most_ticks():
    bot = Participant(id="bot-0", name="Dev_Slayer", is_bot=True)
    simulator = BotSimulator(ScriptedRandom(rolls=[0.15], steps=[]))
    assert simulator.step([bot]) == []
    assert bot.progress == 0


def test_ranking_is_stable_on_ties():
    a = Participant(id="a", progress=50, score=10)
    b = Participant(id="b", progress=80)
    c = Participant(id="c", progress=50, score=99)
    assert [p.id for p in rank_participants([a, b, c])] == ["b", "a", "c"]


def test_activity_feed_keeps_newest_five():
    feed = ActivityFeed()
    for i in range(7):
        feed.add(f"event {i}")
    assert feed.messages == ["event 6", "event 5", "event 4", "event 3", "event 2"]


def test_practice_race_ends_when_i_finish():
    finished = []
    me = Participant(id="me", name="Me", avatar="ME")
    race = PracticeRace(me, duration=600, on_finish=lambda: finished.append(True))
    assert len(race.participants) == 4

    race.set_my_progress(66)
    race.set_my_progress(33)
    assert race.me.progress == 66

    race.set_my_progress(100)
    assert race.finished
    assert race.me.status == ParticipantStatus.FINISHED
    assert finished == [True]
    assert race.standings()[0].id == "me"


def test_practice_race_times_out():
    finished = []
    me = Participant(id="me")
    race = PracticeRace(me, duration=2, on_finish=lambda: finished.append(True))
    race.tick()
    race.tick()
    race.tick()
    assert race.finished
    assert finished == [True]
