import json

import httpx
import pytest

from skill_arena.challenge import ChallengeSessionManager
from skill_arena.judge import JudgeAdapter, OllamaClient
from skill_arena.models import UserIdentity
from skill_arena.store import InMemorySessionStore


class FakeClock:
    """Millisecond clock the test moves by hand"""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class OllamaStub:
    """
    Stands in for the Ollama HTTP API through httpx.MockTransport.

    `answers` maps a prompt keyword to the JSON payload to return. A list of
    payloads is served in order, the last one repeating. Prompts with no
    matching keyword get a 500, as does everything when `status_code` is set.
    """

    def __init__(self, answers=None, status_code: int = 200):
        self.answers = answers or {}
        self.status_code = status_code
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": "model offline"})
        for keyword, payload in self.answers.items():
            if keyword in body["prompt"]:
                if isinstance(payload, list):
                    payload = payload.pop(0) if len(payload) > 1 else payload[0]
                text = payload if isinstance(payload, str) else json.dumps(payload)
                return httpx.Response(200, json={"response": text})
        return httpx.Response(500, json={"error": "no canned answer"})

    def prompts_containing(self, keyword: str):
        return [r for r in self.requests if keyword in r["prompt"]]


def make_judge(stub: OllamaStub) -> JudgeAdapter:
    client = OllamaClient(
        "http://ollama.test",
        "text-model",
        "vision-model",
        timeout=5,
        transport=httpx.MockTransport(stub),
    )
    return JudgeAdapter(client, max_attempts=3, backoff_seconds=0, environment_retry_delay=0)


SCENARIO = {
    "taskDescription": "Build an LRU cache with O(1) get and put.",
    "checkpoints": [
        {"id": 1, "title": "Data structures", "description": "Hash map plus linked list", "completed": False},
        {"id": 2, "title": "Eviction", "description": "Evict the least recently used key", "completed": False},
        {"id": 3, "title": "Edge cases", "description": "Zero capacity", "completed": False},
    ],
}

CLEAN_ROOM = {"lighting": True, "singlePerson": True, "noDevices": True, "feedback": "All clear"}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def manager(store, clock):
    return ChallengeSessionManager(store, clock=clock)


@pytest.fixture
def host():
    return UserIdentity(id="host-1", name="Hana", avatar="HA")


@pytest.fixture
def player():
    return UserIdentity(id="player-1", name="Pavel", avatar="PA")


@pytest.fixture
def ollama():
    """Factory: ollama(answers, status_code) -> (judge, stub)"""

    def build(answers=None, status_code: int = 200):
        stub = OllamaStub(answers, status_code)
        return make_judge(stub), stub

    return build
