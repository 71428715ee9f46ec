import hashlib
import json
import math
import re
from datetime import datetime, timedelta, timezone

import pytest

from aiaday.llm import ChatMessage, ChatResponse, ToolDeclaration
from aiaday.store import InMemoryStore
from aiaday.worker import ActiveClock, Worker

TEST_DIMENSION = 8
EPOCH = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Store clock for tests. Advances by `step` on every reading."""

    def __init__(self, start: datetime = EPOCH, step: timedelta = timedelta(milliseconds=1)) -> None:
        self.now = start
        self.step = step

    def at(self, seconds: float) -> datetime:
        return EPOCH + timedelta(seconds=seconds)

    def set(self, seconds: float) -> None:
        self.now = self.at(seconds)

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


def _embed_words(text: str, dimension: int) -> list[float]:
    vec = [0.0] * dimension
    for word in re.findall(r"[a-z']+", text.lower()):
        bucket = int(hashlib.sha256(word.encode()).hexdigest(), 16) % dimension
        vec[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vec))
    return [v / norm for v in vec] if norm else vec


class StubLLM:
    """Scripted LLM. Tool-bearing chats get queued reactions, plain chats get queued memory answers.

    When a queue runs dry the defaults apply: a short wait for reactions,
    "[]" (nothing to remember) for memory answers.
    """

    def __init__(self, dimension: int = TEST_DIMENSION) -> None:
        self.dimension = dimension
        self.chat_calls: list[tuple[list[ChatMessage], list[ToolDeclaration] | None]] = []
        self.embed_calls: list[str] = []
        self._reactions: list[dict] = []
        self._memory_answers: list[str] = []
        self.default_reaction: list[tuple[str, dict]] = [("wait", {"duration_ms": 1000})]
        # Optional hook: gets the reaction prompt, returns tool calls or None to fall through.
        self.responder = None

    def queue_reaction(self, *calls: tuple[str, dict]) -> None:
        self._reactions.append(_tool_calls_body(list(calls)))

    def queue_raw_reaction(self, body: dict) -> None:
        self._reactions.append(body)

    def queue_memories(self, *contents: str) -> None:
        self._memory_answers.append(json.dumps(list(contents)))

    async def chat(self, messages, tools=None) -> ChatResponse:
        self.chat_calls.append((messages, tools))
        if tools:
            if self.responder is not None:
                calls = self.responder(messages[-1].content)
                if calls is not None:
                    return ChatResponse(_tool_calls_body(calls))
            body = self._reactions.pop(0) if self._reactions else _tool_calls_body(self.default_reaction)
            return ChatResponse(body)
        answer = self._memory_answers.pop(0) if self._memory_answers else "[]"
        return ChatResponse({"choices": [{"message": {"role": "assistant", "content": answer}}]})

    async def embed(self, text: str) -> list[float]:
        self.embed_calls.append(text)
        return _embed_words(text, self.dimension)

    @property
    def reaction_calls(self) -> list[list[ChatMessage]]:
        return [messages for messages, tools in self.chat_calls if tools]


def _tool_calls_body(calls: list[tuple[str, dict]]) -> dict:
    return {
        "choices": [{
            "message": {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": f"call_{i}",
                        "type": "function",
                        "function": {"name": name, "arguments": json.dumps(args)},
                    }
                    for i, (name, args) in enumerate(calls)
                ],
            }
        }]
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStore:
    """A fresh in-memory store per test, timestamped by the fake clock."""
    return InMemoryStore(dimension=TEST_DIMENSION, clock=clock)


@pytest.fixture
def llm() -> StubLLM:
    return StubLLM()


@pytest.fixture
def worker(store: InMemoryStore, llm: StubLLM) -> Worker:
    return Worker(store=store, llm=llm, poll_interval=0, active_clock=ActiveClock(0))
