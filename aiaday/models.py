"""Core domain models.

Every store operation, job handler and engine works on these types.
Pydantic is used for validation and serialisation at every data boundary,
including the JSON payload of queued jobs.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Literal
from uuid import UUID

from pydantic import BaseModel, Field

REAL_WORLD_USER_NAME = "Chadtech"
IDLE_DURATION_MS = 4 * 60 * 1000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Persons
# ---------------------------------------------------------------------------

class Person(BaseModel):
    id: UUID
    name: str


class PersonIdentity(BaseModel):
    """Free-form text describing who a person is. The latest row is current."""

    id: UUID
    person_id: UUID
    identity: str
    created_at: datetime


class StateOfMind(BaseModel):
    """A person's current disposition. The latest row is current."""

    id: UUID
    person_id: UUID
    content: str
    created_at: datetime


# ---------------------------------------------------------------------------
# Scenes
# ---------------------------------------------------------------------------

class Scene(BaseModel):
    id: UUID
    name: str


class SceneSnapshot(BaseModel):
    scene_id: UUID
    description: str
    created_at: datetime


class SceneParticipant(BaseModel):
    """One stay of a person in a scene: the interval [joined_at, left_at)."""

    id: UUID
    scene_id: UUID
    person_id: UUID
    person_name: str
    joined_at: datetime
    left_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.left_at is None


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class AiPerson(BaseModel):
    kind: Literal["ai_person"] = "ai_person"
    person_id: UUID


class RealWorldUser(BaseModel):
    kind: Literal["real_world_user"] = "real_world_user"


Sender = Annotated[AiPerson | RealWorldUser, Field(discriminator="kind")]


class ToPerson(BaseModel):
    kind: Literal["person"] = "person"
    person_id: UUID


class SceneBroadcast(BaseModel):
    kind: Literal["scene_broadcast"] = "scene_broadcast"
    scene_id: UUID


class ToRealWorldUser(BaseModel):
    kind: Literal["real_world_user"] = "real_world_user"


Recipient = Annotated[ToPerson | SceneBroadcast | ToRealWorldUser, Field(discriminator="kind")]


class NewMessage(BaseModel):
    sender: Sender
    recipient: Recipient
    scene_id: UUID | None = None
    content: str

    @classmethod
    def to_scene(cls, sender: AiPerson | RealWorldUser, scene_id: UUID, content: str) -> NewMessage:
        return cls(
            sender=sender,
            recipient=SceneBroadcast(scene_id=scene_id),
            scene_id=scene_id,
            content=content,
        )


class Message(BaseModel):
    """A persisted utterance. Append-only except for read_at, which is set once."""

    id: UUID
    sender: Sender
    recipient: Recipient
    scene_id: UUID | None = None
    content: str
    sent_at: datetime
    read_at: datetime | None = None


# ---------------------------------------------------------------------------
# Memories
# ---------------------------------------------------------------------------

class Memory(BaseModel):
    id: UUID
    person_id: UUID
    content: str
    created_at: datetime


class MemorySearchResult(BaseModel):
    memory_id: UUID
    content: str
    distance: float


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class PingJob(BaseModel):
    name: Literal["ping"] = "ping"


class ProcessMessageJob(BaseModel):
    name: Literal["process message"] = "process message"
    message_id: UUID
    recipient_person_id: UUID | None = None


class SendMessageToSceneJob(BaseModel):
    name: Literal["send message to scene"] = "send message to scene"
    sender: Sender
    scene_id: UUID
    content: str
    random_seed: int


class PersonWaitingJob(BaseModel):
    name: Literal["person waiting"] = "person waiting"
    person_id: UUID
    duration_ms: int = Field(ge=0)
    current_active_ms: int = Field(ge=0)


JobKind = Annotated[
    PingJob | ProcessMessageJob | SendMessageToSceneJob | PersonWaitingJob,
    Field(discriminator="name"),
]


class Job(BaseModel):
    id: UUID
    kind: JobKind
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None

    @property
    def status(self) -> str:
        if self.finished_at is not None:
            return "failed" if self.error else "finished"
        if self.started_at is not None:
            return "started"
        return "queued"


# ---------------------------------------------------------------------------
# Person actions
# ---------------------------------------------------------------------------

class SayInScene(BaseModel):
    kind: Literal["say_in_scene"] = "say_in_scene"
    comment: str


class Wait(BaseModel):
    kind: Literal["wait"] = "wait"
    duration_ms: int = Field(ge=0)


class Idle(BaseModel):
    kind: Literal["idle"] = "idle"

    @property
    def duration_ms(self) -> int:
        return IDLE_DURATION_MS


PersonAction = Annotated[SayInScene | Wait | Idle, Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

EventKind = Literal["scene_message", "direct_message", "joined_scene", "left_scene"]


class Event(BaseModel):
    """Something that happened, as seen from a person's or a scene's timeline."""

    timestamp: datetime
    kind: EventKind
    actor: str
    scene_name: str | None = None
    content: str | None = None

    def to_text(self) -> str:
        at = self.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        if self.kind == "scene_message":
            return f"At {at}, in scene {self.scene_name}, {self.actor} said: {self.content}"
        if self.kind == "direct_message":
            return f"At {at}, {self.actor} sent a direct message: {self.content}"
        if self.kind == "joined_scene":
            return f"At {at}, {self.actor} joined scene {self.scene_name}"
        return f"At {at}, {self.actor} left scene {self.scene_name}"
