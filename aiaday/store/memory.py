"""In-process store.

Implements the Store protocol over plain dicts and lists. It mirrors the
Postgres store's semantics, including the embedding dimension check and
cosine distance, so the worker and engines can be exercised without a
database. Timestamps come from an injectable clock.
"""

from __future__ import annotations

import itertools
import math
from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from aiaday.config import EMBEDDING_DIMENSION
from aiaday.errors import NotFound, NotInScene, StoreError
from aiaday.ids import new_id
from aiaday.models import (
    Job,
    JobKind,
    Memory,
    MemorySearchResult,
    Message,
    NewMessage,
    Person,
    PersonIdentity,
    Scene,
    SceneParticipant,
    SceneSnapshot,
    StateOfMind,
    ToPerson,
    utc_now,
)


def cosine_distance(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 1.0
    return 1.0 - dot / norm


class InMemoryStore:
    def __init__(
        self,
        dimension: int = EMBEDDING_DIMENSION,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.dimension = dimension
        self._clock = clock
        self._seq = itertools.count()

        self._persons: dict[UUID, Person] = {}
        self._identities: list[PersonIdentity] = []
        self._states_of_mind: list[StateOfMind] = []
        self._scenes: dict[UUID, Scene] = {}
        self._snapshots: list[SceneSnapshot] = []
        self._participants: list[SceneParticipant] = []
        self._messages: dict[UUID, Message] = {}
        self._memories: list[tuple[Memory, list[float]]] = []
        self._jobs: dict[UUID, tuple[int, Job]] = {}
        self._active_ms = 0

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _person_named(self, operation: str, name: str) -> Person:
        for person in self._persons.values():
            if person.name == name:
                return person
        raise NotFound(operation, f"No person named {name!r}")

    def _require_scene(self, operation: str, scene_id: UUID) -> Scene:
        scene = self._scenes.get(scene_id)
        if scene is None:
            raise NotFound(operation, f"No scene {scene_id}")
        return scene

    def _replace_participant(self, old: SceneParticipant, new: SceneParticipant) -> None:
        self._participants[self._participants.index(old)] = new

    # ------------------------------------------------------------------
    # Persons
    # ------------------------------------------------------------------

    async def create_person(self, name: str) -> UUID:
        if any(p.name == name for p in self._persons.values()):
            raise StoreError("create_person", f"A person named {name!r} already exists")
        person = Person(id=new_id(), name=name)
        self._persons[person.id] = person
        return person.id

    async def get_person(self, person_id: UUID) -> Person | None:
        return self._persons.get(person_id)

    async def get_person_by_name(self, name: str) -> Person | None:
        return next((p for p in self._persons.values() if p.name == name), None)

    async def list_persons(self) -> list[Person]:
        return sorted(self._persons.values(), key=lambda p: p.name)

    # ------------------------------------------------------------------
    # Identities and states of mind
    # ------------------------------------------------------------------

    async def create_identity(self, person_name: str, identity: str) -> UUID:
        person = self._person_named("create_identity", person_name)
        row = PersonIdentity(
            id=new_id(), person_id=person.id, identity=identity, created_at=self._clock()
        )
        self._identities.append(row)
        return row.id

    async def get_latest_identity(self, person_id: UUID) -> PersonIdentity | None:
        rows = [r for r in self._identities if r.person_id == person_id]
        return sorted(rows, key=lambda r: r.created_at)[-1] if rows else None

    async def create_state_of_mind(self, person_name: str, content: str) -> UUID:
        person = self._person_named("create_state_of_mind", person_name)
        row = StateOfMind(
            id=new_id(), person_id=person.id, content=content, created_at=self._clock()
        )
        self._states_of_mind.append(row)
        return row.id

    async def get_latest_state_of_mind(self, person_id: UUID) -> StateOfMind | None:
        rows = [r for r in self._states_of_mind if r.person_id == person_id]
        return sorted(rows, key=lambda r: r.created_at)[-1] if rows else None

    # ------------------------------------------------------------------
    # Scenes
    # ------------------------------------------------------------------

    async def create_scene(self, name: str, description: str) -> UUID:
        scene = Scene(id=new_id(), name=name)
        self._scenes[scene.id] = scene
        self._snapshots.append(
            SceneSnapshot(scene_id=scene.id, description=description, created_at=self._clock())
        )
        return scene.id

    async def get_scene(self, scene_id: UUID) -> Scene | None:
        return self._scenes.get(scene_id)

    async def create_scene_snapshot(self, scene_id: UUID, description: str) -> None:
        self._require_scene("create_scene_snapshot", scene_id)
        self._snapshots.append(
            SceneSnapshot(scene_id=scene_id, description=description, created_at=self._clock())
        )

    async def get_scene_description(self, scene_id: UUID) -> str | None:
        rows = [s for s in self._snapshots if s.scene_id == scene_id]
        return sorted(rows, key=lambda s: s.created_at)[-1].description if rows else None

    async def add_person_to_scene(self, scene_id: UUID, person_name: str) -> UUID:
        self._require_scene("add_person_to_scene", scene_id)
        person = self._person_named("add_person_to_scene", person_name)
        now = self._clock()

        current = await self.get_persons_current_scene(person.id)
        if current is not None:
            if current.scene_id == scene_id:
                return current.id
            self._replace_participant(current, current.model_copy(update={"left_at": now}))

        row = SceneParticipant(
            id=new_id(),
            scene_id=scene_id,
            person_id=person.id,
            person_name=person.name,
            joined_at=now,
        )
        self._participants.append(row)
        return row.id

    async def remove_person_from_scene(self, scene_id: UUID, person_name: str) -> None:
        person = self._person_named("remove_person_from_scene", person_name)
        for row in self._participants:
            if row.scene_id == scene_id and row.person_id == person.id and row.is_active:
                self._replace_participant(row, row.model_copy(update={"left_at": self._clock()}))
                return
        raise NotInScene(
            "remove_person_from_scene", f"{person_name} is not in scene {scene_id}"
        )

    async def get_scene_current_participants(self, scene_id: UUID) -> list[SceneParticipant]:
        return [r for r in self._participants if r.scene_id == scene_id and r.is_active]

    async def get_scene_participation_history(self, scene_id: UUID) -> list[SceneParticipant]:
        rows = [r for r in self._participants if r.scene_id == scene_id]
        return sorted(rows, key=lambda r: r.joined_at)

    async def get_persons_current_scene(self, person_id: UUID) -> SceneParticipant | None:
        return next(
            (r for r in self._participants if r.person_id == person_id and r.is_active), None
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def send_message(self, new_message: NewMessage) -> UUID:
        message = Message(
            id=new_id(),
            sender=new_message.sender,
            recipient=new_message.recipient,
            scene_id=new_message.scene_id,
            content=new_message.content,
            sent_at=self._clock(),
        )
        self._messages[message.id] = message
        return message.id

    async def get_message_by_uuid(self, message_id: UUID) -> Message | None:
        return self._messages.get(message_id)

    async def mark_message_read(self, message_id: UUID) -> None:
        message = self._messages.get(message_id)
        if message is None:
            raise NotFound("mark_message_read", f"No message {message_id}")
        if message.read_at is None:
            self._messages[message_id] = message.model_copy(update={"read_at": self._clock()})

    async def get_messages_in_scene(self, scene_id: UUID) -> list[Message]:
        rows = [
            m for m in self._messages.values()
            if m.scene_id == scene_id and m.recipient.kind == "scene_broadcast"
        ]
        return sorted(rows, key=lambda m: m.sent_at)

    async def get_direct_messages_for(self, person_id: UUID) -> list[Message]:
        rows = [
            m for m in self._messages.values()
            if isinstance(m.recipient, ToPerson)
            and m.recipient.person_id == person_id
            and m.scene_id is None
        ]
        return sorted(rows, key=lambda m: m.sent_at)

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    async def create_memory(self, person_name: str, content: str, embedding: list[float]) -> UUID:
        if len(embedding) != self.dimension:
            raise StoreError(
                "create_memory",
                f"expected {self.dimension} dimensions, not {len(embedding)}",
            )
        person = self._person_named("create_memory", person_name)
        memory = Memory(id=new_id(), person_id=person.id, content=content, created_at=self._clock())
        self._memories.append((memory, list(embedding)))
        return memory.id

    async def search_memories(
        self, embedding: list[float], limit: int, person_id: UUID | None = None
    ) -> list[MemorySearchResult]:
        if limit < 0:
            raise StoreError("search_memories", "LIMIT must not be negative")
        if len(embedding) != self.dimension:
            raise StoreError(
                "search_memories",
                f"different vector dimensions {self.dimension} and {len(embedding)}",
            )
        scored = [
            MemorySearchResult(
                memory_id=memory.id,
                content=memory.content,
                distance=cosine_distance(vector, embedding),
            )
            for memory, vector in self._memories
            if person_id is None or memory.person_id == person_id
        ]
        scored.sort(key=lambda r: r.distance)
        return scored[:limit]

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def unshift_job(self, kind: JobKind) -> UUID:
        job = Job(id=new_id(), kind=kind, created_at=self._clock())
        self._jobs[job.id] = (next(self._seq), job)
        return job.id

    async def pop_next_job(self) -> Job | None:
        waiting = [
            (job.created_at, seq, job)
            for seq, job in self._jobs.values()
            if job.started_at is None and job.finished_at is None
        ]
        if not waiting:
            return None
        _, seq, job = max(waiting, key=lambda t: (t[0], t[1]))
        job = job.model_copy(update={"started_at": self._clock()})
        self._jobs[job.id] = (seq, job)
        return job

    def _update_job(self, operation: str, job_id: UUID, **changes) -> None:
        if job_id not in self._jobs:
            raise NotFound(operation, f"No job {job_id}")
        seq, job = self._jobs[job_id]
        self._jobs[job_id] = (seq, job.model_copy(update=changes))

    async def mark_job_finished(self, job_id: UUID) -> None:
        job = await self.get_job(job_id)
        if job is not None and job.finished_at is not None:
            return
        self._update_job("mark_job_finished", job_id, finished_at=self._clock())

    async def mark_job_failed(self, job_id: UUID, error: str) -> None:
        job = await self.get_job(job_id)
        finished_at = job.finished_at if job is not None and job.finished_at else self._clock()
        self._update_job("mark_job_failed", job_id, finished_at=finished_at, error=error)

    async def get_job(self, job_id: UUID) -> Job | None:
        entry = self._jobs.get(job_id)
        return entry[1] if entry else None

    async def list_jobs(self, limit: int = 50) -> list[Job]:
        ordered = sorted(self._jobs.values(), key=lambda e: (e[1].created_at, e[0]), reverse=True)
        return [job for _, job in ordered[:limit]]

    # ------------------------------------------------------------------
    # Active clock
    # ------------------------------------------------------------------

    async def get_active_ms(self) -> int:
        return self._active_ms

    async def set_active_ms(self, active_ms: int) -> None:
        self._active_ms = active_ms

    async def close(self) -> None:
        pass
