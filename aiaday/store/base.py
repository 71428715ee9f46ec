"""The Store protocol.

Every read and write the core needs, each one atomic against the backing
store. Two implementations exist: PostgresStore for production and
InMemoryStore for tests. Both raise the same errors.
"""

from __future__ import annotations

from typing import Protocol
from uuid import UUID

from aiaday.models import (
    Job,
    JobKind,
    Message,
    MemorySearchResult,
    NewMessage,
    Person,
    PersonIdentity,
    Scene,
    SceneParticipant,
    StateOfMind,
)


class Store(Protocol):
    # -- persons ---------------------------------------------------------
    async def create_person(self, name: str) -> UUID: ...
    async def get_person(self, person_id: UUID) -> Person | None: ...
    async def get_person_by_name(self, name: str) -> Person | None: ...
    async def list_persons(self) -> list[Person]: ...

    # -- identities and states of mind -----------------------------------
    async def create_identity(self, person_name: str, identity: str) -> UUID: ...
    async def get_latest_identity(self, person_id: UUID) -> PersonIdentity | None: ...
    async def create_state_of_mind(self, person_name: str, content: str) -> UUID: ...
    async def get_latest_state_of_mind(self, person_id: UUID) -> StateOfMind | None: ...

    # -- scenes ----------------------------------------------------------
    async def create_scene(self, name: str, description: str) -> UUID: ...
    async def get_scene(self, scene_id: UUID) -> Scene | None: ...
    async def create_scene_snapshot(self, scene_id: UUID, description: str) -> None: ...
    async def get_scene_description(self, scene_id: UUID) -> str | None: ...
    async def add_person_to_scene(self, scene_id: UUID, person_name: str) -> UUID: ...
    async def remove_person_from_scene(self, scene_id: UUID, person_name: str) -> None: ...
    async def get_scene_current_participants(self, scene_id: UUID) -> list[SceneParticipant]: ...
    async def get_scene_participation_history(self, scene_id: UUID) -> list[SceneParticipant]: ...
    async def get_persons_current_scene(self, person_id: UUID) -> SceneParticipant | None: ...

    # -- messages --------------------------------------------------------
    async def send_message(self, new_message: NewMessage) -> UUID: ...
    async def get_message_by_uuid(self, message_id: UUID) -> Message | None: ...
    async def mark_message_read(self, message_id: UUID) -> None: ...
    async def get_messages_in_scene(self, scene_id: UUID) -> list[Message]: ...
    async def get_direct_messages_for(self, person_id: UUID) -> list[Message]: ...

    # -- memories --------------------------------------------------------
    async def create_memory(self, person_name: str, content: str, embedding: list[float]) -> UUID: ...
    async def search_memories(
        self, embedding: list[float], limit: int, person_id: UUID | None = None
    ) -> list[MemorySearchResult]: ...

    # -- jobs ------------------------------------------------------------
    async def unshift_job(self, kind: JobKind) -> UUID: ...
    async def pop_next_job(self) -> Job | None: ...
    async def mark_job_finished(self, job_id: UUID) -> None: ...
    async def mark_job_failed(self, job_id: UUID, error: str) -> None: ...
    async def get_job(self, job_id: UUID) -> Job | None: ...
    async def list_jobs(self, limit: int = 50) -> list[Job]: ...

    # -- active clock ----------------------------------------------------
    async def get_active_ms(self) -> int: ...
    async def set_active_ms(self, active_ms: int) -> None: ...

    async def close(self) -> None: ...
