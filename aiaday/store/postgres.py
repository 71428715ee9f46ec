"""PostgreSQL store backed by asyncpg and pgvector.

Every connection in the pool gets the pgvector codec and a JSON codec for
JSONB registered by `_setup_connection`. Backend failures are wrapped in
StoreError carrying the operation name and the verbatim database message.

Memory search orders by cosine distance (the `<=>` operator).
"""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import AsyncIterator
from importlib import resources
from uuid import UUID

import asyncpg
import pgvector.asyncpg as pgvector_asyncpg

from aiaday.config import EMBEDDING_DIMENSION
from aiaday.errors import JobDecodeError, NotFound, NotInScene, StoreError
from aiaday.ids import new_id
from aiaday.jobs import decode_job, encode_job
from aiaday.models import (
    AiPerson,
    Job,
    JobKind,
    MemorySearchResult,
    Message,
    NewMessage,
    Person,
    PersonIdentity,
    RealWorldUser,
    Scene,
    SceneBroadcast,
    SceneParticipant,
    StateOfMind,
    ToPerson,
    ToRealWorldUser,
)

logger = logging.getLogger(__name__)

_BACKEND_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


async def _setup_connection(conn: asyncpg.Connection) -> None:
    await pgvector_asyncpg.register_vector(conn)
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
    )


def load_schema() -> str:
    return resources.files("aiaday.store").joinpath("schema.sql").read_text()


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------

_MESSAGE_COLUMNS = (
    "uuid, sender_person_uuid, recipient_kind, receiver_person_uuid, "
    "scene_uuid, content, sent_at, read_at"
)

_PARTICIPANT_SELECT = """
    SELECT sp.uuid, sp.scene_uuid, sp.person_uuid, p.name AS person_name,
           sp.joined_at, sp.left_at
    FROM scene_participant sp
    JOIN person p ON p.uuid = sp.person_uuid
"""

_JOB_COLUMNS = "uuid, name, data, created_at, started_at, finished_at, error"


def _message_from_row(row: asyncpg.Record) -> Message:
    if row["sender_person_uuid"] is None:
        sender: AiPerson | RealWorldUser = RealWorldUser()
    else:
        sender = AiPerson(person_id=row["sender_person_uuid"])

    kind = row["recipient_kind"]
    if kind == "person":
        recipient: ToPerson | SceneBroadcast | ToRealWorldUser = ToPerson(
            person_id=row["receiver_person_uuid"]
        )
    elif kind == "scene_broadcast":
        recipient = SceneBroadcast(scene_id=row["scene_uuid"])
    else:
        recipient = ToRealWorldUser()

    return Message(
        id=row["uuid"],
        sender=sender,
        recipient=recipient,
        scene_id=row["scene_uuid"],
        content=row["content"],
        sent_at=row["sent_at"],
        read_at=row["read_at"],
    )


def _participant_from_row(row: asyncpg.Record) -> SceneParticipant:
    return SceneParticipant(
        id=row["uuid"],
        scene_id=row["scene_uuid"],
        person_id=row["person_uuid"],
        person_name=row["person_name"],
        joined_at=row["joined_at"],
        left_at=row["left_at"],
    )


def _job_from_row(row: asyncpg.Record) -> Job:
    return Job(
        id=row["uuid"],
        kind=decode_job(row["name"], row["data"]),
        created_at=row["created_at"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        error=row["error"],
    )


class PostgresStore:
    def __init__(self, pool: asyncpg.Pool, dimension: int = EMBEDDING_DIMENSION) -> None:
        self._pool = pool
        self.dimension = dimension

    @classmethod
    async def connect(
        cls, dsn: str, *, dimension: int = EMBEDDING_DIMENSION, min_size: int = 1, max_size: int = 5
    ) -> PostgresStore:
        """Open a pool. The vector extension must exist before the codec can be registered."""
        try:
            conn = await asyncpg.connect(dsn)
            try:
                await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
            finally:
                await conn.close()
            pool = await asyncpg.create_pool(
                dsn, min_size=min_size, max_size=max_size, init=_setup_connection
            )
        except _BACKEND_ERRORS as e:
            raise StoreError("connect", str(e)) from e
        logger.info("Connected to database (pool %d..%d)", min_size, max_size)
        return cls(pool, dimension)

    async def close(self) -> None:
        await self._pool.close()

    @contextlib.asynccontextmanager
    async def _conn(self, operation: str) -> AsyncIterator[asyncpg.Connection]:
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except _BACKEND_ERRORS as e:
            raise StoreError(operation, str(e)) from e

    async def ensure_schema(self) -> None:
        """Apply the schema, then check the memory column matches the configured dimension."""
        async with self._conn("ensure_schema") as conn:
            await conn.execute(load_schema())
            width = await conn.fetchval(
                """
                SELECT atttypmod FROM pg_attribute
                WHERE attrelid = 'memory'::regclass AND attname = 'embedding'
                """
            )
        if width != self.dimension:
            raise StoreError(
                "ensure_schema",
                f"memory.embedding has {width} dimensions, configured for {self.dimension}",
            )

    async def _person_uuid(self, conn: asyncpg.Connection, operation: str, name: str) -> UUID:
        person_uuid = await conn.fetchval("SELECT uuid FROM person WHERE name = $1", name)
        if person_uuid is None:
            raise NotFound(operation, f"No person named {name!r}")
        return person_uuid

    # ------------------------------------------------------------------
    # Persons
    # ------------------------------------------------------------------

    async def create_person(self, name: str) -> UUID:
        async with self._conn("create_person") as conn:
            return await conn.fetchval(
                "INSERT INTO person (uuid, name) VALUES ($1, $2) RETURNING uuid",
                new_id(), name,
            )

    async def get_person(self, person_id: UUID) -> Person | None:
        async with self._conn("get_person") as conn:
            row = await conn.fetchrow("SELECT uuid, name FROM person WHERE uuid = $1", person_id)
        return Person(id=row["uuid"], name=row["name"]) if row else None

    async def get_person_by_name(self, name: str) -> Person | None:
        async with self._conn("get_person_by_name") as conn:
            row = await conn.fetchrow("SELECT uuid, name FROM person WHERE name = $1", name)
        return Person(id=row["uuid"], name=row["name"]) if row else None

    async def list_persons(self) -> list[Person]:
        async with self._conn("list_persons") as conn:
            rows = await conn.fetch("SELECT uuid, name FROM person ORDER BY name")
        return [Person(id=r["uuid"], name=r["name"]) for r in rows]

    # ------------------------------------------------------------------
    # Identities and states of mind
    # ------------------------------------------------------------------

    async def create_identity(self, person_name: str, identity: str) -> UUID:
        async with self._conn("create_identity") as conn:
            person_uuid = await self._person_uuid(conn, "create_identity", person_name)
            return await conn.fetchval(
                """
                INSERT INTO person_identity (uuid, person_uuid, identity)
                VALUES ($1, $2, $3) RETURNING uuid
                """,
                new_id(), person_uuid, identity,
            )

    async def get_latest_identity(self, person_id: UUID) -> PersonIdentity | None:
        async with self._conn("get_latest_identity") as conn:
            row = await conn.fetchrow(
                """
                SELECT uuid, person_uuid, identity, created_at
                FROM person_identity WHERE person_uuid = $1
                ORDER BY created_at DESC LIMIT 1
                """,
                person_id,
            )
        if row is None:
            return None
        return PersonIdentity(
            id=row["uuid"], person_id=row["person_uuid"],
            identity=row["identity"], created_at=row["created_at"],
        )

    async def create_state_of_mind(self, person_name: str, content: str) -> UUID:
        async with self._conn("create_state_of_mind") as conn:
            person_uuid = await self._person_uuid(conn, "create_state_of_mind", person_name)
            return await conn.fetchval(
                """
                INSERT INTO state_of_mind (uuid, person_uuid, state_of_mind)
                VALUES ($1, $2, $3) RETURNING uuid
                """,
                new_id(), person_uuid, content,
            )

    async def get_latest_state_of_mind(self, person_id: UUID) -> StateOfMind | None:
        async with self._conn("get_latest_state_of_mind") as conn:
            row = await conn.fetchrow(
                """
                SELECT uuid, person_uuid, state_of_mind, created_at
                FROM state_of_mind WHERE person_uuid = $1
                ORDER BY created_at DESC LIMIT 1
                """,
                person_id,
            )
        if row is None:
            return None
        return StateOfMind(
            id=row["uuid"], person_id=row["person_uuid"],
            content=row["state_of_mind"], created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Scenes
    # ------------------------------------------------------------------

    async def create_scene(self, name: str, description: str) -> UUID:
        scene_uuid = new_id()
        async with self._conn("create_scene") as conn:
            async with conn.transaction():
                await conn.execute(
                    "INSERT INTO scene (uuid, name) VALUES ($1, $2)", scene_uuid, name
                )
                await conn.execute(
                    """
                    INSERT INTO scene_snapshot (uuid, scene_uuid, description)
                    VALUES ($1, $2, $3)
                    """,
                    new_id(), scene_uuid, description,
                )
        return scene_uuid

    async def get_scene(self, scene_id: UUID) -> Scene | None:
        async with self._conn("get_scene") as conn:
            row = await conn.fetchrow("SELECT uuid, name FROM scene WHERE uuid = $1", scene_id)
        return Scene(id=row["uuid"], name=row["name"]) if row else None

    async def create_scene_snapshot(self, scene_id: UUID, description: str) -> None:
        async with self._conn("create_scene_snapshot") as conn:
            await conn.execute(
                "INSERT INTO scene_snapshot (uuid, scene_uuid, description) VALUES ($1, $2, $3)",
                new_id(), scene_id, description,
            )

    async def get_scene_description(self, scene_id: UUID) -> str | None:
        async with self._conn("get_scene_description") as conn:
            return await conn.fetchval(
                """
                SELECT description FROM scene_snapshot WHERE scene_uuid = $1
                ORDER BY created_at DESC LIMIT 1
                """,
                scene_id,
            )

    async def add_person_to_scene(self, scene_id: UUID, person_name: str) -> UUID:
        async with self._conn("add_person_to_scene") as conn:
            async with conn.transaction():
                person_uuid = await self._person_uuid(conn, "add_person_to_scene", person_name)
                current = await conn.fetchrow(
                    """
                    SELECT uuid, scene_uuid FROM scene_participant
                    WHERE person_uuid = $1 AND left_at IS NULL
                    FOR UPDATE
                    """,
                    person_uuid,
                )
                if current is not None:
                    if current["scene_uuid"] == scene_id:
                        return current["uuid"]
                    await conn.execute(
                        "UPDATE scene_participant SET left_at = clock_timestamp() WHERE uuid = $1",
                        current["uuid"],
                    )
                return await conn.fetchval(
                    """
                    INSERT INTO scene_participant (uuid, scene_uuid, person_uuid)
                    VALUES ($1, $2, $3) RETURNING uuid
                    """,
                    new_id(), scene_id, person_uuid,
                )

    async def remove_person_from_scene(self, scene_id: UUID, person_name: str) -> None:
        async with self._conn("remove_person_from_scene") as conn:
            person_uuid = await self._person_uuid(conn, "remove_person_from_scene", person_name)
            closed = await conn.fetchval(
                """
                UPDATE scene_participant SET left_at = clock_timestamp()
                WHERE scene_uuid = $1 AND person_uuid = $2 AND left_at IS NULL
                RETURNING uuid
                """,
                scene_id, person_uuid,
            )
        if closed is None:
            raise NotInScene(
                "remove_person_from_scene", f"{person_name} is not in scene {scene_id}"
            )

    async def get_scene_current_participants(self, scene_id: UUID) -> list[SceneParticipant]:
        async with self._conn("get_scene_current_participants") as conn:
            rows = await conn.fetch(
                _PARTICIPANT_SELECT
                + "WHERE sp.scene_uuid = $1 AND sp.left_at IS NULL ORDER BY sp.joined_at",
                scene_id,
            )
        return [_participant_from_row(r) for r in rows]

    async def get_scene_participation_history(self, scene_id: UUID) -> list[SceneParticipant]:
        async with self._conn("get_scene_participation_history") as conn:
            rows = await conn.fetch(
                _PARTICIPANT_SELECT + "WHERE sp.scene_uuid = $1 ORDER BY sp.joined_at",
                scene_id,
            )
        return [_participant_from_row(r) for r in rows]

    async def get_persons_current_scene(self, person_id: UUID) -> SceneParticipant | None:
        async with self._conn("get_persons_current_scene") as conn:
            row = await conn.fetchrow(
                _PARTICIPANT_SELECT
                + "WHERE sp.person_uuid = $1 AND sp.left_at IS NULL "
                "ORDER BY sp.joined_at DESC LIMIT 1",
                person_id,
            )
        return _participant_from_row(row) if row else None

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def send_message(self, new_message: NewMessage) -> UUID:
        sender = new_message.sender
        recipient = new_message.recipient
        sender_uuid = sender.person_id if isinstance(sender, AiPerson) else None
        receiver_uuid = recipient.person_id if isinstance(recipient, ToPerson) else None
        scene_uuid = new_message.scene_id
        if isinstance(recipient, SceneBroadcast):
            scene_uuid = recipient.scene_id

        async with self._conn("send_message") as conn:
            return await conn.fetchval(
                """
                INSERT INTO message
                    (uuid, sender_person_uuid, recipient_kind, receiver_person_uuid,
                     scene_uuid, content)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING uuid
                """,
                new_id(), sender_uuid, recipient.kind, receiver_uuid,
                scene_uuid, new_message.content,
            )

    async def get_message_by_uuid(self, message_id: UUID) -> Message | None:
        async with self._conn("get_message_by_uuid") as conn:
            row = await conn.fetchrow(
                f"SELECT {_MESSAGE_COLUMNS} FROM message WHERE uuid = $1", message_id
            )
        return _message_from_row(row) if row else None

    async def mark_message_read(self, message_id: UUID) -> None:
        async with self._conn("mark_message_read") as conn:
            found = await conn.fetchval(
                """
                UPDATE message SET read_at = COALESCE(read_at, clock_timestamp())
                WHERE uuid = $1 RETURNING uuid
                """,
                message_id,
            )
        if found is None:
            raise NotFound("mark_message_read", f"No message {message_id}")

    async def get_messages_in_scene(self, scene_id: UUID) -> list[Message]:
        async with self._conn("get_messages_in_scene") as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM message
                WHERE scene_uuid = $1 AND recipient_kind = 'scene_broadcast'
                ORDER BY sent_at ASC
                """,
                scene_id,
            )
        return [_message_from_row(r) for r in rows]

    async def get_direct_messages_for(self, person_id: UUID) -> list[Message]:
        async with self._conn("get_direct_messages_for") as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM message
                WHERE receiver_person_uuid = $1 AND scene_uuid IS NULL
                ORDER BY sent_at ASC
                """,
                person_id,
            )
        return [_message_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    async def create_memory(self, person_name: str, content: str, embedding: list[float]) -> UUID:
        if len(embedding) != self.dimension:
            raise StoreError(
                "create_memory",
                f"expected {self.dimension} dimensions, not {len(embedding)}",
            )
        async with self._conn("create_memory") as conn:
            person_uuid = await self._person_uuid(conn, "create_memory", person_name)
            return await conn.fetchval(
                """
                INSERT INTO memory (uuid, person_uuid, content, embedding)
                VALUES ($1, $2, $3, $4) RETURNING uuid
                """,
                new_id(), person_uuid, content, embedding,
            )

    async def search_memories(
        self, embedding: list[float], limit: int, person_id: UUID | None = None
    ) -> list[MemorySearchResult]:
        if len(embedding) != self.dimension:
            raise StoreError(
                "search_memories",
                f"different vector dimensions {self.dimension} and {len(embedding)}",
            )
        if limit == 0:
            return []
        async with self._conn("search_memories") as conn:
            rows = await conn.fetch(
                """
                SELECT uuid, content, (embedding <=> $1)::FLOAT8 AS distance
                FROM memory
                WHERE $3::UUID IS NULL OR person_uuid = $3
                ORDER BY embedding <=> $1
                LIMIT $2
                """,
                embedding, limit, person_id,
            )
        return [
            MemorySearchResult(memory_id=r["uuid"], content=r["content"], distance=r["distance"])
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def unshift_job(self, kind: JobKind) -> UUID:
        name, data = encode_job(kind)
        async with self._conn("unshift_job") as conn:
            return await conn.fetchval(
                "INSERT INTO job (uuid, name, data) VALUES ($1, $2, $3) RETURNING uuid",
                new_id(), name, data,
            )

    async def pop_next_job(self) -> Job | None:
        """Claim the most recently created waiting job.

        A row whose payload cannot be decoded is claimed, marked failed and
        reported with JobDecodeError so it does not block the queue.
        """
        async with self._conn("pop_next_job") as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE job SET started_at = clock_timestamp()
                WHERE uuid = (
                    SELECT uuid FROM job
                    WHERE started_at IS NULL AND finished_at IS NULL
                    ORDER BY created_at DESC, uuid DESC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING {_JOB_COLUMNS}
                """
            )
        if row is None:
            return None
        try:
            return _job_from_row(row)
        except JobDecodeError as e:
            await self.mark_job_failed(row["uuid"], str(e))
            raise

    async def mark_job_finished(self, job_id: UUID) -> None:
        async with self._conn("mark_job_finished") as conn:
            await conn.execute(
                """
                UPDATE job SET finished_at = clock_timestamp()
                WHERE uuid = $1 AND finished_at IS NULL
                """,
                job_id,
            )

    async def mark_job_failed(self, job_id: UUID, error: str) -> None:
        async with self._conn("mark_job_failed") as conn:
            await conn.execute(
                """
                UPDATE job
                SET finished_at = COALESCE(finished_at, clock_timestamp()), error = $2
                WHERE uuid = $1
                """,
                job_id, error,
            )

    async def get_job(self, job_id: UUID) -> Job | None:
        async with self._conn("get_job") as conn:
            row = await conn.fetchrow(f"SELECT {_JOB_COLUMNS} FROM job WHERE uuid = $1", job_id)
        return _job_from_row(row) if row else None

    async def list_jobs(self, limit: int = 50) -> list[Job]:
        async with self._conn("list_jobs") as conn:
            rows = await conn.fetch(
                f"SELECT {_JOB_COLUMNS} FROM job ORDER BY created_at DESC LIMIT $1", limit
            )
        return [_job_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Active clock
    # ------------------------------------------------------------------

    async def get_active_ms(self) -> int:
        async with self._conn("get_active_ms") as conn:
            value = await conn.fetchval("SELECT active_ms FROM active_clock WHERE id = TRUE")
        return value or 0

    async def set_active_ms(self, active_ms: int) -> None:
        async with self._conn("set_active_ms") as conn:
            await conn.execute(
                """
                INSERT INTO active_clock (id, active_ms) VALUES (TRUE, $1)
                ON CONFLICT (id) DO UPDATE SET active_ms = EXCLUDED.active_ms
                """,
                active_ms,
            )
