"""Memory engine: writing, recalling and forming memories.

  create_memory            embed the content, then write the row
  maybe_create_memories    ask the LLM whether an experience is worth
                           remembering and store whatever it returns
  build_query_prompt       describe who is recalling, where, and what is
                           going on, as text to embed for the search
  search_memories          embed a query and return the nearest memories

Embedding and writing are separate calls. If the write fails after the
embedding succeeded the memory is simply not stored.
"""

from __future__ import annotations

import json
import logging
from typing import Literal
from uuid import UUID

from pydantic import BaseModel

from aiaday.errors import DecodeError, NotFound
from aiaday.events import sender_name
from aiaday.llm import LLM, ChatMessage
from aiaday.models import MemorySearchResult, Sender
from aiaday.prompts import load_template, render_prompt
from aiaday.store import Store

logger = logging.getLogger(__name__)

MEMORY_WRITER_SYSTEM = (
    "You are the long-term memory of a simulated person. You decide which "
    "experiences are worth remembering and phrase them as short, self-contained "
    "memories."
)


# ---------------------------------------------------------------------------
# Recall context: where the recalling person is and who is around
# ---------------------------------------------------------------------------

class SceneContext(BaseModel):
    kind: Literal["scene"] = "scene"
    scene_name: str
    scene_description: str
    people: list[str]


class SceneByIdContext(BaseModel):
    """A scene that has not been loaded yet; name, description and people come from the store."""

    kind: Literal["scene_by_id"] = "scene_by_id"
    scene_id: UUID


class DirectContext(BaseModel):
    kind: Literal["direct"] = "direct"
    sender: Sender


MessageContext = SceneContext | SceneByIdContext | DirectContext


class MemoryEngine:
    def __init__(self, store: Store, llm: LLM, *, related_limit: int = 5) -> None:
        self._store = store
        self._llm = llm
        self._related_limit = related_limit

    async def create_memory(self, person_name: str, content: str) -> UUID:
        embedding = await self._llm.embed(content)
        memory_id = await self._store.create_memory(person_name, content, embedding)
        logger.debug("memory %s created for %s", memory_id, person_name)
        return memory_id

    async def maybe_create_memories_from_description(
        self, person_id: UUID, description: str
    ) -> list[UUID]:
        person = await self._store.get_person(person_id)
        if person is None:
            raise NotFound("maybe_create_memories", f"No person {person_id}")

        related = await self.search_memories(description, self._related_limit, person_id=person_id)
        prompt = render_prompt(load_template("memories"), {
            "name": person.name,
            "description": description,
            "memories": [r.content for r in related],
        })
        response = await self._llm.chat([
            ChatMessage(role="system", content=MEMORY_WRITER_SYSTEM),
            ChatMessage(role="user", content=prompt),
        ])

        created: list[UUID] = []
        for content in parse_memory_list(response.as_message()):
            created.append(await self.create_memory(person.name, content))
        if created:
            logger.info("%s formed %d new memories", person.name, len(created))
        return created

    async def build_query_prompt(
        self,
        person_name: str,
        context: MessageContext,
        recent_events: list[str],
        state_of_mind: str,
        situation: str,
    ) -> str:
        if isinstance(context, SceneByIdContext):
            context = await self._load_scene_context(person_name, context.scene_id)

        if isinstance(context, SceneContext):
            opening = (
                f"{person_name} is in a scene called '{context.scene_name}'. "
                f"The scene is described as: {context.scene_description}."
            )
            if context.people:
                company = "Other people present:\n" + "\n".join(f"- {p}" for p in context.people)
            else:
                company = "No one else is present."
        else:
            sender = await sender_name(self._store, context.sender)
            opening = f"{person_name} has received a direct message from {sender}."
            company = "This is a direct message, so no one else is around to see it."

        if recent_events:
            events = "\n".join(f"- {e}" for e in recent_events)
        else:
            events = "- nothing notable"

        return (
            f"{opening}\n\n"
            f"{person_name}'s state of mind is {state_of_mind}\n\n"
            f"The current situation is described as:\n{situation}\n\n"
            f"{company}\n\n"
            f"Recent events include:\n{events}\n"
        )

    async def _load_scene_context(self, person_name: str, scene_id: UUID) -> SceneContext:
        scene = await self._store.get_scene(scene_id)
        if scene is None:
            raise NotFound("build_query_prompt", f"Scene {scene_id} not found")
        description = await self._store.get_scene_description(scene_id)
        if description is None:
            raise NotFound("build_query_prompt", f"Scene description for {scene_id} not found")
        participants = await self._store.get_scene_current_participants(scene_id)
        return SceneContext(
            scene_name=scene.name,
            scene_description=description,
            people=[p.person_name for p in participants if p.person_name != person_name],
        )

    async def search_memories(
        self, query: str, limit: int, person_id: UUID | None = None
    ) -> list[MemorySearchResult]:
        if limit <= 0:
            return []
        embedding = await self._llm.embed(query)
        return await self._store.search_memories(embedding, limit, person_id=person_id)


def parse_memory_list(output: str) -> list[str]:
    """Parse the memory writer's answer: a JSON array of strings, possibly fenced."""
    text = output.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        text = text.rsplit("```", 1)[0]
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise DecodeError("invalid_json", f"memory writer returned invalid JSON: {e}") from e
    if not isinstance(data, list):
        raise DecodeError("not_array", f"memory writer must return a JSON array, got {type(data).__name__}")
    memories: list[str] = []
    for item in data:
        if not isinstance(item, str):
            raise DecodeError("not_string", f"memory entry {item!r} is not a string")
        if item.strip():
            memories.append(item.strip())
    return memories
