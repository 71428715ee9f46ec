"""Event assembler: a person's or a scene's recent timeline.

Events feed the "recent events" slot of the memory query prompt. Cases:

  person + scene  direct messages to the person, plus everything in the
                  scene since the person's current stay began
  person only     direct messages to the person
  scene only      every scene message and every join/leave in the scene
  neither         nothing

The result is sorted by timestamp. Python's sort is stable, so events with
equal timestamps keep the order they were collected in.
"""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from aiaday.models import (
    REAL_WORLD_USER_NAME,
    AiPerson,
    Event,
    Message,
    RealWorldUser,
    SceneParticipant,
)
from aiaday.store import Store

logger = logging.getLogger(__name__)


async def sender_name(store: Store, sender: AiPerson | RealWorldUser) -> str:
    if isinstance(sender, RealWorldUser):
        return REAL_WORLD_USER_NAME
    person = await store.get_person(sender.person_id)
    if person is None:
        logger.warning("Message sender %s no longer exists", sender.person_id)
        return f"Unknown person {sender.person_id}"
    return person.name


class EventAssembler:
    def __init__(self, store: Store) -> None:
        self._store = store

    async def get_events(
        self, person_id: UUID | None = None, scene_id: UUID | None = None
    ) -> list[Event]:
        events: list[Event] = []

        if person_id is not None:
            events.extend(await self._direct_message_events(person_id))

        if scene_id is not None:
            since: datetime | None = None
            if person_id is not None:
                stay = await self._current_stay(person_id, scene_id)
                if stay is None:
                    return _sorted(events)
                since = stay.joined_at
            events.extend(await self._scene_events(scene_id, since))

        return _sorted(events)

    async def _current_stay(self, person_id: UUID, scene_id: UUID) -> SceneParticipant | None:
        history = await self._store.get_scene_participation_history(scene_id)
        active = [p for p in history if p.person_id == person_id and p.is_active]
        return max(active, key=lambda p: p.joined_at) if active else None

    async def _direct_message_events(self, person_id: UUID) -> list[Event]:
        messages = await self._store.get_direct_messages_for(person_id)
        return [
            Event(
                timestamp=m.sent_at,
                kind="direct_message",
                actor=await sender_name(self._store, m.sender),
                content=m.content,
            )
            for m in messages
        ]

    async def _scene_events(self, scene_id: UUID, since: datetime | None) -> list[Event]:
        scene = await self._store.get_scene(scene_id)
        scene_name = scene.name if scene else f"Unknown scene {scene_id}"

        def _included(ts: datetime | None) -> bool:
            return ts is not None and (since is None or ts >= since)

        events: list[Event] = []
        messages: list[Message] = await self._store.get_messages_in_scene(scene_id)
        for m in messages:
            if _included(m.sent_at):
                events.append(Event(
                    timestamp=m.sent_at,
                    kind="scene_message",
                    actor=await sender_name(self._store, m.sender),
                    scene_name=scene_name,
                    content=m.content,
                ))

        for p in await self._store.get_scene_participation_history(scene_id):
            if _included(p.joined_at):
                events.append(Event(
                    timestamp=p.joined_at, kind="joined_scene",
                    actor=p.person_name, scene_name=scene_name,
                ))
            if _included(p.left_at):
                events.append(Event(
                    timestamp=p.left_at, kind="left_scene",
                    actor=p.person_name, scene_name=scene_name,
                ))
        return events


def _sorted(events: list[Event]) -> list[Event]:
    return sorted(events, key=lambda e: e.timestamp)
