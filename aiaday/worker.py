"""Worker loop: drains the job queue one job at a time.

Loop:
  1. Pop the most recently created waiting job; sleep briefly if there is none.
  2. Dispatch by kind:
       ping                   → print "Pong"
       send message to scene  → persist the broadcast, then one message and
                                one ProcessMessage job per current participant,
                                in an order shuffled by the job's seed
       process message        → react to the message (see process_message)
       person waiting         → no-op
  3. Mark the job finished. A failing handler is logged and the job is
     marked failed, which also finishes it; the job itself is never retried.
     Rows that cannot be decoded are skipped.

The worker also keeps the active clock: milliseconds of worker run time,
carried across restarts through the store.
"""

from __future__ import annotations

import asyncio
import logging
import time
from uuid import UUID

from aiaday.errors import (
    AiadayError,
    JobDecodeError,
    MessageNotFound,
    NoPersonIdentityFound,
    NoStateOfMindFound,
    NotFound,
    PersonNotInAnyScene,
    SceneMessageRecipientMissing,
    StoreError,
)
from aiaday.events import EventAssembler, sender_name
from aiaday.jobs import RandomSeed
from aiaday.llm import LLM
from aiaday.memory import DirectContext, MemoryEngine, MessageContext, SceneContext
from aiaday.models import (
    AiPerson,
    Job,
    Message,
    NewMessage,
    Person,
    PersonAction,
    PersonWaitingJob,
    PingJob,
    ProcessMessageJob,
    SayInScene,
    SendMessageToSceneJob,
    ToPerson,
    ToRealWorldUser,
)
from aiaday.reaction import ReactionEngine, summarize_actions
from aiaday.store import Store

logger = logging.getLogger(__name__)

MEMORY_RECALL_LIMIT = 8


class ActiveClock:
    """Worker run time in milliseconds: a persisted base plus time elapsed since load."""

    def __init__(self, base_active_ms: int, monotonic=time.monotonic) -> None:
        self._base = base_active_ms
        self._monotonic = monotonic
        self._start = monotonic()

    @classmethod
    async def load(cls, store: Store) -> ActiveClock:
        return cls(await store.get_active_ms())

    def current_ms(self) -> int:
        return self._base + int((self._monotonic() - self._start) * 1000)

    async def persist(self, store: Store) -> None:
        await store.set_active_ms(self.current_ms())


class Worker:
    def __init__(
        self,
        *,
        store: Store,
        llm: LLM,
        poll_interval: float = 1.0,
        active_clock: ActiveClock | None = None,
    ) -> None:
        self.store = store
        self.memory = MemoryEngine(store, llm)
        self.reactions = ReactionEngine(llm)
        self.events = EventAssembler(store)
        self._poll_interval = poll_interval
        self._active_clock = active_clock

    async def _clock(self) -> ActiveClock:
        if self._active_clock is None:
            self._active_clock = await ActiveClock.load(self.store)
        return self._active_clock

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run_forever(self) -> None:
        clock = await self._clock()
        logger.info("Job runner started, polling for jobs")
        try:
            while True:
                try:
                    job = await self.run_next_job()
                except StoreError as e:
                    logger.error("Job runner error: %s", e)
                    job = None
                if job is None:
                    await asyncio.sleep(self._poll_interval)
        finally:
            await clock.persist(self.store)
            logger.info("Job runner shutting down")

    async def drain(self, max_jobs: int = 1000) -> int:
        """Run jobs until the queue is empty or `max_jobs` have run. Returns the count."""
        count = 0
        while count < max_jobs:
            if await self.run_next_job() is None:
                break
            count += 1
        return count

    async def run_next_job(self, seed: RandomSeed | None = None) -> Job | None:
        """Pop and run one job. Returns the job, or None if the queue was empty.

        Rows that cannot be decoded are already marked failed by the store;
        they are skipped and the next waiting job is popped.
        """
        while True:
            try:
                job = await self.store.pop_next_job()
            except JobDecodeError as e:
                logger.error("Skipped a job that could not be decoded: %s", e)
                continue
            break
        if job is None:
            return None

        logger.info("Job %s started (%s)", job.id, job.kind.name)
        try:
            await self.run_job(job, seed or RandomSeed.new())
        except AiadayError as e:
            logger.error("Job %s failed: %s", job.id, e)
            await self._finish(job, str(e))
        except Exception as e:
            logger.exception("Job %s crashed", job.id)
            await self._finish(job, f"{type(e).__name__}: {e}")
        else:
            await self._finish(job, None)
            logger.info("Job %s finished", job.id)

        await (await self._clock()).persist(self.store)
        return job

    async def _finish(self, job: Job, error: str | None) -> None:
        """Mark the job finished, or failed when `error` is set. One retry on a store error."""
        for attempt in (1, 2):
            try:
                if error is None:
                    await self.store.mark_job_finished(job.id)
                else:
                    await self.store.mark_job_failed(job.id, error)
                return
            except StoreError as e:
                logger.error("Job %s could not be marked done (attempt %d): %s", job.id, attempt, e)
                if attempt == 2:
                    raise

    async def run_job(self, job: Job, seed: RandomSeed) -> None:
        kind = job.kind
        if isinstance(kind, PingJob):
            print("Pong")
        elif isinstance(kind, SendMessageToSceneJob):
            await self.send_message_to_scene(kind)
        elif isinstance(kind, ProcessMessageJob):
            await self.process_message(kind, seed)
        elif isinstance(kind, PersonWaitingJob):
            await self.person_waiting(kind)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def send_message_to_scene(self, job: SendMessageToSceneJob) -> None:
        participants = await self.store.get_scene_current_participants(job.scene_id)
        await self.store.send_message(NewMessage.to_scene(job.sender, job.scene_id, job.content))

        for participant in RandomSeed(job.random_seed).shuffled(participants):
            message_id = await self.store.send_message(NewMessage(
                sender=job.sender,
                recipient=ToPerson(person_id=participant.person_id),
                scene_id=job.scene_id,
                content=job.content,
            ))
            await self.store.unshift_job(ProcessMessageJob(
                message_id=message_id, recipient_person_id=participant.person_id,
            ))
        logger.info(
            "Message to scene %s fanned out to %d participants", job.scene_id, len(participants)
        )

    async def person_waiting(self, job: PersonWaitingJob) -> None:
        logger.info(
            "Person %s waits %d ms (active clock at %d ms)",
            job.person_id, job.duration_ms, job.current_active_ms,
        )

    async def process_message(self, job: ProcessMessageJob, seed: RandomSeed) -> None:
        """React to one message on behalf of the person reading it.

        1. Load the message.
        2. Pick the acting person: the pre-bound recipient, else the direct
           recipient. Messages to the real-world user have no one to react;
           a scene broadcast with no bound reader is an error.
        3. Describe the situation.
        4. Gather recent events, state of mind, identity and memories, and
           ask the reaction engine what the person does.
        5. Queue the chosen actions.
        6. Let the memory engine remember the experience.
        7. Mark the message read.
        """
        message = await self.store.get_message_by_uuid(job.message_id)
        if message is None:
            raise MessageNotFound(job.message_id)

        person_id = job.recipient_person_id
        if person_id is None:
            if isinstance(message.recipient, ToPerson):
                person_id = message.recipient.person_id
            elif isinstance(message.recipient, ToRealWorldUser):
                logger.info("Message %s is for the real-world user; no reaction", message.id)
                await self.store.mark_message_read(message.id)
                return
            else:
                raise SceneMessageRecipientMissing(message.id)

        person = await self.store.get_person(person_id)
        if person is None:
            raise NotFound("process_message", f"No person {person_id}")

        situation, context = await self._situation(message, person)

        events = await self.events.get_events(person_id=person.id)
        state_of_mind = await self.store.get_latest_state_of_mind(person.id)
        if state_of_mind is None:
            raise NoStateOfMindFound(person.id)
        identity = await self.store.get_latest_identity(person.id)
        if identity is None:
            raise NoPersonIdentityFound(person.id)

        query = await self.memory.build_query_prompt(
            person.name,
            context,
            [e.to_text() for e in events],
            state_of_mind.content,
            situation,
        )
        memories = await self.memory.search_memories(
            query, MEMORY_RECALL_LIMIT, person_id=person.id
        )
        actions = await self.reactions.get_reaction(
            [m.content for m in memories], identity.identity, state_of_mind.content, situation,
        )

        await self._queue_actions(person.id, actions, seed)

        summary = summarize_actions(actions)
        description = f"{situation}\n\nResponse:\n{summary}" if summary else situation
        await self.memory.maybe_create_memories_from_description(person.id, description)

        await self.store.mark_message_read(message.id)

    async def _situation(self, message: Message, person: Person) -> tuple[str, MessageContext]:
        sender = await sender_name(self.store, message.sender)
        if message.scene_id is None:
            situation = f"You received a direct message from {sender}:\n\n{message.content}"
            return situation, DirectContext(sender=message.sender)

        scene = await self.store.get_scene(message.scene_id)
        if scene is None:
            raise NotFound("process_message", f"Scene {message.scene_id} not found")
        description = await self.store.get_scene_description(scene.id) or ""
        participants = await self.store.get_scene_current_participants(scene.id)
        others = [p.person_name for p in participants if p.person_id != person.id]

        situation = (
            f'You are in the scene "{scene.name}". {description}\n\n'
            f"Other people present: {', '.join(others) if others else 'none'}\n\n"
            f"{sender} said:\n\n{message.content}"
        )
        context = SceneContext(
            scene_name=scene.name, scene_description=description, people=others,
        )
        return situation, context

    async def _queue_actions(
        self, person_id: UUID, actions: list[PersonAction], seed: RandomSeed
    ) -> None:
        for action in actions:
            if isinstance(action, SayInScene):
                stay = await self.store.get_persons_current_scene(person_id)
                if stay is None:
                    raise PersonNotInAnyScene(person_id)
                seed, child = seed.split()
                await self.store.unshift_job(SendMessageToSceneJob(
                    sender=AiPerson(person_id=person_id),
                    scene_id=stay.scene_id,
                    content=action.comment,
                    random_seed=child.value,
                ))
            else:
                await self.store.unshift_job(PersonWaitingJob(
                    person_id=person_id,
                    duration_ms=action.duration_ms,
                    current_active_ms=(await self._clock()).current_ms(),
                ))
