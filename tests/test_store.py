"""Tests for the in-memory store."""

import pytest

from aiaday.errors import NotFound, NotInScene, StoreError
from aiaday.models import (
    AiPerson,
    NewMessage,
    PingJob,
    ProcessMessageJob,
    RealWorldUser,
    ToPerson,
)
from aiaday.ids import fixed_id


def _vec(store, *head: float) -> list[float]:
    return list(head) + [0.0] * (store.dimension - len(head))


# ── Persons, identities, states of mind ─────────────────────


async def test_create_and_get_person(store):
    person_id = await store.create_person("Alice")
    person = await store.get_person(person_id)
    assert person.name == "Alice"
    assert (await store.get_person_by_name("Alice")).id == person_id
    assert await store.get_person_by_name("Nobody") is None


async def test_person_names_are_unique(store):
    await store.create_person("Alice")
    with pytest.raises(StoreError):
        await store.create_person("Alice")


async def test_identity_requires_existing_person(store):
    with pytest.raises(NotFound):
        await store.create_identity("Nobody", "a ghost")
    with pytest.raises(NotFound):
        await store.create_state_of_mind("Nobody", "spooky")


async def test_latest_identity_and_state_of_mind(store):
    person_id = await store.create_person("Alice")
    assert await store.get_latest_identity(person_id) is None
    assert await store.get_latest_state_of_mind(person_id) is None

    await store.create_identity("Alice", "a baker")
    await store.create_identity("Alice", "a cheerful baker")
    await store.create_state_of_mind("Alice", "tired")
    await store.create_state_of_mind("Alice", "relaxed")

    assert (await store.get_latest_identity(person_id)).identity == "a cheerful baker"
    assert (await store.get_latest_state_of_mind(person_id)).content == "relaxed"


# ── Scenes and participation ────────────────────────────────


async def test_create_scene_seeds_snapshot(store):
    scene_id = await store.create_scene("Bakery", "a warm bakery")
    assert (await store.get_scene(scene_id)).name == "Bakery"
    assert await store.get_scene_description(scene_id) == "a warm bakery"

    await store.create_scene_snapshot(scene_id, "a busy bakery")
    assert await store.get_scene_description(scene_id) == "a busy bakery"


async def test_scene_names_need_not_be_unique(store):
    first = await store.create_scene("Park", "sunny")
    second = await store.create_scene("Park", "rainy")
    assert first != second


async def test_add_person_to_scene(store):
    scene_id = await store.create_scene("Bakery", "warm")
    person_id = await store.create_person("Alice")
    participation_id = await store.add_person_to_scene(scene_id, "Alice")

    current = await store.get_persons_current_scene(person_id)
    assert current.id == participation_id
    assert current.scene_id == scene_id
    assert current.person_name == "Alice"
    assert current.left_at is None

    participants = await store.get_scene_current_participants(scene_id)
    assert [p.person_name for p in participants] == ["Alice"]


async def test_rejoining_same_scene_is_noop(store):
    scene_id = await store.create_scene("Bakery", "warm")
    await store.create_person("Alice")
    first = await store.add_person_to_scene(scene_id, "Alice")
    second = await store.add_person_to_scene(scene_id, "Alice")
    assert first == second
    assert len(await store.get_scene_participation_history(scene_id)) == 1


async def test_joining_another_scene_closes_current(store):
    bakery = await store.create_scene("Bakery", "warm")
    park = await store.create_scene("Park", "green")
    person_id = await store.create_person("Alice")
    await store.add_person_to_scene(bakery, "Alice")
    await store.add_person_to_scene(park, "Alice")

    assert (await store.get_persons_current_scene(person_id)).scene_id == park
    assert await store.get_scene_current_participants(bakery) == []
    [old] = await store.get_scene_participation_history(bakery)
    assert old.left_at is not None
    assert old.left_at >= old.joined_at


async def test_at_most_one_active_participation(store):
    scenes = [await store.create_scene(f"Scene {i}", "") for i in range(3)]
    person_id = await store.create_person("Alice")
    for scene_id in scenes + scenes:
        await store.add_person_to_scene(scene_id, "Alice")

    active = []
    for scene_id in scenes:
        active += [
            p for p in await store.get_scene_participation_history(scene_id)
            if p.person_id == person_id and p.left_at is None
        ]
    assert len(active) == 1


async def test_remove_person_from_scene(store):
    scene_id = await store.create_scene("Bakery", "warm")
    person_id = await store.create_person("Alice")
    await store.add_person_to_scene(scene_id, "Alice")
    await store.remove_person_from_scene(scene_id, "Alice")

    assert await store.get_persons_current_scene(person_id) is None
    with pytest.raises(NotInScene):
        await store.remove_person_from_scene(scene_id, "Alice")


async def test_add_unknown_person_fails(store):
    scene_id = await store.create_scene("Bakery", "warm")
    with pytest.raises(NotFound):
        await store.add_person_to_scene(scene_id, "Nobody")


async def test_participation_history_ordered_by_join(store):
    scene_id = await store.create_scene("Park", "green")
    for name in ("Dan", "Eve", "Fay"):
        await store.create_person(name)
        await store.add_person_to_scene(scene_id, name)
    history = await store.get_scene_participation_history(scene_id)
    assert [p.person_name for p in history] == ["Dan", "Eve", "Fay"]


# ── Messages ────────────────────────────────────────────────


async def test_send_and_get_message(store):
    alice = await store.create_person("Alice")
    message_id = await store.send_message(NewMessage(
        sender=RealWorldUser(), recipient=ToPerson(person_id=alice), content="hello",
    ))
    message = await store.get_message_by_uuid(message_id)
    assert message.content == "hello"
    assert isinstance(message.sender, RealWorldUser)
    assert message.recipient.person_id == alice
    assert message.scene_id is None
    assert message.read_at is None


async def test_mark_message_read_once(store):
    alice = await store.create_person("Alice")
    message_id = await store.send_message(NewMessage(
        sender=RealWorldUser(), recipient=ToPerson(person_id=alice), content="hello",
    ))
    await store.mark_message_read(message_id)
    first = (await store.get_message_by_uuid(message_id)).read_at
    await store.mark_message_read(message_id)
    message = await store.get_message_by_uuid(message_id)
    assert message.read_at == first
    assert message.read_at >= message.sent_at


async def test_messages_in_scene_are_broadcasts_oldest_first(store):
    scene_id = await store.create_scene("Bakery", "warm")
    bob = await store.create_person("Bob")
    sender = AiPerson(person_id=bob)
    await store.send_message(NewMessage.to_scene(sender, scene_id, "first"))
    await store.send_message(NewMessage(
        sender=sender, recipient=ToPerson(person_id=bob), scene_id=scene_id, content="copy",
    ))
    await store.send_message(NewMessage.to_scene(sender, scene_id, "second"))

    messages = await store.get_messages_in_scene(scene_id)
    assert [m.content for m in messages] == ["first", "second"]


async def test_direct_messages_exclude_scene_copies(store):
    scene_id = await store.create_scene("Bakery", "warm")
    alice = await store.create_person("Alice")
    await store.send_message(NewMessage(
        sender=RealWorldUser(), recipient=ToPerson(person_id=alice), content="direct",
    ))
    await store.send_message(NewMessage(
        sender=RealWorldUser(), recipient=ToPerson(person_id=alice),
        scene_id=scene_id, content="fan-out copy",
    ))
    messages = await store.get_direct_messages_for(alice)
    assert [m.content for m in messages] == ["direct"]


# ── Memories ────────────────────────────────────────────────


async def test_search_memories_by_distance(store):
    await store.create_person("Alice")
    await store.create_memory("Alice", "flour", _vec(store, 1.0, 0.0))
    await store.create_memory("Alice", "sugar", _vec(store, 0.0, 1.0))
    await store.create_memory("Alice", "dough", _vec(store, 0.9, 0.1))

    results = await store.search_memories(_vec(store, 1.0, 0.0), 2)
    assert [r.content for r in results] == ["flour", "dough"]
    assert results[0].distance == pytest.approx(0.0)
    assert results[0].distance <= results[1].distance


async def test_search_memories_limit_zero(store):
    await store.create_person("Alice")
    await store.create_memory("Alice", "flour", _vec(store, 1.0))
    assert await store.search_memories(_vec(store, 1.0), 0) == []


async def test_search_memories_person_filter(store):
    alice = await store.create_person("Alice")
    await store.create_person("Bob")
    await store.create_memory("Alice", "flour", _vec(store, 1.0))
    await store.create_memory("Bob", "hammer", _vec(store, 1.0))

    results = await store.search_memories(_vec(store, 1.0), 10, person_id=alice)
    assert [r.content for r in results] == ["flour"]


async def test_memory_dimension_mismatch_persists_nothing(store):
    await store.create_person("Alice")
    with pytest.raises(StoreError) as exc:
        await store.create_memory("Alice", "flour", [1.0, 2.0, 3.0])
    assert exc.value.operation == "create_memory"
    assert await store.search_memories(_vec(store, 1.0), 10) == []


async def test_memory_requires_existing_person(store):
    with pytest.raises(NotFound):
        await store.create_memory("Nobody", "flour", _vec(store, 1.0))


# ── Jobs ────────────────────────────────────────────────────


async def test_pop_is_lifo(store):
    first = await store.unshift_job(PingJob())
    second = await store.unshift_job(ProcessMessageJob(message_id=fixed_id(1)))

    popped = await store.pop_next_job()
    assert popped.id == second
    assert popped.started_at is not None
    assert (await store.pop_next_job()).id == first
    assert await store.pop_next_job() is None


async def test_pop_skips_started_and_finished_jobs(store):
    job_id = await store.unshift_job(PingJob())
    await store.pop_next_job()
    await store.mark_job_finished(job_id)
    assert await store.pop_next_job() is None


async def test_mark_job_finished_is_idempotent(store):
    job_id = await store.unshift_job(PingJob())
    await store.pop_next_job()
    await store.mark_job_finished(job_id)
    first = (await store.get_job(job_id)).finished_at
    await store.mark_job_finished(job_id)
    job = await store.get_job(job_id)
    assert job.finished_at == first
    assert job.status == "finished"


async def test_mark_job_failed_records_error(store):
    job_id = await store.unshift_job(PingJob())
    await store.pop_next_job()
    await store.mark_job_failed(job_id, "boom")
    job = await store.get_job(job_id)
    assert job.error == "boom"
    assert job.finished_at is not None
    assert job.status == "failed"


async def test_list_jobs_newest_first(store):
    first = await store.unshift_job(PingJob())
    second = await store.unshift_job(PingJob())
    assert [j.id for j in await store.list_jobs()] == [second, first]
    assert [j.id for j in await store.list_jobs(limit=1)] == [second]


# ── Active clock ────────────────────────────────────────────


async def test_active_ms_round_trip(store):
    assert await store.get_active_ms() == 0
    await store.set_active_ms(1234)
    assert await store.get_active_ms() == 1234
