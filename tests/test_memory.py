"""Tests for the memory engine."""

import pytest

from aiaday.errors import DecodeError, NotFound, StoreError
from aiaday.memory import (
    DirectContext,
    MemoryEngine,
    SceneByIdContext,
    SceneContext,
    parse_memory_list,
)
from aiaday.models import AiPerson, RealWorldUser


@pytest.fixture
def engine(store, llm) -> MemoryEngine:
    return MemoryEngine(store, llm)


# ── create_memory / search_memories ─────────────────────────


async def test_create_memory_embeds_content(store, llm, engine):
    await store.create_person("Alice")
    memory_id = await engine.create_memory("Alice", "Bob once gave me flour")
    assert llm.embed_calls == ["Bob once gave me flour"]

    results = await engine.search_memories("Bob once gave me flour", 5)
    assert [r.memory_id for r in results] == [memory_id]
    assert results[0].distance == pytest.approx(0.0)


async def test_embedding_dimension_mismatch_stores_nothing(store, engine, llm):
    await store.create_person("Alice")
    llm.dimension = store.dimension + 1
    with pytest.raises(StoreError):
        await engine.create_memory("Alice", "flour")
    llm.dimension = store.dimension
    assert await engine.search_memories("flour", 10) == []


async def test_search_orders_by_distance(store, engine):
    await store.create_person("Alice")
    await engine.create_memory("Alice", "the oven is hot")
    await engine.create_memory("Alice", "Bob likes rye bread")
    await engine.create_memory("Alice", "rye bread rye bread")

    results = await engine.search_memories("rye bread", 3)
    distances = [r.distance for r in results]
    assert distances == sorted(distances)
    assert results[0].content == "rye bread rye bread"


async def test_search_limit_zero_skips_embedding(engine, llm):
    assert await engine.search_memories("anything", 0) == []
    assert llm.embed_calls == []


async def test_search_scoped_to_person(store, engine):
    alice = await store.create_person("Alice")
    await store.create_person("Bob")
    await engine.create_memory("Alice", "flour on the counter")
    await engine.create_memory("Bob", "flour on the counter")

    results = await engine.search_memories("flour", 10, person_id=alice)
    assert len(results) == 1


# ── build_query_prompt ──────────────────────────────────────


async def test_query_prompt_for_scene(engine):
    prompt = await engine.build_query_prompt(
        "Alice",
        SceneContext(scene_name="Bakery", scene_description="a warm bakery", people=["Bob"]),
        ["At 2025-01-01 00:00:01, Bob joined scene Bakery"],
        "relaxed",
        "Bob said good morning",
    )
    assert "Alice is in a scene called 'Bakery'" in prompt
    assert "a warm bakery" in prompt
    assert "Alice's state of mind is relaxed" in prompt
    assert "Bob said good morning" in prompt
    assert "Other people present:\n- Bob" in prompt
    assert "- At 2025-01-01 00:00:01, Bob joined scene Bakery" in prompt


async def test_query_prompt_for_direct_message(store, engine):
    bob = await store.create_person("Bob")
    from_bob = await engine.build_query_prompt(
        "Alice", DirectContext(sender=AiPerson(person_id=bob)), [], "calm", "a note",
    )
    from_user = await engine.build_query_prompt(
        "Alice", DirectContext(sender=RealWorldUser()), [], "calm", "a note",
    )
    assert "Alice has received a direct message from Bob." in from_bob
    assert "Alice has received a direct message from Chadtech." in from_user
    assert "no one else is around" in from_bob


async def test_query_prompt_scene_by_id_loads_scene(store, engine):
    bakery = await store.create_scene("Bakery", "a warm bakery")
    for name in ("Alice", "Bob"):
        await store.create_person(name)
        await store.add_person_to_scene(bakery, name)

    prompt = await engine.build_query_prompt(
        "Alice", SceneByIdContext(scene_id=bakery), [], "relaxed", "quiet morning",
    )
    assert "a scene called 'Bakery'" in prompt
    assert "- Bob" in prompt
    assert "- Alice" not in prompt


async def test_query_prompt_unknown_scene(engine):
    from aiaday.ids import fixed_id

    with pytest.raises(NotFound):
        await engine.build_query_prompt(
            "Alice", SceneByIdContext(scene_id=fixed_id(9)), [], "calm", "x",
        )


async def test_query_prompt_is_deterministic_and_input_sensitive(engine):
    ctx = SceneContext(scene_name="Bakery", scene_description="warm", people=[])
    args = ("Alice", ctx, ["e1"], "relaxed", "hello")
    assert await engine.build_query_prompt(*args) == await engine.build_query_prompt(*args)

    variants = [
        ("Carol", ctx, ["e1"], "relaxed", "hello"),
        ("Alice", ctx.model_copy(update={"scene_name": "Mill"}), ["e1"], "relaxed", "hello"),
        ("Alice", ctx, ["e2"], "relaxed", "hello"),
        ("Alice", ctx, ["e1"], "grumpy", "hello"),
        ("Alice", ctx, ["e1"], "relaxed", "goodbye"),
    ]
    base = await engine.build_query_prompt(*args)
    for variant in variants:
        assert await engine.build_query_prompt(*variant) != base


# ── maybe_create_memories_from_description ──────────────────


async def test_maybe_create_memories_stores_each_answer(store, llm, engine):
    alice = await store.create_person("Alice")
    llm.queue_memories("Bob owes me a bag of flour", "Bob is an early riser")

    created = await engine.maybe_create_memories_from_description(
        alice, "Bob asked to borrow flour.\n\nResponse:\nSpoke in scene: Sure!"
    )

    assert len(created) == 2
    results = await store.search_memories(await llm.embed("Bob flour"), 10)
    assert {r.content for r in results} == {"Bob owes me a bag of flour", "Bob is an early riser"}


async def test_maybe_create_memories_prompt_mentions_person_and_description(store, llm, engine):
    alice = await store.create_person("Alice")
    await engine.create_memory("Alice", "Bob's bread is dry")

    await engine.maybe_create_memories_from_description(alice, "Bob said he's baking today")

    messages, tools = llm.chat_calls[-1]
    assert tools is None
    assert messages[0].role == "system"
    prompt = messages[1].content
    assert "Alice just lived through" in prompt
    assert "Bob said he's baking today" in prompt
    assert "- Bob's bread is dry" in prompt


async def test_maybe_create_memories_nothing_to_remember(store, llm, engine):
    alice = await store.create_person("Alice")
    assert await engine.maybe_create_memories_from_description(alice, "small talk") == []


async def test_maybe_create_memories_unknown_person(engine):
    from aiaday.ids import fixed_id

    with pytest.raises(NotFound):
        await engine.maybe_create_memories_from_description(fixed_id(1), "anything")


# ── parse_memory_list ───────────────────────────────────────


def test_parse_memory_list_plain():
    assert parse_memory_list('["a", "b"]') == ["a", "b"]


def test_parse_memory_list_fenced():
    assert parse_memory_list('```json\n["a"]\n```') == ["a"]


def test_parse_memory_list_drops_blank_entries():
    assert parse_memory_list('["a", "  ", ""]') == ["a"]


def test_parse_memory_list_invalid_json():
    with pytest.raises(DecodeError) as exc:
        parse_memory_list("I think Alice should remember the flour")
    assert exc.value.kind == "invalid_json"


def test_parse_memory_list_not_array():
    with pytest.raises(DecodeError) as exc:
        parse_memory_list('{"memories": []}')
    assert exc.value.kind == "not_array"


def test_parse_memory_list_non_string_entry():
    with pytest.raises(DecodeError) as exc:
        parse_memory_list('["a", 3]')
    assert exc.value.kind == "not_string"
