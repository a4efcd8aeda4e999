from __future__ import annotations

import asyncio

import pytest

from favorites_backend.errors import AlreadyExists, InvalidArgument, NotFound
from favorites_backend.schemas_collections import CollectionCreate, CollectionPatch, ReorderEntry
from favorites_backend.schemas_saved_items import CatalogPayload, SavedItemCreate
from favorites_backend.services.collections_service import CollectionStore, plan_reorder
from favorites_backend.services.saved_items_service import SavedItemStore


async def _save(store: SavedItemStore, owner_id: str, *item_ids: str) -> None:
    for item_id in item_ids:
        await store.add(
            owner_id,
            SavedItemCreate(
                item_type="APOD",
                item_id=item_id,
                data=CatalogPayload(title=item_id.replace("-", " ").title()),
            ),
        )


async def _positions(store: CollectionStore, collection_id: str) -> list[tuple[str, int]]:
    page = await store.list_items(collection_id, limit=100)
    return [(i.id, i.position) for i in page.items]


@pytest.mark.anyio
async def test_add_and_remove_keep_positions_dense(
    saved_items: SavedItemStore, collections: CollectionStore
) -> None:
    await saved_items.add(
        "u1",
        SavedItemCreate(
            item_type="APOD", item_id="apod-2024-01-01", data=CatalogPayload(title="Galaxy")
        ),
    )
    listed = await saved_items.list("u1")
    assert listed.items[0].collection_count == 0

    nebulae = await collections.create("u1", CollectionCreate(name="Nebulae"))
    first = await collections.add_item("u1", nebulae.id, "apod-2024-01-01")
    assert first.position == 0

    await _save(saved_items, "u1", "apod-2024-01-02")
    second = await collections.add_item("u1", nebulae.id, "apod-2024-01-02")
    assert second.position == 1

    assert await collections.remove_item("u1", nebulae.id, "apod-2024-01-01") is True
    assert await _positions(collections, nebulae.id) == [("apod-2024-01-02", 0)]
    assert await collections.remove_item("u1", nebulae.id, "apod-2024-01-01") is False


@pytest.mark.anyio
async def test_positions_stay_dense_over_mixed_sequences(
    saved_items: SavedItemStore, collections: CollectionStore
) -> None:
    ids = [f"item-{i}" for i in range(6)]
    await _save(saved_items, "u1", *ids)
    c = await collections.create("u1", CollectionCreate(name="Mixed"))

    for item_id in ids[:4]:
        await collections.add_item("u1", c.id, item_id)
    await collections.remove_item("u1", c.id, "item-1")
    await collections.add_item("u1", c.id, "item-4", position=0)
    await collections.remove_item("u1", c.id, "item-3")
    await collections.add_item("u1", c.id, "item-5", position=99)

    positions = await _positions(collections, c.id)
    assert [p for _, p in positions] == list(range(len(positions)))
    assert [i for i, _ in positions] == ["item-4", "item-0", "item-2", "item-5"]


@pytest.mark.anyio
async def test_explicit_position_shifts_later_members(
    saved_items: SavedItemStore, collections: CollectionStore
) -> None:
    await _save(saved_items, "u1", "a", "b", "c", "d")
    c = await collections.create("u1", CollectionCreate(name="Shift"))
    for item_id in ("a", "b", "c"):
        await collections.add_item("u1", c.id, item_id)

    added = await collections.add_item("u1", c.id, "d", position=1)
    assert added.position == 1
    assert await _positions(collections, c.id) == [("a", 0), ("d", 1), ("b", 2), ("c", 3)]

    with pytest.raises(InvalidArgument):
        await collections.add_item("u1", c.id, "a", position=-1)


@pytest.mark.anyio
async def test_concurrent_add_item_gets_distinct_positions(
    saved_items: SavedItemStore, collections: CollectionStore
) -> None:
    ids = [f"apod-{i}" for i in range(8)]
    await _save(saved_items, "u1", *ids)
    c = await collections.create("u1", CollectionCreate(name="Race"))

    results = await asyncio.gather(*(collections.add_item("u1", c.id, i) for i in ids))

    assert sorted(m.position for m in results) == list(range(len(ids)))
    assert [p for _, p in await _positions(collections, c.id)] == list(range(len(ids)))


@pytest.mark.anyio
async def test_duplicate_membership_is_rejected_without_side_effects(
    saved_items: SavedItemStore, collections: CollectionStore
) -> None:
    await _save(saved_items, "u1", "a")
    c = await collections.create("u1", CollectionCreate(name="Once"))
    await collections.add_item("u1", c.id, "a")

    with pytest.raises(AlreadyExists):
        await collections.add_item("u1", c.id, "a")

    page = await collections.list_items(c.id)
    assert page.pagination.total == 1
    assert page.collection.item_count == 1


@pytest.mark.anyio
async def test_add_item_requires_owned_collection_and_active_item(
    saved_items: SavedItemStore, collections: CollectionStore
) -> None:
    await _save(saved_items, "u1", "a", "gone")
    await _save(saved_items, "u2", "theirs")
    await saved_items.remove("u1", "gone")
    c = await collections.create("u1", CollectionCreate(name="Mine"))

    with pytest.raises(NotFound):
        await collections.add_item("u2", c.id, "theirs")
    with pytest.raises(NotFound):
        await collections.add_item("u1", "no-such-collection", "a")
    with pytest.raises(NotFound):
        await collections.add_item("u1", c.id, "gone")
    with pytest.raises(NotFound):
        await collections.add_item("u1", c.id, "theirs")


@pytest.mark.anyio
async def test_collection_names_are_unique_per_owner(collections: CollectionStore) -> None:
    first = await collections.create(
        "u1", CollectionCreate(name="  Nebulae ", description="  ", is_public=True)
    )
    assert first.name == "Nebulae"
    assert first.description is None
    assert first.is_owner is True
    assert first.item_count == 0

    with pytest.raises(AlreadyExists):
        await collections.create("u1", CollectionCreate(name="Nebulae"))

    other = await collections.create("u2", CollectionCreate(name="Nebulae"))
    assert other.user_id == "u2"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "payload",
    [
        CollectionCreate(name="   "),
        CollectionCreate(name="x" * 101),
        CollectionCreate(name="ok", description="d" * 501),
    ],
)
async def test_create_validates_bounds(
    collections: CollectionStore, payload: CollectionCreate
) -> None:
    with pytest.raises(InvalidArgument):
        await collections.create("u1", payload)


@pytest.mark.anyio
async def test_update_checks_ownership_and_rename_collisions(
    collections: CollectionStore,
) -> None:
    a = await collections.create("u1", CollectionCreate(name="A"))
    await collections.create("u1", CollectionCreate(name="B"))

    with pytest.raises(InvalidArgument):
        await collections.update("u1", a.id, CollectionPatch())
    with pytest.raises(NotFound):
        await collections.update("u2", a.id, CollectionPatch(name="Stolen"))
    with pytest.raises(AlreadyExists):
        await collections.update("u1", a.id, CollectionPatch(name="B"))

    same = await collections.update("u1", a.id, CollectionPatch(name="A", is_public=True))
    assert same.name == "A"
    assert same.is_public is True

    renamed = await collections.update("u1", a.id, CollectionPatch(description="Deep sky"))
    assert renamed.description == "Deep sky"
    assert renamed.is_public is True

    fetched = await collections.get("u1", a.id)
    assert fetched.description == "Deep sky"


@pytest.mark.anyio
async def test_delete_removes_memberships(
    saved_items: SavedItemStore, collections: CollectionStore
) -> None:
    await _save(saved_items, "u1", "a")
    c = await collections.create("u1", CollectionCreate(name="Temp"))
    await collections.add_item("u1", c.id, "a")

    assert await collections.delete("u2", c.id) is False
    assert await collections.delete("u1", c.id) is True
    assert await collections.delete("u1", c.id) is False

    with pytest.raises(NotFound):
        await collections.list_items(c.id)
    item = await saved_items.get("u1", "a")
    assert item.collection_count == 0


@pytest.mark.anyio
async def test_reorder_full_permutation(
    saved_items: SavedItemStore, collections: CollectionStore
) -> None:
    await _save(saved_items, "u1", "a", "b", "c")
    c = await collections.create("u1", CollectionCreate(name="Order"))
    for item_id in ("a", "b", "c"):
        await collections.add_item("u1", c.id, item_id)

    out = await collections.reorder(
        "u1",
        c.id,
        [
            ReorderEntry(item_id="c", position=0),
            ReorderEntry(item_id="a", position=1),
            ReorderEntry(item_id="b", position=2),
        ],
    )
    assert [(m.item_id, m.position) for m in out] == [("c", 0), ("a", 1), ("b", 2)]
    assert await _positions(collections, c.id) == [("c", 0), ("a", 1), ("b", 2)]


@pytest.mark.anyio
async def test_reorder_partial_ordering_is_compacted(
    saved_items: SavedItemStore, collections: CollectionStore
) -> None:
    await _save(saved_items, "u1", "a", "b", "c")
    c = await collections.create("u1", CollectionCreate(name="Partial"))
    for item_id in ("a", "b", "c"):
        await collections.add_item("u1", c.id, item_id)

    out = await collections.reorder("u1", c.id, [ReorderEntry(item_id="a", position=7)])
    assert [(m.item_id, m.position) for m in out] == [("b", 0), ("c", 1), ("a", 2)]


@pytest.mark.anyio
async def test_reorder_single_move_lands_at_requested_index(
    saved_items: SavedItemStore, collections: CollectionStore
) -> None:
    await _save(saved_items, "u1", "a", "b", "c", "d")
    c = await collections.create("u1", CollectionCreate(name="Moves"))
    for item_id in ("a", "b", "c", "d"):
        await collections.add_item("u1", c.id, item_id)

    out = await collections.reorder("u1", c.id, [ReorderEntry(item_id="c", position=0)])
    assert [(m.item_id, m.position) for m in out] == [("c", 0), ("a", 1), ("b", 2), ("d", 3)]

    out = await collections.reorder("u1", c.id, [ReorderEntry(item_id="c", position=2)])
    assert [(m.item_id, m.position) for m in out] == [("a", 0), ("b", 1), ("c", 2), ("d", 3)]
    assert await _positions(collections, c.id) == [("a", 0), ("b", 1), ("c", 2), ("d", 3)]


@pytest.mark.parametrize(
    ("current", "moves", "expected"),
    [
        (["a", "b", "c"], [("c", 0)], ["c", "a", "b"]),
        (["a", "b", "c", "d"], [("a", 1)], ["b", "a", "c", "d"]),
        (["a", "b", "c"], [("a", 2)], ["b", "c", "a"]),
        (["a", "b", "c", "d"], [("d", 0), ("a", 3)], ["d", "b", "c", "a"]),
        (["a", "b", "c"], [("b", 9), ("a", 5)], ["c", "a", "b"]),
    ],
)
def test_plan_reorder_places_each_named_item_at_its_index(
    current: list[str], moves: list[tuple[str, int]], expected: list[str]
) -> None:
    entries = [ReorderEntry(item_id=i, position=p) for i, p in moves]
    assert plan_reorder(current, entries) == expected


@pytest.mark.anyio
@pytest.mark.parametrize(
    "entries",
    [
        [],
        [ReorderEntry(item_id=" ", position=0)],
        [ReorderEntry(item_id="a", position=-1)],
        [ReorderEntry(item_id="a", position=0), ReorderEntry(item_id="a", position=1)],
        [ReorderEntry(item_id="a", position=0), ReorderEntry(item_id="b", position=0)],
        [ReorderEntry(item_id="not-a-member", position=0)],
    ],
)
async def test_reorder_rejects_malformed_orderings(
    saved_items: SavedItemStore,
    collections: CollectionStore,
    entries: list[ReorderEntry],
) -> None:
    await _save(saved_items, "u1", "a", "b")
    c = await collections.create("u1", CollectionCreate(name="Strict"))
    await collections.add_item("u1", c.id, "a")
    await collections.add_item("u1", c.id, "b")

    with pytest.raises(InvalidArgument):
        await collections.reorder("u1", c.id, entries)
    assert await _positions(collections, c.id) == [("a", 0), ("b", 1)]


@pytest.mark.anyio
async def test_reorder_requires_ownership(
    saved_items: SavedItemStore, collections: CollectionStore
) -> None:
    await _save(saved_items, "u1", "a")
    c = await collections.create("u1", CollectionCreate(name="Mine"))
    await collections.add_item("u1", c.id, "a")

    with pytest.raises(NotFound):
        await collections.reorder("u2", c.id, [ReorderEntry(item_id="a", position=0)])


@pytest.mark.anyio
async def test_add_items_is_all_or_nothing(
    saved_items: SavedItemStore, collections: CollectionStore
) -> None:
    await _save(saved_items, "u1", "a", "b", "c")
    c = await collections.create("u1", CollectionCreate(name="Batch"))
    await collections.add_item("u1", c.id, "a")

    with pytest.raises(NotFound):
        await collections.add_items("u1", c.id, ["b", "missing"])
    with pytest.raises(AlreadyExists):
        await collections.add_items("u1", c.id, ["b", "a"])
    assert await _positions(collections, c.id) == [("a", 0)]

    added = await collections.add_items("u1", c.id, ["c", "b", "c"], notes="batch")
    assert [(m.item_id, m.position) for m in added] == [("c", 1), ("b", 2)]
    page = await collections.list_items(c.id)
    assert [i.collection_notes for i in page.items] == [None, "batch", "batch"]

    with pytest.raises(InvalidArgument):
        await collections.add_items("u1", c.id, [])
    with pytest.raises(InvalidArgument):
        await collections.add_items("u1", c.id, [f"x-{i}" for i in range(51)])


@pytest.mark.anyio
async def test_list_items_visibility_sorting_and_archived_items(
    saved_items: SavedItemStore, collections: CollectionStore
) -> None:
    await _save(saved_items, "u1", "zeta", "alpha", "mid")
    private = await collections.create("u1", CollectionCreate(name="Private"))
    public = await collections.create("u1", CollectionCreate(name="Public", is_public=True))
    for item_id in ("zeta", "alpha", "mid"):
        await collections.add_item("u1", private.id, item_id)
        await collections.add_item("u1", public.id, item_id)

    with pytest.raises(NotFound):
        await collections.list_items(private.id, viewer_id="u2")
    seen = await collections.list_items(public.id, viewer_id="u2")
    assert seen.collection.is_owner is False
    assert [i.id for i in seen.items] == ["zeta", "alpha", "mid"]

    by_title = await collections.list_items(private.id, viewer_id="u1", sort_by="title")
    assert by_title.collection.is_owner is True
    assert [i.id for i in by_title.items] == ["alpha", "mid", "zeta"]

    by_saved = await collections.list_items(private.id, sort_by="saved_at")
    assert [i.id for i in by_saved.items] == ["mid", "alpha", "zeta"]

    await saved_items.remove("u1", "alpha")
    page = await collections.list_items(private.id)
    assert [i.id for i in page.items] == ["zeta", "mid"]
    assert page.collection.item_count == 2
    assert page.pagination.total == 2

    with pytest.raises(InvalidArgument):
        await collections.list_items(private.id, sort_by="random")
    with pytest.raises(NotFound):
        await collections.list_items("no-such-collection")


@pytest.mark.anyio
async def test_list_includes_public_collections_of_others(
    saved_items: SavedItemStore, collections: CollectionStore
) -> None:
    await _save(saved_items, "u2", "a")
    mine = await collections.create("u1", CollectionCreate(name="Mine"))
    theirs = await collections.create("u2", CollectionCreate(name="Shared", is_public=True))
    await collections.create("u2", CollectionCreate(name="Hidden"))
    await collections.add_item("u2", theirs.id, "a")

    own = await collections.list("u1")
    assert [c.id for c in own.collections] == [mine.id]

    wider = await collections.list("u1", include_public=True)
    by_id = {c.id: c for c in wider.collections}
    assert set(by_id) == {mine.id, theirs.id}
    assert by_id[mine.id].is_owner is True
    assert by_id[theirs.id].is_owner is False
    assert by_id[theirs.id].item_count == 1

    assert (await collections.get("u1", theirs.id)).name == "Shared"
    hidden = (await collections.list("u2")).collections
    hidden_id = next(c.id for c in hidden if c.name == "Hidden")
    with pytest.raises(NotFound):
        await collections.get("u1", hidden_id)


@pytest.mark.anyio
async def test_stats(saved_items: SavedItemStore, collections: CollectionStore) -> None:
    await _save(saved_items, "u1", "a", "b", "c")
    big = await collections.create("u1", CollectionCreate(name="Big", is_public=True))
    small = await collections.create("u1", CollectionCreate(name="Small"))
    await collections.create("u1", CollectionCreate(name="Empty"))
    await collections.add_items("u1", big.id, ["a", "b", "c"])
    await collections.add_item("u1", small.id, "a")

    stats = await collections.stats("u1")
    assert stats.total_collections == 3
    assert stats.public_collections == 1
    assert stats.private_collections == 2
    assert stats.total_items_in_collections == 4
    assert stats.avg_items_per_collection == pytest.approx(1.33)
    assert stats.largest_collection_size == 3

    empty = await collections.stats("nobody")
    assert empty.total_collections == 0
    assert empty.avg_items_per_collection == 0


@pytest.mark.anyio
async def test_list_public_with_and_without_search(collections: CollectionStore) -> None:
    await collections.create(
        "u1",
        CollectionCreate(name="Spiral galaxies", description="Arms and bars", is_public=True),
    )
    await collections.create(
        "u2",
        CollectionCreate(name="Misc", description="Includes a galaxy or two", is_public=True),
    )
    await collections.create("u3", CollectionCreate(name="Secret galaxy", is_public=False))
    await collections.create(
        "u4", CollectionCreate(name="Mars dust", description="Red planet", is_public=True)
    )

    everything = await collections.list_public()
    assert everything.pagination.total == 3
    assert all(c.is_owner is False for c in everything.collections)

    found = await collections.list_public(search="galaxy")
    assert [c.name for c in found.collections] == ["Misc"]
    assert found.collections[0].relevance_score is not None

    spiral = await collections.list_public(search="spiral arms")
    assert [c.name for c in spiral.collections] == ["Spiral galaxies"]

    dust = await collections.list_public(search="dust")
    assert [c.name for c in dust.collections] == ["Mars dust"]

    with pytest.raises(InvalidArgument):
        await collections.list_public(search="***")
