"""
Integration tests for metadata listings.

Tests cover:
- Filtering on indexed props
- Sorting and cursor pagination
- Argument validation
"""

import pytest

from dbaas.chronos_server.errors import NotFoundError, ValidationError

ACTOR = "user:test"

PEOPLE = [
    {"email": "ann@x.io", "status": "active", "age": 34, "tags": ["admin"]},
    {"email": "bob@x.io", "status": "active", "age": 27},
    {"email": "cat@x.io", "status": "banned", "age": 41, "tags": ["spam"]},
    {"email": "dan@x.io", "status": "active", "age": 27, "tags": ["admin", "beta"]},
    {"email": "eve@x.io", "status": "pending"},
]


class TestListByMeta:
    """Tests for CollectionOps.list_by_meta."""

    @pytest.fixture
    async def populated(self, chronos):
        users = chronos.with_context("users", db_name="runtime_generic")
        ids = {}
        for person in PEOPLE:
            created = await users.create(person, actor=ACTOR)
            ids[person["email"]] = created.id
        return users, ids

    @staticmethod
    def emails(result):
        return [view.item["email"] for view in result.items]

    @pytest.mark.asyncio
    async def test_equality_filter(self, populated):
        users, _ = populated
        result = await users.list_by_meta({"status": "active"}, sort={"email": 1})
        assert self.emails(result) == ["ann@x.io", "bob@x.io", "dan@x.io"]
        assert result.page_token is None

    @pytest.mark.asyncio
    async def test_operators(self, populated):
        users, _ = populated
        assert self.emails(await users.list_by_meta({"age": {"$gte": 30}}, sort={"age": 1})) == [
            "ann@x.io",
            "cat@x.io",
        ]
        assert self.emails(await users.list_by_meta({"tags": "admin"}, sort={"email": 1})) == [
            "ann@x.io",
            "dan@x.io",
        ]
        assert self.emails(await users.list_by_meta({"age": {"$exists": False}})) == ["eve@x.io"]

    @pytest.mark.asyncio
    async def test_items_carry_meta(self, populated):
        users, ids = populated
        result = await users.list_by_meta({"email": "cat@x.io"})

        assert len(result.items) == 1
        view = result.items[0]
        assert view.id == ids["cat@x.io"]
        assert view.meta.ov == 0
        assert view.meta.meta_indexed["tags"] == ["spam"]

    @pytest.mark.asyncio
    async def test_pages_cover_everything_once(self, populated):
        users, _ = populated
        seen = []
        token = None
        pages = 0
        while True:
            result = await users.list_by_meta(limit=2, sort={"age": -1}, page_token=token)
            seen.extend(self.emails(result))
            pages += 1
            token = result.page_token
            if token is None:
                break

        assert pages == 3
        assert seen[:2] == ["cat@x.io", "ann@x.io"]
        # equal ages tie-break on the random item id
        assert sorted(seen[2:4]) == ["bob@x.io", "dan@x.io"]
        assert seen[4] == "eve@x.io"

    @pytest.mark.asyncio
    async def test_pagination_stable_under_inserts(self, populated):
        users, _ = populated
        first = await users.list_by_meta(limit=2, sort={"email": 1})
        await users.create({"email": "aaa@x.io"}, actor=ACTOR)

        second = await users.list_by_meta(limit=10, sort={"email": 1}, page_token=first.page_token)

        assert self.emails(first) == ["ann@x.io", "bob@x.io"]
        assert self.emails(second) == ["cat@x.io", "dan@x.io", "eve@x.io"]

    @pytest.mark.asyncio
    async def test_after_id(self, populated):
        users, ids = populated
        result = await users.list_by_meta(sort={"email": 1}, after_id=ids["cat@x.io"])
        assert self.emails(result) == ["dan@x.io", "eve@x.io"]

    @pytest.mark.asyncio
    async def test_unknown_after_id(self, populated):
        users, _ = populated
        with pytest.raises(NotFoundError):
            await users.list_by_meta(after_id="missing")

    @pytest.mark.asyncio
    async def test_listing_reflects_updates(self, populated):
        users, ids = populated
        await users.enrich(ids["eve@x.io"], {"status": "active"}, actor=ACTOR)

        result = await users.list_by_meta({"status": "active"}, sort={"email": 1})

        assert self.emails(result) == ["ann@x.io", "bob@x.io", "dan@x.io", "eve@x.io"]
        assert result.items[-1].meta.ov == 1

    @pytest.mark.asyncio
    async def test_deleted_items(self, populated):
        users, ids = populated
        await users.delete(ids["bob@x.io"], expected_ov=0, actor=ACTOR)

        live = await users.list_by_meta({"status": "active"}, sort={"email": 1})
        everything = await users.list_by_meta({"status": "active"}, sort={"email": 1}, include_deleted=True)

        assert self.emails(live) == ["ann@x.io", "dan@x.io"]
        assert "bob@x.io" in self.emails(everything)
        assert [v.deleted for v in everything.items] == [False, True, False]

    @pytest.mark.asyncio
    async def test_collections_are_separate(self, chronos, populated):
        items = chronos.with_context("items", db_name="runtime_generic")
        await items.create({"name": "widget", "value": 3}, actor=ACTOR)
        assert len((await items.list_by_meta()).items) == 1


class TestListValidation:
    """Argument validation for list_by_meta."""

    @pytest.fixture
    def users(self, chronos):
        return chronos.with_context("users", db_name="runtime_generic")

    @pytest.mark.asyncio
    async def test_non_indexed_filter(self, users):
        with pytest.raises(ValidationError) as exc_info:
            await users.list_by_meta({"profile.name": "Ann"})
        assert exc_info.value.field_name == "profile.name"

    @pytest.mark.asyncio
    async def test_non_indexed_sort(self, users):
        with pytest.raises(ValidationError):
            await users.list_by_meta(sort={"created": 1})

    @pytest.mark.parametrize("limit", [0, 1001, -5, True, "10"])
    @pytest.mark.asyncio
    async def test_limit_bounds(self, users, limit):
        with pytest.raises(ValidationError):
            await users.list_by_meta(limit=limit)

    @pytest.mark.asyncio
    async def test_limit_edges_accepted(self, users):
        assert (await users.list_by_meta(limit=1)).items == []
        assert (await users.list_by_meta(limit=1000)).items == []

    @pytest.mark.asyncio
    async def test_after_id_and_token_exclusive(self, users):
        with pytest.raises(ValidationError):
            await users.list_by_meta(after_id="a", page_token="b")

    @pytest.mark.asyncio
    async def test_token_from_other_sort(self, users):
        for n in range(3):
            await users.create({"email": f"{n}@x.io", "age": n}, actor=ACTOR)
        page = await users.list_by_meta(limit=1, sort={"age": 1})

        with pytest.raises(ValidationError):
            await users.list_by_meta(limit=1, sort={"age": -1}, page_token=page.page_token)
