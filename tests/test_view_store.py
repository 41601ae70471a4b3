import asyncio

import pytest
from pydantic import ValidationError as PydanticValidationError

from records_engine.errors import DuplicateName, InvalidValue, ViewNotFound
from records_engine.schemas import SavedViewPatch
from records_engine.services.builder import QueryBuilder
from records_engine.services.view_store import SavedViewStore

OWNER = "user-1"
OTHER = "user-2"
TENANT = "school-a"


def _grade_ten_active(builder: QueryBuilder):
    return builder.build(
        "students",
        where=[
            {"field": "grade", "operator": "eq", "value": "10"},
            {"field": "status", "operator": "eq", "value": "Active"},
        ],
        order_by=[{"field": "name", "direction": "asc"}],
        limit=20,
    )


def test_create_and_list_round_trip(store: SavedViewStore, builder: QueryBuilder) -> None:
    async def scenario() -> None:
        spec = _grade_ten_active(builder)
        view = await store.create_view(
            "students",
            "Grade 10 Active",
            spec,
            owner_id=OWNER,
            tenant_id=TENANT,
            description="Current tenth graders",
        )
        assert view.query == spec
        assert view.is_shared is False
        assert view.share_token is None

        listed = await store.list_views("students", owner_id=OWNER, tenant_id=TENANT)
        assert [item.id for item in listed] == [view.id]
        assert listed[0].query == spec
        assert listed[0].description == "Current tenth graders"

        assert await store.list_views("teachers", owner_id=OWNER, tenant_id=TENANT) == []
        assert await store.list_views("students", owner_id=OWNER, tenant_id="school-b") == []

        fetched = await store.get_view(view.id, owner_id=OWNER, tenant_id=TENANT)
        assert fetched is not None and fetched.name == "Grade 10 Active"
        assert await store.get_view(view.id, owner_id=OTHER, tenant_id=TENANT) is None

    asyncio.run(scenario())


def test_duplicate_names_are_rejected_per_owner(store: SavedViewStore, builder: QueryBuilder) -> None:
    async def scenario() -> None:
        spec = _grade_ten_active(builder)
        await store.create_view("students", "Honors", spec, owner_id=OWNER, tenant_id=TENANT)
        with pytest.raises(DuplicateName) as exc_info:
            await store.create_view("students", "  Honors ", spec, owner_id=OWNER, tenant_id=TENANT)
        assert exc_info.value.status_code == 409

        other = await store.create_view("students", "Honors", spec, owner_id=OTHER, tenant_id=TENANT)
        assert other.owner_id == OTHER

    asyncio.run(scenario())


def test_blank_name_and_foreign_query_are_rejected(store: SavedViewStore, builder: QueryBuilder) -> None:
    async def scenario() -> None:
        with pytest.raises(InvalidValue):
            await store.create_view("students", "   ", builder.build("students"), owner_id=OWNER, tenant_id=TENANT)
        with pytest.raises(InvalidValue):
            await store.create_view("teachers", "Wrong", builder.build("students"), owner_id=OWNER, tenant_id=TENANT)

    asyncio.run(scenario())


def test_update_applies_only_given_fields(store: SavedViewStore, builder: QueryBuilder) -> None:
    async def scenario() -> None:
        view = await store.create_view(
            "students",
            "Grade 10 Active",
            _grade_ten_active(builder),
            owner_id=OWNER,
            tenant_id=TENANT,
            description="keep me",
        )
        narrowed = builder.build("students", where=[{"field": "grade", "operator": "eq", "value": "11"}], limit=5)

        updated = await store.update_view(
            view.id,
            SavedViewPatch(name="Grade 11", query=narrowed),
            owner_id=OWNER,
            tenant_id=TENANT,
        )
        assert updated.name == "Grade 11"
        assert updated.query == narrowed
        assert updated.description == "keep me"

        with pytest.raises(ViewNotFound):
            await store.update_view(view.id, SavedViewPatch(name="Stolen"), owner_id=OTHER, tenant_id=TENANT)

    asyncio.run(scenario())


def test_patch_cannot_change_ownership() -> None:
    with pytest.raises(PydanticValidationError):
        SavedViewPatch.model_validate({"owner_id": "intruder"})


def test_update_rename_clash(store: SavedViewStore, builder: QueryBuilder) -> None:
    async def scenario() -> None:
        spec = builder.build("students")
        await store.create_view("students", "A", spec, owner_id=OWNER, tenant_id=TENANT)
        second = await store.create_view("students", "B", spec, owner_id=OWNER, tenant_id=TENANT)
        with pytest.raises(DuplicateName):
            await store.update_view(second.id, SavedViewPatch(name="A"), owner_id=OWNER, tenant_id=TENANT)

    asyncio.run(scenario())


def test_delete_is_idempotent(store: SavedViewStore, builder: QueryBuilder) -> None:
    async def scenario() -> None:
        view = await store.create_view("students", "Temp", builder.build("students"), owner_id=OWNER, tenant_id=TENANT)
        await store.delete_view(view.id, owner_id=OWNER, tenant_id=TENANT)
        await store.delete_view(view.id, owner_id=OWNER, tenant_id=TENANT)
        await store.delete_view("missing", owner_id=OWNER, tenant_id=TENANT)
        assert await store.list_views("students", owner_id=OWNER, tenant_id=TENANT) == []

    asyncio.run(scenario())


def test_clone_picks_free_copy_name(store: SavedViewStore, builder: QueryBuilder) -> None:
    async def scenario() -> None:
        view = await store.create_view("students", "Roster", _grade_ten_active(builder), owner_id=OWNER, tenant_id=TENANT)

        first = await store.clone_view(view.id, owner_id=OWNER, tenant_id=TENANT)
        second = await store.clone_view(view.id, owner_id=OWNER, tenant_id=TENANT)
        named = await store.clone_view(view.id, owner_id=OWNER, tenant_id=TENANT, new_name="Roster B")

        assert first.name == "Roster (copy)"
        assert second.name == "Roster (copy) 2"
        assert named.name == "Roster B"
        assert first.query == view.query
        assert first.id != view.id

        with pytest.raises(ViewNotFound):
            await store.clone_view(view.id, owner_id=OTHER, tenant_id=TENANT)

    asyncio.run(scenario())


def test_cascade_deletes(store: SavedViewStore, builder: QueryBuilder) -> None:
    async def scenario() -> None:
        spec = builder.build("students")
        await store.create_view("students", "Mine", spec, owner_id=OWNER, tenant_id=TENANT)
        await store.create_view("students", "Theirs", spec, owner_id=OTHER, tenant_id=TENANT)
        await store.create_view("students", "Elsewhere", spec, owner_id=OWNER, tenant_id="school-b")

        assert await store.delete_views_for_owner(OWNER, tenant_id=TENANT) == 1
        assert await store.list_views("students", owner_id=OTHER, tenant_id=TENANT) != []
        assert await store.delete_views_for_tenant(TENANT) == 1
        assert await store.list_views("students", owner_id=OTHER, tenant_id=TENANT) == []
        assert len(await store.list_views("students", owner_id=OWNER, tenant_id="school-b")) == 1

    asyncio.run(scenario())
