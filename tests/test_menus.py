"""Menu service: hierarchy rules and cache invalidation."""

import pytest

from tokenfence.service.cache import CacheAside
from tokenfence.service.errors import ConflictError, NotFoundError, ValidationError
from tokenfence.service.menus import MenuService, build_tree
from tokenfence.storage.memory import MemoryStore
from tokenfence.storage.models import Menu
from tokenfence.storage.ttl_store import MemoryTTLStore


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def service(store):
    return MenuService(store, CacheAside(MemoryTTLStore()))


class TestHierarchy:
    async def test_child_requires_existing_parent(self, service):
        with pytest.raises(ValidationError):
            await service.create("Orphan", "/orphan", parent_id="missing")

    async def test_menu_cannot_be_its_own_parent(self, service):
        menu = await service.create("Root", "/root")
        with pytest.raises(ValidationError):
            await service.update(menu.id, {"parent_id": menu.id})

    async def test_circular_parent_rejected(self, service):
        a = await service.create("A", "/a")
        b = await service.create("B", "/b", parent_id=a.id)
        c = await service.create("C", "/c", parent_id=b.id)

        with pytest.raises(ValidationError):
            await service.update(a.id, {"parent_id": c.id})

    async def test_reparent_to_sibling_is_allowed(self, service):
        a = await service.create("A", "/a")
        b = await service.create("B", "/b")
        moved = await service.update(b.id, {"parent_id": a.id})
        assert moved.parent_id == a.id

    async def test_hard_delete_with_children_conflicts(self, service):
        parent = await service.create("Parent", "/parent")
        child = await service.create("Child", "/child", parent_id=parent.id)

        with pytest.raises(ConflictError):
            await service.hard_delete(parent.id)

        await service.hard_delete(child.id)
        await service.hard_delete(parent.id)
        with pytest.raises(NotFoundError):
            await service.get_menu(parent.id)

    async def test_duplicate_route_conflicts(self, service):
        await service.create("Home", "/home")
        with pytest.raises(ConflictError):
            await service.create("Home again", "/home")

    async def test_children_lists_direct_descendants(self, service):
        parent = await service.create("Parent", "/parent")
        await service.create("Second", "/second", parent_id=parent.id, sort_order=2)
        await service.create("First", "/first", parent_id=parent.id, sort_order=1)

        children = await service.children(parent.id)

        assert [c.name for c in children] == ["First", "Second"]


class TestCachedViews:
    async def test_tree_reflects_writes(self, service):
        root = await service.create("Root", "/root")
        tree = await service.tree()
        assert [node["name"] for node in tree] == ["Root"]

        await service.create("Leaf", "/leaf", parent_id=root.id)
        tree = await service.tree()

        assert tree[0]["children"][0]["name"] == "Leaf"

    async def test_soft_delete_hides_from_active_views(self, service):
        menu = await service.create("Reports", "/reports")
        assert [m.id for m in await service.list_active()] == [menu.id]
        assert len(await service.tree()) == 1

        await service.soft_delete(menu.id)

        assert await service.list_active() == []
        assert await service.tree() == []
        assert len(await service.tree(include_inactive=True)) == 1

    async def test_route_change_moves_route_lookup(self, service):
        menu = await service.create("Reports", "/reports")
        assert (await service.get_by_route("/reports")).id == menu.id

        await service.update(menu.id, {"route": "/analytics"})

        with pytest.raises(NotFoundError):
            await service.get_by_route("/reports")
        assert (await service.get_by_route("/analytics")).id == menu.id

    async def test_reorder_updates_sort_order_everywhere(self, service):
        a = await service.create("A", "/a", sort_order=1)
        b = await service.create("B", "/b", sort_order=2)
        assert [m.name for m in await service.list_active()] == ["A", "B"]

        await service.reorder([(a.id, 5), (b.id, 0)])

        assert [m.name for m in await service.list_active()] == ["B", "A"]
        page = await service.list_menus()
        assert [m.name for m in page.items] == ["B", "A"]

    async def test_reorder_unknown_menu(self, service):
        with pytest.raises(NotFoundError):
            await service.reorder([("missing", 1)])

    async def test_reorder_rejects_whole_batch_before_writing(self, service):
        a = await service.create("A", "/a", sort_order=1)
        b = await service.create("B", "/b", sort_order=2)
        assert [m.name for m in await service.list_active()] == ["A", "B"]

        with pytest.raises(ValidationError):
            await service.reorder([(a.id, 5), (b.id, -1)])
        with pytest.raises(NotFoundError):
            await service.reorder([(a.id, 5), ("missing", 0)])

        assert (await service.get_menu(a.id)).sort_order == 1
        assert [m.name for m in await service.list_active()] == ["A", "B"]


def test_build_tree_promotes_orphans_to_roots():
    parent = Menu(id="p", name="Parent", route="/p", is_active=False)
    child = Menu(id="c", name="Child", route="/c", parent_id="p")

    tree = build_tree([child])
    assert [node["id"] for node in tree] == ["c"]

    nested = build_tree([parent, child])
    assert nested[0]["children"][0]["id"] == "c"
