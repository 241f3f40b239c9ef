from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

from tokenfence.logging import get_logger
from tokenfence.service.cache import CacheAside, CacheKeys, CacheTTL
from tokenfence.service.countries import normalize_paging
from tokenfence.service.errors import ConflictError, NotFoundError, ValidationError
from tokenfence.storage.errors import ConstraintViolation
from tokenfence.storage.models import Menu, Page

logger = get_logger(__name__)

MENU_SORT_FIELDS = ("sort_order", "name", "route", "created_at", "updated_at")

_UPDATABLE = ("name", "route", "icon", "parent_id", "sort_order", "is_active")


def _decode_menu(data: Any) -> Menu:
    return Menu.from_dict(data)


def _decode_menus(data: Any) -> List[Menu]:
    return [Menu.from_dict(item) for item in data]


def _encode_menus(items: List[Menu]) -> List[Dict[str, Any]]:
    return [item.to_dict() for item in items]


def build_tree(menus: Iterable[Menu]) -> List[Dict[str, Any]]:
    """Nest menus under their parents; orphans of a filtered parent become roots."""
    ordered = sorted(menus, key=lambda m: (m.sort_order, m.name.lower()))
    nodes = {m.id: {**m.to_dict(), "children": []} for m in ordered}
    roots: List[Dict[str, Any]] = []
    for menu in ordered:
        node = nodes[menu.id]
        parent = nodes.get(menu.parent_id) if menu.parent_id else None
        if parent is not None:
            parent["children"].append(node)
        else:
            roots.append(node)
    return roots


class MenuService:
    """Menu reads through the cache and writes that invalidate it."""

    def __init__(self, store: Any, cache: CacheAside) -> None:
        self.store = store
        self.cache = cache

    # -- reads -----------------------------------------------------------

    async def list_menus(
        self,
        *,
        page: int = 1,
        limit: int = 10,
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        parent_id: Optional[str] = None,
        sort_by: str = "sort_order",
        sort_order: str = "ASC",
    ) -> Page:
        page, limit, sort_order = normalize_paging(page, limit, sort_order)
        if sort_by not in MENU_SORT_FIELDS:
            raise ValidationError(
                f"sortBy must be one of {', '.join(MENU_SORT_FIELDS)}",
                detail={"field": "sortBy"},
            )
        search = search.strip() if search else None
        options = {
            "page": page,
            "limit": limit,
            "search": search or None,
            "isActive": is_active,
            "parentId": parent_id,
            "sortBy": sort_by,
            "sortOrder": sort_order,
        }

        def load() -> Page:
            items, total = self.store.list_menus(
                offset=(page - 1) * limit,
                limit=limit,
                search=search,
                is_active=is_active,
                parent_id=parent_id,
                sort_by=sort_by,
                sort_order=sort_order,
            )
            return Page(items=items, total=total, page=page, limit=limit)

        return await self.cache.read_through(
            CacheKeys.menu_list(options),
            load,
            CacheTTL.MEDIUM,
            encode=lambda p: {
                "items": _encode_menus(p.items),
                "total": p.total,
                "page": p.page,
                "limit": p.limit,
            },
            decode=lambda data: Page(
                items=_decode_menus(data["items"]),
                total=data["total"],
                page=data["page"],
                limit=data["limit"],
            ),
        )

    async def get_menu(self, menu_id: str) -> Menu:
        menu = await self.cache.read_through(
            CacheKeys.menu_id(menu_id),
            lambda: self.store.get_menu(menu_id),
            CacheTTL.LONG,
            encode=Menu.to_dict,
            decode=_decode_menu,
        )
        if not menu:
            raise NotFoundError("menu not found", detail={"id": menu_id})
        return menu

    async def get_by_route(self, route: str) -> Menu:
        menu = await self.cache.read_through(
            CacheKeys.menu_route(route),
            lambda: self.store.get_menu_by_route(route),
            CacheTTL.LONG,
            encode=Menu.to_dict,
            decode=_decode_menu,
        )
        if not menu:
            raise NotFoundError("menu not found", detail={"route": route})
        return menu

    async def list_active(self) -> List[Menu]:
        return await self.cache.read_through(
            CacheKeys.MENUS_ACTIVE,
            lambda: self.store.list_all_menus(include_inactive=False),
            CacheTTL.LONG,
            encode=_encode_menus,
            decode=_decode_menus,
        )

    async def tree(self, *, include_inactive: bool = False) -> List[Dict[str, Any]]:
        key = CacheKeys.MENUS_TREE_ALL if include_inactive else CacheKeys.MENUS_TREE
        return await self.cache.read_through(
            key,
            lambda: build_tree(self.store.list_all_menus(include_inactive=include_inactive)),
            CacheTTL.LONG,
        )

    async def children(self, menu_id: str) -> List[Menu]:
        if not self.store.get_menu(menu_id):
            raise NotFoundError("menu not found", detail={"id": menu_id})
        return self.store.list_menu_children(menu_id)

    # -- writes ----------------------------------------------------------

    def _check_parent(self, parent_id: Optional[str], menu_id: Optional[str] = None) -> None:
        if not parent_id:
            return
        if menu_id and parent_id == menu_id:
            raise ValidationError("menu cannot be its own parent", detail={"field": "parentId"})
        if not self.store.get_menu(parent_id):
            raise ValidationError("parent menu not found", detail={"field": "parentId"})
        if not menu_id:
            return
        # Walk up from the new parent; meeting menu_id means a cycle
        seen = set()
        current = self.store.get_menu(parent_id)
        while current and current.parent_id and current.id not in seen:
            if current.parent_id == menu_id:
                raise ValidationError(
                    "circular menu hierarchy", detail={"field": "parentId"}
                )
            seen.add(current.id)
            current = self.store.get_menu(current.parent_id)

    async def _invalidate(self, menus: Iterable[Menu], *old_routes: str) -> None:
        keys = [CacheKeys.MENUS_ACTIVE, CacheKeys.MENUS_TREE, CacheKeys.MENUS_TREE_ALL]
        for menu in menus:
            keys.append(CacheKeys.menu_id(menu.id))
            keys.append(CacheKeys.menu_route(menu.route))
        keys.extend(CacheKeys.menu_route(route) for route in old_routes if route)
        await self.cache.invalidate(keys)
        await self.cache.invalidate_by_pattern(CacheKeys.MENU_LIST_PREFIX)

    def _validate(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        cleaned = dict(changes)
        for field_name in ("name", "route"):
            if field_name in cleaned:
                value = (cleaned[field_name] or "").strip()
                if not value:
                    raise ValidationError(
                        f"{field_name} is required", detail={"field": field_name}
                    )
                cleaned[field_name] = value
        if "sort_order" in cleaned and cleaned["sort_order"] is not None:
            if int(cleaned["sort_order"]) < 0:
                raise ValidationError(
                    "sortOrder must not be negative", detail={"field": "sortOrder"}
                )
        return cleaned

    async def create(
        self,
        name: str,
        route: str,
        *,
        icon: Optional[str] = None,
        parent_id: Optional[str] = None,
        sort_order: int = 0,
        is_active: bool = True,
    ) -> Menu:
        cleaned = self._validate({"name": name, "route": route, "sort_order": sort_order})
        self._check_parent(parent_id)
        try:
            menu = self.store.create_menu(
                cleaned["name"],
                cleaned["route"],
                icon=icon,
                parent_id=parent_id,
                sort_order=cleaned["sort_order"],
                is_active=is_active,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        await self._invalidate([menu])
        logger.info("menu_created", menu_id=menu.id, route=menu.route)
        return menu

    async def update(self, menu_id: str, changes: Dict[str, Any]) -> Menu:
        existing = self.store.get_menu(menu_id)
        if not existing:
            raise NotFoundError("menu not found", detail={"id": menu_id})
        cleaned = self._validate({k: v for k, v in changes.items() if k in _UPDATABLE})
        if not cleaned:
            return existing
        if "parent_id" in cleaned:
            self._check_parent(cleaned["parent_id"], menu_id)
        try:
            menu = self.store.update_menu(menu_id, cleaned)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if not menu:
            raise NotFoundError("menu not found", detail={"id": menu_id})
        await self._invalidate([menu], existing.route)
        logger.info("menu_updated", menu_id=menu_id, fields=sorted(cleaned))
        return menu

    async def reorder(self, orders: Iterable[Tuple[str, int]]) -> List[Menu]:
        """Apply ``(menu_id, sort_order)`` pairs; every id must exist.

        All pairs are checked before the first write, so a rejected batch
        leaves every menu untouched.
        """
        pairs = list(orders)
        if not pairs:
            raise ValidationError("no menus to reorder", detail={"field": "items"})
        negative = [menu_id for menu_id, sort_order in pairs if sort_order < 0]
        if negative:
            raise ValidationError(
                "sortOrder must not be negative",
                detail={"field": "sortOrder", "ids": negative},
            )
        missing = [menu_id for menu_id, _ in pairs if not self.store.get_menu(menu_id)]
        if missing:
            raise NotFoundError("menu not found", detail={"ids": missing})
        updated = []
        for menu_id, sort_order in pairs:
            updated.append(self.store.update_menu(menu_id, {"sort_order": sort_order}))
        await self._invalidate([m for m in updated if m])
        logger.info("menus_reordered", count=len(updated))
        return [m for m in updated if m]

    async def soft_delete(self, menu_id: str) -> Menu:
        existing = self.store.get_menu(menu_id)
        if not existing:
            raise NotFoundError("menu not found", detail={"id": menu_id})
        menu = self.store.update_menu(menu_id, {"is_active": False}) or existing
        await self._invalidate([menu])
        logger.info("menu_deactivated", menu_id=menu_id)
        return menu

    async def hard_delete(self, menu_id: str) -> None:
        existing = self.store.get_menu(menu_id)
        if not existing:
            raise NotFoundError("menu not found", detail={"id": menu_id})
        children = self.store.count_menu_children(menu_id)
        if children:
            raise ConflictError(
                "menu has child menus", detail={"id": menu_id, "children": children}
            )
        self.store.delete_menu(menu_id)
        await self._invalidate([existing])
        logger.info("menu_deleted", menu_id=menu_id, route=existing.route)
