from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from tokenfence.logging import get_logger
from tokenfence.storage.errors import ConstraintViolation
from tokenfence.storage.models import Country, Menu, User


def _sort_key(field_name: str):
    def key(item: Any):
        value = getattr(item, field_name, None)
        if isinstance(value, str):
            value = value.lower()
        # None sorts last in ascending order
        return (value is None, value)

    return key


def _page(
    items: Sequence[Any],
    *,
    offset: int,
    limit: int,
    sort_by: str,
    sort_order: str,
) -> Tuple[List[Any], int]:
    ordered = sorted(items, key=_sort_key(sort_by), reverse=sort_order.upper() == "DESC")
    return ordered[offset : offset + limit], len(ordered)


class MemoryStore:
    """In-memory relational store used by tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.countries: Dict[str, Country] = {}
        self.menus: Dict[str, Menu] = {}
        # RLock allows nested acquisitions within the same thread
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                role=role,
                is_active=is_active,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return user

    def touch_last_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = when or datetime.utcnow()

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- countries -------------------------------------------------------

    def _country_code_taken(self, code: str, exclude_id: Optional[str] = None) -> bool:
        return any(
            c.code == code and c.id != exclude_id for c in self.countries.values()
        )

    def create_country(
        self,
        name: str,
        code: str,
        *,
        currency_code: Optional[str] = None,
        status: str = "active",
        created_by: Optional[str] = None,
    ) -> Country:
        with self._data_lock:
            if self._country_code_taken(code):
                raise ConstraintViolation("country code already exists", {"field": "code"})
            now = datetime.utcnow()
            country = Country(
                id=str(uuid.uuid4()),
                name=name,
                code=code,
                currency_code=currency_code,
                status=status,
                created_by=created_by,
                updated_by=created_by,
                created_at=now,
                updated_at=now,
            )
            self.countries[country.id] = country
            return country

    def get_country(self, country_id: str) -> Optional[Country]:
        with self._data_lock:
            return self.countries.get(country_id)

    def get_country_by_code(self, code: str) -> Optional[Country]:
        with self._data_lock:
            return next((c for c in self.countries.values() if c.code == code), None)

    def country_code_exists(self, code: str, exclude_id: Optional[str] = None) -> bool:
        with self._data_lock:
            return self._country_code_taken(code, exclude_id)

    def list_countries(
        self,
        *,
        offset: int = 0,
        limit: int = 10,
        search: Optional[str] = None,
        status: Optional[str] = None,
        sort_by: str = "name",
        sort_order: str = "ASC",
    ) -> Tuple[List[Country], int]:
        with self._data_lock:
            items = list(self.countries.values())
        if search:
            needle = search.lower()
            items = [
                c for c in items if needle in c.name.lower() or needle in c.code.lower()
            ]
        if status:
            items = [c for c in items if c.status == status]
        return _page(items, offset=offset, limit=limit, sort_by=sort_by, sort_order=sort_order)

    def list_active_countries(self) -> List[Country]:
        with self._data_lock:
            active = [c for c in self.countries.values() if c.status == "active"]
        return sorted(active, key=_sort_key("name"))

    def update_country(self, country_id: str, changes: Dict[str, Any]) -> Optional[Country]:
        with self._data_lock:
            country = self.countries.get(country_id)
            if not country:
                return None
            code = changes.get("code")
            if code and self._country_code_taken(code, exclude_id=country_id):
                raise ConstraintViolation("country code already exists", {"field": "code"})
            updated = replace(country, **changes, updated_at=datetime.utcnow())
            self.countries[country_id] = updated
            return updated

    def delete_country(self, country_id: str) -> bool:
        with self._data_lock:
            return self.countries.pop(country_id, None) is not None

    # -- menus -----------------------------------------------------------

    def _menu_route_taken(self, route: str, exclude_id: Optional[str] = None) -> bool:
        return any(m.route == route and m.id != exclude_id for m in self.menus.values())

    def create_menu(
        self,
        name: str,
        route: str,
        *,
        icon: Optional[str] = None,
        parent_id: Optional[str] = None,
        sort_order: int = 0,
        is_active: bool = True,
    ) -> Menu:
        with self._data_lock:
            if self._menu_route_taken(route):
                raise ConstraintViolation("menu route already exists", {"field": "route"})
            now = datetime.utcnow()
            menu = Menu(
                id=str(uuid.uuid4()),
                name=name,
                route=route,
                icon=icon,
                parent_id=parent_id,
                sort_order=sort_order,
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )
            self.menus[menu.id] = menu
            return menu

    def get_menu(self, menu_id: str) -> Optional[Menu]:
        with self._data_lock:
            return self.menus.get(menu_id)

    def get_menu_by_route(self, route: str) -> Optional[Menu]:
        with self._data_lock:
            return next((m for m in self.menus.values() if m.route == route), None)

    def list_menus(
        self,
        *,
        offset: int = 0,
        limit: int = 10,
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        parent_id: Optional[str] = None,
        sort_by: str = "sort_order",
        sort_order: str = "ASC",
    ) -> Tuple[List[Menu], int]:
        with self._data_lock:
            items = list(self.menus.values())
        if search:
            needle = search.lower()
            items = [
                m for m in items if needle in m.name.lower() or needle in m.route.lower()
            ]
        if is_active is not None:
            items = [m for m in items if m.is_active == is_active]
        if parent_id is not None:
            items = [m for m in items if m.parent_id == parent_id]
        return _page(items, offset=offset, limit=limit, sort_by=sort_by, sort_order=sort_order)

    def list_all_menus(self, *, include_inactive: bool = False) -> List[Menu]:
        with self._data_lock:
            items = [m for m in self.menus.values() if include_inactive or m.is_active]
        return sorted(items, key=lambda m: (m.sort_order, m.name.lower()))

    def list_menu_children(self, parent_id: str) -> List[Menu]:
        with self._data_lock:
            items = [m for m in self.menus.values() if m.parent_id == parent_id]
        return sorted(items, key=lambda m: (m.sort_order, m.name.lower()))

    def update_menu(self, menu_id: str, changes: Dict[str, Any]) -> Optional[Menu]:
        with self._data_lock:
            menu = self.menus.get(menu_id)
            if not menu:
                return None
            route = changes.get("route")
            if route and self._menu_route_taken(route, exclude_id=menu_id):
                raise ConstraintViolation("menu route already exists", {"field": "route"})
            updated = replace(menu, **changes, updated_at=datetime.utcnow())
            self.menus[menu_id] = updated
            return updated

    def count_menu_children(self, menu_id: str) -> int:
        with self._data_lock:
            return sum(1 for m in self.menus.values() if m.parent_id == menu_id)

    def delete_menu(self, menu_id: str) -> bool:
        with self._data_lock:
            return self.menus.pop(menu_id, None) is not None
