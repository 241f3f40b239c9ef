from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenfence.logging import get_logger
from tokenfence.storage.errors import ConstraintViolation
from tokenfence.storage.models import Country, Menu, User

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS country (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        code VARCHAR(3) NOT NULL UNIQUE,
        currency_code VARCHAR(3),
        status TEXT NOT NULL DEFAULT 'active',
        created_by UUID,
        updated_by UUID,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS menu (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        route TEXT NOT NULL UNIQUE,
        icon TEXT,
        parent_id UUID REFERENCES menu(id),
        sort_order INTEGER NOT NULL DEFAULT 0,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_COUNTRY_COLUMNS = {"name", "code", "currency_code", "status", "updated_by"}
_MENU_COLUMNS = {"name", "route", "icon", "parent_id", "sort_order", "is_active"}


def _is_uuid(value: Optional[str]) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        role=row.get("role", "user"),
        is_active=row.get("is_active", True),
        created_at=row.get("created_at") or datetime.utcnow(),
        last_login_at=row.get("last_login_at"),
    )


def _country_from_row(row: Dict[str, Any]) -> Country:
    return Country(
        id=str(row["id"]),
        name=row["name"],
        code=row["code"],
        currency_code=row.get("currency_code"),
        status=row.get("status", "active"),
        created_by=str(row["created_by"]) if row.get("created_by") else None,
        updated_by=str(row["updated_by"]) if row.get("updated_by") else None,
        created_at=row.get("created_at") or datetime.utcnow(),
        updated_at=row.get("updated_at") or datetime.utcnow(),
    )


def _menu_from_row(row: Dict[str, Any]) -> Menu:
    return Menu(
        id=str(row["id"]),
        name=row["name"],
        route=row["route"],
        icon=row.get("icon"),
        parent_id=str(row["parent_id"]) if row.get("parent_id") else None,
        sort_order=row.get("sort_order", 0),
        is_active=row.get("is_active", True),
        created_at=row.get("created_at") or datetime.utcnow(),
        updated_at=row.get("updated_at") or datetime.utcnow(),
    )


def _order_clause(sort_by: str, sort_order: str) -> sql.Composed:
    direction = sql.SQL("DESC") if sort_order.upper() == "DESC" else sql.SQL("ASC")
    return sql.SQL(" ORDER BY {} {}").format(sql.Identifier(sort_by), direction)


class PostgresStore:
    """Postgres-backed relational store for users, countries and menus."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the tables this service owns if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, role, is_active)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, role, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def touch_last_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s",
                (when or datetime.utcnow(), user_id),
            )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # -- countries -------------------------------------------------------

    def create_country(
        self,
        name: str,
        code: str,
        *,
        currency_code: Optional[str] = None,
        status: str = "active",
        created_by: Optional[str] = None,
    ) -> Country:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO country (id, name, code, currency_code, status, created_by, updated_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), name, code, currency_code, status, created_by, created_by),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("country code already exists", {"field": "code"})
        return _country_from_row(row)

    def get_country(self, country_id: str) -> Optional[Country]:
        if not _is_uuid(country_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM country WHERE id = %s", (country_id,)
            ).fetchone()
        return _country_from_row(row) if row else None

    def get_country_by_code(self, code: str) -> Optional[Country]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM country WHERE code = %s", (code,)
            ).fetchone()
        return _country_from_row(row) if row else None

    def country_code_exists(self, code: str, exclude_id: Optional[str] = None) -> bool:
        with self._connect() as conn:
            if exclude_id and _is_uuid(exclude_id):
                row = conn.execute(
                    "SELECT 1 FROM country WHERE code = %s AND id <> %s",
                    (code, exclude_id),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT 1 FROM country WHERE code = %s", (code,)
                ).fetchone()
        return row is not None

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
        clauses: List[sql.Composable] = []
        params: List[Any] = []
        if search:
            clauses.append(sql.SQL("(name ILIKE %s OR code ILIKE %s)"))
            params.extend([f"%{search}%", f"%{search}%"])
        if status:
            clauses.append(sql.SQL("status = %s"))
            params.append(status)
        where = sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses) if clauses else sql.SQL("")
        with self._connect() as conn:
            total = conn.execute(
                sql.SQL("SELECT COUNT(*) AS total FROM country") + where, params
            ).fetchone()["total"]
            rows = conn.execute(
                sql.SQL("SELECT * FROM country")
                + where
                + _order_clause(sort_by, sort_order)
                + sql.SQL(" LIMIT %s OFFSET %s"),
                [*params, limit, offset],
            ).fetchall()
        return [_country_from_row(row) for row in rows], int(total)

    def list_active_countries(self) -> List[Country]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM country WHERE status = 'active' ORDER BY name ASC"
            ).fetchall()
        return [_country_from_row(row) for row in rows]

    def update_country(self, country_id: str, changes: Dict[str, Any]) -> Optional[Country]:
        if not _is_uuid(country_id):
            return None
        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(column))
            for column in changes
            if column in _COUNTRY_COLUMNS
        ]
        values = [value for column, value in changes.items() if column in _COUNTRY_COLUMNS]
        if not assignments:
            return self.get_country(country_id)
        query = (
            sql.SQL("UPDATE country SET ")
            + sql.SQL(", ").join(assignments)
            + sql.SQL(", updated_at = now() WHERE id = %s RETURNING *")
        )
        try:
            with self._connect() as conn:
                row = conn.execute(query, [*values, country_id]).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("country code already exists", {"field": "code"})
        return _country_from_row(row) if row else None

    def delete_country(self, country_id: str) -> bool:
        if not _is_uuid(country_id):
            return False
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM country WHERE id = %s", (country_id,))
            return cur.rowcount > 0

    # -- menus -----------------------------------------------------------

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO menu (id, name, route, icon, parent_id, sort_order, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), name, route, icon, parent_id, sort_order, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("menu route already exists", {"field": "route"})
        return _menu_from_row(row)

    def get_menu(self, menu_id: str) -> Optional[Menu]:
        if not _is_uuid(menu_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM menu WHERE id = %s", (menu_id,)).fetchone()
        return _menu_from_row(row) if row else None

    def get_menu_by_route(self, route: str) -> Optional[Menu]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM menu WHERE route = %s", (route,)).fetchone()
        return _menu_from_row(row) if row else None

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
        clauses: List[sql.Composable] = []
        params: List[Any] = []
        if search:
            clauses.append(sql.SQL("(name ILIKE %s OR route ILIKE %s)"))
            params.extend([f"%{search}%", f"%{search}%"])
        if is_active is not None:
            clauses.append(sql.SQL("is_active = %s"))
            params.append(is_active)
        if parent_id is not None:
            if not _is_uuid(parent_id):
                return [], 0
            clauses.append(sql.SQL("parent_id = %s"))
            params.append(parent_id)
        where = sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses) if clauses else sql.SQL("")
        with self._connect() as conn:
            total = conn.execute(
                sql.SQL("SELECT COUNT(*) AS total FROM menu") + where, params
            ).fetchone()["total"]
            rows = conn.execute(
                sql.SQL("SELECT * FROM menu")
                + where
                + _order_clause(sort_by, sort_order)
                + sql.SQL(" LIMIT %s OFFSET %s"),
                [*params, limit, offset],
            ).fetchall()
        return [_menu_from_row(row) for row in rows], int(total)

    def list_all_menus(self, *, include_inactive: bool = False) -> List[Menu]:
        query = "SELECT * FROM menu"
        if not include_inactive:
            query += " WHERE is_active = TRUE"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY sort_order ASC, name ASC").fetchall()
        return [_menu_from_row(row) for row in rows]

    def list_menu_children(self, parent_id: str) -> List[Menu]:
        if not _is_uuid(parent_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM menu WHERE parent_id = %s ORDER BY sort_order ASC, name ASC",
                (parent_id,),
            ).fetchall()
        return [_menu_from_row(row) for row in rows]

    def update_menu(self, menu_id: str, changes: Dict[str, Any]) -> Optional[Menu]:
        if not _is_uuid(menu_id):
            return None
        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(column))
            for column in changes
            if column in _MENU_COLUMNS
        ]
        values = [value for column, value in changes.items() if column in _MENU_COLUMNS]
        if not assignments:
            return self.get_menu(menu_id)
        query = (
            sql.SQL("UPDATE menu SET ")
            + sql.SQL(", ").join(assignments)
            + sql.SQL(", updated_at = now() WHERE id = %s RETURNING *")
        )
        try:
            with self._connect() as conn:
                row = conn.execute(query, [*values, menu_id]).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("menu route already exists", {"field": "route"})
        return _menu_from_row(row) if row else None

    def count_menu_children(self, menu_id: str) -> int:
        if not _is_uuid(menu_id):
            return 0
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM menu WHERE parent_id = %s", (menu_id,)
            ).fetchone()
        return int(row["total"])

    def delete_menu(self, menu_id: str) -> bool:
        if not _is_uuid(menu_id):
            return False
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM menu WHERE id = %s", (menu_id,))
            return cur.rowcount > 0
