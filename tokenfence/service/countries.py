from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from tokenfence.logging import get_logger
from tokenfence.service.cache import CacheAside, CacheKeys, CacheTTL
from tokenfence.service.errors import ConflictError, NotFoundError, ValidationError
from tokenfence.storage.errors import ConstraintViolation
from tokenfence.storage.models import COUNTRY_STATUSES, Country, Page

logger = get_logger(__name__)

COUNTRY_SORT_FIELDS = ("name", "code", "status", "created_at", "updated_at")
MAX_PAGE_SIZE = 100

_CODE_RE = re.compile(r"^[A-Z]{2,3}$")
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_UPDATABLE = ("name", "code", "currency_code", "status")


def normalize_paging(page: int, limit: int, sort_order: str) -> tuple[int, int, str]:
    if page < 1:
        raise ValidationError("page must be at least 1", detail={"field": "page"})
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(
            f"limit must be between 1 and {MAX_PAGE_SIZE}", detail={"field": "limit"}
        )
    order = (sort_order or "ASC").upper()
    if order not in ("ASC", "DESC"):
        raise ValidationError("sortOrder must be ASC or DESC", detail={"field": "sortOrder"})
    return page, limit, order


def _decode_country(data: Any) -> Country:
    return Country.from_dict(data)


def _decode_countries(data: Any) -> List[Country]:
    return [Country.from_dict(item) for item in data]


def _encode_countries(items: List[Country]) -> List[Dict[str, Any]]:
    return [item.to_dict() for item in items]


def _decode_page(data: Any) -> Page:
    return Page(
        items=_decode_countries(data["items"]),
        total=data["total"],
        page=data["page"],
        limit=data["limit"],
    )


class CountryService:
    """Country reads through the cache and writes that invalidate it."""

    def __init__(self, store: Any, cache: CacheAside) -> None:
        self.store = store
        self.cache = cache

    # -- reads -----------------------------------------------------------

    async def list_countries(
        self,
        *,
        page: int = 1,
        limit: int = 10,
        search: Optional[str] = None,
        status: Optional[str] = None,
        sort_by: str = "name",
        sort_order: str = "ASC",
    ) -> Page:
        page, limit, sort_order = normalize_paging(page, limit, sort_order)
        if sort_by not in COUNTRY_SORT_FIELDS:
            raise ValidationError(
                f"sortBy must be one of {', '.join(COUNTRY_SORT_FIELDS)}",
                detail={"field": "sortBy"},
            )
        if status is not None and status not in COUNTRY_STATUSES:
            raise ValidationError("invalid status filter", detail={"field": "status"})
        search = search.strip() if search else None
        options = {
            "page": page,
            "limit": limit,
            "search": search or None,
            "status": status,
            "sortBy": sort_by,
            "sortOrder": sort_order,
        }

        def load() -> Page:
            items, total = self.store.list_countries(
                offset=(page - 1) * limit,
                limit=limit,
                search=search,
                status=status,
                sort_by=sort_by,
                sort_order=sort_order,
            )
            return Page(items=items, total=total, page=page, limit=limit)

        return await self.cache.read_through(
            CacheKeys.country_list(options),
            load,
            CacheTTL.MEDIUM,
            encode=lambda p: {
                "items": _encode_countries(p.items),
                "total": p.total,
                "page": p.page,
                "limit": p.limit,
            },
            decode=_decode_page,
        )

    async def get_country(self, country_id: str) -> Country:
        country = await self.cache.read_through(
            CacheKeys.country_id(country_id),
            lambda: self.store.get_country(country_id),
            CacheTTL.LONG,
            encode=Country.to_dict,
            decode=_decode_country,
        )
        if not country:
            raise NotFoundError("country not found", detail={"id": country_id})
        return country

    async def get_by_code(self, code: str) -> Country:
        code = (code or "").strip().upper()
        country = await self.cache.read_through(
            CacheKeys.country_code(code),
            lambda: self.store.get_country_by_code(code),
            CacheTTL.LONG,
            encode=Country.to_dict,
            decode=_decode_country,
        )
        if not country:
            raise NotFoundError("country not found", detail={"code": code})
        return country

    async def list_active(self) -> List[Country]:
        return await self.cache.read_through(
            CacheKeys.COUNTRY_ACTIVE,
            self.store.list_active_countries,
            CacheTTL.LONG,
            encode=_encode_countries,
            decode=_decode_countries,
        )

    async def code_exists(self, code: str, exclude_id: Optional[str] = None) -> bool:
        return self.store.country_code_exists(code.strip().upper(), exclude_id)

    # -- writes ----------------------------------------------------------

    def _validate(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        cleaned = dict(changes)
        if "name" in cleaned:
            name = (cleaned["name"] or "").strip()
            if not name:
                raise ValidationError("name is required", detail={"field": "name"})
            cleaned["name"] = name
        if "code" in cleaned:
            code = (cleaned["code"] or "").strip().upper()
            if not _CODE_RE.match(code):
                raise ValidationError(
                    "code must be 2 or 3 letters", detail={"field": "code"}
                )
            cleaned["code"] = code
        if cleaned.get("currency_code") is not None:
            currency = cleaned["currency_code"].strip().upper()
            if not _CURRENCY_RE.match(currency):
                raise ValidationError(
                    "currencyCode must be 3 letters", detail={"field": "currencyCode"}
                )
            cleaned["currency_code"] = currency
        if "status" in cleaned and cleaned["status"] not in COUNTRY_STATUSES:
            raise ValidationError("invalid status", detail={"field": "status"})
        return cleaned

    async def _invalidate(self, country: Country, *old_codes: str) -> None:
        keys = [
            CacheKeys.country_id(country.id),
            CacheKeys.country_code(country.code),
            CacheKeys.COUNTRY_ACTIVE,
        ]
        keys.extend(CacheKeys.country_code(code) for code in old_codes if code)
        await self.cache.invalidate(keys)
        await self.cache.invalidate_by_pattern(CacheKeys.COUNTRY_LIST_PREFIX)

    async def create(
        self,
        name: str,
        code: str,
        *,
        currency_code: Optional[str] = None,
        status: str = "active",
        created_by: Optional[str] = None,
    ) -> Country:
        cleaned = self._validate(
            {"name": name, "code": code, "currency_code": currency_code, "status": status}
        )
        if self.store.country_code_exists(cleaned["code"]):
            raise ConflictError("country code already exists", detail={"field": "code"})
        try:
            country = self.store.create_country(
                cleaned["name"],
                cleaned["code"],
                currency_code=cleaned["currency_code"],
                status=cleaned["status"],
                created_by=created_by,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        await self._invalidate(country)
        logger.info("country_created", country_id=country.id, code=country.code)
        return country

    async def update(
        self, country_id: str, changes: Dict[str, Any], *, updated_by: Optional[str] = None
    ) -> Country:
        existing = self.store.get_country(country_id)
        if not existing:
            raise NotFoundError("country not found", detail={"id": country_id})
        cleaned = self._validate({k: v for k, v in changes.items() if k in _UPDATABLE})
        if not cleaned:
            return existing
        new_code = cleaned.get("code")
        if new_code and new_code != existing.code:
            if self.store.country_code_exists(new_code, exclude_id=country_id):
                raise ConflictError("country code already exists", detail={"field": "code"})
        cleaned["updated_by"] = updated_by
        try:
            country = self.store.update_country(country_id, cleaned)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if not country:
            raise NotFoundError("country not found", detail={"id": country_id})
        await self._invalidate(country, existing.code)
        logger.info("country_updated", country_id=country_id, fields=sorted(cleaned))
        return country

    async def soft_delete(self, country_id: str, *, updated_by: Optional[str] = None) -> Country:
        existing = self.store.get_country(country_id)
        if not existing:
            raise NotFoundError("country not found", detail={"id": country_id})
        country = self.store.update_country(
            country_id, {"status": "inactive", "updated_by": updated_by}
        )
        await self._invalidate(country or existing)
        logger.info("country_deactivated", country_id=country_id)
        return country or existing

    async def hard_delete(self, country_id: str) -> None:
        existing = self.store.get_country(country_id)
        if not existing:
            raise NotFoundError("country not found", detail={"id": country_id})
        self.store.delete_country(country_id)
        await self._invalidate(existing)
        logger.info("country_deleted", country_id=country_id, code=existing.code)
