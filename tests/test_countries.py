"""Country service: cached reads stay consistent with writes."""

import pytest

from tokenfence.service.cache import CacheAside, CacheKeys
from tokenfence.service.countries import CountryService
from tokenfence.service.errors import ConflictError, NotFoundError, ValidationError
from tokenfence.storage.memory import MemoryStore
from tokenfence.storage.ttl_store import MemoryTTLStore


class CountingStore(MemoryStore):
    """Memory store that records how often each read reaches it."""

    def __init__(self):
        super().__init__()
        self.reads = {}

    def _count(self, name):
        self.reads[name] = self.reads.get(name, 0) + 1

    def get_country(self, country_id):
        self._count("get_country")
        return super().get_country(country_id)

    def get_country_by_code(self, code):
        self._count("get_country_by_code")
        return super().get_country_by_code(code)

    def list_countries(self, **kwargs):
        self._count("list_countries")
        return super().list_countries(**kwargs)


@pytest.fixture
def ttl_store():
    return MemoryTTLStore()


@pytest.fixture
def store():
    return CountingStore()


@pytest.fixture
def service(store, ttl_store):
    return CountryService(store, CacheAside(ttl_store))


class TestReads:
    async def test_get_country_is_cached(self, service, store):
        created = await service.create("Indonesia", "id", currency_code="idr")

        first = await service.get_country(created.id)
        second = await service.get_country(created.id)

        assert first.code == "ID"
        assert first.currency_code == "IDR"
        assert second == first
        assert store.reads["get_country"] == 1

    async def test_missing_country_raises_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.get_country("missing")
        with pytest.raises(NotFoundError):
            await service.get_by_code("ZZ")

    async def test_list_is_paginated_and_cached(self, service, store):
        for name, code in (("Brazil", "BR"), ("Austria", "AT"), ("Chile", "CL")):
            await service.create(name, code)

        page = await service.list_countries(page=1, limit=2)
        again = await service.list_countries(page=1, limit=2)

        assert [c.name for c in page.items] == ["Austria", "Brazil"]
        assert page.total == 3
        assert page.total_pages == 2
        assert [c.name for c in again.items] == ["Austria", "Brazil"]
        assert store.reads["list_countries"] == 1

    async def test_list_filters_and_sorts(self, service):
        await service.create("Brazil", "BR")
        await service.create("Austria", "AT", status="inactive")

        active = await service.list_countries(status="active")
        desc = await service.list_countries(sort_by="code", sort_order="desc")
        search = await service.list_countries(search="aus")

        assert [c.code for c in active.items] == ["BR"]
        assert [c.code for c in desc.items] == ["BR", "AT"]
        assert [c.code for c in search.items] == ["AT"]

    @pytest.mark.parametrize(
        "kwargs",
        [{"page": 0}, {"limit": 0}, {"limit": 101}, {"sort_by": "secret"}, {"sort_order": "up"}],
    )
    async def test_list_rejects_bad_options(self, service, kwargs):
        with pytest.raises(ValidationError):
            await service.list_countries(**kwargs)


class TestWriteConsistency:
    async def test_code_change_moves_secondary_lookup(self, service, store):
        country = await service.create("Testland", "TL")
        assert (await service.get_by_code("TL")).id == country.id

        await service.update(country.id, {"code": "TX"})

        with pytest.raises(NotFoundError):
            await service.get_by_code("TL")
        assert (await service.get_by_code("tx")).id == country.id
        assert (await service.get_country(country.id)).code == "TX"

    async def test_create_invalidates_lists_and_active(self, service, ttl_store):
        await service.create("Brazil", "BR")
        assert len((await service.list_countries()).items) == 1
        assert len(await service.list_active()) == 1

        await service.create("Chile", "CL")

        assert len((await service.list_countries()).items) == 2
        assert len(await service.list_active()) == 2
        assert await ttl_store.exists(CacheKeys.COUNTRY_ACTIVE) is True

    async def test_soft_delete_drops_from_active(self, service):
        country = await service.create("Brazil", "BR")
        await service.list_active()

        deleted = await service.soft_delete(country.id)

        assert deleted.status == "inactive"
        assert await service.list_active() == []
        assert (await service.get_country(country.id)).status == "inactive"

    async def test_hard_delete_evicts_identity(self, service):
        country = await service.create("Brazil", "BR")
        await service.get_country(country.id)

        await service.hard_delete(country.id)

        with pytest.raises(NotFoundError):
            await service.get_country(country.id)


class TestValidation:
    async def test_duplicate_code_conflicts(self, service):
        await service.create("Brazil", "BR")
        with pytest.raises(ConflictError):
            await service.create("Brasil", "br")

    async def test_update_to_taken_code_conflicts(self, service):
        await service.create("Brazil", "BR")
        chile = await service.create("Chile", "CL")
        with pytest.raises(ConflictError):
            await service.update(chile.id, {"code": "BR"})

    @pytest.mark.parametrize("code", ["B", "BRAZ", "B1"])
    async def test_code_format(self, service, code):
        with pytest.raises(ValidationError):
            await service.create("Brazil", code)

    async def test_code_exists(self, service):
        country = await service.create("Brazil", "BR")
        assert await service.code_exists("br") is True
        assert await service.code_exists("BR", exclude_id=country.id) is False
