"""Tests for the email list loader, cache and filter."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from assist_adoption.services.email_list import (
    EmailListCache,
    EmailListError,
    EmailListFilter,
    HttpEmailListLoader,
    build_email_filter,
)

URL = "https://lists.example.com/emails"


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class TestHttpEmailListLoader:
    async def test_plain_list(self):
        async with _client(lambda request: httpx.Response(200, json=["A@Contoso.com", " b@contoso.com "])) as client:
            emails = await HttpEmailListLoader(URL, client=client)()
        assert emails == {"a@contoso.com", "b@contoso.com"}

    async def test_objects_with_paging(self):
        def handler(request):
            if request.url.params.get("page") == "2":
                return httpx.Response(200, json={"value": [{"fields": {"email": "c@contoso.com"}}]})
            return httpx.Response(
                200,
                json={
                    "value": [{"email": "a@contoso.com"}, {"other": "x"}],
                    "@odata.nextLink": f"{URL}?page=2",
                },
            )

        async with _client(handler) as client:
            emails = await HttpEmailListLoader(URL, client=client)()
        assert emails == {"a@contoso.com", "c@contoso.com"}

    async def test_custom_field(self):
        payload = {"items": [{"upn": "a@contoso.com"}]}
        async with _client(lambda request: httpx.Response(200, json=payload)) as client:
            emails = await HttpEmailListLoader(URL, field="upn", client=client)()
        assert emails == {"a@contoso.com"}

    async def test_http_error(self):
        async with _client(lambda request: httpx.Response(500)) as client:
            with pytest.raises(EmailListError):
                await HttpEmailListLoader(URL, client=client)()

    async def test_invalid_json(self):
        async with _client(lambda request: httpx.Response(200, content=b"<html>")) as client:
            with pytest.raises(EmailListError):
                await HttpEmailListLoader(URL, client=client)()


class TestEmailListCache:
    async def test_loads_once_until_expiry(self):
        clock = FakeClock()
        calls = []

        async def loader():
            calls.append(clock())
            return {"A@contoso.com"}

        cache = EmailListCache(loader, ttl=timedelta(minutes=30), clock=clock)

        assert await cache.get() == frozenset({"a@contoso.com"})
        clock.advance(minutes=29)
        await cache.get()
        assert len(calls) == 1

        clock.advance(minutes=2)
        await cache.get()
        assert len(calls) == 2

    async def test_info(self):
        clock = FakeClock()

        async def loader():
            return {"a@contoso.com", "b@contoso.com"}

        cache = EmailListCache(loader, ttl=timedelta(minutes=10), clock=clock)
        assert cache.info().is_empty

        await cache.get()
        clock.advance(minutes=4)
        info = cache.info()
        assert info.email_count == 2
        assert not info.is_expired
        assert info.time_until_expiry == timedelta(minutes=6)

        clock.advance(minutes=7)
        assert cache.info().is_expired

    async def test_clear_forces_reload(self):
        calls = []

        async def loader():
            calls.append(1)
            return set()

        cache = EmailListCache(loader)
        await cache.get()
        cache.clear()
        await cache.get()
        assert len(calls) == 2

    async def test_loader_error_propagates(self):
        async def loader():
            raise EmailListError("down")

        cache = EmailListCache(loader)
        with pytest.raises(EmailListError):
            await cache.get()
        assert cache.info().is_empty


class TestEmailListFilter:
    def test_exclusion_list(self):
        email_filter = EmailListFilter(["Blocked@contoso.com"], exclusive=False)
        assert not email_filter.allows("blocked@CONTOSO.com")
        assert email_filter.allows("other@contoso.com")

    def test_inclusion_list(self):
        email_filter = EmailListFilter(["pilot@contoso.com"], exclusive=True)
        assert email_filter.allows("Pilot@contoso.com")
        assert not email_filter.allows("other@contoso.com")

    def test_apply_with_key(self):
        email_filter = EmailListFilter(["b@contoso.com"])
        items = [{"upn": "a@contoso.com"}, {"upn": "b@contoso.com"}]
        assert email_filter.apply(items, key=lambda i: i["upn"]) == [{"upn": "a@contoso.com"}]

    async def test_build_without_cache(self):
        assert await build_email_filter(None, exclusive=True) is None

    async def test_build_from_cache(self):
        async def loader():
            return {"a@contoso.com"}

        email_filter = await build_email_filter(EmailListCache(loader), exclusive=True)
        assert email_filter.exclusive
        assert email_filter.allows("a@contoso.com")
