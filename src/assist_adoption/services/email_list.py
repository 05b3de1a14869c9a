"""Email list used to exclude users from tracking, or to restrict tracking to them.

The list is loaded over HTTP and held in an explicit expiring cache. The
cache instance is created once at startup and passed to the code that
needs it.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, FrozenSet, Iterable, List, Optional, Set

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=30)

EmailLoader = Callable[[], Awaitable[Set[str]]]


class EmailListError(Exception):
    """The email list could not be loaded."""

    pass


class HttpEmailListLoader:
    """Loads emails from a JSON endpoint.

    The endpoint may return a list of strings, a list of objects carrying
    the email under ``field``, or an object with the list under ``value``
    or ``items``. Objects may carry ``nextLink`` for the following page.
    """

    def __init__(
        self,
        url: str,
        field: str = "email",
        client: Optional[httpx.AsyncClient] = None,
        max_pages: int = 100,
    ):
        self.url = url
        self.field = field
        self._client = client
        self.max_pages = max_pages

    async def __call__(self) -> Set[str]:
        if self._client is not None:
            return await self._load(self._client)
        async with httpx.AsyncClient(timeout=30.0) as client:
            return await self._load(client)

    async def _load(self, client: httpx.AsyncClient) -> Set[str]:
        emails: Set[str] = set()
        next_url: Optional[str] = self.url

        for _ in range(self.max_pages):
            if not next_url:
                break
            try:
                response = await client.get(next_url)
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                raise EmailListError(f"Failed to load email list: {type(e).__name__}") from e

            items, next_url = self._split_page(data)
            for item in items:
                email = self._extract(item)
                if email:
                    emails.add(email.strip().lower())

        return emails

    def _split_page(self, data: Any):
        if isinstance(data, list):
            return data, None
        if isinstance(data, dict):
            items = data.get("value", data.get("items", []))
            return items or [], data.get("nextLink") or data.get("@odata.nextLink")
        raise EmailListError("Unexpected email list payload")

    def _extract(self, item: Any) -> Optional[str]:
        if isinstance(item, str):
            return item
        if isinstance(item, dict):
            value = item.get(self.field)
            if value is None and isinstance(item.get("fields"), dict):
                value = item["fields"].get(self.field)
            if isinstance(value, str):
                return value
        return None


@dataclass
class CacheInfo:
    """Snapshot of the cache state."""

    is_empty: bool
    email_count: int = 0
    cached_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_expired: bool = False
    time_until_expiry: timedelta = timedelta(0)


class EmailListCache:
    """Email set with an expiry, refreshed on demand under a lock."""

    def __init__(
        self,
        loader: EmailLoader,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._loader = loader
        self._ttl = ttl
        self._clock = clock
        self._lock = asyncio.Lock()
        self._emails: Optional[FrozenSet[str]] = None
        self._cached_at: Optional[datetime] = None
        self._expires_at: Optional[datetime] = None

    def _is_fresh(self) -> bool:
        return self._emails is not None and self._clock() <= self._expires_at

    async def get(self) -> FrozenSet[str]:
        """Return the cached set, loading it first when missing or expired."""
        if self._is_fresh():
            return self._emails

        async with self._lock:
            # Another task may have refreshed while we waited
            if self._is_fresh():
                return self._emails

            logger.info("Email list cache miss, loading")
            emails = await self._loader()
            now = self._clock()
            self._emails = frozenset(e.lower() for e in emails)
            self._cached_at = now
            self._expires_at = now + self._ttl
            logger.info("Cached %d emails until %s", len(self._emails), self._expires_at.isoformat())
            return self._emails

    def clear(self):
        self._emails = None
        self._cached_at = None
        self._expires_at = None

    def info(self) -> CacheInfo:
        if self._emails is None:
            return CacheInfo(is_empty=True)
        now = self._clock()
        expired = now > self._expires_at
        return CacheInfo(
            is_empty=False,
            email_count=len(self._emails),
            cached_at=self._cached_at,
            expires_at=self._expires_at,
            is_expired=expired,
            time_until_expiry=timedelta(0) if expired else self._expires_at - now,
        )


class EmailListFilter:
    """Decides whether a user is tracked.

    exclusive=True: the list is an inclusion list, only listed users are tracked.
    exclusive=False: the list is an exclusion list, listed users are dropped.
    """

    def __init__(self, emails: Iterable[str], exclusive: bool = False):
        self.emails = frozenset(e.lower() for e in emails)
        self.exclusive = exclusive

    def allows(self, email: str) -> bool:
        listed = email.lower() in self.emails
        return listed if self.exclusive else not listed

    def apply(self, items: Iterable[Any], key: Callable[[Any], str]) -> List[Any]:
        return [item for item in items if self.allows(key(item))]


async def build_email_filter(
    cache: Optional[EmailListCache], exclusive: bool
) -> Optional[EmailListFilter]:
    """Filter from the cached list, or None when no list is configured."""
    if cache is None:
        return None
    return EmailListFilter(await cache.get(), exclusive=exclusive)
