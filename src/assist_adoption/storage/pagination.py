"""Pagination helpers for table store queries.

Async generators that follow continuation tokens until the store reports
the last page.
"""

import logging
from typing import AsyncIterator, Optional

from .base import EntityFilter, QueryPage, TableEntity, TableStore

logger = logging.getLogger(__name__)


async def iter_pages(
    store: TableStore,
    table: str,
    entity_filter: Optional[EntityFilter] = None,
    *,
    page_size: int = 1000,
    max_pages: Optional[int] = None,
) -> AsyncIterator[QueryPage]:
    """Yield successive pages of a query.

    Args:
        store: Table store to query.
        table: Table name.
        entity_filter: Partition key filter. None scans the whole table.
        page_size: Entities per page.
        max_pages: Safety limit. None means unbounded.
    """
    continuation: Optional[str] = None
    pages = 0
    while True:
        page = await store.query_page(
            table, entity_filter, page_size=page_size, continuation=continuation
        )
        pages += 1
        yield page

        continuation = page.continuation
        if not continuation:
            break
        if max_pages is not None and pages >= max_pages:
            logger.warning("Stopped paging %s after %d pages", table, pages)
            break


async def iter_entities(
    store: TableStore,
    table: str,
    entity_filter: Optional[EntityFilter] = None,
    *,
    page_size: int = 1000,
) -> AsyncIterator[TableEntity]:
    """Yield every entity matching the filter, one page at a time."""
    async for page in iter_pages(store, table, entity_filter, page_size=page_size):
        for entity in page.entities:
            yield entity


async def list_entities(
    store: TableStore,
    table: str,
    entity_filter: Optional[EntityFilter] = None,
    *,
    page_size: int = 1000,
) -> list:
    """Collect every matching entity into a list. Use for small partitions only."""
    return [e async for e in iter_entities(store, table, entity_filter, page_size=page_size)]
