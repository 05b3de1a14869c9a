"""Read-modify-write with optimistic concurrency.

The caller supplies a pure function from the current entity (or None) to
the entity to write (or None for no write). On a lost race the entity is
re-read and the function reapplied, a bounded number of times.
"""

import logging
from typing import Callable, Optional

from ..observability.metrics import record_conflict_retry
from .base import TableEntity, TableStore, UpdateMode
from .exceptions import AlreadyExistsError, ConflictError, NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 1

Mutation = Callable[[Optional[TableEntity]], Optional[TableEntity]]


async def write_with_retry(
    store: TableStore,
    table: str,
    partition_key: str,
    row_key: str,
    mutate: Mutation,
    *,
    mode: UpdateMode = UpdateMode.MERGE,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> Optional[TableEntity]:
    """Apply mutate to the stored entity under its version token.

    Retries on:
      - ConflictError (stale etag on update)
      - AlreadyExistsError (lost a create race)
      - NotFoundError (entity removed between read and update)

    Args:
        store: Table store.
        table: Table name.
        partition_key: Partition key of the target entity.
        row_key: Row key of the target entity.
        mutate: Maps the current entity (None when absent) to the entity
            to write, or None to leave the store untouched.
        mode: Update mode for existing entities.
        max_retries: Re-fetch attempts after the first write fails (default 1).

    Returns:
        The written entity, or the current one when mutate returned None.

    Raises:
        The last store error once retries are exhausted.
    """
    for attempt in range(max_retries + 1):
        current = await store.get_entity(table, partition_key, row_key)
        desired = mutate(current)
        if desired is None:
            return current

        try:
            if current is None:
                return await store.add_entity(table, desired)
            return await store.update_entity(table, desired, mode=mode, etag=current.etag)

        except (ConflictError, AlreadyExistsError, NotFoundError) as exc:
            if attempt >= max_retries:
                raise
            logger.warning(
                "Concurrent write on %s (attempt %d/%d), re-fetching: %s",
                table,
                attempt + 1,
                max_retries,
                type(exc).__name__,
            )
            record_conflict_retry(table)

    return None  # pragma: no cover
