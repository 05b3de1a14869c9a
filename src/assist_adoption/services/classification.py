"""Host application tag to application bucket classification.

Every tag either maps to exactly one AppType or is reported unknown
(classify returns None). Unknown tags are counted in UnhandledAppHosts so
new hosts show up without being dropped.
"""

import logging
from typing import Callable, Dict, Optional, Union

from ..models.usage import AppType, InteractionRecord
from ..observability.metrics import record_unhandled_app_host
from ..storage import tables
from ..storage.base import TableEntity, TableStore
from ..storage.retry import write_with_retry

logger = logging.getLogger(__name__)

Rule = Union[AppType, Callable[[InteractionRecord], AppType]]

UNHANDLED_COUNT = "Count"
WEB_SEARCH_PLUGIN_ID = "BingWebSearch"


def _teams_rule(record: InteractionRecord) -> AppType:
    # Teams host without a Teams context is chat in the Teams shell
    if any(t.startswith("Teams") for t in record.context_types):
        return AppType.TEAMS
    return AppType.COPILOT_CHAT


def _office_rule(record: InteractionRecord) -> AppType:
    if record.agent_id:
        return AppType.AGENT
    return AppType.COPILOT_CHAT


HOST_DISPATCH: Dict[str, Rule] = {
    "Word": AppType.WORD,
    "Excel": AppType.EXCEL,
    "PowerPoint": AppType.POWERPOINT,
    "OneNote": AppType.ONENOTE,
    "Outlook": AppType.OUTLOOK,
    "Loop": AppType.LOOP,
    "Whiteboard": AppType.WHITEBOARD,
    "Teams": _teams_rule,
    "Office": _office_rule,
    "Edge": AppType.COPILOT_CHAT,
    "Designer": AppType.DESIGNER,
    "SharePoint": AppType.SHAREPOINT,
    "M365AdminCenter": AppType.MAC,
    "OAIAutomationAgent": AppType.COPILOT_ACTION,
    "Copilot Studio": AppType.COPILOT_STUDIO,
    "Forms": AppType.FORMS,
}


def classify(record: InteractionRecord) -> Optional[AppType]:
    """Map an interaction to its application bucket, or None for an unknown host."""
    rule = HOST_DISPATCH.get(record.app_host)
    if rule is None:
        return None
    if isinstance(rule, AppType):
        return rule
    return rule(record)


def uses_web_search(record: InteractionRecord) -> bool:
    return WEB_SEARCH_PLUGIN_ID in record.plugin_ids


class UnhandledHostCounter:
    """Counts occurrences of host tags missing from HOST_DISPATCH."""

    def __init__(self, store: TableStore):
        self._store = store

    async def record(self, app_host: str, count: int = 1):
        """Add count occurrences for app_host. Entity key is (tag, tag)."""
        # Store keys cannot be empty
        key = app_host or "(empty)"

        def bump(current: Optional[TableEntity]) -> TableEntity:
            if current is None:
                return TableEntity(key, key, {UNHANDLED_COUNT: count})
            updated = current.with_keys(key, key)
            updated[UNHANDLED_COUNT] = int(current.get(UNHANDLED_COUNT, 0)) + count
            return updated

        await write_with_retry(self._store, tables.UNHANDLED_APP_HOSTS, key, key, bump)
        record_unhandled_app_host(count)
        logger.warning("Unhandled app host '%s' (+%d)", app_host, count)

    async def get_count(self, app_host: str) -> int:
        key = app_host or "(empty)"
        entity = await self._store.get_entity(tables.UNHANDLED_APP_HOSTS, key, key)
        return int(entity.get(UNHANDLED_COUNT, 0)) if entity else 0
