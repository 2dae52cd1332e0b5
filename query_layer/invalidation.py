import logging
from typing import Any, Dict, List, Optional

from .cache import CacheService

logger = logging.getLogger(__name__)


def table_tag(table_name: str) -> str:
    return f"table:{table_name.lower()}"


class InvalidationCoordinator:
    """Clears cached reads for a table after a successful write."""

    def __init__(self, cache: CacheService):
        self.cache = cache

    @staticmethod
    def tags_for(table_name: str, operation: str) -> List[str]:
        return [table_tag(table_name), f"operation:{operation}", "data_modification"]

    async def invalidate(
        self, table_name: str, operation: str, conditions: Optional[Dict[str, Any]] = None
    ) -> None:
        """Never raises; a failed invalidation only delays freshness until TTL."""
        try:
            await self.cache.invalidate_by_tags(self.tags_for(table_name, operation))
            logger.debug(
                "Cache invalidated for %s after %s (conditions=%s)",
                table_name,
                operation,
                sorted(conditions) if conditions else [],
            )
        except Exception as e:
            logger.warning("Cache invalidation failed for %s after %s: %s", table_name, operation, e)
