import logging
import time
from typing import Any, Dict

from ..cache import CacheService
from ..errors import NotFoundError
from ..guard import validate_identifier
from ..models import ColumnInfo, RoutineInfo, RoutineParameter, TableSchema

logger = logging.getLogger(__name__)


class SchemaCatalog:
    """Resolves table metadata through two cache tiers before hitting the catalog.

    The process-local map lives until ``invalidate``/``clear``; the external
    tier expires after ``ttl`` seconds. Concurrent misses for the same table
    simply load it twice, both loads producing the same snapshot.
    """

    def __init__(self, db_connector: Any, cache: CacheService, ttl: int = 3600):
        self.db_connector = db_connector
        self.cache = cache
        self.ttl = ttl
        self.tables: Dict[str, TableSchema] = {}
        self.routines: Dict[str, RoutineInfo] = {}
        self.cache_stats = {
            'local_hits': 0,
            'external_hits': 0,
            'misses': 0,
            'last_clear': time.time()
        }

    @staticmethod
    def cache_key(table_name: str) -> str:
        return f"schema:{table_name.lower()}"

    async def get_schema(self, table_name: str) -> TableSchema:
        """Get schema information for a table, loading it if necessary"""
        validate_identifier(table_name, "table name")
        key = self.cache_key(table_name)

        schema = self.tables.get(key)
        if schema is not None:
            self.cache_stats['local_hits'] += 1
            return schema

        cached = await self.cache.get(key)
        if cached:
            try:
                schema = TableSchema.from_dict(cached)
            except (KeyError, TypeError) as e:
                logger.warning("Discarding malformed cached schema for %s: %s", table_name, e)
            else:
                self.cache_stats['external_hits'] += 1
                self.tables[key] = schema
                return schema

        self.cache_stats['misses'] += 1
        logger.info("Loading schema for table %s from catalog", table_name)
        details = await self.db_connector.load_table_details(table_name)
        if not details or not details.get("columns"):
            raise NotFoundError(f"Table '{table_name}' not found", {"table": table_name})

        schema = TableSchema(
            table_name=table_name.lower(),
            columns={name: ColumnInfo(**info) for name, info in details["columns"].items()},
            primary_key=tuple(details.get("primary_key") or ()),
            last_updated=time.time(),
        )
        await self.cache.set(key, schema.to_dict(), self.ttl)
        self.tables[key] = schema
        return schema

    async def invalidate(self, table_name: str) -> None:
        """Drop a table from both tiers so the next lookup reloads it"""
        key = self.cache_key(table_name)
        self.tables.pop(key, None)
        await self.cache.delete(key)

    @staticmethod
    def routine_key(routine_name: str) -> str:
        return f"procedure:{routine_name.lower()}"

    async def get_routine(self, routine_name: str) -> RoutineInfo:
        """Get the signature of a stored procedure or function, loading it if necessary"""
        validate_identifier(routine_name, "routine name")
        key = self.routine_key(routine_name)

        routine = self.routines.get(key)
        if routine is not None:
            self.cache_stats['local_hits'] += 1
            return routine

        cached = await self.cache.get(key)
        if cached:
            try:
                routine = RoutineInfo.from_dict(cached)
            except (KeyError, TypeError) as e:
                logger.warning("Discarding malformed cached signature for %s: %s", routine_name, e)
            else:
                self.cache_stats['external_hits'] += 1
                self.routines[key] = routine
                return routine

        self.cache_stats['misses'] += 1
        logger.info("Loading signature for routine %s from catalog", routine_name)
        details = await self.db_connector.load_routine_details(routine_name)
        if not details:
            raise NotFoundError(f"Procedure '{routine_name}' not found", {"routine": routine_name})

        routine = RoutineInfo(
            name=routine_name.lower(),
            routine_type=details["routine_type"],
            parameters=tuple(RoutineParameter(**p) for p in details["parameters"]),
            return_type=details.get("return_type"),
            last_updated=time.time(),
        )
        await self.cache.set(key, routine.to_dict(), self.ttl)
        self.routines[key] = routine
        return routine

    async def invalidate_routine(self, routine_name: str) -> None:
        key = self.routine_key(routine_name)
        self.routines.pop(key, None)
        await self.cache.delete(key)

    def clear(self) -> None:
        self.tables.clear()
        self.routines.clear()
        self.cache_stats['last_clear'] = time.time()

    def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        return {
            **self.cache_stats,
            'size': len(self.tables),
            'tables': sorted(schema.table_name for schema in self.tables.values()),
            'routines': sorted(routine.name for routine in self.routines.values()),
        }
