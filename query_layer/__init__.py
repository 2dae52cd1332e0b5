from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .builder import QueryBuilder
from .cache import CacheService, CacheStore, RedisCacheStore
from .config import Settings, load_settings
from .crud import CrudRepository
from .database import DatabaseConnector
from .engine import BulkQueryEngine
from .errors import (
    EmptyDataError,
    NoRowsAffectedError,
    NotFoundError,
    QueryLayerError,
    QueryTimeoutError,
    TransactionTimeoutError,
    ValidationError,
)
from .invalidation import InvalidationCoordinator
from .maintenance import MaintenanceService
from .models import (
    Aggregation,
    Between,
    Comparison,
    Join,
    OutBind,
    QueryResult,
    QuerySpec,
    Raw,
    RoutineInfo,
    TableSchema,
    WindowFunction,
)
from .routines import RoutineRunner
from .schema.catalog import SchemaCatalog
from .transaction import TransactionRunner


class QueryContext:
    """Owns one connector, cache and schema catalog and exposes every operation.

    ``db_connector`` and ``cache_store`` can be passed in to replace the
    Oracle pool and the Redis client.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        db_connector: Any = None,
        cache_store: Optional[CacheStore] = None,
    ):
        self.settings = settings or Settings()
        s = self.settings

        self.db_connector = db_connector or DatabaseConnector(
            s.connection_string,
            target_schema=s.target_schema,
            read_only=s.read_only,
            pool_min=s.pool_min,
            pool_max=s.pool_max,
        )
        if cache_store is None and s.redis_url:
            cache_store = RedisCacheStore(s.redis_url)
        self.cache_store = cache_store
        self.cache = CacheService(cache_store, s.cache_key_prefix, s.cache_default_ttl)

        self.catalog = SchemaCatalog(self.db_connector, self.cache, s.schema_cache_ttl)
        self.builder = QueryBuilder()
        self.coordinator = InvalidationCoordinator(self.cache)
        self.transactions = TransactionRunner(self.db_connector, s.transaction_timeout_ms)
        self.crud = CrudRepository(
            self.db_connector, self.catalog, self.builder, self.cache, self.coordinator
        )
        self.engine = BulkQueryEngine(
            self.db_connector, self.catalog, self.builder, self.crud,
            self.transactions, self.coordinator,
        )
        self.routines = RoutineRunner(
            self.db_connector, self.catalog, self.cache, self.transactions,
            self.coordinator, s.query_timeout_ms,
        )
        self.maintenance = MaintenanceService(
            self.db_connector, self.catalog, self.crud, self.transactions,
            self.coordinator, s.query_timeout_ms,
        )

    async def initialize(self) -> None:
        """Open the connection pool"""
        await self.db_connector.initialize_pool()

    async def close(self) -> None:
        await self.db_connector.close_pool()
        close_store = getattr(self.cache_store, "close", None)
        if close_store is not None:
            await close_store()

    # Schema

    async def get_schema(self, table_name: str) -> TableSchema:
        return await self.catalog.get_schema(table_name)

    async def invalidate_schema(self, table_name: str) -> None:
        await self.catalog.invalidate(table_name)

    def schema_cache_stats(self) -> Dict[str, Any]:
        return self.catalog.get_cache_stats()

    async def verify_table(self, table_name: str) -> Dict[str, Any]:
        return await self.crud.verify_table(table_name)

    # Writes

    async def insert(self, table: str, data: Dict[str, Any], **options) -> Optional[Dict[str, Any]]:
        return await self.crud.insert(table, data, **options)

    async def update(self, table: str, data: Dict[str, Any], where: Dict[str, Any], **options) -> Optional[Dict[str, Any]]:
        return await self.crud.update(table, data, where, **options)

    async def delete(self, table: str, where: Dict[str, Any], **options) -> Dict[str, Any]:
        return await self.crud.delete(table, where, **options)

    async def upsert(self, table: str, data: Dict[str, Any], **options) -> Optional[Dict[str, Any]]:
        return await self.crud.upsert(table, data, **options)

    async def bulk_insert(self, table: str, items: Sequence[Dict[str, Any]], **options) -> List[Any]:
        return await self.engine.bulk_insert(table, items, **options)

    async def bulk_update(self, table: str, items: Sequence[Dict[str, Any]], **options) -> List[Any]:
        return await self.engine.bulk_update(table, items, **options)

    # Reads

    async def advanced_query(self, table: str, spec: Optional[QuerySpec] = None, **options) -> List[Dict[str, Any]]:
        return await self.crud.advanced_query(table, spec, **options)

    async def find_by_id(self, table: str, record_id: Any, **options) -> Optional[Dict[str, Any]]:
        return await self.crud.find_by_id(table, record_id, **options)

    async def find_where(self, table: str, conditions: Optional[Dict[str, Any]] = None, **options) -> List[Dict[str, Any]]:
        return await self.crud.find_where(table, conditions, **options)

    async def count_records(self, table: str, conditions: Optional[Dict[str, Any]] = None, **options) -> int:
        return await self.crud.count_records(table, conditions, **options)

    async def get_top_records(self, table: str, limit: int = 10, **options) -> List[Dict[str, Any]]:
        return await self.crud.get_top_records(table, limit, **options)

    async def paginated_query(self, table: str, spec: Optional[QuerySpec] = None, **options) -> Dict[str, Any]:
        return await self.engine.paginated_query(table, spec, **options)

    async def aggregate(self, table: str, aggregations: Sequence[Any], **options) -> List[Dict[str, Any]]:
        return await self.engine.aggregate(table, aggregations, **options)

    async def window_query(self, table: str, windows: Sequence[Any], **options) -> List[Dict[str, Any]]:
        return await self.engine.window_query(table, windows, **options)

    async def range_query(self, table: str, column: str, start: Any = None, end: Any = None, **options) -> List[Dict[str, Any]]:
        return await self.engine.range_query(table, column, start, end, **options)

    async def full_text_search(self, table: str, term: str, search_columns: Sequence[str], **options) -> List[Dict[str, Any]]:
        return await self.engine.full_text_search(table, term, search_columns, **options)

    # Transactions

    async def with_transaction(
        self,
        unit_of_work: Callable[[Any], Awaitable[Any]],
        timeout_ms: Optional[int] = None,
        isolation_level: Optional[str] = None,
    ) -> Any:
        return await self.transactions.with_transaction(unit_of_work, timeout_ms, isolation_level)

    async def run_with_timeout(self, awaitable: Awaitable[Any], timeout_ms: Optional[int] = None) -> Any:
        if timeout_ms is None:
            timeout_ms = self.settings.query_timeout_ms
        return await self.transactions.run_with_timeout(awaitable, timeout_ms)

    # Stored procedures and functions

    async def get_routine(self, name: str) -> RoutineInfo:
        return await self.catalog.get_routine(name)

    async def describe_routine(self, name: str) -> Dict[str, Any]:
        return await self.routines.describe_routine(name)

    async def invalidate_routine(self, name: str) -> None:
        await self.catalog.invalidate_routine(name)

    async def list_routines(self, routine_type: Optional[str] = None, name_pattern: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.routines.list_routines(routine_type, name_pattern)

    async def execute_procedure(self, name: str, params: Sequence[Any] = (), **options) -> Dict[str, Any]:
        return await self.routines.execute_procedure(name, params, **options)

    async def execute_function(self, name: str, params: Sequence[Any] = (), **options) -> Dict[str, Any]:
        return await self.routines.execute_function(name, params, **options)

    async def execute_batch_procedures(self, procedures: Sequence[Dict[str, Any]], **options) -> List[Dict[str, Any]]:
        return await self.routines.execute_batch_procedures(procedures, **options)

    # Raw SQL and maintenance

    async def execute_raw_sql(self, sql: str, args: Any = None, **options) -> Any:
        return await self.maintenance.execute_raw_sql(sql, args, **options)

    async def execute_dynamic_sql(self, template: str, params: Optional[Dict[str, Any]] = None, **options) -> QueryResult:
        return await self.maintenance.execute_dynamic_sql(template, params, **options)

    async def health_check(self) -> Dict[str, Any]:
        return await self.maintenance.health_check()

    async def database_statistics(self, **options) -> Dict[str, Any]:
        return await self.maintenance.database_statistics(**options)

    async def backup_table(self, table: str, **options) -> Dict[str, Any]:
        return await self.maintenance.backup_table(table, **options)

    async def restore_table(self, table: str, backup: Dict[str, Any], **options) -> Dict[str, Any]:
        return await self.maintenance.restore_table(table, backup, **options)


__all__ = [
    "Aggregation",
    "Between",
    "Comparison",
    "DatabaseConnector",
    "EmptyDataError",
    "Join",
    "NoRowsAffectedError",
    "NotFoundError",
    "OutBind",
    "QueryContext",
    "QueryLayerError",
    "QueryResult",
    "QuerySpec",
    "QueryTimeoutError",
    "Raw",
    "RoutineInfo",
    "Settings",
    "TableSchema",
    "TransactionTimeoutError",
    "ValidationError",
    "WindowFunction",
    "load_settings",
]
