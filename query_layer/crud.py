import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .builder import QueryBuilder
from .cache import CacheService, hash_key
from .errors import EmptyDataError, NoRowsAffectedError, NotFoundError, ValidationError
from .guard import validate_identifier
from .invalidation import InvalidationCoordinator, table_tag
from .models import CREATED_AT, DELETED_AT, UPDATED_AT, QuerySpec, TableSchema
from .schema.catalog import SchemaCatalog

logger = logging.getLogger(__name__)

CONFLICT_ACTIONS = {"ignore", "update"}


def utc_now() -> datetime:
    # TIMESTAMP columns carry no zone; store naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CrudRepository:
    """Single-row writes and cached reads for any table known to the catalog.

    Writes are strict (unknown where-columns raise) and invalidate the table's
    cached reads once they succeed. The ``execute_*`` variants run on a caller
    owned connection and leave invalidation to the caller; the bulk engine uses
    them inside one transaction.
    """

    def __init__(
        self,
        db_connector: Any,
        catalog: SchemaCatalog,
        builder: QueryBuilder,
        cache: CacheService,
        coordinator: InvalidationCoordinator,
    ):
        self.db_connector = db_connector
        self.catalog = catalog
        self.builder = builder
        self.cache = cache
        self.coordinator = coordinator

    # Writes

    async def insert(
        self,
        table: str,
        data: Dict[str, Any],
        on_conflict: Optional[str] = None,
        conflict_columns: Optional[Sequence[str]] = None,
        returning: Any = "*",
    ) -> Optional[Dict[str, Any]]:
        schema = await self.catalog.get_schema(table)
        row = await self.execute_insert(
            table, schema, data, on_conflict=on_conflict,
            conflict_columns=conflict_columns, returning=returning,
        )
        await self.coordinator.invalidate(table, "insert", data)
        return row

    async def update(
        self,
        table: str,
        data: Dict[str, Any],
        where: Dict[str, Any],
        optimistic_locking: bool = False,
        version_column: str = "version",
        returning: Any = "*",
    ) -> Optional[Dict[str, Any]]:
        schema = await self.catalog.get_schema(table)
        row = await self.execute_update(
            table, schema, data, where, optimistic_locking=optimistic_locking,
            version_column=version_column, returning=returning,
        )
        await self.coordinator.invalidate(table, "update", where)
        return row

    async def delete(
        self,
        table: str,
        where: Dict[str, Any],
        soft_delete: Optional[bool] = None,
        force: bool = False,
        returning: Any = None,
        missing_ok: bool = False,
    ) -> Dict[str, Any]:
        """Delete rows, softly when the table has ``deleted_at`` unless told otherwise.

        Returns ``{"row_count", "soft_delete", "rows"}``; ``rows`` holds the
        ``returning`` columns of the affected rows.
        """
        if not where and not force:
            raise ValidationError(
                "Delete without conditions requires force=True", {"table": table}
            )
        schema = await self.catalog.get_schema(table)
        soft = schema.has_deleted_at if soft_delete is None else bool(soft_delete)
        if soft and not schema.has_deleted_at:
            raise ValidationError(
                f"Table '{table}' has no deleted_at column for a soft delete", {"table": table}
            )

        columns = self.builder.resolve_returning(schema, returning)
        sql, args = self.builder.build_delete(table, schema, where or {}, soft, columns)
        result = await self.db_connector.query(sql, args)

        if result.row_count == 0 and not missing_ok:
            raise NoRowsAffectedError(
                f"No rows deleted from '{table}': record not found or already deleted",
                {"table": table, "where": sorted(where or {})},
            )

        await self.coordinator.invalidate(table, "delete", where)
        return {"row_count": result.row_count, "soft_delete": soft, "rows": result.rows}

    async def upsert(
        self,
        table: str,
        data: Dict[str, Any],
        conflict_columns: Optional[Sequence[str]] = None,
        exclude_from_update: Iterable[str] = (),
    ) -> Optional[Dict[str, Any]]:
        schema = await self.catalog.get_schema(table)
        values = self.prepare_data(schema, data, creating=True)
        conflict = self.conflict_columns(schema, conflict_columns)
        excluded = {column.lower() for column in exclude_from_update}
        update_columns = [
            column for column in values
            if column not in conflict and column not in excluded and column != CREATED_AT
        ]
        row = await self._merge(table, schema, values, conflict, update_columns)
        await self.coordinator.invalidate(table, "upsert", data)
        return row

    async def execute_insert(
        self,
        table: str,
        schema: TableSchema,
        data: Dict[str, Any],
        on_conflict: Optional[str] = None,
        conflict_columns: Optional[Sequence[str]] = None,
        returning: Any = "*",
        connection=None,
    ) -> Optional[Dict[str, Any]]:
        values = self.prepare_data(schema, data, creating=True)

        if on_conflict:
            if on_conflict not in CONFLICT_ACTIONS:
                raise ValidationError(
                    f"Unsupported on_conflict action: {on_conflict!r}",
                    {"allowed": sorted(CONFLICT_ACTIONS)},
                )
            conflict = self.conflict_columns(schema, conflict_columns)
            update_columns = None
            if on_conflict == "update":
                update_columns = [c for c in values if c not in conflict and c != CREATED_AT]
            return await self._merge(table, schema, values, conflict, update_columns, connection)

        columns = self.builder.resolve_returning(schema, returning)
        sql, args = self.builder.build_insert(table, schema, values, columns)
        result = await self.db_connector.query(sql, args, connection=connection)
        return result.rows[0] if result.rows else None

    async def execute_update(
        self,
        table: str,
        schema: TableSchema,
        data: Dict[str, Any],
        where: Dict[str, Any],
        optimistic_locking: bool = False,
        version_column: str = "version",
        returning: Any = "*",
        connection=None,
    ) -> Optional[Dict[str, Any]]:
        values = self.prepare_data(schema, data, creating=False)
        conditions = dict(where or {})

        version_column = validate_identifier(version_column, "version column").lower()
        if optimistic_locking and schema.has_column(version_column) and version_column in values:
            current = values[version_column]
            conditions[version_column] = current
            values[version_column] = current + 1

        columns = self.builder.resolve_returning(schema, returning)
        sql, args = self.builder.build_update(table, schema, values, conditions, columns)
        result = await self.db_connector.query(sql, args, connection=connection)

        if result.row_count == 0:
            raise NoRowsAffectedError(
                f"No rows updated in '{table}': record not found or version conflict",
                {"table": table, "where": sorted(conditions)},
            )
        return result.rows[0] if result.rows else None

    async def _merge(
        self,
        table: str,
        schema: TableSchema,
        values: Dict[str, Any],
        conflict: List[str],
        update_columns: Optional[List[str]],
        connection=None,
    ) -> Optional[Dict[str, Any]]:
        """MERGE, then re-read the row by its conflict values on the same connection."""
        sql, args = self.builder.build_merge(table, schema, values, conflict, update_columns)
        key = {column: values[column] for column in conflict}

        async def run(conn):
            await self.db_connector.query(sql, args, connection=conn)
            select_sql, select_args = self.builder.build_select(
                table, QuerySpec(where=key, include_soft_deleted=True, limit=1), schema
            )
            result = await self.db_connector.query(select_sql, select_args, connection=conn)
            return result.rows[0] if result.rows else None

        if connection is not None:
            return await run(connection)

        async def run_and_commit(conn):
            try:
                row = await run(conn)
                await self.db_connector.commit(conn)
                return row
            except BaseException:
                await self.db_connector.rollback(conn)
                raise

        return await self.db_connector.with_connection(run_and_commit)

    def prepare_data(self, schema: TableSchema, data: Dict[str, Any], creating: bool) -> Dict[str, Any]:
        """Copy ``data`` keeping schema columns only, then stamp audit timestamps."""
        values = {}
        for key, value in (data or {}).items():
            if schema.has_column(key):
                values[key.lower()] = value
            else:
                logger.warning("Column '%s' not found in table '%s', skipping", key, schema.table_name)

        if not values:
            raise EmptyDataError(
                f"No valid columns to write for table '{schema.table_name}'",
                {"table": schema.table_name, "provided": sorted(data or {})},
            )

        now = utc_now()
        if creating and schema.has_created_at and CREATED_AT not in values:
            values[CREATED_AT] = now
        if schema.has_updated_at and UPDATED_AT not in values:
            values[UPDATED_AT] = now
        return values

    @staticmethod
    def conflict_columns(schema: TableSchema, conflict_columns: Optional[Sequence[str]]) -> List[str]:
        columns = [column.lower() for column in (conflict_columns or schema.primary_key)]
        if not columns:
            raise ValidationError(
                f"No conflict columns given and table '{schema.table_name}' has no primary key",
                {"table": schema.table_name},
            )
        unknown = [column for column in columns if not schema.has_column(column)]
        if unknown:
            raise ValidationError(
                f"Conflict columns not found in table '{schema.table_name}': {', '.join(unknown)}",
                {"table": schema.table_name, "columns": unknown},
            )
        return columns

    # Reads

    async def cached(self, table: str, key: str, loader, use_cache: bool, cache_ttl: Optional[int]) -> Any:
        if not use_cache:
            return await loader()
        return await self.cache.remember(key, loader, cache_ttl, tags=[table_tag(table)])

    async def _rows(self, sql: str, args: List[Any]) -> List[Dict[str, Any]]:
        return (await self.db_connector.query(sql, args)).rows

    async def advanced_query(
        self,
        table: str,
        spec: Optional[QuerySpec] = None,
        use_cache: bool = True,
        cache_ttl: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        schema = await self.catalog.get_schema(table)
        sql, args = self.builder.build_select(table, spec or QuerySpec(), schema)
        key = f"query:{table.lower()}:{hash_key(sql, args)}"
        return await self.cached(table, key, lambda: self._rows(sql, args), use_cache, cache_ttl)

    async def find_by_id(
        self,
        table: str,
        record_id: Any,
        include_soft_deleted: bool = False,
        use_cache: bool = True,
        cache_ttl: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        schema = await self.catalog.get_schema(table)
        if not schema.primary_key:
            raise NotFoundError(f"Table '{table}' has no primary key", {"table": table})
        pk = schema.primary_key[0]

        spec = QuerySpec(where={pk: record_id}, include_soft_deleted=include_soft_deleted, limit=1)
        sql, args = self.builder.build_select(table, spec, schema)
        key = f"record:{table.lower()}:{pk}:{record_id}:{int(include_soft_deleted)}"
        rows = await self.cached(table, key, lambda: self._rows(sql, args), use_cache, cache_ttl)
        return rows[0] if rows else None

    async def find_where(
        self,
        table: str,
        conditions: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        include_soft_deleted: bool = False,
        select: str = "*",
        use_cache: bool = True,
        cache_ttl: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Rows matching ``conditions``, newest first unless ``order_by`` says otherwise."""
        schema = await self.catalog.get_schema(table)
        if order_by is None:
            if schema.has_created_at:
                order_by = f"{CREATED_AT} DESC"
            elif schema.primary_key:
                order_by = f"{schema.primary_key[0]} DESC"

        spec = QuerySpec(
            select=select,
            where=dict(conditions or {}),
            order_by=order_by,
            limit=limit,
            offset=offset,
            include_soft_deleted=include_soft_deleted,
        )
        sql, args = self.builder.build_select(table, spec, schema)
        key = f"query:{table.lower()}:{hash_key(sql, args)}"
        return await self.cached(table, key, lambda: self._rows(sql, args), use_cache, cache_ttl)

    async def count_records(
        self,
        table: str,
        conditions: Optional[Dict[str, Any]] = None,
        include_soft_deleted: bool = False,
        use_cache: bool = True,
        cache_ttl: Optional[int] = None,
    ) -> int:
        schema = await self.catalog.get_schema(table)
        spec = QuerySpec(where=dict(conditions or {}), include_soft_deleted=include_soft_deleted)
        sql, args = self.builder.build_count(table, spec, schema)

        async def load() -> int:
            rows = await self._rows(sql, args)
            return int(rows[0]["total"]) if rows else 0

        key = f"count:{table.lower()}:{hash_key(sql, args)}"
        return await self.cached(table, key, load, use_cache, cache_ttl)

    async def get_top_records(
        self,
        table: str,
        limit: int = 10,
        order_by: Optional[str] = None,
        order_direction: str = "DESC",
        use_cache: bool = True,
        cache_ttl: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        schema = await self.catalog.get_schema(table)
        column = self.default_order_column(schema, order_by)
        direction = "ASC" if str(order_direction).upper() == "ASC" else "DESC"
        return await self.advanced_query(
            table,
            QuerySpec(order_by=f"{column} {direction}", limit=limit),
            use_cache=use_cache,
            cache_ttl=cache_ttl,
        )

    @staticmethod
    def default_order_column(schema: TableSchema, order_by: Optional[str] = None) -> str:
        if order_by and schema.has_column(order_by):
            return order_by.lower()
        if order_by:
            logger.warning(
                "Order by column '%s' not found in table '%s', using default", order_by, schema.table_name
            )
        if schema.has_created_at:
            return CREATED_AT
        if schema.primary_key:
            return schema.primary_key[0]
        return next(iter(schema.columns))

    async def verify_table(self, table: str) -> Dict[str, Any]:
        """Report whether a table exists, its shape, and missing audit indexes."""
        validate_identifier(table, "table name")
        if not await self.db_connector.table_exists(table):
            return {"table": table.lower(), "exists": False}

        schema = await self.catalog.get_schema(table)
        indexes = await self.db_connector.load_table_indexes(table)
        leading = {index["columns"][0] for index in indexes if index["columns"]}

        recommendations = []
        for column in (CREATED_AT, DELETED_AT):
            if schema.has_column(column) and column not in leading:
                recommendations.append(f"Consider adding an index on {schema.table_name}({column})")

        return {
            "table": schema.table_name,
            "exists": True,
            "schema": schema.describe(),
            "indexes": indexes,
            "recommendations": recommendations,
        }
