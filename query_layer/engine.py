"""Pagination, bulk writes and the analytic read variants.

Every variant composes a ``QuerySpec`` and hands it to the builder, so the
identifier allow-list and fragment guard apply unchanged.
"""
import logging
import math
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .builder import QueryBuilder
from .cache import hash_key
from .crud import CrudRepository
from .errors import ValidationError
from .guard import validate_identifier
from .invalidation import InvalidationCoordinator
from .models import (
    CREATED_AT,
    Aggregation,
    Between,
    Comparison,
    QuerySpec,
    Raw,
    TableSchema,
    WindowFunction,
)
from .schema.catalog import SchemaCatalog
from .transaction import TransactionRunner

logger = logging.getLogger(__name__)

AGGREGATE_FUNCTIONS = {"COUNT", "SUM", "AVG", "MIN", "MAX"}
RANKING_FUNCTIONS = {"ROW_NUMBER", "RANK", "DENSE_RANK"}
OFFSET_FUNCTIONS = {"LAG", "LEAD"}
WINDOW_FUNCTIONS = RANKING_FUNCTIONS | OFFSET_FUNCTIONS | AGGREGATE_FUNCTIONS


def _direction(value: Optional[str]) -> str:
    direction = str(value or "").upper()
    return direction if direction in ("ASC", "DESC") else "DESC"


def _chunks(items: Sequence[Any], size: int):
    size = max(int(size), 1)
    for start in range(0, len(items), size):
        yield items[start:start + size]


class BulkQueryEngine:
    def __init__(
        self,
        db_connector: Any,
        catalog: SchemaCatalog,
        builder: QueryBuilder,
        crud: CrudRepository,
        transactions: TransactionRunner,
        coordinator: InvalidationCoordinator,
    ):
        self.db_connector = db_connector
        self.catalog = catalog
        self.builder = builder
        self.crud = crud
        self.transactions = transactions
        self.coordinator = coordinator

    async def _select(
        self,
        table: str,
        schema: TableSchema,
        spec: QuerySpec,
        prefix: str,
        use_cache: bool,
        cache_ttl: Optional[int],
    ) -> List[Dict[str, Any]]:
        sql, args = self.builder.build_select(table, spec, schema)

        async def load():
            return (await self.db_connector.query(sql, args)).rows

        key = f"{prefix}:{table.lower()}:{hash_key(sql, args)}"
        return await self.crud.cached(table, key, load, use_cache, cache_ttl)

    @staticmethod
    def _column(schema: TableSchema, name: str, context: str) -> str:
        if not isinstance(name, str) or not schema.has_column(name):
            raise ValidationError(
                f"{context} column '{name}' not found in table '{schema.table_name}'",
                {"table": schema.table_name, "column": name},
            )
        return name.lower()

    @staticmethod
    def _page_ordering(schema: TableSchema, order_by: Optional[str], order_direction: str) -> str:
        parts = (order_by or CREATED_AT).split()
        column = parts[0]
        direction = _direction(parts[1] if len(parts) > 1 else order_direction)
        if len(parts) > 2 or not schema.has_column(column):
            if order_by:
                logger.warning(
                    "Order by column '%s' not found in table '%s', using primary key",
                    order_by, schema.table_name,
                )
            column = schema.primary_key[0] if schema.primary_key else next(iter(schema.columns))
        return f"{column.lower()} {direction}"

    async def paginated_query(
        self,
        table: str,
        spec: Optional[QuerySpec] = None,
        page: int = 1,
        limit: int = 10,
        order_by: Optional[str] = None,
        order_direction: str = "DESC",
        include_count: bool = True,
        max_limit: int = 100,
        use_cache: bool = False,
        cache_ttl: Optional[int] = None,
    ) -> Dict[str, Any]:
        """One page of rows plus pagination metadata.

        ``page`` and ``limit`` are clamped into range. ``order_by`` names a
        single column, optionally followed by ASC or DESC which then wins over
        ``order_direction``. Without it ``spec.order_by`` is used, and
        failing that ``created_at``; an unknown column falls back to the first
        primary-key column.
        """
        page = max(int(page or 1), 1)
        limit = min(max(int(10 if limit is None else limit), 1), max(int(max_limit), 1))
        offset = (page - 1) * limit

        schema = await self.catalog.get_schema(table)
        base = spec or QuerySpec()
        if order_by is None and base.order_by:
            ordering = base.order_by
        else:
            ordering = self._page_ordering(schema, order_by, order_direction)

        page_spec = replace(base, order_by=ordering, limit=limit, offset=offset)
        sql, args = self.builder.build_select(table, page_spec, schema)
        count_sql, count_args = self.builder.build_count(table, base, schema)

        async def load() -> Dict[str, Any]:
            rows = (await self.db_connector.query(sql, args)).rows
            total = None
            if include_count:
                counted = (await self.db_connector.query(count_sql, count_args)).rows
                total = int(counted[0]["total"]) if counted else 0
            return {"rows": rows, "total": total}

        key = f"page:{table.lower()}:{hash_key(sql, args, include_count)}"
        loaded = await self.crud.cached(table, key, load, use_cache, cache_ttl)
        rows, total = loaded["rows"], loaded["total"]

        if total is not None:
            total_pages = math.ceil(total / limit)
            has_next_page = page < total_pages
        else:
            total_pages = None
            # Without a count a full page is the only hint that more rows exist
            has_next_page = len(rows) == limit

        return {
            "data": rows,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": total_pages,
                "has_next_page": has_next_page,
                "has_prev_page": page > 1,
                "offset": offset,
            },
        }

    async def bulk_insert(
        self,
        table: str,
        items: Sequence[Dict[str, Any]],
        batch_size: int = 100,
        on_conflict: Optional[str] = None,
        conflict_columns: Optional[Sequence[str]] = None,
        returning: Any = "*",
        timeout_ms: Optional[int] = None,
    ) -> List[Optional[Dict[str, Any]]]:
        """Insert every item in one transaction; any failure rolls back all of them."""
        items = list(items or [])
        if not items:
            return []
        schema = await self.catalog.get_schema(table)

        async def work(conn):
            results = []
            for number, chunk in enumerate(_chunks(items, batch_size), start=1):
                for item in chunk:
                    results.append(await self.crud.execute_insert(
                        table, schema, item, on_conflict=on_conflict,
                        conflict_columns=conflict_columns, returning=returning,
                        connection=conn,
                    ))
                logger.debug("Bulk insert into %s: batch %d done (%d rows)", table, number, len(results))
            return results

        results = await self.transactions.with_transaction(work, timeout_ms=timeout_ms)
        await self.coordinator.invalidate(table, "bulk_insert")
        logger.info("Bulk inserted %d rows into %s", len(results), table)
        return results

    async def bulk_update(
        self,
        table: str,
        items: Sequence[Mapping[str, Any]],
        batch_size: int = 100,
        optimistic_locking: bool = False,
        version_column: str = "version",
        returning: Any = "*",
        timeout_ms: Optional[int] = None,
    ) -> List[Optional[Dict[str, Any]]]:
        """Apply ``{"where": ..., "data": ...}`` items in one transaction."""
        items = list(items or [])
        if not items:
            return []
        for index, item in enumerate(items):
            if not item.get("where") or not item.get("data"):
                raise ValidationError(
                    f"Bulk update item {index} needs both 'where' and 'data'",
                    {"table": table, "index": index},
                )
        schema = await self.catalog.get_schema(table)

        async def work(conn):
            results = []
            for chunk in _chunks(items, batch_size):
                for item in chunk:
                    results.append(await self.crud.execute_update(
                        table, schema, item["data"], item["where"],
                        optimistic_locking=optimistic_locking,
                        version_column=version_column, returning=returning,
                        connection=conn,
                    ))
            return results

        results = await self.transactions.with_transaction(work, timeout_ms=timeout_ms)
        await self.coordinator.invalidate(table, "bulk_update")
        logger.info("Bulk updated %d rows in %s", len(results), table)
        return results

    async def aggregate(
        self,
        table: str,
        aggregations: Sequence[Union[Aggregation, Mapping[str, Any]]],
        where: Optional[Dict[str, Any]] = None,
        group_by: Sequence[str] = (),
        having: Optional[str] = None,
        order_by: Optional[str] = None,
        use_cache: bool = True,
        cache_ttl: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        if not aggregations:
            raise ValidationError("At least one aggregation is required", {"table": table})
        schema = await self.catalog.get_schema(table)

        groups = [self._column(schema, column, "Group by") for column in group_by]
        expressions = []
        aliases = []
        for aggregation in aggregations:
            if isinstance(aggregation, Mapping):
                aggregation = Aggregation(**aggregation)
            function = str(aggregation.function).upper()
            if function not in AGGREGATE_FUNCTIONS:
                raise ValidationError(
                    f"Unsupported aggregate function: {aggregation.function!r}",
                    {"allowed": sorted(AGGREGATE_FUNCTIONS)},
                )
            if aggregation.column == "*":
                if function != "COUNT":
                    raise ValidationError(f"{function} needs a column", {"table": table})
                argument, label = "*", "all"
            else:
                argument = label = self._column(schema, aggregation.column, "Aggregate")
            if aggregation.distinct:
                argument = f"DISTINCT {argument}"
            alias = validate_identifier(
                aggregation.alias or f"{function.lower()}_{label}", "alias"
            ).lower()
            expressions.append(f"{function}({argument}) AS {alias}")
            aliases.append(alias)

        spec = QuerySpec(
            select=", ".join(groups + expressions),
            where=dict(where or {}),
            group_by=", ".join(groups) or None,
            having=having,
            order_by=order_by,
            aliases=tuple(aliases),
        )
        return await self._select(table, schema, spec, "aggregate", use_cache, cache_ttl)

    async def window_query(
        self,
        table: str,
        windows: Sequence[Union[WindowFunction, Mapping[str, Any]]],
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        use_cache: bool = False,
        cache_ttl: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Every row of ``table`` plus one computed column per window function."""
        if not windows:
            raise ValidationError("At least one window function is required", {"table": table})
        schema = await self.catalog.get_schema(table)

        expressions = []
        aliases = []
        for window in windows:
            if isinstance(window, Mapping):
                window = WindowFunction(**window)
            function = str(window.function).upper()
            if function not in WINDOW_FUNCTIONS:
                raise ValidationError(
                    f"Unsupported window function: {window.function!r}",
                    {"allowed": sorted(WINDOW_FUNCTIONS)},
                )

            if function in RANKING_FUNCTIONS:
                argument = ""
            elif window.column:
                argument = self._column(schema, window.column, "Window")
            else:
                raise ValidationError(f"{function} needs a column", {"table": table})

            over = []
            if window.partition_by:
                partitions = [self._column(schema, c, "Partition") for c in window.partition_by]
                over.append("PARTITION BY " + ", ".join(partitions))
            if window.order_by:
                over.append(
                    f"ORDER BY {self._column(schema, window.order_by, 'Window order')} "
                    f"{_direction(window.order_direction or 'ASC')}"
                )
            elif function in RANKING_FUNCTIONS or function in OFFSET_FUNCTIONS:
                raise ValidationError(f"{function} needs an order_by column", {"table": table})

            alias = validate_identifier(window.alias, "alias").lower()
            expressions.append(f"{function}({argument}) OVER ({' '.join(over)}) AS {alias}")
            aliases.append(alias)

        spec = QuerySpec(
            select=", ".join([f"{table}.*"] + expressions),
            where=dict(where or {}),
            order_by=order_by,
            limit=limit,
            aliases=tuple(aliases),
        )
        return await self._select(table, schema, spec, "window", use_cache, cache_ttl)

    async def range_query(
        self,
        table: str,
        column: str,
        start: Any = None,
        end: Any = None,
        inclusive: bool = True,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        use_cache: bool = True,
        cache_ttl: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Rows whose ``column`` lies between ``start`` and ``end``; either bound may be None."""
        schema = await self.catalog.get_schema(table)
        column = self._column(schema, column, "Range")
        if start is None and end is None:
            raise ValidationError("Range query needs a start or an end", {"table": table})

        if start is not None and end is not None and inclusive:
            predicates = [Between(column, start, end)]
        else:
            predicates = []
            if start is not None:
                predicates.append(Comparison(column, ">=" if inclusive else ">", start))
            if end is not None:
                predicates.append(Comparison(column, "<=" if inclusive else "<", end))

        spec = QuerySpec(
            where=dict(where or {}),
            predicates=predicates,
            order_by=order_by or f"{column} ASC",
            limit=limit,
        )
        return await self._select(table, schema, spec, "range", use_cache, cache_ttl)

    async def full_text_search(
        self,
        table: str,
        term: str,
        search_columns: Sequence[str],
        limit: int = 20,
        offset: int = 0,
        min_score: int = 0,
        where: Optional[Dict[str, Any]] = None,
        use_cache: bool = False,
        cache_ttl: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Oracle Text search over indexed columns, best matches first.

        Each column needs a CONTEXT index; the per-column scores are summed
        into ``search_rank``.
        """
        if not term or not str(term).strip():
            raise ValidationError("Search term must not be empty", {"table": table})
        if not search_columns:
            raise ValidationError("At least one search column is required", {"table": table})
        schema = await self.catalog.get_schema(table)

        columns = [self._column(schema, column, "Search") for column in search_columns]
        matches = []
        args = []
        for label, column in enumerate(columns, start=1):
            matches.append(f"CONTAINS({column}, ?, {label}) > ?")
            args.extend([str(term).strip(), int(min_score)])
        rank = " + ".join(f"SCORE({label})" for label in range(1, len(columns) + 1))

        order_by = "search_rank DESC"
        if schema.has_created_at:
            order_by += f", {CREATED_AT} DESC"

        spec = QuerySpec(
            select=f"{table}.*, ({rank}) AS search_rank",
            where=dict(where or {}),
            predicates=[Raw(" OR ".join(matches), args)],
            order_by=order_by,
            limit=limit,
            offset=offset,
            aliases=("search_rank",),
        )
        return await self._select(table, schema, spec, "search", use_cache, cache_ttl)
