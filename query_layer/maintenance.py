"""Operational helpers: guarded raw SQL, health, statistics, backup and restore."""
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .crud import CrudRepository, utc_now
from .database import DatabaseConnector
from .errors import ValidationError
from .guard import (
    is_destructive,
    leading_keyword,
    named_placeholders,
    parse_statement,
    referenced_tables,
    validate_identifier,
)
from .invalidation import InvalidationCoordinator
from .models import QueryResult, QuerySpec
from .schema.catalog import SchemaCatalog
from .transaction import TransactionRunner

logger = logging.getLogger(__name__)


class MaintenanceService:
    def __init__(
        self,
        db_connector: Any,
        catalog: SchemaCatalog,
        crud: CrudRepository,
        transactions: TransactionRunner,
        coordinator: InvalidationCoordinator,
        default_timeout_ms: Optional[int] = None,
    ):
        self.db_connector = db_connector
        self.catalog = catalog
        self.crud = crud
        self.transactions = transactions
        self.coordinator = coordinator
        self.default_timeout_ms = default_timeout_ms

    def _timeout(self, timeout_ms: Optional[int]) -> Optional[int]:
        return self.default_timeout_ms if timeout_ms is None else timeout_ms

    async def _run(self, sql: str, args: Any, tables: Iterable[str], timeout_ms: Optional[int]) -> QueryResult:
        result = await self.transactions.run_with_timeout(
            self.db_connector.query(sql, args), self._timeout(timeout_ms)
        )
        # Reads cached for any table the statement touched are stale now
        if DatabaseConnector._is_write_operation(sql):
            for table in tables:
                await self.coordinator.invalidate(table, "raw_sql")
        return result

    async def execute_raw_sql(
        self,
        sql: str,
        args: Optional[Union[Sequence[Any], Dict[str, Any]]] = None,
        allow_dangerous: bool = False,
        return_first: bool = False,
        timeout_ms: Optional[int] = None,
    ) -> Union[QueryResult, Optional[Dict[str, Any]]]:
        """Run one caller-written statement under the query timeout.

        DROP, TRUNCATE and unqualified DELETE/UPDATE are refused unless
        ``allow_dangerous``; read-only mode still applies either way. With
        ``return_first`` only the first row (or None) is returned.
        """
        statement = parse_statement(sql)
        if not allow_dangerous and is_destructive(statement):
            raise ValidationError(
                f"Dangerous SQL operation detected ({leading_keyword(statement)}). "
                "Use allow_dangerous=True to override.",
                {"operation": leading_keyword(statement)},
            )
        result = await self._run(sql, args, referenced_tables(statement), timeout_ms)
        if return_first:
            return result.rows[0] if result.rows else None
        return result

    async def execute_dynamic_sql(
        self,
        template: str,
        params: Optional[Mapping[str, Any]] = None,
        allowed_tables: Sequence[str] = (),
        timeout_ms: Optional[int] = None,
    ) -> QueryResult:
        """Run a template with ``:name`` binds after checking what it touches.

        Comments are rejected, every bind must be supplied (and every supplied
        value used), and with ``allowed_tables`` each referenced table must be
        on that list.
        """
        statement = parse_statement(template, allow_comments=False)
        binds = {validate_identifier(key, "bind name").lower(): value for key, value in (params or {}).items()}

        expected = named_placeholders(statement)
        missing = sorted(expected - set(binds))
        unused = sorted(set(binds) - expected)
        if missing or unused:
            raise ValidationError(
                "Bind parameters do not match the template placeholders",
                {"missing": missing, "unused": unused},
            )

        tables = referenced_tables(statement)
        if allowed_tables:
            allowed = {table.lower() for table in allowed_tables}
            for table in tables:
                if table not in allowed:
                    raise ValidationError(
                        f"Table '{table}' not in allowed tables list", {"table": table}
                    )
        return await self._run(template, binds, tables, timeout_ms)

    async def health_check(self) -> Dict[str, Any]:
        report = await self.db_connector.health_check()
        stats = self.catalog.get_cache_stats()
        report["schema_cache"] = "active" if stats["size"] or stats["routines"] else "empty"
        report["cache_enabled"] = self.crud.cache.enabled
        return report

    async def database_statistics(
        self,
        include_tables: bool = True,
        include_indexes: bool = True,
        include_sessions: bool = True,
    ) -> Dict[str, Any]:
        stats = await self.db_connector.load_database_statistics(
            include_tables=include_tables,
            include_indexes=include_indexes,
            include_sessions=include_sessions,
        )
        stats["timestamp"] = utc_now()
        stats["schema_cache"] = self.catalog.get_cache_stats()
        return stats

    async def backup_table(
        self,
        table: str,
        where: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        batch_size: int = 1000,
        include_soft_deleted: bool = False,
    ) -> Dict[str, Any]:
        """Copy a table's rows into a dict, reading them in primary-key order batches."""
        schema = await self.catalog.get_schema(table)
        total = await self.crud.count_records(
            table, where, include_soft_deleted=include_soft_deleted, use_cache=False
        )
        backup: Dict[str, Any] = {
            "timestamp": utc_now(),
            "table": schema.table_name,
            "schema": schema.to_dict(),
            "total_records": total,
            "data": [],
        }

        wanted = total if limit is None else min(max(int(limit), 0), total)
        batch_size = max(int(batch_size), 1)
        order_by = schema.primary_key[0] if schema.primary_key else next(iter(schema.columns))
        offset = 0
        while offset < wanted:
            batch_limit = min(batch_size, wanted - offset)
            rows = await self.crud.advanced_query(
                table,
                QuerySpec(
                    where=dict(where or {}),
                    order_by=order_by,
                    limit=batch_limit,
                    offset=offset,
                    include_soft_deleted=include_soft_deleted,
                ),
                use_cache=False,
            )
            backup["data"].extend(rows)
            offset += batch_limit
            if len(rows) < batch_limit:
                break

        logger.info("Backed up %d rows from %s", len(backup["data"]), schema.table_name)
        return backup

    async def restore_table(
        self,
        table: str,
        backup: Mapping[str, Any],
        clear_first: bool = False,
        on_conflict: Optional[str] = "update",
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Write backup rows back in one transaction, then invalidate the table.

        ``clear_first`` deletes every row first inside the same transaction,
        so a failed restore leaves the table as it was. Backup columns the
        table no longer has are dropped.
        """
        data = backup.get("data") if isinstance(backup, Mapping) else None
        if not isinstance(data, list):
            raise ValidationError("Invalid backup data format", {"table": table})

        schema = await self.catalog.get_schema(table)
        records: List[Dict[str, Any]] = []
        for record in data:
            values = {key: value for key, value in record.items() if schema.has_column(key)}
            if values:
                records.append(values)

        async def work(conn) -> int:
            if clear_first:
                await self.db_connector.query(f"DELETE FROM {table}", connection=conn)
            for values in records:
                await self.crud.execute_insert(
                    table, schema, values, on_conflict=on_conflict, returning=None, connection=conn
                )
            return len(records)

        restored = await self.transactions.with_transaction(work, timeout_ms)
        await self.coordinator.invalidate(table, "restore")
        logger.info("Restored %d of %d rows into %s", restored, len(data), schema.table_name)
        return {
            "table": schema.table_name,
            "restored_records": restored,
            "total_records": len(data),
            "timestamp": utc_now(),
        }
