import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import oracledb
import sqlparse

from .models import OutBind, QueryResult

logger = logging.getLogger(__name__)

Args = Optional[Union[Sequence[Any], Dict[str, Any]]]

ISOLATION_LEVELS = {"READ COMMITTED", "SERIALIZABLE"}


class DatabaseConnector:
    def __init__(
        self,
        connection_string: str,
        target_schema: Optional[str] = None,
        read_only: bool = False,
        pool_min: int = 2,
        pool_max: int = 10,
    ):
        """Create a new connector.

        Args:
            connection_string: Oracle connection string (user/password@dsn)
            target_schema: Optional schema override for catalog lookups
            read_only: When True all non-SELECT statements are rejected.
            pool_min: Minimum pool size
            pool_max: Maximum pool size
        """
        self.connection_string = connection_string
        self.target_schema: Optional[str] = target_schema
        self.read_only = read_only
        self.pool_min = pool_min
        self.pool_max = pool_max
        self._pool = None
        self._pool_lock = asyncio.Lock()

    async def initialize_pool(self):
        """Initialize the connection pool"""
        async with self._pool_lock:
            if self._pool is not None:
                return
            # CLOB/NCLOB columns come back as str instead of LOB handles
            oracledb.defaults.fetch_lobs = False
            try:
                self._pool = oracledb.create_pool_async(
                    self.connection_string,
                    min=self.pool_min,
                    max=self.pool_max,
                    increment=1,
                    getmode=oracledb.POOL_GETMODE_WAIT,
                )
                logger.info("Database connection pool initialized")
            except oracledb.Error as e:
                logger.error("Error creating connection pool: %s", e)
                raise

    async def get_connection(self):
        """Get a connection from the pool"""
        if self._pool is None:
            await self.initialize_pool()
        try:
            return await self._pool.acquire()
        except oracledb.Error as e:
            logger.error("Error acquiring connection from pool: %s", e)
            raise

    async def release(self, conn) -> None:
        """Return connection to the pool"""
        try:
            await self._pool.release(conn)
        except Exception as e:
            logger.error("Error releasing connection to pool: %s", e)

    async def close_pool(self):
        """Close the connection pool"""
        if self._pool:
            try:
                await self._pool.close()
                self._pool = None
                logger.info("Connection pool closed")
            except Exception as e:
                logger.error("Error closing connection pool: %s", e)

    async def with_connection(self, callback: Callable[[Any], Awaitable[Any]]) -> Any:
        """Run ``callback(connection)`` on a pooled connection and release it."""
        conn = await self.get_connection()
        try:
            return await callback(conn)
        finally:
            await self.release(conn)

    async def begin(self, conn, isolation_level: Optional[str] = None) -> None:
        """Start a transaction.

        Oracle opens transactions implicitly; only the isolation level needs an
        explicit statement, and it must be the first one in the transaction.
        """
        if isolation_level:
            await conn.cursor().execute(f"SET TRANSACTION ISOLATION LEVEL {isolation_level}")

    async def commit(self, conn) -> None:
        await conn.commit()

    async def rollback(self, conn) -> None:
        await conn.rollback()

    def _assert_query_executable(self, sql: str) -> None:
        """Check if a query can be executed based on read-only mode and query type."""
        if self.read_only and not self._is_select_query(sql):
            raise PermissionError(
                "Read-only mode: only SELECT statements are permitted."
            )

    def _assert_write_allowed(self) -> None:
        """Raise if the connector is in read-only mode."""
        if self.read_only:
            raise PermissionError("Read-only mode: write operations are disabled")

    async def query(self, sql: str, args: Args = None, connection=None) -> QueryResult:
        """Execute one statement and return rows (or out-bind rows) and row count.

        With no ``connection`` a pooled connection is used and write statements
        are committed immediately. With a ``connection`` the caller owns the
        transaction.
        """
        if connection is not None:
            return await self._execute(connection, sql, args, commit=False)

        conn = await self.get_connection()
        try:
            return await self._execute(conn, sql, args, commit=True)
        finally:
            await self.release(conn)

    async def _execute(self, conn, sql: str, args: Args, commit: bool) -> QueryResult:
        self._assert_query_executable(sql)
        started = time.perf_counter()
        cursor = conn.cursor()
        params, out_binds = self._bind(cursor, args)
        try:
            await cursor.execute(sql, params)
            if cursor.description:
                columns = [desc[0].lower() for desc in cursor.description]
                rows = [dict(zip(columns, row)) for row in await cursor.fetchall()]
                result = QueryResult(rows=rows, row_count=len(rows), columns=columns)
            else:
                result = self._returning_result(cursor, out_binds)
                if commit and self._is_write_operation(sql):
                    await conn.commit()
        except oracledb.Error as e:
            logger.error(
                "Query failed after %.1fms: %s | %s",
                (time.perf_counter() - started) * 1000,
                e,
                " ".join(sql.split())[:500],
            )
            raise

        logger.debug(
            "Query completed in %.1fms (%d rows): %s",
            (time.perf_counter() - started) * 1000,
            result.row_count,
            " ".join(sql.split()),
        )
        return result

    async def call_procedure(self, name: str, args: Optional[Sequence[Any]] = None, connection=None) -> Dict[str, Any]:
        """Call a stored procedure and return its OUT parameters by name.

        A procedure may change anything, so it is refused in read-only mode.
        Without a caller-owned ``connection`` the call is committed.
        """
        self._assert_write_allowed()
        if connection is not None:
            return await self._call(connection, name, args, commit=False)
        return await self.with_connection(lambda conn: self._call(conn, name, args, commit=True))

    async def _call(self, conn, name: str, args: Optional[Sequence[Any]], commit: bool) -> Dict[str, Any]:
        started = time.perf_counter()
        cursor = conn.cursor()
        params, out_binds = self._bind(cursor, list(args or []))
        try:
            await cursor.callproc(name, params or [])
            if commit:
                await conn.commit()
        except oracledb.Error as e:
            logger.error(
                "Procedure %s failed after %.1fms: %s",
                name, (time.perf_counter() - started) * 1000, e,
            )
            raise

        logger.debug("Procedure %s completed in %.1fms", name, (time.perf_counter() - started) * 1000)
        return {column: var.getvalue() for column, var in out_binds}

    def _bind(self, cursor, args: Args):
        """Swap ``OutBind`` markers for driver variables."""
        if not args or isinstance(args, dict):
            return args, []
        params = []
        out_binds = []
        for value in args:
            if isinstance(value, OutBind):
                var = cursor.var(self._db_type(value.type))
                if value.value is not None:
                    var.setvalue(0, value.value)
                out_binds.append((value.column, var))
                params.append(var)
            else:
                params.append(value)
        return params, out_binds

    @staticmethod
    def _returning_result(cursor, out_binds) -> QueryResult:
        row_count = cursor.rowcount or 0
        if not out_binds:
            return QueryResult(rows=[], row_count=row_count)
        columns = [column for column, _ in out_binds]
        # DML returning variables hold one value per affected row
        values = [var.getvalue() or [] for _, var in out_binds]
        rows = [dict(zip(columns, row)) for row in zip(*values)]
        return QueryResult(rows=rows, row_count=row_count, columns=columns)

    @staticmethod
    def _db_type(type_name: str):
        """Map a catalog data type to the driver type used for out-binds."""
        name = (type_name or "").upper()
        if name in ("NUMBER", "FLOAT", "INTEGER", "BINARY_FLOAT", "BINARY_DOUBLE"):
            return oracledb.DB_TYPE_NUMBER
        if name == "DATE":
            return oracledb.DB_TYPE_DATE
        if name.startswith("TIMESTAMP"):
            if "TIME ZONE" in name:
                return oracledb.DB_TYPE_TIMESTAMP_TZ
            return oracledb.DB_TYPE_TIMESTAMP
        if name == "RAW":
            return oracledb.DB_TYPE_RAW
        return oracledb.DB_TYPE_VARCHAR

    async def _get_effective_schema(self, conn) -> str:
        """Get the effective schema to use (either target_schema or connection user)"""
        if self.target_schema:
            return self.target_schema.upper()
        return conn.username.upper()

    async def _resolve_owner(self, conn, table_name: str):
        if "." in table_name:
            owner, name = table_name.split(".", 1)
            return owner.upper(), name.upper()
        return await self._get_effective_schema(conn), table_name.upper()

    async def load_table_details(self, table_name: str) -> Optional[Dict[str, Any]]:
        """Load column and primary-key metadata for a table from the catalog views.

        Returns None when the catalog reports no columns for the table.
        """
        conn = await self.get_connection()
        try:
            owner, name = await self._resolve_owner(conn, table_name)
            binds = {"owner": owner, "table_name": name}

            columns = await self.query(
                """
                SELECT column_name, data_type, nullable, data_default,
                       char_length, data_precision, data_scale
                FROM all_tab_columns
                WHERE owner = :owner AND table_name = :table_name
                ORDER BY column_id
                """,
                binds,
                connection=conn,
            )
            if not columns.rows:
                return None

            primary_key = await self.query(
                """
                SELECT acc.column_name
                FROM all_constraints ac
                JOIN all_cons_columns acc ON acc.owner = ac.owner
                                         AND acc.constraint_name = ac.constraint_name
                WHERE ac.owner = :owner
                AND ac.table_name = :table_name
                AND ac.constraint_type = 'P'
                ORDER BY acc.position
                """,
                binds,
                connection=conn,
            )

            column_info = {}
            for row in columns.rows:
                default = row["data_default"]
                column_info[row["column_name"].lower()] = {
                    "type": row["data_type"],
                    "nullable": row["nullable"] == "Y",
                    "default": default.strip() if isinstance(default, str) else default,
                    "max_length": row["char_length"] or None,
                    "precision": row["data_precision"],
                    "scale": row["data_scale"],
                }

            return {
                "columns": column_info,
                "primary_key": [row["column_name"].lower() for row in primary_key.rows],
            }
        except oracledb.Error as e:
            logger.error("Error loading table details for %s: %s", table_name, e)
            raise
        finally:
            await self.release(conn)

    async def load_table_indexes(self, table_name: str) -> List[Dict[str, Any]]:
        """Get indexes for a table with their ordered column lists"""
        conn = await self.get_connection()
        try:
            owner, name = await self._resolve_owner(conn, table_name)
            result = await self.query(
                """
                SELECT ai.index_name, ai.uniqueness, aic.column_name
                FROM all_indexes ai
                JOIN all_ind_columns aic ON aic.index_owner = ai.owner
                                        AND aic.index_name = ai.index_name
                WHERE ai.table_owner = :owner
                AND ai.table_name = :table_name
                ORDER BY ai.index_name, aic.column_position
                """,
                {"owner": owner, "table_name": name},
                connection=conn,
            )

            indexes: Dict[str, Dict[str, Any]] = {}
            for row in result.rows:
                index = indexes.setdefault(
                    row["index_name"],
                    {
                        "name": row["index_name"],
                        "unique": row["uniqueness"] == "UNIQUE",
                        "columns": [],
                    },
                )
                index["columns"].append(row["column_name"].lower())
            return list(indexes.values())
        finally:
            await self.release(conn)

    async def table_exists(self, table_name: str) -> bool:
        conn = await self.get_connection()
        try:
            owner, name = await self._resolve_owner(conn, table_name)
            result = await self.query(
                """
                SELECT COUNT(*) AS total
                FROM all_tables
                WHERE owner = :owner AND table_name = :table_name
                """,
                {"owner": owner, "table_name": name},
                connection=conn,
            )
            return int(result.rows[0]["total"]) > 0
        finally:
            await self.release(conn)

    async def load_routine_details(self, routine_name: str) -> Optional[Dict[str, Any]]:
        """Load the signature of a standalone procedure or function.

        Returns None when no such routine exists. Position 0 of a function's
        argument list is its return value.
        """
        conn = await self.get_connection()
        try:
            owner, name = await self._resolve_owner(conn, routine_name)
            binds = {"owner": owner, "object_name": name}

            kind = await self.query(
                """
                SELECT object_type
                FROM all_objects
                WHERE owner = :owner AND object_name = :object_name
                AND object_type IN ('PROCEDURE', 'FUNCTION')
                """,
                binds,
                connection=conn,
            )
            if not kind.rows:
                return None

            arguments = await self.query(
                """
                SELECT argument_name, position, data_type, in_out
                FROM all_arguments
                WHERE owner = :owner
                AND object_name = :object_name
                AND package_name IS NULL
                AND data_level = 0
                ORDER BY position
                """,
                binds,
                connection=conn,
            )

            return_type = None
            parameters = []
            for row in arguments.rows:
                if row["position"] == 0:
                    return_type = row["data_type"]
                elif row["argument_name"]:
                    parameters.append({
                        "name": row["argument_name"].lower(),
                        "type": row["data_type"],
                        "mode": row["in_out"],
                        "position": int(row["position"]),
                    })

            return {
                "routine_type": kind.rows[0]["object_type"],
                "return_type": return_type,
                "parameters": parameters,
            }
        finally:
            await self.release(conn)

    async def list_routines(
        self, routine_type: Optional[str] = None, name_pattern: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """List standalone procedures and functions in the effective schema"""
        conn = await self.get_connection()
        try:
            schema = await self._get_effective_schema(conn)
            where_clause = "WHERE o.owner = :owner AND o.object_type IN ('PROCEDURE', 'FUNCTION')"
            params = {"owner": schema}

            if routine_type:
                where_clause += " AND o.object_type = :object_type"
                params["object_type"] = routine_type.upper()
            if name_pattern:
                where_clause += " AND o.object_name LIKE :name_pattern"
                params["name_pattern"] = name_pattern.upper()

            result = await self.query(
                f"""
                SELECT o.object_name, o.object_type, o.status, o.created, o.last_ddl_time,
                       (SELECT COUNT(*)
                        FROM all_arguments a
                        WHERE a.owner = o.owner
                        AND a.object_name = o.object_name
                        AND a.package_name IS NULL
                        AND a.data_level = 0
                        AND a.argument_name IS NOT NULL) AS parameter_count
                FROM all_objects o
                {where_clause}
                ORDER BY o.object_type, o.object_name
                """,
                params,
                connection=conn,
            )

            routines = []
            for row in result.rows:
                info = {
                    "name": row["object_name"].lower(),
                    "type": row["object_type"],
                    "status": row["status"],
                    "owner": schema,
                    "parameter_count": int(row["parameter_count"] or 0),
                }
                if row["created"]:
                    info["created"] = row["created"].strftime("%Y-%m-%d %H:%M:%S")
                if row["last_ddl_time"]:
                    info["last_modified"] = row["last_ddl_time"].strftime("%Y-%m-%d %H:%M:%S")
                routines.append(info)
            return routines
        finally:
            await self.release(conn)

    def pool_stats(self) -> Optional[Dict[str, Any]]:
        if self._pool is None:
            return None
        return {
            "opened": self._pool.opened,
            "busy": self._pool.busy,
            "min": self._pool.min,
            "max": self._pool.max,
        }

    async def load_database_statistics(
        self,
        include_tables: bool = True,
        include_indexes: bool = True,
        include_sessions: bool = True,
        top: int = 20,
    ) -> Dict[str, Any]:
        """Object counts plus optimizer statistics for the largest tables and indexes.

        Session counts read ``v$session``; without access to it ``sessions``
        is None.
        """
        top = max(int(top), 1)
        conn = await self.get_connection()
        try:
            owner = await self._get_effective_schema(conn)
            binds = {"owner": owner}
            counts = await self.query(
                """
                SELECT (SELECT COUNT(*) FROM all_tables WHERE owner = :owner) AS table_count,
                       (SELECT COUNT(*) FROM all_indexes WHERE owner = :owner) AS index_count,
                       (SELECT COUNT(*) FROM all_objects
                        WHERE owner = :owner AND object_type IN ('PROCEDURE', 'FUNCTION')) AS routine_count
                FROM dual
                """,
                binds,
                connection=conn,
            )
            stats: Dict[str, Any] = {
                "schema": owner,
                "database": counts.rows[0] if counts.rows else {},
                "tables": [],
                "indexes": [],
                "sessions": None,
                "pool": self.pool_stats(),
            }

            if include_tables:
                tables = await self.query(
                    f"""
                    SELECT table_name, num_rows, blocks, avg_row_len, last_analyzed
                    FROM all_tables
                    WHERE owner = :owner
                    ORDER BY num_rows DESC NULLS LAST, table_name
                    FETCH FIRST {top} ROWS ONLY
                    """,
                    binds,
                    connection=conn,
                )
                stats["tables"] = tables.rows

            if include_indexes:
                indexes = await self.query(
                    f"""
                    SELECT index_name, table_name, uniqueness, distinct_keys, leaf_blocks, last_analyzed
                    FROM all_indexes
                    WHERE owner = :owner
                    ORDER BY leaf_blocks DESC NULLS LAST, index_name
                    FETCH FIRST {top} ROWS ONLY
                    """,
                    binds,
                    connection=conn,
                )
                stats["indexes"] = indexes.rows

            if include_sessions:
                try:
                    sessions = await self.query(
                        """
                        SELECT COUNT(*) AS total_sessions,
                               SUM(CASE WHEN status = 'ACTIVE' THEN 1 ELSE 0 END) AS active_sessions,
                               SUM(CASE WHEN status = 'INACTIVE' THEN 1 ELSE 0 END) AS inactive_sessions
                        FROM v$session
                        WHERE username = :username
                        """,
                        {"username": conn.username.upper()},
                        connection=conn,
                    )
                    stats["sessions"] = sessions.rows[0] if sessions.rows else None
                except oracledb.DatabaseError as e:
                    logger.warning("Session statistics unavailable: %s", e)

            return stats
        finally:
            await self.release(conn)

    async def health_check(self) -> Dict[str, Any]:
        """Round-trip the database and report latency"""
        started = time.perf_counter()
        try:
            result = await self.query("SELECT SYSTIMESTAMP AS server_time FROM dual")
            return {
                "status": "healthy",
                "server_time": str(result.rows[0]["server_time"]),
                "response_ms": round((time.perf_counter() - started) * 1000, 1),
                "pool": self.pool_stats(),
            }
        except oracledb.Error as e:
            logger.error("Database health check failed: %s", e)
            return {
                "status": "unhealthy",
                "error": str(e),
                "response_ms": round((time.perf_counter() - started) * 1000, 1),
            }

    @staticmethod
    def _is_select_query(sql: str) -> bool:
        """Return True if the statement is a single, pure SELECT or WITH (CTE) statement.

        Uses sqlparse to robustly parse SQL, preventing stacked statements and bypasses via string literals.
        """
        sql_stripped = sql.strip()
        if not sql_stripped:
            return False

        statements = sqlparse.parse(sql)
        if len(statements) != 1:
            return False  # stacked / multiple statements

        stmt = statements[0]
        first_token = stmt.token_first(skip_cm=True)
        if first_token is None:
            return False

        if stmt.get_type() == "SELECT":
            return True

        return first_token.value.upper() in {"SELECT", "WITH"}

    @staticmethod
    def _is_write_operation(sql: str) -> bool:
        """Return True if the SQL statement modifies data or structure, using sqlparse for accuracy."""
        write_ops = {
            "INSERT",
            "UPDATE",
            "DELETE",
            "MERGE",
            "CREATE",
            "ALTER",
            "DROP",
            "TRUNCATE",
            "GRANT",
            "REVOKE",
        }

        statements = sqlparse.parse(sql)
        if not statements or len(statements) != 1:
            return False

        stmt = statements[0]
        first_token = stmt.token_first(skip_cm=True)
        if first_token is None:
            return False

        first_val = first_token.value.upper()
        if first_val in {"SELECT", "WITH"}:
            return False

        if first_token.ttype in (
            sqlparse.tokens.Keyword.DML,
            sqlparse.tokens.Keyword.DDL,
        ) or (first_token.ttype in sqlparse.tokens.Keyword and first_val in write_ops):
            return True
        return False
