from mcp.server.fastmcp import FastMCP, Context
import logging
import sys
from typing import Any, AsyncIterator, Dict, List, Optional
from contextlib import asynccontextmanager
import oracledb

from query_layer import QueryContext, QueryLayerError, QuerySpec, load_settings
from query_layer.cache import dumps

settings = load_settings()

# stdout carries the MCP stdio transport
logging.basicConfig(
    stream=sys.stderr,
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("query_layer.server")


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[QueryContext]:
    """Build the QueryContext for the server's lifetime and close it on shutdown"""
    if not settings.connection_string:
        raise ValueError("ORACLE_CONNECTION_STRING environment variable is required. Set it in .env file or environment.")

    context = QueryContext(settings)
    try:
        logger.info("Opening database pool (read_only=%s, external cache=%s)", settings.read_only, context.cache.enabled)
        await context.initialize()
        yield context
    finally:
        logger.info("Closing database connections...")
        await context.close()
        logger.info("Database connections closed")


mcp = FastMCP("oracle-query-layer", lifespan=app_lifespan)


def _render_error(action: str, e: Exception) -> str:
    if isinstance(e, oracledb.Error):
        return f"Database error while {action}: {e}"
    if isinstance(e, PermissionError):
        return f"Permission error: {e}"
    return f"Error while {action}: {e}"


def _query_context(ctx: Context) -> QueryContext:
    return ctx.request_context.lifespan_context


@mcp.tool()
async def describe_table(table_name: str, ctx: Context) -> str:
    """Columns, primary key and audit-column flags for one table (cached).

    Use: Learn which columns the other tools will accept before filtering or writing.
    Compose: Follow with verify_table for index recommendations.
    Avoid: Calling after every write; schemas only change with DDL (see invalidate_table_schema).

    Args:
        table_name: Table name, optionally owner-qualified (case-insensitive).
    """
    try:
        schema = await _query_context(ctx).get_schema(table_name)
        return dumps(schema.describe())
    except (oracledb.Error, PermissionError, QueryLayerError) as e:
        return _render_error("describing table", e)


@mcp.tool()
async def find_records(
    table_name: str,
    ctx: Context,
    conditions: Optional[Dict[str, Any]] = None,
    order_by: Optional[str] = None,
    limit: int = 50,
    include_deleted: bool = False,
) -> str:
    """Rows matching equality / IN / IS NULL conditions, newest first (cached).

    Use: Targeted lookups by known column values.
    Compose: Use paginate_records when the result set may be large.
    Avoid: Free-form SQL; conditions on unknown columns are ignored.
    """
    try:
        rows = await _query_context(ctx).find_where(
            table_name, conditions, order_by=order_by, limit=limit,
            include_soft_deleted=include_deleted,
        )
        return dumps(rows)
    except (oracledb.Error, PermissionError, QueryLayerError) as e:
        return _render_error("finding records", e)


@mcp.tool()
async def paginate_records(
    table_name: str,
    ctx: Context,
    conditions: Optional[Dict[str, Any]] = None,
    page: int = 1,
    limit: int = 10,
    order_by: Optional[str] = None,
    order_direction: str = "DESC",
    include_count: bool = True,
) -> str:
    """One page of rows plus total / total_pages / has_next_page metadata.

    Use: Browsing a table page by page.
    Compose: Set include_count=False on very large tables to skip the COUNT(*).
    Avoid: limit above 100 (clamped).
    """
    try:
        result = await _query_context(ctx).paginated_query(
            table_name, QuerySpec(where=dict(conditions or {})), page=page, limit=limit,
            order_by=order_by, order_direction=order_direction, include_count=include_count,
        )
        return dumps(result)
    except (oracledb.Error, PermissionError, QueryLayerError) as e:
        return _render_error("paginating records", e)


@mcp.tool()
async def count_records(table_name: str, ctx: Context, conditions: Optional[Dict[str, Any]] = None) -> str:
    """Number of live (not soft-deleted) rows matching the conditions (cached)."""
    try:
        total = await _query_context(ctx).count_records(table_name, conditions)
        return dumps({"table": table_name, "total": total})
    except (oracledb.Error, PermissionError, QueryLayerError) as e:
        return _render_error("counting records", e)


@mcp.tool()
async def insert_record(
    table_name: str,
    data: Dict[str, Any],
    ctx: Context,
    on_conflict: Optional[str] = None,
    conflict_columns: Optional[List[str]] = None,
) -> str:
    """Insert one row; created_at / updated_at are stamped when the table has them.

    Use: Creating a record. on_conflict='ignore' or 'update' turns it into a MERGE.
    Avoid: Use upsert_record when update-on-conflict is the intent.
    Requires READ_ONLY_MODE=false.
    """
    try:
        row = await _query_context(ctx).insert(
            table_name, data, on_conflict=on_conflict, conflict_columns=conflict_columns
        )
        return dumps(row)
    except (oracledb.Error, PermissionError, QueryLayerError) as e:
        return _render_error("inserting record", e)


@mcp.tool()
async def update_record(
    table_name: str,
    data: Dict[str, Any],
    where: Dict[str, Any],
    ctx: Context,
    optimistic_locking: bool = False,
) -> str:
    """Update rows matching `where`; fails when nothing matched.

    Use: With optimistic_locking=True, pass the version you read in `data`;
    a concurrent change makes the update fail instead of overwriting it.
    Requires READ_ONLY_MODE=false.
    """
    try:
        row = await _query_context(ctx).update(
            table_name, data, where, optimistic_locking=optimistic_locking
        )
        return dumps(row)
    except (oracledb.Error, PermissionError, QueryLayerError) as e:
        return _render_error("updating record", e)


@mcp.tool()
async def delete_record(
    table_name: str,
    where: Dict[str, Any],
    ctx: Context,
    hard_delete: bool = False,
) -> str:
    """Delete rows matching `where`; soft delete when the table has deleted_at.

    Avoid: hard_delete unless the row really must go; soft-deleted rows stay recoverable.
    Requires READ_ONLY_MODE=false.
    """
    try:
        result = await _query_context(ctx).delete(
            table_name, where, soft_delete=False if hard_delete else None
        )
        return dumps(result)
    except (oracledb.Error, PermissionError, QueryLayerError) as e:
        return _render_error("deleting record", e)


@mcp.tool()
async def upsert_record(
    table_name: str,
    data: Dict[str, Any],
    ctx: Context,
    conflict_columns: Optional[List[str]] = None,
) -> str:
    """Insert, or update the row whose conflict columns (default: primary key) match.

    Requires READ_ONLY_MODE=false.
    """
    try:
        row = await _query_context(ctx).upsert(table_name, data, conflict_columns=conflict_columns)
        return dumps(row)
    except (oracledb.Error, PermissionError, QueryLayerError) as e:
        return _render_error("upserting record", e)


@mcp.tool()
async def invalidate_table_schema(table_name: str, ctx: Context) -> str:
    """Forget cached metadata for a table so the next call reloads it.

    Use: After DDL on that table (added/dropped columns).
    Avoid: Routine use; metadata is cached for a reason.
    """
    try:
        await _query_context(ctx).invalidate_schema(table_name)
        return f"Schema cache cleared for '{table_name}'."
    except QueryLayerError as e:
        return _render_error("invalidating schema", e)


@mcp.tool()
async def verify_table(table_name: str, ctx: Context) -> str:
    """Existence check, schema, indexes and index recommendations for one table."""
    try:
        return dumps(await _query_context(ctx).verify_table(table_name))
    except (oracledb.Error, PermissionError, QueryLayerError) as e:
        return _render_error("verifying table", e)


@mcp.tool()
async def cache_stats(ctx: Context) -> str:
    """Schema cache hit/miss counters and whether the external cache is enabled."""
    context = _query_context(ctx)
    return dumps({
        "schema_cache": context.schema_cache_stats(),
        "external_cache_enabled": context.cache.enabled,
        "read_only": context.settings.read_only,
    })


@mcp.tool()
async def health_check(ctx: Context) -> str:
    """Database round-trip latency, pool usage and cache status."""
    return dumps(await _query_context(ctx).health_check())


@mcp.tool()
async def database_statistics(
    ctx: Context,
    include_tables: bool = True,
    include_indexes: bool = True,
    include_sessions: bool = True,
) -> str:
    """Object counts and optimizer statistics for the largest tables and indexes.

    Avoid: Treating num_rows as exact; it is as fresh as the last statistics gathering.
    """
    try:
        stats = await _query_context(ctx).database_statistics(
            include_tables=include_tables,
            include_indexes=include_indexes,
            include_sessions=include_sessions,
        )
        return dumps(stats)
    except (oracledb.Error, PermissionError, QueryLayerError) as e:
        return _render_error("collecting statistics", e)


@mcp.tool()
async def list_routines(
    ctx: Context,
    routine_type: Optional[str] = None,
    name_pattern: Optional[str] = None,
) -> str:
    """Standalone procedures and functions in the schema.

    Args:
        routine_type: PROCEDURE or FUNCTION; both when omitted.
        name_pattern: LIKE pattern, e.g. 'CALC%'.
    """
    try:
        return dumps(await _query_context(ctx).list_routines(routine_type, name_pattern))
    except (oracledb.Error, PermissionError, QueryLayerError) as e:
        return _render_error("listing routines", e)


@mcp.tool()
async def describe_routine(name: str, ctx: Context) -> str:
    """Parameters (name, type, IN/OUT mode) and return type of a procedure or function."""
    try:
        return dumps(await _query_context(ctx).describe_routine(name))
    except (oracledb.Error, PermissionError, QueryLayerError) as e:
        return _render_error("describing routine", e)


@mcp.tool()
async def call_procedure(
    name: str,
    ctx: Context,
    params: Optional[List[Any]] = None,
    invalidate_tables: Optional[List[str]] = None,
) -> str:
    """Call a stored procedure with its IN values in order; OUT values come back by name.

    Compose: describe_routine first to see the parameter order.
    Requires READ_ONLY_MODE=false.
    """
    try:
        result = await _query_context(ctx).execute_procedure(
            name, params or [], invalidate_tables=invalidate_tables or ()
        )
        return dumps(result)
    except (oracledb.Error, PermissionError, QueryLayerError) as e:
        return _render_error("calling procedure", e)


@mcp.tool()
async def call_function(
    name: str,
    ctx: Context,
    params: Optional[List[Any]] = None,
    result: str = "scalar",
) -> str:
    """Evaluate a stored function; result='table' selects from a pipelined/table function."""
    try:
        return dumps(await _query_context(ctx).execute_function(name, params or [], result=result))
    except (oracledb.Error, PermissionError, QueryLayerError) as e:
        return _render_error("calling function", e)


@mcp.tool()
async def execute_sql(
    sql: str,
    ctx: Context,
    params: Optional[Dict[str, Any]] = None,
    allowed_tables: Optional[List[str]] = None,
) -> str:
    """Run one statement with :name binds under the query timeout.

    Use: Queries the structured tools cannot express.
    Avoid: Comments, multiple statements or unbound literals; binds must match params exactly.
    Writes require READ_ONLY_MODE=false.
    """
    try:
        result = await _query_context(ctx).execute_dynamic_sql(
            sql, params, allowed_tables=allowed_tables or ()
        )
        return dumps(result.__dict__)
    except (oracledb.Error, PermissionError, QueryLayerError) as e:
        return _render_error("executing SQL", e)


if __name__ == "__main__":
    mcp.run()
