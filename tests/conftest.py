import os
import pytest
import pytest_asyncio

from query_layer import QueryContext, Settings
from query_layer.models import ColumnInfo, QueryResult, TableSchema

ORACLE_CONN_ENV = "ORACLE_CONNECTION_STRING"
DEFAULT_CONN = os.getenv(ORACLE_CONN_ENV)

# We purposely do not spin Docker here; assume test DB is already running via docker-compose.
# Tests that require the database will be skipped automatically if connection string is absent.

TS = {"type": "TIMESTAMP(6)", "nullable": True, "default": None, "max_length": None, "precision": None, "scale": 6}

TABLES = {
    "users": {
        "columns": {
            "id": {"type": "NUMBER", "nullable": False, "default": None, "max_length": None, "precision": 10, "scale": 0},
            "name": {"type": "VARCHAR2", "nullable": False, "default": None, "max_length": 100, "precision": None, "scale": None},
            "email": {"type": "VARCHAR2", "nullable": True, "default": None, "max_length": 200, "precision": None, "scale": None},
            "status": {"type": "VARCHAR2", "nullable": True, "default": "'active'", "max_length": 20, "precision": None, "scale": None},
            "version": {"type": "NUMBER", "nullable": False, "default": "1", "max_length": None, "precision": 10, "scale": 0},
            "created_at": TS,
            "updated_at": TS,
            "deleted_at": TS,
        },
        "primary_key": ["id"],
    },
    "tags": {
        "columns": {
            "id": {"type": "NUMBER", "nullable": False, "default": None, "max_length": None, "precision": 10, "scale": 0},
            "label": {"type": "VARCHAR2", "nullable": False, "default": None, "max_length": 50, "precision": None, "scale": None},
        },
        "primary_key": ["id"],
    },
    "articles": {
        "columns": {
            "id": {"type": "NUMBER", "nullable": False, "default": None, "max_length": None, "precision": 10, "scale": 0},
            "title": {"type": "VARCHAR2", "nullable": False, "default": None, "max_length": 200, "precision": None, "scale": None},
            "body": {"type": "CLOB", "nullable": True, "default": None, "max_length": None, "precision": None, "scale": None},
            "created_at": TS,
        },
        "primary_key": ["id"],
    },
}


ROUTINES = {
    "raise_salary": {
        "routine_type": "PROCEDURE",
        "return_type": None,
        "parameters": [
            {"name": "p_emp_id", "type": "NUMBER", "mode": "IN", "position": 1},
            {"name": "p_pct", "type": "NUMBER", "mode": "IN/OUT", "position": 2},
            {"name": "p_new_salary", "type": "NUMBER", "mode": "OUT", "position": 3},
        ],
    },
    "order_total": {
        "routine_type": "FUNCTION",
        "return_type": "NUMBER",
        "parameters": [
            {"name": "p_order_id", "type": "NUMBER", "mode": "IN", "position": 1},
        ],
    },
}


def make_schema(table_name: str) -> TableSchema:
    details = TABLES[table_name]
    return TableSchema(
        table_name=table_name,
        columns={name: ColumnInfo(**info) for name, info in details["columns"].items()},
        primary_key=details["primary_key"],
    )


class FakeConnector:
    """Records every statement; answers from a queue of scripted results.

    Queued items are QueryResult objects, exceptions (raised) or callables
    taking ``(sql, args)``. With an empty queue SELECTs return no rows and
    writes report one affected row.
    """

    def __init__(self, tables=None, read_only=False):
        self.tables = dict(TABLES if tables is None else tables)
        self.routines = dict(ROUTINES)
        self.indexes = {}
        self.calls = []
        self.procedure_calls = []
        self.procedure_results = []
        self.events = []
        self.results = []
        self.detail_loads = 0
        self.routine_loads = 0
        self.read_only = read_only
        self.healthy = True

    def queue(self, *results):
        self.results.extend(results)

    @property
    def statements(self):
        return [sql for sql, _, _ in self.calls]

    async def initialize_pool(self):
        self.events.append("init")

    async def close_pool(self):
        self.events.append("close")

    async def load_table_details(self, table_name):
        self.detail_loads += 1
        return self.tables.get(table_name.lower())

    async def load_table_indexes(self, table_name):
        return self.indexes.get(table_name.lower(), [])

    async def table_exists(self, table_name):
        return table_name.lower() in self.tables

    async def query(self, sql, args=None, connection=None):
        self.calls.append((sql, dict(args) if isinstance(args, dict) else list(args or []), connection))
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            if callable(result):
                return result(sql, args)
            return result
        if sql.lstrip().upper().startswith("SELECT"):
            return QueryResult()
        return QueryResult(row_count=1)

    async def call_procedure(self, name, args=None, connection=None):
        if self.read_only:
            raise PermissionError("Read-only mode: write operations are disabled")
        self.procedure_calls.append((name, list(args or []), connection))
        if self.procedure_results:
            result = self.procedure_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return {}

    async def load_routine_details(self, routine_name):
        self.routine_loads += 1
        return self.routines.get(routine_name.lower())

    async def list_routines(self, routine_type=None, name_pattern=None):
        return [
            {"name": name, "type": details["routine_type"], "parameter_count": len(details["parameters"])}
            for name, details in sorted(self.routines.items())
            if not routine_type or details["routine_type"] == routine_type.upper()
        ]

    async def load_database_statistics(self, include_tables=True, include_indexes=True, include_sessions=True):
        stats = {"counts": {"tables": len(self.tables)}, "pool": None}
        if include_tables:
            stats["tables"] = [{"table_name": name, "num_rows": 0} for name in sorted(self.tables)]
        return stats

    async def health_check(self):
        if not self.healthy:
            return {"status": "unhealthy", "error": "ORA-12541: no listener", "response_ms": 1.0}
        return {"status": "healthy", "server_time": "2026-01-01 00:00:00", "response_ms": 1.0, "pool": None}

    async def get_connection(self):
        self.events.append("acquire")
        return "conn"

    async def release(self, conn):
        self.events.append("release")

    async def with_connection(self, callback):
        conn = await self.get_connection()
        try:
            return await callback(conn)
        finally:
            await self.release(conn)

    async def begin(self, conn, isolation_level=None):
        self.events.append(("begin", isolation_level))

    async def commit(self, conn):
        self.events.append("commit")

    async def rollback(self, conn):
        self.events.append("rollback")


class MemoryCacheStore:
    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("cache store unavailable")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ttl):
        self._check()
        self.data[key] = value
        self.ttls[key] = ttl

    async def delete(self, key):
        self._check()
        self.ttls.pop(key, None)
        return self.data.pop(key, None) is not None

    async def exists(self, key):
        self._check()
        return key in self.data

    async def ttl(self, key):
        self._check()
        if key not in self.data:
            return -2
        return self.ttls[key] if self.ttls[key] > 0 else -1


@pytest.fixture
def fake_db():
    return FakeConnector()


@pytest.fixture
def memory_store():
    return MemoryCacheStore()


@pytest.fixture
def query_context(fake_db, memory_store):
    return QueryContext(Settings(cache_key_prefix="test"), db_connector=fake_db, cache_store=memory_store)


@pytest.fixture
def users_schema():
    return make_schema("users")


@pytest.fixture
def schema_for():
    return make_schema


@pytest.fixture(scope="session")
def oracle_connection_string():
    if not DEFAULT_CONN:
        pytest.skip(f"Environment variable {ORACLE_CONN_ENV} not set; integration tests skipped.")
    return DEFAULT_CONN

@pytest_asyncio.fixture(scope="function")
async def oracle_context(oracle_connection_string):
    """Function-scoped to ensure all asyncio primitives (locks, pool) are bound
    to the same event loop as the awaiting test."""
    ctx = QueryContext(
        Settings(
            connection_string=oracle_connection_string,
            target_schema=os.getenv("TARGET_SCHEMA") or None,
            read_only=False,
            cache_key_prefix="it",
        ),
        cache_store=MemoryCacheStore(),
    )
    await ctx.initialize()
    try:
        yield ctx
    finally:
        await ctx.close()

@pytest_asyncio.fixture(scope="function")
async def oracle_context_read_only(oracle_connection_string):
    ctx = QueryContext(
        Settings(
            connection_string=oracle_connection_string,
            target_schema=os.getenv("TARGET_SCHEMA") or None,
            read_only=True,
        ),
    )
    await ctx.initialize()
    try:
        yield ctx
    finally:
        await ctx.close()
