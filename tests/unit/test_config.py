import pydantic
import pytest

from query_layer import QueryContext
from query_layer.config import Settings, load_settings

pytestmark = pytest.mark.asyncio

ENV_VARS = [
    "ORACLE_CONNECTION_STRING", "TARGET_SCHEMA", "READ_ONLY_MODE", "REDIS_URL",
    "CACHE_KEY_PREFIX", "CACHE_DEFAULT_TTL", "SCHEMA_CACHE_TTL",
    "TRANSACTION_TIMEOUT_MS", "QUERY_TIMEOUT_MS", "DB_POOL_MIN", "DB_POOL_MAX", "LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


async def test_defaults_are_read_only(clean_env):
    settings = load_settings()
    assert settings.read_only is True
    assert settings.redis_url is None
    assert settings.schema_cache_ttl == 3600
    assert settings.cache_default_ttl == 300


async def test_environment_overrides(clean_env):
    clean_env.setenv("READ_ONLY_MODE", "false")
    clean_env.setenv("REDIS_URL", "redis://localhost:6379/0")
    clean_env.setenv("TRANSACTION_TIMEOUT_MS", "1500")
    clean_env.setenv("LOG_LEVEL", "debug")
    settings = load_settings()
    assert settings.read_only is False
    assert settings.redis_url == "redis://localhost:6379/0"
    assert settings.transaction_timeout_ms == 1500
    assert settings.log_level == "DEBUG"


async def test_malformed_number_names_the_variable(clean_env):
    clean_env.setenv("DB_POOL_MAX", "lots")
    with pytest.raises(pydantic.ValidationError, match="(?i)db_pool_max"):
        load_settings()


async def test_blank_values_are_unset_and_fields_accept_names(clean_env):
    clean_env.setenv("TARGET_SCHEMA", "  ")
    assert load_settings().target_schema is None

    settings = Settings(read_only=False, pool_max=4, connection_string="u/p@db")
    assert settings.read_only is False
    assert settings.pool_max == 4
    assert settings.connection_string == "u/p@db"


async def test_context_without_redis_disables_external_cache(fake_db):
    context = QueryContext(Settings(), db_connector=fake_db)
    assert not context.cache.enabled
    await context.initialize()
    await context.close()
    assert fake_db.events == ["init", "close"]


async def test_context_closes_cache_store(fake_db, memory_store):
    closed = []

    async def close():
        closed.append(True)

    memory_store.close = close
    context = QueryContext(Settings(), db_connector=fake_db, cache_store=memory_store)
    await context.close()
    assert closed == [True]
