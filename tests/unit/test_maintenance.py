import pytest

from query_layer.errors import ValidationError
from query_layer.models import QueryResult

pytestmark = pytest.mark.asyncio


@pytest.mark.parametrize("sql", [
    "DROP TABLE users",
    "TRUNCATE TABLE users",
    "DELETE FROM users",
    "UPDATE users SET status = 'x'",
])
async def test_destructive_raw_sql_needs_override(query_context, fake_db, sql):
    with pytest.raises(ValidationError, match="allow_dangerous"):
        await query_context.execute_raw_sql(sql)
    assert fake_db.calls == []

    await query_context.execute_raw_sql(sql, allow_dangerous=True)
    assert fake_db.statements == [sql]


@pytest.mark.parametrize("sql", ["SELECT 1 FROM dual; DROP TABLE users", "SELECT 1 FROM dual;", ""])
async def test_raw_sql_is_one_statement(query_context, fake_db, sql):
    with pytest.raises(ValidationError):
        await query_context.execute_raw_sql(sql, allow_dangerous=True)
    assert fake_db.calls == []


async def test_qualified_delete_is_not_dangerous(query_context, fake_db):
    result = await query_context.execute_raw_sql("DELETE FROM users WHERE id = :1", [4])
    assert result.row_count == 1
    assert fake_db.calls[0][1] == [4]


async def test_raw_sql_return_first(query_context, fake_db):
    fake_db.queue(
        QueryResult(rows=[{"id": 1}, {"id": 2}], row_count=2),
        QueryResult(),
    )
    assert await query_context.execute_raw_sql("SELECT id FROM users", return_first=True) == {"id": 1}
    assert await query_context.execute_raw_sql("SELECT id FROM users", return_first=True) is None


async def test_raw_write_invalidates_referenced_tables(query_context, fake_db):
    fake_db.queue(QueryResult(rows=[{"id": 1}], row_count=1))
    await query_context.find_where("users", {"status": "a"})
    await query_context.find_where("users", {"status": "a"})
    assert len(fake_db.calls) == 1

    await query_context.execute_raw_sql("UPDATE users SET status = 'b' WHERE id = 1")

    fake_db.queue(QueryResult(rows=[], row_count=0))
    assert await query_context.find_where("users", {"status": "a"}) == []
    assert len(fake_db.calls) == 3


async def test_dynamic_sql_binds_by_name(query_context, fake_db):
    fake_db.queue(QueryResult(rows=[{"id": 7}], row_count=1, columns=["id"]))
    result = await query_context.execute_dynamic_sql(
        "SELECT id FROM users WHERE status = :status AND id > :min_id",
        {"STATUS": "active", "min_id": 3},
    )
    assert result.rows == [{"id": 7}]
    assert fake_db.calls[0][1] == {"status": "active", "min_id": 3}


@pytest.mark.parametrize("params", [{"status": "a"}, {"status": "a", "min_id": 1, "extra": 2}])
async def test_dynamic_sql_binds_must_match_placeholders(query_context, fake_db, params):
    with pytest.raises(ValidationError, match="do not match"):
        await query_context.execute_dynamic_sql(
            "SELECT id FROM users WHERE status = :status AND id > :min_id", params
        )
    assert fake_db.calls == []


async def test_dynamic_sql_rejects_comments(query_context, fake_db):
    with pytest.raises(ValidationError, match="Comments"):
        await query_context.execute_dynamic_sql("SELECT id FROM users -- WHERE id = :id", {})


async def test_dynamic_sql_allowed_tables(query_context, fake_db):
    await query_context.execute_dynamic_sql(
        "SELECT u.id FROM users u JOIN tags t ON t.id = u.id WHERE u.id = :id",
        {"id": 1},
        allowed_tables=["USERS", "tags"],
    )
    with pytest.raises(ValidationError, match="Table 'articles' not in allowed tables list"):
        await query_context.execute_dynamic_sql(
            "SELECT a.id FROM users u, articles a WHERE a.id = :id",
            {"id": 1},
            allowed_tables=["users"],
        )
    assert len(fake_db.calls) == 1


async def test_dynamic_sql_bind_names_are_identifiers(query_context):
    with pytest.raises(ValidationError):
        await query_context.execute_dynamic_sql("SELECT 1 FROM dual", {"x y": 1})


async def test_health_check_reports_cache_state(query_context, fake_db):
    report = await query_context.health_check()
    assert report["status"] == "healthy"
    assert report["schema_cache"] == "empty"
    assert report["cache_enabled"] is True

    await query_context.get_schema("users")
    fake_db.healthy = False
    report = await query_context.health_check()
    assert report["status"] == "unhealthy"
    assert report["schema_cache"] == "active"


async def test_database_statistics(query_context):
    stats = await query_context.database_statistics(include_indexes=False)
    assert stats["counts"]["tables"] == 3
    assert "timestamp" in stats
    assert stats["schema_cache"]["size"] == 0


async def test_backup_reads_in_primary_key_batches(query_context, fake_db):
    fake_db.queue(
        QueryResult(rows=[{"total": 3}], row_count=1),
        QueryResult(rows=[{"id": 1, "label": "a"}, {"id": 2, "label": "b"}], row_count=2),
        QueryResult(rows=[{"id": 3, "label": "c"}], row_count=1),
    )
    backup = await query_context.backup_table("tags", batch_size=2)

    assert backup["table"] == "tags"
    assert backup["total_records"] == 3
    assert [row["id"] for row in backup["data"]] == [1, 2, 3]
    assert backup["schema"]["primary_key"] == ["id"]
    _, first, second = fake_db.statements
    assert first == "SELECT * FROM tags ORDER BY id FETCH FIRST 2 ROWS ONLY"
    assert second == "SELECT * FROM tags ORDER BY id OFFSET 2 ROWS FETCH NEXT 1 ROWS ONLY"


async def test_backup_respects_limit(query_context, fake_db):
    fake_db.queue(
        QueryResult(rows=[{"total": 50}], row_count=1),
        QueryResult(rows=[{"id": 1, "label": "a"}], row_count=1),
    )
    backup = await query_context.backup_table("tags", limit=1)
    assert len(backup["data"]) == 1
    assert len(fake_db.calls) == 2


async def test_restore_runs_in_one_transaction(query_context, fake_db):
    fake_db.queue(QueryResult(rows=[{"id": 1}], row_count=1))
    await query_context.find_where("tags", {"label": "a"})

    backup = {"data": [{"id": 1, "label": "a", "legacy": "x"}, {"id": 2, "label": "b"}]}
    result = await query_context.restore_table("tags", backup, clear_first=True)

    assert result["restored_records"] == 2
    assert result["total_records"] == 2
    restore_calls = fake_db.calls[1:]
    assert restore_calls[0][0] == "DELETE FROM tags"
    merges = [(sql, args) for sql, args, _ in restore_calls if sql.startswith("MERGE INTO tags")]
    assert len(merges) == 2
    assert "legacy" not in merges[0][0]
    assert all(conn == "conn" for _, _, conn in restore_calls)
    assert fake_db.events == ["acquire", ("begin", None), "commit", "release"]

    fake_db.queue(QueryResult(rows=[{"id": 1}, {"id": 2}], row_count=2))
    assert len(await query_context.find_where("tags", {"label": "a"})) == 2


async def test_failed_restore_rolls_back(query_context, fake_db):
    fake_db.queue(QueryResult(row_count=5), RuntimeError("ORA-00001: unique constraint violated"))
    with pytest.raises(RuntimeError):
        await query_context.restore_table("tags", {"data": [{"id": 1, "label": "a"}]}, clear_first=True)
    assert fake_db.events == ["acquire", ("begin", None), "rollback", "release"]


@pytest.mark.parametrize("backup", [{}, {"data": "rows"}, []])
async def test_restore_rejects_invalid_backup(query_context, fake_db, backup):
    with pytest.raises(ValidationError, match="Invalid backup data format"):
        await query_context.restore_table("tags", backup)
    assert fake_db.calls == []
