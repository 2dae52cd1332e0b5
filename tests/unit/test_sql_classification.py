import pytest
from query_layer.database import DatabaseConnector
from query_layer.models import OutBind

@pytest.mark.parametrize("sql,expected", [
    ("SELECT 1 FROM dual", True),
    ("  SELECT * FROM employees", True),
    ("/*comment*/SELECT col FROM t", True),
    ("WITH x AS (SELECT 1 FROM dual) SELECT * FROM x", True),
    ("SELECT COUNT(*) AS total FROM (SELECT * FROM users WHERE id = :1) count_query", True),
    ("", False),
    ("   ", False),
    ("SELECT 1; SELECT 2", False),
    ("INSERT INTO t VALUES (1)", False),
    ("UPDATE t SET a=1", False),
    ("DELETE FROM t", False),
    ("MERGE INTO t USING (SELECT :1 AS id FROM dual) s ON (t.id = s.id) WHEN NOT MATCHED THEN INSERT (id) VALUES (s.id)", False),
    ("CREATE TABLE x(a int)", False),
    ("DROP TABLE x", False),
])
def test_is_select_query(sql, expected):
    assert DatabaseConnector._is_select_query(sql) is expected

@pytest.mark.parametrize("sql,expected", [
    ("INSERT INTO t VALUES(1)", True),
    ("  update t set a=1", True),
    ("DELETE FROM t", True),
    ("MERGE INTO t USING s ON (t.id=s.id) WHEN MATCHED THEN UPDATE SET t.a=s.a", True),
    ("CREATE TABLE x(a int)", True),
    ("ALTER TABLE x ADD b int", True),
    ("DROP TABLE x", True),
    ("TRUNCATE TABLE x", True),
    ("GRANT SELECT ON t TO u", True),
    ("REVOKE SELECT ON t FROM u", True),
    ("SELECT 1 FROM dual", False),
    ("WITH c AS (SELECT 1 FROM dual) SELECT * FROM c", False),
    ("SELECT 1; DELETE FROM t", False),  # multi-statement returns False
])
def test_is_write_operation(sql, expected):
    assert DatabaseConnector._is_write_operation(sql) is expected

def test_read_only_connector_rejects_writes():
    connector = DatabaseConnector("user/pw@db", read_only=True)
    connector._assert_query_executable("SELECT 1 FROM dual")
    with pytest.raises(PermissionError):
        connector._assert_query_executable("UPDATE users SET name = :1")

@pytest.mark.parametrize("type_name,attr", [
    ("NUMBER", "DB_TYPE_NUMBER"),
    ("DATE", "DB_TYPE_DATE"),
    ("TIMESTAMP(6)", "DB_TYPE_TIMESTAMP"),
    ("TIMESTAMP(6) WITH TIME ZONE", "DB_TYPE_TIMESTAMP_TZ"),
    ("VARCHAR2", "DB_TYPE_VARCHAR"),
])
def test_out_bind_types(type_name, attr):
    import oracledb
    assert DatabaseConnector._db_type(type_name) is getattr(oracledb, attr)

class _Var:
    def __init__(self, value):
        self.value = value

    def getvalue(self):
        return self.value

class _Cursor:
    rowcount = 2

    def var(self, db_type):
        return _Var(None)

def test_out_binds_become_rows():
    cursor = _Cursor()
    params, out_binds = DatabaseConnector(None)._bind(cursor, ["x", OutBind("id", "NUMBER"), OutBind("name")])
    assert params[0] == "x"
    assert [column for column, _ in out_binds] == ["id", "name"]

    out_binds[0][1].value = [1, 2]
    out_binds[1][1].value = ["a", "b"]
    result = DatabaseConnector._returning_result(cursor, out_binds)
    assert result.row_count == 2
    assert result.rows == [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}]
