import pytest

from query_layer.errors import ValidationError
from query_layer.guard import (
    ensure_safe_fragment,
    is_destructive,
    leading_keyword,
    named_placeholders,
    number_placeholders,
    parse_statement,
    referenced_tables,
    validate_identifier,
    validate_join_type,
    validate_table_ref,
)


@pytest.mark.parametrize("name", ["users", "USERS", "hr.employees", "a.b.c", "order_item$", "t#1"])
def test_valid_identifiers(name):
    assert validate_identifier(name) == name


@pytest.mark.parametrize("name", [
    "", "1users", "users;", "users--", "users name", '"users"', "a.b.c.d", "users)", None,
])
def test_invalid_identifiers(name):
    with pytest.raises(ValidationError):
        validate_identifier(name)


@pytest.mark.parametrize("text,expected", [
    ("users", "users"),
    ("users u", "users u"),
    ("hr.users   u", "hr.users u"),
])
def test_table_refs(text, expected):
    assert validate_table_ref(text) == expected


@pytest.mark.parametrize("text", ["users u x", "users ON", "users; drop", "(select 1 from dual) x"])
def test_bad_table_refs(text):
    with pytest.raises(ValidationError):
        validate_table_ref(text)


def test_join_types_are_allow_listed():
    assert validate_join_type("left  outer") == "LEFT OUTER"
    with pytest.raises(ValidationError):
        validate_join_type("NATURAL")


@pytest.mark.parametrize("fragment", [
    "id, name",
    "COUNT(*) AS total",
    "o.user_id = u.id",
    "status = 'a;b'",
    "name LIKE ?",
])
def test_safe_fragments_pass(fragment):
    assert ensure_safe_fragment(fragment, "test") == fragment


@pytest.mark.parametrize("fragment", [
    "1 = 1; DROP TABLE users",
    "id -- trailing comment",
    "id /* hidden */",
    "DELETE FROM users",
    "id FROM users UNION SELECT password",
    "id = :1",
    "",
    "   ",
])
def test_unsafe_fragments_rejected(fragment):
    with pytest.raises(ValidationError):
        ensure_safe_fragment(fragment, "test")


def test_number_placeholders_skips_string_literals():
    sql, count = number_placeholders("a = ? AND b = '?' AND c > ?", 4)
    assert sql == "a = :4 AND b = '?' AND c > :5"
    assert count == 2


def _statement(sql):
    return parse_statement(sql)


@pytest.mark.parametrize("sql,expected", [
    ("SELECT * FROM users", ["users"]),
    ("SELECT * FROM hr.users u JOIN tags t ON t.id = u.id", ["hr.users", "tags"]),
    ("SELECT * FROM users u, tags AS t, articles", ["users", "tags", "articles"]),
    ("SELECT 1 FROM dual", []),
    ("UPDATE users SET name = :name WHERE id = :id", ["users"]),
    ("INSERT INTO tags (id) SELECT id FROM articles", ["tags", "articles"]),
    ("DELETE FROM users WHERE id IN (SELECT id FROM tags)", ["users", "tags"]),
])
def test_referenced_tables(sql, expected):
    assert referenced_tables(_statement(sql)) == expected


@pytest.mark.parametrize("sql,expected", [
    ("DROP TABLE users", True),
    ("truncate table users", True),
    ("DELETE FROM users", True),
    ("DELETE FROM users WHERE id = 1", False),
    ("UPDATE users SET name = 'x'", True),
    ("UPDATE users SET name = 'x' WHERE id = 1", False),
    ("SELECT * FROM users", False),
])
def test_is_destructive(sql, expected):
    assert is_destructive(_statement(sql)) is expected


def test_named_placeholders():
    statement = _statement("SELECT * FROM users WHERE id = :ID OR name = :name OR email = :name")
    assert named_placeholders(statement) == {"id", "name"}
    with pytest.raises(ValidationError):
        named_placeholders(_statement("SELECT * FROM users WHERE id = ?"))


@pytest.mark.parametrize("sql", ["SELECT 1 FROM dual; SELECT 2 FROM dual", "SELECT 1 FROM dual;", "  "])
def test_parse_statement_requires_exactly_one(sql):
    with pytest.raises(ValidationError):
        parse_statement(sql)


def test_parse_statement_comments():
    assert leading_keyword(parse_statement("/* note */ SELECT 1 FROM dual")) == "SELECT"
    with pytest.raises(ValidationError):
        parse_statement("SELECT 1 FROM dual /* note */", allow_comments=False)
