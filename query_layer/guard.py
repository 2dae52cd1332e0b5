"""Trust boundary between structured input and raw SQL text.

Identifiers (tables, columns, aliases) must match an allow-list pattern and are
never quoted or escaped; anything else is rejected. Raw fragments (select
lists, join conditions, ``where_raw``, group/having/order text) are tokenized
with sqlparse and rejected when they could terminate or extend the statement.
"""
import re
from typing import List, Set, Tuple

import sqlparse
from sqlparse import tokens as T
from sqlparse.sql import Statement, Where

from .errors import ValidationError

_NAME = r"[A-Za-z][A-Za-z0-9_$#]{0,127}"
IDENTIFIER_RE = re.compile(rf"^{_NAME}(\.{_NAME}){{0,2}}$")
_TABLE_REF_RE = re.compile(rf"^({_NAME}(\.{_NAME})?)(\s+({_NAME}))?$")

_FORBIDDEN_KEYWORDS = {
    "INSERT", "UPDATE", "DELETE", "MERGE", "CREATE", "ALTER", "DROP",
    "TRUNCATE", "GRANT", "REVOKE", "UNION", "INTERSECT", "MINUS", "EXECUTE",
}

JOIN_TYPES = {
    "INNER", "LEFT", "RIGHT", "FULL", "CROSS",
    "LEFT OUTER", "RIGHT OUTER", "FULL OUTER",
}


def validate_identifier(name: str, context: str = "identifier") -> str:
    """Return ``name`` if it is a plain or dotted Oracle identifier."""
    if not isinstance(name, str) or not IDENTIFIER_RE.match(name):
        raise ValidationError(f"Invalid {context}: {name!r}", {"context": context})
    return name


def validate_table_ref(text: str) -> str:
    """Validate ``table``, ``owner.table`` or either followed by an alias."""
    normalized = " ".join(str(text).split())
    match = _TABLE_REF_RE.match(normalized)
    if not match or (match.group(4) and match.group(4).upper() in {"ON", "AS", "JOIN", "WHERE"}):
        raise ValidationError(f"Invalid table reference: {text!r}", {"context": "table"})
    return normalized


def validate_join_type(join_type: str) -> str:
    normalized = " ".join(str(join_type).upper().split())
    if normalized not in JOIN_TYPES:
        raise ValidationError(f"Invalid join type: {join_type!r}", {"context": "join"})
    return normalized


def ensure_safe_fragment(text: str, context: str) -> str:
    """Reject fragments that could end the statement or smuggle in another one.

    Bind markers other than ``?`` are refused too, because the builder numbers
    placeholders itself.
    """
    if text is None or not str(text).strip():
        raise ValidationError(f"Empty SQL fragment for {context}", {"context": context})

    statements = [s for s in sqlparse.parse(str(text)) if str(s).strip()]
    if len(statements) != 1:
        raise ValidationError(f"Multiple statements in {context} fragment", {"context": context})

    for token in statements[0].flatten():
        if token.ttype in T.Comment:
            raise ValidationError(f"Comments are not allowed in {context}", {"context": context})
        if token.ttype in T.Punctuation and token.value == ";":
            raise ValidationError(f"Statement separator in {context}", {"context": context})
        if token.ttype in T.Keyword and token.normalized in _FORBIDDEN_KEYWORDS:
            raise ValidationError(
                f"Keyword {token.normalized} is not allowed in {context}",
                {"context": context},
            )
        if token.ttype in T.Name.Placeholder and token.value != "?":
            raise ValidationError(
                f"Use '?' bind markers in {context}, not {token.value!r}",
                {"context": context},
            )
    return str(text).strip()


def number_placeholders(fragment: str, start: int) -> Tuple[str, int]:
    """Replace ``?`` markers with ``:start``, ``:start+1``...

    Returns the rewritten fragment and the number of markers replaced. Markers
    inside string literals are left alone since sqlparse lexes those as
    strings.
    """
    parts = []
    count = 0
    for token in sqlparse.parse(fragment)[0].flatten():
        if token.ttype in T.Name.Placeholder and token.value == "?":
            parts.append(f":{start + count}")
            count += 1
        else:
            parts.append(token.value)
    return "".join(parts), count


_TABLE_KEYWORDS = {"FROM", "UPDATE", "INTO", "USING"}
_DESTRUCTIVE_KEYWORDS = {"DROP", "TRUNCATE"}


def parse_statement(sql: str, allow_comments: bool = True) -> Statement:
    """Parse one complete statement, rejecting stacked statements and terminators."""
    statements = [s for s in sqlparse.parse(sql or "") if str(s).strip()]
    if len(statements) != 1:
        raise ValidationError("Exactly one SQL statement is allowed", {"statements": len(statements)})

    statement = statements[0]
    for token in statement.flatten():
        if token.ttype in T.Punctuation and token.value == ";":
            raise ValidationError("Statement terminators are not allowed", {})
        if not allow_comments and token.ttype in T.Comment:
            raise ValidationError("Comments are not allowed in dynamic SQL", {})
    return statement


def leading_keyword(statement: Statement) -> str:
    token = statement.token_first(skip_cm=True)
    return token.normalized if token is not None else ""


def is_destructive(statement: Statement) -> bool:
    """DROP and TRUNCATE, or a DELETE/UPDATE that has no WHERE clause."""
    keyword = leading_keyword(statement)
    if keyword in _DESTRUCTIVE_KEYWORDS:
        return True
    if keyword in ("DELETE", "UPDATE"):
        return not any(isinstance(token, Where) for token in statement.tokens)
    return False


def _is_name(token) -> bool:
    # Unreserved words such as USER lex as keywords but still name tables
    return token.ttype in T.Name or token.ttype is T.Keyword


def _read_name(tokens, position: int) -> Tuple[str, int]:
    parts = []
    while position < len(tokens) and _is_name(tokens[position]):
        parts.append(tokens[position].value)
        position += 1
        if position + 1 < len(tokens) and tokens[position].value == "." and _is_name(tokens[position + 1]):
            position += 1
            continue
        break
    return ".".join(parts).lower(), position


def referenced_tables(statement: Statement) -> List[str]:
    """Table names that follow FROM, JOIN, UPDATE, INTO or USING, lower case.

    Subqueries are walked too since their tokens flatten into the same stream.
    Comma-separated FROM lists are followed past their aliases.
    """
    tokens = [token for token in statement.flatten() if not token.is_whitespace]
    tables: List[str] = []
    for index, token in enumerate(tokens):
        if token.ttype not in T.Keyword:
            continue
        keyword = " ".join(token.normalized.split())
        if keyword not in _TABLE_KEYWORDS and not keyword.endswith("JOIN"):
            continue
        position = index + 1
        while True:
            name, position = _read_name(tokens, position)
            if not name:
                break
            if name != "dual" and name not in tables:
                tables.append(name)
            if keyword != "FROM":
                break
            if position < len(tokens) and tokens[position].normalized == "AS":
                position += 1
            if position < len(tokens) and tokens[position].ttype in T.Name:
                position += 1
            if position < len(tokens) and tokens[position].value == ",":
                position += 1
                continue
            break
    return tables


def named_placeholders(statement: Statement) -> Set[str]:
    """Lower-cased names of the ``:name`` binds in a statement."""
    names = set()
    for token in statement.flatten():
        if token.ttype in T.Name.Placeholder:
            if not token.value.startswith(":") or len(token.value) < 2:
                raise ValidationError(
                    f"Use named :bind placeholders, not {token.value!r}", {"placeholder": token.value}
                )
            names.add(token.value[1:].lower())
    return names
