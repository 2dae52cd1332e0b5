"""Parameterized Oracle SQL from structured option objects.

Every value is bound positionally (``:1``, ``:2``...), numbered in the order
clauses are emitted. Identifiers either match the table schema or pass the
allow-list in ``guard``; caller text (select lists, join conditions, raw
predicates, group/having/order) passes the fragment guard.
"""
import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import ValidationError
from .guard import (
    ensure_safe_fragment,
    number_placeholders,
    validate_identifier,
    validate_join_type,
    validate_table_ref,
)
from .models import (
    DELETED_AT,
    UPDATED_AT,
    Between,
    Comparison,
    OutBind,
    QuerySpec,
    Raw,
    TableSchema,
)

logger = logging.getLogger(__name__)

Built = Tuple[str, List[Any]]

COMPARISON_OPERATORS = {"=", "!=", "<>", "<", "<=", ">", ">=", "LIKE", "NOT LIKE"}
LOB_TYPES = {"CLOB", "NCLOB", "BLOB", "BFILE", "LONG", "LONG RAW"}


def soft_delete_predicate(qualifier: Optional[str] = None) -> str:
    """Rows not yet deleted, or scheduled for deletion in the future."""
    column = f"{qualifier}.{DELETED_AT}" if qualifier else DELETED_AT
    return f"({column} IS NULL OR {column} > SYSTIMESTAMP)"


class Binds:
    """Collects positional arguments and hands out their placeholders."""

    def __init__(self):
        self.args: List[Any] = []

    def add(self, value: Any) -> str:
        self.args.append(value)
        return f":{len(self.args)}"

    def add_fragment(self, fragment: str, values: Sequence[Any], context: str) -> str:
        sql, count = number_placeholders(fragment, len(self.args) + 1)
        if count != len(values):
            raise ValidationError(
                f"{context} has {count} bind markers but {len(values)} values",
                {"context": context},
            )
        self.args.extend(values)
        return sql


class QueryBuilder:
    """Stateless; one instance is shared by every operation."""

    def build_select(self, table: str, spec: QuerySpec, schema: TableSchema) -> Built:
        table_ref = validate_table_ref(table)
        binds = Binds()

        projection = ensure_safe_fragment(spec.select or "*", "select")
        parts = [f"SELECT {'DISTINCT ' if spec.distinct else ''}{projection}", f"FROM {table_ref}"]

        for join in spec.joins:
            join_type = validate_join_type(join.type)
            join_table = validate_table_ref(join.table)
            if join_type == "CROSS":
                parts.append(f"CROSS JOIN {join_table}")
            else:
                parts.append(
                    f"{join_type} JOIN {join_table} ON {ensure_safe_fragment(join.on, 'join condition')}"
                )

        # Qualify deleted_at once other tables are in scope
        qualifier = table_ref.split()[-1] if spec.joins else None
        conditions = self.where_conditions(
            schema,
            binds,
            where=spec.where,
            predicates=spec.predicates,
            where_raw=spec.where_raw,
            strict=False,
            filter_soft_deleted=self.should_filter_soft_deleted(schema, spec.include_soft_deleted),
            qualifier=qualifier,
        )
        if conditions:
            parts.append("WHERE " + " AND ".join(conditions))

        if spec.group_by:
            parts.append(f"GROUP BY {ensure_safe_fragment(spec.group_by, 'group by')}")
        if spec.having:
            parts.append(f"HAVING {ensure_safe_fragment(spec.having, 'having')}")

        order_by = self.order_by_clause(spec.order_by, schema, spec.aliases)
        if order_by:
            parts.append(f"ORDER BY {order_by}")

        parts.extend(self.pagination_clauses(spec.limit, spec.offset))
        return " ".join(parts), binds.args

    def build_count(self, table: str, spec: QuerySpec, schema: TableSchema) -> Built:
        """Wrap the unordered, unlimited form of ``spec`` under ``COUNT(*)``."""
        base = replace(spec, order_by=None, limit=None, offset=None)
        sql, args = self.build_select(table, base, schema)
        return f"SELECT COUNT(*) AS total FROM ({sql}) count_query", args

    @staticmethod
    def should_filter_soft_deleted(schema: TableSchema, include_soft_deleted: Optional[bool]) -> bool:
        return schema.has_deleted_at and not include_soft_deleted

    def where_conditions(
        self,
        schema: TableSchema,
        binds: Binds,
        where: Optional[Dict[str, Any]] = None,
        predicates: Iterable[Any] = (),
        where_raw: Optional[str] = None,
        strict: bool = False,
        filter_soft_deleted: bool = False,
        qualifier: Optional[str] = None,
    ) -> List[str]:
        """Compile filters into SQL conditions, binding values through ``binds``.

        With ``strict`` an unknown column raises ``ValidationError`` (write
        paths); otherwise the condition is dropped with a warning.
        """
        conditions = []

        for key, value in (where or {}).items():
            column = self.filter_column(key, schema, strict)
            if column is None:
                continue
            if isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                if not values:
                    conditions.append("1 = 0")
                    continue
                placeholders = ", ".join(binds.add(v) for v in values)
                conditions.append(f"{column} IN ({placeholders})")
            elif value is None:
                conditions.append(f"{column} IS NULL")
            else:
                conditions.append(f"{column} = {binds.add(value)}")

        for predicate in predicates:
            condition = self._predicate(predicate, schema, binds, strict)
            if condition:
                conditions.append(condition)

        if where_raw:
            conditions.append(f"({binds.add_fragment(ensure_safe_fragment(where_raw, 'where'), (), 'where')})")

        if filter_soft_deleted:
            conditions.append(soft_delete_predicate(qualifier))

        return conditions

    def _predicate(self, predicate: Any, schema: TableSchema, binds: Binds, strict: bool) -> Optional[str]:
        if isinstance(predicate, Raw):
            fragment = ensure_safe_fragment(predicate.sql, "raw predicate")
            return f"({binds.add_fragment(fragment, list(predicate.args), 'raw predicate')})"

        if isinstance(predicate, Between):
            column = self.filter_column(predicate.column, schema, strict)
            if column is None:
                return None
            return f"{column} BETWEEN {binds.add(predicate.low)} AND {binds.add(predicate.high)}"

        if isinstance(predicate, Comparison):
            op = " ".join(str(predicate.op).upper().split())
            if op not in COMPARISON_OPERATORS:
                raise ValidationError(f"Unsupported operator: {predicate.op!r}", {"context": "where"})
            column = self.filter_column(predicate.column, schema, strict)
            if column is None:
                return None
            if predicate.value is None:
                if op == "=":
                    return f"{column} IS NULL"
                if op in ("!=", "<>"):
                    return f"{column} IS NOT NULL"
                raise ValidationError(f"Cannot compare {column} {op} NULL", {"context": "where"})
            return f"{column} {op} {binds.add(predicate.value)}"

        raise ValidationError(f"Unknown predicate type: {type(predicate).__name__}", {"context": "where"})

    @staticmethod
    def filter_column(key: str, schema: TableSchema, strict: bool) -> Optional[str]:
        if "." in key:
            validate_identifier(key, "column")
            logger.warning("Qualified column '%s' is not validated against table '%s'", key, schema.table_name)
            return key
        if schema.has_column(key):
            return validate_identifier(key.lower(), "column")
        if strict:
            raise ValidationError(
                f"Column '{key}' not found in table '{schema.table_name}'",
                {"table": schema.table_name, "column": key},
            )
        logger.warning("Column '%s' not found in table '%s', skipping condition", key, schema.table_name)
        return None

    @staticmethod
    def order_by_clause(order_by: Optional[str], schema: TableSchema, aliases: Sequence[str] = ()) -> Optional[str]:
        """Return the ORDER BY text, or None when its leading column is unknown."""
        if not order_by:
            return None
        fragment = ensure_safe_fragment(order_by, "order by")
        leading = fragment.split()[0].split(",")[0]
        known_aliases = {alias.lower() for alias in aliases}
        if "." in leading or schema.has_column(leading) or leading.lower() in known_aliases:
            return fragment
        logger.warning(
            "Order by column '%s' not found in table '%s', skipping", leading, schema.table_name
        )
        return None

    @staticmethod
    def pagination_clauses(limit: Optional[int], offset: Optional[int]) -> List[str]:
        """Limit and offset are integer-coerced and emitted as literals.

        ``limit=None`` means unbounded; ``limit=0`` fetches no rows.
        """
        parts = []
        offset = max(int(offset), 0) if offset else 0
        if offset:
            parts.append(f"OFFSET {offset} ROWS")
        if limit is not None:
            parts.append(f"FETCH {'NEXT' if offset else 'FIRST'} {max(int(limit), 0)} ROWS ONLY")
        return parts

    @staticmethod
    def resolve_returning(schema: TableSchema, returning: Any) -> List[str]:
        """Expand ``'*'``/comma text/list into schema columns usable as out-binds."""
        if not returning:
            return []
        if returning == "*":
            return [
                name for name, info in schema.columns.items()
                if (info.type or "").upper() not in LOB_TYPES
            ]
        names = returning.split(",") if isinstance(returning, str) else list(returning)
        columns = []
        for name in (n.strip().lower() for n in names):
            if not schema.has_column(name):
                raise ValidationError(
                    f"Returning column '{name}' not found in table '{schema.table_name}'",
                    {"table": schema.table_name, "column": name},
                )
            columns.append(name)
        return columns

    @staticmethod
    def _returning_clause(schema: TableSchema, columns: Sequence[str], binds: Binds) -> str:
        if not columns:
            return ""
        targets = [binds.add(OutBind(column, schema.columns[column].type)) for column in columns]
        return f" RETURNING {', '.join(columns)} INTO {', '.join(targets)}"

    def build_insert(self, table: str, schema: TableSchema, data: Dict[str, Any], returning: Sequence[str] = ()) -> Built:
        table_name = validate_identifier(table, "table name")
        binds = Binds()
        columns = list(data)
        placeholders = [binds.add(data[column]) for column in columns]
        sql = f"INSERT INTO {table_name} ({', '.join(columns)}) VALUES ({', '.join(placeholders)})"
        sql += self._returning_clause(schema, returning, binds)
        return sql, binds.args

    def build_update(
        self,
        table: str,
        schema: TableSchema,
        data: Dict[str, Any],
        where: Dict[str, Any],
        returning: Sequence[str] = (),
    ) -> Built:
        table_name = validate_identifier(table, "table name")
        if not where:
            raise ValidationError("Update requires at least one where condition", {"table": table})
        binds = Binds()
        assignments = [f"{column} = {binds.add(value)}" for column, value in data.items()]
        conditions = self.where_conditions(schema, binds, where=where, strict=True)
        sql = f"UPDATE {table_name} SET {', '.join(assignments)} WHERE {' AND '.join(conditions)}"
        sql += self._returning_clause(schema, returning, binds)
        return sql, binds.args

    def build_delete(
        self,
        table: str,
        schema: TableSchema,
        where: Dict[str, Any],
        soft: bool,
        returning: Sequence[str] = (),
    ) -> Built:
        """Hard ``DELETE`` or soft-delete ``UPDATE`` of the deletion timestamp.

        The soft form only touches rows not yet deleted, so repeating it keeps
        the first timestamp.
        """
        table_name = validate_identifier(table, "table name")
        binds = Binds()
        conditions = self.where_conditions(schema, binds, where=where, strict=True, filter_soft_deleted=soft)

        if soft:
            assignments = [f"{DELETED_AT} = SYSTIMESTAMP"]
            if schema.has_updated_at:
                assignments.append(f"{UPDATED_AT} = SYSTIMESTAMP")
            sql = f"UPDATE {table_name} SET {', '.join(assignments)}"
        else:
            sql = f"DELETE FROM {table_name}"

        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += self._returning_clause(schema, returning, binds)
        return sql, binds.args

    def build_merge(
        self,
        table: str,
        schema: TableSchema,
        data: Dict[str, Any],
        conflict_columns: Sequence[str],
        update_columns: Optional[Sequence[str]],
    ) -> Built:
        """Oracle upsert.

        ``update_columns=None`` emits insert-if-absent only; otherwise matched
        rows get those columns from the source row, plus ``updated_at`` restamped
        when the table has it.
        """
        table_name = validate_identifier(table, "table name")
        missing = [column for column in conflict_columns if column not in data]
        if missing:
            raise ValidationError(
                f"Conflict columns missing from data: {', '.join(missing)}",
                {"table": table, "columns": missing},
            )

        binds = Binds()
        columns = list(data)
        source = ", ".join(f"{binds.add(data[column])} AS {column}" for column in columns)
        match = " AND ".join(f"t.{column} = s.{column}" for column in conflict_columns)
        sql = f"MERGE INTO {table_name} t USING (SELECT {source} FROM dual) s ON ({match})"

        if update_columns is not None:
            assignments = [f"t.{column} = s.{column}" for column in update_columns if column != UPDATED_AT]
            if schema.has_updated_at and UPDATED_AT not in conflict_columns:
                assignments.append(f"t.{UPDATED_AT} = SYSTIMESTAMP")
            if assignments:
                sql += f" WHEN MATCHED THEN UPDATE SET {', '.join(assignments)}"

        sql += (
            f" WHEN NOT MATCHED THEN INSERT ({', '.join(columns)})"
            f" VALUES ({', '.join('s.' + column for column in columns)})"
        )
        return sql, binds.args
