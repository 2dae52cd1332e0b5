"""Stored procedure and function calls.

Signatures come from the schema catalog, so callers pass only IN values in
declaration order; OUT parameters are bound automatically and returned by
name. Functions run as ``SELECT fn(...) FROM dual`` so Oracle itself refuses
one that tries to change data from inside a query.
"""
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .cache import CacheService, hash_key
from .errors import ValidationError
from .guard import validate_identifier
from .invalidation import InvalidationCoordinator
from .models import OutBind, RoutineInfo
from .schema.catalog import SchemaCatalog
from .transaction import TransactionRunner

logger = logging.getLogger(__name__)

ROUTINE_TYPES = {"PROCEDURE", "FUNCTION"}
FUNCTION_RESULTS = {"scalar", "table"}


def routine_tag(name: str) -> str:
    return f"function:{name.lower()}"


class RoutineRunner:
    def __init__(
        self,
        db_connector: Any,
        catalog: SchemaCatalog,
        cache: CacheService,
        transactions: TransactionRunner,
        coordinator: InvalidationCoordinator,
        default_timeout_ms: Optional[int] = None,
    ):
        self.db_connector = db_connector
        self.catalog = catalog
        self.cache = cache
        self.transactions = transactions
        self.coordinator = coordinator
        self.default_timeout_ms = default_timeout_ms

    def _timeout(self, timeout_ms: Optional[int]) -> Optional[int]:
        return self.default_timeout_ms if timeout_ms is None else timeout_ms

    @staticmethod
    def bind_arguments(routine: RoutineInfo, values: Sequence[Any]) -> List[Any]:
        """Interleave IN values with ``OutBind`` markers following the signature."""
        inputs = routine.input_parameters
        if len(values) != len(inputs):
            kind = "function" if routine.is_function else "procedure"
            raise ValidationError(
                f"Parameter count mismatch for {kind} '{routine.name}'. "
                f"Expected {len(inputs)}, got {len(values)}",
                {"routine": routine.name, "expected": [p.name for p in inputs]},
            )
        supplied = iter(values)
        args = []
        for parameter in routine.parameters:
            if parameter.mode == "IN":
                args.append(next(supplied))
            elif parameter.mode == "OUT":
                args.append(OutBind(parameter.name, parameter.type or "VARCHAR2"))
            else:
                args.append(OutBind(parameter.name, parameter.type or "VARCHAR2", next(supplied)))
        return args

    async def _procedure_args(self, name: str, values: Sequence[Any], validate: bool) -> List[Any]:
        validate_identifier(name, "procedure name")
        if not validate:
            return list(values)
        routine = await self.catalog.get_routine(name)
        if routine.is_function:
            raise ValidationError(f"'{name}' is a function, not a procedure", {"routine": name})
        return self.bind_arguments(routine, values)

    async def execute_procedure(
        self,
        name: str,
        params: Sequence[Any] = (),
        validate: bool = True,
        timeout_ms: Optional[int] = None,
        invalidate_tables: Sequence[str] = (),
    ) -> Dict[str, Any]:
        """Call a procedure and return ``{"procedure", "out"}``.

        With ``validate=False`` the signature is not looked up and ``params``
        are passed through as given, ``OutBind`` markers included. Tables named
        in ``invalidate_tables`` have their cached reads cleared afterwards.
        """
        args = await self._procedure_args(name, params, validate)
        out = await self.transactions.run_with_timeout(
            self.db_connector.call_procedure(name, args), self._timeout(timeout_ms)
        )
        for table in invalidate_tables:
            await self.coordinator.invalidate(table, "procedure")
        return {"procedure": name.lower(), "out": out}

    async def execute_function(
        self,
        name: str,
        params: Sequence[Any] = (),
        result: str = "scalar",
        validate: bool = True,
        use_cache: bool = False,
        cache_ttl: Optional[int] = None,
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Evaluate a function.

        ``result="scalar"`` returns ``{"function", "value", "rows"}``;
        ``result="table"`` selects from ``TABLE(fn(...))`` and leaves ``value``
        None.
        """
        validate_identifier(name, "function name")
        if result not in FUNCTION_RESULTS:
            raise ValidationError(f"Unsupported function result: {result!r}", {"allowed": sorted(FUNCTION_RESULTS)})
        values = list(params)

        if validate:
            routine = await self.catalog.get_routine(name)
            if not routine.is_function:
                raise ValidationError(f"'{name}' is not a function", {"routine": name})
            if routine.output_parameters:
                raise ValidationError(
                    f"Function '{name}' has OUT parameters and cannot be called from SQL",
                    {"routine": name},
                )
            self.bind_arguments(routine, values)

        call = name
        if values:
            call += "(" + ", ".join(f":{i}" for i in range(1, len(values) + 1)) + ")"
        if result == "scalar":
            sql = f"SELECT {call} AS result FROM dual"
        else:
            sql = f"SELECT * FROM TABLE({call})"

        async def load() -> Dict[str, Any]:
            rows = (await self.db_connector.query(sql, values)).rows
            value = rows[0].get("result") if result == "scalar" and rows else None
            return {"function": name.lower(), "value": value, "rows": rows}

        def run():
            return self.transactions.run_with_timeout(load(), self._timeout(timeout_ms))

        if not use_cache:
            return await run()
        key = f"function:{name.lower()}:{hash_key(sql, values)}"
        return await self.cache.remember(key, run, cache_ttl, tags=[routine_tag(name)])

    async def execute_batch_procedures(
        self,
        procedures: Sequence[Mapping[str, Any]],
        timeout_ms: Optional[int] = None,
        isolation_level: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Call several procedures in one transaction; any failure rolls back all of them.

        Each item is ``{"name", "params", "validate"}``. Signatures are checked
        before the transaction starts.
        """
        if not procedures:
            raise ValidationError("Procedures list cannot be empty", {})

        calls = []
        for item in procedures:
            name = item.get("name")
            params = list(item.get("params") or ())
            args = await self._procedure_args(name, params, item.get("validate", True))
            calls.append((name, params, args))

        async def work(conn) -> List[Dict[str, Any]]:
            results = []
            for name, params, args in calls:
                out = await self.db_connector.call_procedure(name, args, connection=conn)
                results.append({"procedure": name.lower(), "params": params, "out": out})
                logger.debug("Executed procedure in batch: %s", name)
            return results

        return await self.transactions.with_transaction(work, timeout_ms, isolation_level)

    async def describe_routine(self, name: str) -> Dict[str, Any]:
        return (await self.catalog.get_routine(name)).describe()

    async def list_routines(
        self, routine_type: Optional[str] = None, name_pattern: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        if routine_type and routine_type.upper() not in ROUTINE_TYPES:
            raise ValidationError(
                f"Unsupported routine type: {routine_type!r}", {"allowed": sorted(ROUTINE_TYPES)}
            )
        return await self.db_connector.list_routines(routine_type, name_pattern)
