import pytest

from query_layer.errors import NotFoundError, ValidationError
from query_layer.models import OutBind, QueryResult
from query_layer.routines import RoutineRunner

pytestmark = pytest.mark.asyncio


async def test_procedure_binds_out_parameters_from_signature(query_context, fake_db):
    fake_db.procedure_results.append({"p_pct": 10, "p_new_salary": 5500})
    result = await query_context.execute_procedure("RAISE_SALARY", [7, 10])

    assert result == {"procedure": "raise_salary", "out": {"p_pct": 10, "p_new_salary": 5500}}
    name, args, conn = fake_db.procedure_calls[0]
    assert name == "RAISE_SALARY"
    assert args == [7, OutBind("p_pct", "NUMBER", 10), OutBind("p_new_salary", "NUMBER")]
    assert conn is None


async def test_signature_is_loaded_once(query_context, fake_db):
    await query_context.execute_procedure("raise_salary", [1, 2])
    await query_context.execute_procedure("raise_salary", [3, 4])
    assert fake_db.routine_loads == 1
    assert query_context.schema_cache_stats()["routines"] == ["raise_salary"]


async def test_parameter_count_mismatch(query_context, fake_db):
    with pytest.raises(ValidationError, match="Parameter count mismatch for procedure 'raise_salary'. Expected 2, got 1"):
        await query_context.execute_procedure("raise_salary", [7])
    assert fake_db.procedure_calls == []


async def test_unvalidated_call_passes_arguments_through(query_context, fake_db):
    args = [1, OutBind("p_total", "NUMBER")]
    await query_context.execute_procedure("undeclared_proc", args, validate=False)
    assert fake_db.procedure_calls[0][1] == args
    assert fake_db.routine_loads == 0


async def test_unknown_routine(query_context):
    with pytest.raises(NotFoundError, match="Procedure 'missing_proc' not found"):
        await query_context.execute_procedure("missing_proc", [])


async def test_routine_kind_must_match_call(query_context):
    with pytest.raises(ValidationError, match="is a function"):
        await query_context.execute_procedure("order_total", [1])
    with pytest.raises(ValidationError, match="is not a function"):
        await query_context.execute_function("raise_salary", [1, 2])


async def test_procedure_name_must_be_identifier(query_context, fake_db):
    with pytest.raises(ValidationError):
        await query_context.execute_procedure("p; DROP TABLE users", [], validate=False)
    assert fake_db.procedure_calls == []


async def test_read_only_refuses_procedures(query_context, fake_db):
    fake_db.read_only = True
    with pytest.raises(PermissionError):
        await query_context.execute_procedure("raise_salary", [1, 2])


async def test_procedure_invalidates_named_tables(query_context, fake_db):
    fake_db.queue(QueryResult(rows=[{"id": 1}], row_count=1))
    await query_context.find_where("users", {"status": "a"})
    await query_context.execute_procedure("raise_salary", [1, 2], invalidate_tables=["users"])

    fake_db.queue(QueryResult(rows=[{"id": 2}], row_count=1))
    assert await query_context.find_where("users", {"status": "a"}) == [{"id": 2}]


async def test_scalar_function(query_context, fake_db):
    fake_db.queue(QueryResult(rows=[{"result": 99}], row_count=1, columns=["result"]))
    result = await query_context.execute_function("order_total", [42])

    assert result["function"] == "order_total"
    assert result["value"] == 99
    assert fake_db.calls[0][:2] == ("SELECT order_total(:1) AS result FROM dual", [42])


async def test_table_function_without_arguments(query_context, fake_db):
    fake_db.queue(QueryResult(rows=[{"id": 1}, {"id": 2}], row_count=2))
    result = await query_context.execute_function("open_orders", result="table", validate=False)

    assert result["value"] is None
    assert result["rows"] == [{"id": 1}, {"id": 2}]
    assert fake_db.statements == ["SELECT * FROM TABLE(open_orders)"]


async def test_unknown_function_result_kind(query_context):
    with pytest.raises(ValidationError):
        await query_context.execute_function("order_total", [1], result="cursor")


async def test_function_results_can_be_cached(query_context, fake_db, memory_store):
    fake_db.queue(QueryResult(rows=[{"result": 10}], row_count=1))
    first = await query_context.execute_function("order_total", [5], use_cache=True, cache_ttl=60)
    second = await query_context.execute_function("order_total", [5], use_cache=True, cache_ttl=60)

    assert first == second
    assert first["value"] == 10
    assert len(fake_db.calls) == 1
    assert "test:tag:function:order_total" in memory_store.data


async def test_batch_runs_in_one_transaction(query_context, fake_db):
    fake_db.procedure_results.extend([{"p_pct": 5, "p_new_salary": 100}, {"p_pct": 6, "p_new_salary": 200}])
    results = await query_context.execute_batch_procedures([
        {"name": "raise_salary", "params": [1, 5]},
        {"name": "raise_salary", "params": [2, 6]},
    ])

    assert [r["out"]["p_new_salary"] for r in results] == [100, 200]
    assert results[0]["params"] == [1, 5]
    assert all(conn == "conn" for _, _, conn in fake_db.procedure_calls)
    assert fake_db.events == ["acquire", ("begin", None), "commit", "release"]


async def test_batch_failure_rolls_back_everything(query_context, fake_db):
    fake_db.procedure_results.extend([{}, RuntimeError("ORA-20001: salary cap")])
    with pytest.raises(RuntimeError):
        await query_context.execute_batch_procedures([
            {"name": "raise_salary", "params": [1, 5]},
            {"name": "raise_salary", "params": [2, 6]},
        ])
    assert fake_db.events == ["acquire", ("begin", None), "rollback", "release"]


async def test_batch_checks_signatures_before_starting(query_context, fake_db):
    with pytest.raises(ValidationError):
        await query_context.execute_batch_procedures([
            {"name": "raise_salary", "params": [1, 5]},
            {"name": "raise_salary", "params": [2]},
        ])
    assert fake_db.events == []
    assert fake_db.procedure_calls == []


async def test_empty_batch(query_context):
    with pytest.raises(ValidationError, match="cannot be empty"):
        await query_context.execute_batch_procedures([])


async def test_describe_routine(query_context):
    info = await query_context.describe_routine("order_total")
    assert info["is_function"] is True
    assert info["return_type"] == "NUMBER"
    assert info["parameter_count"] == 1
    assert info["has_input_params"] and not info["has_output_params"]


async def test_list_routines_type_allow_list(query_context):
    assert [r["name"] for r in await query_context.list_routines("function")] == ["order_total"]
    with pytest.raises(ValidationError):
        await query_context.list_routines("TRIGGER")


async def test_bind_arguments_needs_no_database(query_context):
    routine = await query_context.get_routine("raise_salary")
    assert RoutineRunner.bind_arguments(routine, ["a", "b"])[0] == "a"
