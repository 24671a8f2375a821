from pathlib import Path

import pytest

from nats_query import (
    ErrorKind,
    ExecutionState,
    InvalidQuery,
    QueryDefinition,
    QueryMode,
    QueryResult,
    ScriptPolicy,
    execute_query,
)


@pytest.mark.asyncio
async def test_query_from_editor_fields_runs_end_to_end(broker) -> None:
    broker.respond("svc.status", {"status": "up"})
    query = QueryDefinition.from_dict(
        {"refId": "A", "queryType": "REQUEST_REPLY", "natsSubject": "svc.status", "requestTimeout": "1s"}
    )
    result = await execute_query(query, broker)
    assert result.ok is True
    assert result.error is None
    assert result.stream is None
    assert result.elapsed_seconds >= 0.0
    assert result.frames[0].rows == [{"status": "up"}]


@pytest.mark.asyncio
async def test_import_in_mapping_script_uses_policy(broker) -> None:
    broker.respond("svc.status", {"x": 81})
    query = QueryDefinition(
        mode=QueryMode.REQUEST_REPLY,
        subject="svc.status",
        script="import math\nresult = {'root': math.sqrt(json.loads(msg.data)['x'])}\nprint('done')",
    )
    result = await execute_query(query, broker, policy=ScriptPolicy(blocked_imports=["os"]))
    assert result.ok is True
    assert result.frames[0].rows == [{"root": 9.0}]
    assert result.stdout == "done\n"


@pytest.mark.asyncio
async def test_policy_file_is_applied(broker, tmp_path: Path) -> None:
    policy_file = tmp_path / "policy.toml"
    policy_file.write_text("[policy]\nblocked_imports = [\"math\"]\n", encoding="utf-8")
    query = QueryDefinition(mode=QueryMode.SCRIPT, script="import math\nresult = {}")
    result = await execute_query(query, broker, policy_file=str(policy_file))
    assert result.ok is False
    assert "blocked by policy" in result.error.message


@pytest.mark.asyncio
async def test_policy_with_config_path_is_reloaded(broker, tmp_path: Path) -> None:
    policy_file = tmp_path / "policy.toml"
    policy_file.write_text("[policy]\nblocked_builtins = [\"len\"]\n", encoding="utf-8")
    query = QueryDefinition(mode=QueryMode.SCRIPT, script="result = {'n': len('abc')}")
    result = await execute_query(query, broker, policy=ScriptPolicy(config_path=str(policy_file)))
    assert result.ok is False
    assert "name 'len' is not defined" in result.error.message


@pytest.mark.asyncio
async def test_invalid_query_is_a_failed_result_not_an_exception(broker) -> None:
    result = await execute_query(QueryDefinition(mode=QueryMode.SCRIPT), broker)
    assert isinstance(result, QueryResult)
    assert result.ok is False
    assert result.state is ExecutionState.FAILED
    assert isinstance(result.error, InvalidQuery)
    assert result.error.to_dict()["kind"] == "InvalidQuery"
    assert str(result.error).startswith("InvalidQuery: ")


@pytest.mark.asyncio
async def test_deadline_covers_the_whole_script(broker) -> None:
    broker.stay_silent("svc.slow")
    source = 'nc.request("svc.slow", "", "5s")\nresult = {}'
    query = QueryDefinition(mode=QueryMode.SCRIPT, script=source, timeout="100ms")
    result = await execute_query(query, broker, grace_seconds=0.1)
    assert result.ok is False
    assert result.error.kind is ErrorKind.TIMEOUT
    assert result.error.mode == "SCRIPT"
    assert result.elapsed_seconds < 1.0


@pytest.mark.asyncio
async def test_subscribe_query_returns_running_stream(broker) -> None:
    query = QueryDefinition(mode=QueryMode.SUBSCRIBE, subject="events.>", timeout="50ms")
    result = await execute_query(query, broker)
    assert result.ok is True
    assert result.state is ExecutionState.RUNNING
    assert result.stream is not None
    assert broker.log == []
    await result.stream.aclose()
    assert result.stream.state is ExecutionState.CANCELLED


@pytest.mark.asyncio
async def test_ref_id_is_carried_on_result_and_frames(broker) -> None:
    broker.respond("svc.status", {"status": "up"})
    query = QueryDefinition.from_dict(
        {"refId": "B", "queryType": "REQUEST_REPLY", "natsSubject": "svc.status"}
    )
    result = await execute_query(query, broker)
    assert result.ref_id == "B"
    assert result.frames[0].ref_id == "B"
    assert result.frames[0].to_dict()["ref_id"] == "B"

    failed = await execute_query(QueryDefinition(mode=QueryMode.SCRIPT, ref_id="C"), broker)
    assert failed.ok is False
    assert failed.ref_id == "C"
