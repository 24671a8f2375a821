import pytest

from nats_query import ErrorKind, QueryDefinition, QueryMode, QueryResult, ScriptPolicy, execute_query


async def run_script(source: str, broker, policy: ScriptPolicy | None = None) -> QueryResult:
    query = QueryDefinition(mode=QueryMode.SCRIPT, script=source, timeout="2s")
    return await execute_query(query, broker, policy=policy)


def _error_text(result: QueryResult) -> str:
    assert result.error is not None
    return result.error.message


@pytest.mark.asyncio
async def test_blocked_import_direct(broker) -> None:
    """Directly importing a blocked module fails as a script error."""
    result = await run_script("import os", broker)
    assert not result.ok
    assert result.error.kind is ErrorKind.SCRIPT_ERROR
    assert "blocked by policy" in _error_text(result)


@pytest.mark.asyncio
async def test_blocked_import_alias(broker) -> None:
    result = await run_script("import os as my_os", broker)
    assert not result.ok
    assert "blocked by policy" in _error_text(result)


@pytest.mark.asyncio
async def test_blocked_import_from(broker) -> None:
    result = await run_script("from os import path", broker)
    assert not result.ok
    assert "blocked by policy" in _error_text(result)


@pytest.mark.asyncio
async def test_nats_client_library_is_not_importable(broker) -> None:
    """Scripts reach NATS only through the `nc` capability."""
    result = await run_script("import nats", broker)
    assert not result.ok
    assert "blocked by policy" in _error_text(result)


@pytest.mark.asyncio
async def test_importlib_bypass_attempt(broker) -> None:
    code = """
import importlib
os = importlib.import_module("os")
"""
    result = await run_script(code, broker, ScriptPolicy(blocked_imports=["os"]))
    assert not result.ok
    assert "blocked by policy" in _error_text(result)


@pytest.mark.asyncio
async def test_dunder_import_bypass_attempt(broker) -> None:
    result = await run_script('os = __import__("os")', broker)
    assert not result.ok
    assert "blocked by policy" in _error_text(result)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("code", "name"),
    [
        ("result = eval('1+1')", "eval"),
        ("exec('x = 1')", "exec"),
        ("f = open('test.txt', 'w')", "open"),
        ("result = globals()", "globals"),
    ],
)
async def test_secure_defaults_block_builtins(broker, code: str, name: str) -> None:
    result = await run_script(code, broker)
    assert not result.ok
    assert f"name '{name}' is not defined" in _error_text(result)


@pytest.mark.asyncio
async def test_system_exit_zero_counts_as_success(broker) -> None:
    result = await run_script("result = {'done': True}\nraise SystemExit(0)", broker)
    assert result.ok
    assert result.frames[0].rows == [{"done": True}]


@pytest.mark.asyncio
async def test_system_exit_non_zero_is_script_error(broker) -> None:
    result = await run_script("raise SystemExit('stop now')", broker)
    assert not result.ok
    assert result.error.kind is ErrorKind.SCRIPT_ERROR
    assert "SystemExit: stop now" in _error_text(result)


@pytest.mark.asyncio
async def test_uncaught_exception_keeps_traceback_in_details(broker) -> None:
    code = """
def parse(value):
    return int(value)

result = {"n": parse("abc")}
"""
    result = await run_script(code, broker)
    assert not result.ok
    assert _error_text(result).startswith("ValueError:")
    assert result.error.details is not None
    assert "<script>" in result.error.details


@pytest.mark.asyncio
async def test_runaway_loop_is_stopped_at_deadline(broker) -> None:
    query = QueryDefinition(mode=QueryMode.SCRIPT, script="while True:\n    pass", timeout="100ms")
    result = await execute_query(query, broker, grace_seconds=0.1)
    assert not result.ok
    assert result.error.kind is ErrorKind.TIMEOUT
