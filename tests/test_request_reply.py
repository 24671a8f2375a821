import time

import pytest

from nats_query import (
    ErrorKind,
    ExecutionState,
    Header,
    NatsMessage,
    QueryDefinition,
    QueryMode,
    TransportError,
    execute_query,
)


def _request(subject: str = "svc.status", **kwargs) -> QueryDefinition:
    return QueryDefinition(mode=QueryMode.REQUEST_REPLY, subject=subject, **kwargs)


@pytest.mark.asyncio
async def test_reply_is_mapped_with_default_mapping(broker) -> None:
    broker.respond("svc.status", {"status": "up", "node": {"id": "n1"}})
    result = await execute_query(_request(), broker)
    assert result.ok
    assert result.state is ExecutionState.SUCCEEDED
    assert len(result.frames) == 1
    assert result.frames[0].name == "response"
    assert result.frames[0].rows == [{"status": "up", "node.id": "n1"}]


@pytest.mark.asyncio
async def test_request_data_is_sent_as_payload(broker) -> None:
    seen: list[bytes] = []

    def echo(msg: NatsMessage) -> dict:
        seen.append(msg.data)
        return {"echo": msg.text()}

    broker.respond("svc.echo", echo)
    result = await execute_query(_request("svc.echo", request_data='{"id": 7}'), broker)
    assert result.ok
    assert seen == [b'{"id": 7}']
    assert result.frames[0].rows == [{"echo": '{"id": 7}'}]


@pytest.mark.asyncio
async def test_no_responders_is_no_response(broker) -> None:
    result = await execute_query(_request("svc.missing"), broker)
    assert not result.ok
    assert result.state is ExecutionState.FAILED
    assert result.error.kind is ErrorKind.NO_RESPONSE
    assert result.error.subject == "svc.missing"
    assert result.error.mode == "REQUEST_REPLY"


@pytest.mark.asyncio
async def test_silent_responder_fails_within_timeout_plus_grace(broker) -> None:
    broker.stay_silent("svc.slow")
    started = time.monotonic()
    result = await execute_query(_request("svc.slow", timeout="100ms"), broker, grace_seconds=0.5)
    elapsed = time.monotonic() - started
    assert not result.ok
    assert result.error.kind is ErrorKind.NO_RESPONSE
    assert elapsed < 0.6


@pytest.mark.asyncio
async def test_invalid_json_reply_is_malformed_payload(broker) -> None:
    broker.respond("svc.status", b"<html>oops</html>")
    result = await execute_query(_request(), broker)
    assert not result.ok
    assert result.error.kind is ErrorKind.MALFORMED_PAYLOAD
    assert result.error.subject == "svc.status"
    assert result.error.payload_preview == "<html>oops</html>"


@pytest.mark.asyncio
async def test_reply_mapped_by_script_uses_header(broker) -> None:
    broker.respond(
        "svc.status",
        NatsMessage(subject="reply", data=b'{"load": 0.4}', header=Header({"Node": "n7"})),
    )
    script = "row = json.loads(msg.data)\nrow['node'] = msg.header.get('Node')\nresult = row"
    result = await execute_query(_request(script=script), broker)
    assert result.ok
    assert result.frames[0].name == "result"
    assert result.frames[0].rows == [{"load": 0.4, "node": "n7"}]


@pytest.mark.asyncio
async def test_script_failure_value_is_script_error(broker) -> None:
    broker.respond("svc.status", [])
    script = "rows = json.loads(msg.data)\nresult = rows if rows else ScriptFailure('empty reply')"
    result = await execute_query(_request(script=script), broker)
    assert not result.ok
    assert result.error.kind is ErrorKind.SCRIPT_ERROR
    assert result.error.message == "empty reply"
    assert result.error.subject == "svc.status"
    assert result.error.payload_preview == "[]"
    assert result.error.payload_size == 2


@pytest.mark.asyncio
async def test_compile_error_is_reported_before_network_access(broker) -> None:
    result = await execute_query(_request(script="result = ("), broker)
    assert not result.ok
    assert result.error.kind is ErrorKind.SCRIPT_ERROR
    assert broker.log == []


@pytest.mark.asyncio
async def test_missing_subject_is_invalid_query_without_network_access(broker) -> None:
    result = await execute_query(_request(""), broker)
    assert not result.ok
    assert result.error.kind is ErrorKind.INVALID_QUERY
    assert broker.log == []


@pytest.mark.asyncio
async def test_connection_failure_is_transport_error(broker) -> None:
    broker.fail_with = TransportError("connection closed")
    result = await execute_query(_request(), broker)
    assert not result.ok
    assert result.error.kind is ErrorKind.TRANSPORT_ERROR
    assert result.error.subject == "svc.status"
