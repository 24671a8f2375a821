from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from .errors import ErrorKind, ExecutionError, QueryTimeout
from .execution.engine import ModeExecutor
from .execution.request_reply import RequestReplyExecutor
from .execution.script import ScriptExecutor
from .execution.subscribe import DEFAULT_GRACE_SECONDS, SubscribeExecutor
from .execution.types import ExecutionState, StreamEvent
from .frames import ResultFrame
from .policy import ScriptPolicy, resolve_policy
from .query import QueryDefinition, QueryMode, validate_query
from .sandbox import CompiledScript, compile_script
from .transport import Transport

logger = logging.getLogger(__name__)

_BATCH_EXECUTORS: dict[QueryMode, type[ModeExecutor]] = {
    QueryMode.REQUEST_REPLY: RequestReplyExecutor,
    QueryMode.SCRIPT: ScriptExecutor,
}


class SubscriptionStream:
    """Async iterator over the events of a SUBSCRIBE query.

    Call cancel() from the event loop thread to stop the stream. A message
    script that is still running is aborted.

    Example:
        ```python
        async with result.stream as stream:
            async for event in stream:
                if event.ok:
                    render(event.frame)
        ```
    """

    def __init__(
        self,
        query: QueryDefinition,
        transport: Transport,
        script: CompiledScript | None,
        policy: ScriptPolicy,
        max_messages: int | None = None,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
    ) -> None:
        """Prepare the stream; nothing is subscribed until iteration starts.

        Example:
            ```python
            stream = SubscriptionStream(query, transport, None, ScriptPolicy())
            ```
        """
        self.query = query
        self.state = ExecutionState.IDLE
        self.error: ExecutionError | None = None
        self._transport = transport
        self._script = script
        self._policy = policy
        self._max_messages = max_messages
        self._grace_seconds = grace_seconds
        self._cancel = asyncio.Event()
        self._events: AsyncIterator[StreamEvent] | None = None

    def cancel(self) -> None:
        """Ask the stream to stop, aborting any message script in progress.

        Example:
            ```python
            stream.cancel()
            ```
        """
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        """True once cancel() has been called.

        Example:
            ```python
            stream.cancelled  # False
            ```
        """
        return self._cancel.is_set()

    def __aiter__(self) -> "SubscriptionStream":
        """Return self.

        Example:
            ```python
            iterator = aiter(stream)
            ```
        """
        return self

    async def __anext__(self) -> StreamEvent:
        """Return the next event and track the execution state.

        Example:
            ```python
            event = await anext(stream)
            ```
        """
        if self.state in (ExecutionState.SUCCEEDED, ExecutionState.FAILED, ExecutionState.CANCELLED):
            raise StopAsyncIteration
        if self._events is None:
            self._events = SubscribeExecutor().stream(
                self.query,
                self._transport,
                self._script,
                self._policy,
                self._cancel,
                self._max_messages,
                self._grace_seconds,
            )
            self.state = ExecutionState.RUNNING
        try:
            event = await self._events.__anext__()
        except StopAsyncIteration:
            self.state = ExecutionState.SUCCEEDED
            raise
        if event.terminal:
            self.error = event.error
            if event.error is not None and event.error.kind is ErrorKind.CANCELLED:
                self.state = ExecutionState.CANCELLED
            else:
                self.state = ExecutionState.FAILED
            await self.aclose()
        return event

    async def aclose(self) -> None:
        """Stop the stream and release the subscription.

        Example:
            ```python
            await stream.aclose()
            ```
        """
        if self._events is not None:
            events, self._events = self._events, None
            await events.aclose()  # type: ignore[attr-defined]
        if self.state in (ExecutionState.IDLE, ExecutionState.RUNNING):
            self.state = ExecutionState.CANCELLED

    async def __aenter__(self) -> "SubscriptionStream":
        """Enter an `async with` block.

        Example:
            ```python
            async with stream:
                ...
            ```
        """
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        """Release the subscription on block exit.

        Example:
            ```python
            async with stream:
                pass  # subscription closed here
            ```
        """
        await self.aclose()


@dataclass(slots=True)
class QueryResult:
    """Normalized outcome of `execute_query`.

    Example:
        ```python
        result = QueryResult(ok=True, frames=[ResultFrame("response", [{"a": 1}])])
        ```
    """

    ok: bool
    frames: list[ResultFrame] = field(default_factory=list)
    error: ExecutionError | None = None
    state: ExecutionState = ExecutionState.SUCCEEDED
    stream: SubscriptionStream | None = None
    stdout: str = ""
    elapsed_seconds: float = 0.0
    ref_id: str | None = None

    @classmethod
    def failure(
        cls, error: ExecutionError, elapsed_seconds: float = 0.0, ref_id: str | None = None
    ) -> "QueryResult":
        """Build a failed result around a classified error, keeping what the script printed.

        Example:
            ```python
            QueryResult.failure(InvalidQuery("subject is required"))
            ```
        """
        return cls(
            ok=False,
            error=error,
            state=ExecutionState.FAILED,
            stdout=error.stdout,
            elapsed_seconds=elapsed_seconds,
            ref_id=ref_id,
        )


async def execute_query(
    query: QueryDefinition,
    transport: Transport,
    *,
    policy: ScriptPolicy | None = None,
    policy_file: str | None = None,
    grace_seconds: float = DEFAULT_GRACE_SECONDS,
    max_messages: int | None = None,
) -> QueryResult:
    """Validate a query, run the executor for its mode, and normalize the outcome.

    REQUEST_REPLY and SCRIPT queries complete within timeout + grace_seconds or
    fail with Timeout. SUBSCRIBE queries return immediately with `stream` set.

    Example:
        ```python
        from nats_query import QueryDefinition, QueryMode, execute_query
        result = await execute_query(
            QueryDefinition(mode=QueryMode.REQUEST_REPLY, subject="svc.status", timeout="2s"),
            transport,
        )
        ```
    """
    resolved_policy = resolve_policy(policy, policy_file)
    try:
        timeout = validate_query(query)
        script = compile_script(query.script) if query.has_script else None
    except ExecutionError as exc:
        mode = query.mode.value if isinstance(query.mode, QueryMode) else str(query.mode)
        logger.debug("Rejected %s query: %s", mode, exc)
        return QueryResult.failure(
            exc.with_context(subject=query.subject or None, mode=mode), ref_id=query.ref_id
        )

    mode = QueryMode(query.mode)
    if mode is QueryMode.SUBSCRIBE:
        logger.debug("Opening subscription stream on %s", query.subject)
        return QueryResult(
            ok=True,
            state=ExecutionState.RUNNING,
            stream=SubscriptionStream(
                query, transport, script, resolved_policy, max_messages, grace_seconds
            ),
            ref_id=query.ref_id,
        )

    executor = _BATCH_EXECUTORS[mode]()
    deadline = timeout + max(0.0, grace_seconds)
    started = time.monotonic()
    logger.debug("Dispatching %s query (deadline %.3fs)", mode.value, deadline)
    try:
        output = await asyncio.wait_for(
            executor.execute(query, transport, script, resolved_policy), deadline
        )
    except ExecutionError as exc:
        return QueryResult.failure(exc, time.monotonic() - started, query.ref_id)
    except TimeoutError:
        error = QueryTimeout(
            f"query exceeded {timeout:g}s (+{grace_seconds:g}s grace)",
            subject=query.subject or None,
            mode=mode.value,
        )
        return QueryResult.failure(error, time.monotonic() - started, query.ref_id)
    for frame in output.frames:
        frame.ref_id = query.ref_id
    return QueryResult(
        ok=True,
        frames=output.frames,
        stdout=output.stdout,
        elapsed_seconds=time.monotonic() - started,
        ref_id=query.ref_id,
    )
