from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from ..errors import ExecutionError, QueryCancelled, QueryTimeout, TransportError
from ..frames import ResultFrame
from ..message import NatsMessage
from ..policy import ScriptPolicy
from ..query import QueryDefinition, QueryMode
from ..sandbox import CompiledScript
from ..transport import SubscriptionHandle, Transport
from .mapping import map_message
from .types import StreamEvent

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 1.0


async def _race_cancel(work: asyncio.Future, cancel: asyncio.Event, timeout: float | None = None) -> bool:
    """Wait for `work`, the cancel signal or the timeout, whichever comes first.

    Returns True when `work` finished. Otherwise `work` is cancelled and
    awaited so its cleanup has run before returning False.

    Example:
        ```python
        finished = await _race_cancel(asyncio.ensure_future(sub.next_msg(5.0)), cancel)
        ```
    """
    cancelled = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait(
            {work, cancelled}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        cancelled.cancel()
        if not work.done():
            work.cancel()
            await asyncio.wait({work})
    return work in done


async def _receive(
    sub: SubscriptionHandle, timeout: float | None, cancel: asyncio.Event
) -> NatsMessage | None:
    """Wait for the next message or the cancel signal, whichever comes first.

    Example:
        ```python
        msg = await _receive(sub, 5.0, cancel)
        ```
    """
    if cancel.is_set():
        return None
    receive = asyncio.ensure_future(sub.next_msg(timeout))
    if await _race_cancel(receive, cancel):
        return receive.result()
    return None


async def _map_within(
    message: NatsMessage,
    script: CompiledScript | None,
    transport: Transport,
    policy: ScriptPolicy,
    *,
    mode: str,
    cancel: asyncio.Event,
    deadline: float,
) -> tuple[ResultFrame, str] | None:
    """Map one message, aborting its script on cancel or when the deadline passes.

    Returns None when cancelled; a missed deadline raises a non-fatal QueryTimeout.

    Example:
        ```python
        mapped = await _map_within(msg, compiled, transport, policy, mode="SUBSCRIBE", cancel=cancel, deadline=6.0)
        ```
    """
    if script is None:
        return await map_message(message, None, transport, policy, mode=mode)
    mapping = asyncio.ensure_future(map_message(message, script, transport, policy, mode=mode))
    if await _race_cancel(mapping, cancel, deadline):
        return mapping.result()
    if cancel.is_set():
        return None
    raise QueryTimeout(
        f"message script exceeded {deadline:g}s",
        subject=message.subject,
        mode=mode,
        payload=message.data,
    )


def _cancelled_event(sequence: int, subject: str, mode: str) -> StreamEvent:
    """Build the terminal event reported after cancel().

    Example:
        ```python
        event = _cancelled_event(3, "sensors.*", "SUBSCRIBE")
        ```
    """
    logger.debug("Subscription on %s cancelled after %d message(s)", subject, sequence)
    return StreamEvent(
        sequence=sequence,
        error=QueryCancelled("subscription cancelled by caller", subject=subject, mode=mode),
        terminal=True,
    )


class SubscribeExecutor:
    """Stream one frame (or per-message error) for every message on a subject.

    Example:
        ```python
        async for event in SubscribeExecutor().stream(query, transport, None, ScriptPolicy(), cancel):
            print(event.frame)
        ```
    """

    mode = QueryMode.SUBSCRIBE

    async def stream(
        self,
        query: QueryDefinition,
        transport: Transport,
        script: CompiledScript | None,
        policy: ScriptPolicy,
        cancel: asyncio.Event,
        max_messages: int | None = None,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
    ) -> AsyncIterator[StreamEvent]:
        """Subscribe and yield events until cancelled, failed, or max_messages reached.

        The query timeout gates the first message. Each message script must
        finish within timeout + grace_seconds or that message fails with Timeout.

        Example:
            ```python
            events = SubscribeExecutor().stream(query, transport, None, policy, asyncio.Event())
            ```
        """
        subject = query.subject
        mode = self.mode.value
        try:
            sub = await transport.subscribe(subject)
        except ExecutionError as exc:
            yield StreamEvent(sequence=0, error=exc.with_context(subject=subject, mode=mode), terminal=True)
            return

        sequence = 0
        gate: float | None = query.timeout_seconds
        script_deadline = query.timeout_seconds + max(0.0, grace_seconds)
        try:
            while max_messages is None or sequence < max_messages:
                try:
                    message = await _receive(sub, gate, cancel)
                except TransportError as exc:
                    yield StreamEvent(
                        sequence=sequence, error=exc.with_context(subject=subject, mode=mode), terminal=True
                    )
                    return
                if cancel.is_set():
                    yield _cancelled_event(sequence, subject, mode)
                    return
                if message is None:
                    yield StreamEvent(
                        sequence=sequence,
                        error=QueryTimeout(f"no message within {gate:g}s", subject=subject, mode=mode),
                        terminal=True,
                    )
                    return
                gate = None
                sequence += 1
                try:
                    mapped = await _map_within(
                        message,
                        script,
                        transport,
                        policy,
                        mode=mode,
                        cancel=cancel,
                        deadline=script_deadline,
                    )
                except TransportError as exc:
                    yield StreamEvent(sequence=sequence, error=exc, terminal=True, stdout=exc.stdout)
                    return
                except ExecutionError as exc:
                    logger.warning("Message %d on %s failed: %s", sequence, message.subject, exc)
                    yield StreamEvent(sequence=sequence, error=exc, terminal=exc.fatal, stdout=exc.stdout)
                    if exc.fatal:
                        return
                    continue
                if mapped is None:
                    yield _cancelled_event(sequence, subject, mode)
                    return
                frame, printed = mapped
                frame.ref_id = query.ref_id
                yield StreamEvent(sequence=sequence, frame=frame, stdout=printed)
        finally:
            await sub.unsubscribe()
