from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, AsyncIterator, Protocol

from ..policy import ScriptPolicy
from ..query import QueryDefinition
from ..transport import Transport
from .types import ExecutionOutput, StreamEvent

if TYPE_CHECKING:
    from ..sandbox import CompiledScript


class ModeExecutor(Protocol):
    async def execute(
        self,
        query: QueryDefinition,
        transport: Transport,
        script: CompiledScript | None,
        policy: ScriptPolicy,
    ) -> ExecutionOutput:
        """Run one query to completion and return its frames.

        Example:
            ```python
            output = await RequestReplyExecutor().execute(query, transport, None, ScriptPolicy())
            ```
        """
        ...


class StreamingExecutor(Protocol):
    def stream(
        self,
        query: QueryDefinition,
        transport: Transport,
        script: CompiledScript | None,
        policy: ScriptPolicy,
        cancel: asyncio.Event,
        max_messages: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield one event per received message until cancelled or failed.

        Example:
            ```python
            async for event in SubscribeExecutor().stream(query, transport, None, ScriptPolicy(), cancel):
                ...
            ```
        """
        ...
