from __future__ import annotations

import logging

from ..errors import ExecutionError
from ..policy import ScriptPolicy
from ..query import QueryDefinition, QueryMode
from ..sandbox import CompiledScript
from ..transport import Transport
from .mapping import map_message
from .types import ExecutionOutput

logger = logging.getLogger(__name__)


class RequestReplyExecutor:
    """Send one request, wait for one reply, map it to a frame.

    Example:
        ```python
        output = await RequestReplyExecutor().execute(query, transport, None, ScriptPolicy())
        ```
    """

    mode = QueryMode.REQUEST_REPLY

    async def execute(
        self,
        query: QueryDefinition,
        transport: Transport,
        script: CompiledScript | None,
        policy: ScriptPolicy,
    ) -> ExecutionOutput:
        """Run the request and convert the single reply.

        Example:
            ```python
            output = await executor.execute(query, transport, compile_script("result = {}"), policy)
            ```
        """
        timeout = query.timeout_seconds
        logger.debug("Request on %s (timeout %.3fs)", query.subject, timeout)
        try:
            reply = await transport.request(
                query.subject, query.request_data.encode("utf-8"), timeout
            )
        except ExecutionError as exc:
            raise exc.with_context(subject=query.subject, mode=self.mode.value)
        frame, printed = await map_message(
            reply, script, transport, policy, mode=self.mode.value, subject=query.subject
        )
        return ExecutionOutput(frames=[frame], stdout=printed)
