from __future__ import annotations

import logging

from ..errors import ExecutionError, InvalidQuery
from ..frames import convert_script_result
from ..policy import ScriptPolicy
from ..query import QueryDefinition, QueryMode
from ..sandbox import CompiledScript, execute_script
from ..transport import Transport
from .mapping import SCRIPT_FRAME_NAME
from .types import ExecutionOutput

logger = logging.getLogger(__name__)


class ScriptExecutor:
    """Hand the connection capability to a free-form script and frame its result.

    The script drives every NATS interaction itself, including the
    inbox polling pattern for one request with many replies:

        inbox = nc.new_inbox()
        sub = nc.subscribe_sync(inbox)          # subscribe first
        nc.publish_request("svc.ping", inbox, "")
        rows = []
        while (m := sub.next_msg("500ms")) is not None:
            rows.append(json.loads(m.data))
        result = rows

    Example:
        ```python
        output = await ScriptExecutor().execute(query, transport, compiled, ScriptPolicy())
        ```
    """

    mode = QueryMode.SCRIPT

    async def execute(
        self,
        query: QueryDefinition,
        transport: Transport,
        script: CompiledScript | None,
        policy: ScriptPolicy,
    ) -> ExecutionOutput:
        """Run the script once and convert whatever it assigned to `result`.

        Example:
            ```python
            output = await executor.execute(query, transport, compile_script("result = []"), policy)
            ```
        """
        if script is None:
            raise InvalidQuery("script is required for SCRIPT queries", mode=self.mode.value)
        subject = query.subject or None
        logger.debug("Running free-form script (%d chars)", len(script.source))
        try:
            outcome = await execute_script(
                script, transport, policy, subject=subject, mode=self.mode.value
            )
        except ExecutionError as exc:
            raise exc.with_context(subject=subject, mode=self.mode.value)
        try:
            frame = convert_script_result(outcome.result, SCRIPT_FRAME_NAME)
        except ExecutionError as exc:
            exc.stdout = outcome.stdout
            raise exc.with_context(subject=subject, mode=self.mode.value)
        return ExecutionOutput(frames=[frame], stdout=outcome.stdout)
