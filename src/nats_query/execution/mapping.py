from __future__ import annotations

from ..errors import ExecutionError
from ..frames import ResultFrame, convert_script_result, default_mapping
from ..message import NatsMessage
from ..policy import ScriptPolicy
from ..sandbox import CompiledScript, execute_script
from ..transport import Transport

DEFAULT_FRAME_NAME = "response"
SCRIPT_FRAME_NAME = "result"


async def map_message(
    message: NatsMessage,
    script: CompiledScript | None,
    transport: Transport,
    policy: ScriptPolicy,
    *,
    mode: str,
    subject: str | None = None,
) -> tuple[ResultFrame, str]:
    """Turn one received message into a frame via the default mapping or the script.

    Returns the frame and any output the script printed. Errors are tagged with
    `subject`, defaulting to the subject the message arrived on.

    Example:
        ```python
        frame, printed = await map_message(msg, None, transport, ScriptPolicy(), mode="SUBSCRIBE")
        ```
    """
    subject = subject or message.subject
    try:
        if script is None:
            return default_mapping(message.data, DEFAULT_FRAME_NAME), ""
        outcome = await execute_script(
            script,
            transport,
            policy,
            message=message,
            subject=subject,
            mode=mode,
        )
        try:
            return convert_script_result(outcome.result, SCRIPT_FRAME_NAME), outcome.stdout
        except ExecutionError as exc:
            exc.stdout = outcome.stdout
            raise
    except ExecutionError as exc:
        raise exc.with_context(subject=subject, mode=mode, payload=message.data)
