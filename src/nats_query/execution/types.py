from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import ExecutionError
from ..frames import ResultFrame


class ExecutionState(str, Enum):
    """Lifecycle of one query execution.

    Example:
        ```python
        state = ExecutionState.RUNNING
        ```
    """

    IDLE = "Idle"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


@dataclass(slots=True)
class ScriptOutcome:
    """Value assigned to `result` by a script plus its captured prints.

    Example:
        ```python
        outcome = ScriptOutcome(result={"a": 1}, stdout="done\\n")
        ```
    """

    result: Any
    stdout: str = ""


@dataclass(slots=True)
class ExecutionOutput:
    """Frames produced by a batch executor.

    Example:
        ```python
        out = ExecutionOutput(frames=[ResultFrame("response", [{"a": 1}])])
        ```
    """

    frames: list[ResultFrame] = field(default_factory=list)
    stdout: str = ""


@dataclass(slots=True)
class StreamEvent:
    """One emission of a streaming subscription: a frame or an error.

    Example:
        ```python
        event = StreamEvent(sequence=1, frame=ResultFrame("response", [{"a": 1}]))
        ```
    """

    sequence: int
    frame: ResultFrame | None = None
    error: ExecutionError | None = None
    terminal: bool = False
    stdout: str = ""

    @property
    def ok(self) -> bool:
        """True when the event carries a frame.

        Example:
            ```python
            StreamEvent(sequence=1, frame=ResultFrame()).ok  # True
            ```
        """
        return self.error is None
