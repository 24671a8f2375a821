from .engine import ModeExecutor, StreamingExecutor
from .types import ExecutionOutput, ExecutionState, ScriptOutcome, StreamEvent

__all__ = [
    "ExecutionOutput",
    "ExecutionState",
    "ModeExecutor",
    "ScriptOutcome",
    "StreamEvent",
    "StreamingExecutor",
]
