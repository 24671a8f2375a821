from .connection import ConnectionSettings, HealthStatus, check_health, open_connection
from .errors import (
    ErrorKind,
    ExecutionError,
    InvalidQuery,
    InvalidScriptResult,
    MalformedPayload,
    NoResponse,
    QueryCancelled,
    QueryTimeout,
    ScriptError,
    TransportError,
)
from .execution.types import ExecutionState, StreamEvent
from .frames import ResultFrame, ScriptFailure
from .message import Header, NatsMessage
from .policy import ScriptPolicy
from .query import QueryDefinition, QueryMode
from .runner import QueryResult, SubscriptionStream, execute_query
from .transport import NatsTransport

__all__ = [
    "ConnectionSettings",
    "ErrorKind",
    "ExecutionError",
    "ExecutionState",
    "Header",
    "HealthStatus",
    "InvalidQuery",
    "InvalidScriptResult",
    "MalformedPayload",
    "NatsMessage",
    "NatsTransport",
    "NoResponse",
    "QueryCancelled",
    "QueryDefinition",
    "QueryMode",
    "QueryResult",
    "QueryTimeout",
    "ResultFrame",
    "ScriptError",
    "ScriptFailure",
    "ScriptPolicy",
    "StreamEvent",
    "SubscriptionStream",
    "TransportError",
    "check_health",
    "execute_query",
    "open_connection",
]
