from __future__ import annotations

from enum import Enum
from typing import Any

PREVIEW_LIMIT_BYTES = 256


class ErrorKind(str, Enum):
    """Classification of every failure the engine can report.

    Example:
        ```python
        kind = ErrorKind.NO_RESPONSE
        ```
    """

    INVALID_QUERY = "InvalidQuery"
    NO_RESPONSE = "NoResponse"
    MALFORMED_PAYLOAD = "MalformedPayload"
    INVALID_SCRIPT_RESULT = "InvalidScriptResult"
    SCRIPT_ERROR = "ScriptError"
    TRANSPORT_ERROR = "TransportError"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"


def payload_preview(data: bytes | str | None, limit: int = PREVIEW_LIMIT_BYTES) -> str:
    """Return a bounded, printable preview of a payload.

    Example:
        ```python
        preview = payload_preview(b"x" * 1000)  # 256 bytes plus an ellipsis
        ```
    """
    if data is None:
        return ""
    raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    text = raw[:limit].decode("utf-8", errors="replace")
    if len(raw) > limit:
        text += "..."
    return text


class ExecutionError(Exception):
    """Base class for classified query execution failures.

    Example:
        ```python
        raise ExecutionError("boom", subject="orders.get", mode="REQUEST_REPLY")
        ```
    """

    kind: ErrorKind = ErrorKind.SCRIPT_ERROR

    def __init__(
        self,
        message: str,
        *,
        subject: str | None = None,
        mode: str | None = None,
        payload: bytes | str | None = None,
        details: str | None = None,
        fatal: bool = False,
    ) -> None:
        """Store the message and diagnostic context.

        Example:
            ```python
            err = NoResponse("no reply", subject="svc.ping", mode="REQUEST_REPLY")
            ```
        """
        super().__init__(message)
        self.message = message
        self.subject = subject
        self.mode = mode
        self.details = details
        self.fatal = fatal
        self.stdout = ""
        self._set_payload(payload)

    def _set_payload(self, payload: bytes | str | None) -> None:
        """Record the payload size and a bounded preview.

        Example:
            ```python
            err._set_payload(b"{oops")
            ```
        """
        self.payload_size = None if payload is None else len(payload)
        self.payload_preview = None if payload is None else payload_preview(payload)

    def with_context(
        self,
        *,
        subject: str | None = None,
        mode: str | None = None,
        payload: bytes | str | None = None,
    ) -> "ExecutionError":
        """Fill in subject, mode and payload where still unset and return self.

        Example:
            ```python
            raise err.with_context(subject="a.b", mode="SUBSCRIBE")
            ```
        """
        if self.subject is None:
            self.subject = subject
        if self.mode is None:
            self.mode = mode
        if self.payload_size is None and payload is not None:
            self._set_payload(payload)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable description of the error.

        Example:
            ```python
            payload = NoResponse("no reply").to_dict()
            ```
        """
        return {
            "kind": self.kind.value,
            "message": self.message,
            "subject": self.subject,
            "mode": self.mode,
            "payload_size": self.payload_size,
            "payload_preview": self.payload_preview,
            "details": self.details,
            "fatal": self.fatal,
        }

    def __str__(self) -> str:
        """Render as `Kind: message`.

        Example:
            ```python
            str(NoResponse("no reply"))  # "NoResponse: no reply"
            ```
        """
        return f"{self.kind.value}: {self.message}"


class InvalidQuery(ExecutionError):
    """Query definition rejected before any network access.

    Example:
        ```python
        raise InvalidQuery("subject is required")
        ```
    """

    kind = ErrorKind.INVALID_QUERY


class NoResponse(ExecutionError):
    """A request received no reply within its timeout.

    Example:
        ```python
        raise NoResponse("no reply within 5s", subject="svc.ping")
        ```
    """

    kind = ErrorKind.NO_RESPONSE


class MalformedPayload(ExecutionError):
    """Payload is not valid JSON under the default mapping.

    Example:
        ```python
        raise MalformedPayload("invalid JSON", payload=b"{oops")
        ```
    """

    kind = ErrorKind.MALFORMED_PAYLOAD


class InvalidScriptResult(ExecutionError):
    """Script returned a value that cannot become a frame.

    Example:
        ```python
        raise InvalidScriptResult("result must be a dict")
        ```
    """

    kind = ErrorKind.INVALID_SCRIPT_RESULT


class ScriptError(ExecutionError):
    """Script failed to compile, raised, or returned a ScriptFailure.

    Example:
        ```python
        raise ScriptError("SyntaxError: invalid syntax", fatal=True)
        ```
    """

    kind = ErrorKind.SCRIPT_ERROR


class TransportError(ExecutionError):
    """NATS connection or authentication failure.

    Example:
        ```python
        raise TransportError("connection closed")
        ```
    """

    kind = ErrorKind.TRANSPORT_ERROR


class QueryTimeout(ExecutionError):
    """Dispatcher deadline or first-message gate exceeded.

    Example:
        ```python
        raise QueryTimeout("query exceeded 5.0s")
        ```
    """

    kind = ErrorKind.TIMEOUT


class QueryCancelled(ExecutionError):
    """Caller aborted a streaming subscription.

    Example:
        ```python
        raise QueryCancelled("subscription cancelled by caller")
        ```
    """

    kind = ErrorKind.CANCELLED
