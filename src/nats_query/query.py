from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import InvalidQuery

DEFAULT_TIMEOUT = "5s"

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


class QueryMode(str, Enum):
    """Interaction mode of a query.

    Example:
        ```python
        mode = QueryMode("SUBSCRIBE")
        ```
    """

    REQUEST_REPLY = "REQUEST_REPLY"
    SUBSCRIBE = "SUBSCRIBE"
    SCRIPT = "SCRIPT"


def parse_duration(value: str | int | float) -> float:
    """Parse a duration such as "5s", "50ms" or "1m30s" into seconds.

    Plain numbers are taken as seconds. Raises ValueError for anything else,
    including NaN and infinity.

    Example:
        ```python
        parse_duration("1m30s")  # 90.0
        ```
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        seconds = _parse_duration_text(str(value).strip(), value)
    if not math.isfinite(seconds):
        raise ValueError(f"duration must be finite: {value!r}")
    return seconds


def _parse_duration_text(text: str, value: Any) -> float:
    """Parse a plain number or a sequence of number+unit parts.

    Example:
        ```python
        _parse_duration_text("1m30s", "1m30s")  # 90.0
        ```
    """
    if not text:
        raise ValueError("duration is empty")
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


@dataclass(frozen=True, slots=True)
class QueryDefinition:
    """Immutable description of one query execution.

    Example:
        ```python
        query = QueryDefinition(mode=QueryMode.REQUEST_REPLY, subject="svc.status", timeout="2s")
        ```
    """

    mode: QueryMode
    subject: str = ""
    timeout: str | float = DEFAULT_TIMEOUT
    script: str = ""
    request_data: str = ""
    ref_id: str = "A"

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "QueryDefinition":
        """Build a query from editor field names (queryType, natsSubject, ...).

        Example:
            ```python
            query = QueryDefinition.from_dict({"queryType": "SUBSCRIBE", "natsSubject": "events.>"})
            ```
        """
        raw_mode = raw.get("queryType", raw.get("mode"))
        try:
            mode = QueryMode(str(raw_mode))
        except ValueError:
            raise InvalidQuery(f"invalid query type: {raw_mode!r}") from None
        script = raw.get("script")
        if script is None:
            script = raw.get("tamarinFn", "")
        return cls(
            mode=mode,
            subject=str(raw.get("natsSubject", raw.get("subject", "")) or ""),
            timeout=raw.get("requestTimeout", raw.get("timeout")) or DEFAULT_TIMEOUT,
            script=str(script or ""),
            request_data=str(raw.get("requestData", raw.get("request_data", "")) or ""),
            ref_id=str(raw.get("refId", raw.get("ref_id", "A")) or "A"),
        )

    @property
    def timeout_seconds(self) -> float:
        """Timeout in seconds; raises ValueError when unparsable.

        Example:
            ```python
            QueryDefinition(mode=QueryMode.SCRIPT, script="result = {}", timeout="50ms").timeout_seconds
            ```
        """
        return parse_duration(self.timeout)

    @property
    def has_script(self) -> bool:
        """True when the script text is not blank.

        Example:
            ```python
            QueryDefinition(mode=QueryMode.SUBSCRIBE, subject="a").has_script  # False
            ```
        """
        return bool(self.script.strip())


def validate_query(query: QueryDefinition) -> float:
    """Check query invariants and return the timeout in seconds.

    Raises InvalidQuery without touching the network.

    Example:
        ```python
        timeout = validate_query(QueryDefinition(mode=QueryMode.SUBSCRIBE, subject="a.*"))
        ```
    """
    mode = query.mode
    if not isinstance(mode, QueryMode):
        try:
            mode = QueryMode(mode)
        except ValueError:
            raise InvalidQuery(f"invalid query type: {mode!r}") from None
    if mode in (QueryMode.REQUEST_REPLY, QueryMode.SUBSCRIBE) and not query.subject.strip():
        raise InvalidQuery(f"subject is required for {mode.value}", mode=mode.value)
    if mode is QueryMode.SCRIPT and not query.has_script:
        raise InvalidQuery("script is required for SCRIPT queries", mode=mode.value)
    try:
        timeout = query.timeout_seconds
    except ValueError as exc:
        raise InvalidQuery(str(exc), subject=query.subject or None, mode=mode.value) from None
    if timeout <= 0:
        raise InvalidQuery(
            f"timeout must be positive, got {query.timeout!r}",
            subject=query.subject or None,
            mode=mode.value,
        )
    return timeout
