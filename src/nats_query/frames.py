from __future__ import annotations

import json
from typing import Any, Iterable, Mapping

from .errors import InvalidScriptResult, MalformedPayload, ScriptError

VALUE_COLUMN = "value"
KEY_SEPARATOR = "."


class ScriptFailure:
    """Classified error value a script may assign to `result`.

    Example:
        ```python
        result = ScriptFailure("upstream returned an empty list")
        ```
    """

    __slots__ = ("message",)

    def __init__(self, message: str) -> None:
        """Store the failure message.

        Example:
            ```python
            failure = ScriptFailure("bad data")
            ```
        """
        self.message = str(message)

    def __repr__(self) -> str:
        """Show the failure message.

        Example:
            ```python
            repr(ScriptFailure("bad"))
            ```
        """
        return f"ScriptFailure({self.message!r})"


class ResultFrame:
    """Named table of rows; columns are kept in first-seen order.

    Example:
        ```python
        frame = ResultFrame("response", [{"a": 1}, {"a": 2, "b": 3}])
        frame.rows  # [{"a": 1, "b": None}, {"a": 2, "b": 3}]
        ```
    """

    def __init__(
        self,
        name: str = "response",
        rows: Iterable[Mapping[str, Any]] | None = None,
        *,
        ref_id: str | None = None,
    ) -> None:
        """Create a frame, optionally seeded with rows.

        `ref_id` names the query the frame answers.

        Example:
            ```python
            frame = ResultFrame("result", ref_id="A")
            ```
        """
        self.name = name
        self.ref_id = ref_id
        self._columns: dict[str, None] = {}
        self._rows: list[dict[str, Any]] = []
        for row in rows or ():
            self.add_row(row)

    def add_row(self, row: Mapping[str, Any]) -> None:
        """Append a row; unseen keys become new trailing columns.

        Example:
            ```python
            frame.add_row({"id": 7})
            ```
        """
        stored = {str(key): value for key, value in row.items()}
        for key in stored:
            self._columns.setdefault(key, None)
        self._rows.append(stored)

    @property
    def columns(self) -> list[str]:
        """Column names in first-seen order.

        Example:
            ```python
            ResultFrame(rows=[{"b": 1, "a": 2}]).columns  # ["b", "a"]
            ```
        """
        return list(self._columns)

    @property
    def rows(self) -> list[dict[str, Any]]:
        """Rows with every column present, missing cells filled with None.

        Example:
            ```python
            ResultFrame(rows=[{"a": 1}, {"b": 2}]).rows[0]  # {"a": 1, "b": None}
            ```
        """
        return [{column: row.get(column) for column in self._columns} for row in self._rows]

    def column(self, name: str) -> list[Any]:
        """Return one column as a list of cell values.

        Example:
            ```python
            ResultFrame(rows=[{"a": 1}, {"a": 2}]).column("a")  # [1, 2]
            ```
        """
        if name not in self._columns:
            raise KeyError(name)
        return [row.get(name) for row in self._rows]

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable view of the frame.

        Example:
            ```python
            payload = frame.to_dict()
            ```
        """
        return {"name": self.name, "ref_id": self.ref_id, "columns": self.columns, "rows": self.rows}

    def __len__(self) -> int:
        """Number of rows.

        Example:
            ```python
            len(ResultFrame())  # 0
            ```
        """
        return len(self._rows)

    def __eq__(self, other: object) -> bool:
        """Compare name, column order and rows.

        Example:
            ```python
            ResultFrame("a") == ResultFrame("a")  # True
            ```
        """
        if not isinstance(other, ResultFrame):
            return NotImplemented
        return self.name == other.name and self.columns == other.columns and self.rows == other.rows

    def __repr__(self) -> str:
        """Short summary of the frame.

        Example:
            ```python
            repr(ResultFrame("response"))
            ```
        """
        return f"ResultFrame(name={self.name!r}, columns={self.columns!r}, rows={len(self._rows)})"


def flatten_row(value: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested mappings into dotted column names; lists stay as cell values.

    Example:
        ```python
        flatten_row({"a": {"b": 1}, "c": [1, 2]})  # {"a.b": 1, "c": [1, 2]}
        ```
    """
    flat: dict[str, Any] = {}
    for key, item in value.items():
        column = f"{prefix}{KEY_SEPARATOR}{key}" if prefix else str(key)
        if isinstance(item, Mapping) and item:
            flat.update(flatten_row(item, column))
        else:
            flat[column] = item
    return flat


def frame_from_value(value: Any, name: str = "response") -> ResultFrame:
    """Build a frame from an already parsed JSON value.

    Objects give one row, arrays one row per element, scalars one `value` cell.

    Example:
        ```python
        frame_from_value([{"k": 1}, {"k": 2}])
        ```
    """
    frame = ResultFrame(name)
    if isinstance(value, Mapping):
        frame.add_row(flatten_row(value))
    elif isinstance(value, list):
        for element in value:
            if isinstance(element, Mapping):
                frame.add_row(flatten_row(element))
            else:
                frame.add_row({VALUE_COLUMN: element})
    else:
        frame.add_row({VALUE_COLUMN: value})
    return frame


def default_mapping(data: bytes, name: str = "response") -> ResultFrame:
    """Parse a payload as JSON and turn it into a frame.

    Raises MalformedPayload with a bounded preview when the payload is not JSON.

    Example:
        ```python
        default_mapping(b'{"temperature": 21.5}')
        ```
    """
    try:
        parsed = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedPayload(f"payload is not valid JSON: {exc}", payload=data) from None
    return frame_from_value(parsed, name)


def convert_script_result(value: Any, name: str = "result") -> ResultFrame:
    """Turn a script's `result` into a frame.

    Accepts a dict, a list/tuple of dicts, or a ResultFrame. A ScriptFailure
    becomes ScriptError; anything else is an InvalidScriptResult.

    Example:
        ```python
        convert_script_result([{"node": "n1"}, {"node": "n2"}])
        ```
    """
    if isinstance(value, ResultFrame):
        return value
    if isinstance(value, ScriptFailure):
        raise ScriptError(value.message)
    if isinstance(value, Mapping):
        return ResultFrame(name, [flatten_row(value)])
    if isinstance(value, (list, tuple)):
        frame = ResultFrame(name)
        for index, element in enumerate(value):
            if not isinstance(element, Mapping):
                raise InvalidScriptResult(
                    "result of script was a list, but not a list of dicts. "
                    f"Index {index} was of type {type(element).__name__}"
                )
            frame.add_row(flatten_row(element))
        return frame
    raise InvalidScriptResult(
        "result of script must be a dict, a list of dicts, or a ResultFrame. "
        f"Was: {type(value).__name__}"
    )
