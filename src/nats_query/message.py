from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Mapping


class Header:
    """Case-sensitive multimap of NATS header values.

    Example:
        ```python
        header = Header({"My-Header": ["x", "y"]})
        header.get("My-Header")  # "x"
        ```
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, list[str] | tuple[str, ...] | str] | None = None) -> None:
        """Copy the given mapping; single strings become one-element lists.

        Example:
            ```python
            header = Header({"Content-Type": "application/json"})
            ```
        """
        self._values: dict[str, tuple[str, ...]] = {}
        for key, value in (values or {}).items():
            if isinstance(value, str):
                self._values[str(key)] = (value,)
            else:
                self._values[str(key)] = tuple(str(v) for v in value)

    def get(self, key: str) -> str | None:
        """Return the first value for key, or None.

        Example:
            ```python
            Header({"a": ["1", "2"]}).get("a")  # "1"
            ```
        """
        values = self._values.get(key)
        if not values:
            return None
        return values[0]

    def values(self, key: str) -> list[str]:
        """Return every value for key, or an empty list.

        Example:
            ```python
            Header({"a": ["1", "2"]}).values("a")  # ["1", "2"]
            ```
        """
        return list(self._values.get(key, ()))

    def keys(self) -> list[str]:
        """Return header keys.

        Example:
            ```python
            Header({"a": "1"}).keys()  # ["a"]
            ```
        """
        return list(self._values)

    def to_dict(self) -> dict[str, list[str]]:
        """Return a plain dict copy of the multimap.

        Example:
            ```python
            Header({"a": "1"}).to_dict()  # {"a": ["1"]}
            ```
        """
        return {key: list(values) for key, values in self._values.items()}

    def __contains__(self, key: object) -> bool:
        """Report whether key is present.

        Example:
            ```python
            "a" in Header({"a": "1"})  # True
            ```
        """
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        """Iterate over header keys.

        Example:
            ```python
            list(Header({"a": "1"}))  # ["a"]
            ```
        """
        return iter(self._values)

    def __len__(self) -> int:
        """Return the number of keys.

        Example:
            ```python
            len(Header())  # 0
            ```
        """
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        """Compare by content.

        Example:
            ```python
            Header({"a": "1"}) == Header({"a": ["1"]})  # True
            ```
        """
        if not isinstance(other, Header):
            return NotImplemented
        return self._values == other._values

    def __repr__(self) -> str:
        """Show the multimap contents.

        Example:
            ```python
            repr(Header({"a": "1"}))
            ```
        """
        return f"Header({self.to_dict()!r})"


@dataclass(frozen=True, slots=True)
class NatsMessage:
    """One NATS message as seen by the engine and by scripts.

    Example:
        ```python
        msg = NatsMessage(subject="orders.get", data=b'{"id": 1}')
        ```
    """

    subject: str
    data: bytes = b""
    reply: str | None = None
    header: Header = field(default_factory=Header)

    def text(self) -> str:
        """Decode the payload as UTF-8, replacing invalid bytes.

        Example:
            ```python
            NatsMessage(subject="a", data=b"hi").text()  # "hi"
            ```
        """
        return self.data.decode("utf-8", errors="replace")
