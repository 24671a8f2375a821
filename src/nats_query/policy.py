from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_LIST_FIELDS = (
    "allowed_imports",
    "blocked_imports",
    "allowed_builtins",
    "blocked_builtins",
    "allowed_globals",
    "blocked_globals",
)


def _read_policy_table(path: Path) -> dict[str, Any]:
    """Read the `[policy]` table (or the top level) of a policy TOML file.

    Example:
        ```python
        table = _read_policy_table(Path("/tmp/policy.toml"))
        ```
    """
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    table = raw.get("policy", raw)
    if not isinstance(table, dict):
        raise ValueError("Policy config must be a TOML table")
    return table


def _list_of_str(value: Any, field_name: str) -> list[str]:
    """Validate and normalize a list-of-strings policy field.

    Example:
        ```python
        blocked = _list_of_str(["os", "subprocess"], "blocked_imports")
        ```
    """
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"'{field_name}' must be a list of strings")
    return list(value)


def _policy_fields(table: dict[str, Any]) -> dict[str, Any]:
    """Turn a policy table into ScriptPolicy keyword arguments; absent keys are skipped.

    Example:
        ```python
        _policy_fields({"mode": "allow", "allowed_imports": ["math"]})
        ```
    """
    fields: dict[str, Any] = {
        name: _list_of_str(table[name], name) for name in _LIST_FIELDS if name in table
    }
    if "mode" in table:
        fields["mode"] = str(table["mode"])
    if "max_output_kb" in table:
        fields["max_output_kb"] = int(table["max_output_kb"])
    if "extra_globals" in table:
        if not isinstance(table["extra_globals"], dict):
            raise ValueError("'extra_globals' must be a TOML table")
        fields["extra_globals"] = dict(table["extra_globals"])
    return fields


_DEFAULTS = _policy_fields(_read_policy_table(Path(__file__).with_name("default_policy.toml")))
DEFAULT_BLOCKED_IMPORTS: list[str] = _DEFAULTS.get("blocked_imports", [])
DEFAULT_BLOCKED_BUILTINS: list[str] = _DEFAULTS.get("blocked_builtins", [])


def _default_list(name: str) -> Any:
    """Return a default_factory copying one bundled list.

    Example:
        ```python
        factory = _default_list("blocked_imports")
        ```
    """
    return field(default_factory=lambda: list(_DEFAULTS.get(name, [])))


@dataclass(slots=True)
class ScriptPolicy:
    """Guardrails applied to user scripts.

    Fields left out of a policy file keep the bundled defaults.

    Example:
        ```python
        policy = ScriptPolicy(blocked_imports=["os"], max_output_kb=16)
        ```
    """

    mode: str = _DEFAULTS.get("mode", "restrict")
    max_output_kb: int = _DEFAULTS.get("max_output_kb", 128)
    allowed_imports: list[str] = _default_list("allowed_imports")
    blocked_imports: list[str] = _default_list("blocked_imports")
    allowed_builtins: list[str] = _default_list("allowed_builtins")
    blocked_builtins: list[str] = _default_list("blocked_builtins")
    allowed_globals: list[str] = _default_list("allowed_globals")
    blocked_globals: list[str] = _default_list("blocked_globals")
    extra_globals: dict[str, Any] = field(default_factory=dict)
    config_path: str | None = None

    def __post_init__(self) -> None:
        """Validate mode and output limit after dataclass initialization.

        Example:
            ```python
            ScriptPolicy(mode="restrict")
            ```
        """
        if self.mode not in {"allow", "restrict"}:
            raise ValueError("mode must be 'allow' or 'restrict'")
        if self.max_output_kb <= 0:
            raise ValueError("max_output_kb must be positive")

    @classmethod
    def from_file(cls, config_path: str) -> "ScriptPolicy":
        """Create a policy from a TOML file; a missing file raises FileNotFoundError.

        Example:
            ```python
            policy = ScriptPolicy.from_file("/tmp/policy.toml")
            ```
        """
        table = _read_policy_table(Path(config_path))
        return cls(**_policy_fields(table), config_path=config_path)


def resolve_policy(policy: ScriptPolicy | None, policy_file: str | None) -> ScriptPolicy:
    """Resolve the effective policy object for a query.

    Example:
        ```python
        policy = resolve_policy(None, "/tmp/policy.toml")
        ```
    """
    if policy is not None and policy_file is not None:
        raise ValueError("Provide either 'policy' or 'policy_file', not both")
    if policy_file is not None:
        return ScriptPolicy.from_file(policy_file)
    if policy is None:
        return ScriptPolicy()
    if policy.config_path is not None:
        return ScriptPolicy.from_file(policy.config_path)
    return policy
