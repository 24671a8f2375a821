"""
Connection settings and connection lifecycle for NATS.

Supported authentication modes:
- NONE: plain connection
- NKEY: public NKEY plus private NKEY seed
- USERPASS: username and password
- JWT: user credentials (JWT + seed in .creds format)

Secrets (nkey_seed, password, jwt) are write-only: they are excluded from
repr() and from to_public_dict().
"""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, AsyncIterator, Mapping

import nats
import nats.errors

from .errors import TransportError
from .transport import NatsTransport

logger = logging.getLogger(__name__)

AUTH_NONE = "NONE"
AUTH_NKEY = "NKEY"
AUTH_USERPASS = "USERPASS"
AUTH_JWT = "JWT"
AUTH_MODES = (AUTH_NONE, AUTH_NKEY, AUTH_USERPASS, AUTH_JWT)

_SECRET_ENV = {
    "nkey_seed": "NATS_NKEY_SEED",
    "password": "NATS_PASSWORD",
    "jwt": "NATS_JWT",
}


def normalize_server_url(url: str) -> str:
    """Add the nats:// scheme to bare host:port URLs; tls:// is kept as is.

    Example:
        ```python
        normalize_server_url("127.0.0.1:4222")  # "nats://127.0.0.1:4222"
        ```
    """
    cleaned = url.strip()
    if "://" not in cleaned:
        return f"nats://{cleaned}"
    return cleaned


@dataclass(slots=True)
class ConnectionSettings:
    """Server URL, authentication mode and write-only secrets.

    Example:
        ```python
        settings = ConnectionSettings(url="tls://nats.example:4222", authentication="USERPASS",
                                      username="grafana", password="s3cret")
        ```
    """

    url: str
    authentication: str = AUTH_NONE
    nkey: str | None = None
    username: str | None = None
    nkey_seed: str | None = field(default=None, repr=False)
    password: str | None = field(default=None, repr=False)
    jwt: str | None = field(default=None, repr=False)
    connect_timeout: float = 2.0
    max_reconnect_attempts: int = 2
    name: str = "nats-query"

    def __post_init__(self) -> None:
        """Validate URL and authentication mode.

        Example:
            ```python
            ConnectionSettings(url="127.0.0.1:4222")
            ```
        """
        if not self.url or not self.url.strip():
            raise ValueError("url must not be empty")
        self.authentication = str(self.authentication).upper()
        if self.authentication not in AUTH_MODES:
            raise ValueError(f"authentication must be one of {', '.join(AUTH_MODES)}")
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")

    @property
    def server_url(self) -> str:
        """URL with a scheme.

        Example:
            ```python
            ConnectionSettings(url="localhost:4222").server_url  # "nats://localhost:4222"
            ```
        """
        return normalize_server_url(self.url)

    @classmethod
    def from_file(cls, config_path: str, environ: Mapping[str, str] | None = None) -> "ConnectionSettings":
        """Load a `[connection]` TOML table; missing secrets fall back to the environment.

        Example:
            ```python
            settings = ConnectionSettings.from_file("/etc/nq/connection.toml")
            ```
        """
        raw = tomllib.loads(Path(config_path).read_text(encoding="utf-8"))
        table = raw.get("connection", raw)
        if not isinstance(table, dict):
            raise ValueError("Connection config must be a TOML table")
        jwt = table.get("jwt")
        jwt_file = table.get("jwt_file")
        if jwt is None and jwt_file:
            jwt = Path(str(jwt_file)).expanduser().read_text(encoding="utf-8")
        settings = cls(
            url=str(table.get("url", "")),
            authentication=str(table.get("authentication", AUTH_NONE)),
            nkey=table.get("nkey"),
            username=table.get("username"),
            nkey_seed=table.get("nkey_seed"),
            password=table.get("password"),
            jwt=jwt,
            connect_timeout=float(table.get("connect_timeout", 2.0)),
            max_reconnect_attempts=int(table.get("max_reconnect_attempts", 2)),
        )
        return settings.with_env_secrets(os.environ if environ is None else environ)

    def with_env_secrets(self, environ: Mapping[str, str]) -> "ConnectionSettings":
        """Return a copy with unset secrets taken from NATS_NKEY_SEED, NATS_PASSWORD, NATS_JWT.

        Example:
            ```python
            settings = settings.with_env_secrets({"NATS_PASSWORD": "s3cret"})
            ```
        """
        updates = {
            attr: environ[env]
            for attr, env in _SECRET_ENV.items()
            if getattr(self, attr) is None and environ.get(env)
        }
        return replace(self, **updates) if updates else self

    def to_public_dict(self) -> dict[str, Any]:
        """Settings safe to echo back: secrets only reported as configured or not.

        Example:
            ```python
            ConnectionSettings(url="a:4222", password="x").to_public_dict()["password_set"]  # True
            ```
        """
        return {
            "url": self.url,
            "authentication": self.authentication,
            "nkey": self.nkey,
            "username": self.username,
            "nkey_seed_set": bool(self.nkey_seed),
            "password_set": bool(self.password),
            "jwt_set": bool(self.jwt),
        }

    def connect_options(self) -> dict[str, Any]:
        """Keyword arguments for nats.connect(), except the JWT credentials file.

        Example:
            ```python
            options = settings.connect_options()
            ```
        """
        options: dict[str, Any] = {
            "servers": [self.server_url],
            "name": self.name,
            "connect_timeout": self.connect_timeout,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "error_cb": _on_error,
            "disconnected_cb": _on_disconnected,
            "reconnected_cb": _on_reconnected,
        }
        if self.authentication == AUTH_NKEY:
            if not self.nkey_seed:
                raise ValueError("NKEY authentication requires an nkey_seed")
            options["nkeys_seed_str"] = self.nkey_seed
        elif self.authentication == AUTH_USERPASS:
            if not self.username:
                raise ValueError("USERPASS authentication requires a username")
            options["user"] = self.username
            options["password"] = self.password or ""
        elif self.authentication == AUTH_JWT and not self.jwt:
            raise ValueError("JWT authentication requires jwt credentials")
        return options


async def _on_error(exc: Exception) -> None:
    """Log asynchronous client errors.

    Example:
        ```python
        await _on_error(RuntimeError("slow consumer"))
        ```
    """
    logger.warning("NATS client error: %s", exc)


async def _on_disconnected() -> None:
    """Log disconnects.

    Example:
        ```python
        await _on_disconnected()
        ```
    """
    logger.warning("NATS connection lost")


async def _on_reconnected() -> None:
    """Log reconnects.

    Example:
        ```python
        await _on_reconnected()
        ```
    """
    logger.info("NATS connection re-established")


def _write_credentials(content: str) -> str:
    """Write JWT credentials to a private temp file and return its path.

    The client re-reads the file on reconnect, so it lives as long as the connection.

    Example:
        ```python
        path = _write_credentials(creds_text)
        ```
    """
    handle, path = tempfile.mkstemp(prefix="nq-", suffix=".creds")
    with os.fdopen(handle, "w", encoding="utf-8") as file:
        file.write(content)
    return path


@contextlib.asynccontextmanager
async def open_connection(settings: ConnectionSettings) -> AsyncIterator[NatsTransport]:
    """Connect, yield a NatsTransport, and close the connection on exit.

    Connection failures raise TransportError; the engine never retries them.

    Example:
        ```python
        async with open_connection(ConnectionSettings(url="127.0.0.1:4222")) as transport:
            result = await execute_query(query, transport)
        ```
    """
    try:
        options = settings.connect_options()
    except ValueError as exc:
        raise TransportError(str(exc)) from None
    creds_path = None
    if settings.authentication == AUTH_JWT:
        creds_path = _write_credentials(settings.jwt or "")
        options["user_credentials"] = creds_path
    try:
        logger.info("Connecting to NATS at %s (auth %s)", settings.server_url, settings.authentication)
        try:
            nc = await nats.connect(**options)
        except (nats.errors.Error, OSError) as exc:
            raise TransportError(f"NATS connection error: {exc}") from exc
        try:
            yield NatsTransport(nc)
        finally:
            try:
                await nc.close()
            except (nats.errors.Error, OSError) as exc:
                logger.debug("Closing NATS connection failed: %s", exc)
            else:
                logger.info("NATS connection closed")
    finally:
        if creds_path is not None:
            with contextlib.suppress(FileNotFoundError):
                os.remove(creds_path)


@dataclass(frozen=True, slots=True)
class HealthStatus:
    """Result of a connectivity check.

    Example:
        ```python
        status = HealthStatus(ok=True, message="Data source is working")
        ```
    """

    ok: bool
    message: str


async def check_health(settings: ConnectionSettings) -> HealthStatus:
    """Connect, round-trip once, and report; never raises for connection failures.

    Example:
        ```python
        status = await check_health(ConnectionSettings(url="127.0.0.1:4222"))
        ```
    """
    try:
        async with open_connection(settings) as transport:
            await transport.flush(settings.connect_timeout)
    except TransportError as exc:
        return HealthStatus(ok=False, message=f"NATS could not be connected to: {exc.message}")
    return HealthStatus(ok=True, message="Data source is working")
