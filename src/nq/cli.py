from __future__ import annotations

import argparse
import asyncio
import logging
import os
from dataclasses import replace
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich_argparse import RawTextRichHelpFormatter

from nats_query import (
    ConnectionSettings,
    ErrorKind,
    ExecutionError,
    QueryDefinition,
    QueryMode,
    QueryResult,
    ResultFrame,
    ScriptPolicy,
    TransportError,
    check_health,
    execute_query,
    open_connection,
)
from nats_query.connection import AUTH_MODES

_CONSOLE = Console(no_color=False)
_ERR_CONSOLE = Console(stderr=True)

DEFAULT_SERVER = "nats://127.0.0.1:4222"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="nq")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit with the usage code.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {escape(message)}", border_style="red"))
        self.print_usage()
        raise SystemExit(EXIT_USAGE)


class _UsageError(Exception):
    """Bad flags or unreadable input files; reported with exit code 2.

    Example:
        ```python
        raise _UsageError("script file not found: check_nodes.py")
        ```
    """


def _add_timeout(parser: argparse.ArgumentParser) -> None:
    """Add the shared --timeout option.

    Example:
        ```python
        _add_timeout(request_cmd)
        ```
    """
    parser.add_argument(
        "--timeout",
        default="5s",
        help="Duration such as 500ms, 5s or 1m30s (default: 5s).",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the `nq` parser: global connection flags plus one subcommand per mode.

    Example:
        ```python
        args = build_parser().parse_args(["request", "svc.status"])
        ```
    """
    parser = _RichArgumentParser(
        prog="nq",
        description=(
            "nats-query CLI\n"
            "Run REQUEST_REPLY, SUBSCRIBE and SCRIPT queries against a NATS server\n"
            "and print the resulting frames as tables."
        ),
        epilog=(
            "Quick Examples:\n"
            "  nq request svc.status --data '{\"verbose\": true}'\n"
            "  nq subscribe 'sensors.>' --max-messages 10\n"
            "  nq script check_nodes.py --timeout 10s\n"
            "  nq health\n\n"
            "Secrets:\n"
            "  Passwords, NKEY seeds and JWT credentials are never accepted as flags.\n"
            "  Set NATS_PASSWORD, NATS_NKEY_SEED or NATS_JWT, or use --connection-config."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--server",
        help=f"NATS server URL (default: {DEFAULT_SERVER}).\nExample: --server tls://nats.internal:4222",
    )
    parser.add_argument(
        "--auth",
        choices=AUTH_MODES,
        type=str.upper,
        help="Authentication mode (default: NONE).",
    )
    parser.add_argument("--nkey", help="Public NKEY used with --auth NKEY.")
    parser.add_argument("--username", help="Username used with --auth USERPASS.")
    parser.add_argument(
        "--connection-config",
        help="TOML file with a [connection] table. Flags override its values.",
    )
    parser.add_argument(
        "--policy",
        help="TOML file with a [policy] table for script guardrails.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print frames as JSON instead of tables.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging on stderr.",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    request_cmd = sub.add_parser(
        "request",
        help="Send one request and print the reply.",
        description=(
            "Send a request on SUBJECT and wait for one reply.\n"
            "The reply is parsed as JSON unless --script maps it."
        ),
        epilog=(
            "Examples:\n"
            "  nq request svc.status\n"
            "  nq request orders.get --data '{\"id\": 7}' --timeout 2s\n"
            "  nq request orders.get --script map_order.py"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    request_cmd.add_argument("subject")
    _add_timeout(request_cmd)
    request_cmd.add_argument("--data", default="", help="Request payload text (default: empty).")
    request_cmd.add_argument("--script", help="Python file mapping `msg` into `result`.")

    subscribe_cmd = sub.add_parser(
        "subscribe",
        help="Print a frame for every message on a subject.",
        description=(
            "Subscribe to SUBJECT (wildcards allowed) and print one frame per message.\n"
            "--timeout bounds the wait for the first message only. Stop with Ctrl-C."
        ),
        epilog=(
            "Examples:\n"
            "  nq subscribe 'sensors.*.temperature'\n"
            "  nq subscribe 'events.>' --max-messages 5 --script parse_event.py"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    subscribe_cmd.add_argument("subject")
    _add_timeout(subscribe_cmd)
    subscribe_cmd.add_argument("--script", help="Python file mapping `msg` into `result`.")
    subscribe_cmd.add_argument(
        "--max-messages",
        type=int,
        help="Stop after this many messages (default: run until cancelled).",
    )

    script_cmd = sub.add_parser(
        "script",
        help="Run a free-form script with the `nc` connection capability.",
        description=(
            "Run a Python script that talks to NATS through `nc` and assigns `result`.\n"
            "The whole script must finish within --timeout."
        ),
        epilog=(
            "Example:\n"
            "  nq script ping_all.py --timeout 10s"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    script_cmd.add_argument("file")
    _add_timeout(script_cmd)

    sub.add_parser(
        "health",
        help="Check that the server can be reached.",
        description="Connect, round-trip once and report whether the server answered.",
        epilog=(
            "Example:\n"
            "  nq --server nats://127.0.0.1:4222 health"
        ),
        formatter_class=_HELP_FORMATTER,
    )

    return parser


def _configure_logging(verbose: bool) -> None:
    """Route library logging to stderr through Rich.

    Example:
        ```python
        _configure_logging(verbose=True)
        ```
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=_ERR_CONSOLE, show_path=False, rich_tracebacks=True)],
        force=True,
    )


def build_settings(args: argparse.Namespace) -> ConnectionSettings:
    """Merge --connection-config, connection flags and environment secrets.

    Example:
        ```python
        settings = build_settings(build_parser().parse_args(["--server", "localhost:4222", "health"]))
        ```
    """
    overrides: dict[str, Any] = {
        "url": args.server,
        "authentication": args.auth,
        "nkey": args.nkey,
        "username": args.username,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    try:
        if args.connection_config:
            settings = replace(ConnectionSettings.from_file(args.connection_config), **overrides)
        else:
            overrides.setdefault("url", DEFAULT_SERVER)
            settings = ConnectionSettings(**overrides)
    except (OSError, ValueError) as exc:
        raise _UsageError(f"invalid connection settings: {exc}") from None
    return settings.with_env_secrets(os.environ)


def _load_policy(path: str | None) -> ScriptPolicy | None:
    """Load --policy if given.

    Example:
        ```python
        policy = _load_policy("policy.toml")
        ```
    """
    if path is None:
        return None
    try:
        return ScriptPolicy.from_file(path)
    except (OSError, ValueError) as exc:
        raise _UsageError(f"invalid policy file {path}: {exc}") from None


def _read_script(path: str | None) -> str:
    """Read a script file; None means no script.

    Example:
        ```python
        source = _read_script("map_order.py")
        ```
    """
    if path is None:
        return ""
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise _UsageError(f"cannot read script {path}: {exc.strerror or exc}") from None


def build_query(args: argparse.Namespace) -> QueryDefinition:
    """Translate subcommand arguments into a QueryDefinition.

    Example:
        ```python
        query = build_query(build_parser().parse_args(["request", "svc.status"]))
        ```
    """
    if args.command == "request":
        return QueryDefinition(
            mode=QueryMode.REQUEST_REPLY,
            subject=args.subject,
            timeout=args.timeout,
            script=_read_script(args.script),
            request_data=args.data,
        )
    if args.command == "subscribe":
        return QueryDefinition(
            mode=QueryMode.SUBSCRIBE,
            subject=args.subject,
            timeout=args.timeout,
            script=_read_script(args.script),
        )
    return QueryDefinition(mode=QueryMode.SCRIPT, timeout=args.timeout, script=_read_script(args.file))


def _cell(value: Any) -> Text:
    """Render one cell as plain text; None shows as an empty cell.

    Example:
        ```python
        _cell(None).plain  # ""
        ```
    """
    if value is None:
        return Text("")
    return Text(str(value))


def _print_frame(frame: ResultFrame, as_json: bool, title: str | None = None) -> None:
    """Render a frame as a rich table or as JSON.

    Example:
        ```python
        _print_frame(ResultFrame("response", [{"a": 1}]), as_json=False)
        ```
    """
    if as_json:
        _CONSOLE.print_json(data=frame.to_dict(), default=str)
        return
    table = Table(title=title or frame.name)
    for column in frame.columns:
        table.add_column(escape(column), style="cyan" if column == frame.columns[0] else None)
    for row in frame.rows:
        table.add_row(*(_cell(row[column]) for column in frame.columns))
    _CONSOLE.print(table)


def _print_error(error: ExecutionError) -> None:
    """Render a classified error in a red panel.

    Example:
        ```python
        _print_error(NoResponse("no reply within 5s", subject="svc.status"))
        ```
    """
    lines = [f"[bold red]{error.kind.value}:[/bold red] {escape(error.message)}"]
    if error.subject:
        lines.append(f"subject: {escape(error.subject)}")
    if error.payload_preview:
        lines.append(f"payload ({error.payload_size} bytes): {escape(error.payload_preview)}")
    if error.details:
        lines.append(escape(error.details.rstrip()))
    _CONSOLE.print(Panel.fit("\n".join(lines), border_style="red"))


def _print_stdout(text: str) -> None:
    """Show what a script printed.

    Example:
        ```python
        _print_stdout("checked 3 nodes\\n")
        ```
    """
    if text:
        _CONSOLE.print(Panel.fit(Text(text.rstrip()), title="script output", border_style="blue"))


def _report_batch(result: QueryResult, as_json: bool) -> int:
    """Print a REQUEST_REPLY or SCRIPT result and return the exit code.

    Example:
        ```python
        code = _report_batch(result, as_json=False)
        ```
    """
    _print_stdout(result.stdout)
    if not result.ok:
        assert result.error is not None
        _print_error(result.error)
        return EXIT_FAILED
    for frame in result.frames:
        _print_frame(frame, as_json)
    return EXIT_OK


async def _run_query(
    settings: ConnectionSettings,
    query: QueryDefinition,
    policy: ScriptPolicy | None,
    max_messages: int | None,
    as_json: bool,
) -> int:
    """Open a connection, execute one query and print its frames.

    Example:
        ```python
        code = asyncio.run(_run_query(settings, query, None, None, as_json=False))
        ```
    """
    async with open_connection(settings) as transport:
        result = await execute_query(query, transport, policy=policy, max_messages=max_messages)
        if result.stream is None:
            return _report_batch(result, as_json)
        code = EXIT_OK
        async with result.stream as stream:
            async for event in stream:
                _print_stdout(event.stdout)
                if event.ok:
                    assert event.frame is not None
                    _print_frame(event.frame, as_json, title=f"{event.frame.name} #{event.sequence}")
                    continue
                assert event.error is not None
                _print_error(event.error)
                if event.terminal and event.error.kind is not ErrorKind.CANCELLED:
                    code = EXIT_FAILED
        return code


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `nq` CLI.

    Example:
        ```python
        code = main(["request", "svc.status", "--timeout", "2s"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    _configure_logging(args.verbose)

    try:
        settings = build_settings(args)
        if args.command == "health":
            status = asyncio.run(check_health(settings))
            style = "green" if status.ok else "red"
            _CONSOLE.print(Panel.fit(f"[bold {style}]{escape(status.message)}[/bold {style}]", border_style=style))
            return EXIT_OK if status.ok else EXIT_FAILED
        policy = _load_policy(args.policy)
        query = build_query(args)
    except _UsageError as exc:
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {escape(str(exc))}", border_style="red"))
        return EXIT_USAGE

    max_messages = getattr(args, "max_messages", None)
    try:
        return asyncio.run(_run_query(settings, query, policy, max_messages, args.json))
    except TransportError as exc:
        _print_error(exc)
        return EXIT_FAILED
    except KeyboardInterrupt:
        _CONSOLE.print("[yellow]Cancelled[/yellow]")
        return EXIT_OK
