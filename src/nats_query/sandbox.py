from __future__ import annotations

import asyncio
import builtins
import logging
import sys
import traceback
from dataclasses import dataclass
from types import CodeType, FrameType
from typing import Any, Callable

from .errors import ExecutionError, ScriptError
from .execution.capabilities import ScriptAborted, ScriptContext
from .execution.types import ScriptOutcome
from .frames import ScriptFailure
from .message import NatsMessage
from .policy import ScriptPolicy
from .transport import Transport

logger = logging.getLogger(__name__)

SCRIPT_FILENAME = "<script>"

_RESERVED_GLOBALS = {"__builtins__", "result", "msg", "nc", "json", "log", "ScriptFailure"}


@dataclass(frozen=True, slots=True)
class CompiledScript:
    source: str
    code: CodeType


def compile_script(source: str) -> CompiledScript:
    """Compile user source once per query; syntax errors are fatal ScriptErrors.

    Example:
        ```python
        compiled = compile_script("result = json.loads(msg.data)")
        ```
    """
    try:
        code = compile(source, SCRIPT_FILENAME, "exec")
    except SyntaxError as e:
        raise ScriptError(f"SyntaxError: {e}", fatal=True) from None
    except ValueError as e:
        raise ScriptError(f"invalid script source: {e}", fatal=True) from None
    return CompiledScript(source=source, code=code)


def _safe_import_factory_mode(
    mode: str,
    allowed_imports: set[str],
    blocked_imports: set[str],
) -> Callable[..., Any]:
    def _safe_import(
        name: str,
        globals: dict[str, Any] | None = None,
        locals: dict[str, Any] | None = None,
        fromlist: Any = (),
        level: int = 0,
    ) -> Any:
        if name == "importlib" or name.startswith("importlib."):
            raise ImportError("Import 'importlib' is blocked by policy")

        root = name.split(".")[0]
        if mode == "allow":
            if root not in allowed_imports:
                raise ImportError(f"Import '{name}' is not allowed by policy")
        elif root in blocked_imports:
            raise ImportError(f"Import '{name}' is blocked by policy")
        return __import__(name, globals, locals, fromlist, level)

    return _safe_import


def _build_safe_builtins(
    mode: str,
    allowed_builtins: set[str],
    blocked_builtins: set[str],
    safe_import: Any,
    safe_print: Any,
) -> dict[str, Any]:
    safe = {}
    for name, value in vars(builtins).items():
        if mode == "allow":
            if name not in allowed_builtins:
                continue
        elif name in blocked_builtins:
            continue
        safe[name] = value

    safe["__import__"] = safe_import
    # print goes to the per-invocation buffer, never the process stdout
    if "print" in safe:
        safe["print"] = safe_print
    return safe


def _print_factory(context: ScriptContext) -> Callable[..., None]:
    def _print(*args: Any, sep: str | None = " ", end: str | None = "\n", **_: Any) -> None:
        sep = " " if sep is None else sep
        end = "\n" if end is None else end
        context.write_output(sep.join(str(arg) for arg in args) + end)

    return _print


def _normalize_system_exit(exit_code: Any) -> tuple[bool, str | None]:
    if exit_code in (None, 0):
        return True, None
    return False, f"SystemExit: {exit_code}"


def _filter_extra_globals(
    extra_globals: dict[str, Any],
    mode: str,
    allowed_globals: set[str],
    blocked_globals: set[str],
) -> dict[str, Any]:
    filtered: dict[str, Any] = {}
    for key, value in extra_globals.items():
        key_str = str(key)
        if key_str in _RESERVED_GLOBALS:
            continue
        if mode == "allow" and key_str not in allowed_globals:
            continue
        if mode == "restrict" and key_str in blocked_globals:
            continue
        filtered[key_str] = value
    return filtered


def build_globals(context: ScriptContext, policy: ScriptPolicy) -> dict[str, Any]:
    """Assemble the restricted global namespace for one invocation.

    Example:
        ```python
        scope = build_globals(context, ScriptPolicy())
        ```
    """
    mode = policy.mode
    safe_import = _safe_import_factory_mode(
        mode, set(policy.allowed_imports), set(policy.blocked_imports)
    )
    safe_builtins = _build_safe_builtins(
        mode,
        set(policy.allowed_builtins),
        set(policy.blocked_builtins),
        safe_import,
        _print_factory(context),
    )
    exec_globals: dict[str, Any] = {
        "__builtins__": safe_builtins,
        "__name__": "__script__",
        "result": None,
        "nc": context.connection,
        "json": context.json,
        "log": context.log,
        "ScriptFailure": ScriptFailure,
    }
    if context.message is not None:
        exec_globals["msg"] = context.message
    exec_globals.update(
        _filter_extra_globals(
            policy.extra_globals, mode, set(policy.allowed_globals), set(policy.blocked_globals)
        )
    )
    return exec_globals


def _abort_tracer(context: ScriptContext) -> Callable[..., Any]:
    def _local(frame: FrameType, event: str, arg: Any) -> Any:
        if event == "line" and context.aborted:
            raise ScriptAborted("script execution was aborted")
        return _local

    def _global(frame: FrameType, event: str, arg: Any) -> Any:
        if frame.f_code.co_filename != SCRIPT_FILENAME:
            return None
        return _local

    return _global


def run_script(compiled: CompiledScript, context: ScriptContext, policy: ScriptPolicy) -> ScriptOutcome:
    """Execute a compiled script synchronously in the calling thread.

    Uncaught exceptions become ScriptError; classified engine errors raised by
    capability calls keep their kind; a transport failure seen by any call wins.

    Example:
        ```python
        outcome = run_script(compile_script("result = {'a': 1}"), context, ScriptPolicy())
        ```
    """
    exec_globals = build_globals(context, policy)
    previous_tracer = sys.gettrace()
    sys.settrace(_abort_tracer(context))
    try:
        exec(compiled.code, exec_globals, exec_globals)
    except ScriptAborted:
        raise
    except SystemExit as exc:
        ok, error = _normalize_system_exit(exc.code)
        if not ok:
            raise ScriptError(error or "SystemExit", details=context.output()) from None
    except ExecutionError:
        if context.transport_error is not None:
            raise context.transport_error from None
        raise
    except MemoryError:
        raise ScriptError("Memory limit exceeded") from None
    except Exception as exc:
        if context.transport_error is not None:
            raise context.transport_error from None
        raise ScriptError(
            f"{type(exc).__name__}: {exc}",
            details=traceback.format_exc(),
        ) from None
    finally:
        sys.settrace(previous_tracer)

    if context.transport_error is not None:
        raise context.transport_error
    return ScriptOutcome(result=exec_globals.get("result"), stdout=context.output())


async def execute_script(
    compiled: CompiledScript,
    transport: Transport,
    policy: ScriptPolicy,
    *,
    message: NatsMessage | None = None,
    subject: str | None = None,
    mode: str | None = None,
) -> ScriptOutcome:
    """Run a script in a worker thread with a fresh context, releasing it on every exit path.

    Example:
        ```python
        outcome = await execute_script(compiled, transport, ScriptPolicy(), message=msg)
        ```
    """
    context = ScriptContext(
        transport,
        asyncio.get_running_loop(),
        message=message,
        subject=subject,
        mode=mode,
        max_output_bytes=policy.max_output_kb * 1024,
    )
    try:
        return await asyncio.to_thread(run_script, compiled, context, policy)
    except ScriptAborted:
        error = ScriptError("script execution was aborted", subject=subject, mode=mode)
        error.stdout = context.output()
        raise error from None
    except ExecutionError as exc:
        exc.stdout = context.output()
        raise
    finally:
        await context.close()
        if context.output():
            logger.debug("Script output (%s): %s", subject or mode, context.output()[:512])
