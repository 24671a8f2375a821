"""
Capability objects handed to user scripts.

Scripts run synchronously in a worker thread; every NATS call they make is
scheduled on the engine's event loop and waited for from that thread. A
ScriptContext lives for exactly one script invocation and owns everything the
script opened.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import io
import json
import logging
import threading
from typing import Any, Awaitable, Callable, TypeVar

from ..errors import TransportError
from ..message import Header, NatsMessage
from ..query import parse_duration
from ..transport import SubscriptionHandle, Transport

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_REQUEST_TIMEOUT = "5s"
DEFAULT_POLL_TIMEOUT = "1s"


class ScriptAborted(BaseException):
    """Raised inside a script once its execution has been abandoned.

    Derives from BaseException so `except Exception` in user code cannot hide it.

    Example:
        ```python
        raise ScriptAborted("query deadline exceeded")
        ```
    """


def _to_bytes(payload: str | bytes | bytearray | None) -> bytes:
    """Encode script payloads; strings are sent as UTF-8.

    Example:
        ```python
        _to_bytes("hi")  # b"hi"
        ```
    """
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return str(payload).encode("utf-8")


class JsonUtil:
    """JSON helper exposed to scripts as `json`.

    Example:
        ```python
        row = json.loads(msg.data)
        ```
    """

    def loads(self, data: str | bytes | bytearray) -> Any:
        """Parse JSON text or bytes.

        Example:
            ```python
            JsonUtil().loads(b'{"a": 1}')  # {"a": 1}
            ```
        """
        return json.loads(data)

    def dumps(self, value: Any) -> str:
        """Serialise a value to JSON text.

        Example:
            ```python
            JsonUtil().dumps({"a": 1})  # '{"a": 1}'
            ```
        """
        return json.dumps(value, ensure_ascii=False, default=str)


class ScriptContext:
    """Per-invocation state: bound message, transport bridge, output, subscriptions.

    Example:
        ```python
        context = ScriptContext(transport, asyncio.get_running_loop(), message=msg)
        ```
    """

    def __init__(
        self,
        transport: Transport,
        loop: asyncio.AbstractEventLoop,
        *,
        message: NatsMessage | None = None,
        subject: str | None = None,
        mode: str | None = None,
        max_output_bytes: int = 128 * 1024,
    ) -> None:
        """Create a fresh context; never reuse one across invocations.

        Example:
            ```python
            context = ScriptContext(transport, loop, mode="SCRIPT")
            ```
        """
        self.transport = transport
        self.loop = loop
        self.message = message
        self.subject = subject
        self.mode = mode
        self.transport_error: TransportError | None = None
        self._max_output_bytes = max_output_bytes
        self._output = io.StringIO()
        self._output_size = 0
        self._lock = threading.Lock()
        self._aborted = threading.Event()
        self._closed = False
        self._pending: set[concurrent.futures.Future[Any]] = set()
        self._subscriptions: list[SubscriptionHandle] = []
        self.connection = ScriptConnection(self)
        self.json = JsonUtil()

    @property
    def aborted(self) -> bool:
        """True once abort() has been called.

        Example:
            ```python
            if context.aborted:
                ...
            ```
        """
        return self._aborted.is_set()

    def check_aborted(self) -> None:
        """Raise ScriptAborted if the invocation has been abandoned.

        Example:
            ```python
            context.check_aborted()
            ```
        """
        if self._aborted.is_set():
            raise ScriptAborted("script execution was aborted")

    def abort(self) -> None:
        """Stop the script: cancel in-flight calls and refuse new ones.

        Safe to call from any thread.

        Example:
            ```python
            context.abort()
            ```
        """
        with self._lock:
            self._aborted.set()
            pending = list(self._pending)
        for future in pending:
            future.cancel()

    def call(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Run an async transport call on the loop and wait for it from the script thread.

        Example:
            ```python
            reply = context.call(transport.request, "svc.ping", b"", 5.0)
            ```
        """
        with self._lock:
            if self._aborted.is_set():
                raise ScriptAborted("script execution was aborted")
            future = asyncio.run_coroutine_threadsafe(func(*args), self.loop)
            self._pending.add(future)
        try:
            return future.result()
        except concurrent.futures.CancelledError:
            raise ScriptAborted("script execution was aborted") from None
        except TransportError as exc:
            if self.transport_error is None:
                self.transport_error = exc
            raise
        finally:
            with self._lock:
                self._pending.discard(future)

    async def open_subscription(self, subject: str, queue: str | None = None) -> SubscriptionHandle:
        """Subscribe on the loop and register the handle for teardown.

        Example:
            ```python
            sub = context.call(context.open_subscription, inbox)
            ```
        """
        sub = await self.transport.subscribe(subject, queue=queue)
        if self._closed:
            await sub.unsubscribe()
            raise ScriptAborted("script execution was aborted")
        self._subscriptions.append(sub)
        return sub

    async def close(self) -> None:
        """Abort and release every subscription the script opened.

        Example:
            ```python
            await context.close()
            ```
        """
        self._closed = True
        self.abort()
        subscriptions, self._subscriptions = self._subscriptions, []
        for sub in subscriptions:
            await sub.unsubscribe()
        if subscriptions:
            logger.debug("Released %d script subscription(s)", len(subscriptions))

    def write_output(self, text: str) -> None:
        """Append printed text, dropping anything past the UTF-8 byte limit.

        A multi-byte character that would straddle the limit is dropped whole.

        Example:
            ```python
            context.write_output("hello\\n")
            ```
        """
        remaining = self._max_output_bytes - self._output_size
        if remaining <= 0:
            return
        encoded = text.encode("utf-8", errors="replace")[:remaining]
        chunk = encoded.decode("utf-8", errors="ignore")
        self._output.write(chunk)
        self._output_size += len(chunk.encode("utf-8"))

    def output(self) -> str:
        """Return captured print output.

        Example:
            ```python
            text = context.output()
            ```
        """
        return self._output.getvalue()

    def log(self, message: Any) -> None:
        """Log a script message through the engine logger.

        Example:
            ```python
            log("received 3 replies")
            ```
        """
        logger.info("[script %s] %s", self.subject or self.mode or "-", message)


class ScriptSubscription:
    """Synchronous subscription handle given to scripts.

    Example:
        ```python
        sub = nc.subscribe_sync(inbox)
        msg = sub.next_msg("500ms")
        ```
    """

    def __init__(self, context: ScriptContext, handle: SubscriptionHandle) -> None:
        """Wrap a transport subscription owned by the context.

        Example:
            ```python
            ScriptSubscription(context, handle)
            ```
        """
        self._context = context
        self._handle = handle

    @property
    def subject(self) -> str:
        """Subject this subscription listens on.

        Example:
            ```python
            sub.subject
            ```
        """
        return self._handle.subject

    def next_msg(self, timeout: str | float = DEFAULT_POLL_TIMEOUT) -> NatsMessage | None:
        """Wait for the next message; return None if none arrives within timeout.

        Example:
            ```python
            while (m := sub.next_msg("200ms")) is not None:
                rows.append(json.loads(m.data))
            ```
        """
        return self._context.call(self._handle.next_msg, parse_duration(timeout))

    def unsubscribe(self) -> None:
        """Unsubscribe early; the context would do it on exit anyway.

        Example:
            ```python
            sub.unsubscribe()
            ```
        """
        self._context.call(self._handle.unsubscribe)


class ScriptConnection:
    """Connection capability given to scripts as `nc`.

    Example:
        ```python
        reply = nc.request("svc.status", "", "2s")
        ```
    """

    def __init__(self, context: ScriptContext) -> None:
        """Bind the capability to one script context.

        Example:
            ```python
            nc = ScriptConnection(context)
            ```
        """
        self._context = context

    def request(
        self,
        subject: str,
        payload: str | bytes = "",
        timeout: str | float = DEFAULT_REQUEST_TIMEOUT,
    ) -> NatsMessage:
        """Send a request and return the reply; raises NoResponse on timeout.

        Example:
            ```python
            reply = nc.request("svc.status", '{"verbose": true}', "1s")
            ```
        """
        transport = self._context.transport
        return self._context.call(transport.request, subject, _to_bytes(payload), parse_duration(timeout))

    def request_msg(
        self, message: NatsMessage, timeout: str | float = DEFAULT_REQUEST_TIMEOUT
    ) -> NatsMessage:
        """Send a message built with new_msg() as a request, header included.

        Example:
            ```python
            reply = nc.request_msg(nc.new_msg("svc.status", "", header={"Trace": "1"}), "1s")
            ```
        """
        if not isinstance(message, NatsMessage):
            raise TypeError("request_msg expects a message created with nc.new_msg")
        return self._context.call(
            self._context.transport.request,
            message.subject,
            message.data,
            parse_duration(timeout),
            message.header,
        )

    def publish(self, subject: str, payload: str | bytes = "") -> None:
        """Publish a message without a reply subject.

        Example:
            ```python
            nc.publish("events.audit", "checked")
            ```
        """
        self._context.call(self._context.transport.publish, subject, _to_bytes(payload))

    def publish_msg(self, message: NatsMessage) -> None:
        """Publish a NatsMessage including its reply subject and header.

        Example:
            ```python
            nc.publish_msg(nc.new_msg("events.audit", "x", header={"Trace": "1"}))
            ```
        """
        if not isinstance(message, NatsMessage):
            raise TypeError("publish_msg expects a message created with nc.new_msg")
        self._context.call(
            self._context.transport.publish,
            message.subject,
            message.data,
            message.reply,
            message.header,
        )

    def publish_request(self, subject: str, reply: str, payload: str | bytes = "") -> None:
        """Publish a request whose replies go to `reply`.

        Example:
            ```python
            nc.publish_request("$SYS.REQ.SERVER.PING", inbox, "")
            ```
        """
        self._context.call(self._context.transport.publish, subject, _to_bytes(payload), reply)

    def subscribe_sync(self, subject: str) -> ScriptSubscription:
        """Subscribe and return a handle to poll with next_msg().

        The subscription is registered with the server before this returns.

        Example:
            ```python
            sub = nc.subscribe_sync(nc.new_inbox())
            ```
        """
        handle = self._context.call(self._context.open_subscription, subject)
        return ScriptSubscription(self._context, handle)

    def queue_subscribe_sync(self, subject: str, queue: str) -> ScriptSubscription:
        """Join queue group `queue` on subject; each message goes to one member of the group.

        Example:
            ```python
            sub = nc.queue_subscribe_sync("jobs.*", "workers")
            ```
        """
        if not queue:
            raise ValueError("queue group name is required")
        handle = self._context.call(self._context.open_subscription, subject, queue)
        return ScriptSubscription(self._context, handle)

    def new_inbox(self) -> str:
        """Return a unique inbox subject.

        Example:
            ```python
            inbox = nc.new_inbox()
            ```
        """
        self._context.check_aborted()
        return self._context.transport.new_inbox()

    def new_msg(
        self,
        subject: str,
        data: str | bytes = "",
        reply: str | None = None,
        header: dict[str, Any] | Header | None = None,
    ) -> NatsMessage:
        """Build a message for publish_msg() or request_msg().

        Example:
            ```python
            msg = nc.new_msg("orders.new", '{"id": 1}', header={"Source": "dashboard"})
            ```
        """
        if not isinstance(header, Header):
            header = Header(header)
        return NatsMessage(subject=subject, data=_to_bytes(data), reply=reply, header=header)
