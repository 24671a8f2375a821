"""
Async NATS transport used by the executors.

Wraps a nats-py client so the rest of the engine only sees NatsMessage
objects and the engine's own error taxonomy:

- request timeouts and "no responders" become NoResponse
- every other nats-py or socket failure becomes TransportError
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import nats.errors
from nats.aio.client import Client as NATSClient
from nats.aio.msg import Msg
from nats.aio.subscription import Subscription

from .errors import NoResponse, TransportError, payload_preview
from .message import Header, NatsMessage

logger = logging.getLogger(__name__)

_TRANSPORT_FAILURES = (nats.errors.Error, OSError)


def message_from_nats(msg: Msg) -> NatsMessage:
    """Convert a nats-py message into a NatsMessage.

    Example:
        ```python
        message = message_from_nats(await nc.request("svc.ping", b""))
        ```
    """
    headers = msg.headers or {}
    return NatsMessage(
        subject=msg.subject,
        data=bytes(msg.data or b""),
        reply=msg.reply or None,
        header=Header({key: [value] for key, value in headers.items()}),
    )


def header_to_nats(header: Header | None) -> dict[str, str] | None:
    """Convert a Header into nats-py's single-valued header dict.

    Only the first value of each key is sent.

    Example:
        ```python
        header_to_nats(Header({"a": ["1", "2"]}))  # {"a": "1"}
        ```
    """
    if not header:
        return None
    out: dict[str, str] = {}
    for key in header:
        first = header.get(key)
        if first is not None:
            out[key] = first
    return out or None


class SubscriptionHandle(Protocol):
    subject: str

    async def next_msg(self, timeout: float | None) -> NatsMessage | None:
        """Return the next message, or None when nothing arrives in time.

        Example:
            ```python
            msg = await sub.next_msg(1.0)
            ```
        """
        ...

    async def unsubscribe(self) -> None:
        """Release the subscription.

        Example:
            ```python
            await sub.unsubscribe()
            ```
        """
        ...


class Transport(Protocol):
    async def request(
        self, subject: str, payload: bytes, timeout: float, header: Header | None = None
    ) -> NatsMessage:
        """Send one request and wait for one reply.

        Example:
            ```python
            reply = await transport.request("svc.ping", b"", 5.0)
            ```
        """
        ...

    async def publish(
        self, subject: str, payload: bytes, reply: str | None = None, header: Header | None = None
    ) -> None:
        """Publish one message.

        Example:
            ```python
            await transport.publish("events.created", b"{}")
            ```
        """
        ...

    async def subscribe(self, subject: str, queue: str | None = None) -> SubscriptionHandle:
        """Open a synchronous-style subscription, optionally in a queue group.

        Example:
            ```python
            sub = await transport.subscribe("events.>")
            ```
        """
        ...

    def new_inbox(self) -> str:
        """Return a unique inbox subject.

        Example:
            ```python
            inbox = transport.new_inbox()
            ```
        """
        ...


class TransportSubscription:
    """Pull-style subscription over a nats-py Subscription.

    Example:
        ```python
        sub = await transport.subscribe("sensors.*")
        msg = await sub.next_msg(2.0)
        ```
    """

    def __init__(self, subject: str, subscription: Subscription) -> None:
        """Wrap an already registered nats-py subscription.

        Example:
            ```python
            wrapped = TransportSubscription("a.b", await nc.subscribe("a.b"))
            ```
        """
        self.subject = subject
        self._sub = subscription
        self._closed = False

    async def next_msg(self, timeout: float | None) -> NatsMessage | None:
        """Return the next message, or None when the timeout passes.

        A timeout of None waits until a message arrives or the caller cancels.

        Example:
            ```python
            msg = await sub.next_msg(0.5)
            ```
        """
        try:
            msg = await self._sub.next_msg(timeout=timeout)
        except (nats.errors.TimeoutError, TimeoutError):
            return None
        except _TRANSPORT_FAILURES as exc:
            raise TransportError(f"subscription failed: {exc}", subject=self.subject) from exc
        return message_from_nats(msg)

    async def unsubscribe(self) -> None:
        """Unsubscribe once; failures on an already dead connection are only logged.

        Example:
            ```python
            await sub.unsubscribe()
            ```
        """
        if self._closed:
            return
        self._closed = True
        try:
            await self._sub.unsubscribe()
        except _TRANSPORT_FAILURES as exc:
            logger.debug("Unsubscribe from %s failed: %s", self.subject, exc)
        else:
            logger.debug("Unsubscribed from %s", self.subject)


class NatsTransport:
    """Transport implementation backed by a connected nats-py client.

    Example:
        ```python
        nc = await nats.connect("nats://127.0.0.1:4222")
        transport = NatsTransport(nc)
        ```
    """

    def __init__(self, client: NATSClient) -> None:
        """Store the client; connection lifetime stays with the caller.

        Example:
            ```python
            transport = NatsTransport(nc)
            ```
        """
        self._nc = client

    @property
    def client(self) -> NATSClient:
        """Underlying nats-py client.

        Example:
            ```python
            transport.client.is_connected
            ```
        """
        return self._nc

    async def request(
        self, subject: str, payload: bytes, timeout: float, header: Header | None = None
    ) -> NatsMessage:
        """Send a request and wait for a single reply.

        Example:
            ```python
            reply = await transport.request("svc.status", b"", 5.0)
            ```
        """
        try:
            msg = await self._nc.request(
                subject, payload, timeout=timeout, headers=header_to_nats(header)
            )
        except nats.errors.NoRespondersError:
            raise NoResponse(
                "no responders available for request", subject=subject, payload=payload or None
            ) from None
        except (nats.errors.TimeoutError, TimeoutError):
            raise NoResponse(
                f"no reply within {timeout:g}s", subject=subject, payload=payload or None
            ) from None
        except _TRANSPORT_FAILURES as exc:
            raise TransportError(f"request failed: {exc}", subject=subject) from exc
        logger.debug(
            "Reply on %s (%d bytes): %s", subject, len(msg.data or b""), payload_preview(msg.data, 64)
        )
        return message_from_nats(msg)

    async def publish(
        self, subject: str, payload: bytes, reply: str | None = None, header: Header | None = None
    ) -> None:
        """Publish a message, optionally with a reply subject.

        Example:
            ```python
            await transport.publish("broadcast.ping", b"", reply=inbox)
            ```
        """
        try:
            await self._nc.publish(subject, payload, reply=reply or "", headers=header_to_nats(header))
        except _TRANSPORT_FAILURES as exc:
            raise TransportError(f"publish failed: {exc}", subject=subject) from exc

    async def subscribe(self, subject: str, queue: str | None = None) -> TransportSubscription:
        """Subscribe and flush so the server knows the interest before returning.

        Members of the same `queue` group share the messages of a subject.

        Example:
            ```python
            sub = await transport.subscribe("jobs.*", queue="workers")
            ```
        """
        try:
            sub = await self._nc.subscribe(subject, queue=queue or "")
        except _TRANSPORT_FAILURES as exc:
            raise TransportError(f"subscribe failed: {exc}", subject=subject) from exc
        wrapped = TransportSubscription(subject, sub)
        try:
            await self._nc.flush()
        except _TRANSPORT_FAILURES as exc:
            await wrapped.unsubscribe()
            raise TransportError(f"subscribe flush failed: {exc}", subject=subject) from exc
        except asyncio.CancelledError:
            await wrapped.unsubscribe()
            raise
        logger.debug("Subscribed to %s%s", subject, f" (queue {queue})" if queue else "")
        return wrapped

    async def flush(self, timeout: float = 2.0) -> None:
        """Round-trip to the server; raises TransportError when it does not answer.

        Example:
            ```python
            await transport.flush(1.0)
            ```
        """
        try:
            await self._nc.flush(timeout=timeout)
        except (nats.errors.Error, OSError) as exc:
            raise TransportError(f"flush failed: {exc}") from exc

    def new_inbox(self) -> str:
        """Return a fresh inbox subject from the client.

        Example:
            ```python
            inbox = transport.new_inbox()
            ```
        """
        return self._nc.new_inbox()

    def describe(self) -> dict[str, Any]:
        """Return non-secret connection facts for diagnostics.

        Example:
            ```python
            transport.describe()  # {"connected": True, "server": "nats://..."}
            ```
        """
        server = getattr(self._nc, "connected_url", None)
        return {
            "connected": bool(getattr(self._nc, "is_connected", False)),
            "server": server.geturl() if server is not None else None,
        }
