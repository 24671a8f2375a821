from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import pytest

from nats_query import Header, NatsMessage, NoResponse, TransportError


def subject_matches(pattern: str, subject: str) -> bool:
    wanted = pattern.split(".")
    tokens = subject.split(".")
    for index, token in enumerate(wanted):
        if token == ">":
            return len(tokens) > index
        if index >= len(tokens):
            return False
        if token != "*" and token != tokens[index]:
            return False
    return len(tokens) == len(wanted)


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value).encode("utf-8")


class FakeSubscription:
    def __init__(self, broker: "FakeBroker", subject: str, queue: str | None = None) -> None:
        self.broker = broker
        self.subject = subject
        self.queue_group = queue
        self.queue: asyncio.Queue[NatsMessage] = asyncio.Queue()
        self.closed = False

    async def next_msg(self, timeout: float | None) -> NatsMessage | None:
        if timeout is None:
            return await self.queue.get()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except TimeoutError:
            return None

    async def unsubscribe(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.broker.subscriptions.remove(self)
        self.broker.log.append(("unsubscribe", self.subject))


class FakeBroker:
    """In-memory stand-in for a NATS server implementing the Transport protocol.

    Messages published to a subject with no matching subscription are dropped,
    like core NATS, and each queue group gets one copy, handed out round-robin.
    Every operation is appended to `log` in call order.
    """

    def __init__(self) -> None:
        self.subscriptions: list[FakeSubscription] = []
        self.log: list[tuple[str, str]] = []
        self.published: list[NatsMessage] = []
        self.fail_with: TransportError | None = None
        self._responders: dict[str, Callable[[NatsMessage], list[Any]]] = {}
        self._inboxes = 0
        self._queue_turns: dict[str, int] = {}

    def respond(self, subject: str, reply: Any) -> None:
        """Answer requests on subject once; reply may be a callable taking the request."""
        self._responders[subject] = lambda msg: [reply(msg) if callable(reply) else reply]

    def respond_many(self, subject: str, replies: list[Any]) -> None:
        """Answer each request on subject with several replies."""
        self._responders[subject] = lambda msg: list(replies)

    def stay_silent(self, subject: str) -> None:
        """Accept requests on subject but never answer."""
        self._responders[subject] = lambda msg: []

    @property
    def active_subscriptions(self) -> int:
        return len(self.subscriptions)

    def _check_failure(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def _reply_message(self, subject: str, reply: Any) -> NatsMessage:
        if isinstance(reply, NatsMessage):
            return NatsMessage(subject=subject, data=reply.data, header=reply.header)
        return NatsMessage(subject=subject, data=_as_bytes(reply))

    def _deliver(self, message: NatsMessage) -> None:
        groups: dict[str, list[FakeSubscription]] = {}
        for sub in list(self.subscriptions):
            if not subject_matches(sub.subject, message.subject):
                continue
            if sub.queue_group:
                groups.setdefault(sub.queue_group, []).append(sub)
            else:
                sub.queue.put_nowait(message)
        for group, members in groups.items():
            turn = self._queue_turns.get(group, 0)
            self._queue_turns[group] = turn + 1
            members[turn % len(members)].queue.put_nowait(message)

    async def request(
        self, subject: str, payload: bytes, timeout: float, header: Header | None = None
    ) -> NatsMessage:
        self.log.append(("request", subject))
        self._check_failure()
        responder = self._responders.get(subject)
        if responder is None:
            raise NoResponse("no responders available for request", subject=subject)
        replies = responder(NatsMessage(subject=subject, data=payload, header=header or Header()))
        if not replies:
            await asyncio.sleep(timeout)
            raise NoResponse(f"no reply within {timeout:g}s", subject=subject)
        return self._reply_message(self.new_inbox(), replies[0])

    async def publish(
        self, subject: str, payload: bytes, reply: str | None = None, header: Header | None = None
    ) -> None:
        self.log.append(("publish", subject))
        self._check_failure()
        message = NatsMessage(subject=subject, data=payload, reply=reply, header=header or Header())
        self.published.append(message)
        self._deliver(message)
        responder = self._responders.get(subject)
        if responder is not None and reply:
            for answer in responder(message):
                self._deliver(self._reply_message(reply, answer))

    async def subscribe(self, subject: str, queue: str | None = None) -> FakeSubscription:
        self.log.append(("subscribe", subject))
        self._check_failure()
        sub = FakeSubscription(self, subject, queue)
        self.subscriptions.append(sub)
        return sub

    def new_inbox(self) -> str:
        self._inboxes += 1
        return f"_INBOX.test.{self._inboxes}"

    async def emit(self, subject: str, data: Any, header: Header | None = None) -> None:
        """Publish from outside the engine, e.g. a sensor producing readings."""
        self._deliver(NatsMessage(subject=subject, data=_as_bytes(data), header=header or Header()))


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()
