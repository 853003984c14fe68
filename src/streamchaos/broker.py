# src/streamchaos/broker.py
"""Broker client boundary.

The harness only relies on five broker operations: create stream, delete
stream, create durable consumer, publish, and consume-with-timeout. They are
expressed as Protocols so the controller and client pool never see the
transport, and tests can substitute an in-memory broker.

NatsBroker implements the protocols with nats-py. nats-py is asyncio based;
the harness is a single sequential control loop, so NatsBroker owns one
private event loop and runs every operation to completion on it from the
calling thread.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar, runtime_checkable

import nats
import nats.errors
import nats.js.errors
from nats.aio.client import Client as NatsClient
from nats.js.api import RetentionPolicy, StreamConfig
from nats.js.client import JetStreamContext

from streamchaos.core.logging import get_logger
from streamchaos.errors import BrokerError

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class StreamMessage:
    """A message as seen by a consumer.

    Attributes:
        sequence: Broker-assigned stream sequence (the log position).
        body: Raw message body.
    """

    sequence: int
    body: bytes


@runtime_checkable
class DurableSubscription(Protocol):
    """A durable consumer bound to one connection."""

    def fetch_one(self, timeout: float) -> StreamMessage | None:
        """Fetch and acknowledge at most one message.

        Returns:
            The message, or None when nothing arrived within ``timeout``.

        Raises:
            BrokerError: On transport failures other than a plain timeout.
        """
        ...


@runtime_checkable
class BrokerConnection(Protocol):
    """One client connection to one server."""

    def delete_stream(self, name: str) -> bool:
        """Delete a stream. Returns False if it did not exist."""
        ...

    def create_stream(self, name: str, *, replicas: int) -> None:
        """Create a limits-retention stream whose subject equals its name."""
        ...

    def create_durable_consumer(self, stream: str, durable_name: str) -> DurableSubscription:
        """Create (or bind to) a durable consumer on ``stream``."""
        ...

    def publish(self, subject: str, body: bytes, *, timeout: float) -> None:
        """Publish ``body`` and flush it to the server within ``timeout``."""
        ...

    def close(self) -> None:
        """Close the connection."""
        ...


class Broker(Protocol):
    """Factory for connections to the servers of one cluster."""

    def connect(self, address: str) -> BrokerConnection:
        """Open a connection to ``address`` (host:port)."""
        ...

    def close(self) -> None:
        """Release every connection and any runtime resources."""
        ...


# =============================================================================
# nats-py implementation
# =============================================================================


class _NatsSubscription:
    def __init__(self, broker: NatsBroker, subscription: JetStreamContext.PullSubscription, name: str) -> None:
        self._broker = broker
        self._subscription = subscription
        self._name = name

    async def _fetch(self, timeout: float) -> StreamMessage | None:
        try:
            messages = await self._subscription.fetch(1, timeout=timeout)
        except nats.errors.TimeoutError:
            return None
        message = messages[0]
        sequence = message.metadata.sequence.stream
        try:
            await message.ack()
        except nats.errors.Error as exc:
            # An unacked message is redelivered at the same sequence; the
            # observation below is still valid.
            logger.debug("ack_failed", consumer=self._name, sequence=sequence, error=str(exc))
        return StreamMessage(sequence=sequence, body=bytes(message.data))

    def fetch_one(self, timeout: float) -> StreamMessage | None:
        return self._broker.run(self._fetch(timeout), f"fetch from {self._name}")


class _NatsConnection:
    def __init__(self, broker: NatsBroker, client: NatsClient, address: str) -> None:
        self._broker = broker
        self._client = client
        self._js: JetStreamContext = client.jetstream()
        self.address = address

    def delete_stream(self, name: str) -> bool:
        async def _delete() -> bool:
            try:
                return await self._js.delete_stream(name)
            except nats.js.errors.NotFoundError:
                return False

        return self._broker.run(_delete(), f"delete stream {name}")

    def create_stream(self, name: str, *, replicas: int) -> None:
        config = StreamConfig(
            name=name,
            subjects=[name],
            num_replicas=replicas,
            retention=RetentionPolicy.LIMITS,
        )
        self._broker.run(self._js.add_stream(config), f"create stream {name}")

    def create_durable_consumer(self, stream: str, durable_name: str) -> DurableSubscription:
        subscription = self._broker.run(
            self._js.pull_subscribe(stream, durable=durable_name, stream=stream),
            f"create consumer {durable_name}",
        )
        return _NatsSubscription(self._broker, subscription, durable_name)

    def publish(self, subject: str, body: bytes, *, timeout: float) -> None:
        async def _publish() -> None:
            await self._client.publish(subject, body)
            await self._client.flush(timeout=timeout)

        self._broker.run(_publish(), f"publish to {subject}")

    def close(self) -> None:
        if self._client.is_closed:
            return
        self._broker.run(self._client.close(), f"close connection to {self.address}")


class NatsBroker:
    """nats-py backed Broker driven from a single thread.

    Connections keep reconnecting forever: servers under test are paused and
    killed constantly, and a connection that gives up would silently turn a
    client into a permanent no-op.
    """

    def __init__(
        self,
        *,
        connect_timeout_sec: float = 2.0,
        connect_deadline_sec: float = 10.0,
        reconnect_wait_sec: float = 0.1,
    ) -> None:
        self._loop = asyncio.new_event_loop()
        self._connect_timeout_sec = connect_timeout_sec
        self._connect_deadline_sec = connect_deadline_sec
        self._reconnect_wait_sec = reconnect_wait_sec
        self._connections: list[_NatsConnection] = []

    def run(self, coro: Coroutine[Any, Any, T], operation: str) -> T:
        """Run one broker coroutine to completion on the private loop.

        Raises:
            BrokerError: If the coroutine fails with a nats or OS error.
        """
        try:
            return self._loop.run_until_complete(coro)
        except (nats.errors.Error, OSError, asyncio.TimeoutError) as exc:
            raise BrokerError(f"{operation} failed: {type(exc).__name__}: {exc}") from exc

    async def _disconnected(self) -> None:
        logger.debug("broker_disconnected")

    async def _error(self, exc: Exception) -> None:
        logger.debug("broker_client_error", error=str(exc))

    def connect(self, address: str) -> BrokerConnection:
        # Unlimited reconnects also make the *initial* connect retry forever,
        # so the first connect is bounded by an overall deadline.
        pending = nats.connect(
            servers=[f"nats://{address}"],
            connect_timeout=self._connect_timeout_sec,
            allow_reconnect=True,
            max_reconnect_attempts=-1,
            reconnect_time_wait=self._reconnect_wait_sec,
            disconnected_cb=self._disconnected,
            error_cb=self._error,
        )
        client = self.run(
            asyncio.wait_for(pending, timeout=self._connect_deadline_sec),
            f"connect to {address}",
        )
        connection = _NatsConnection(self, client, address)
        self._connections.append(connection)
        return connection

    def close(self) -> None:
        if self._loop.is_closed():
            return
        try:
            for connection in self._connections:
                try:
                    connection.close()
                except BrokerError as exc:
                    logger.warning("connection_close_failed", address=connection.address, error=str(exc))
            self._connections.clear()
        finally:
            self._loop.close()
