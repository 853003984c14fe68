# src/streamchaos/clients.py
"""Simulated publisher/consumer clients.

Each client owns one connection to one server and one durable consumer on
the shared stream. Clients are bound to servers round-robin so that
subscriptions are spread across the cluster.

Publish and consume are best effort: a paused or restarting server makes
them fail or time out, and that is ordinary control flow here. The step
simply produces no observation and the next scheduled step tries again,
possibly through a different client.
"""

from __future__ import annotations

import random as random_module
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from types import TracebackType

from tenacity import Retrying, retry_if_exception_type, stop_after_delay, wait_fixed

from streamchaos.broker import Broker, BrokerConnection, DurableSubscription
from streamchaos.core.logging import get_logger
from streamchaos.errors import BrokerError, ClusterSetupError, MalformedPayload
from streamchaos.identity import decode_payload_id, encode_payload_id, next_payload_id

logger = get_logger(__name__)


@dataclass
class Consumer:
    """One simulated client.

    Attributes:
        index: Client identity, also used in the durable consumer name.
        server_index: Server the client's connection is bound to.
        connection: The client's own broker connection.
        subscription: Durable consumer on the shared stream.
        observed: stream sequence -> payload id read since the last drain.
    """

    index: int
    server_index: int
    connection: BrokerConnection
    subscription: DurableSubscription
    observed: dict[int, int] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return consumer_name(self.index)

    def drain(self) -> dict[int, int]:
        """Return and clear everything observed since the last drain."""
        observed = self.observed
        self.observed = {}
        return observed


def consumer_name(index: int) -> str:
    """Durable consumer name of client ``index``."""
    return f"consumer_{index}"


def _recreate_stream(broker: Broker, address: str, stream: str, replicas: int) -> BrokerConnection:
    admin = broker.connect(address)
    try:
        admin.delete_stream(stream)
        admin.create_stream(stream, replicas=replicas)
    except BrokerError:
        admin.close()
        raise
    return admin


def _bootstrap_stream(
    broker: Broker,
    address: str,
    stream: str,
    replicas: int,
    *,
    retry_sec: float,
) -> BrokerConnection:
    """Delete and recreate the shared stream, optionally retrying.

    Returns:
        The admin connection the stream was created through.
    """
    if retry_sec <= 0:
        return _recreate_stream(broker, address, stream, replicas)

    for attempt_state in Retrying(
        stop=stop_after_delay(retry_sec),
        wait=wait_fixed(1.0),
        retry=retry_if_exception_type(BrokerError),
        reraise=True,
    ):
        with attempt_state:
            attempt = attempt_state.retry_state.attempt_number
            if attempt > 1:
                logger.info("retrying_stream_creation", stream=stream, attempt=attempt)
            return _recreate_stream(broker, address, stream, replicas)

    # Should not reach here - Retrying always returns or raises
    raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover


class ClientPool:
    """Set of simulated clients sharing one durable stream.

    Use create() to bootstrap the stream and consumers; the pool is a
    context manager that closes every connection on exit.
    """

    def __init__(
        self,
        stream: str,
        consumers: Sequence[Consumer],
        *,
        admin: BrokerConnection | None = None,
        id_source: Callable[[], int] = next_payload_id,
    ) -> None:
        if not consumers:
            raise ValueError("a client pool needs at least one consumer")
        self._stream = stream
        self._consumers: tuple[Consumer, ...] = tuple(consumers)
        self._admin = admin
        self._id_source = id_source

    @classmethod
    def create(
        cls,
        broker: Broker,
        addresses: Sequence[str],
        *,
        stream: str,
        clients: int,
        replicas: int,
        id_source: Callable[[], int] = next_payload_id,
        setup_retry_sec: float = 0.0,
    ) -> ClientPool:
        """Recreate the shared stream and one durable consumer per client.

        The stream is deleted (if present) and recreated through the first
        server. Clients are bound to servers round-robin.

        Args:
            broker: Connection factory.
            addresses: host:port of every server, indexed by server index.
            stream: Stream name (also its subject).
            clients: Number of simulated clients.
            replicas: Replica count of the stream.
            id_source: Payload id generator.
            setup_retry_sec: If positive, keep retrying the admin connection
                and stream creation for this long (external clusters may
                still be forming). Zero means fail on the first error.

        Raises:
            ClusterSetupError: If the stream or a consumer cannot be created.
        """
        if not addresses:
            raise ValueError("at least one server address is required")

        logger.info("creating_stream", stream=stream, replicas=replicas)
        try:
            admin = _bootstrap_stream(broker, addresses[0], stream, replicas, retry_sec=setup_retry_sec)
        except BrokerError as exc:
            raise ClusterSetupError(f"couldn't create stream {stream}: {exc}") from exc

        consumers: list[Consumer] = []
        try:
            for index in range(clients):
                server_index = index % len(addresses)
                name = consumer_name(index)
                logger.info("creating_consumer", consumer=name, server=server_index)
                connection = broker.connect(addresses[server_index])
                subscription = connection.create_durable_consumer(stream, name)
                consumers.append(Consumer(index, server_index, connection, subscription))
        except BrokerError as exc:
            for consumer in consumers:
                consumer.connection.close()
            admin.close()
            raise ClusterSetupError(f"couldn't create consumer: {exc}") from exc

        return cls(stream, consumers, admin=admin, id_source=id_source)

    def __enter__(self) -> ClientPool:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def stream(self) -> str:
        return self._stream

    @property
    def consumers(self) -> tuple[Consumer, ...]:
        return self._consumers

    def __len__(self) -> int:
        return len(self._consumers)

    def consumer(self, index: int) -> Consumer:
        return self._consumers[index]

    def publish(self, rng: random_module.Random, *, timeout: float) -> int | None:
        """Publish the next payload id through a random client.

        Returns:
            The payload id, or None if the publish failed transiently.
        """
        consumer = rng.choice(self._consumers)
        payload_id = self._id_source()
        try:
            consumer.connection.publish(self._stream, encode_payload_id(payload_id), timeout=timeout)
        except BrokerError as exc:
            logger.debug("publish_failed", client=consumer.index, payload_id=payload_id, error=str(exc))
            return None
        logger.debug("published", client=consumer.index, payload_id=payload_id)
        return payload_id

    def consume(self, rng: random_module.Random, *, timeout: float) -> int | None:
        """Read at most one message through a random client.

        Returns:
            Index of the client that recorded an observation, or None when
            nothing was read (timeout or transient transport failure).
        """
        consumer = rng.choice(self._consumers)
        return self.consume_from(consumer.index, timeout=timeout)

    def consume_from(self, index: int, *, timeout: float) -> int | None:
        """Read at most one message through client ``index``.

        Raises:
            MalformedPayload: If the message body is not a payload id.
        """
        consumer = self._consumers[index]
        try:
            message = consumer.subscription.fetch_one(timeout)
        except BrokerError as exc:
            logger.debug("consume_failed", client=index, error=str(exc))
            return None
        if message is None:
            return None
        try:
            payload_id = decode_payload_id(message.body)
        except ValueError as exc:
            raise MalformedPayload(index, message.sequence, len(message.body)) from exc
        consumer.observed[message.sequence] = payload_id
        logger.debug("consumed", client=index, sequence=message.sequence, payload_id=payload_id)
        return index

    def drain(self, index: int) -> dict[int, int]:
        """Return and clear client ``index``'s pending observations."""
        return self._consumers[index].drain()

    def close(self) -> None:
        """Close every client connection."""
        for consumer in self._consumers:
            try:
                consumer.connection.close()
            except BrokerError as exc:
                logger.warning("client_close_failed", client=consumer.index, error=str(exc))
        if self._admin is not None:
            try:
                self._admin.close()
            except BrokerError as exc:
                logger.warning("admin_close_failed", error=str(exc))
            self._admin = None
