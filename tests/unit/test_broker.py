# tests/unit/test_broker.py
"""Unit tests for the nats-py adapter.

The nats client, JetStream context, pull subscription and messages are
AsyncMock stand-ins; a real NatsBroker runs them on its private event loop,
so error translation and loop ownership are exercised without a server.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import nats
import nats.errors
import nats.js.errors
import pytest
from nats.js.api import RetentionPolicy
from structlog.testing import capture_logs

from streamchaos.broker import (
    BrokerConnection,
    DurableSubscription,
    NatsBroker,
    StreamMessage,
    _NatsConnection,
    _NatsSubscription,
)
from streamchaos.errors import BrokerError


@pytest.fixture
def broker() -> Iterator[NatsBroker]:
    instance = NatsBroker(connect_deadline_sec=0.2)
    yield instance
    instance.close()


def _client() -> MagicMock:
    """A nats client whose coroutine methods and JetStream context are AsyncMocks."""
    client = MagicMock()
    client.is_closed = False
    client.publish = AsyncMock()
    client.flush = AsyncMock()
    client.close = AsyncMock()
    js = MagicMock()
    js.add_stream = AsyncMock()
    js.delete_stream = AsyncMock(return_value=True)
    js.pull_subscribe = AsyncMock()
    client.jetstream.return_value = js
    return client


def _message(sequence: int, data: bytes) -> MagicMock:
    message = MagicMock()
    message.metadata.sequence.stream = sequence
    message.data = data
    message.ack = AsyncMock()
    return message


def _subscription(broker: NatsBroker, **fetch: Any) -> tuple[_NatsSubscription, AsyncMock]:
    pull = MagicMock()
    pull.fetch = AsyncMock(**fetch)
    return _NatsSubscription(broker, pull, "consumer_0"), pull.fetch


# =============================================================================
# Error translation
# =============================================================================


class TestRun:
    """NatsBroker.run maps transport failures to BrokerError."""

    @pytest.mark.parametrize(
        "error",
        [
            nats.errors.ConnectionClosedError(),
            nats.errors.NoServersError(),
            OSError("connection refused"),
            asyncio.TimeoutError(),
        ],
        ids=["nats", "no-servers", "os", "asyncio-timeout"],
    )
    def test_transport_errors_become_broker_error(self, broker: NatsBroker, error: Exception) -> None:
        failing = AsyncMock(side_effect=error)
        with pytest.raises(BrokerError, match="publish to s failed") as exc_info:
            broker.run(failing(), "publish to s")
        assert exc_info.value.__cause__ is error

    def test_other_errors_propagate(self, broker: NatsBroker) -> None:
        failing = AsyncMock(side_effect=ValueError("bug"))
        with pytest.raises(ValueError, match="bug"):
            broker.run(failing(), "anything")

    def test_returns_result(self, broker: NatsBroker) -> None:
        assert broker.run(AsyncMock(return_value=42)(), "answer") == 42


# =============================================================================
# Consume
# =============================================================================


class TestFetch:
    """_NatsSubscription.fetch_one: one message, acked, or None on timeout."""

    def test_message_returned_and_acked(self, broker: NatsBroker) -> None:
        message = _message(7, b"\x01\x00\x00\x00\x00\x00\x00\x00")
        subscription, fetch = _subscription(broker, return_value=[message])

        assert subscription.fetch_one(0.01) == StreamMessage(sequence=7, body=b"\x01" + b"\x00" * 7)
        fetch.assert_awaited_once_with(1, timeout=0.01)
        message.ack.assert_awaited_once()

    def test_timeout_is_none(self, broker: NatsBroker) -> None:
        subscription, _ = _subscription(broker, side_effect=nats.errors.TimeoutError())
        assert subscription.fetch_one(0.01) is None

    def test_transport_failure_is_broker_error(self, broker: NatsBroker) -> None:
        subscription, _ = _subscription(broker, side_effect=nats.errors.ConnectionClosedError())
        with pytest.raises(BrokerError, match="fetch from consumer_0"):
            subscription.fetch_one(0.01)

    def test_failed_ack_still_observed(self, broker: NatsBroker) -> None:
        """An unacked message is redelivered at the same sequence, so the read stands."""
        message = _message(3, b"payload!")
        message.ack.side_effect = nats.errors.ConnectionClosedError()
        subscription, _ = _subscription(broker, return_value=[message])

        with capture_logs() as logs:
            assert subscription.fetch_one(0.01) == StreamMessage(sequence=3, body=b"payload!")
        assert any(entry["event"] == "ack_failed" and entry["sequence"] == 3 for entry in logs)

    def test_satisfies_protocol(self, broker: NatsBroker) -> None:
        subscription, _ = _subscription(broker)
        assert isinstance(subscription, DurableSubscription)


# =============================================================================
# Stream management and publish
# =============================================================================


class TestConnection:
    """_NatsConnection translates the five operations to JetStream calls."""

    def test_delete_existing(self, broker: NatsBroker) -> None:
        client = _client()
        connection = _NatsConnection(broker, client, "127.0.0.1:44000")
        assert connection.delete_stream("exercise_stream") is True
        client.jetstream.return_value.delete_stream.assert_awaited_once_with("exercise_stream")

    def test_delete_missing_is_false(self, broker: NatsBroker) -> None:
        client = _client()
        client.jetstream.return_value.delete_stream.side_effect = nats.js.errors.NotFoundError()
        connection = _NatsConnection(broker, client, "127.0.0.1:44000")
        assert connection.delete_stream("exercise_stream") is False

    def test_create_stream_config(self, broker: NatsBroker) -> None:
        client = _client()
        connection = _NatsConnection(broker, client, "127.0.0.1:44000")
        connection.create_stream("exercise_stream", replicas=3)

        config = client.jetstream.return_value.add_stream.await_args.args[0]
        assert config.name == "exercise_stream"
        assert config.subjects == ["exercise_stream"]
        assert config.num_replicas == 3
        assert config.retention is RetentionPolicy.LIMITS

    def test_create_stream_failure_is_broker_error(self, broker: NatsBroker) -> None:
        client = _client()
        client.jetstream.return_value.add_stream.side_effect = nats.errors.NoRespondersError()
        connection = _NatsConnection(broker, client, "127.0.0.1:44000")
        with pytest.raises(BrokerError, match="create stream exercise_stream"):
            connection.create_stream("exercise_stream", replicas=1)

    def test_durable_consumer(self, broker: NatsBroker) -> None:
        client = _client()
        connection = _NatsConnection(broker, client, "127.0.0.1:44000")
        subscription = connection.create_durable_consumer("exercise_stream", "client_2_consumer")

        client.jetstream.return_value.pull_subscribe.assert_awaited_once_with(
            "exercise_stream", durable="client_2_consumer", stream="exercise_stream"
        )
        assert isinstance(subscription, _NatsSubscription)

    def test_publish_flushes_with_timeout(self, broker: NatsBroker) -> None:
        client = _client()
        connection = _NatsConnection(broker, client, "127.0.0.1:44000")
        connection.publish("exercise_stream", b"12345678", timeout=0.5)

        client.publish.assert_awaited_once_with("exercise_stream", b"12345678")
        client.flush.assert_awaited_once_with(timeout=0.5)

    def test_publish_flush_timeout_is_broker_error(self, broker: NatsBroker) -> None:
        client = _client()
        client.flush.side_effect = nats.errors.TimeoutError()
        connection = _NatsConnection(broker, client, "127.0.0.1:44000")
        with pytest.raises(BrokerError, match="publish to exercise_stream"):
            connection.publish("exercise_stream", b"12345678", timeout=0.5)

    def test_close_skips_closed_client(self, broker: NatsBroker) -> None:
        client = _client()
        client.is_closed = True
        _NatsConnection(broker, client, "127.0.0.1:44000").close()
        client.close.assert_not_awaited()

    def test_satisfies_protocol(self, broker: NatsBroker) -> None:
        assert isinstance(_NatsConnection(broker, _client(), "127.0.0.1:44000"), BrokerConnection)


# =============================================================================
# Connect and teardown
# =============================================================================


class TestNatsBroker:
    """Connection bookkeeping and loop ownership."""

    def test_connect_uses_unlimited_reconnects(self, broker: NatsBroker, monkeypatch: pytest.MonkeyPatch) -> None:
        client = _client()
        connect = AsyncMock(return_value=client)
        monkeypatch.setattr(nats, "connect", connect)

        connection = broker.connect("127.0.0.1:44001")

        assert connection.address == "127.0.0.1:44001"  # type: ignore[attr-defined]
        kwargs = connect.await_args.kwargs
        assert kwargs["servers"] == ["nats://127.0.0.1:44001"]
        assert kwargs["max_reconnect_attempts"] == -1
        assert kwargs["allow_reconnect"] is True

    def test_connect_refused_is_broker_error(self, broker: NatsBroker, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(nats, "connect", AsyncMock(side_effect=OSError("connection refused")))
        with pytest.raises(BrokerError, match="connect to 127.0.0.1:1"):
            broker.connect("127.0.0.1:1")

    def test_connect_bounded_by_deadline(self, broker: NatsBroker, monkeypatch: pytest.MonkeyPatch) -> None:
        """A connect that keeps retrying is cut off by connect_deadline_sec."""

        async def _never(**kwargs: object) -> None:
            await asyncio.sleep(30)

        monkeypatch.setattr(nats, "connect", _never)
        with pytest.raises(BrokerError, match="TimeoutError"):
            broker.connect("127.0.0.1:44002")

    def test_close_closes_connections_and_loop(self, monkeypatch: pytest.MonkeyPatch) -> None:
        client = _client()
        monkeypatch.setattr(nats, "connect", AsyncMock(return_value=client))
        broker = NatsBroker()
        broker.connect("127.0.0.1:44000")

        broker.close()

        client.close.assert_awaited_once()
        assert broker._loop.is_closed()

    def test_close_failure_logged_and_loop_closed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        client = _client()
        client.close.side_effect = nats.errors.ConnectionClosedError()
        monkeypatch.setattr(nats, "connect", AsyncMock(return_value=client))
        broker = NatsBroker()
        broker.connect("127.0.0.1:44000")

        with capture_logs() as logs:
            broker.close()

        assert broker._loop.is_closed()
        assert [entry["event"] for entry in logs] == ["connection_close_failed"]

    def test_close_is_idempotent(self) -> None:
        broker = NatsBroker()
        broker.close()
        broker.close()
        assert broker._loop.is_closed()
