"""
Tests for the broker gateways.
"""

import json
import threading
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from translation_backend.broker import BrokerGateway, MemoryBroker, RedisBroker, connect_broker, memory_broker
from translation_backend.errors import BrokerUnavailableError

QUEUE = "translation_requests"


class TestMemoryBroker:
    def test_messages_are_delivered_in_order(self, broker):
        broker.publish(QUEUE, {"requestId": "1"})
        broker.publish(QUEUE, {"requestId": "2"})

        first = broker.fetch(QUEUE, timeout=0.01)
        first.ack()
        second = broker.fetch(QUEUE, timeout=0.01)
        second.ack()

        assert json.loads(first.body)["requestId"] == "1"
        assert json.loads(second.body)["requestId"] == "2"
        assert broker.fetch(QUEUE, timeout=0.01) is None

    def test_ack_is_idempotent(self, broker):
        broker.publish(QUEUE, {"requestId": "1"})
        delivery = broker.fetch(QUEUE, timeout=0.01)
        delivery.ack()
        delivery.ack()
        assert delivery.acknowledged is True
        assert broker.unacked(QUEUE) == 0

    def test_unavailable_broker_raises(self, broker):
        broker.set_available(False)
        with pytest.raises(BrokerUnavailableError):
            broker.publish(QUEUE, {"requestId": "1"})
        with pytest.raises(BrokerUnavailableError):
            broker.fetch(QUEUE, timeout=0.01)

    def test_consume_stops_when_a_message_is_left_unacknowledged(self, broker):
        """With a prefetch of one, an unacknowledged delivery blocks further consumption."""
        broker.publish(QUEUE, {"requestId": "1"})
        broker.publish(QUEUE, {"requestId": "2"})
        seen = []

        broker.consume(QUEUE, seen.append, threading.Event(), timeout=0.01)

        assert len(seen) == 1
        assert broker.unacked(QUEUE) == 1
        assert broker.pending(QUEUE) == 1

    def test_consume_runs_until_stopped(self, broker):
        stop_event = threading.Event()
        seen = []

        def handler(delivery):
            seen.append(json.loads(delivery.body)["requestId"])
            delivery.ack()
            if len(seen) == 2:
                stop_event.set()

        broker.publish(QUEUE, {"requestId": "1"})
        broker.publish(QUEUE, {"requestId": "2"})
        broker.consume(QUEUE, handler, stop_event, timeout=0.01)

        assert seen == ["1", "2"]

    def test_connect_broker_shares_memory_broker_per_url(self):
        assert connect_broker("memory://shared") is memory_broker("memory://shared")
        assert connect_broker("memory://shared") is not connect_broker("memory://other")

    def test_connect_broker_fails_while_unavailable(self):
        memory_broker("memory://down").set_available(False)
        try:
            with pytest.raises(BrokerUnavailableError):
                connect_broker("memory://down")
        finally:
            memory_broker("memory://down").set_available(True)


class TestRedisBroker:
    @pytest.fixture
    def client(self):
        return MagicMock()

    @pytest.fixture
    def redis_broker(self, client):
        return RedisBroker(client, consumer_name="worker-7")

    def test_publish_pushes_json(self, redis_broker, client):
        redis_broker.publish(QUEUE, {"requestId": "1", "text": "hello", "targetLanguage": "fr"})

        queue, body = client.lpush.call_args.args
        assert queue == QUEUE
        assert json.loads(body) == {"requestId": "1", "text": "hello", "targetLanguage": "fr"}

    def test_fetch_moves_message_to_processing_list_and_ack_removes_it(self, redis_broker, client):
        client.blmove.return_value = b'{"requestId": "1"}'

        delivery = redis_broker.fetch(QUEUE, timeout=2)

        client.blmove.assert_called_once_with(QUEUE, f"{QUEUE}:processing:worker-7", 2, "RIGHT", "LEFT")
        delivery.ack()
        client.lrem.assert_called_once_with(f"{QUEUE}:processing:worker-7", 1, b'{"requestId": "1"}')

    def test_fetch_timeout_returns_none(self, redis_broker, client):
        client.blmove.return_value = None
        assert redis_broker.fetch(QUEUE) is None

    def test_declare_queue_requeues_unacknowledged_messages_once(self, redis_broker, client):
        client.lmove.side_effect = [b"a", b"b", None]

        redis_broker.declare_queue(QUEUE)
        redis_broker.declare_queue(QUEUE)

        assert client.lmove.call_count == 3
        client.lmove.assert_called_with(f"{QUEUE}:processing:worker-7", QUEUE, "RIGHT", "RIGHT")

    @pytest.mark.parametrize("method, args", [("lpush", ("publish", QUEUE, {})), ("blmove", ("fetch", QUEUE))])
    def test_connection_errors_become_broker_unavailable(self, redis_broker, client, method, args):
        getattr(client, method).side_effect = RedisConnectionError("connection refused")
        operation, *rest = args
        with pytest.raises(BrokerUnavailableError):
            getattr(redis_broker, operation)(*rest)

    def test_ping_failure_is_broker_unavailable(self, redis_broker, client):
        client.ping.side_effect = RedisConnectionError("connection refused")
        with pytest.raises(BrokerUnavailableError):
            redis_broker.ping()

    def test_from_url_verifies_connection(self, monkeypatch):
        client = MagicMock()
        client.ping.side_effect = RedisConnectionError("connection refused")
        monkeypatch.setattr("translation_backend.broker.redis.from_url", lambda url, **kwargs: client)

        with pytest.raises(BrokerUnavailableError):
            RedisBroker.from_url("redis://localhost:6379/0")

    def test_from_url_sets_socket_timeout_above_poll_timeout(self, monkeypatch):
        """A half-open connection times out instead of blocking BLMOVE forever."""
        captured = {}

        def fake_from_url(url, **kwargs):
            captured.update(kwargs)
            return MagicMock()

        monkeypatch.setattr("translation_backend.broker.redis.from_url", fake_from_url)
        RedisBroker.from_url("redis://localhost:6379/0", poll_timeout=2.0)

        assert captured["socket_timeout"] > 2.0
        assert captured["socket_connect_timeout"] > 0
        assert captured["health_check_interval"] > 0


class TestGatewayInterface:
    def test_gateway_is_abstract(self):
        with pytest.raises(TypeError):
            BrokerGateway()
