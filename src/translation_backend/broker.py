"""
Broker gateway for the translation job queue.

The gateway exposes one durable queue with explicit acknowledgment and a
prefetch of one: a consumer fetches a single message and must acknowledge it
before the next one is fetched. Unacknowledged messages are delivered again.

Two implementations share these semantics:
- RedisBroker: production gateway using a reliable-queue pattern on Redis lists
- MemoryBroker: in-process gateway for local runs and tests (``memory://`` URLs)
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .errors import BrokerUnavailableError

logger = logging.getLogger(__name__)

MEMORY_SCHEME = "memory://"
SOCKET_CONNECT_TIMEOUT = 5.0
SOCKET_TIMEOUT_MARGIN = 5.0
HEALTH_CHECK_INTERVAL = 30


class Delivery:
    """A fetched message awaiting acknowledgment."""

    def __init__(self, body: bytes, ack: Callable[[], None], redelivered: bool = False) -> None:
        self.body = body
        self.redelivered = redelivered
        self._ack = ack
        self._acked = False

    @property
    def acknowledged(self) -> bool:
        return self._acked

    def ack(self) -> None:
        if self._acked:
            return
        self._ack()
        self._acked = True


Handler = Callable[[Delivery], None]


class BrokerGateway(ABC):
    """Interface shared by the broker implementations."""

    @abstractmethod
    def declare_queue(self, queue: str) -> None: ...

    @abstractmethod
    def publish(self, queue: str, payload: Dict[str, Any], persistent: bool = True) -> None: ...

    @abstractmethod
    def fetch(self, queue: str, timeout: float = 1.0) -> Optional[Delivery]: ...

    @abstractmethod
    def ping(self) -> bool: ...

    @abstractmethod
    def close(self) -> None: ...

    def consume(self, queue: str, handler: Handler, stop_event: threading.Event, timeout: float = 1.0) -> None:
        """
        Deliver messages to ``handler`` one at a time until ``stop_event`` is set.

        The handler is responsible for acknowledging. A delivery left
        unacknowledged stops consumption, since the prefetch window is full.

        Raises:
            BrokerUnavailableError: If the connection is lost
        """
        self.declare_queue(queue)
        while not stop_event.is_set():
            delivery = self.fetch(queue, timeout=timeout)
            if delivery is None:
                continue
            handler(delivery)
            if not delivery.acknowledged:
                logger.error(f"Handler left a message on {queue} unacknowledged; stopping consumption")
                return


def encode_payload(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


class RedisBroker(BrokerGateway):
    """
    Durable queue on Redis lists.

    ``publish`` pushes onto the queue list. ``fetch`` atomically moves the
    oldest message onto a per-consumer processing list, and ``ack`` removes it
    from there. Messages left on the processing list by a crashed consumer are
    moved back onto the queue by ``recover``, which runs when the queue is
    declared. Durability across broker restarts comes from the Redis server's
    append-only file, so every publish is persistent.
    """

    def __init__(self, client: redis.Redis, consumer_name: str = "worker-1") -> None:
        self._client = client
        self.consumer_name = consumer_name
        self._declared: set[str] = set()

    @classmethod
    def from_url(cls, url: str, consumer_name: str = "worker-1", poll_timeout: float = 1.0) -> RedisBroker:
        """
        Connect and verify the connection with PING.

        The socket timeout exceeds the BLMOVE poll timeout, so a half-open
        connection surfaces as BrokerUnavailableError instead of blocking forever.

        Raises:
            BrokerUnavailableError: If the server cannot be reached
        """
        client = redis.from_url(
            url,
            socket_connect_timeout=SOCKET_CONNECT_TIMEOUT,
            socket_timeout=poll_timeout + SOCKET_TIMEOUT_MARGIN,
            health_check_interval=HEALTH_CHECK_INTERVAL,
        )
        broker = cls(client, consumer_name=consumer_name)
        if not broker.ping():
            raise BrokerUnavailableError(f"Broker at {url} did not answer PING")
        return broker

    def processing_list(self, queue: str) -> str:
        return f"{queue}:processing:{self.consumer_name}"

    def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise BrokerUnavailableError(f"Broker {operation} failed: {exc}") from exc

    def declare_queue(self, queue: str) -> None:
        if queue in self._declared:
            return
        self.recover(queue)
        self._declared.add(queue)

    def recover(self, queue: str) -> int:
        """Move messages this consumer never acknowledged back onto the queue."""
        processing = self.processing_list(queue)
        recovered = 0
        while self._call("recover", self._client.lmove, processing, queue, "RIGHT", "RIGHT") is not None:
            recovered += 1
        if recovered:
            logger.warning(f"Requeued {recovered} unacknowledged message(s) from {processing}")
        return recovered

    def publish(self, queue: str, payload: Dict[str, Any], persistent: bool = True) -> None:
        self._call("publish", self._client.lpush, queue, encode_payload(payload))

    def fetch(self, queue: str, timeout: float = 1.0) -> Optional[Delivery]:
        processing = self.processing_list(queue)
        body = self._call("fetch", self._client.blmove, queue, processing, timeout, "RIGHT", "LEFT")
        if body is None:
            return None

        def ack() -> None:
            self._call("ack", self._client.lrem, processing, 1, body)

        return Delivery(body, ack)

    def ping(self) -> bool:
        return bool(self._call("ping", self._client.ping))

    def close(self) -> None:
        self._client.close()


class MemoryBroker(BrokerGateway):
    """
    In-process broker with the same delivery semantics as RedisBroker.

    Messages survive ``close`` (they belong to the broker, not the
    connection) so one instance can be shared by an API and a worker in
    tests. ``set_available(False)`` simulates an outage and
    ``requeue_unacked`` simulates a consumer crash.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[bytes]] = defaultdict(deque)
        self._unacked: Dict[str, List[bytes]] = defaultdict(list)
        self._redelivered: set[bytes] = set()
        self._lock = threading.Condition()
        self._available = True

    def set_available(self, available: bool) -> None:
        with self._lock:
            self._available = available
            self._lock.notify_all()

    def _check(self, operation: str) -> None:
        if not self._available:
            raise BrokerUnavailableError(f"Broker {operation} failed: broker unavailable")

    def declare_queue(self, queue: str) -> None:
        with self._lock:
            self._check("declare")
            self._queues.setdefault(queue, deque())

    def publish(self, queue: str, payload: Dict[str, Any], persistent: bool = True) -> None:
        self.publish_raw(queue, encode_payload(payload))

    def publish_raw(self, queue: str, body: bytes) -> None:
        with self._lock:
            self._check("publish")
            self._queues[queue].append(body)
            self._lock.notify_all()

    def fetch(self, queue: str, timeout: float = 1.0) -> Optional[Delivery]:
        with self._lock:
            self._check("fetch")
            if not self._queues[queue]:
                self._lock.wait(timeout)
                self._check("fetch")
                if not self._queues[queue]:
                    return None
            body = self._queues[queue].popleft()
            self._unacked[queue].append(body)
            redelivered = body in self._redelivered
            self._redelivered.discard(body)

        def ack() -> None:
            with self._lock:
                self._unacked[queue].remove(body)

        return Delivery(body, ack, redelivered=redelivered)

    def requeue_unacked(self, queue: str) -> int:
        """Put unacknowledged messages back at the head of the queue."""
        with self._lock:
            pending = self._unacked.pop(queue, [])
            for body in reversed(pending):
                self._queues[queue].appendleft(body)
                self._redelivered.add(body)
            self._lock.notify_all()
            return len(pending)

    def pending(self, queue: str) -> int:
        with self._lock:
            return len(self._queues[queue])

    def unacked(self, queue: str) -> int:
        with self._lock:
            return len(self._unacked[queue])

    def ping(self) -> bool:
        return self._available

    def close(self) -> None:
        pass


_memory_brokers: Dict[str, MemoryBroker] = {}
_memory_lock = threading.Lock()


def memory_broker(url: str = MEMORY_SCHEME) -> MemoryBroker:
    """Return the process-wide MemoryBroker registered under ``url``."""
    with _memory_lock:
        if url not in _memory_brokers:
            _memory_brokers[url] = MemoryBroker()
        return _memory_brokers[url]


def connect_broker(url: str, consumer_name: str = "worker-1", poll_timeout: float = 1.0) -> BrokerGateway:
    """
    Open a broker connection for ``url``.

    Raises:
        BrokerUnavailableError: If the broker cannot be reached
    """
    if url.startswith(MEMORY_SCHEME):
        broker = memory_broker(url)
        if not broker.ping():
            raise BrokerUnavailableError(f"Broker at {url} is unavailable")
        return broker
    return RedisBroker.from_url(url, consumer_name=consumer_name, poll_timeout=poll_timeout)
