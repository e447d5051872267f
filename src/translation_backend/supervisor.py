"""
Connection ownership and reconnection for broker users.

The supervisor holds the only reference to the live broker connection. The
API reads it through ``connection`` and reports broken handles with
``invalidate``; a background thread then reconnects. The worker runs its
consume loop through ``run``, which reconnects after every connection loss.
Retries use a fixed interval and never give up.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from .broker import BrokerGateway, connect_broker
from .configuration import Settings
from .errors import BrokerUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_INTERVAL = 5.0


class ReconnectionSupervisor:
    def __init__(
        self,
        connect: Callable[[], BrokerGateway],
        interval: float = DEFAULT_RECONNECT_INTERVAL,
        name: str = "broker",
    ) -> None:
        self._connect = connect
        self.interval = interval
        self.name = name
        self._connection: Optional[BrokerGateway] = None
        self._lock = threading.Lock()
        self._lost = threading.Event()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.attempts = 0

    @property
    def connection(self) -> Optional[BrokerGateway]:
        """The live connection, or None while disconnected."""
        with self._lock:
            return self._connection

    @property
    def connected(self) -> bool:
        return self.connection is not None

    def try_connect(self) -> Optional[BrokerGateway]:
        """Make one connection attempt; return the connection or None."""
        with self._lock:
            self.attempts += 1
            attempt = self.attempts
        try:
            connection = self._connect()
        except BrokerUnavailableError as exc:
            logger.warning(
                f"Connecting to {self.name} failed (attempt {attempt}): {exc}; "
                f"retrying in {self.interval:g}s"
            )
            return None

        with self._lock:
            self._connection = connection
            self.attempts = 0
        self._lost.clear()
        logger.info(f"Connected to {self.name} after {attempt} attempt(s)")
        return connection

    def acquire(self, stop_event: Optional[threading.Event] = None) -> Optional[BrokerGateway]:
        """
        Return the live connection, connecting first if needed.

        Blocks, retrying every ``interval`` seconds, until a connection is
        made or ``stop_event`` (or ``stop``) is set, in which case None is returned.
        """
        stop_event = stop_event or self._stopped
        while not stop_event.is_set() and not self._stopped.is_set():
            connection = self.connection or self.try_connect()
            if connection is not None:
                return connection
            stop_event.wait(self.interval)
        return None

    def invalidate(self, connection: Optional[BrokerGateway] = None) -> None:
        """
        Drop a broken connection so the next user reconnects.

        Passing the handle that failed avoids discarding a newer connection
        made by another thread in the meantime.
        """
        with self._lock:
            if self._connection is None or (connection is not None and connection is not self._connection):
                return
            broken, self._connection = self._connection, None

        logger.warning(f"Lost connection to {self.name}; reconnecting")
        try:
            broken.close()
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"Ignoring error while closing broken {self.name} connection: {exc}")
        self._lost.set()

    def run(self, task: Callable[[BrokerGateway], None], stop_event: threading.Event) -> None:
        """
        Run ``task`` with a live connection until ``stop_event`` is set.

        Connection-level failures are the only ones retried; any other
        exception from ``task`` propagates.
        """
        while not stop_event.is_set():
            connection = self.acquire(stop_event)
            if connection is None:
                break
            try:
                task(connection)
            except BrokerUnavailableError as exc:
                logger.error(f"{self.name} connection failed: {exc}")
                self.invalidate(connection)
                stop_event.wait(self.interval)

    def start(self) -> None:
        """Start the background reconnect thread used by the API process."""
        if self._thread is not None:
            return
        self._stopped.clear()
        self._lost.set()
        self._thread = threading.Thread(target=self._watch, name=f"{self.name}-supervisor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stopped.set()
        self._lost.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1)
            self._thread = None
        with self._lock:
            connection, self._connection = self._connection, None
        if connection is not None:
            connection.close()

    def _watch(self) -> None:
        while not self._stopped.is_set():
            self._lost.wait()
            if self._stopped.is_set():
                break
            if self.connection is None and self.try_connect() is None:
                self._stopped.wait(self.interval)


def build_supervisor(settings: Settings) -> ReconnectionSupervisor:
    broker = settings.broker
    return ReconnectionSupervisor(
        connect=lambda: connect_broker(
            broker.url, consumer_name=broker.consumer_name, poll_timeout=broker.poll_timeout
        ),
        interval=broker.reconnect_interval,
    )
