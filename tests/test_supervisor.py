"""
Tests for broker connection ownership and reconnection.
"""

import threading
import time

import pytest

from translation_backend.broker import MemoryBroker
from translation_backend.errors import BrokerUnavailableError
from translation_backend.supervisor import ReconnectionSupervisor


class FlakyConnector:
    """Fails a fixed number of times before returning connections."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0
        self.call_times = []

    def __call__(self):
        self.calls += 1
        self.call_times.append(time.monotonic())
        if self.calls <= self.failures:
            raise BrokerUnavailableError("connection refused")
        return MemoryBroker()


class TestAcquire:
    def test_retries_at_fixed_interval_until_connected(self):
        connector = FlakyConnector(failures=3)
        supervisor = ReconnectionSupervisor(connector, interval=0.02)

        connection = supervisor.acquire()

        assert connection is not None
        assert supervisor.connection is connection
        assert connector.calls == 4
        gaps = [later - earlier for earlier, later in zip(connector.call_times, connector.call_times[1:])]
        assert all(gap >= 0.015 for gap in gaps)

    def test_returns_existing_connection_without_reconnecting(self):
        connector = FlakyConnector(failures=0)
        supervisor = ReconnectionSupervisor(connector, interval=0.01)

        first = supervisor.acquire()
        assert supervisor.acquire() is first
        assert connector.calls == 1

    def test_gives_up_only_when_stopped(self):
        connector = FlakyConnector(failures=10**6)
        supervisor = ReconnectionSupervisor(connector, interval=0.01)
        stop_event = threading.Event()
        threading.Timer(0.05, stop_event.set).start()

        assert supervisor.acquire(stop_event) is None
        assert connector.calls > 1


class TestInvalidate:
    def test_invalidate_drops_connection(self):
        supervisor = ReconnectionSupervisor(FlakyConnector(failures=0), interval=0.01)
        connection = supervisor.acquire()

        supervisor.invalidate(connection)

        assert supervisor.connection is None
        assert supervisor.acquire() is not connection

    def test_stale_handle_does_not_drop_newer_connection(self):
        supervisor = ReconnectionSupervisor(FlakyConnector(failures=0), interval=0.01)
        old = supervisor.acquire()
        supervisor.invalidate(old)
        new = supervisor.acquire()

        supervisor.invalidate(old)

        assert supervisor.connection is new


class TestRun:
    def test_task_is_rerun_after_connection_loss(self):
        connector = FlakyConnector(failures=0)
        supervisor = ReconnectionSupervisor(connector, interval=0.01)
        stop_event = threading.Event()
        connections = []

        def task(connection):
            connections.append(connection)
            if len(connections) < 3:
                raise BrokerUnavailableError("connection reset")
            stop_event.set()

        supervisor.run(task, stop_event)

        assert len(connections) == 3
        assert len(set(map(id, connections))) == 3
        assert connector.calls == 3

    def test_other_errors_propagate(self):
        supervisor = ReconnectionSupervisor(FlakyConnector(failures=0), interval=0.01)

        def task(connection):
            raise ValueError("bug")

        with pytest.raises(ValueError):
            supervisor.run(task, threading.Event())


class TestBackgroundReconnect:
    def wait_until(self, predicate, timeout=2.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.005)
        return predicate()

    def test_background_thread_connects_and_reconnects(self):
        connector = FlakyConnector(failures=2)
        supervisor = ReconnectionSupervisor(connector, interval=0.01)
        supervisor.start()
        try:
            assert self.wait_until(lambda: supervisor.connected)
            first = supervisor.connection

            supervisor.invalidate(first)
            assert self.wait_until(lambda: supervisor.connected)
            assert supervisor.connection is not first
        finally:
            supervisor.stop()

        assert supervisor.connection is None


class TestAttemptCounting:
    def test_attempts_are_counted_across_threads(self):
        """Concurrent failed attempts from several threads are all counted."""
        connector = FlakyConnector(failures=10**6)
        supervisor = ReconnectionSupervisor(connector, interval=0.01)

        def attempt_many():
            for _ in range(50):
                supervisor.try_connect()

        threads = [threading.Thread(target=attempt_many) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert supervisor.attempts == 200

    def test_attempts_reset_after_connecting(self):
        supervisor = ReconnectionSupervisor(FlakyConnector(failures=2), interval=0.01)
        supervisor.acquire()
        assert supervisor.attempts == 0
