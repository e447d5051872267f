"""
Background worker that processes queued translation jobs.

Each message moves its job through ``queued -> processing -> completed|failed``.
The move into ``processing`` is a conditional update, so a redelivered
message whose job has already left ``queued`` is acknowledged without
translating again. Every outcome (success, failure, unknown id, malformed
payload) is acknowledged; failures are recorded on the job instead of being
retried. Only a lost broker connection escapes ``handle``, leaving the
message unacknowledged for redelivery after reconnecting.

Usage:
    translation-worker
"""

from __future__ import annotations

import logging
import signal
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .broker import BrokerGateway, Delivery
from .configuration import Settings, get_settings, sqlite_path
from .database import TranslationDatabase
from .errors import JobNotFoundError, MessageFormatError
from .models import JobMessage, JobStatus
from .supervisor import ReconnectionSupervisor, build_supervisor
from .translator import Translator, build_translator
from .utils import configure_logging

logger = logging.getLogger(__name__)

# reason, raw message body, detail
DiscardHook = Callable[[str, bytes, str], None]


@dataclass
class WorkerStats:
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    discarded: int = 0


class TranslationWorker:
    """
    Consumes job messages one at a time and drives the job state machine.

    Attributes:
        database: Status store with the authoritative job records
        translator: Translation backend
        queue_name: Queue to consume from
        on_discard: Optional callback for dropped messages (malformed or unknown id)
    """

    def __init__(
        self,
        database: TranslationDatabase,
        translator: Translator,
        queue_name: str,
        on_discard: Optional[DiscardHook] = None,
        poll_timeout: float = 1.0,
    ) -> None:
        self.database = database
        self.translator = translator
        self.queue_name = queue_name
        self.on_discard = on_discard
        self.poll_timeout = poll_timeout
        self.stats = WorkerStats()

    def handle(self, delivery: Delivery) -> None:
        """
        Process one delivery and acknowledge it.

        Raises:
            BrokerUnavailableError: If the acknowledgment cannot reach the broker
        """
        try:
            self._process(delivery.body)
        finally:
            delivery.ack()

    def _process(self, body: bytes) -> None:
        try:
            message = JobMessage.decode(body)
        except MessageFormatError as exc:
            logger.error(f"Discarding malformed message: {exc}")
            self._discard("malformed", body, str(exc))
            return

        request_id = message.request_id
        try:
            job = self.database.get(request_id)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Could not load translation request {request_id}: {exc}")
            self._mark_failed(request_id)
            return

        if job is None:
            logger.error(f"Translation request {request_id} not found; discarding message")
            self._discard("not_found", body, request_id)
            return

        if job.status != JobStatus.QUEUED:
            logger.info(f"Translation request {request_id} is already {job.status.value}; skipping redelivery")
            self.stats.skipped += 1
            return

        try:
            claimed = self.database.update(request_id, JobStatus.PROCESSING, expected_status=JobStatus.QUEUED)
        except JobNotFoundError:
            logger.error(f"Translation request {request_id} vanished before processing; discarding message")
            self._discard("not_found", body, request_id)
            return
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Could not mark translation request {request_id} as processing: {exc}")
            self._mark_failed(request_id)
            return

        if not claimed:
            logger.info(f"Translation request {request_id} was claimed by another delivery; skipping")
            self.stats.skipped += 1
            return

        try:
            translated_text = self.translator.translate(job.original_text, job.target_language)
            completed = self.database.update(
                request_id,
                JobStatus.COMPLETED,
                translated_text=translated_text,
                expected_status=JobStatus.PROCESSING,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Translation request {request_id} failed: {exc}")
            self._mark_failed(request_id)
            return

        if completed:
            self.stats.completed += 1
            logger.info(f"Processed translation request {request_id}")
        else:
            logger.warning(f"Translation request {request_id} changed state while translating; result dropped")
            self.stats.skipped += 1

    def _mark_failed(self, request_id: str) -> None:
        """Best-effort move to ``failed``; terminal jobs are left untouched."""
        self.stats.failed += 1
        try:
            self.database.update(request_id, JobStatus.FAILED)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Could not mark translation request {request_id} as failed: {exc}")

    def _discard(self, reason: str, body: bytes, detail: str) -> None:
        self.stats.discarded += 1
        if self.on_discard is None:
            return
        try:
            self.on_discard(reason, body, detail)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Discard hook failed for {reason} message: {exc}")

    def run_once(self, connection: BrokerGateway) -> bool:
        """Fetch and handle at most one message. Returns True if one was handled."""
        delivery = connection.fetch(self.queue_name, timeout=self.poll_timeout)
        if delivery is None:
            return False
        self.handle(delivery)
        return True

    def run(self, supervisor: ReconnectionSupervisor, stop_event: threading.Event) -> None:
        """Consume until ``stop_event`` is set, reconnecting whenever the broker is lost."""
        logger.info(f"Waiting for translation requests on {self.queue_name}")
        supervisor.run(
            lambda connection: connection.consume(self.queue_name, self.handle, stop_event, timeout=self.poll_timeout),
            stop_event,
        )
        logger.info(f"Worker stopped: {self.stats}")


def build_worker(settings: Settings) -> TranslationWorker:
    return TranslationWorker(
        database=TranslationDatabase(sqlite_path(settings.store.url)),
        translator=build_translator(settings.translator.backend),
        queue_name=settings.broker.queue_name,
        poll_timeout=settings.broker.poll_timeout,
    )


def main() -> None:
    settings = get_settings()
    configure_logging(settings.logging.level)

    worker = build_worker(settings)
    supervisor = build_supervisor(settings)
    stop_event = threading.Event()

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}; finishing current message")
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    worker.run(supervisor, stop_event)
    supervisor.stop()


if __name__ == "__main__":
    main()
