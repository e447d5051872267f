"""
Submission and lookup of translation jobs.

This module is the API side of the job lifecycle:
- Input validation
- Record creation in the status store (state ``queued``)
- Publishing the job message to the broker
- Status lookups for polling clients

Creating the record and publishing the message are two separate writes.
If publishing fails the caller gets an error and the record stays
``queued`` with no message behind it (an orphan job); it is logged, not
rolled back.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Dict, List, Optional
from uuid import uuid4

from redis.exceptions import RedisError

from .database import TranslationDatabase, utcnow
from .errors import (
    BrokerUnavailableError,
    DuplicateJobError,
    InternalServiceError,
    JobValidationError,
)
from .models import JobMessage, JobStatus, TranslationJob
from .supervisor import ReconnectionSupervisor
from .utils import clean_field, is_encodable

logger = logging.getLogger(__name__)


class JobManager:
    """
    Coordinator for the submission side of the job lifecycle.

    The manager never mutates a job after creating it; every later change
    is made by the worker.

    Attributes:
        database: Status store holding the authoritative job records
        supervisor: Owner of the broker connection used for publishing
        queue_name: Queue the job messages are published to
    """

    def __init__(
        self,
        database: TranslationDatabase,
        supervisor: ReconnectionSupervisor,
        queue_name: str,
    ) -> None:
        self.database = database
        self.supervisor = supervisor
        self.queue_name = queue_name

    def submit(self, text: Optional[str], target_language: Optional[str]) -> TranslationJob:
        """
        Validate a request, record it as queued and publish it for the worker.

        Args:
            text: Text to translate
            target_language: Target language code

        Returns:
            The created job record

        Raises:
            JobValidationError: If either field is missing, blank or not encodable; nothing is created
            InternalServiceError: If the record cannot be created, or the message
                cannot be published (the record then remains queued)
        """
        if not clean_field(text) or not clean_field(target_language):
            raise JobValidationError("text and targetLanguage are required")
        if not is_encodable(text) or not is_encodable(target_language):
            raise JobValidationError("text and targetLanguage must be valid Unicode text")

        now = utcnow()
        job = TranslationJob(
            request_id=str(uuid4()),
            status=JobStatus.QUEUED,
            original_text=text,
            target_language=target_language,
            created_at=now,
            updated_at=now,
        )

        try:
            self.database.create(job)
        except (DuplicateJobError, sqlite3.Error) as exc:
            logger.error(f"Could not create translation request {job.request_id}: {exc}")
            raise InternalServiceError("Could not record translation request") from exc

        self._publish(job)
        logger.info(f"Queued translation request {job.request_id} ({job.target_language})")
        return job

    def _publish(self, job: TranslationJob) -> None:
        connection = self.supervisor.connection
        if connection is None:
            logger.error(f"Broker disconnected; translation request {job.request_id} left queued without a message")
            raise InternalServiceError("Message broker unavailable")

        try:
            connection.publish(
                self.queue_name,
                JobMessage.from_job(job).model_dump(by_alias=True),
                persistent=True,
            )
        except BrokerUnavailableError as exc:
            self.supervisor.invalidate(connection)
            logger.error(f"Publishing translation request {job.request_id} failed, left queued without a message: {exc}")
            raise InternalServiceError("Message broker unavailable") from exc
        except RedisError as exc:
            logger.error(f"Broker rejected translation request {job.request_id}, left queued without a message: {exc}")
            raise InternalServiceError("Message broker rejected the request") from exc

    def get_job(self, request_id: str) -> Optional[TranslationJob]:
        """
        Look up a job by request id.

        Returns:
            The job record, or None if the id is unknown

        Raises:
            InternalServiceError: If the store cannot be read
        """
        try:
            return self.database.get(request_id)
        except sqlite3.Error as exc:
            logger.error(f"Could not read translation request {request_id}: {exc}")
            raise InternalServiceError("Could not read translation request") from exc

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[TranslationJob]:
        """
        List jobs newest first, optionally filtered by status.

        Listing ``queued`` jobs is how orphaned submissions are found.
        """
        try:
            return self.database.list_jobs(status=status, limit=limit)
        except sqlite3.Error as exc:
            logger.error(f"Could not list translation requests: {exc}")
            raise InternalServiceError("Could not list translation requests") from exc

    def count_jobs(self) -> Dict[str, int]:
        try:
            return self.database.count_by_status()
        except sqlite3.Error as exc:
            logger.error(f"Could not count translation requests: {exc}")
            raise InternalServiceError("Could not count translation requests") from exc
