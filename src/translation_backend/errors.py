"""
Exception hierarchy for the translation job pipeline.

Submission errors are raised synchronously to the HTTP layer. Processing
errors are absorbed by the worker into the job status; only
BrokerUnavailableError escapes it so the connection can be re-established.
"""

from __future__ import annotations


class TranslationServiceError(Exception):
    """Base class for all errors raised by the translation backend."""


class JobValidationError(TranslationServiceError):
    """Submission input is missing or empty. Nothing was created or published."""


class DuplicateJobError(TranslationServiceError):
    """A record with the same request id already exists."""

    def __init__(self, request_id: str) -> None:
        super().__init__(f"Translation request {request_id} already exists")
        self.request_id = request_id


class JobNotFoundError(TranslationServiceError):
    """The record for a request id does not exist."""

    def __init__(self, request_id: str) -> None:
        super().__init__(f"Translation request {request_id} not found")
        self.request_id = request_id


class InvalidTransitionError(TranslationServiceError):
    """A status change would move a job backwards or out of a terminal state."""


class InternalServiceError(TranslationServiceError):
    """The store or the broker failed while serving a request."""


class MessageFormatError(TranslationServiceError):
    """A queue payload could not be decoded into a job message."""


class BrokerUnavailableError(TranslationServiceError):
    """The broker connection is missing or was lost."""
