from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import MessageFormatError


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# queued -> failed covers a worker that could not persist "processing"
# but still records the failure.
ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def is_terminal(status: JobStatus) -> bool:
    return not ALLOWED_TRANSITIONS[status]


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass
class TranslationJob:
    """
    Persisted lifecycle record of one translation request.

    Attributes:
        request_id: Unique identifier shared by the HTTP response, the store and the queue message
        status: Current lifecycle state
        original_text: Text submitted for translation
        target_language: Requested target language code
        translated_text: Result, present only once the job is completed
        created_at: Creation timestamp (UTC)
        updated_at: Timestamp of the last mutation (UTC)
    """

    request_id: str
    status: JobStatus
    original_text: str
    target_language: str
    created_at: datetime
    updated_at: datetime
    translated_text: Optional[str] = None

    def to_detail(self) -> TranslationDetail:
        return TranslationDetail(
            requestId=self.request_id,
            status=self.status,
            originalText=self.original_text,
            translatedText=self.translated_text,
            targetLanguage=self.target_language,
            createdAt=self.created_at,
            updatedAt=self.updated_at,
        )


class TranslationCreate(BaseModel):
    text: Optional[str] = None
    targetLanguage: Optional[str] = None


class TranslationAccepted(BaseModel):
    message: str
    requestId: str
    status: JobStatus


class TranslationDetail(BaseModel):
    requestId: str
    status: JobStatus
    originalText: str
    translatedText: Optional[str] = None
    targetLanguage: str
    createdAt: datetime
    updatedAt: datetime


class ErrorResponse(BaseModel):
    error: str


class HealthStatus(BaseModel):
    status: str
    broker: str
    jobs: Dict[str, int] = Field(default_factory=dict)


class JobMessage(BaseModel):
    """Queue payload. Duplicates the job inputs so the worker can log them without the store."""

    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(alias="requestId", min_length=1)
    text: str = ""
    target_language: str = Field(default="", alias="targetLanguage")

    @classmethod
    def from_job(cls, job: TranslationJob) -> JobMessage:
        return cls(
            request_id=job.request_id,
            text=job.original_text,
            target_language=job.target_language,
        )

    def encode(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def decode(cls, body: bytes) -> JobMessage:
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MessageFormatError(f"Message body is not valid JSON: {exc}") from exc

        if not isinstance(payload, dict):
            raise MessageFormatError("Message body must be a JSON object")

        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise MessageFormatError(f"Message body is missing required fields: {exc}") from exc
