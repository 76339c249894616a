"""
Typed job payloads.

Each job type has exactly one payload model; ``parse_payload`` is the single
place where loosely-typed submissions become validated models.
"""

from typing import Any, Literal, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from inbox_triage.errors import JobValidationError
from inbox_triage.queue.types import JobType


class EmailScoringPayload(BaseModel):
    """Score a single email now."""

    user_id: str = Field(..., min_length=1)
    email_id: str = Field(..., min_length=1)
    subject: str = ""
    from_email: str = Field(default="", alias="from")
    snippet: str = ""
    is_important: bool = False
    is_starred: bool = False
    is_unread: bool = False

    model_config = {"populate_by_name": True}


class ThreadMessage(BaseModel):
    """One message of a thread handed to the summariser."""

    subject: str = ""
    from_email: str = Field(default="", alias="from")
    snippet: str = ""
    date: str = ""

    model_config = {"populate_by_name": True}


class EmailSummarizationPayload(BaseModel):
    """Summarise an ordered list of thread messages."""

    user_id: str = Field(..., min_length=1)
    thread_id: str = Field(..., min_length=1)
    emails: list[ThreadMessage] = Field(..., min_length=1)


class WebhookProcessingPayload(BaseModel):
    """Batch of email ids from an inbound push notification."""

    user_id: str = Field(..., min_length=1)
    email_ids: list[str] = Field(..., min_length=1)
    source: Literal["gmail", "outlook"] = "gmail"

    @field_validator("email_ids")
    @classmethod
    def _dedupe_ids(cls, value: list[str]) -> list[str]:
        # Keep notification order, drop repeats
        return list(dict.fromkeys(v for v in value if v))


JobPayload = Union[EmailScoringPayload, EmailSummarizationPayload, WebhookProcessingPayload]

PAYLOAD_MODELS: dict[JobType, type[BaseModel]] = {
    JobType.EMAIL_SCORING: EmailScoringPayload,
    JobType.EMAIL_SUMMARIZATION: EmailSummarizationPayload,
    JobType.WEBHOOK_PROCESSING: WebhookProcessingPayload,
}


def coerce_job_type(value: JobType | str) -> JobType:
    """Turn a raw job type string into a JobType or raise JobValidationError."""
    try:
        return JobType(value)
    except ValueError as e:
        allowed = ", ".join(t.value for t in JobType)
        raise JobValidationError(
            f"Unknown job type '{value}'. Allowed: {allowed}", field="type"
        ) from e


def parse_payload(job_type: JobType | str, data: Any) -> JobPayload:
    """
    Validate raw payload data against the model for ``job_type``.

    Args:
        job_type: Job type tag
        data: Model instance or mapping

    Returns:
        Validated payload model

    Raises:
        JobValidationError: Unknown type, mismatched model, or invalid fields
    """
    job_type = coerce_job_type(job_type)
    model = PAYLOAD_MODELS[job_type]

    if isinstance(data, BaseModel):
        if not isinstance(data, model):
            raise JobValidationError(
                f"Payload {type(data).__name__} does not match job type {job_type.value}",
                field="payload",
            )
        return data

    if not isinstance(data, dict):
        raise JobValidationError("Job payload must be an object", field="payload")

    try:
        return model.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        raise JobValidationError(
            f"Invalid {job_type.value} payload: {first.get('msg', str(e))}", field=field
        ) from e
