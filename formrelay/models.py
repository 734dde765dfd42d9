"""Data models for the form relay."""

from __future__ import annotations

from datetime import UTC, date, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RelayStatus(str, Enum):
    """Runtime status of the relay process."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


# ---------------------------------------------------------------------------
# Sources and destinations
# ---------------------------------------------------------------------------


class DestinationMapping(BaseModel):
    """Where responses of one form are published."""

    model_config = ConfigDict(frozen=True)

    channel_id: str = Field(description="Forum channel id or name")
    display_name: str | None = Field(default=None, description="Name shown instead of the channel name")
    tag: str | None = Field(default=None, description="Forum tag applied to every thread")
    external_reference_url: str | None = Field(
        default=None,
        description="Link to the full response sheet, shown as a navigation action",
    )


class Source(BaseModel):
    """A monitored form and its destination."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    destination: DestinationMapping


# ---------------------------------------------------------------------------
# Raw records
# ---------------------------------------------------------------------------


class TextAnswer(BaseModel):
    kind: Literal["text"] = "text"
    values: list[str] = Field(default_factory=list)


class ChoiceAnswer(BaseModel):
    kind: Literal["choice"] = "choice"
    values: list[str] = Field(default_factory=list)


class ScaleAnswer(BaseModel):
    kind: Literal["scale"] = "scale"
    values: list[int] = Field(default_factory=list)


class DateValue(BaseModel):
    # The Forms API omits ``year`` when the question does not collect it.
    year: int | None = None
    month: int | None = None
    day: int | None = None


class DateAnswer(BaseModel):
    kind: Literal["date"] = "date"
    values: list[DateValue] = Field(default_factory=list)


class TimeValue(BaseModel):
    # Zero-valued parts are omitted from the API's JSON.
    hours: int = 0
    minutes: int = 0
    seconds: int = 0


class TimeAnswer(BaseModel):
    kind: Literal["time"] = "time"
    values: list[TimeValue] = Field(default_factory=list)


class UploadedFile(BaseModel):
    file_id: str
    file_name: str


class FileUploadAnswer(BaseModel):
    kind: Literal["file_upload"] = "file_upload"
    files: list[UploadedFile] = Field(default_factory=list)


class UnsupportedAnswer(BaseModel):
    """An answer whose kind the relay does not know how to render."""

    kind: Literal["unsupported"] = "unsupported"
    source_kinds: list[str] = Field(default_factory=list)


class MalformedAnswer(BaseModel):
    """An answer of a known kind whose payload could not be parsed."""

    kind: Literal["malformed"] = "malformed"
    detail: str = ""


AnswerValue = Annotated[
    Union[
        TextAnswer,
        ChoiceAnswer,
        ScaleAnswer,
        DateAnswer,
        TimeAnswer,
        FileUploadAnswer,
        UnsupportedAnswer,
        MalformedAnswer,
    ],
    Field(discriminator="kind"),
]


class RawRecord(BaseModel):
    """One form response as fetched from the source."""

    model_config = ConfigDict(frozen=True)

    record_id: str
    submitted_at: datetime
    answers: dict[str, AnswerValue] = Field(default_factory=dict)

    @field_validator("submitted_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        """Naive timestamps are taken to be UTC so records always compare."""
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class SchemaItem(BaseModel):
    question_id: str
    title: str


class FormSchema(BaseModel):
    """Question titles of a form, in the form's item order."""

    title: str | None = None
    items: list[SchemaItem] = Field(default_factory=list)

    def title_for(self, question_id: str) -> str | None:
        for item in self.items:
            if item.question_id == question_id:
                return item.title
        return None

    @property
    def question_ids(self) -> list[str]:
        return [item.question_id for item in self.items]


# ---------------------------------------------------------------------------
# Normalized records and payloads
# ---------------------------------------------------------------------------

FieldValue = Union[str, dict[str, str]]


class NormalizedRecord(BaseModel):
    """A response reshaped into ordered, human-labelled fields."""

    model_config = ConfigDict(frozen=True)

    record_id: str
    submitted_date: date
    fields: dict[str, FieldValue] = Field(default_factory=dict)


class LinkAction(BaseModel):
    label: str
    url: str


class MessagePayload(BaseModel):
    """Everything needed to publish one record."""

    title: str
    initial_body: str
    overflow_segments: list[str] = Field(default_factory=list)
    action_groups: list[list[LinkAction]] = Field(default_factory=list)


class ChannelRef(BaseModel):
    """A resolved destination channel."""

    id: str
    name: str
    guild_id: str | None = None


# ---------------------------------------------------------------------------
# Reconciliation accounting and health
# ---------------------------------------------------------------------------


class SourceResult(BaseModel):
    source_id: str
    fetched: int = 0
    new: int = 0
    delivered: int = 0
    failed: int = 0
    error: str | None = None


class PassSummary(BaseModel):
    """Outcome of one reconciliation pass across every source."""

    trigger: str = "scheduled"
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    sources: list[SourceResult] = Field(default_factory=list)

    @property
    def delivered(self) -> int:
        return sum(result.delivered for result in self.sources)

    @property
    def found_new(self) -> bool:
        return any(result.new for result in self.sources)


class HealthStatus(BaseModel):
    """Response model for the /health endpoint."""

    relay_name: str
    status: RelayStatus
    uptime_seconds: float
    details: dict[str, Any] = Field(default_factory=dict)
