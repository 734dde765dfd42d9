"""Turn a raw form response into ordered, human-labelled fields."""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import UTC

import structlog

from .models import (
    ChoiceAnswer,
    DateAnswer,
    FieldValue,
    FileUploadAnswer,
    FormSchema,
    MalformedAnswer,
    NormalizedRecord,
    RawRecord,
    ScaleAnswer,
    TextAnswer,
    TimeAnswer,
    UnsupportedAnswer,
)

logger = structlog.get_logger()

UNSUPPORTED_MARKER = "Unsupported answer type"
ERROR_MARKER = "Error processing answer"
FILE_URL_TEMPLATE = "https://drive.google.com/open?id={file_id}"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9\-_.]")


class AnswerFormatError(ValueError):
    """An answer could not be rendered."""


def sanitize_file_name(name: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", name)


def fallback_label(question_id: str) -> str:
    return f"Question {question_id}"


# ---------------------------------------------------------------------------
# Renderers, one per answer kind
# ---------------------------------------------------------------------------


def _render_values(answer: TextAnswer | ChoiceAnswer | ScaleAnswer) -> str:
    return ", ".join(str(value) for value in answer.values)


def _render_date(answer: DateAnswer) -> str:
    rendered = []
    for value in answer.values:
        if value.month is None or value.day is None:
            raise AnswerFormatError(f"incomplete date: {value.model_dump()}")
        parts = [value.month, value.day] if value.year is None else [value.year, value.month, value.day]
        rendered.append("-".join(str(part) for part in parts))
    return ", ".join(rendered)


def _render_time(answer: TimeAnswer) -> str:
    return ", ".join(f"{value.hours}:{value.minutes}:{value.seconds}" for value in answer.values)


def _render_files(answer: FileUploadAnswer) -> dict[str, str]:
    return {
        sanitize_file_name(file.file_name): FILE_URL_TEMPLATE.format(file_id=file.file_id)
        for file in answer.files
    }


def _render_unsupported(answer: UnsupportedAnswer) -> str:
    return UNSUPPORTED_MARKER


def _render_malformed(answer: MalformedAnswer) -> str:
    raise AnswerFormatError(answer.detail or "malformed answer")


RENDERERS: dict[type, Callable[..., FieldValue]] = {
    TextAnswer: _render_values,
    ChoiceAnswer: _render_values,
    ScaleAnswer: _render_values,
    DateAnswer: _render_date,
    TimeAnswer: _render_time,
    FileUploadAnswer: _render_files,
    UnsupportedAnswer: _render_unsupported,
    MalformedAnswer: _render_malformed,
}


def render_answer(answer: object) -> FieldValue:
    renderer = RENDERERS.get(type(answer))
    if renderer is None:
        return UNSUPPORTED_MARKER
    return renderer(answer)


# ---------------------------------------------------------------------------
# Record normalization
# ---------------------------------------------------------------------------


def _field_order(raw: RawRecord, schema: FormSchema) -> list[str]:
    """Schema order first, then answers the schema does not know about."""
    ordered = [qid for qid in schema.question_ids if qid in raw.answers]
    known = set(ordered)
    ordered.extend(sorted(qid for qid in raw.answers if qid not in known))
    return ordered


def normalize(raw: RawRecord, schema: FormSchema) -> NormalizedRecord:
    """Build a :class:`NormalizedRecord` from *raw* using *schema* for labels.

    Never raises for a bad answer: the field gets :data:`ERROR_MARKER`
    and the rest of the record is still rendered.
    """
    fields: dict[str, FieldValue] = {}
    for question_id in _field_order(raw, schema):
        label = schema.title_for(question_id) or fallback_label(question_id)
        if label in fields:
            label = f"{label} ({question_id})"
        answer = raw.answers[question_id]
        try:
            fields[label] = render_answer(answer)
        except Exception as exc:
            logger.error(
                "answer_render_failed",
                record_id=raw.record_id,
                question_id=question_id,
                label=label,
                error=str(exc),
            )
            fields[label] = ERROR_MARKER

    submitted_at = raw.submitted_at
    if submitted_at.tzinfo is not None:
        submitted_at = submitted_at.astimezone(UTC)

    return NormalizedRecord(
        record_id=raw.record_id,
        submitted_date=submitted_at.date(),
        fields=fields,
    )
