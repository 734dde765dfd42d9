"""Async Google Forms API client.

Credentials come from a service-account key loaded with google-auth;
token refreshes are blocking and run with ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
from typing import Any

import google.auth.exceptions
import httpx
import structlog
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from .config import FormsAPIConfig, RetryConfig
from .errors import AuthorizationError, SourceAPIError
from .interface import FormSource
from .models import (
    AnswerValue,
    ChoiceAnswer,
    DateAnswer,
    FileUploadAnswer,
    FormSchema,
    MalformedAnswer,
    RawRecord,
    ScaleAnswer,
    SchemaItem,
    TextAnswer,
    TimeAnswer,
    UnsupportedAnswer,
    UploadedFile,
)
from .retry import with_retry

logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


def _values(items: list[dict[str, Any]]) -> list[Any]:
    return [item["value"] for item in items]


_ANSWER_BUILDERS = {
    "textAnswers": lambda items: TextAnswer(values=[str(v) for v in _values(items)]),
    "choiceAnswers": lambda items: ChoiceAnswer(values=[str(v) for v in _values(items)]),
    "scaleAnswers": lambda items: ScaleAnswer(values=_values(items)),
    "dateAnswers": lambda items: DateAnswer(values=items),
    "timeAnswers": lambda items: TimeAnswer(values=items),
    "fileUploadAnswers": lambda items: FileUploadAnswer(
        files=[UploadedFile(file_id=item["fileId"], file_name=item["fileName"]) for item in items]
    ),
}


def parse_answer(payload: dict[str, Any]) -> AnswerValue:
    """Convert one API answer object into an :data:`AnswerValue` variant."""
    for key, build in _ANSWER_BUILDERS.items():
        if key not in payload:
            continue
        try:
            return build(payload[key].get("answers", []))
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            return MalformedAnswer(detail=f"{key}: {exc}")
    return UnsupportedAnswer(source_kinds=sorted(k for k in payload if k != "questionId"))


def parse_response(payload: dict[str, Any]) -> RawRecord:
    """Convert one API form response into a :class:`RawRecord`."""
    return RawRecord(
        record_id=payload["responseId"],
        submitted_at=payload.get("lastSubmittedTime") or payload["createTime"],
        answers={
            question_id: parse_answer(answer)
            for question_id, answer in (payload.get("answers") or {}).items()
        },
    )


def parse_form(payload: dict[str, Any]) -> FormSchema:
    """Extract question ids and titles from a form definition, in item order.

    Grid questions contribute one entry per row, labelled ``"Item [Row]"``.
    """
    items: list[SchemaItem] = []
    for item in payload.get("items", []):
        title = item.get("title", "")
        question = item.get("questionItem", {}).get("question")
        if question and "questionId" in question:
            items.append(SchemaItem(question_id=question["questionId"], title=title))
            continue
        for row in item.get("questionGroupItem", {}).get("questions", []):
            if "questionId" not in row:
                continue
            row_title = row.get("rowQuestion", {}).get("title", "")
            label = f"{title} [{row_title}]" if row_title else title
            items.append(SchemaItem(question_id=row["questionId"], title=label))
    return FormSchema(title=payload.get("info", {}).get("title"), items=items)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GoogleFormsClient(FormSource):
    """Reads form definitions and responses through the Forms REST API."""

    def __init__(self, config: FormsAPIConfig, retry_config: RetryConfig) -> None:
        self._config = config
        self._retry_config = retry_config
        self._credentials: service_account.Credentials | None = None
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Load the service-account key and fetch a first access token.

        Raises :class:`AuthorizationError` when either step fails.
        """
        try:
            self._credentials = await asyncio.to_thread(
                service_account.Credentials.from_service_account_file,
                self._config.credentials_path,
                scopes=self._config.scopes,
            )
            await self._refresh_token()
        except (OSError, ValueError, google.auth.exceptions.GoogleAuthError) as exc:
            raise AuthorizationError(
                f"cannot authorize with {self._config.credentials_path}: {exc}"
            ) from exc

        self._client = httpx.AsyncClient(
            base_url=self._config.base_url,
            timeout=httpx.Timeout(self._config.timeout_seconds),
        )
        logger.info("forms_client_started", base_url=self._config.base_url)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("forms_client_stopped")

    async def _refresh_token(self) -> None:
        assert self._credentials is not None
        await asyncio.to_thread(self._credentials.refresh, Request())

    async def _get(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        """GET *path* with a valid bearer token, retrying transient failures."""
        if self._client is None or self._credentials is None:
            raise AssertionError("Client not started")

        @with_retry(self._retry_config)
        async def _attempt() -> dict[str, Any]:
            assert self._client is not None and self._credentials is not None
            try:
                if not self._credentials.valid:
                    await self._refresh_token()
                response = await self._client.get(
                    path,
                    params=params,
                    headers={"Authorization": f"Bearer {self._credentials.token}"},
                )
            except httpx.TransportError as exc:
                raise SourceAPIError(f"GET {path}: {exc}") from exc
            except google.auth.exceptions.GoogleAuthError as exc:
                raise SourceAPIError(f"token refresh failed: {exc}") from exc
            if response.is_error:
                raise SourceAPIError(
                    f"GET {path} returned {response.status_code}",
                    status=response.status_code,
                    body=response.text,
                )
            return response.json()

        return await _attempt()

    async def get_form_schema(self, source_id: str) -> FormSchema:
        return parse_form(await self._get(f"/forms/{source_id}"))

    async def list_responses(self, source_id: str) -> list[RawRecord]:
        records: list[RawRecord] = []
        page_token: str | None = None
        while True:
            params = {"pageToken": page_token} if page_token else None
            data = await self._get(f"/forms/{source_id}/responses", params)
            for item in data.get("responses", []):
                try:
                    records.append(parse_response(item))
                except (KeyError, ValueError) as exc:
                    logger.warning(
                        "response_unparseable",
                        source_id=source_id,
                        response_id=item.get("responseId"),
                        error=str(exc),
                    )
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        logger.debug("responses_listed", source_id=source_id, count=len(records))
        return records
