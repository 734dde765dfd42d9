"""Shared test fixtures for the formrelay test suite."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from formrelay.composer import MessageComposer
from formrelay.config import ComposerConfig, DiscordConfig, LedgerConfig, RelayConfig, RetryConfig
from formrelay.interface import FormSource, MessageSink
from formrelay.ledger import LedgerStore
from formrelay.models import (
    ChannelRef,
    DestinationMapping,
    FileUploadAnswer,
    FormSchema,
    LinkAction,
    RawRecord,
    SchemaItem,
    Source,
    TextAnswer,
    UploadedFile,
)

# A valid generic-substrate (prefix 42) account address.
VALID_ADDRESS = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"


# ------------------------------------------------------------------
# Fakes
# ------------------------------------------------------------------


class FakeFormSource(FormSource):
    """In-memory form source; responses and schemas are set per source id."""

    def __init__(self) -> None:
        self.schemas: dict[str, FormSchema] = {}
        self.responses: dict[str, list[RawRecord]] = {}
        self.errors: dict[str, Exception] = {}
        self.started = False
        self.stopped = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    async def get_form_schema(self, source_id: str) -> FormSchema:
        if source_id in self.errors:
            raise self.errors[source_id]
        return self.schemas.get(source_id, FormSchema(title=source_id))

    async def list_responses(self, source_id: str) -> list[RawRecord]:
        if source_id in self.errors:
            raise self.errors[source_id]
        return list(self.responses.get(source_id, []))


class FakeSink(MessageSink):
    """Records every call; ``should_fail(title)`` makes thread creation raise."""

    def __init__(self, *, role_id: str | None = None) -> None:
        self.calls: list[tuple] = []
        self.threads: list[dict] = []
        self.missing_channels: set[str] = set()
        self.should_fail = lambda title: False
        self.fail_followups = False
        self.fail_mention = False
        self._role_id = role_id
        self._next_thread = 1000

    async def resolve_channel(self, channel_id: str) -> ChannelRef | None:
        self.calls.append(("resolve_channel", channel_id))
        if channel_id in self.missing_channels:
            return None
        return ChannelRef(id=channel_id, name=f"forum-{channel_id}")

    async def ensure_tag(self, channel: ChannelRef, tag_name: str) -> str | None:
        self.calls.append(("ensure_tag", channel.id, tag_name))
        return f"tag-{tag_name}"

    async def create_thread(
        self,
        channel: ChannelRef,
        title: str,
        body: str,
        applied_tags: list[str],
        action_groups: list[list[LinkAction]],
    ) -> str:
        self.calls.append(("create_thread", channel.id, title))
        if self.should_fail(title):
            raise RuntimeError(f"sink rejected {title}")
        self._next_thread += 1
        thread_id = str(self._next_thread)
        self.threads.append(
            {
                "id": thread_id,
                "channel": channel.id,
                "title": title,
                "body": body,
                "tags": applied_tags,
                "actions": action_groups,
            }
        )
        return thread_id

    async def send_followup(self, thread_id: str, text: str) -> None:
        self.calls.append(("send_followup", thread_id))
        if self.fail_followups:
            raise RuntimeError("follow-up rejected")

    async def resolve_role(self) -> str | None:
        return self._role_id

    async def mention_role(self, thread_id: str, role_id: str) -> None:
        self.calls.append(("mention_role", thread_id, role_id))
        if self.fail_mention:
            raise RuntimeError("mention rejected")

    @property
    def titles(self) -> list[str]:
        return [thread["title"] for thread in self.threads]


# ------------------------------------------------------------------
# Builders
# ------------------------------------------------------------------


def make_record(
    record_id: str,
    *,
    hour: int = 9,
    minute: int = 0,
    day: int = 1,
    project: str | None = None,
    answers: dict | None = None,
) -> RawRecord:
    """Build a raw record; *project* defaults to the record id."""
    if answers is None:
        answers = {
            "q_project": TextAnswer(values=[project or f"Project {record_id}"]),
            "q_cost": TextAnswer(values=["1000 USD"]),
            "q_summary": TextAnswer(values=[f"Summary of {record_id}"]),
        }
    return RawRecord(
        record_id=record_id,
        submitted_at=datetime(2024, 3, day, hour, minute, tzinfo=UTC),
        answers=answers,
    )


def make_schema(title: str = "Grant applications") -> FormSchema:
    return FormSchema(
        title=title,
        items=[
            SchemaItem(question_id="q_project", title="Name of your project"),
            SchemaItem(question_id="q_cost", title="Total cost"),
            SchemaItem(question_id="q_summary", title="Summary"),
            SchemaItem(question_id="q_files", title="Other offers"),
        ],
    )


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def composer_config() -> ComposerConfig:
    return ComposerConfig()


@pytest.fixture
def composer(composer_config: ComposerConfig) -> MessageComposer:
    return MessageComposer(composer_config)


@pytest.fixture
def destination() -> DestinationMapping:
    return DestinationMapping(
        channel_id="123456",
        display_name="Grants",
        tag="Grants",
        external_reference_url="https://docs.google.com/spreadsheets/d/sheet",
    )


@pytest.fixture
def source(destination: DestinationMapping) -> Source:
    return Source(source_id="F1", destination=destination)


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=3,
        initial_wait_seconds=0.01,
        max_wait_seconds=0.1,
        multiplier=2.0,
    )


@pytest.fixture
def discord_config() -> DiscordConfig:
    return DiscordConfig(
        bot_token="test-token",
        guild_id="999",
        admin_role="Admins",
        api_base_url="https://discord.test/api/v10",
    )


@pytest.fixture
def ledger_path(tmp_path: Path) -> Path:
    return tmp_path / "responses.json"


@pytest.fixture
def ledger_store(ledger_path: Path) -> LedgerStore:
    return LedgerStore(ledger_path)


@pytest.fixture
def relay_config(
    ledger_path: Path,
    retry_config: RetryConfig,
    discord_config: DiscordConfig,
    destination: DestinationMapping,
) -> RelayConfig:
    return RelayConfig(
        name="relay-test",
        health_port=18080,
        check_interval_seconds=3600,
        sources={"F1": destination},
        ledger=LedgerConfig(path=str(ledger_path)),
        retry=retry_config,
        discord=discord_config,
    )


@pytest.fixture
def form_source() -> FakeFormSource:
    source = FakeFormSource()
    source.schemas["F1"] = make_schema()
    return source


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def file_answer() -> FileUploadAnswer:
    return FileUploadAnswer(
        files=[
            UploadedFile(file_id="abc", file_name="offer one.pdf"),
            UploadedFile(file_id="def", file_name="offer_two.pdf"),
        ]
    )
