"""Abstract collaborators of the reconciler: where records come from and go to."""

from __future__ import annotations

import abc

from .models import ChannelRef, FormSchema, LinkAction, RawRecord


class FormSource(abc.ABC):
    """Read-only access to form definitions and their responses.

    Implementations raise :class:`formrelay.errors.SourceAPIError` on
    failed calls and :class:`formrelay.errors.AuthorizationError` from
    :meth:`start` when credentials cannot be acquired.
    """

    async def start(self) -> None:
        """Acquire credentials and open connections."""

    async def stop(self) -> None:
        """Release connections."""

    @abc.abstractmethod
    async def get_form_schema(self, source_id: str) -> FormSchema:
        """Return the current question titles of *source_id*, in form order."""
        ...

    @abc.abstractmethod
    async def list_responses(self, source_id: str) -> list[RawRecord]:
        """Return every response currently held by *source_id*, in any order."""
        ...


class MessageSink(abc.ABC):
    """Write access to the messaging platform.

    Every method may raise; the reconciler treats any exception as a
    failed delivery of the record being processed.
    """

    async def start(self) -> None:
        """Open connections."""

    async def stop(self) -> None:
        """Release connections."""

    @abc.abstractmethod
    async def resolve_channel(self, channel_id: str) -> ChannelRef | None:
        """Look up a destination channel by id or name; ``None`` if unusable."""
        ...

    @abc.abstractmethod
    async def ensure_tag(self, channel: ChannelRef, tag_name: str) -> str | None:
        """Return the id of tag *tag_name* on *channel*, creating it if needed."""
        ...

    @abc.abstractmethod
    async def create_thread(
        self,
        channel: ChannelRef,
        title: str,
        body: str,
        applied_tags: list[str],
        action_groups: list[list[LinkAction]],
    ) -> str:
        """Open a new thread with its first message and return the thread id."""
        ...

    @abc.abstractmethod
    async def send_followup(self, thread_id: str, text: str) -> None:
        """Post one more message into an existing thread."""
        ...

    async def resolve_role(self) -> str | None:
        """Return the id of the role to notify on new threads, if any."""
        return None

    async def mention_role(self, thread_id: str, role_id: str) -> None:
        """Notify *role_id* inside *thread_id*."""
