"""Discord REST sink: forum threads, tags, follow-ups and role mentions."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from .config import DiscordConfig, RetryConfig
from .interface import MessageSink
from .models import ChannelRef, LinkAction
from .retry import with_retry

logger = structlog.get_logger()

FORUM_CHANNEL_TYPE = 15
SUPPRESS_EMBEDS = 1 << 2
AUTO_ARCHIVE_MINUTES = 10080
ACTION_ROW = 1
BUTTON = 2
LINK_STYLE = 5
MENTION_TEXT = "A form submission has been received."


def _is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429


def action_rows(groups: list[list[LinkAction]]) -> list[dict[str, Any]]:
    """Render link action groups as Discord action rows of link buttons."""
    return [
        {
            "type": ACTION_ROW,
            "components": [
                {"type": BUTTON, "style": LINK_STYLE, "label": action.label, "url": action.url}
                for action in group
            ],
        }
        for group in groups
        if group
    ]


class DiscordSink(MessageSink):
    """Publishes payloads into Discord forum channels with a bot token.

    Requests answered with 429 are retried according to *retry_config*;
    Discord rejects rate-limited requests without side effects.
    """

    def __init__(self, config: DiscordConfig, retry_config: RetryConfig) -> None:
        self._config = config
        self._retry_config = retry_config
        self._client: httpx.AsyncClient | None = None
        self._role_id: str | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._config.api_base_url,
            timeout=httpx.Timeout(self._config.timeout_seconds),
            headers={
                "Authorization": f"Bot {self._config.bot_token.get_secret_value()}",
                "User-Agent": "DiscordBot (formrelay, 0.1)",
            },
        )
        logger.info("discord_sink_started", guild_id=self._config.guild_id)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("discord_sink_stopped")

    async def _request(self, method: str, path: str, *, json: Any = None) -> Any:
        """Send one API request; raises :class:`httpx.HTTPStatusError` on non-2xx."""
        if self._client is None:
            raise AssertionError("Sink not started")

        @with_retry(self._retry_config, retryable=_is_rate_limited)
        async def _attempt() -> Any:
            assert self._client is not None
            response = await self._client.request(method, path, json=json)
            response.raise_for_status()
            return response.json() if response.content else None

        return await _attempt()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def resolve_channel(self, channel_id: str) -> ChannelRef | None:
        """Find a forum channel by numeric id or case-insensitive name."""
        try:
            if channel_id.isdigit():
                channel = await self._request("GET", f"/channels/{channel_id}")
            else:
                channels = await self._request("GET", f"/guilds/{self._config.guild_id}/channels")
                wanted = channel_id.lower()
                channel = next(
                    (c for c in channels if (c.get("name") or "").lower() == wanted),
                    None,
                )
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                logger.error("channel_not_found", channel=channel_id)
                return None
            raise

        if channel is None:
            logger.error("channel_not_found", channel=channel_id)
            return None
        if channel.get("type") != FORUM_CHANNEL_TYPE:
            logger.error("channel_not_forum", channel=channel_id, type=channel.get("type"))
            return None
        return ChannelRef(id=channel["id"], name=channel.get("name", ""), guild_id=channel.get("guild_id"))

    async def ensure_tag(self, channel: ChannelRef, tag_name: str) -> str | None:
        try:
            current = await self._request("GET", f"/channels/{channel.id}")
            tags = current.get("available_tags", [])
            tag = next((t for t in tags if t.get("name") == tag_name), None)
            if tag is None:
                updated = await self._request(
                    "PATCH",
                    f"/channels/{channel.id}",
                    json={"available_tags": [*tags, {"name": tag_name}]},
                )
                tag = next(
                    (t for t in updated.get("available_tags", []) if t.get("name") == tag_name),
                    None,
                )
                if tag is not None:
                    logger.info("forum_tag_created", channel=channel.name, tag=tag_name)
        except httpx.HTTPError as exc:
            logger.error("forum_tag_failed", channel=channel.name, tag=tag_name, error=str(exc))
            return None

        if not tag or not tag.get("id"):
            logger.error("forum_tag_missing_id", channel=channel.name, tag=tag_name)
            return None
        return str(tag["id"])

    async def resolve_role(self) -> str | None:
        """Resolve the configured admin role once; later calls use the cached id."""
        if self._role_id is not None:
            return self._role_id
        wanted = self._config.admin_role
        if not wanted:
            return None
        try:
            roles = await self._request("GET", f"/guilds/{self._config.guild_id}/roles")
        except httpx.HTTPError as exc:
            logger.error("role_lookup_failed", role=wanted, error=str(exc))
            return None
        for role in roles:
            if role.get("id") == wanted or (role.get("name") or "").lower() == wanted.lower():
                self._role_id = str(role["id"])
                return self._role_id
        logger.warning("role_not_found", role=wanted)
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_thread(
        self,
        channel: ChannelRef,
        title: str,
        body: str,
        applied_tags: list[str],
        action_groups: list[list[LinkAction]],
    ) -> str:
        message: dict[str, Any] = {"flags": SUPPRESS_EMBEDS, "components": action_rows(action_groups)}
        if body:
            message["content"] = body
        thread = await self._request(
            "POST",
            f"/channels/{channel.id}/threads",
            json={
                "name": title,
                "auto_archive_duration": AUTO_ARCHIVE_MINUTES,
                "applied_tags": applied_tags,
                "message": message,
            },
        )
        logger.info("thread_created", channel=channel.name, thread_id=thread["id"], title=title)
        return str(thread["id"])

    async def send_followup(self, thread_id: str, text: str) -> None:
        await self._request(
            "POST",
            f"/channels/{thread_id}/messages",
            json={"content": text, "flags": SUPPRESS_EMBEDS},
        )

    async def mention_role(self, thread_id: str, role_id: str) -> None:
        await self._request(
            "POST",
            f"/channels/{thread_id}/messages",
            json={
                "content": f"<@&{role_id}> {MENTION_TEXT}",
                "allowed_mentions": {"roles": [role_id]},
            },
        )
