"""Compose a destination message from a normalized record.

The payload is a thread title, an initial body that fits in one message
next to the action rows, follow-up segments for whatever does not fit,
and link actions grouped into rows.
"""

from __future__ import annotations

import json
import re

import structlog
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

from .addresses import linkify_addresses
from .config import ComposerConfig
from .models import DestinationMapping, FieldValue, LinkAction, MessagePayload, NormalizedRecord

logger = structlog.get_logger()

UNKNOWN_PROJECT = "Unknown Project"
COST_NOT_FOUND = "Cost not found"
ELLIPSIS = "…"

COST_LIMIT = 20
ACTION_LABEL_LIMIT = 80
ACTIONS_PER_GROUP = 5
MAX_ACTION_GROUPS = 5

WEBSITE_LABEL = "🌐 Website"
REFERENCE_LABEL = "📑 Spreadsheet"
WINNING_OFFER_PREFIX = "🏆 "
OTHER_OFFER_PREFIX = "📄 "
VIEW_FULL_RESPONSE_LABEL = "View Full Response"

_HTTP_URL = TypeAdapter(AnyHttpUrl)
_COST_BREAK = re.compile(r"[\s,.]")


def truncate(text: str, limit: int) -> str:
    """Cut *text* to *limit* characters, the last one being an ellipsis."""
    if len(text) <= limit:
        return text
    return text[: limit - 1] + ELLIPSIS


def truncate_cost(value: str) -> str:
    """Shorten a cost answer to about :data:`COST_LIMIT` characters.

    Breaks after the last whitespace, comma or period within the limit,
    or hard-cuts at the limit when there is none.
    """
    value = value.strip()
    if len(value) <= COST_LIMIT:
        return value
    cut = COST_LIMIT
    while cut > 0 and not _COST_BREAK.match(value[cut - 1]):
        cut -= 1
    if cut == 0:
        cut = COST_LIMIT
    return f"{value[:cut]}..."


def clean_file_name(name: str) -> str:
    """Make a sanitized upload name readable again."""
    name = re.sub(r"_+", " ", name)
    name = re.sub(r"\s+-\s+", " - ", name)
    return re.sub(r"\s+", " ", name).strip()


def normalize_website(value: str) -> str:
    """Force an ``https://`` scheme and validate the result.

    Raises :class:`ValueError` if the value is not a usable URL.
    """
    url = value.strip()
    if not url.startswith("https://"):
        url = "https://" + re.sub(r"^http://", "", url, flags=re.IGNORECASE)
    try:
        _HTTP_URL.validate_python(url)
    except ValidationError as exc:
        raise ValueError(f"invalid website URL: {url}") from exc
    return url


def view_full_response_row(url: str) -> dict:
    """Wire form of the single-button row reserved next to the first message."""
    return {
        "type": 1,
        "components": [
            {"type": 2, "style": 5, "label": VIEW_FULL_RESPONSE_LABEL, "url": url},
        ],
    }


def split_section(section: str, size: int) -> list[str]:
    """Split one body section into contiguous pieces of at most *size* characters."""
    if len(section) <= size:
        return [section]
    return [section[i : i + size] for i in range(0, len(section), size)]


def pack_sections(sections: list[str], budget: int) -> tuple[str, list[str]]:
    """Pack sections into an initial body and ordered overflow segments.

    Sections are taken in order while the joined body stays within
    *budget*; the first section that does not fit, and every later one,
    overflow into their own segments.
    """
    pieces = [piece for section in sections for piece in split_section(section, budget)]
    initial: list[str] = []
    length = 0
    for index, piece in enumerate(pieces):
        added = len(piece) + (2 if initial else 0)
        if length + added > budget:
            return "\n\n".join(initial), pieces[index:]
        initial.append(piece)
        length += added
    return "\n\n".join(initial), []


class MessageComposer:
    """Builds :class:`MessagePayload` objects according to :class:`ComposerConfig`."""

    def __init__(self, config: ComposerConfig) -> None:
        self._config = config

    # ------------------------------------------------------------------
    # Label matching
    # ------------------------------------------------------------------

    @staticmethod
    def _matches(label: str, hints: list[str]) -> bool:
        lowered = label.lower()
        return any(hint.lower() in lowered for hint in hints)

    def is_project_name_field(self, label: str) -> bool:
        return self._matches(label, self._config.project_name_keys)

    def project_name(self, fields: dict[str, FieldValue]) -> str:
        for label, value in fields.items():
            if isinstance(value, str) and self.is_project_name_field(label):
                return value
        return UNKNOWN_PROJECT

    def cost(self, fields: dict[str, FieldValue]) -> str:
        """Cost shown in the title; empty for audit forms."""
        if any(self._matches(label, self._config.audit_keys) for label in fields):
            return ""
        for label, value in fields.items():
            if isinstance(value, str) and self._matches(label, self._config.cost_keys):
                return truncate_cost(value)
        return COST_NOT_FOUND

    def title(self, record: NormalizedRecord) -> str:
        title = f"{record.submitted_date.isoformat()} - {self.project_name(record.fields)}"
        cost = self.cost(record.fields)
        if cost:
            title = f"{title} - {cost}"
        return truncate(title, self._config.title_limit)

    # ------------------------------------------------------------------
    # Body and actions
    # ------------------------------------------------------------------

    def body_budget(self, reference_url: str | None) -> int:
        row = view_full_response_row(reference_url or "")
        return self._config.message_limit - len(json.dumps(row))

    def compose(self, record: NormalizedRecord, destination: DestinationMapping) -> MessagePayload:
        """Build the payload for *record*.  Field errors are logged and skipped."""
        entries = [(label, value) for label, value in record.fields.items() if value]
        # sorted() is stable, so non-name fields keep their schema order.
        entries = sorted(entries, key=lambda item: "name" not in item[0].lower())

        sections: list[str] = []
        website: list[LinkAction] = []
        winning: list[LinkAction] = []
        other: list[LinkAction] = []

        for label, value in entries:
            if self.is_project_name_field(label):
                continue
            lowered = label.lower()
            try:
                if isinstance(value, dict):
                    bucket = winning if "winning" in lowered else other
                    prefix = WINNING_OFFER_PREFIX if "winning" in lowered else OTHER_OFFER_PREFIX
                    for file_name, url in value.items():
                        bucket.append(
                            LinkAction(
                                label=truncate(f"{prefix}{clean_file_name(file_name)}", ACTION_LABEL_LIMIT),
                                url=url,
                            )
                        )
                elif "website" in lowered:
                    website.append(LinkAction(label=WEBSITE_LABEL, url=normalize_website(value)))
                else:
                    text = linkify_addresses(str(value), self._config.explorer_url)
                    sections.append(f"## {label}\n{text}")
            except Exception as exc:
                logger.warning(
                    "field_compose_failed",
                    record_id=record.record_id,
                    label=label,
                    error=str(exc),
                )

        navigation = list(website)
        if destination.external_reference_url:
            navigation.append(LinkAction(label=REFERENCE_LABEL, url=destination.external_reference_url))

        action_groups: list[list[LinkAction]] = []
        if navigation:
            action_groups.append(navigation)
        offers = winning + other
        for start in range(0, len(offers), ACTIONS_PER_GROUP):
            action_groups.append(offers[start : start + ACTIONS_PER_GROUP])

        budget = self.body_budget(destination.external_reference_url)
        initial_body, overflow = pack_sections(sections, budget)

        if len(action_groups) > MAX_ACTION_GROUPS:
            dropped = [action for group in action_groups[MAX_ACTION_GROUPS:] for action in group]
            action_groups = action_groups[:MAX_ACTION_GROUPS]
            logger.info(
                "action_groups_overflowed",
                record_id=record.record_id,
                moved=len(dropped),
            )
            listing = "## Additional files\n" + "\n".join(
                f"- [{action.label}]({action.url})" for action in dropped
            )
            overflow.extend(split_section(listing, budget))

        return MessagePayload(
            title=self.title(record),
            initial_body=initial_body,
            overflow_segments=overflow,
            action_groups=action_groups,
        )
