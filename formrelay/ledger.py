"""JSON-file delivery ledger.

The ledger records, per source, which responses have already been
delivered.  A record is added only after its delivery succeeded, and the
file is rewritten atomically on every commit.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from datetime import date
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .models import NormalizedRecord

logger = structlog.get_logger()


class LedgerEntry(BaseModel):
    """Summary of one delivered record as stored on disk."""

    model_config = ConfigDict(populate_by_name=True)

    record_id: str = Field(alias="recordId")
    submitted_date: date = Field(alias="submittedDate")
    title: str | None = None


_LEDGER_FILE = TypeAdapter(dict[str, list[LedgerEntry]])


class DeliveryLedger:
    """In-memory view of delivered record ids, keyed by source id."""

    def __init__(self, entries: dict[str, dict[str, LedgerEntry]] | None = None) -> None:
        self._entries: dict[str, dict[str, LedgerEntry]] = entries or {}

    @classmethod
    def from_json(cls, text: str) -> DeliveryLedger:
        """Parse the on-disk representation.

        Raises :class:`ValueError` (pydantic's ``ValidationError``) on
        malformed content.
        """
        if not text.strip():
            return cls()
        parsed = _LEDGER_FILE.validate_json(text)
        return cls(
            {
                source_id: {entry.record_id: entry for entry in entries}
                for source_id, entries in parsed.items()
            }
        )

    def to_json(self) -> str:
        data = {
            source_id: [
                entry.model_dump(mode="json", by_alias=True, exclude_none=True)
                for entry in entries.values()
            ]
            for source_id, entries in self._entries.items()
        }
        return json.dumps(data, indent=2, ensure_ascii=False)

    def is_delivered(self, source_id: str, record_id: str) -> bool:
        return record_id in self._entries.get(source_id, {})

    def mark_delivered(self, source_id: str, entry: LedgerEntry) -> None:
        self._entries.setdefault(source_id, {})[entry.record_id] = entry

    def delivered_ids(self, source_id: str) -> frozenset[str]:
        return frozenset(self._entries.get(source_id, {}))

    @property
    def source_ids(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._entries.values())


class LedgerStore:
    """Loads, queries, updates and persists a :class:`DeliveryLedger`.

    ``mark_delivered`` only touches memory; callers persist explicitly
    with :meth:`commit`.  Neither :meth:`load` nor :meth:`commit` raises:
    a corrupt file is reset to an empty ledger and a failed write leaves
    the in-memory ledger ahead of disk until the next successful commit.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._ledger = DeliveryLedger()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def ledger(self) -> DeliveryLedger:
        return self._ledger

    async def load(self) -> DeliveryLedger:
        """Read the ledger file, bootstrapping or resetting it when needed."""
        try:
            raw = await asyncio.to_thread(self._path.read_bytes)
        except FileNotFoundError:
            logger.info("ledger_bootstrapped", path=str(self._path))
            self._ledger = DeliveryLedger()
            await self.commit()
            return self._ledger
        except OSError as exc:
            logger.error("ledger_read_failed", path=str(self._path), error=str(exc))
            self._ledger = DeliveryLedger()
            return self._ledger

        try:
            self._ledger = DeliveryLedger.from_json(raw.decode("utf-8"))
        except ValueError as exc:
            # UnicodeDecodeError is a ValueError too.
            # Delivery history is lost here; records may be delivered again.
            logger.warning("ledger_corrupt_reset", path=str(self._path), error=str(exc))
            self._ledger = DeliveryLedger()
            await self.commit()
            return self._ledger

        logger.info("ledger_loaded", path=str(self._path), records=len(self._ledger))
        return self._ledger

    async def commit(self) -> bool:
        """Atomically write the full ledger.  Returns ``False`` on failure."""
        payload = self._ledger.to_json()
        try:
            await asyncio.to_thread(self._write_atomic, payload)
        except OSError as exc:
            logger.error("ledger_commit_failed", path=str(self._path), error=str(exc))
            return False
        logger.debug("ledger_committed", path=str(self._path), records=len(self._ledger))
        return True

    def _write_atomic(self, payload: str) -> None:
        directory = self._path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    # ------------------------------------------------------------------
    # Delegates used by the reconciler
    # ------------------------------------------------------------------

    def is_delivered(self, source_id: str, record_id: str) -> bool:
        return self._ledger.is_delivered(source_id, record_id)

    def mark_delivered(
        self,
        source_id: str,
        record: NormalizedRecord,
        *,
        title: str | None = None,
    ) -> None:
        self._ledger.mark_delivered(
            source_id,
            LedgerEntry(
                record_id=record.record_id,
                submitted_date=record.submitted_date,
                title=title,
            ),
        )

    def delivered_ids(self, source_id: str) -> frozenset[str]:
        return self._ledger.delivered_ids(source_id)
