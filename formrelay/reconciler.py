"""Reconciliation pass: find undelivered responses, publish them, record them.

For every source, in configuration order::

    fetch schema -> fetch responses -> diff against ledger
      -> for each new response, oldest first:
           normalize -> compose -> deliver -> mark + commit

A response is marked in the ledger only after its delivery succeeded.
Failures are contained: a failed record is retried on the next pass, a
failed source does not stop the other sources.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import UTC, datetime

import structlog

from .composer import MessageComposer
from .errors import DeliveryError, SourceAPIError
from .interface import FormSource, MessageSink
from .ledger import LedgerStore
from .models import FormSchema, MessagePayload, PassSummary, RawRecord, Source, SourceResult
from .normalizer import normalize

logger = structlog.get_logger()


class Reconciler:
    """Runs reconciliation passes over a fixed set of sources.

    All collaborators are injected; the reconciler owns the ledger for the
    duration of a pass.  Passes are serialized by a lock, so a manual pass
    requested while a scheduled one is running waits for it to finish and
    then sees its ledger updates.
    """

    def __init__(
        self,
        sources: list[Source],
        source_api: FormSource,
        sink: MessageSink,
        ledger: LedgerStore,
        composer: MessageComposer,
        *,
        require_reference_url: bool = True,
    ) -> None:
        self._sources = list(sources)
        self._source_api = source_api
        self._sink = sink
        self._ledger = ledger
        self._composer = composer
        self._require_reference_url = require_reference_url
        self._lock = asyncio.Lock()

        self.last_pass: PassSummary | None = None
        self.passes_completed: int = 0
        self.records_delivered: int = 0

    @property
    def sources(self) -> list[Source]:
        return list(self._sources)

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    async def run_pass(self, trigger: str = "scheduled") -> PassSummary:
        """Reconcile every source once and return what happened."""
        if self._lock.locked():
            logger.info("pass_waiting", trigger=trigger)
        async with self._lock:
            summary = PassSummary(trigger=trigger)
            logger.info("pass_started", trigger=trigger, sources=len(self._sources))
            for source in self._sources:
                summary.sources.append(await self.reconcile_source(source))
            summary.finished_at = datetime.now(UTC)

            self.last_pass = summary
            self.passes_completed += 1
            self.records_delivered += summary.delivered
            logger.info(
                "pass_finished",
                trigger=trigger,
                delivered=summary.delivered,
                found_new=summary.found_new,
            )
            return summary

    def diff(self, source_id: str, records: Iterable[RawRecord]) -> list[RawRecord]:
        """Return the records not yet delivered, oldest submission first.

        Identity is the record id alone; submission times only order.
        """
        delivered = self._ledger.delivered_ids(source_id)
        fresh: dict[str, RawRecord] = {}
        for record in records:
            if record.record_id not in delivered and record.record_id not in fresh:
                fresh[record.record_id] = record
        return sorted(fresh.values(), key=lambda r: (r.submitted_at, r.record_id))

    async def reconcile_source(self, source: Source) -> SourceResult:
        result = SourceResult(source_id=source.source_id)
        log = logger.bind(source_id=source.source_id)

        try:
            schema = await self._source_api.get_form_schema(source.source_id)
            records = await self._source_api.list_responses(source.source_id)
        except SourceAPIError as exc:
            log.error(
                "source_fetch_failed",
                status=exc.status,
                error_class=exc.error_class.value,
                error=str(exc),
            )
            result.error = str(exc)
            return result
        except Exception as exc:
            log.exception("source_fetch_failed", error=str(exc))
            result.error = str(exc)
            return result

        result.fetched = len(records)
        try:
            await self._deliver_pending(source, schema, records, result)
        except Exception as exc:
            log.exception("source_reconcile_failed", error=str(exc))
            result.error = str(exc)
        return result

    async def _deliver_pending(
        self,
        source: Source,
        schema: FormSchema,
        records: list[RawRecord],
        result: SourceResult,
    ) -> None:
        log = logger.bind(source_id=source.source_id)
        pending = self.diff(source.source_id, records)
        result.new = len(pending)
        form_title = schema.title or source.source_id
        if not pending:
            log.info("no_new_responses", form=form_title, fetched=result.fetched)
            return

        log.info("new_responses_found", form=form_title, count=len(pending))
        for raw in pending:
            if await self._process_record(source, schema, raw):
                result.delivered += 1
            else:
                result.failed += 1

    # ------------------------------------------------------------------
    # Single record
    # ------------------------------------------------------------------

    async def _process_record(self, source: Source, schema: FormSchema, raw: RawRecord) -> bool:
        log = logger.bind(source_id=source.source_id, record_id=raw.record_id)
        try:
            record = normalize(raw, schema)
            payload = self._composer.compose(record, source.destination)
            thread_id = await self.deliver(source, payload)
        except DeliveryError as exc:
            log.warning("record_delivery_failed", submitted_at=raw.submitted_at.isoformat(), error=str(exc))
            return False
        except Exception as exc:
            log.exception(
                "record_delivery_failed",
                submitted_at=raw.submitted_at.isoformat(),
                error=str(exc),
            )
            return False

        self._ledger.mark_delivered(source.source_id, record, title=payload.title)
        await self._ledger.commit()
        log.info("record_delivered", thread_id=thread_id, title=payload.title)
        return True

    async def deliver(self, source: Source, payload: MessagePayload) -> str:
        """Publish *payload* for *source* and return the new thread id.

        Configuration problems raise :class:`DeliveryError` before the sink
        is touched.  Any sink failure up to the last follow-up propagates;
        a failed role mention is only logged.
        """
        destination = source.destination
        if self._require_reference_url and not destination.external_reference_url:
            raise DeliveryError(f"no external reference URL configured for {source.source_id}")

        channel = await self._sink.resolve_channel(destination.channel_id)
        if channel is None:
            raise DeliveryError(f"channel {destination.channel_id} is not an available forum")

        applied_tags: list[str] = []
        if destination.tag:
            tag_id = await self._sink.ensure_tag(channel, destination.tag)
            if tag_id:
                applied_tags.append(tag_id)

        thread_id = await self._sink.create_thread(
            channel,
            payload.title,
            payload.initial_body,
            applied_tags,
            payload.action_groups,
        )
        for segment in payload.overflow_segments:
            await self._sink.send_followup(thread_id, segment)

        try:
            role_id = await self._sink.resolve_role()
            if role_id:
                await self._sink.mention_role(thread_id, role_id)
        except Exception as exc:
            logger.warning("role_mention_failed", thread_id=thread_id, error=str(exc))

        return thread_id
