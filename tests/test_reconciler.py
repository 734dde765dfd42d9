"""Tests for formrelay.reconciler."""

from __future__ import annotations

import asyncio
import itertools
import json
from datetime import datetime
from pathlib import Path

import pytest
import pytest_asyncio

from formrelay.composer import MessageComposer
from formrelay.errors import SourceAPIError
from formrelay.ledger import LedgerStore
from formrelay.models import DestinationMapping, MessagePayload, RawRecord, Source, TextAnswer
from formrelay.normalizer import normalize
from formrelay.reconciler import Reconciler
from tests.conftest import FakeFormSource, FakeSink, make_record, make_schema


@pytest_asyncio.fixture
async def ledger(ledger_store: LedgerStore) -> LedgerStore:
    await ledger_store.load()
    return ledger_store


@pytest.fixture
def reconciler(
    source: Source,
    form_source: FakeFormSource,
    sink: FakeSink,
    ledger: LedgerStore,
    composer: MessageComposer,
) -> Reconciler:
    return Reconciler([source], form_source, sink, ledger, composer)


def _ledger_file(path: Path) -> dict[str, set[str]]:
    data = json.loads(path.read_text())
    return {source_id: {entry["recordId"] for entry in entries} for source_id, entries in data.items()}


# ---------------------------------------------------------------------------
# Diff
# ---------------------------------------------------------------------------


class TestDiff:
    @pytest.mark.asyncio
    async def test_ledger_containing_everything_yields_nothing_for_any_order(
        self, reconciler: Reconciler, ledger: LedgerStore
    ):
        records = [make_record(f"R{i}", hour=i) for i in range(4)]
        for record in records:
            ledger.mark_delivered("F1", normalize(record, make_schema()))
        for permutation in itertools.permutations(records):
            assert reconciler.diff("F1", permutation) == []

    @pytest.mark.asyncio
    async def test_orders_by_submission_time(self, reconciler: Reconciler):
        records = [make_record("T3", hour=12), make_record("T1", hour=8), make_record("T2", hour=10)]
        assert [r.record_id for r in reconciler.diff("F1", records)] == ["T1", "T2", "T3"]

    @pytest.mark.asyncio
    async def test_same_date_records_are_distinct(self, reconciler: Reconciler, ledger: LedgerStore):
        first = make_record("A", hour=9)
        ledger.mark_delivered("F1", normalize(first, make_schema()))
        second = make_record("B", hour=9)
        assert [r.record_id for r in reconciler.diff("F1", [first, second])] == ["B"]

    @pytest.mark.asyncio
    async def test_duplicate_ids_in_one_fetch_collapse(self, reconciler: Reconciler):
        records = [make_record("A", hour=9), make_record("A", hour=9)]
        assert len(reconciler.diff("F1", records)) == 1


# ---------------------------------------------------------------------------
# Passes
# ---------------------------------------------------------------------------


class TestRunPass:
    @pytest.mark.asyncio
    async def test_scenario_delivers_oldest_first_then_nothing(
        self, reconciler: Reconciler, form_source: FakeFormSource, sink: FakeSink, ledger_path: Path
    ):
        form_source.responses["F1"] = [
            make_record("R1", hour=10, project="Later"),
            make_record("R2", hour=9, project="Earlier"),
        ]

        summary = await reconciler.run_pass()

        assert sink.titles == [
            "2024-03-01 - Earlier - 1000 USD",
            "2024-03-01 - Later - 1000 USD",
        ]
        assert _ledger_file(ledger_path) == {"F1": {"R1", "R2"}}
        assert summary.delivered == 2
        assert summary.found_new

        second = await reconciler.run_pass()
        assert len(sink.threads) == 2
        assert second.delivered == 0
        assert not second.found_new

    @pytest.mark.asyncio
    async def test_failed_delivery_not_marked_and_retried(
        self, reconciler: Reconciler, form_source: FakeFormSource, sink: FakeSink, ledger_path: Path
    ):
        form_source.responses["F1"] = [make_record("R1", project="Flaky")]
        sink.should_fail = lambda title: True

        summary = await reconciler.run_pass()
        assert summary.sources[0].failed == 1
        assert _ledger_file(ledger_path) == {}

        sink.should_fail = lambda title: False
        await reconciler.run_pass()
        assert sink.titles == ["2024-03-01 - Flaky - 1000 USD"]
        assert _ledger_file(ledger_path) == {"F1": {"R1"}}

    @pytest.mark.asyncio
    async def test_ledger_matches_successful_deliveries_with_flaky_sink(
        self, reconciler: Reconciler, form_source: FakeFormSource, sink: FakeSink, ledger: LedgerStore
    ):
        form_source.responses["F1"] = [make_record(f"R{i}", minute=i, project=f"P{i}") for i in range(10)]
        attempts = itertools.count()
        sink.should_fail = lambda title: next(attempts) % 2 == 0

        for _ in range(3):
            await reconciler.run_pass()
            delivered_titles = set(sink.titles)
            expected = {
                f"R{i}" for i in range(10) if f"2024-03-01 - P{i} - 1000 USD" in delivered_titles
            }
            assert ledger.delivered_ids("F1") == expected

        # Nothing was delivered twice
        assert len(sink.titles) == len(set(sink.titles))

    @pytest.mark.asyncio
    async def test_failing_record_does_not_block_later_records(
        self, reconciler: Reconciler, form_source: FakeFormSource, sink: FakeSink, ledger: LedgerStore
    ):
        form_source.responses["F1"] = [
            make_record("R1", hour=8, project="Bad"),
            make_record("R2", hour=9, project="Good"),
        ]
        sink.should_fail = lambda title: "Bad" in title

        await reconciler.run_pass()
        assert ledger.delivered_ids("F1") == frozenset({"R2"})

    @pytest.mark.asyncio
    async def test_source_error_does_not_abort_other_sources(
        self,
        form_source: FakeFormSource,
        sink: FakeSink,
        ledger: LedgerStore,
        composer: MessageComposer,
        destination: DestinationMapping,
    ):
        sources = [
            Source(source_id="broken", destination=destination),
            Source(source_id="F1", destination=destination),
        ]
        form_source.errors["broken"] = SourceAPIError("boom", status=503)
        form_source.responses["F1"] = [make_record("R1")]
        reconciler = Reconciler(sources, form_source, sink, ledger, composer)

        summary = await reconciler.run_pass()

        assert summary.sources[0].error == "boom"
        assert summary.sources[1].delivered == 1
        assert ledger.delivered_ids("F1") == frozenset({"R1"})

    @pytest.mark.asyncio
    async def test_unexpected_source_error_contained(
        self, reconciler: Reconciler, form_source: FakeFormSource
    ):
        form_source.errors["F1"] = KeyError("items")
        summary = await reconciler.run_pass()
        assert summary.sources[0].error is not None
        assert reconciler.passes_completed == 1

    @pytest.mark.asyncio
    async def test_commit_failure_keeps_memory_state(
        self,
        reconciler: Reconciler,
        form_source: FakeFormSource,
        sink: FakeSink,
        ledger: LedgerStore,
        monkeypatch,
    ):
        form_source.responses["F1"] = [make_record("R1")]

        async def failing_commit() -> bool:
            return False

        monkeypatch.setattr(ledger, "commit", failing_commit)
        await reconciler.run_pass()
        await reconciler.run_pass()
        assert len(sink.threads) == 1
        assert ledger.is_delivered("F1", "R1")


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class TestDeliver:
    @pytest.mark.asyncio
    async def test_missing_reference_url_fails_before_sink(
        self, form_source: FakeFormSource, sink: FakeSink, ledger: LedgerStore, composer: MessageComposer
    ):
        source = Source(source_id="F1", destination=DestinationMapping(channel_id="123"))
        form_source.responses["F1"] = [make_record("R1")]
        reconciler = Reconciler([source], form_source, sink, ledger, composer)

        summary = await reconciler.run_pass()

        assert sink.calls == []
        assert summary.sources[0].failed == 1
        assert not ledger.is_delivered("F1", "R1")

    @pytest.mark.asyncio
    async def test_reference_url_optional_when_not_required(
        self, form_source: FakeFormSource, sink: FakeSink, ledger: LedgerStore, composer: MessageComposer
    ):
        source = Source(source_id="F1", destination=DestinationMapping(channel_id="123"))
        form_source.responses["F1"] = [make_record("R1")]
        reconciler = Reconciler([source], form_source, sink, ledger, composer, require_reference_url=False)

        await reconciler.run_pass()
        assert ledger.is_delivered("F1", "R1")

    @pytest.mark.asyncio
    async def test_unknown_channel_fails_record(
        self, reconciler: Reconciler, form_source: FakeFormSource, sink: FakeSink, ledger: LedgerStore
    ):
        sink.missing_channels.add("123456")
        form_source.responses["F1"] = [make_record("R1")]
        await reconciler.run_pass()
        assert not ledger.is_delivered("F1", "R1")
        assert not any(call[0] == "create_thread" for call in sink.calls)

    @pytest.mark.asyncio
    async def test_call_sequence_with_tag_followups_and_role(
        self, source: Source, form_source: FakeFormSource, ledger: LedgerStore, composer: MessageComposer
    ):
        sink_with_role = FakeSink(role_id="777")
        reconciler = Reconciler([source], form_source, sink_with_role, ledger, composer)
        payload = MessagePayload(
            title="t",
            initial_body="body",
            overflow_segments=["one", "two"],
        )

        thread_id = await reconciler.deliver(source, payload)

        assert sink_with_role.calls == [
            ("resolve_channel", "123456"),
            ("ensure_tag", "123456", "Grants"),
            ("create_thread", "123456", "t"),
            ("send_followup", thread_id),
            ("send_followup", thread_id),
            ("mention_role", thread_id, "777"),
        ]
        assert sink_with_role.threads[0]["tags"] == ["tag-Grants"]

    @pytest.mark.asyncio
    async def test_followup_failure_fails_record(
        self, reconciler: Reconciler, form_source: FakeFormSource, sink: FakeSink, ledger: LedgerStore
    ):
        record = make_record(
            "R1",
            answers={
                "q_project": TextAnswer(values=["Verbose"]),
                "q_summary": TextAnswer(values=["word " * 1000]),
            },
        )
        form_source.responses["F1"] = [record]
        sink.fail_followups = True

        await reconciler.run_pass()
        assert not ledger.is_delivered("F1", "R1")

    @pytest.mark.asyncio
    async def test_mention_failure_still_counts_as_delivered(
        self, source: Source, form_source: FakeFormSource, ledger: LedgerStore, composer: MessageComposer
    ):
        sink = FakeSink(role_id="777")
        sink.fail_mention = True
        form_source.responses["F1"] = [make_record("R1")]
        reconciler = Reconciler([source], form_source, sink, ledger, composer)

        await reconciler.run_pass()
        assert ledger.is_delivered("F1", "R1")


# ---------------------------------------------------------------------------
# Reentrancy
# ---------------------------------------------------------------------------


class TestReentrancy:
    @pytest.mark.asyncio
    async def test_concurrent_passes_do_not_double_deliver(
        self, reconciler: Reconciler, form_source: FakeFormSource, sink: FakeSink
    ):
        form_source.responses["F1"] = [make_record(f"R{i}", minute=i) for i in range(3)]

        original = form_source.list_responses

        async def slow_list(source_id: str):
            await asyncio.sleep(0.01)
            return await original(source_id)

        form_source.list_responses = slow_list

        scheduled, manual = await asyncio.gather(
            reconciler.run_pass(trigger="scheduled"),
            reconciler.run_pass(trigger="manual"),
        )

        assert len(sink.threads) == 3
        assert scheduled.delivered + manual.delivered == 3
        assert reconciler.passes_completed == 2

    @pytest.mark.asyncio
    async def test_busy_while_pass_runs(self, reconciler: Reconciler, form_source: FakeFormSource):
        seen: list[bool] = []
        original = form_source.list_responses

        async def observing_list(source_id: str):
            seen.append(reconciler.busy)
            return await original(source_id)

        form_source.list_responses = observing_list
        await reconciler.run_pass()
        assert seen == [True]
        assert not reconciler.busy


# ---------------------------------------------------------------------------
# Source boundary
# ---------------------------------------------------------------------------


class TestSourceBoundary:
    @pytest.mark.asyncio
    async def test_diff_failure_does_not_abort_later_sources(
        self,
        form_source: FakeFormSource,
        sink: FakeSink,
        ledger: LedgerStore,
        composer: MessageComposer,
        destination: DestinationMapping,
        monkeypatch,
    ):
        sources = [
            Source(source_id="A", destination=destination),
            Source(source_id="B", destination=destination),
        ]
        form_source.responses["A"] = [make_record("a1")]
        form_source.responses["B"] = [make_record("b1")]
        reconciler = Reconciler(sources, form_source, sink, ledger, composer)

        original_diff = reconciler.diff

        def failing_diff(source_id, records):
            if source_id == "A":
                raise TypeError("cannot order records")
            return original_diff(source_id, records)

        monkeypatch.setattr(reconciler, "diff", failing_diff)

        summary = await reconciler.run_pass()

        assert summary.sources[0].error == "cannot order records"
        assert summary.sources[0].fetched == 1
        assert summary.sources[1].delivered == 1
        assert ledger.delivered_ids("B") == frozenset({"b1"})
        assert reconciler.passes_completed == 1

    @pytest.mark.asyncio
    async def test_naive_and_aware_timestamps_in_one_fetch(
        self, reconciler: Reconciler, form_source: FakeFormSource, sink: FakeSink, ledger: LedgerStore
    ):
        naive = RawRecord(
            record_id="a1",
            submitted_at=datetime(2024, 3, 1, 11, 0),
            answers={"q_project": TextAnswer(values=["Naive"])},
        )
        form_source.responses["F1"] = [naive, make_record("a2", hour=10, project="Aware")]

        summary = await reconciler.run_pass()

        assert naive.submitted_at.tzinfo is not None
        assert summary.sources[0].error is None
        assert [title.split(" - ")[1] for title in sink.titles] == ["Aware", "Naive"]
        assert ledger.delivered_ids("F1") == frozenset({"a1", "a2"})
