"""StatusSink merging and file writes; CaseLedger counting and retention."""

from __future__ import annotations

import json

import pytest

from conftest import ManualClock
from court.models import CaseRecord, Detection, Verdict
from state.status import MAX_RECENT_DEAD_LETTERS, CaseLedger, StatusSink


def _record(clock: ManualClock, identity: str = "alice") -> CaseRecord:
    verdict = Verdict(
        guilty=True,
        votes=(),
        identity=identity,
        detection=Detection(triggered=True, offense="overthinking", confidence=0.8),
    )
    return CaseRecord.from_verdict(verdict, now=clock())


def test_updates_merge_into_one_record():
    sink = StatusSink()
    sink.update({"running": True, "queue": {"depth": 1}})
    sink.update({"queue": {"dead": 0}})

    status = sink.snapshot()
    assert status["running"] is True
    assert status["queue"] == {"depth": 1, "dead": 0}
    assert "updated_at" in status


def test_sync_update_writes_file(tmp_path):
    path = tmp_path / "status.json"
    StatusSink(path).update({"running": True})

    assert json.loads(path.read_text())["running"] is True


@pytest.mark.asyncio
async def test_update_in_event_loop_is_written_after_flush(tmp_path):
    path = tmp_path / "nested" / "status.json"
    sink = StatusSink(path)

    sink.update({"cases_filed": 4})
    await sink.flush()

    assert json.loads(path.read_text())["cases_filed"] == 4


def test_load_keeps_existing_counters(tmp_path):
    path = tmp_path / "status.json"
    path.write_text(json.dumps({"cases_filed": 7}))
    sink = StatusSink(path)
    sink.load()

    assert CaseLedger(sink).cases_filed == 7


def test_unreadable_status_file_is_ignored(tmp_path):
    path = tmp_path / "status.json"
    path.write_text("{oops")

    assert StatusSink(path).load() == {}


def test_ledger_counts_and_summarizes_cases(clock: ManualClock):
    sink = StatusSink()
    ledger = CaseLedger(sink, clock=clock)
    record = _record(clock)

    assert ledger.record_case(record) == 1
    assert sink.get("cases_filed") == 1
    assert sink.get("last_case")["case_id"] == record.case_id
    assert ledger.recent_cases()[0]["verdict"] == "GUILTY"


def test_dead_letters_are_counted(clock: ManualClock):
    sink = StatusSink()
    ledger = CaseLedger(sink, clock=clock)

    ledger.record_dead_letter("case-1", "503")
    ledger.record_dead_letter("case-2", None)

    assert sink.get("dead_letter_count") == 2
    assert [entry["case_id"] for entry in sink.get("dead_letters")] == ["case-1", "case-2"]
    assert sink.get("dead_letters")[0]["error"] == "503"


def test_dead_letter_list_is_capped_but_count_is_not(clock: ManualClock):
    sink = StatusSink()
    ledger = CaseLedger(sink, clock=clock)

    for index in range(MAX_RECENT_DEAD_LETTERS + 10):
        ledger.record_dead_letter(f"case-{index}", "503")

    listed = sink.get("dead_letters")
    assert len(listed) == MAX_RECENT_DEAD_LETTERS
    assert listed[-1]["case_id"] == f"case-{MAX_RECENT_DEAD_LETTERS + 9}"
    assert sink.get("dead_letter_count") == MAX_RECENT_DEAD_LETTERS + 10


def test_summaries_past_retention_are_pruned(clock: ManualClock):
    ledger = CaseLedger(StatusSink(), retention_days=7, clock=clock)
    ledger.record_case(_record(clock, "old"))

    clock.advance(days=8)
    ledger.record_case(_record(clock, "new"))

    assert [case["identity"] for case in ledger.recent_cases()] == ["new"]
    assert ledger.cases_filed == 2
