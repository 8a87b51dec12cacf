from __future__ import annotations

import asyncio

from config import Settings
from history_manager import (
    HistoryLoadError,
    HistoryManager,
    classify_history_record,
    format_history_input,
    format_history_result,
)
from models import CacheProvenance, ColumnMapping, HistoryEntry, ProspectRow
from row_processor import SingleLookup

MAPPING = ColumnMapping(name_header="Full Name", company_header="Org", email_header="")


class Clock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _rows():
    return [
        ProspectRow(id="0", name="Ann", company="A Co", email="ann@a.co", status="completed",
                    original_data={"Full Name": "Ann", "Org": "A Co"}),
        ProspectRow(id="1", name="Bob", company="B Co", status="not_found",
                    original_data={"Full Name": "Bob", "Org": "B Co"}),
    ]


def test_finalize_batch_persists_stub_and_detail_rows(settings, db_client, fake_supabase):
    manager = HistoryManager(db_client, settings, clock=Clock())

    entry = asyncio.run(manager.finalize_batch("enrich", _rows(), MAPPING, "leads.xlsx", ["Full Name", "Org"], "u1"))

    stored = fake_supabase.tables["history"]
    assert len(stored) == 1
    assert entry.id == stored[0]["id"]
    assert entry.persisted is True
    assert entry.input == "leads.xlsx"
    assert entry.result == "2 Records processed"
    assert stored[0]["feature"] == "enrich"
    assert stored[0]["mapping"] == {"nameHeader": "Full Name", "companyHeader": "Org", "emailHeader": ""}
    assert stored[0]["data"] == [
        {"user_id": "u1", "hasCached": False, "cachedAt": None, "cachedType": None, "synced": False}
    ]

    details = fake_supabase.tables["prospect_results"]
    assert [(d["name"], d["email"], d["status"]) for d in details] == [
        ("Ann", "ann@a.co", "completed"),
        ("Bob", None, "not_found"),
    ]
    assert all(d["history_id"] == entry.id for d in details)
    assert manager.buckets.enrich == [entry]


def test_batch_without_label_uses_default(settings):
    manager = HistoryManager(None, settings, clock=Clock())
    entry = asyncio.run(manager.finalize_batch("enrich", _rows(), None, None))
    assert entry.input == "Bulk Session"
    assert entry.id.startswith("bulk-")
    assert entry.persisted is False


def test_verify_detail_rows_skip_rows_without_email(settings, db_client, fake_supabase):
    manager = HistoryManager(db_client, settings, clock=Clock())
    rows = [
        ProspectRow(id="0", email="a@b.com", status="deliverable",
                    cache=CacheProvenance(cached_at="2024-01-01T00:00:00+00:00", cached_via="single")),
        ProspectRow(id="1", status="failed", error="No email found"),
    ]

    entry = asyncio.run(manager.finalize_batch("verify", rows, None, "list.csv", user_id="u1"))

    details = fake_supabase.tables["verification_results"]
    assert len(details) == 1
    assert details[0]["email"] == "a@b.com"
    assert details[0]["result"]["cached"] is True
    assert details[0]["result"]["cachedType"] == "single"
    assert entry.has_cached is True
    assert entry.cached_at == "2024-01-01T00:00:00+00:00"


def test_duplicate_submit_within_window_is_dropped(settings, db_client, fake_supabase):
    clock = Clock()
    manager = HistoryManager(db_client, settings, clock=clock)
    lookup = SingleLookup(row=ProspectRow(id="single", name="Ann", company="A Co", email="ann@a.co", status="completed"))

    first = asyncio.run(manager.record_single("enrich", lookup, "u1"))
    clock.now += 1.0
    second = asyncio.run(manager.record_single("enrich", lookup, "u1"))

    assert second.id == first.id
    assert len(manager.buckets.enrich) == 1
    assert len(fake_supabase.tables["history"]) == 1

    clock.now += 5.0
    third = asyncio.run(manager.record_single("enrich", lookup, "u1"))
    assert third.id != first.id
    assert len(manager.buckets.enrich) == 2


def test_retry_entries_are_never_deduplicated(settings):
    manager = HistoryManager(None, settings, clock=Clock())
    lookup = SingleLookup(row=ProspectRow(id="single", email="a@b.com", status="risky"))

    asyncio.run(manager.record_single("verify", lookup, retry=True))
    asyncio.run(manager.record_single("verify", lookup, retry=True))

    assert [e.input for e in manager.buckets.verify] == ["Retry: a@b.com", "Retry: a@b.com"]
    assert manager.buckets.verify[0].result == "risky"


def test_history_is_capped_per_mode():
    settings = Settings(row_delay_ms=0, history_cap=3)
    clock = Clock()
    manager = HistoryManager(None, settings, clock=clock)

    for i in range(5):
        clock.now += 10
        lookup = SingleLookup(row=ProspectRow(id="single", name=f"P{i}", company="Co", status="not_found"))
        asyncio.run(manager.record_single("linkedin", lookup))

    assert [e.input for e in manager.buckets.linkedin] == ["P4 @ Co", "P3 @ Co", "P2 @ Co"]
    assert manager.buckets.enrich == []


def test_record_single_result_text(settings):
    manager = HistoryManager(None, settings, clock=Clock())
    found = SingleLookup(row=ProspectRow(id="single", name="Ann", company="A Co",
                                         linkedin_url="https://www.linkedin.com/in/ann", status="found"))
    missing = SingleLookup(row=ProspectRow(id="single", name="Bob", company="B Co", status="failed"))

    a = asyncio.run(manager.record_single("linkedin", found))
    b = asyncio.run(manager.record_single("enrich", missing))

    assert a.result == "https://www.linkedin.com/in/ann"
    assert b.result == "failed"
    assert b.input == "Bob @ B Co"


def test_persist_failure_keeps_entry_in_memory(settings, db_client, fake_supabase):
    fake_supabase.fail_tables.add("history")
    manager = HistoryManager(db_client, settings, clock=Clock())

    entry = asyncio.run(manager.finalize_batch("enrich", _rows(), MAPPING, "leads.xlsx", user_id="u1"))

    assert entry.persisted is False
    assert entry.id.startswith("bulk-")
    assert manager.buckets.enrich == [entry]
    assert "prospect_results" not in fake_supabase.tables


def test_fetch_and_load_minimal_bulk_entry(settings, db_client):
    writer = HistoryManager(db_client, settings, clock=Clock())
    saved = asyncio.run(writer.finalize_batch("enrich", _rows(), MAPPING, "leads.xlsx", ["Full Name", "Org"], "u1"))

    reader = HistoryManager(db_client, settings)
    buckets = asyncio.run(reader.fetch_history("u1"))

    assert [e.id for e in buckets.enrich] == [saved.id]
    entry = buckets.enrich[0]
    assert entry.minimal is True
    assert entry.mapping == MAPPING

    loaded = asyncio.run(reader.load_session(entry))
    assert loaded.kind == "bulk"
    assert loaded.source_label == "leads.xlsx"
    assert loaded.headers == ["Full Name", "Org"]
    assert loaded.mapping == MAPPING
    assert [(r.name, r.company, r.email, r.status) for r in loaded.rows] == [
        ("Ann", "A Co", "ann@a.co", "completed"),
        ("Bob", "B Co", None, "not_found"),
    ]


def test_load_single_entry_restores_inputs(settings, db_client):
    writer = HistoryManager(db_client, settings, clock=Clock())
    lookup = SingleLookup(row=ProspectRow(id="single", name="Ann", company="A Co", email="ann@a.co", status="completed"))
    asyncio.run(writer.record_single("enrich", lookup, "u1"))

    reader = HistoryManager(db_client, settings)
    entry = asyncio.run(reader.fetch_history("u1")).enrich[0]
    loaded = asyncio.run(reader.load_session(entry))

    assert loaded.kind == "single"
    assert loaded.single_inputs.name == "Ann"
    assert loaded.single_inputs.company == "A Co"
    assert loaded.rows[0].email == "ann@a.co"
    assert loaded.message == "Already Processed"


def test_load_in_memory_entry_uses_row_snapshot(settings):
    manager = HistoryManager(None, settings, clock=Clock())
    entry = asyncio.run(manager.finalize_batch("enrich", _rows(), MAPPING, "leads.xlsx", ["Full Name", "Org"]))

    loaded = asyncio.run(manager.load_session(entry))

    assert loaded.rows == entry.rows
    assert loaded.mapping == MAPPING


def test_load_minimal_entry_detail_failure(settings, db_client, fake_supabase):
    entry = HistoryEntry(id="h1", kind="bulk", feature="enrich", input="x", result="y", timestamp=0, minimal=True)
    fake_supabase.fail_tables.add("prospect_results")
    manager = HistoryManager(db_client, settings)

    try:
        asyncio.run(manager.load_session(entry))
    except HistoryLoadError as e:
        assert "Failed to load history details" in str(e)
    else:
        raise AssertionError("expected HistoryLoadError")


def test_fetch_history_marks_synced_entries(settings, db_client, fake_supabase):
    writer = HistoryManager(db_client, settings, clock=Clock())
    saved = asyncio.run(writer.finalize_batch("enrich", _rows(), MAPPING, "leads.xlsx", user_id="u1"))
    fake_supabase.seed("api_sync_results", {"user_id": "u1", "history_id": saved.id})

    buckets = asyncio.run(HistoryManager(db_client, settings).fetch_history("u1"))

    assert buckets.enrich[0].synced is True


def test_mark_synced_updates_entry(settings):
    manager = HistoryManager(None, settings, clock=Clock())
    entry = asyncio.run(manager.finalize_batch("enrich", _rows(), None, "leads.xlsx"))
    manager.mark_synced("enrich", entry.id)
    assert manager.find_entry(entry.id).synced is True


def test_mapping_store_round_trip():
    assert ColumnMapping.from_store(MAPPING.to_store()) == MAPPING
    assert ColumnMapping.from_store(None) is None


def test_classify_history_record():
    assert classify_history_record({"feature": "verify", "type": "bulk"}) == "verify"
    assert classify_history_record({"type": "bulk", "data": [{"linkedinUrl": "https://linkedin.com/in/x"}]}) == "linkedin"
    assert classify_history_record({"type": "bulk", "data": [{"name": "x"}]}) == "enrich"
    assert classify_history_record({"type": "single", "input": "a@b.com", "result": "deliverable"}) == "verify"
    assert classify_history_record({"type": "single", "input": "Ann @ A", "result": "https://www.linkedin.com/in/ann"}) == "linkedin"
    assert classify_history_record({"type": "single", "input": "Ann @ A", "result": "ann@a.co"}) == "enrich"


def test_format_history_labels():
    single = HistoryEntry(id="1", kind="single", feature="enrich", input="Ann Lee @ A Co", result="x", timestamp=0)
    verify = HistoryEntry(id="2", kind="single", feature="verify", input="johnny@acme.com", result="x", timestamp=0)
    bulk = HistoryEntry(id="3", kind="bulk", feature="enrich", input="leads.xlsx", result="x", timestamp=0)

    assert format_history_input(single) == "Ann Lee"
    assert format_history_input(verify) == "jo***@acme.com"
    assert format_history_input(bulk) == "leads.xlsx"
    assert format_history_result("johnny@acme.com") == "jo**@acme.com"
    assert format_history_result("2 Records processed") == "2 Records processed"
