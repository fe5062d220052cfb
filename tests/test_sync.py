from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from permitmap.etl.socrata import SocrataError, TransientSocrataError
from permitmap.etl.staging import PERMIT_COLUMNS, MalformedRecordError, parse_timestamp, stage_page
from permitmap.etl.state import SyncStateStore
from permitmap.etl.sync import EPOCH, IngestionEngine, InvalidSyncRequest
from permitmap.etl.upsert import UpsertResult


DATASET = "ipu4-2q9a"
BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _record(identifier: str, minutes: int, **fields) -> Dict[str, Any]:
    stamp = (BASE + timedelta(minutes=minutes)).strftime("%Y-%m-%dT%H:%M:%S.000")
    return {":id": identifier, ":updated_at": stamp, **fields}


class FakeSource:
    """Applies the same rolling filter and ordering as the SODA query."""

    def __init__(self, records: List[Dict[str, Any]], *, newest: Optional[str] = "yes") -> None:
        self.records = records
        self.newest = newest
        self.calls: list[dict] = []
        self.preflight_calls = 0
        self.fail_on_call: Optional[int] = None
        self.preflight_error: Optional[Exception] = None

    def fetch_page(self, *, after, after_id=None, until=None, limit=5000):
        self.calls.append({"after": after, "after_id": after_id, "until": until, "limit": limit})
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise TransientSocrataError("upstream 503 after retries")
        after_ms = after.replace(microsecond=after.microsecond // 1000 * 1000)

        def admitted(record):
            stamp = parse_timestamp(record[":updated_at"])
            if until is not None and stamp > until:
                return False
            if stamp > after_ms:
                return True
            return after_id is not None and stamp == after_ms and record[":id"] > after_id

        matching = sorted(
            (r for r in self.records if admitted(r)),
            key=lambda r: (parse_timestamp(r[":updated_at"]), r[":id"]),
        )
        return matching[:limit]

    def newest_updated_after(self, watermark):
        self.preflight_calls += 1
        if self.preflight_error is not None:
            raise self.preflight_error
        return self.newest


class InMemoryPermitStore:
    """Page writer with the insert/update/no-op semantics of the SQL upsert."""

    def __init__(self) -> None:
        self.permits: Dict[str, tuple] = {}
        self.applied_pages: List[int] = []

    def apply(self, records) -> UpsertResult:
        staged = stage_page(records)
        id_index = 1 + PERMIT_COLUMNS.index("id")
        updated_index = 1 + PERMIT_COLUMNS.index("updated_at")
        raw_index = 1 + PERMIT_COLUMNS.index("raw")
        newest: Dict[str, tuple] = {}
        for row in staged.permits:
            current = newest.get(row[id_index])
            if current is None or (row[updated_index], row[0]) > (current[updated_index], current[0]):
                newest[row[id_index]] = row
        inserted = updated = 0
        for key, row in newest.items():
            previous = self.permits.get(key)
            if previous is None:
                inserted += 1
            elif (previous[updated_index], previous[raw_index]) != (row[updated_index], row[raw_index]):
                updated += 1
            else:
                continue
            self.permits[key] = row
        self.applied_pages.append(len(records))
        max_updated = max(row[updated_index] for row in staged.permits)
        return UpsertResult(inserted=inserted, updated=updated, max_updated_at=max_updated, located=staged.located)


class FakeState:
    def __init__(self, watermark: Optional[datetime] = None) -> None:
        self.watermark = watermark
        self.writes: list[datetime] = []

    def get_watermark(self, dataset_id: str) -> Optional[datetime]:
        return self.watermark

    def advance_watermark(self, dataset_id: str, watermark: datetime) -> Optional[datetime]:
        self.writes.append(watermark)
        if self.watermark is None or watermark > self.watermark:
            self.watermark = watermark
        return self.watermark


def _engine(source, store=None, state=None, *, page_size: int = 2, preflight: bool = True):
    store = store or InMemoryPermitStore()
    state = state or FakeState()
    engine = IngestionEngine(source, store, state, dataset_id=DATASET, page_size=page_size, preflight=preflight)
    return engine, store, state


def test_historical_sync_paginates_until_short_page_and_persists_watermark():
    records = [_record(f"P{i}", i) for i in range(5)]
    source = FakeSource(records)
    engine, store, state = _engine(source)

    result = engine.sync("historical")

    assert result.processed == 5
    assert result.inserted == 5
    assert result.pages == 3
    assert [call["after"] for call in source.calls][0] == EPOCH
    assert set(store.permits) == {f"P{i}" for i in range(5)}
    assert state.watermark == BASE + timedelta(minutes=4)
    assert result.to_payload()["lastSyncedUpdatedAt"] == "2024-01-01T00:04:00+00:00"


def test_exact_multiple_of_page_size_ends_on_empty_page():
    source = FakeSource([_record(f"P{i}", i) for i in range(4)])
    engine, _, _ = _engine(source)

    result = engine.sync("historical")

    assert result.processed == 4
    assert len(source.calls) == 3
    assert result.pages == 2


def test_rolling_watermark_follows_store_reported_maximum():
    source = FakeSource([_record(f"P{i}", i) for i in range(4)])
    engine, _, _ = _engine(source)

    engine.sync("historical")

    assert source.calls[1]["after"] == BASE + timedelta(minutes=1)
    assert source.calls[1]["after_id"] == "P1"
    assert source.calls[2]["after"] == BASE + timedelta(minutes=3)


def test_records_sharing_a_timestamp_across_page_boundary_are_not_skipped():
    records = [_record("A", 0), _record("B", 0), _record("C", 0), _record("D", 1)]
    source = FakeSource(records)
    engine, store, _ = _engine(source)

    result = engine.sync("historical")

    assert set(store.permits) == {"A", "B", "C", "D"}
    assert result.processed == 4


def test_incremental_starts_from_stored_watermark():
    stored = BASE + timedelta(minutes=2)
    source = FakeSource([_record(f"P{i}", i) for i in range(5)])
    engine, store, state = _engine(source, state=FakeState(stored))

    result = engine.sync("incremental")

    assert source.calls[0]["after"] == stored
    assert set(store.permits) == {"P3", "P4"}
    assert result.inserted == 2
    assert state.watermark == BASE + timedelta(minutes=4)


def test_incremental_without_any_watermark_starts_at_epoch_without_preflight():
    source = FakeSource([_record("P0", 0)])
    engine, _, state = _engine(source)

    engine.sync("incremental")

    assert source.preflight_calls == 0
    assert source.calls[0]["after"] == EPOCH
    assert state.watermark == BASE


def test_preflight_short_circuits_when_nothing_is_newer():
    stored = BASE + timedelta(minutes=10)
    source = FakeSource([_record("P0", 0)], newest=None)
    engine, store, state = _engine(source, state=FakeState(stored))

    result = engine.sync("incremental")

    assert result.skipped is True
    assert result.processed == 0
    assert source.calls == []
    assert state.writes == []
    assert result.to_payload()["message"] == "No new data to sync"


def test_failed_preflight_falls_back_to_pagination():
    source = FakeSource([_record("P9", 9)])
    source.preflight_error = SocrataError("probe rejected")
    engine, store, _ = _engine(source, state=FakeState(BASE))

    result = engine.sync("incremental")

    assert result.processed == 1
    assert "P9" in store.permits


def test_explicit_range_never_touches_persisted_state():
    source = FakeSource([_record(f"P{i}", i) for i in range(6)])
    state = FakeState(BASE + timedelta(minutes=5))
    engine, store, _ = _engine(source, state=state)

    result = engine.sync(
        "incremental",
        since=(BASE + timedelta(minutes=1)).isoformat(),
        until=(BASE + timedelta(minutes=3)).isoformat(),
    )

    assert set(store.permits) == {"P2", "P3"}
    assert state.writes == []
    assert source.preflight_calls == 0
    payload = result.to_payload()
    assert payload["dateRange"] == {
        "since": "2024-01-01T00:01:00+00:00",
        "until": "2024-01-01T00:03:00+00:00",
    }
    assert "(date range:" in payload["message"]


def test_failed_run_does_not_advance_watermark():
    source = FakeSource([_record(f"P{i}", i) for i in range(6)])
    source.fail_on_call = 2
    state = FakeState(None)
    engine, store, _ = _engine(source, state=state)

    with pytest.raises(TransientSocrataError):
        engine.sync("historical")

    assert state.writes == []
    assert len(store.permits) == 2


def test_malformed_page_aborts_run_without_watermark_write():
    records = [_record("P0", 0), _record("P1", 1, issuance_date="not a date")]
    state = FakeState(None)
    engine, store, _ = _engine(FakeSource(records), state=state)

    with pytest.raises(MalformedRecordError):
        engine.sync("historical")

    assert store.permits == {}
    assert state.writes == []


def test_rerunning_a_range_is_idempotent():
    records = [_record(f"P{i}", i, permit_status="ISSUED") for i in range(3)]
    store = InMemoryPermitStore()

    first = _engine(FakeSource(records), store=store)[0].sync("historical")
    snapshot = dict(store.permits)
    second = _engine(FakeSource(records), store=store)[0].sync("historical")

    assert first.inserted == 3
    assert (second.inserted, second.updated) == (0, 0)
    assert store.permits == snapshot


def test_watermark_is_monotonic_and_no_newer_record_is_skipped():
    records = [_record(f"P{i}", i) for i in range(3)]
    source = FakeSource(records)
    state = FakeState(None)
    store = InMemoryPermitStore()
    engine, _, _ = _engine(source, store=store, state=state, preflight=False)

    history = []
    engine.sync("incremental")
    history.append(state.watermark)

    records.append(_record("P3", 3))
    records.append(_record("P1", 7, permit_status="REVOKED"))
    engine.sync("incremental")
    history.append(state.watermark)

    engine.sync("incremental")
    history.append(state.watermark)

    assert history == sorted(history)
    assert history[-1] == BASE + timedelta(minutes=7)
    assert set(store.permits) == {"P0", "P1", "P2", "P3"}


def test_invalid_requests_are_rejected_before_any_io():
    source = FakeSource([])
    engine, _, state = _engine(source)

    with pytest.raises(InvalidSyncRequest):
        engine.sync("sideways")
    with pytest.raises(InvalidSyncRequest):
        engine.sync("incremental", since="yesterday-ish")
    with pytest.raises(InvalidSyncRequest):
        engine.sync("incremental", since="2024-02-01", until="2024-01-01")
    assert source.calls == []
    assert state.writes == []


def test_empty_upstream_is_a_successful_no_op():
    engine, _, state = _engine(FakeSource([]))

    result = engine.sync("historical")

    assert result.processed == 0
    assert result.new_watermark is None
    assert state.writes == []
    assert result.to_payload()["success"] is True


class StateTablePg:
    """Answers the two sync-state statements from a dict, plus permit max(updated_at)."""

    def __init__(self, store: InMemoryPermitStore) -> None:
        self.store = store
        self.rows: Dict[str, datetime] = {}

    def fetch_one(self, sql, params=None):
        if "FROM dataset_sync_state" in sql and "INSERT" not in sql:
            value = self.rows.get(params[0])
            return (value,) if value is not None else None
        if "INSERT INTO dataset_sync_state" in sql:
            dataset_id, watermark = params
            current = self.rows.get(dataset_id)
            self.rows[dataset_id] = watermark if current is None else max(current, watermark)
            return (self.rows[dataset_id],)
        if "FROM dob_permits" in sql:
            index = 1 + PERMIT_COLUMNS.index("updated_at")
            stamps = [row[index] for row in self.store.permits.values()]
            return (max(stamps) if stamps else None,)
        raise AssertionError(f"unexpected statement: {sql}")


def test_range_backfill_before_first_incremental_run_skips_nothing():
    records = [_record("EARLY", 1), _record("MID", 25), _record("LATE", 35)]
    store = InMemoryPermitStore()
    state = SyncStateStore(StateTablePg(store))
    engine, _, _ = _engine(FakeSource(records), store=store, state=state)

    engine.sync(
        "incremental",
        since=(BASE + timedelta(minutes=20)).isoformat(),
        until=(BASE + timedelta(minutes=40)).isoformat(),
    )
    assert set(store.permits) == {"MID", "LATE"}
    assert state.get_watermark(DATASET) is None

    result = engine.sync("incremental")

    assert "EARLY" in store.permits
    assert result.inserted == 1
    assert state.get_watermark(DATASET) == BASE + timedelta(minutes=35)
