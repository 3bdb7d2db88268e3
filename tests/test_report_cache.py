import pytest
from sqlalchemy.exc import OperationalError
from app.models.db import CachedReport, ReportCacheDocument
from app.models.db.enums import RecordStatus, ReportKind
from app.models.domain import ReportItem
from app.services.placeholder_reports import build_placeholder
from app.services.report_cache import PartialCacheStore

USER = "cache-user"
TF = "all-time"


@pytest.fixture()
def store(clock, session_factory):
    return PartialCacheStore(session_factory, expiry_hours=24, clock=clock)


def _items(*ids):
    return [ReportItem(i, ReportKind.CAMPAIGN) for i in ids]


def test_write_creates_document(store, record_factory):
    result = store.write(USER, TF, [record_factory("c1"), record_factory("c2")])
    assert result.changed == 2
    assert result.count == 2
    doc = store.read_full(USER, TF)
    assert doc is not None
    assert [r.id for r in doc.records] == ["c1", "c2"]
    assert doc.count == 2


def test_write_only_adds_new_ids(store, record_factory):
    store.write(USER, TF, [record_factory("c1", value=1), record_factory("c2", value=1)])
    result = store.write(USER, TF, [record_factory("c2", value=99), record_factory("c3", value=99)])
    assert result.changed == 1
    assert result.count == 3
    doc = store.read_full(USER, TF)
    by_id = {r.id: r for r in doc.records}
    # the cached c2 is left alone
    assert by_id["c2"].counters["opens"] == 1
    assert by_id["c3"].counters["opens"] == 99


def test_repeated_write_is_a_no_op(store, record_factory, clock):
    records = [record_factory("c1"), record_factory("c2")]
    store.write(USER, TF, records)
    first = store.history(USER, TF)
    clock.advance(minutes=5)
    result = store.write(USER, TF, records)
    assert result.skipped is True
    assert result.changed == 0
    assert result.count == 2
    # document timestamps only move when something changed
    assert store.history(USER, TF).last_updated == first.last_updated


def test_duplicate_ids_in_one_write_are_collapsed(store, record_factory):
    result = store.write(USER, TF, [record_factory("c1", value=1), record_factory("c1", value=2)])
    assert result.count == 1


def test_empty_write_is_skipped(store):
    result = store.write(USER, TF, [])
    assert result.skipped is True
    assert store.history(USER, TF) is None


def test_documents_are_isolated_per_user_and_timeframe(store, record_factory):
    store.write(USER, TF, [record_factory("c1")])
    store.write(USER, "last-30-days", [record_factory("c2")])
    store.write("someone-else", TF, [record_factory("c3")])
    assert [r.id for r in store.read_full(USER, TF).records] == ["c1"]
    assert [r.id for r in store.read_full(USER, "last-30-days").records] == ["c2"]
    assert [r.id for r in store.read_full("someone-else", TF).records] == ["c3"]


def test_read_partial_splits_cached_and_missing(store, record_factory):
    store.write(USER, TF, [record_factory("c1"), record_factory("c2"), record_factory("c9")])
    read = store.read_partial(USER, TF, _items("c1", "c2", "c3"))
    assert read is not None
    assert {r.id for r in read.reports} == {"c1", "c2"}
    assert sorted(read.cached_items) == ["c1", "c2"]
    assert [i.id for i in read.missing_items] == ["c3"]
    assert read.is_partial


def test_read_partial_without_document_is_none(store):
    assert store.read_partial(USER, TF, _items("c1")) is None


def test_read_dispatches_on_requested_items(store, record_factory):
    store.write(USER, TF, [record_factory("c1"), record_factory("c2")])
    assert store.read(USER, TF).count == 2
    assert [r.id for r in store.read(USER, TF, _items("c2")).reports] == ["c2"]


def test_placeholder_is_returned_but_still_missing(store):
    item = ReportItem("c1", ReportKind.CAMPAIGN)
    store.write(USER, TF, [build_placeholder(item)])
    read = store.read_partial(USER, TF, [item])
    assert [r.id for r in read.reports] == ["c1"]
    assert read.reports[0].is_placeholder
    assert read.cached_items == []
    assert [i.id for i in read.missing_items] == ["c1"]


def test_available_record_replaces_placeholder(store, record_factory):
    item = ReportItem("c1", ReportKind.CAMPAIGN)
    store.write(USER, TF, [build_placeholder(item)])
    result = store.write(USER, TF, [record_factory("c1", value=7)])
    assert result.changed == 1
    assert result.count == 1
    record = store.read_full(USER, TF).records[0]
    assert record.status == RecordStatus.AVAILABLE
    assert record.counters["opens"] == 7


def test_placeholder_never_replaces_available(store, record_factory):
    store.write(USER, TF, [record_factory("c1", value=7)])
    result = store.write(USER, TF, [build_placeholder(ReportItem("c1", ReportKind.CAMPAIGN))])
    assert result.changed == 0
    record = store.read_full(USER, TF).records[0]
    assert record.status == RecordStatus.AVAILABLE


def test_refresh_write_replaces_available_records(store, record_factory):
    store.write(USER, TF, [record_factory("c1", value=1)])
    result = store.write(USER, TF, [record_factory("c1", value=5)], refresh=True)
    assert result.changed == 1
    assert store.read_full(USER, TF).records[0].counters["opens"] == 5


def test_document_expires_after_24_hours(store, record_factory, clock):
    store.write(USER, TF, [record_factory("c1", fetched_at=clock())])
    clock.advance(hours=23)
    assert store.read_full(USER, TF) is not None
    clock.advance(hours=2)
    assert store.read_full(USER, TF) is None
    assert store.read_partial(USER, TF, _items("c1")) is None
    # history ignores age
    assert store.history(USER, TF) is not None


def test_expired_records_are_refreshed_by_later_writes(store, record_factory, clock):
    store.write(USER, TF, [record_factory("c1", value=1, fetched_at=clock())])
    clock.advance(hours=25)
    result = store.write(USER, TF, [record_factory("c1", value=3, fetched_at=clock())])
    assert result.changed == 1
    doc = store.read_full(USER, TF)
    assert doc is not None
    assert doc.records[0].counters["opens"] == 3


def test_list_timeframes(store, record_factory):
    store.write(USER, "last-7-days", [record_factory("c1")])
    store.write(USER, TF, [record_factory("c1"), record_factory("c2")])
    listed = store.list_timeframes(USER)
    assert [t["timeframe"] for t in listed] == ["all-time", "last-7-days"]
    assert listed[0]["count"] == 2


def test_clear_and_clear_all(store, record_factory, db_session):
    store.write(USER, TF, [record_factory("c1")])
    store.write(USER, "last-7-days", [record_factory("c2")])
    assert store.clear(USER, TF) is True
    assert store.clear(USER, TF) is False
    assert store.history(USER, TF) is None
    assert store.clear_all(USER) == 1
    assert db_session.query(CachedReport).count() == 0
    assert db_session.query(ReportCacheDocument).count() == 0


def _broken_session():
    raise OperationalError("SELECT 1", {}, Exception("database is locked"))


def test_database_failure_degrades_to_no_cache(record_factory):
    store = PartialCacheStore(_broken_session)
    assert store.history(USER, TF) is None
    assert store.read_partial(USER, TF, _items("c1")) is None
    assert store.list_timeframes(USER) == []
    result = store.write(USER, TF, [record_factory("c1")])
    assert result.skipped is True
    assert result.errors
    assert store.clear(USER, TF) is False
    assert store.clear_all(USER) == 0
