import sqlite3
from concurrent.futures import ThreadPoolExecutor

import pytest

from shareaudit.errors import LinkNotFound, StorageUnavailable
from shareaudit.models import AccessEventInput, AccessStatus, GeoLocation
from shareaudit.recorder import AccessRecorder
from shareaudit.repository import utc_now
from shareaudit.service import ShareLinkService
from shareaudit.tokens import TokenIssuer


@pytest.fixture
def shared_link(links, object_store, clock, report_ref):
    service = ShareLinkService(links, object_store, TokenIssuer(links.token_exists), clock=clock)
    return service.create_link(report_ref, 7)


@pytest.fixture
def recorder(database, clock):
    return AccessRecorder(database, clock=clock)


def test_record_assigns_server_id_and_time(recorder, shared_link, clock):
    event = recorder.record(
        shared_link.id,
        AccessEventInput(ip_address="203.0.113.9", user_agent="curl/8.5", referrer="https://mail.example.com"),
    )

    assert event.id > 0
    assert event.resource_key == shared_link.id
    assert event.occurred_at == clock.now
    assert event.status is AccessStatus.GRANTED
    assert recorder.list_by_resource(shared_link.id) == [event]


def test_missing_referrer_becomes_direct(recorder, shared_link):
    event = recorder.record(shared_link.id, AccessEventInput(ip_address="203.0.113.9", referrer=None))
    blank = recorder.record(shared_link.id, AccessEventInput(ip_address="203.0.113.9", referrer="  "))

    assert event.referrer == "direct"
    assert blank.referrer == "direct"


def test_events_listed_in_arrival_order(recorder, shared_link, clock):
    first = recorder.record(shared_link.id, AccessEventInput(ip_address="1.1.1.1"))
    clock.advance(seconds=30)
    second = recorder.record(shared_link.id, AccessEventInput(ip_address="1.1.1.2", is_download=True))
    third = recorder.record(shared_link.id, AccessEventInput(ip_address="1.1.1.3"))

    events = recorder.list_by_resource(shared_link.id)

    assert [e.id for e in events] == [first.id, second.id, third.id]
    assert second.occurred_at == third.occurred_at
    assert [e.occurred_at for e in events] == sorted(e.occurred_at for e in events)


def test_clock_stepping_back_never_reorders_events(recorder, shared_link, clock):
    first = recorder.record(shared_link.id, AccessEventInput(ip_address="1.1.1.1"))
    clock.advance(minutes=-5)
    second = recorder.record(shared_link.id, AccessEventInput(ip_address="1.1.1.1"))

    assert second.occurred_at == first.occurred_at
    assert second.id > first.id


def test_record_keeps_geo_and_status(recorder, shared_link):
    event = recorder.record(
        shared_link.id,
        AccessEventInput(
            ip_address="8.8.8.8",
            geo=GeoLocation(country="Norway", city="Oslo"),
            status=AccessStatus.EXPIRED,
        ),
    )

    stored = recorder.list_by_resource(shared_link.id)[0]
    assert stored == event
    assert stored.geo.city == "Oslo"
    assert stored.status is AccessStatus.EXPIRED


def test_record_rejects_unknown_link(recorder):
    with pytest.raises(LinkNotFound):
        recorder.record(9999, AccessEventInput(ip_address="1.1.1.1"))


def test_pagination(recorder, shared_link):
    recorded = [recorder.record(shared_link.id, AccessEventInput(ip_address=f"10.0.0.{i}")) for i in range(5)]

    page = recorder.list_by_resource(shared_link.id, limit=2, offset=1)
    tail = recorder.list_by_resource(shared_link.id, offset=3)

    assert [e.id for e in page] == [recorded[1].id, recorded[2].id]
    assert [e.id for e in tail] == [recorded[3].id, recorded[4].id]


def test_events_are_scoped_to_their_link(recorder, links, object_store, clock, report_ref, shared_link):
    service = ShareLinkService(links, object_store, TokenIssuer(links.token_exists), clock=clock)
    other = service.create_link(report_ref, 3)

    recorder.record(shared_link.id, AccessEventInput(ip_address="1.1.1.1"))
    recorder.record(other.id, AccessEventInput(ip_address="2.2.2.2"))

    assert [e.ip_address for e in recorder.list_by_resource(shared_link.id)] == ["1.1.1.1"]
    assert [e.ip_address for e in recorder.list_by_resource(other.id)] == ["2.2.2.2"]


def test_transient_storage_error_is_retried_once(recorder, shared_link, monkeypatch):
    log = recorder._log
    real_append = log._append_once
    calls = []

    def flaky(payload, scope):
        calls.append(scope)
        if len(calls) == 1:
            raise sqlite3.OperationalError("database is locked")
        return real_append(payload, scope)

    monkeypatch.setattr(log, "_append_once", flaky)

    event = recorder.record(shared_link.id, AccessEventInput(ip_address="1.1.1.1"))

    assert len(calls) == 2
    assert recorder.list_by_resource(shared_link.id) == [event]


def test_persistent_storage_error_surfaces(recorder, shared_link, monkeypatch):
    def broken(payload, scope):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(recorder._log, "_append_once", broken)

    with pytest.raises(StorageUnavailable):
        recorder.record(shared_link.id, AccessEventInput(ip_address="1.1.1.1"))


def test_access_events_cannot_be_edited(database, recorder, shared_link):
    event = recorder.record(shared_link.id, AccessEventInput(ip_address="1.1.1.1"))

    with pytest.raises(sqlite3.DatabaseError):
        with database.connect() as conn:
            conn.execute("UPDATE access_events SET ip_address = 'x' WHERE id = ?", (event.id,))
    with pytest.raises(sqlite3.DatabaseError):
        with database.connect() as conn:
            conn.execute("DELETE FROM access_events WHERE id = ?", (event.id,))

    assert recorder.list_by_resource(shared_link.id) == [event]


def test_occurred_at_within_call_window(database, shared_link):
    recorder = AccessRecorder(database)
    before = utc_now()
    event = recorder.record(shared_link.id, AccessEventInput(ip_address="1.1.1.1"))
    after = utc_now()

    assert before <= event.occurred_at <= after


def test_count_by_resource(recorder, links, object_store, clock, report_ref, shared_link):
    service = ShareLinkService(links, object_store, TokenIssuer(links.token_exists), clock=clock)
    other = service.create_link(report_ref, 3)
    for i in range(3):
        recorder.record(shared_link.id, AccessEventInput(ip_address=f"10.0.0.{i}"))
    recorder.record(other.id, AccessEventInput(ip_address="10.0.1.1"))

    assert recorder.count_by_resource(shared_link.id) == 3
    assert recorder.count_by_resource(other.id) == 1
    assert recorder.count_by_resource(999) == 0


def test_parallel_records_keep_ids_and_times_in_step(database, shared_link):
    recorder = AccessRecorder(database)
    addresses = [f"10.1.{i // 250}.{i % 250}" for i in range(200)]

    with ThreadPoolExecutor(max_workers=16) as pool:
        recorded = list(
            pool.map(lambda ip: recorder.record(shared_link.id, AccessEventInput(ip_address=ip)), addresses)
        )

    events = recorder.list_by_resource(shared_link.id)
    assert len(events) == 200
    assert recorder.count_by_resource(shared_link.id) == 200
    ids = [e.id for e in events]
    assert ids == sorted(ids)
    assert len(set(ids)) == 200
    times = [e.occurred_at for e in events]
    assert all(a <= b for a, b in zip(times, times[1:]))
    assert {e.ip_address for e in events} == set(addresses)
    assert sorted(e.id for e in recorded) == ids
