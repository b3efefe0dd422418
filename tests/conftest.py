import io
from datetime import datetime, timedelta, timezone

import pytest

from shareaudit.models import ResourceRef
from shareaudit.repository import Database, LinkRepository
from shareaudit.storage import LocalObjectStore


class ManualClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return ManualClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def database(tmp_path):
    db = Database(str(tmp_path / "shareaudit.db"))
    db.init()
    return db


@pytest.fixture
def links(database):
    return LinkRepository(database)


@pytest.fixture
def object_store(tmp_path):
    store = LocalObjectStore(str(tmp_path / "objects"))
    store.init()
    return store


@pytest.fixture
def report_ref(object_store):
    ref = ResourceRef(account_id="acct-1", bucket="reports", path="2026/q1/report.pdf", filename="report.pdf")
    object_store.put_object(ref, io.BytesIO(b"%PDF-1.7 quarterly numbers"))
    return ref
