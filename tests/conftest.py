from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from consolidation import ConsolidationService
from contact_store import InMemoryContactStore, SqliteContactStore


class TickingClock:
    """Every reading is one second later than the previous one."""

    def __init__(self, start=datetime(2023, 4, 1, 9, 0, 0)):
        self.now = start

    def __call__(self):
        self.now = self.now + timedelta(seconds=1)
        return self.now


def assert_flat_groups(contacts):
    by_id = {c.id: c for c in contacts}
    for contact in contacts:
        if contact.is_primary:
            assert contact.linkedId is None, contact
        else:
            assert contact.linkedId in by_id, contact
            assert by_id[contact.linkedId].is_primary, contact


def no_sleep(_delay):
    pass


@pytest.fixture
def memory_store():
    return InMemoryContactStore(clock=TickingClock())


@pytest.fixture
def sqlite_store(tmp_path):
    return SqliteContactStore(str(tmp_path / "contacts.db"), busy_timeout=5.0)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryContactStore(clock=TickingClock())
    return SqliteContactStore(str(tmp_path / "contacts.db"), busy_timeout=5.0)


@pytest.fixture
def service(memory_store):
    return ConsolidationService(memory_store, sleep=no_sleep)


@pytest.fixture
def all_contacts(memory_store):
    def _all():
        return memory_store.run_atomic(lambda session: session.list_all())

    return _all


@pytest.fixture
def api_client(sqlite_store):
    from main import app, get_consolidation_service

    service = ConsolidationService(sqlite_store, sleep=no_sleep)
    app.dependency_overrides[get_consolidation_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def store_service(store):
    return ConsolidationService(store, sleep=no_sleep)


@pytest.fixture
def store_contacts(store):
    def _all():
        return store.run_atomic(lambda session: session.list_all())

    return _all
