import pytest

from consolidation import ConsolidationService
from contact_store import InMemoryContactStore
from errors import ConflictError, StoreUnavailableError
from tests.conftest import TickingClock


class FlakyStore:
    """Loses the write race ``conflicts`` times, then behaves."""

    def __init__(self, conflicts, error=ConflictError):
        self.inner = InMemoryContactStore(clock=TickingClock())
        self.conflicts = conflicts
        self.error = error
        self.calls = 0

    def run_atomic(self, unit_of_work):
        self.calls += 1
        if self.calls <= self.conflicts:
            raise self.error("locked")
        return self.inner.run_atomic(unit_of_work)


def test_conflict_is_retried_from_the_top():
    store = FlakyStore(conflicts=2)
    delays = []
    service = ConsolidationService(store, max_attempts=5, base_backoff=0.1, max_backoff=1.0, sleep=delays.append)

    view = service.submit("a@x.com", "111")

    assert view.primaryContactId == 1
    assert store.calls == 3
    assert len(delays) == 2
    assert 0.1 <= delays[0] <= 0.15
    assert 0.2 <= delays[1] <= 0.3


def test_backoff_is_capped():
    store = FlakyStore(conflicts=4)
    delays = []
    service = ConsolidationService(store, max_attempts=5, base_backoff=0.5, max_backoff=1.0, sleep=delays.append)

    service.submit("a@x.com", "111")

    assert all(d <= 1.5 for d in delays)
    assert delays[-1] >= 1.0


def test_repeated_conflict_is_reported():
    store = FlakyStore(conflicts=10)
    service = ConsolidationService(store, max_attempts=3, base_backoff=0, sleep=lambda _: None)

    with pytest.raises(ConflictError):
        service.submit("a@x.com", "111")

    assert store.calls == 3
    assert store.inner.run_atomic(lambda s: s.list_all()) == []


def test_store_unavailable_is_not_retried():
    store = FlakyStore(conflicts=1, error=StoreUnavailableError)
    service = ConsolidationService(store, max_attempts=5, sleep=lambda _: None)

    with pytest.raises(StoreUnavailableError):
        service.submit("a@x.com", "111")

    assert store.calls == 1


def test_zero_max_attempts_is_not_replaced_by_default():
    store = FlakyStore(conflicts=10)
    service = ConsolidationService(store, max_attempts=0, sleep=lambda _: None)

    assert service.max_attempts == 0
    with pytest.raises(ConflictError):
        service.submit("a@x.com", "111")
    assert store.calls == 1
