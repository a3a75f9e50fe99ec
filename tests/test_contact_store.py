import sqlite3

import pytest

from contact_store import SqliteContactStore
from db_models import LinkPrecedence
from db_setup import get_db_connection
from errors import ConflictError, NotFoundError, StoreUnavailableError, ValidationError

SECONDARY = LinkPrecedence.SECONDARY


def test_insert_assigns_id_and_timestamps(store):
    contact = store.run_atomic(lambda s: s.insert("a@x.com", "111"))

    assert contact.id == 1
    assert contact.is_primary
    assert contact.linkedId is None
    assert contact.createdAt is not None


def test_find_by_email_and_phone_take_earliest(store):
    def _seed(s):
        s.insert("a@x.com", "111")
        s.insert("a@x.com", "222")
        s.insert("b@x.com", "111")

    store.run_atomic(_seed)

    assert store.run_atomic(lambda s: s.find_by_email("a@x.com")).id == 1
    assert store.run_atomic(lambda s: s.find_by_phone("111")).id == 1
    assert store.run_atomic(lambda s: s.find_by_email("zzz@x.com")) is None
    assert store.run_atomic(lambda s: s.find_by_phone("999")) is None


def test_find_by_id_missing_raises(store):
    with pytest.raises(NotFoundError):
        store.run_atomic(lambda s: s.find_by_id(42))


def test_find_secondaries_and_group(store):
    def _seed(s):
        s.insert("a@x.com", "111")
        s.insert("b@x.com", "222")
        s.insert("c@x.com", "333", 1, SECONDARY)
        s.insert("d@x.com", "444", 1, SECONDARY)

    store.run_atomic(_seed)

    assert store.run_atomic(lambda s: s.find_secondaries_of(1)) == [3, 4]
    assert store.run_atomic(lambda s: s.find_secondaries_of(2)) == []
    group = store.run_atomic(lambda s: s.find_group(1))
    assert [c.id for c in group] == [1, 3, 4]


def test_update_where_matches_id_or_linked_id(store):
    def _seed(s):
        s.insert("a@x.com", "111")
        s.insert("b@x.com", "222")
        s.insert("c@x.com", "333", 2, SECONDARY)
        s.insert("d@x.com", "444")

    store.run_atomic(_seed)

    updated = store.run_atomic(lambda s: s.update_where(2, 1, SECONDARY))

    assert updated == 2
    contacts = {c.id: c for c in store.run_atomic(lambda s: s.list_all())}
    assert contacts[2].linkedId == 1 and contacts[2].linkPrecedence == SECONDARY
    assert contacts[3].linkedId == 1
    assert contacts[4].is_primary
    assert contacts[1].is_primary


def test_failed_unit_of_work_rolls_back(store):
    store.run_atomic(lambda s: s.insert("a@x.com", "111"))
    store.run_atomic(lambda s: s.insert("b@x.com", "222"))

    def _half_merge(s):
        s.update_where(2, 1, SECONDARY)
        s.insert("c@x.com", "333", 1, SECONDARY)
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        store.run_atomic(_half_merge)

    contacts = store.run_atomic(lambda s: s.list_all())
    assert [c.id for c in contacts] == [1, 2]
    assert all(c.is_primary for c in contacts)


def test_insert_duplicate_id_is_rejected(store):
    store.run_atomic(lambda s: s.insert("a@x.com", "111", contact_id=7))

    with pytest.raises(ValidationError):
        store.run_atomic(lambda s: s.insert("b@x.com", "222", contact_id=7))


def test_sqlite_locked_database_is_a_conflict(tmp_path):
    db = str(tmp_path / "contacts.db")
    store = SqliteContactStore(db, busy_timeout=0.05)

    holder = get_db_connection(db, timeout=0.05)
    holder.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(ConflictError):
            store.run_atomic(lambda s: s.insert("a@x.com", "111"))
    finally:
        holder.execute("ROLLBACK")
        holder.close()

    assert store.run_atomic(lambda s: s.insert("a@x.com", "111")).id == 1


def test_sqlite_rows_survive_new_store_instance(tmp_path):
    db = str(tmp_path / "contacts.db")
    SqliteContactStore(db).run_atomic(lambda s: s.insert("a@x.com", "111"))

    conn = sqlite3.connect(db)
    try:
        assert conn.execute("SELECT COUNT(*) FROM Contact").fetchone()[0] == 1
    finally:
        conn.close()
    assert SqliteContactStore(db).run_atomic(lambda s: s.find_by_email("a@x.com")).id == 1


def test_explicit_zero_id_is_kept(store):
    contact = store.run_atomic(lambda s: s.insert("a@x.com", "111", contact_id=0))
    following = store.run_atomic(lambda s: s.insert("b@x.com", "222"))

    assert contact.id == 0
    assert following.id == 1


def test_sqlite_unopenable_database_is_unavailable(tmp_path):
    with pytest.raises(StoreUnavailableError):
        SqliteContactStore(str(tmp_path / "missing-dir" / "contacts.db"))


def test_sqlite_non_lock_failure_is_unavailable(tmp_path):
    db = str(tmp_path / "contacts.db")
    store = SqliteContactStore(db)
    conn = sqlite3.connect(db)
    try:
        conn.execute("DROP TABLE Contact")
        conn.commit()
    finally:
        conn.close()

    with pytest.raises(StoreUnavailableError):
        store.run_atomic(lambda s: s.find_by_email("a@x.com"))
