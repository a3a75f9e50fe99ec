"""
Contact store: the persistence seam of the consolidation engine.

A ``ContactStore`` runs a unit of work against a ``ContactSession`` inside one
transaction. ``SqliteContactStore`` backs the service; ``InMemoryContactStore``
implements the same interface for tests and embedding.
"""

import sqlite3
import threading
from datetime import datetime
from typing import Callable, List, Optional, Protocol, TypeVar

from db_models import Contact, LinkPrecedence
from db_setup import get_db_connection, init_db
from errors import ConflictError, NotFoundError, StoreUnavailableError, ValidationError
from logging_setup import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ContactSession(Protocol):
    """Queries and writes available to a unit of work."""

    def find_by_email(self, email: str) -> Optional[Contact]:
        """Earliest-created contact with exactly this email, or None."""
        ...

    def find_by_phone(self, phone_number: str) -> Optional[Contact]:
        """Earliest-created contact with exactly this phone number, or None."""
        ...

    def find_by_id(self, contact_id: int) -> Contact:
        """Raises NotFoundError when the id does not exist."""
        ...

    def find_secondaries_of(self, primary_id: int) -> List[int]:
        """Ids linked to ``primary_id``, ascending."""
        ...

    def find_group(self, primary_id: int) -> List[Contact]:
        """The primary followed by its secondaries, oldest first."""
        ...

    def insert(
        self,
        email: Optional[str],
        phone_number: Optional[str],
        linked_id: Optional[int] = None,
        precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
        contact_id: Optional[int] = None,
    ) -> Contact:
        ...

    def update_where(
        self, match_id: int, linked_id: int, precedence: LinkPrecedence
    ) -> int:
        """Set linkage on every row with ``id == match_id OR linkedId == match_id``."""
        ...

    def list_all(self) -> List[Contact]:
        ...


class ContactStore(Protocol):
    def run_atomic(self, unit_of_work: Callable[[ContactSession], T]) -> T:
        """Commit when ``unit_of_work`` returns, roll back when it raises."""
        ...


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


class _SqliteSession:
    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def _fetch_one(self, query, params) -> Optional[Contact]:
        row = self._conn.execute(query, params).fetchone()
        return Contact(**dict(row)) if row else None

    def find_by_email(self, email):
        return self._fetch_one("""
            SELECT * FROM Contact
            WHERE email = ? AND deletedAt IS NULL
            ORDER BY createdAt ASC, id ASC
            LIMIT 1
        """, (email,))

    def find_by_phone(self, phone_number):
        return self._fetch_one("""
            SELECT * FROM Contact
            WHERE phoneNumber = ? AND deletedAt IS NULL
            ORDER BY createdAt ASC, id ASC
            LIMIT 1
        """, (phone_number,))

    def find_by_id(self, contact_id):
        contact = self._fetch_one(
            "SELECT * FROM Contact WHERE id = ? AND deletedAt IS NULL",
            (contact_id,),
        )
        if contact is None:
            raise NotFoundError(f"Contact {contact_id} does not exist")
        return contact

    def find_secondaries_of(self, primary_id):
        rows = self._conn.execute("""
            SELECT id FROM Contact
            WHERE linkedId = ? AND deletedAt IS NULL
            ORDER BY id ASC
        """, (primary_id,)).fetchall()
        return [row["id"] for row in rows]

    def find_group(self, primary_id):
        primary = self.find_by_id(primary_id)
        rows = self._conn.execute("""
            SELECT * FROM Contact
            WHERE linkedId = ? AND deletedAt IS NULL
            ORDER BY createdAt ASC, id ASC
        """, (primary_id,)).fetchall()
        return [primary] + [Contact(**dict(row)) for row in rows]

    def insert(self, email, phone_number, linked_id=None,
               precedence=LinkPrecedence.PRIMARY, contact_id=None):
        now = datetime.now().isoformat()
        precedence = LinkPrecedence(precedence).value

        if contact_id is not None:
            self._conn.execute("""
                INSERT INTO Contact (id, phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (contact_id, phone_number, email, linked_id, precedence, now, now))
            result_id = contact_id
        else:
            cursor = self._conn.execute("""
                INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (phone_number, email, linked_id, precedence, now, now))
            result_id = cursor.lastrowid

        return self.find_by_id(result_id)

    def update_where(self, match_id, linked_id, precedence):
        now = datetime.now().isoformat()
        cursor = self._conn.execute("""
            UPDATE Contact
            SET linkedId = ?, linkPrecedence = ?, updatedAt = ?
            WHERE (id = ? OR linkedId = ?) AND deletedAt IS NULL
        """, (linked_id, LinkPrecedence(precedence).value, now, match_id, match_id))
        return cursor.rowcount

    def list_all(self):
        rows = self._conn.execute(
            "SELECT * FROM Contact WHERE deletedAt IS NULL ORDER BY id ASC"
        ).fetchall()
        return [Contact(**dict(row)) for row in rows]


class SqliteContactStore:
    """Each unit of work gets its own connection and a ``BEGIN IMMEDIATE``
    transaction, so read-decide-write sequences never interleave."""

    def __init__(self, db_name: str, busy_timeout: float = None):
        self.db_name = db_name
        self.busy_timeout = busy_timeout
        try:
            init_db(db_name)
        except sqlite3.Error as e:
            logger.error("Cannot initialise contact database", db_name=db_name, error=str(e))
            raise StoreUnavailableError(f"Cannot open contact database: {e}") from e

    def run_atomic(self, unit_of_work):
        try:
            conn = get_db_connection(self.db_name, self.busy_timeout)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open contact database: {e}") from e

        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = unit_of_work(_SqliteSession(conn))
                conn.execute("COMMIT")
                return result
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        except sqlite3.OperationalError as e:
            if _is_lock_error(e):
                raise ConflictError("Contact rows are locked by a concurrent request") from e
            logger.error("Contact store failure", error=str(e))
            raise StoreUnavailableError(f"Contact store failure: {e}") from e
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Contact violates table constraints: {e}") from e
        except sqlite3.Error as e:
            logger.error("Contact store failure", error=str(e))
            raise StoreUnavailableError(f"Contact store failure: {e}") from e
        finally:
            conn.close()


class _MemorySession:
    def __init__(self, store: "InMemoryContactStore"):
        self._store = store

    def _live(self):
        return [c for c in self._store._contacts.values() if c.deletedAt is None]

    def _earliest(self, predicate):
        matches = [c for c in self._live() if predicate(c)]
        return min(matches, key=lambda c: c.age_key) if matches else None

    def find_by_email(self, email):
        return self._earliest(lambda c: c.email == email)

    def find_by_phone(self, phone_number):
        return self._earliest(lambda c: c.phoneNumber == phone_number)

    def find_by_id(self, contact_id):
        contact = self._store._contacts.get(contact_id)
        if contact is None or contact.deletedAt is not None:
            raise NotFoundError(f"Contact {contact_id} does not exist")
        return contact

    def find_secondaries_of(self, primary_id):
        return sorted(c.id for c in self._live() if c.linkedId == primary_id)

    def find_group(self, primary_id):
        primary = self.find_by_id(primary_id)
        members = [c for c in self._live() if c.linkedId == primary_id]
        return [primary] + sorted(members, key=lambda c: c.age_key)

    def insert(self, email, phone_number, linked_id=None,
               precedence=LinkPrecedence.PRIMARY, contact_id=None):
        store = self._store
        if contact_id is None:
            contact_id = store._next_id
        elif contact_id in store._contacts:
            raise ValidationError(f"Contact {contact_id} already exists")

        now = store._clock()
        contact = Contact(
            id=contact_id,
            email=email,
            phoneNumber=phone_number,
            linkedId=linked_id,
            linkPrecedence=precedence,
            createdAt=now,
            updatedAt=now,
        )
        store._contacts[contact_id] = contact
        store._next_id = max(store._next_id, contact_id + 1)
        return contact

    def update_where(self, match_id, linked_id, precedence):
        store = self._store
        now = store._clock()
        targets = [c for c in self._live() if c.id == match_id or c.linkedId == match_id]
        for contact in targets:
            store._contacts[contact.id] = contact.model_copy(update={
                "linkedId": linked_id,
                "linkPrecedence": LinkPrecedence(precedence),
                "updatedAt": now,
            })
        return len(targets)

    def list_all(self):
        return sorted(self._live(), key=lambda c: c.id)


class InMemoryContactStore:
    """Process-local store. One unit of work at a time; a failed unit of work
    leaves the records exactly as they were."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self._contacts = {}
        self._next_id = 1
        self._clock = clock
        self._lock = threading.RLock()

    def run_atomic(self, unit_of_work):
        with self._lock:
            snapshot = dict(self._contacts)
            next_id = self._next_id
            try:
                return unit_of_work(_MemorySession(self))
            except BaseException:
                self._contacts = snapshot
                self._next_id = next_id
                raise
