"""
Contact identity consolidation.

Every identity group is a flat star: one primary contact plus secondaries whose
``linkedId`` points straight at it. A submission is classified against the
stored contacts, may create a contact or merge two groups, and is answered with
the consolidated view of the resulting group. When two groups merge, the
primary with the oldest ``(createdAt, id)`` survives and the whole newer group
is repointed to it with a single predicate update.
"""

import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional

from config import settings
from contact_store import ContactSession, ContactStore
from db_models import Contact, ContactResponse, LinkPrecedence, linkage_problem
from errors import ConflictError, NotFoundError, ValidationError
from logging_setup import get_logger

logger = get_logger(__name__)


class Scenario(str, Enum):
    NO_MATCH = "no_match"
    EXACT_DUPLICATE = "exact_duplicate"
    NEW_SECONDARY = "new_secondary"
    MERGE_PRIMARIES = "merge_primaries"
    MERGE_ONE_SECONDARY = "merge_one_secondary"
    MERGE_SECONDARIES = "merge_secondaries"
    SAME_GROUP = "same_group"


@dataclass
class Match:
    scenario: Scenario
    by_email: Optional[Contact] = None
    by_phone: Optional[Contact] = None

    @property
    def contact(self) -> Optional[Contact]:
        return self.by_email or self.by_phone


def resolve_primary(session: ContactSession, contact: Contact) -> Contact:
    """Return the primary of ``contact``'s group.

    A secondary pointing at another secondary only exists in legacy data; it is
    followed one extra hop. Deeper chains and cycles raise NotFoundError.
    """
    if contact.is_primary:
        return contact
    if contact.linkedId is None:
        raise NotFoundError(f"Secondary contact {contact.id} has no linkedId")

    parent = session.find_by_id(contact.linkedId)
    if parent.is_primary:
        return parent

    logger.warning("Chained secondary linkage", contact_id=contact.id, linked_id=parent.id)
    if parent.linkedId is not None and parent.linkedId != contact.id:
        root = session.find_by_id(parent.linkedId)
        if root.is_primary:
            return root

    raise NotFoundError(f"Contact {contact.id} does not resolve to a primary contact")


def resolve_secondaries(session: ContactSession, contact: Contact) -> List[int]:
    """Ids of the secondaries in ``contact``'s group, ascending."""
    primary = resolve_primary(session, contact)
    return session.find_secondaries_of(primary.id)


def classify(session: ContactSession, email: Optional[str], phone_number: Optional[str]) -> Match:
    by_email = session.find_by_email(email) if email else None
    by_phone = session.find_by_phone(phone_number) if phone_number else None

    if by_email is None and by_phone is None:
        return Match(Scenario.NO_MATCH)

    if by_email is None or by_phone is None or by_email.id == by_phone.id:
        # A submitted value that matched nothing is the only new information
        # a single match can carry.
        carries_new_value = (email and by_email is None) or (phone_number and by_phone is None)
        scenario = Scenario.NEW_SECONDARY if carries_new_value else Scenario.EXACT_DUPLICATE
        return Match(scenario, by_email, by_phone)

    if by_email.is_primary and by_phone.is_primary:
        scenario = Scenario.MERGE_PRIMARIES
    elif by_email.is_primary or by_phone.is_primary:
        scenario = Scenario.MERGE_ONE_SECONDARY
    elif by_email.linkedId != by_phone.linkedId:
        scenario = Scenario.MERGE_SECONDARIES
    else:
        scenario = Scenario.SAME_GROUP
    return Match(scenario, by_email, by_phone)


def _by_age(a: Contact, b: Contact):
    return (a, b) if a.age_key <= b.age_key else (b, a)


def _absorb(session: ContactSession, older: Contact, newer: Contact) -> Contact:
    # Demotes the newer primary and repoints all of its secondaries at once.
    repointed = session.update_where(newer.id, older.id, LinkPrecedence.SECONDARY)
    logger.info(
        "Merged contact groups",
        primary_id=older.id,
        demoted_id=newer.id,
        repointed=repointed,
    )
    return older


def merge_primaries(session: ContactSession, a: Contact, b: Contact) -> Contact:
    older, newer = _by_age(a, b)
    return _absorb(session, older, newer)


def merge_one_secondary(session: ContactSession, a: Contact, b: Contact) -> Contact:
    primary, secondary = (a, b) if a.is_primary else (b, a)
    if secondary.linkedId == primary.id:
        return primary

    other = resolve_primary(session, secondary)
    if other.id == primary.id:
        return primary

    older, newer = _by_age(primary, other)
    return _absorb(session, older, newer)


def merge_secondaries(session: ContactSession, x: Contact, y: Contact) -> Contact:
    # Group roots are compared by their own age, never by raw linkedId values.
    root_x = resolve_primary(session, x)
    root_y = resolve_primary(session, y)
    if root_x.id == root_y.id:
        return root_x

    older, newer = _by_age(root_x, root_y)
    return _absorb(session, older, newer)


def _dedup(values: Iterable[Optional[str]]) -> List[str]:
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def build_view(
    session: ContactSession,
    contact: Contact,
    email: Optional[str] = None,
    phone_number: Optional[str] = None,
) -> ContactResponse:
    """Primary's values first, then the request's, then the rest of the group by age."""
    primary = resolve_primary(session, contact)
    members = session.find_group(primary.id)[1:]

    return ContactResponse(
        primaryContactId=primary.id,
        emails=_dedup([primary.email, email] + [c.email for c in members]),
        phoneNumbers=_dedup([primary.phoneNumber, phone_number] + [c.phoneNumber for c in members]),
        secondaryContactIds=resolve_secondaries(session, primary),
    )


def _clean(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class ConsolidationService:
    """Single entry point: ``submit(email, phone_number)``.

    The whole lookup, classify, write and view sequence runs in one store
    transaction. A lost write race (ConflictError) restarts the submission from
    the lookup after an exponential backoff with jitter; after
    ``max_attempts`` the conflict is raised to the caller.
    """

    def __init__(
        self,
        store: ContactStore,
        *,
        max_attempts: int = None,
        base_backoff: float = None,
        max_backoff: float = None,
        sleep=time.sleep,
    ):
        self._store = store
        self.max_attempts = settings.CONSOLIDATE_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.base_backoff = settings.CONSOLIDATE_BASE_BACKOFF if base_backoff is None else base_backoff
        self.max_backoff = settings.CONSOLIDATE_MAX_BACKOFF if max_backoff is None else max_backoff
        self._sleep = sleep

    def submit(self, email: Optional[str] = None, phone_number: Optional[str] = None) -> ContactResponse:
        email = _clean(email)
        phone_number = _clean(phone_number)
        if not email and not phone_number:
            raise ValidationError("Either email or phoneNumber must be provided")

        attempt = 0
        while True:
            attempt += 1
            try:
                return self._store.run_atomic(
                    lambda session: self._consolidate(session, email, phone_number)
                )
            except ConflictError:
                if attempt >= self.max_attempts:
                    logger.error("Giving up after repeated write conflicts", attempts=attempt)
                    raise
                delay = min(self.max_backoff, self.base_backoff * (2 ** (attempt - 1)))
                delay = delay + random.uniform(0, delay / 2)
                logger.warning("Retrying submission after write conflict", attempt=attempt, delay=delay)
                self._sleep(delay)
            except NotFoundError as e:
                logger.error("Contact linkage is inconsistent", error=e.message)
                raise

    def _consolidate(self, session: ContactSession, email, phone_number) -> ContactResponse:
        match = classify(session, email, phone_number)
        scenario = match.scenario

        if scenario == Scenario.NO_MATCH:
            root = session.insert(email, phone_number)
        elif scenario == Scenario.EXACT_DUPLICATE:
            root = resolve_primary(session, match.contact)
        elif scenario == Scenario.NEW_SECONDARY:
            root = resolve_primary(session, match.contact)
            session.insert(email, phone_number, root.id, LinkPrecedence.SECONDARY)
        elif scenario == Scenario.MERGE_PRIMARIES:
            root = merge_primaries(session, match.by_email, match.by_phone)
        elif scenario == Scenario.MERGE_ONE_SECONDARY:
            root = merge_one_secondary(session, match.by_email, match.by_phone)
        elif scenario == Scenario.MERGE_SECONDARIES:
            root = merge_secondaries(session, match.by_email, match.by_phone)
        else:
            root = match.by_email

        view = build_view(session, root, email, phone_number)
        logger.info("Consolidated contact", scenario=scenario.value, primary_id=view.primaryContactId)
        return view

    def import_contact(
        self,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
        linked_id: Optional[int] = None,
        precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
        contact_id: Optional[int] = None,
    ) -> Contact:
        """Store a contact row as given, without classification or merging."""
        problem = linkage_problem(precedence, linked_id)
        if problem:
            raise ValidationError(f"Cannot import contact: {problem}")

        contact = self._store.run_atomic(
            lambda session: session.insert(
                _clean(email), _clean(phone_number), linked_id, precedence, contact_id
            )
        )
        logger.info("Imported contact", contact_id=contact.id, precedence=contact.linkPrecedence.value)
        return contact

    def list_contacts(self) -> List[Contact]:
        return self._store.run_atomic(lambda session: session.list_all())
