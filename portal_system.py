"""
Department Event Portal

Implements:
- Event management for administrators (create, full update, registration toggle, cascade delete)
- Registration admission: open flag, deadline, capacity and duplicate checks applied atomically per event
- Event status derived from timestamps at read time
- CSV export of an event's registrants

Storage backends live in ``portal_stores``; this module defines the contract they satisfy.
"""

from __future__ import annotations

import csv
import io
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple, TypeVar, runtime_checkable
from urllib.parse import urlparse

from email_validator import EmailNotValidError, validate_email

logger = logging.getLogger(__name__)

T = TypeVar("T")

EVENT_TYPES = ("symposium", "workshop", "contest", "seminar", "hackathon", "other")

YEAR_OF_STUDY_OPTIONS = (
    "1st Year",
    "2nd Year",
    "3rd Year",
    "4th Year",
    "PG 1st Year",
    "PG 2nd Year",
    "PhD",
    "Faculty",
    "Other",
)

# Registration field that must be unique per event
DUPLICATE_KEYS = {
    "roll_number": "student_roll_number",
    "email": "student_email",
}

CLOSING_SOON_DAYS = 3


# -----------------------------
# Data Models
# -----------------------------


@dataclass
class Event:
    """An event students can register for.

    ``max_participants`` of None means unlimited. ``registration_deadline`` is
    compared to the current time only; it may legitimately fall after ``event_date``.
    """

    id: Optional[int]
    title: str
    event_type: str
    event_date: datetime
    registration_deadline: datetime
    description: Optional[str] = None
    venue: Optional[str] = None
    max_participants: Optional[int] = None
    registration_open: bool = True
    poster_url: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Candidate:
    """A registration attempt as submitted by a student, before admission."""

    student_name: str
    student_email: str
    student_roll_number: str
    student_phone: Optional[str] = None
    department: Optional[str] = None
    year_of_study: Optional[str] = None


@dataclass
class Registration:
    """A committed registration. Created only by the admission engine, never updated."""

    id: Optional[int]
    event_id: int
    student_name: str
    student_email: str
    student_roll_number: str
    student_phone: Optional[str] = None
    department: Optional[str] = None
    year_of_study: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Profile:
    """Authenticated identity passed explicitly into administrative operations."""

    user_id: str
    email: str
    role: str = "student"
    full_name: Optional[str] = None
    id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class EventStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    DEADLINE_PASSED = "deadline_passed"
    COMPLETED = "completed"


# -----------------------------
# Errors
# -----------------------------


class PortalError(Exception):
    """Base class for every error reported to callers of the portal."""

    code = "portal_error"
    message = "Something went wrong"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or type(self).message
        super().__init__(self.message)


class ValidationError(PortalError):
    code = "validation_error"

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


class AdmissionError(PortalError):
    """A business-rule rejection. Reflects a decision, so it is never retried."""

    code = "admission_error"


class EventNotFound(AdmissionError):
    code = "event_not_found"
    message = "Event not found"

    def __init__(self, event_id: Optional[int] = None) -> None:
        self.event_id = event_id
        super().__init__()


class RegistrationClosed(AdmissionError):
    code = "registration_closed"
    message = "Registration is currently closed for this event"


class DeadlinePassed(AdmissionError):
    code = "deadline_passed"
    message = "The registration deadline has passed"


class CapacityExceeded(AdmissionError):
    code = "capacity_exceeded"
    message = "This event has reached its maximum capacity"


class DuplicateRegistration(AdmissionError):
    code = "duplicate_registration"
    message = "You have already registered for this event"


class RegistrationNotFound(PortalError):
    code = "registration_not_found"
    message = "Registration not found"


class TransientStoreError(PortalError):
    """Storage unavailable or timed out. Safe to retry with the same input."""

    code = "store_unavailable"
    message = "The event store is temporarily unavailable, please try again"


class AuthorizationError(PortalError):
    code = "not_authorized"
    message = "Not authorized"


# Store contract errors, raised by BaseStore implementations


class StoreError(Exception):
    pass


class DuplicateKeyError(StoreError):
    """The per-event uniqueness constraint on registrations was violated."""


class StoreUnavailableError(StoreError):
    """The store could not answer within its timeout."""


# -----------------------------
# Time helpers
# -----------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# -----------------------------
# Derived event status
# -----------------------------


def event_status(event: Event, now: datetime) -> EventStatus:
    """Classify an event at ``now``. Never stored; recompute on every read."""
    now = as_utc(now)
    if as_utc(event.event_date) < now:
        return EventStatus.COMPLETED
    if not event.registration_open:
        return EventStatus.CLOSED
    if as_utc(event.registration_deadline) < now:
        return EventStatus.DEADLINE_PASSED
    return EventStatus.OPEN


def can_register(event: Event, now: datetime) -> bool:
    """Whether listings should offer a registration button.

    Stricter than admission, which does not look at ``event_date``.
    """
    return event_status(event, now) is EventStatus.OPEN


def is_closing_soon(event: Event, now: datetime) -> bool:
    if not can_register(event, now):
        return False
    remaining = as_utc(event.registration_deadline) - as_utc(now)
    return remaining.days <= CLOSING_SOON_DAYS


# -----------------------------
# Intake validation
# -----------------------------


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _check_length(field: str, value: Optional[str], min_len: int, max_len: int) -> None:
    if value is None:
        if min_len:
            raise ValidationError(field, "is required")
        return
    if len(value) < min_len:
        raise ValidationError(field, f"must be at least {min_len} characters")
    if len(value) > max_len:
        raise ValidationError(field, f"must be at most {max_len} characters")


def validate_candidate(candidate: Candidate) -> Candidate:
    """Return a normalised copy of ``candidate`` or raise ValidationError.

    Roll numbers are upper-cased and emails lower-cased so uniqueness is
    case-insensitive.
    """
    name = _clean(candidate.student_name)
    _check_length("student_name", name, 2, 100)

    email = _clean(candidate.student_email)
    _check_length("student_email", email, 1, 255)
    try:
        email = validate_email(email, check_deliverability=False).normalized.lower()
    except EmailNotValidError as e:
        raise ValidationError("student_email", str(e)) from e

    roll = _clean(candidate.student_roll_number)
    _check_length("student_roll_number", roll, 1, 50)

    phone = _clean(candidate.student_phone)
    _check_length("student_phone", phone, 0, 20)
    department = _clean(candidate.department)
    _check_length("department", department, 0, 100)

    year = _clean(candidate.year_of_study)
    if year is not None and year not in YEAR_OF_STUDY_OPTIONS:
        raise ValidationError("year_of_study", f"must be one of: {', '.join(YEAR_OF_STUDY_OPTIONS)}")

    return Candidate(
        student_name=name,
        student_email=email,
        student_roll_number=roll.upper(),
        student_phone=phone,
        department=department,
        year_of_study=year,
    )


def validate_event(event: Event) -> Event:
    """Return a normalised copy of the editable event fields or raise ValidationError."""
    title = _clean(event.title)
    _check_length("title", title, 3, 200)
    description = _clean(event.description)
    _check_length("description", description, 0, 2000)
    venue = _clean(event.venue)
    _check_length("venue", venue, 0, 200)

    if event.event_type not in EVENT_TYPES:
        raise ValidationError("event_type", f"must be one of: {', '.join(EVENT_TYPES)}")
    if not isinstance(event.event_date, datetime):
        raise ValidationError("event_date", "is required")
    if not isinstance(event.registration_deadline, datetime):
        raise ValidationError("registration_deadline", "is required")

    max_participants = event.max_participants
    if max_participants is not None:
        if isinstance(max_participants, bool) or not isinstance(max_participants, int) or max_participants <= 0:
            raise ValidationError("max_participants", "must be a positive integer")

    poster_url = _clean(event.poster_url)
    if poster_url is not None:
        parsed = urlparse(poster_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError("poster_url", "must be a valid http(s) URL")

    return replace(
        event,
        title=title,
        description=description,
        venue=venue,
        event_date=as_utc(event.event_date),
        registration_deadline=as_utc(event.registration_deadline),
        max_participants=max_participants,
        registration_open=bool(event.registration_open),
        poster_url=poster_url,
    )


def registration_key(reg: Registration, duplicate_key: str = "roll_number") -> str:
    """Value that must be unique among an event's registrations."""
    return getattr(reg, DUPLICATE_KEYS[duplicate_key])


# -----------------------------
# Retry helper
# -----------------------------


def with_retry(
    max_attempts: int = 3,
    delay: float = 0.05,
    backoff: float = 2,
    exceptions: tuple = (TransientStoreError,),
) -> Callable:
    """Retry a call on transient store failures with exponential backoff.

    Only ``exceptions`` are retried; admission rejections propagate immediately.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            current_delay = delay
            attempts = max(1, max_attempts)
            for attempt in range(1, attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == attempts:
                        logger.error("Final attempt %d/%d failed for %s: %s", attempt, attempts, func.__name__, e)
                        raise
                    logger.warning(
                        "Attempt %d/%d failed for %s: %s. Retrying in %.2fs",
                        attempt, attempts, func.__name__, e, current_delay,
                    )
                    time.sleep(current_delay)
                    current_delay *= backoff
            raise TransientStoreError()

        return wrapper

    return decorator


# -----------------------------
# Store contract
# -----------------------------


# Called by the store inside its atomic admission scope with the current event
# (None if missing) and its current registration count. Raises AdmissionError to reject.
AdmissionCheck = Callable[[Optional[Event], int], None]


@runtime_checkable
class BaseStore(Protocol):
    duplicate_key: str

    # Events
    def add_event(self, event: Event) -> Event: ...
    def get_event(self, event_id: int) -> Optional[Event]: ...
    def list_events(self) -> Iterable[Event]: ...
    def replace_event(self, event: Event) -> Optional[Event]: ...
    def set_registration_open(self, event_id: int, is_open: bool, updated_at: datetime) -> Optional[Event]: ...
    def delete_event(self, event_id: int) -> Optional[int]: ...

    # Registrations
    def admit_registration(self, reg: Registration, check: AdmissionCheck) -> Registration: ...
    def count_registrations(self, event_id: int) -> int: ...
    def registration_counts(self) -> Dict[int, int]: ...
    def list_registrations(self, event_id: int) -> List[Registration]: ...
    def delete_registration(self, registration_id: int) -> bool: ...

    def ping(self) -> bool: ...


@contextmanager
def translate_store_errors() -> Iterator[None]:
    try:
        yield
    except StoreUnavailableError as e:
        raise TransientStoreError() from e


# -----------------------------
# Admission Engine
# -----------------------------


class AdmissionEngine:
    """Decides, for one registration attempt against one event, whether to commit it.

    Checks run in a fixed order and the first failure decides the reported reason:
    event exists, registration open, deadline not passed, capacity not reached,
    no duplicate. The store evaluates the checks and performs the insert as a
    single atomic unit per event, so concurrent attempts cannot oversell an event
    or register the same student twice.
    """

    def __init__(self, store: BaseStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    @staticmethod
    def _rules(event_id: int, now: datetime) -> AdmissionCheck:
        def check(event: Optional[Event], current_count: int) -> None:
            if event is None:
                raise EventNotFound(event_id)
            if not event.registration_open:
                raise RegistrationClosed()
            if now > as_utc(event.registration_deadline):
                raise DeadlinePassed()
            # event_date is deliberately not checked here
            if event.max_participants is not None and current_count >= event.max_participants:
                raise CapacityExceeded()

        return check

    def attempt_register(self, event_id: int, candidate: Candidate) -> Registration:
        """Validate ``candidate`` and admit it to ``event_id``.

        Returns the persisted registration with its id and created_at.
        Raises ValidationError, an AdmissionError subclass, or TransientStoreError.
        """
        candidate = validate_candidate(candidate)
        now = as_utc(self.clock())
        pending = Registration(
            id=None,
            event_id=event_id,
            student_name=candidate.student_name,
            student_email=candidate.student_email,
            student_roll_number=candidate.student_roll_number,
            student_phone=candidate.student_phone,
            department=candidate.department,
            year_of_study=candidate.year_of_study,
            created_at=now,
        )
        try:
            saved = self.store.admit_registration(pending, self._rules(event_id, now))
        except DuplicateKeyError as e:
            logger.info("Rejected registration for event %s: duplicate %s", event_id, self.store.duplicate_key)
            raise DuplicateRegistration() from e
        except StoreUnavailableError as e:
            logger.warning("Store unavailable while admitting to event %s: %s", event_id, e)
            raise TransientStoreError() from e
        except AdmissionError as e:
            logger.info("Rejected registration for event %s: %s", event_id, e.code)
            raise

        logger.info("Admitted registration %s to event %s", saved.id, event_id)
        return saved


# -----------------------------
# CSV export
# -----------------------------


CSV_HEADERS = [
    "ID",
    "Student Name",
    "Email",
    "Roll Number",
    "Phone",
    "Department",
    "Year of Study",
    "Registered At",
]


def format_registered_at(value: datetime, tz: tzinfo = timezone.utc) -> str:
    """Render like ``1/15/2025, 10:30:00 AM``."""
    local = as_utc(value).astimezone(tz)
    hour = local.hour % 12 or 12
    suffix = "AM" if local.hour < 12 else "PM"
    return f"{local.month}/{local.day}/{local.year}, {hour}:{local:%M:%S} {suffix}"


def to_csv(event: Event, registrations: Sequence[Registration], tz: tzinfo = timezone.utc) -> str:
    """Project an event's registrations to CSV text, oldest first.

    Fields containing a comma, quote or newline are quoted with doubled inner
    quotes. Missing optional values are empty. Registrations of other events are ignored.
    """
    rows = sorted(
        (r for r in registrations if r.event_id == event.id),
        key=lambda r: (as_utc(r.created_at) if r.created_at else datetime.min.replace(tzinfo=timezone.utc), r.id or 0),
    )
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for reg in rows:
        writer.writerow(
            [
                reg.id,
                reg.student_name,
                reg.student_email,
                reg.student_roll_number,
                reg.student_phone,
                reg.department,
                reg.year_of_study,
                format_registered_at(reg.created_at, tz) if reg.created_at else None,
            ]
        )
    return buf.getvalue()[:-1]


def export_filename(site_name: str, event_id: int) -> str:
    return f"{site_name}_event_{event_id}.csv"


# -----------------------------
# Core Manager
# -----------------------------


class PortalSystem:
    """Main facade over the admission engine and the event store.

    Public surface: listings, event detail and registration.
    Administration surface: every method taking ``actor`` requires an admin profile.
    """

    def __init__(
        self,
        store: BaseStore,
        clock: Callable[[], datetime] = utcnow,
        retry_attempts: int = 3,
        retry_delay: float = 0.05,
    ) -> None:
        self.store = store
        self.clock = clock
        self.engine = AdmissionEngine(store, clock)
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay

    def now(self) -> datetime:
        return as_utc(self.clock())

    # -------- Public surface --------

    def list_events(self, scope: str = "all") -> List[Event]:
        """List events for browsing.

        scope="upcoming": event_date not yet passed, soonest first.
        scope="past": event_date passed, most recent first.
        scope="all": every event by event_date ascending.
        """
        with translate_store_errors():
            events = list(self.store.list_events())
        now = self.now()
        if scope == "upcoming":
            return sorted((e for e in events if as_utc(e.event_date) >= now), key=lambda e: as_utc(e.event_date))
        if scope == "past":
            return sorted((e for e in events if as_utc(e.event_date) < now), key=lambda e: as_utc(e.event_date), reverse=True)
        if scope == "all":
            return sorted(events, key=lambda e: as_utc(e.event_date))
        raise ValidationError("scope", "must be one of: all, upcoming, past")

    def get_event(self, event_id: int) -> Event:
        with translate_store_errors():
            event = self.store.get_event(event_id)
        if event is None:
            raise EventNotFound(event_id)
        return event

    def event_detail(self, event_id: int) -> Dict[str, object]:
        """Event plus its derived status and registration count."""
        event = self.get_event(event_id)
        with translate_store_errors():
            count = self.store.count_registrations(event_id)
        now = self.now()
        spots_left = None
        if event.max_participants is not None:
            spots_left = max(event.max_participants - count, 0)
        return {
            "event": event,
            "status": event_status(event, now),
            "can_register": can_register(event, now),
            "closing_soon": is_closing_soon(event, now),
            "registration_count": count,
            "spots_left": spots_left,
        }

    def register(self, event_id: int, candidate: Candidate) -> Registration:
        """Entry point for student registrations; retries transient store failures."""
        attempt = with_retry(max_attempts=self.retry_attempts, delay=self.retry_delay)(self.engine.attempt_register)
        return attempt(event_id, candidate)

    # -------- Administration --------

    @staticmethod
    def _require_admin(actor: Optional[Profile]) -> None:
        if actor is None or not actor.is_admin:
            raise AuthorizationError()

    def create_event(self, actor: Profile, event: Event) -> Event:
        self._require_admin(actor)
        event = validate_event(event)
        now = self.now()
        event = replace(event, id=None, created_by=actor.user_id, created_at=now, updated_at=now)
        with translate_store_errors():
            created = self.store.add_event(event)
        logger.info("Event %s created by %s", created.id, actor.email)
        return created

    def update_event(self, actor: Profile, event_id: int, event: Event) -> Event:
        """Replace every editable field of an existing event.

        Lowering max_participants below the current count keeps existing
        registrations; further admissions are rejected with CapacityExceeded.
        """
        self._require_admin(actor)
        event = validate_event(event)
        existing = self.get_event(event_id)
        event = replace(
            event,
            id=event_id,
            created_by=existing.created_by,
            created_at=existing.created_at,
            updated_at=self.now(),
        )
        with translate_store_errors():
            updated = self.store.replace_event(event)
        if updated is None:
            raise EventNotFound(event_id)
        logger.info("Event %s updated by %s", event_id, actor.email)
        return updated

    def set_registration_open(self, actor: Profile, event_id: int, is_open: bool) -> Event:
        """Toggle registration. After closing returns, every later admission attempt is rejected."""
        self._require_admin(actor)
        with translate_store_errors():
            updated = self.store.set_registration_open(event_id, bool(is_open), self.now())
        if updated is None:
            raise EventNotFound(event_id)
        logger.info("Registration for event %s %s by %s", event_id, "opened" if is_open else "closed", actor.email)
        return updated

    def delete_event(self, actor: Profile, event_id: int) -> int:
        """Delete an event and all its registrations atomically. Returns registrations removed."""
        self._require_admin(actor)
        with translate_store_errors():
            removed = self.store.delete_event(event_id)
        if removed is None:
            raise EventNotFound(event_id)
        logger.info("Event %s deleted by %s with %d registrations", event_id, actor.email, removed)
        return removed

    def list_registrations(self, actor: Profile, event_id: int) -> List[Registration]:
        """Registrations of an event, newest first."""
        self._require_admin(actor)
        self.get_event(event_id)
        with translate_store_errors():
            regs = self.store.list_registrations(event_id)
        return list(reversed(regs))

    def delete_registration(self, actor: Profile, registration_id: int) -> None:
        self._require_admin(actor)
        with translate_store_errors():
            deleted = self.store.delete_registration(registration_id)
        if not deleted:
            raise RegistrationNotFound()
        logger.info("Registration %s deleted by %s", registration_id, actor.email)

    def events_with_counts(self, actor: Profile) -> List[Tuple[Event, int]]:
        """Dashboard listing: every event with its registration count, latest event first."""
        self._require_admin(actor)
        with translate_store_errors():
            events = list(self.store.list_events())
            counts = self.store.registration_counts()
        events.sort(key=lambda e: as_utc(e.event_date), reverse=True)
        return [(e, counts.get(e.id, 0)) for e in events]

    def dashboard_stats(self, actor: Profile) -> Dict[str, int]:
        rows = self.events_with_counts(actor)
        now = self.now()
        return {
            "total_events": len(rows),
            "upcoming_events": sum(1 for e, _ in rows if as_utc(e.event_date) >= now),
            "total_registrations": sum(c for _, c in rows),
        }

    def export_csv(self, actor: Profile, event_id: int, tz: tzinfo = timezone.utc) -> str:
        self._require_admin(actor)
        event = self.get_event(event_id)
        with translate_store_errors():
            regs = self.store.list_registrations(event_id)
        logger.info("Exported %d registrations of event %s for %s", len(regs), event_id, actor.email)
        return to_csv(event, regs, tz)
