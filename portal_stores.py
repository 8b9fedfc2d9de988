"""Storage backends for the event portal.

Both backends satisfy ``portal_system.BaseStore``. Admission is atomic per
event in each of them: the rule check, the duplicate check and the insert
happen in one unit, so capacity counts stay linearizable with respect to
concurrent inserts.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import asdict, replace
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.client_session import ClientSession
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError as MongoDuplicateKeyError, PyMongoError

from portal_system import (
    DUPLICATE_KEYS,
    AdmissionCheck,
    DuplicateKeyError,
    Event,
    Registration,
    StoreUnavailableError,
    registration_key,
)


class InMemoryStore:
    """Default in-memory store.

    A single lock guards every collection, which makes admission, toggling and
    cascade deletes atomic with respect to each other. Waiting for the lock is
    bounded by ``timeout`` seconds.
    """

    def __init__(self, duplicate_key: str = "roll_number", timeout: float = 5.0) -> None:
        if duplicate_key not in DUPLICATE_KEYS:
            raise ValueError(f"Unknown duplicate key: {duplicate_key}")
        self.duplicate_key = duplicate_key
        self.timeout = timeout
        self.events: Dict[int, Event] = {}
        self.registrations: Dict[int, Registration] = {}
        # (event_id, key) pairs already taken; plays the role of a unique index
        self._taken: Set[Tuple[int, str]] = set()
        self._event_seq = 0
        self._registration_seq = 0
        self._lock = threading.RLock()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.timeout):
            raise StoreUnavailableError(f"Timed out after {self.timeout}s waiting for the store lock")
        try:
            yield
        finally:
            self._lock.release()

    # Events
    def add_event(self, event: Event) -> Event:
        with self._locked():
            self._event_seq += 1
            stored = replace(event, id=self._event_seq)
            self.events[stored.id] = stored
            return replace(stored)

    def get_event(self, event_id: int) -> Optional[Event]:
        with self._locked():
            event = self.events.get(event_id)
            return replace(event) if event else None

    def list_events(self) -> Iterable[Event]:
        with self._locked():
            return [replace(e) for e in self.events.values()]

    def replace_event(self, event: Event) -> Optional[Event]:
        with self._locked():
            if event.id not in self.events:
                return None
            self.events[event.id] = replace(event)
            return replace(event)

    def set_registration_open(self, event_id: int, is_open: bool, updated_at: datetime) -> Optional[Event]:
        with self._locked():
            event = self.events.get(event_id)
            if event is None:
                return None
            event.registration_open = is_open
            event.updated_at = updated_at
            return replace(event)

    def delete_event(self, event_id: int) -> Optional[int]:
        with self._locked():
            if self.events.pop(event_id, None) is None:
                return None
            doomed = [r for r in self.registrations.values() if r.event_id == event_id]
            for reg in doomed:
                self._forget(reg)
            return len(doomed)

    # Registrations
    def _forget(self, reg: Registration) -> None:
        del self.registrations[reg.id]
        self._taken.discard((reg.event_id, registration_key(reg, self.duplicate_key)))

    def _count(self, event_id: int) -> int:
        return sum(1 for r in self.registrations.values() if r.event_id == event_id)

    def admit_registration(self, reg: Registration, check: AdmissionCheck) -> Registration:
        with self._locked():
            event = self.events.get(reg.event_id)
            check(replace(event) if event else None, self._count(reg.event_id))

            key = (reg.event_id, registration_key(reg, self.duplicate_key))
            if key in self._taken:
                raise DuplicateKeyError(f"Registration already exists for event {reg.event_id}")

            # Nothing is written until every check has passed
            self._registration_seq += 1
            stored = replace(reg, id=self._registration_seq)
            self.registrations[stored.id] = stored
            self._taken.add(key)
            return replace(stored)

    def count_registrations(self, event_id: int) -> int:
        with self._locked():
            return self._count(event_id)

    def registration_counts(self) -> Dict[int, int]:
        with self._locked():
            counts: Dict[int, int] = {}
            for r in self.registrations.values():
                counts[r.event_id] = counts.get(r.event_id, 0) + 1
            return counts

    def list_registrations(self, event_id: int) -> List[Registration]:
        with self._locked():
            regs = [replace(r) for r in self.registrations.values() if r.event_id == event_id]
        regs.sort(key=lambda r: (r.created_at, r.id))
        return regs

    def delete_registration(self, registration_id: int) -> bool:
        with self._locked():
            reg = self.registrations.get(registration_id)
            if reg is None:
                return False
            self._forget(reg)
            return True

    def ping(self) -> bool:
        with self._locked():
            return True


class MongoStore:
    """MongoDB-backed store using PyMongo.

    Collections:
    - events: one document per event, integer ``id`` assigned from ``counters``
    - registrations: unique index on (event_id, roll number or email)
    - counters: id sequences for events and registrations
    - admission_guards: one document per event, bumped by every admission

    Admission and cascade deletes run in multi-document transactions, so the
    deployment must be a replica set (MongoDB Atlas always is). Two admissions
    for the same event both write that event's guard document, so one of them
    hits a write conflict and is retried by ``with_transaction`` against the
    fresh count.

    Expected environment variables (see portal_config):
    - MONGODB_URI
    - DB_NAME (default: event_portal)
    - COLLECTION_PREFIX (optional)
    """

    def __init__(
        self,
        uri: str,
        db_name: str = "event_portal",
        collection_prefix: str = "",
        duplicate_key: str = "roll_number",
        timeout: float = 5.0,
    ) -> None:
        if duplicate_key not in DUPLICATE_KEYS:
            raise ValueError(f"Unknown duplicate key: {duplicate_key}")
        self.duplicate_key = duplicate_key
        self.timeout_ms = int(timeout * 1000)
        self.client = MongoClient(
            uri,
            tz_aware=True,
            serverSelectionTimeoutMS=self.timeout_ms,
            connectTimeoutMS=self.timeout_ms,
            socketTimeoutMS=self.timeout_ms,
        )
        self.db = self.client[db_name]
        p = collection_prefix
        self.c_events: Collection = self.db[f"{p}events"]
        self.c_regs: Collection = self.db[f"{p}registrations"]
        self.c_counters: Collection = self.db[f"{p}counters"]
        self.c_guards: Collection = self.db[f"{p}admission_guards"]
        with self._mongo_errors():
            self._ensure_indexes()

    @contextmanager
    def _mongo_errors(self) -> Iterator[None]:
        try:
            yield
        except MongoDuplicateKeyError as e:
            raise DuplicateKeyError(str(e)) from e
        except PyMongoError as e:
            raise StoreUnavailableError(f"MongoDB error: {e}") from e

    # Indexes for integrity and query performance
    def _ensure_indexes(self) -> None:
        # Collections must exist before they are written inside a transaction
        existing = set(self.db.list_collection_names())
        for coll in (self.c_events, self.c_regs, self.c_counters, self.c_guards):
            if coll.name not in existing:
                self.db.create_collection(coll.name)
        self.c_events.create_index("id", unique=True)
        self.c_events.create_index([("event_date", ASCENDING)])
        self.c_regs.create_index("id", unique=True)
        self.c_regs.create_index(
            [("event_id", ASCENDING), (DUPLICATE_KEYS[self.duplicate_key], ASCENDING)],
            unique=True,
        )
        self.c_regs.create_index([("event_id", ASCENDING), ("created_at", ASCENDING)])

    def _next_id(self, name: str) -> int:
        doc = self.c_counters.find_one_and_update(
            {"_id": name},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["seq"])

    # Helpers for serialization
    @staticmethod
    def _event_doc(ev: Event) -> dict:
        return asdict(ev)

    @staticmethod
    def _event_from(doc: dict) -> Event:
        return Event(
            id=int(doc["id"]),
            title=doc["title"],
            event_type=doc["event_type"],
            event_date=doc["event_date"],
            registration_deadline=doc["registration_deadline"],
            description=doc.get("description"),
            venue=doc.get("venue"),
            max_participants=doc.get("max_participants"),
            registration_open=bool(doc.get("registration_open", False)),
            poster_url=doc.get("poster_url"),
            created_by=doc.get("created_by"),
            created_at=doc.get("created_at"),
            updated_at=doc.get("updated_at"),
        )

    @staticmethod
    def _reg_doc(r: Registration) -> dict:
        return asdict(r)

    @staticmethod
    def _reg_from(doc: dict) -> Registration:
        return Registration(
            id=int(doc["id"]),
            event_id=int(doc["event_id"]),
            student_name=doc["student_name"],
            student_email=doc["student_email"],
            student_roll_number=doc["student_roll_number"],
            student_phone=doc.get("student_phone"),
            department=doc.get("department"),
            year_of_study=doc.get("year_of_study"),
            created_at=doc.get("created_at"),
        )

    def _transaction(self, callback):
        with self.client.start_session() as session:
            return session.with_transaction(callback, max_commit_time_ms=self.timeout_ms)

    # Events
    def add_event(self, event: Event) -> Event:
        with self._mongo_errors():
            stored = replace(event, id=self._next_id("events"))
            self.c_events.insert_one(self._event_doc(stored))
            return stored

    def get_event(self, event_id: int) -> Optional[Event]:
        with self._mongo_errors():
            doc = self.c_events.find_one({"id": event_id}, max_time_ms=self.timeout_ms)
        return self._event_from(doc) if doc else None

    def list_events(self) -> Iterable[Event]:
        with self._mongo_errors():
            docs = list(self.c_events.find({}, sort=[("event_date", ASCENDING)], max_time_ms=self.timeout_ms))
        return [self._event_from(d) for d in docs]

    def replace_event(self, event: Event) -> Optional[Event]:
        fields = self._event_doc(event)
        fields.pop("id")
        with self._mongo_errors():
            doc = self.c_events.find_one_and_update(
                {"id": event.id},
                {"$set": fields},
                return_document=ReturnDocument.AFTER,
            )
        return self._event_from(doc) if doc else None

    def set_registration_open(self, event_id: int, is_open: bool, updated_at: datetime) -> Optional[Event]:
        with self._mongo_errors():
            doc = self.c_events.find_one_and_update(
                {"id": event_id},
                {"$set": {"registration_open": is_open, "updated_at": updated_at}},
                return_document=ReturnDocument.AFTER,
            )
        return self._event_from(doc) if doc else None

    def delete_event(self, event_id: int) -> Optional[int]:
        def cascade(session: ClientSession) -> Optional[int]:
            if not self.c_events.delete_one({"id": event_id}, session=session).deleted_count:
                return None
            removed = self.c_regs.delete_many({"event_id": event_id}, session=session).deleted_count
            # Write the guard even if no admission created it yet, so a concurrent
            # admission for this event conflicts with the cascade
            self.c_guards.update_one({"_id": event_id}, {"$set": {"deleting": True}}, upsert=True, session=session)
            self.c_guards.delete_one({"_id": event_id}, session=session)
            return removed

        with self._mongo_errors():
            return self._transaction(cascade)

    # Registrations
    def admit_registration(self, reg: Registration, check: AdmissionCheck) -> Registration:
        key_field = DUPLICATE_KEYS[self.duplicate_key]

        with self._mongo_errors():
            # Ids are taken outside the transaction; rejected attempts leave gaps
            stored = replace(reg, id=self._next_id("registrations"))

            def admit(session: ClientSession) -> None:
                event_doc = self.c_events.find_one({"id": reg.event_id}, session=session)
                count = self.c_regs.count_documents({"event_id": reg.event_id}, session=session)
                check(self._event_from(event_doc) if event_doc else None, count)

                taken = self.c_regs.count_documents(
                    {"event_id": reg.event_id, key_field: getattr(reg, key_field)},
                    limit=1,
                    session=session,
                )
                if taken:
                    raise DuplicateKeyError(f"Registration already exists for event {reg.event_id}")

                self.c_guards.update_one(
                    {"_id": reg.event_id},
                    {"$inc": {"admissions": 1}},
                    upsert=True,
                    session=session,
                )
                self.c_regs.insert_one(self._reg_doc(stored), session=session)

            self._transaction(admit)
        return stored

    def count_registrations(self, event_id: int) -> int:
        with self._mongo_errors():
            return self.c_regs.count_documents({"event_id": event_id}, maxTimeMS=self.timeout_ms)

    def registration_counts(self) -> Dict[int, int]:
        with self._mongo_errors():
            rows = list(
                self.c_regs.aggregate(
                    [{"$group": {"_id": "$event_id", "count": {"$sum": 1}}}],
                    maxTimeMS=self.timeout_ms,
                )
            )
        return {int(row["_id"]): int(row["count"]) for row in rows}

    def list_registrations(self, event_id: int) -> List[Registration]:
        with self._mongo_errors():
            docs = list(
                self.c_regs.find(
                    {"event_id": event_id},
                    sort=[("created_at", ASCENDING), ("id", ASCENDING)],
                    max_time_ms=self.timeout_ms,
                )
            )
        return [self._reg_from(d) for d in docs]

    def delete_registration(self, registration_id: int) -> bool:
        with self._mongo_errors():
            return self.c_regs.delete_one({"id": registration_id}).deleted_count == 1

    def ping(self) -> bool:
        with self._mongo_errors():
            self.client.admin.command("ping")
        return True
