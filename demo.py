"""Demo script to exercise PortalSystem with a small sample dataset.

Run: python demo.py

Supports two backends:
- In-memory (default)
- MongoDB (set DB_BACKEND=mongodb and MONGODB_URI in .env)
"""

import logging
from datetime import timedelta

from portal_config import load_settings, setup_logging
from portal_stores import InMemoryStore, MongoStore
from portal_system import (
    AdmissionError,
    Candidate,
    Event,
    PortalSystem,
    Profile,
    event_status,
)

logger = logging.getLogger("demo")

ADMIN = Profile(user_id="demo-admin", email="admin@example.com", role="admin", full_name="Demo Admin")


def seed_sample_data(portal: PortalSystem) -> None:
    now = portal.now()

    symposium = portal.create_event(
        ADMIN,
        Event(
            id=None,
            title="CSE Annual Symposium",
            event_type="symposium",
            event_date=now + timedelta(days=14),
            registration_deadline=now + timedelta(days=10),
            venue="Main Auditorium",
            max_participants=100,
            description="Talks and paper presentations from final year students.",
        ),
    )
    workshop = portal.create_event(
        ADMIN,
        Event(
            id=None,
            title="Intro to Robotics",
            event_type="workshop",
            event_date=now + timedelta(days=5),
            registration_deadline=now + timedelta(days=2),
            venue="Lab Block, Room 101",
            # Tiny capacity to demonstrate rejection
            max_participants=1,
        ),
    )
    portal.create_event(
        ADMIN,
        Event(
            id=None,
            title="Hack Night",
            event_type="hackathon",
            event_date=now - timedelta(days=3),
            registration_deadline=now - timedelta(days=5),
            venue="Innovation Hub",
        ),
    )

    students = [
        Candidate("Alice Johnson", "alice@example.com", "21CSE001", department="Robotics, AI", year_of_study="3rd Year"),
        Candidate("Bob Smith", "bob@example.com", "21CSE002", student_phone="+91 98765 43210", year_of_study="2nd Year"),
        Candidate('Carol "CJ" Lee', "carol@example.com", "21CSE003", department="Computer Science"),
    ]
    for candidate in students:
        portal.register(symposium.id, candidate)

    for candidate in students[:2]:
        try:
            portal.register(workshop.id, candidate)
        except AdmissionError as e:
            print(f"  {candidate.student_name} -> {workshop.title}: {e.message}")

    # Registering the same roll number twice is rejected
    try:
        portal.register(symposium.id, students[0])
    except AdmissionError as e:
        print(f"  {students[0].student_name} again -> {symposium.title}: {e.message}")


def main() -> None:
    settings = load_settings()
    setup_logging(settings.log_level)

    if settings.db_backend == "mongodb":
        store = MongoStore(
            uri=settings.mongodb_uri,
            db_name=settings.db_name,
            collection_prefix=settings.collection_prefix,
            duplicate_key=settings.duplicate_key,
            timeout=settings.store_timeout_seconds,
        )
    else:
        store = InMemoryStore(duplicate_key=settings.duplicate_key)
    portal = PortalSystem(store=store, retry_attempts=settings.retry_attempts)

    print("Seeding sample data...")
    seed_sample_data(portal)

    print("\nDashboard")
    print(f"  {portal.dashboard_stats(ADMIN)}")

    print("\nEvents")
    now = portal.now()
    for event, count in portal.events_with_counts(ADMIN):
        cap = event.max_participants if event.max_participants is not None else "unlimited"
        print(f"  [{event.id}] {event.title:<24} {event_status(event, now).value:<16} {count}/{cap}")

    latest = portal.list_events("upcoming")[-1]
    print(f"\nCSV export for '{latest.title}'")
    print(portal.export_csv(ADMIN, latest.id, settings.export_tz))


if __name__ == "__main__":
    main()
