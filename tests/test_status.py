from datetime import datetime, timedelta, timezone

from portal_system import Event, EventStatus, can_register, event_status, is_closing_soon

NOW = datetime(2025, 9, 1, 9, 0, tzinfo=timezone.utc)


def make_event(**kwargs):
    fields = {
        "id": 1,
        "title": "Hack Night",
        "event_type": "hackathon",
        "event_date": NOW + timedelta(days=10),
        "registration_deadline": NOW + timedelta(days=7),
        "registration_open": True,
    }
    fields.update(kwargs)
    return Event(**fields)


def test_open_event():
    ev = make_event()
    assert event_status(ev, NOW) is EventStatus.OPEN
    assert can_register(ev, NOW)
    assert not is_closing_soon(ev, NOW)


def test_completed_wins_over_everything():
    ev = make_event(event_date=NOW - timedelta(minutes=1), registration_open=False)
    assert event_status(ev, NOW) is EventStatus.COMPLETED
    assert not can_register(ev, NOW)


def test_closed_before_deadline_passed():
    ev = make_event(registration_open=False, registration_deadline=NOW - timedelta(days=1))
    assert event_status(ev, NOW) is EventStatus.CLOSED


def test_deadline_passed():
    ev = make_event(registration_deadline=NOW - timedelta(seconds=1))
    assert event_status(ev, NOW) is EventStatus.DEADLINE_PASSED
    assert not can_register(ev, NOW)


def test_status_is_recomputed_from_now():
    ev = make_event()
    assert event_status(ev, NOW) is EventStatus.OPEN
    assert event_status(ev, NOW + timedelta(days=8)) is EventStatus.DEADLINE_PASSED
    assert event_status(ev, NOW + timedelta(days=11)) is EventStatus.COMPLETED


def test_closing_soon_within_three_days():
    assert is_closing_soon(make_event(registration_deadline=NOW + timedelta(days=3, hours=23)), NOW)
    assert not is_closing_soon(make_event(registration_deadline=NOW + timedelta(days=4)), NOW)
    assert not is_closing_soon(make_event(registration_deadline=NOW + timedelta(hours=1), registration_open=False), NOW)


def test_naive_datetimes_are_utc():
    ev = make_event(event_date=datetime(2025, 9, 2), registration_deadline=datetime(2025, 9, 1, 10, 0))
    assert event_status(ev, NOW) is EventStatus.OPEN
    assert event_status(ev, datetime(2025, 9, 1, 10, 0, 1)) is EventStatus.DEADLINE_PASSED
