import csv
import io
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from portal_system import (
    CSV_HEADERS,
    Event,
    Registration,
    export_filename,
    format_registered_at,
    to_csv,
)

REGISTERED = datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)

EVENT = Event(
    id=7,
    title="Robotics Expo",
    event_type="symposium",
    event_date=datetime(2025, 2, 1, 14, 0, tzinfo=timezone.utc),
    registration_deadline=datetime(2025, 1, 30, tzinfo=timezone.utc),
)


def reg(id, **kwargs):
    fields = {
        "id": id,
        "event_id": 7,
        "student_name": "Alice",
        "student_email": "alice@example.com",
        "student_roll_number": "21CSE001",
        "created_at": REGISTERED,
    }
    fields.update(kwargs)
    return Registration(**fields)


def test_comma_field_is_quoted_and_round_trips():
    text = to_csv(EVENT, [reg(1, department="Robotics, AI", year_of_study="3rd Year")])

    lines = text.split("\n")
    assert lines[0] == "ID,Student Name,Email,Roll Number,Phone,Department,Year of Study,Registered At"
    assert lines[1] == '1,Alice,alice@example.com,21CSE001,,"Robotics, AI",3rd Year,"1/15/2025, 10:30:00 AM"'

    rows = list(csv.reader(io.StringIO(text)))
    assert rows[1][5] == "Robotics, AI"


def test_quotes_and_newlines_are_escaped():
    text = to_csv(EVENT, [reg(1, student_name='Carol "CJ" Lee', department="Line one\nLine two")])

    assert '"Carol ""CJ"" Lee"' in text
    rows = list(csv.reader(io.StringIO(text)))
    assert rows[1][1] == 'Carol "CJ" Lee'
    assert rows[1][5] == "Line one\nLine two"


def test_missing_optional_fields_are_empty():
    rows = list(csv.reader(io.StringIO(to_csv(EVENT, [reg(1)]))))
    assert rows[1][4:7] == ["", "", ""]
    assert "None" not in to_csv(EVENT, [reg(1)])


def test_rows_sorted_oldest_first():
    regs = [
        reg(3, student_name="Third", created_at=REGISTERED + timedelta(minutes=2)),
        reg(1, student_name="First"),
        reg(2, student_name="Second", created_at=REGISTERED + timedelta(minutes=1)),
    ]
    rows = list(csv.reader(io.StringIO(to_csv(EVENT, regs))))
    assert [r[1] for r in rows[1:]] == ["First", "Second", "Third"]


def test_other_events_are_ignored():
    rows = list(csv.reader(io.StringIO(to_csv(EVENT, [reg(1), reg(2, event_id=8)]))))
    assert len(rows) == 2


def test_header_only_when_empty():
    assert to_csv(EVENT, []) == ",".join(CSV_HEADERS)


def test_output_is_deterministic():
    regs = [reg(1), reg(2, student_roll_number="21CSE002")]
    assert to_csv(EVENT, regs) == to_csv(EVENT, list(reversed(regs)))


def test_registered_at_format():
    assert format_registered_at(datetime(2025, 3, 5, 0, 7, 9, tzinfo=timezone.utc)) == "3/5/2025, 12:07:09 AM"
    assert format_registered_at(datetime(2025, 3, 5, 12, 0, 0, tzinfo=timezone.utc)) == "3/5/2025, 12:00:00 PM"
    assert format_registered_at(datetime(2025, 12, 31, 23, 59, 59)) == "12/31/2025, 11:59:59 PM"


def test_registered_at_uses_export_timezone():
    assert format_registered_at(REGISTERED, ZoneInfo("Asia/Kolkata")) == "1/15/2025, 4:00:00 PM"


def test_export_filename():
    assert export_filename("csedepartment", 42) == "csedepartment_event_42.csv"
