from datetime import datetime

import pytest

from smartattend.models import ActiveSessionDescriptor, AttendanceRecord, SessionType


@pytest.mark.parametrize(
    "value, expected",
    [
        ("lect", SessionType.LECTURE),
        ("Lecture", SessionType.LECTURE),
        ("LAB", SessionType.LAB),
        ("tut", SessionType.TUTORIAL),
        (" tutorial ", SessionType.TUTORIAL),
    ],
)
def test_session_type_aliases(value, expected):
    assert SessionType.parse(value) == expected


def test_unknown_session_type_is_rejected():
    with pytest.raises(ValueError):
        SessionType.parse("seminar")
    with pytest.raises(ValueError):
        SessionType.parse(None)


def test_session_descriptor_from_document():
    session = ActiveSessionDescriptor.from_document(
        {
            "subject": "UCS301",
            "room": "LT101",
            "type": "lab",
            "sessionId": "abc",
            "date": "2026-03-02",
            "isExtra": True,
            "isActive": True,
        }
    )
    assert session.session_type == SessionType.LAB
    assert session.is_extra and session.is_active
    assert session.session_id == "abc"


def test_record_document_shape():
    record = AttendanceRecord(
        date="2026-03-02",
        student_id="2021001",
        subject="UCS301",
        class_group="CSE-A",
        session_type=SessionType.TUTORIAL,
        timestamp=datetime(2026, 3, 2, 9, 15, 30),
        device_room=None,
        is_extra=False,
    )
    document = record.to_document()
    assert document == {
        "date": "2026-03-02",
        "rollNumber": "2021001",
        "subject": "UCS301",
        "group": "CSE-A",
        "type": "tutorial",
        "present": True,
        "timestamp": "2026-03-02T09:15:30",
        "isExtra": False,
    }
    assert AttendanceRecord.from_document(document) == record
