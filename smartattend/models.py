"""Value types shared by the matcher, scanner, eligibility engine and orchestrator."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from smartattend.errors import AttendanceFailure

NO_DATA = "No Data"


class SessionType(str, Enum):
    LECTURE = "lecture"
    LAB = "lab"
    TUTORIAL = "tutorial"

    @classmethod
    def parse(cls, value: str | None) -> "SessionType":
        normalized = (value or "").strip().lower()
        aliases = {
            "lect": cls.LECTURE,
            "lecture": cls.LECTURE,
            "lab": cls.LAB,
            "tut": cls.TUTORIAL,
            "tutorial": cls.TUTORIAL,
        }
        try:
            return aliases[normalized]
        except KeyError:
            raise ValueError(f"Unknown session type: {value!r}") from None


@dataclass(frozen=True)
class BroadcastPayload:
    """One radio advertisement as delivered by the host radio callback."""

    device_name: str | None = None
    manufacturer_data: bytes | None = None
    service_data: bytes | None = None
    rssi: int | None = None
    received_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class SubjectIdentity:
    subject_code: str
    raw_echo: str | None


@dataclass(frozen=True)
class DetectedRoom:
    room_code: str
    device_name: str
    subject_code: str | None
    raw_payload_echo: str | None
    rssi: int | None
    detected_at: datetime


@dataclass(frozen=True)
class ActiveSessionDescriptor:
    subject: str
    room: str
    session_type: SessionType
    session_id: str
    calendar_date: str
    is_extra: bool = False
    is_active: bool = True

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "ActiveSessionDescriptor":
        return cls(
            subject=str(data.get("subject") or "").strip(),
            room=str(data.get("room") or "").strip(),
            session_type=SessionType.parse(data.get("type")),
            session_id=str(data.get("sessionId") or ""),
            calendar_date=str(data.get("date") or ""),
            is_extra=bool(data.get("isExtra", False)),
            is_active=bool(data.get("isActive", False)),
        )


@dataclass(frozen=True)
class StudentIdentity:
    student_id: str
    class_group: str
    name: str = ""


@dataclass(frozen=True)
class AttendanceRecord:
    date: str
    student_id: str
    subject: str
    class_group: str
    session_type: SessionType
    timestamp: datetime
    device_room: str | None
    is_extra: bool
    present: bool = True

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "AttendanceRecord":
        stamp = data.get("timestamp")
        if isinstance(stamp, str):
            stamp = datetime.fromisoformat(stamp)
        return cls(
            date=str(data.get("date") or ""),
            student_id=str(data.get("rollNumber") or ""),
            subject=str(data.get("subject") or ""),
            class_group=str(data.get("group") or ""),
            session_type=SessionType.parse(data.get("type")),
            timestamp=stamp or datetime.min,
            device_room=data.get("deviceRoom"),
            is_extra=bool(data.get("isExtra", False)),
            present=bool(data.get("present", True)),
        )

    def to_document(self) -> dict[str, Any]:
        document: dict[str, Any] = {
            "date": self.date,
            "rollNumber": self.student_id,
            "subject": self.subject,
            "group": self.class_group,
            "type": self.session_type.value,
            "present": self.present,
            "timestamp": self.timestamp.isoformat(timespec="seconds"),
            "isExtra": self.is_extra,
        }
        if self.device_room:
            document["deviceRoom"] = self.device_room
        return document


@dataclass(frozen=True)
class BiometricResult:
    identity: str
    received_at: datetime
    success: bool = True
    message: str | None = None


@dataclass(frozen=True)
class EligibilityVerdict:
    allowed: bool
    reason: str | None = None
    fail_open: bool = False

    @classmethod
    def allow(cls, *, fail_open: bool = False) -> "EligibilityVerdict":
        return cls(allowed=True, fail_open=fail_open)

    @classmethod
    def deny(cls, reason: str) -> "EligibilityVerdict":
        return cls(allowed=False, reason=reason)


@dataclass(frozen=True)
class VerificationSession:
    """One attendance attempt in flight, from room detection to commit/failure."""

    attempt_id: int
    detected_room: DetectedRoom
    subject_code: str
    started_at: datetime
    biometric_result: BiometricResult | None = None
    completed: bool = False
    failure: AttendanceFailure | None = None

    def complete(self, result: BiometricResult) -> "VerificationSession":
        return replace(self, biometric_result=result, completed=True)

    def fail(self, failure: AttendanceFailure) -> "VerificationSession":
        return replace(self, failure=failure)
