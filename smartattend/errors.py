"""Failure taxonomy for attendance attempts.

Failures that end or pause an attempt are carried as `AttendanceFailure`
values on the state; the exception classes below are only used at the
seams (radio, store, orchestrator API) and are converted to failures
before they reach the state machine.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FailureKind(str, Enum):
    RADIO_UNAVAILABLE = "radio_unavailable"
    SCAN_TIMEOUT = "scan_timeout"
    NO_ACTIVE_SESSION = "no_active_session"
    BIOMETRIC_FAILURE = "biometric_failure"
    SECURITY_MISMATCH = "security_mismatch"
    COMMIT_FAILURE = "commit_failure"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class AttendanceFailure:
    kind: FailureKind
    message: str
    retryable: bool = False
    guidance: str | None = None
    code: str | None = None
    title: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "guidance": self.guidance,
            "code": self.code,
            "title": self.title,
        }


class AttendanceEngineError(Exception):
    """Base class for errors raised across engine seams."""


class RadioUnavailableError(AttendanceEngineError):
    def __init__(self, state) -> None:
        self.state = state
        super().__init__(f"Radio unavailable: {state.label}")


class ScanTimeoutError(AttendanceEngineError):
    def __init__(self, room: str, timeout_seconds: float) -> None:
        self.room = room
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Room {room} not found within {timeout_seconds:g}s")


class ScanCancelledError(AttendanceEngineError):
    pass


class StoreUnavailableError(AttendanceEngineError):
    pass


class CommitRejectedError(AttendanceEngineError):
    def __init__(self, message: str, *, duplicate: bool = False) -> None:
        self.duplicate = duplicate
        super().__init__(message)


class AttendanceInProgressError(AttendanceEngineError):
    pass


class InvalidActionError(AttendanceEngineError):
    pass


def radio_unavailable_failure(error: RadioUnavailableError) -> AttendanceFailure:
    guidance = {
        "off": "Turn on Bluetooth and try again",
        "unauthorized": "Allow Bluetooth access for Smart Attend in Settings",
        "unsupported": "This device cannot detect classroom beacons",
    }.get(error.state.value)
    return AttendanceFailure(
        kind=FailureKind.RADIO_UNAVAILABLE,
        message=error.state.label,
        retryable=True,
        guidance=guidance or "Wait for Bluetooth to become ready and try again",
        code=error.state.value,
    )


def scan_timeout_failure(error: ScanTimeoutError) -> AttendanceFailure:
    return AttendanceFailure(
        kind=FailureKind.SCAN_TIMEOUT,
        message=f"Classroom {error.room} was not detected nearby",
        retryable=True,
        guidance="Move closer to the classroom beacon and scan again",
    )


def no_active_session_failure(class_group: str, message: str | None = None) -> AttendanceFailure:
    return AttendanceFailure(
        kind=FailureKind.NO_ACTIVE_SESSION,
        message=message or f"No active session found for {class_group}",
        retryable=False,
    )


def security_mismatch_failure() -> AttendanceFailure:
    return AttendanceFailure(
        kind=FailureKind.SECURITY_MISMATCH,
        message="Face verification returned a different student than the one signed in",
        retryable=False,
        guidance="Only the signed-in student can mark attendance on this device",
    )


def commit_failure(error: BaseException) -> AttendanceFailure:
    if isinstance(error, CommitRejectedError) and error.duplicate:
        message = "Attendance already marked for this session today"
    else:
        text = str(error).lower()
        if "network" in text or "internet" in text or "unreachable" in text:
            message = "Network connection error. Please check your internet."
        elif "permission" in text:
            message = "Permission denied. Please check app settings."
        else:
            message = "Failed to save attendance. Please try again."
    return AttendanceFailure(kind=FailureKind.COMMIT_FAILURE, message=message, retryable=False)


def internal_failure(error: BaseException) -> AttendanceFailure:
    return AttendanceFailure(
        kind=FailureKind.INTERNAL_ERROR,
        message=f"Attendance could not be completed: {error}",
        retryable=False,
    )
