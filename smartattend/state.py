"""
Attendance state machine.

The whole attempt is one `OrchestratorState` value moved forward by
`reduce(state, event)`. The reducer is pure: it never touches the radio,
the store or the verifier, it only returns the next state and the
effects the runtime must perform. Every event for an attempt carries that
attempt's id; events from an older or cancelled attempt are refused.
"""
from __future__ import annotations

import hmac
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Union

from smartattend.errors import (
    AttendanceFailure,
    FailureKind,
    no_active_session_failure,
    security_mismatch_failure,
)
from smartattend.models import (
    ActiveSessionDescriptor,
    AttendanceRecord,
    BiometricResult,
    DetectedRoom,
    EligibilityVerdict,
    StudentIdentity,
    VerificationSession,
)


class Phase(str, Enum):
    IDLE = "idle"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SCANNING = "scanning"
    ROOM_CONFIRMED = "room_confirmed"
    CHECKING_ELIGIBILITY = "checking_eligibility"
    AWAITING_VERIFICATION = "awaiting_verification"
    COMMITTING = "committing"
    SUCCESS = "success"
    DENIED = "denied"
    SECURITY_REJECTED = "security_rejected"
    ERROR = "error"


IN_FLIGHT_PHASES: frozenset[Phase] = frozenset({
    Phase.AWAITING_CONFIRMATION,
    Phase.SCANNING,
    Phase.ROOM_CONFIRMED,
    Phase.CHECKING_ELIGIBILITY,
    Phase.AWAITING_VERIFICATION,
    Phase.COMMITTING,
})

SETTLED_PHASES: frozenset[Phase] = frozenset({
    Phase.IDLE,
    Phase.SUCCESS,
    Phase.DENIED,
    Phase.SECURITY_REJECTED,
    Phase.ERROR,
})


@dataclass(frozen=True)
class OrchestratorState:
    phase: Phase = Phase.IDLE
    attempt_id: int = 0
    student: StudentIdentity | None = None
    session: ActiveSessionDescriptor | None = None
    verification: VerificationSession | None = None
    verdict: EligibilityVerdict | None = None
    failure: AttendanceFailure | None = None
    record: AttendanceRecord | None = None
    record_id: object | None = None

    @property
    def in_flight(self) -> bool:
        return self.phase in IN_FLIGHT_PHASES

    @property
    def can_retry(self) -> bool:
        return self.phase == Phase.ERROR and self.failure is not None and self.failure.retryable


# -----------------------------
# Events
# -----------------------------
@dataclass(frozen=True)
class SessionLoaded:
    attempt_id: int
    student: StudentIdentity
    session: ActiveSessionDescriptor


@dataclass(frozen=True)
class SessionUnavailable:
    attempt_id: int
    student: StudentIdentity
    message: str | None = None


@dataclass(frozen=True)
class UserConfirmed:
    attempt_id: int


@dataclass(frozen=True)
class RoomFound:
    attempt_id: int
    detected: DetectedRoom


@dataclass(frozen=True)
class ScanFailed:
    attempt_id: int
    failure: AttendanceFailure


@dataclass(frozen=True)
class EligibilityStarted:
    attempt_id: int


@dataclass(frozen=True)
class EligibilityResolved:
    attempt_id: int
    verdict: EligibilityVerdict


@dataclass(frozen=True)
class VerifierReturned:
    attempt_id: int
    identity: str
    received_at: datetime


@dataclass(frozen=True)
class VerifierFailed:
    attempt_id: int
    failure: AttendanceFailure


@dataclass(frozen=True)
class CommitSucceeded:
    attempt_id: int
    record_id: object | None = None


@dataclass(frozen=True)
class CommitFailed:
    attempt_id: int
    failure: AttendanceFailure


@dataclass(frozen=True)
class RetryRequested:
    attempt_id: int


@dataclass(frozen=True)
class Cancelled:
    attempt_id: int


@dataclass(frozen=True)
class InternalFailure:
    attempt_id: int
    failure: AttendanceFailure


Event = Union[
    SessionLoaded,
    SessionUnavailable,
    UserConfirmed,
    RoomFound,
    ScanFailed,
    EligibilityStarted,
    EligibilityResolved,
    VerifierReturned,
    VerifierFailed,
    CommitSucceeded,
    CommitFailed,
    RetryRequested,
    Cancelled,
    InternalFailure,
]


# -----------------------------
# Effects
# -----------------------------
@dataclass(frozen=True)
class StartScan:
    attempt_id: int
    room: str


@dataclass(frozen=True)
class StopScan:
    pass


@dataclass(frozen=True)
class CheckEligibility:
    attempt_id: int
    student_id: str
    session: ActiveSessionDescriptor


@dataclass(frozen=True)
class BeginVerification:
    attempt_id: int


@dataclass(frozen=True)
class CancelVerification:
    pass


@dataclass(frozen=True)
class CommitRecord:
    attempt_id: int
    record: AttendanceRecord


@dataclass(frozen=True)
class ReportSecurityEvent:
    attempt_id: int
    expected_identity: str
    returned_identity: str
    session_id: str
    device_name: str | None


Effect = Union[
    StartScan,
    StopScan,
    CheckEligibility,
    BeginVerification,
    CancelVerification,
    CommitRecord,
    ReportSecurityEvent,
]


@dataclass(frozen=True)
class Transition:
    state: OrchestratorState
    effects: tuple[Effect, ...] = field(default_factory=tuple)
    accepted: bool = True


def _refuse(state: OrchestratorState) -> Transition:
    return Transition(state=state, accepted=False)


def identities_match(returned: str, expected: str) -> bool:
    if not returned or not expected:
        return False
    return hmac.compare_digest(returned.encode("utf-8"), expected.encode("utf-8"))


def build_record(
    student: StudentIdentity,
    session: ActiveSessionDescriptor,
    verification: VerificationSession,
    received_at: datetime,
) -> AttendanceRecord:
    return AttendanceRecord(
        date=received_at.date().isoformat(),
        student_id=student.student_id,
        subject=session.subject,
        class_group=student.class_group,
        session_type=session.session_type,
        timestamp=received_at,
        device_room=verification.detected_room.device_name,
        is_extra=session.is_extra,
        present=True,
    )


def _fail(state: OrchestratorState, failure: AttendanceFailure, *effects: Effect) -> Transition:
    verification = state.verification.fail(failure) if state.verification else None
    return Transition(
        state=replace(state, phase=Phase.ERROR, failure=failure, verification=verification),
        effects=tuple(effects),
    )


def reduce(state: OrchestratorState, event: Event) -> Transition:
    """Return the next state and the effects to run; refuse events that do not apply."""
    if isinstance(event, (SessionLoaded, SessionUnavailable)):
        if state.in_flight or event.attempt_id <= state.attempt_id:
            return _refuse(state)
        fresh = OrchestratorState(attempt_id=event.attempt_id, student=event.student)
        if isinstance(event, SessionUnavailable):
            failure = no_active_session_failure(event.student.class_group, event.message)
            return Transition(state=replace(fresh, phase=Phase.ERROR, failure=failure))
        return Transition(
            state=replace(fresh, phase=Phase.AWAITING_CONFIRMATION, session=event.session),
        )

    if event.attempt_id != state.attempt_id:
        return _refuse(state)

    if isinstance(event, Cancelled):
        if state.phase == Phase.IDLE:
            return _refuse(state)
        return Transition(
            state=OrchestratorState(attempt_id=state.attempt_id, student=state.student),
            effects=(StopScan(), CancelVerification()),
        )

    if isinstance(event, InternalFailure):
        if not state.in_flight:
            return _refuse(state)
        return _fail(state, event.failure, StopScan(), CancelVerification())

    if isinstance(event, UserConfirmed):
        if state.phase != Phase.AWAITING_CONFIRMATION or state.session is None:
            return _refuse(state)
        return Transition(
            state=replace(state, phase=Phase.SCANNING),
            effects=(StartScan(state.attempt_id, state.session.room),),
        )

    if isinstance(event, RoomFound):
        if state.phase != Phase.SCANNING or state.session is None or state.student is None:
            return _refuse(state)
        verification = VerificationSession(
            attempt_id=state.attempt_id,
            detected_room=event.detected,
            subject_code=state.session.subject,
            started_at=event.detected.detected_at,
        )
        return Transition(
            state=replace(state, phase=Phase.ROOM_CONFIRMED, verification=verification),
            effects=(CheckEligibility(state.attempt_id, state.student.student_id, state.session),),
        )

    if isinstance(event, ScanFailed):
        if state.phase != Phase.SCANNING:
            return _refuse(state)
        return _fail(state, event.failure)

    if isinstance(event, EligibilityStarted):
        if state.phase != Phase.ROOM_CONFIRMED:
            return _refuse(state)
        return Transition(state=replace(state, phase=Phase.CHECKING_ELIGIBILITY))

    if isinstance(event, EligibilityResolved):
        if state.phase != Phase.CHECKING_ELIGIBILITY:
            return _refuse(state)
        if not event.verdict.allowed:
            return Transition(state=replace(state, phase=Phase.DENIED, verdict=event.verdict))
        return Transition(
            state=replace(state, phase=Phase.AWAITING_VERIFICATION, verdict=event.verdict),
            effects=(BeginVerification(state.attempt_id),),
        )

    if isinstance(event, VerifierReturned):
        if (
            state.phase != Phase.AWAITING_VERIFICATION
            or state.student is None
            or state.session is None
            or state.verification is None
        ):
            return _refuse(state)
        if not identities_match(event.identity, state.student.student_id):
            failure = security_mismatch_failure()
            return Transition(
                state=replace(
                    state,
                    phase=Phase.SECURITY_REJECTED,
                    failure=failure,
                    verification=state.verification.fail(failure),
                ),
                effects=(
                    ReportSecurityEvent(
                        attempt_id=state.attempt_id,
                        expected_identity=state.student.student_id,
                        returned_identity=event.identity,
                        session_id=state.session.session_id,
                        device_name=state.verification.detected_room.device_name,
                    ),
                ),
            )
        result = BiometricResult(
            identity=event.identity,
            received_at=event.received_at,
            message="Face authentication successful",
        )
        verification = state.verification.complete(result)
        record = build_record(state.student, state.session, verification, event.received_at)
        return Transition(
            state=replace(
                state,
                phase=Phase.COMMITTING,
                verification=verification,
                record=record,
                failure=None,
            ),
            effects=(CommitRecord(state.attempt_id, record),),
        )

    if isinstance(event, VerifierFailed):
        if state.phase != Phase.AWAITING_VERIFICATION:
            return _refuse(state)
        return _fail(state, event.failure)

    if isinstance(event, CommitSucceeded):
        if state.phase != Phase.COMMITTING:
            return _refuse(state)
        return Transition(state=replace(state, phase=Phase.SUCCESS, record_id=event.record_id))

    if isinstance(event, CommitFailed):
        if state.phase != Phase.COMMITTING:
            return _refuse(state)
        return _fail(state, event.failure)

    if isinstance(event, RetryRequested):
        if not state.can_retry or state.session is None:
            return _refuse(state)
        kind = state.failure.kind
        if kind == FailureKind.BIOMETRIC_FAILURE and state.verification is not None:
            return Transition(
                state=replace(
                    state,
                    phase=Phase.AWAITING_VERIFICATION,
                    failure=None,
                    verification=replace(state.verification, failure=None),
                ),
                effects=(BeginVerification(state.attempt_id),),
            )
        if kind in (FailureKind.RADIO_UNAVAILABLE, FailureKind.SCAN_TIMEOUT):
            return Transition(
                state=replace(state, phase=Phase.SCANNING, failure=None, verification=None),
                effects=(StartScan(state.attempt_id, state.session.room),),
            )
        return _refuse(state)

    return _refuse(state)
