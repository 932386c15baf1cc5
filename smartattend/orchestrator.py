"""
Attendance orchestration runtime.

All transitions go through `dispatch()`, which runs on the event loop and
never awaits, so radio callbacks, store replies and verifier messages are
applied one at a time. Effects run as tasks and report back as events.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Coroutine

from smartattend.biometric import (
    BiometricVerifier,
    VerifierAuthenticated,
    VerifierClosed,
    VerifierError,
    biometric_failure,
    closed_failure,
)
from smartattend.config import RECENT_SESSIONS_LIMIT
from smartattend.eligibility import EligibilityEngine
from smartattend.errors import (
    AttendanceInProgressError,
    CommitRejectedError,
    InvalidActionError,
    RadioUnavailableError,
    ScanCancelledError,
    ScanTimeoutError,
    StoreUnavailableError,
    commit_failure,
    internal_failure,
    radio_unavailable_failure,
    scan_timeout_failure,
)
from smartattend.logs import security_logger
from smartattend.models import StudentIdentity, VerificationSession
from smartattend.scanner import ScanController
from smartattend.state import (
    BeginVerification,
    CancelVerification,
    Cancelled,
    CheckEligibility,
    CommitFailed,
    CommitRecord,
    CommitSucceeded,
    Effect,
    EligibilityResolved,
    EligibilityStarted,
    Event,
    InternalFailure,
    OrchestratorState,
    Phase,
    ReportSecurityEvent,
    RetryRequested,
    RoomFound,
    ScanFailed,
    SessionLoaded,
    SessionUnavailable,
    StartScan,
    StopScan,
    UserConfirmed,
    VerifierFailed,
    VerifierReturned,
    reduce,
)
from smartattend.stores import AttendanceStore, SessionDirectory

logger = logging.getLogger(__name__)


class AttendanceOrchestrator:
    """Runs one attendance attempt at a time for the signed-in student."""

    def __init__(
        self,
        student: StudentIdentity,
        *,
        directory: SessionDirectory,
        store: AttendanceStore,
        verifier: BiometricVerifier,
        scanner: ScanController,
        eligibility: EligibilityEngine | None = None,
        clock: Callable[[], datetime] = datetime.now,
        recent_limit: int = RECENT_SESSIONS_LIMIT,
    ) -> None:
        self.student = student
        self.directory = directory
        self.store = store
        self.verifier = verifier
        self.scanner = scanner
        self.eligibility = eligibility or EligibilityEngine(store, clock=clock)
        self.clock = clock
        self.recent_limit = max(1, int(recent_limit))
        self.state = OrchestratorState(student=student)
        self.completed_sessions: list[VerificationSession] = []
        self._starting = False
        self._start_cancelled = False
        self._tasks: dict[asyncio.Task, int] = {}
        self._waiters: list[tuple[frozenset[Phase], asyncio.Future[OrchestratorState]]] = []

    # ------------------------------------------------------------------ queries
    @property
    def phase(self) -> Phase:
        return self.state.phase

    @property
    def in_flight(self) -> bool:
        return self._starting or self.state.in_flight

    def total_marked(self) -> int:
        return len(self.completed_sessions)

    def marked_today(self, subject: str) -> bool:
        today = self.clock().date()
        for session in self.completed_sessions:
            marked_at = session.biometric_result.received_at if session.biometric_result else session.started_at
            if session.subject_code == subject and marked_at.date() == today:
                return True
        return False

    def history_for(self, subject: str) -> list[VerificationSession]:
        return [session for session in self.completed_sessions if session.subject_code == subject]

    def snapshot(self) -> dict[str, Any]:
        state = self.state
        session = state.session
        verification = state.verification
        detected = verification.detected_room if verification else None
        return {
            "phase": state.phase.value,
            "attempt_id": state.attempt_id,
            "in_flight": self.in_flight,
            "can_retry": state.can_retry,
            "student": {
                "student_id": self.student.student_id,
                "class_group": self.student.class_group,
                "name": self.student.name,
            },
            "session": None if session is None else {
                "subject": session.subject,
                "room": session.room,
                "type": session.session_type.value,
                "session_id": session.session_id,
                "date": session.calendar_date,
                "is_extra": session.is_extra,
            },
            "detected_room": None if detected is None else {
                "room_code": detected.room_code,
                "device_name": detected.device_name,
                "subject_code": detected.subject_code,
                "raw_payload_echo": detected.raw_payload_echo,
                "rssi": detected.rssi,
                "detected_at": detected.detected_at.isoformat(timespec="seconds"),
            },
            "verdict": None if state.verdict is None else {
                "allowed": state.verdict.allowed,
                "reason": state.verdict.reason,
                "fail_open": state.verdict.fail_open,
            },
            "failure": state.failure.as_dict() if state.failure else None,
            "record": state.record.to_document() if state.record else None,
            "record_id": state.record_id,
            "scan_state": self.scanner.state.value,
            "total_marked": self.total_marked(),
        }

    # ------------------------------------------------------------------ user actions
    async def start_attendance_process(self) -> OrchestratorState:
        """
        Load the active session for the student's class group and wait for
        the user to confirm. Raises `AttendanceInProgressError` while another
        attempt is in flight.
        """
        if self.in_flight:
            raise AttendanceInProgressError("An attendance attempt is already in progress.")
        self._starting = True
        self._start_cancelled = False
        attempt_id = self.state.attempt_id + 1
        class_group = self.student.class_group
        try:
            session = await self.directory.get_active_session(class_group)
            lookup_error = None
        except StoreUnavailableError as exc:
            logger.warning("Failed to check active session for %s: %s", class_group, exc)
            session = None
            lookup_error = "Failed to check session. Please try again."
        finally:
            self._starting = False

        if self._start_cancelled:
            logger.info("Attendance start cancelled before the session for %s loaded", class_group)
            return self.state
        if session is None or not session.is_active:
            logger.info("No active session for class %s", class_group)
            self.dispatch(SessionUnavailable(attempt_id, self.student, lookup_error))
        else:
            logger.info(
                "Active session for %s: subject=%s room=%s type=%s extra=%s",
                class_group,
                session.subject,
                session.room,
                session.session_type.value,
                session.is_extra,
            )
            self.dispatch(SessionLoaded(attempt_id, self.student, session))
        return self.state

    def confirm(self) -> OrchestratorState:
        self._require(UserConfirmed(self.state.attempt_id), "Nothing is waiting for confirmation.")
        return self.state

    def retry(self) -> OrchestratorState:
        self._require(RetryRequested(self.state.attempt_id), "The last failure cannot be retried.")
        return self.state

    def cancel(self) -> OrchestratorState:
        if self._starting:
            self._start_cancelled = True
        attempt_id = self.state.attempt_id
        if self.dispatch(Cancelled(attempt_id)):
            logger.info("Attendance attempt %s cancelled", attempt_id)
            self._cancel_tasks(attempt_id)
        return self.state

    async def wait_for(self, *phases: Phase, timeout: float | None = None) -> OrchestratorState:
        if self.state.phase in phases:
            return self.state
        future: asyncio.Future[OrchestratorState] = asyncio.get_running_loop().create_future()
        entry = (frozenset(phases), future)
        self._waiters.append(entry)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            if entry in self._waiters:
                self._waiters.remove(entry)

    async def close(self) -> None:
        self.scanner.stop_scanning()
        self.verifier.cancel()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------ state machine
    def dispatch(self, event: Event) -> bool:
        transition = reduce(self.state, event)
        if not transition.accepted:
            logger.debug("Ignoring %s in phase %s", type(event).__name__, self.state.phase.value)
            return False

        previous = self.state
        self.state = transition.state
        if previous.phase != self.state.phase:
            logger.info(
                "Attempt %s: %s -> %s",
                self.state.attempt_id,
                previous.phase.value,
                self.state.phase.value,
            )
        if self.state.phase == Phase.SUCCESS and previous.phase != Phase.SUCCESS:
            self._remember(self.state.verification)

        for effect in transition.effects:
            self._run_effect(effect)
        self._notify_waiters()
        return True

    def _require(self, event: Event, message: str) -> None:
        if not self.dispatch(event):
            raise InvalidActionError(message)

    def _remember(self, verification: VerificationSession | None) -> None:
        if verification is None:
            return
        self.completed_sessions.insert(0, verification)
        del self.completed_sessions[self.recent_limit:]

    def _notify_waiters(self) -> None:
        for phases, future in list(self._waiters):
            if not future.done() and self.state.phase in phases:
                future.set_result(self.state)

    # ------------------------------------------------------------------ effects
    def _run_effect(self, effect: Effect) -> None:
        if isinstance(effect, StartScan):
            self._spawn(effect.attempt_id, self._scan(effect))
        elif isinstance(effect, StopScan):
            self.scanner.stop_scanning()
        elif isinstance(effect, CheckEligibility):
            self._spawn(effect.attempt_id, self._check_eligibility(effect))
        elif isinstance(effect, BeginVerification):
            self._spawn(effect.attempt_id, self._verify(effect))
        elif isinstance(effect, CancelVerification):
            self.verifier.cancel()
        elif isinstance(effect, CommitRecord):
            self._spawn(effect.attempt_id, self._commit(effect))
        elif isinstance(effect, ReportSecurityEvent):
            security_logger().error(
                "Identity mismatch: verifier returned %r but signed-in student is %r "
                "(attempt=%s session=%s device=%s); attendance not recorded",
                effect.returned_identity,
                effect.expected_identity,
                effect.attempt_id,
                effect.session_id,
                effect.device_name,
            )

    def _spawn(self, attempt_id: int, coro: Coroutine) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks[task] = attempt_id
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        attempt_id = self._tasks.pop(task, None)
        if task.cancelled() or attempt_id is None:
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Attendance step failed", exc_info=exc)
            self.dispatch(InternalFailure(attempt_id, internal_failure(exc)))

    def _cancel_tasks(self, attempt_id: int) -> None:
        for task, task_attempt in list(self._tasks.items()):
            if task_attempt == attempt_id and task is not asyncio.current_task():
                task.cancel()

    async def _scan(self, effect: StartScan) -> None:
        try:
            detected = await self.scanner.scan_for_room(effect.room)
        except RadioUnavailableError as exc:
            self.dispatch(ScanFailed(effect.attempt_id, radio_unavailable_failure(exc)))
            return
        except ScanTimeoutError as exc:
            self.dispatch(ScanFailed(effect.attempt_id, scan_timeout_failure(exc)))
            return
        except ScanCancelledError:
            return

        session = self.state.session
        if session is not None and detected.subject_code and detected.subject_code != session.subject:
            logger.warning(
                "Beacon %s advertises subject %s but the active session is %s",
                detected.device_name,
                detected.subject_code,
                session.subject,
            )
        self.dispatch(RoomFound(effect.attempt_id, detected))

    async def _check_eligibility(self, effect: CheckEligibility) -> None:
        self.dispatch(EligibilityStarted(effect.attempt_id))
        verdict = await self.eligibility.check_eligibility(effect.student_id, effect.session)
        self.dispatch(EligibilityResolved(effect.attempt_id, verdict))

    async def _verify(self, effect: BeginVerification) -> None:
        outcome = await self.verifier.begin_verification()
        if isinstance(outcome, VerifierAuthenticated):
            self.dispatch(VerifierReturned(effect.attempt_id, outcome.identity, self.clock()))
        elif isinstance(outcome, VerifierError):
            failure = biometric_failure(outcome.code)
            logger.info("Face verification failed: %s (retryable=%s)", failure.code, failure.retryable)
            self.dispatch(VerifierFailed(effect.attempt_id, failure))
        elif isinstance(outcome, VerifierClosed):
            logger.info("Face verification closed: %s", outcome.reason or "by user")
            self.dispatch(VerifierFailed(effect.attempt_id, closed_failure()))

    async def _commit(self, effect: CommitRecord) -> None:
        record = effect.record
        try:
            record_id = await self.store.insert_record(record)
        except (CommitRejectedError, StoreUnavailableError) as exc:
            logger.warning("Attendance commit rejected for %s %s: %s", record.student_id, record.subject, exc)
            self.dispatch(CommitFailed(effect.attempt_id, commit_failure(exc)))
            return
        logger.info(
            "Attendance marked: student=%s subject=%s type=%s room=%s date=%s",
            record.student_id,
            record.subject,
            record.session_type.value,
            record.device_room,
            record.date,
        )
        self.dispatch(CommitSucceeded(effect.attempt_id, record_id))
