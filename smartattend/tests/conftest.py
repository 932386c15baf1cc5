import asyncio
from dataclasses import dataclass
from datetime import datetime

import pytest

import database.db as db
import smartattend.config as config
from smartattend.biometric import VerifierClosed
from smartattend.errors import StoreUnavailableError
from smartattend.models import (
    ActiveSessionDescriptor,
    AttendanceRecord,
    SessionType,
    StudentIdentity,
)
from smartattend.orchestrator import AttendanceOrchestrator
from smartattend.radio import QueueRadio, RadioState
from smartattend.scanner import ScanController

NOW = datetime(2026, 3, 2, 9, 15, 0)
TODAY = NOW.date().isoformat()

STUDENT = StudentIdentity(student_id="2021001", class_group="CSE-A", name="Test Student")


def fixed_clock() -> datetime:
    return NOW


def lecture_session(**overrides) -> ActiveSessionDescriptor:
    values = {
        "subject": "UCS301",
        "room": "LT101",
        "session_type": SessionType.LECTURE,
        "session_id": "sess-001",
        "calendar_date": TODAY,
        "is_extra": False,
        "is_active": True,
    }
    values.update(overrides)
    return ActiveSessionDescriptor(**values)


def prior_record(**overrides) -> AttendanceRecord:
    values = {
        "date": TODAY,
        "student_id": STUDENT.student_id,
        "subject": "UCS301",
        "class_group": STUDENT.class_group,
        "session_type": SessionType.LECTURE,
        "timestamp": NOW.replace(hour=8),
        "device_room": "LT101042",
        "is_extra": False,
        "present": True,
    }
    values.update(overrides)
    return AttendanceRecord(**values)


class FakeDirectory:
    def __init__(self, session: ActiveSessionDescriptor | None = None, *, error: Exception | None = None):
        self.session = session
        self.error = error
        self.lookups: list[str] = []

    async def get_active_session(self, class_group: str):
        self.lookups.append(class_group)
        if self.error is not None:
            raise self.error
        return self.session


class InMemoryStore:
    """Attendance store double that records every query and insert."""

    def __init__(self, records: list[AttendanceRecord] | None = None):
        self.records = list(records or [])
        self.inserted: list[AttendanceRecord] = []
        self.queries: list[dict] = []
        self.fail_queries = False
        self.insert_error: Exception | None = None

    async def query_records(self, student_id, subject, date, filters):
        self.queries.append({"student_id": student_id, "subject": subject, "date": date, **filters})
        if self.fail_queries:
            raise StoreUnavailableError("store offline")
        matches = []
        for record in self.records:
            if (record.student_id, record.subject, record.date) != (student_id, subject, date):
                continue
            if "present" in filters and record.present != filters["present"]:
                continue
            if "is_extra" in filters and record.is_extra != filters["is_extra"]:
                continue
            if "session_type" in filters and record.session_type != filters["session_type"]:
                continue
            matches.append(record)
        return matches

    async def insert_record(self, record):
        if self.insert_error is not None:
            raise self.insert_error
        self.inserted.append(record)
        self.records.append(record)
        return len(self.records)


class ScriptedVerifier:
    """Answers each `begin_verification()` with the next scripted outcome, or waits."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0
        self.cancelled = 0
        self._waiting: asyncio.Future | None = None

    async def begin_verification(self):
        self.calls += 1
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        self._waiting = asyncio.get_running_loop().create_future()
        return await self._waiting

    def cancel(self):
        self.cancelled += 1
        if self._waiting is not None and not self._waiting.done():
            self._waiting.set_result(VerifierClosed("cancelled"))


@dataclass
class Engine:
    orchestrator: AttendanceOrchestrator
    radio: QueueRadio
    scanner: ScanController
    directory: FakeDirectory
    store: InMemoryStore
    verifier: ScriptedVerifier


@pytest.fixture()
def make_engine():
    def _make(
        *,
        session: ActiveSessionDescriptor | None = None,
        records: list[AttendanceRecord] | None = None,
        outcomes: tuple = (),
        radio_state: RadioState = RadioState.READY,
        scan_timeout: float = 1.0,
        directory: FakeDirectory | None = None,
        store=None,
        student: StudentIdentity = STUDENT,
    ) -> Engine:
        radio = QueueRadio(radio_state)
        scanner = ScanController(radio, timeout_seconds=scan_timeout)
        directory = directory or FakeDirectory(session if session is not None else lecture_session())
        store = store if store is not None else InMemoryStore(records)
        verifier = ScriptedVerifier(*outcomes)
        orchestrator = AttendanceOrchestrator(
            student,
            directory=directory,
            store=store,
            verifier=verifier,
            scanner=scanner,
            clock=fixed_clock,
            recent_limit=5,
        )
        return Engine(orchestrator, radio, scanner, directory, store, verifier)

    return _make


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


@pytest.fixture()
def temp_db(tmp_path, monkeypatch):
    test_db = tmp_path / "smartattend_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db
