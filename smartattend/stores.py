"""Session Directory and Attendance Store seams plus their sqlite-backed adapters."""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Mapping, Protocol

from database import db
from smartattend.errors import CommitRejectedError, StoreUnavailableError
from smartattend.models import ActiveSessionDescriptor, AttendanceRecord, SessionType

logger = logging.getLogger(__name__)


class SessionDirectory(Protocol):
    async def get_active_session(self, class_group: str) -> ActiveSessionDescriptor | None: ...


class AttendanceStore(Protocol):
    async def query_records(
        self,
        student_id: str,
        subject: str,
        date: str,
        filters: Mapping[str, object],
    ) -> list[AttendanceRecord]: ...

    async def insert_record(self, record: AttendanceRecord) -> object: ...


class SqliteSessionDirectory:
    async def get_active_session(self, class_group: str) -> ActiveSessionDescriptor | None:
        try:
            document = await asyncio.to_thread(db.get_active_session, class_group)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Session directory unavailable: {exc}") from exc
        if document is None:
            return None
        try:
            return ActiveSessionDescriptor.from_document(document)
        except ValueError as exc:
            logger.warning("Ignoring malformed active session for %s: %s", class_group, exc)
            return None


class SqliteAttendanceStore:
    async def query_records(
        self,
        student_id: str,
        subject: str,
        date: str,
        filters: Mapping[str, object],
    ) -> list[AttendanceRecord]:
        session_type = filters.get("session_type")
        if isinstance(session_type, SessionType):
            session_type = session_type.value
        try:
            documents = await asyncio.to_thread(
                db.query_attendance_records,
                student_id,
                subject,
                date,
                present=filters.get("present", True),
                is_extra=filters.get("is_extra"),
                session_type=session_type,
            )
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Attendance store unavailable: {exc}") from exc

        records: list[AttendanceRecord] = []
        for document in documents:
            try:
                records.append(AttendanceRecord.from_document(document))
            except ValueError as exc:
                logger.warning("Skipping unreadable attendance row %s: %s", document.get("id"), exc)
        return records

    async def insert_record(self, record: AttendanceRecord) -> int:
        try:
            return await asyncio.to_thread(db.insert_attendance_record, record.to_document())
        except sqlite3.IntegrityError as exc:
            raise CommitRejectedError("Attendance already recorded", duplicate=True) from exc
        except sqlite3.Error as exc:
            raise CommitRejectedError(f"Attendance store rejected the record: {exc}") from exc
