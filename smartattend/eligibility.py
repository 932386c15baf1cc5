"""
Duplicate-mark prevention.

Two disjoint rules, picked by `session.is_extra`:

- extra class: one mark per subject per day, whatever the session type;
- regular class: one mark per subject per session type per day, so a
  lecture and a lab of the same subject can both be attended.

If the store cannot be queried the check FAILS OPEN: the attempt is
allowed and a warning is logged. The store's unique indexes still reject
a true duplicate at commit time.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable

from smartattend.errors import StoreUnavailableError
from smartattend.models import ActiveSessionDescriptor, AttendanceRecord, EligibilityVerdict
from smartattend.stores import AttendanceStore

logger = logging.getLogger(__name__)


def eligibility_filters(session: ActiveSessionDescriptor) -> dict[str, object]:
    if session.is_extra:
        return {"present": True, "is_extra": True}
    return {"present": True, "is_extra": False, "session_type": session.session_type}


def find_conflict(
    records: Iterable[AttendanceRecord],
    session: ActiveSessionDescriptor,
    day: str,
) -> AttendanceRecord | None:
    for record in records:
        if record.subject != session.subject or record.date != day or not record.present:
            continue
        if session.is_extra:
            if record.is_extra:
                return record
        elif not record.is_extra and record.session_type == session.session_type:
            return record
    return None


def denial_reason(session: ActiveSessionDescriptor) -> str:
    if session.is_extra:
        return f"Extra class attendance already marked for {session.subject} today"
    return f"Attendance already marked for {session.session_type.value} today"


class EligibilityEngine:
    def __init__(
        self,
        store: AttendanceStore,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.clock = clock

    async def check_eligibility(
        self,
        student_id: str,
        session: ActiveSessionDescriptor,
    ) -> EligibilityVerdict:
        day = self.clock().date().isoformat()
        try:
            records = await self.store.query_records(
                student_id,
                session.subject,
                day,
                eligibility_filters(session),
            )
        except StoreUnavailableError as exc:
            logger.warning(
                "Duplicate check unavailable for %s %s on %s, allowing (fail-open): %s",
                student_id,
                session.subject,
                day,
                exc,
            )
            return EligibilityVerdict.allow(fail_open=True)

        conflict = find_conflict(records, session, day)
        if conflict is None:
            return EligibilityVerdict.allow()

        reason = denial_reason(session)
        logger.info("Eligibility denied for %s: %s", student_id, reason)
        return EligibilityVerdict.deny(reason)
