import asyncio
import logging

from conftest import STUDENT, TODAY, InMemoryStore, fixed_clock, lecture_session, prior_record
from smartattend.eligibility import EligibilityEngine, eligibility_filters
from smartattend.models import SessionType


def _check(store, session):
    engine = EligibilityEngine(store, clock=fixed_clock)
    return asyncio.run(engine.check_eligibility(STUDENT.student_id, session))


def test_first_lecture_of_the_day_is_allowed():
    store = InMemoryStore()
    verdict = _check(store, lecture_session())
    assert verdict.allowed
    assert not verdict.fail_open
    assert store.queries == [
        {
            "student_id": "2021001",
            "subject": "UCS301",
            "date": TODAY,
            "present": True,
            "is_extra": False,
            "session_type": SessionType.LECTURE,
        }
    ]


def test_second_lecture_same_subject_is_denied():
    verdict = _check(InMemoryStore([prior_record()]), lecture_session())
    assert not verdict.allowed
    assert "lecture" in verdict.reason


def test_lab_after_lecture_is_allowed():
    verdict = _check(InMemoryStore([prior_record()]), lecture_session(session_type=SessionType.LAB))
    assert verdict.allowed


def test_lecture_for_another_subject_is_allowed():
    verdict = _check(InMemoryStore([prior_record(subject="UCS302")]), lecture_session())
    assert verdict.allowed


def test_yesterdays_lecture_does_not_count():
    verdict = _check(InMemoryStore([prior_record(date="2026-03-01")]), lecture_session())
    assert verdict.allowed


def test_absent_record_does_not_block():
    verdict = _check(InMemoryStore([prior_record(present=False)]), lecture_session())
    assert verdict.allowed


def test_extra_class_denied_by_any_prior_extra_regardless_of_type():
    store = InMemoryStore([prior_record(is_extra=True, session_type=SessionType.TUTORIAL)])
    verdict = _check(store, lecture_session(is_extra=True, session_type=SessionType.LAB))
    assert not verdict.allowed
    assert verdict.reason == "Extra class attendance already marked for UCS301 today"
    assert store.queries[0] == {
        "student_id": "2021001",
        "subject": "UCS301",
        "date": TODAY,
        "present": True,
        "is_extra": True,
    }


def test_extra_class_ignores_regular_records():
    verdict = _check(InMemoryStore([prior_record()]), lecture_session(is_extra=True))
    assert verdict.allowed


def test_regular_class_ignores_extra_records():
    verdict = _check(InMemoryStore([prior_record(is_extra=True)]), lecture_session())
    assert verdict.allowed


def test_store_failure_fails_open_with_warning(caplog):
    store = InMemoryStore([prior_record()])
    store.fail_queries = True
    with caplog.at_level(logging.WARNING, logger="smartattend.eligibility"):
        verdict = _check(store, lecture_session())
    assert verdict.allowed
    assert verdict.fail_open
    assert any("fail-open" in r.getMessage() for r in caplog.records)


def test_filters_for_regular_and_extra():
    assert eligibility_filters(lecture_session(session_type=SessionType.TUTORIAL)) == {
        "present": True,
        "is_extra": False,
        "session_type": SessionType.TUTORIAL,
    }
    assert eligibility_filters(lecture_session(is_extra=True)) == {"present": True, "is_extra": True}
