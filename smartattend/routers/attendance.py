from fastapi import APIRouter, Depends, HTTPException, Request

from smartattend.errors import AttendanceInProgressError, InvalidActionError
from smartattend.orchestrator import AttendanceOrchestrator
from smartattend.security import require_bridge

router = APIRouter(prefix="/attendance", dependencies=[Depends(require_bridge)])


def get_orchestrator(request: Request) -> AttendanceOrchestrator:
    orchestrator = request.app.state.orchestrator
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="No student is signed in on this device.")
    return orchestrator


@router.get("/state")
async def attendance_state(orchestrator: AttendanceOrchestrator = Depends(get_orchestrator)):
    return orchestrator.snapshot()


@router.get("/recent")
async def recent_attempts(
    subject: str | None = None,
    orchestrator: AttendanceOrchestrator = Depends(get_orchestrator),
):
    sessions = orchestrator.history_for(subject) if subject else orchestrator.completed_sessions
    return {
        "total_marked": orchestrator.total_marked(),
        "sessions": [
            {
                "attempt_id": s.attempt_id,
                "subject": s.subject_code,
                "device_name": s.detected_room.device_name,
                "started_at": s.started_at.isoformat(timespec="seconds"),
                "verified_at": s.biometric_result.received_at.isoformat(timespec="seconds")
                if s.biometric_result
                else None,
            }
            for s in sessions
        ],
    }


@router.post("/start")
async def start_attendance(orchestrator: AttendanceOrchestrator = Depends(get_orchestrator)):
    try:
        await orchestrator.start_attendance_process()
    except AttendanceInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return orchestrator.snapshot()


@router.post("/confirm")
async def confirm_attendance(orchestrator: AttendanceOrchestrator = Depends(get_orchestrator)):
    try:
        orchestrator.confirm()
    except InvalidActionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return orchestrator.snapshot()


@router.post("/retry")
async def retry_attendance(orchestrator: AttendanceOrchestrator = Depends(get_orchestrator)):
    try:
        orchestrator.retry()
    except InvalidActionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return orchestrator.snapshot()


@router.post("/cancel")
async def cancel_attendance(orchestrator: AttendanceOrchestrator = Depends(get_orchestrator)):
    orchestrator.cancel()
    return orchestrator.snapshot()
