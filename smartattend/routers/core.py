from fastapi import APIRouter, Request

from smartattend import config

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/engine")
def engine_config(request: Request):
    return {
        "scan_timeout_seconds": request.app.state.scanner.timeout_seconds,
        "recent_sessions_limit": config.RECENT_SESSIONS_LIMIT,
        "db_path": str(config.DB_PATH),
        "student_configured": request.app.state.orchestrator is not None,
        "radio_state": request.app.state.radio.state.value,
    }
