from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from database.db import create_tables
from smartattend import config
from smartattend.biometric import BridgeVerifier
from smartattend.logs import setup_logging
from smartattend.models import StudentIdentity
from smartattend.orchestrator import AttendanceOrchestrator
from smartattend.radio import QueueRadio
from smartattend.routers.attendance import router as attendance_router
from smartattend.routers.bridge import router as bridge_router
from smartattend.routers.core import router as core_router
from smartattend.scanner import ScanController
from smartattend.stores import SqliteAttendanceStore, SqliteSessionDirectory


def configured_student() -> StudentIdentity | None:
    if not config.STUDENT_ID or not config.CLASS_GROUP:
        return None
    return StudentIdentity(
        student_id=config.STUDENT_ID,
        class_group=config.CLASS_GROUP,
        name=config.STUDENT_NAME,
    )


def create_app(
    *,
    student: StudentIdentity | None = None,
    radio: QueueRadio | None = None,
    verifier: BridgeVerifier | None = None,
    directory=None,
    store=None,
    scan_timeout: float | None = None,
) -> FastAPI:
    app = FastAPI(title="Smart Attend Engine")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ALLOW_ORIGINS,
        allow_credentials=config.CORS_ALLOW_CREDENTIALS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    student = student or configured_student()
    radio = radio or QueueRadio()
    verifier = verifier or BridgeVerifier()
    timeout = scan_timeout or config.SCAN_TIMEOUT_SECONDS
    scanner = ScanController(radio, timeout_seconds=timeout)

    app.state.radio = radio
    app.state.verifier = verifier
    app.state.scanner = scanner
    app.state.orchestrator = None
    if student is not None:
        app.state.orchestrator = AttendanceOrchestrator(
            student,
            directory=directory or SqliteSessionDirectory(),
            store=store or SqliteAttendanceStore(),
            verifier=verifier,
            scanner=scanner,
            recent_limit=config.RECENT_SESSIONS_LIMIT,
        )

    @app.on_event("startup")
    def _startup():
        setup_logging(config.LOG_LEVEL)
        create_tables()

    @app.on_event("shutdown")
    async def _shutdown():
        if app.state.orchestrator is not None:
            await app.state.orchestrator.close()

    app.include_router(core_router)
    app.include_router(attendance_router)
    app.include_router(bridge_router)
    return app


app = create_app()
