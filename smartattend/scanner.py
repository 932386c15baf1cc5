"""Radio scan lifecycle: Idle -> Scanning -> (RoomFound | TimedOut | Stopped)."""
from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from enum import Enum

from smartattend.config import SCAN_TIMEOUT_SECONDS
from smartattend.errors import RadioUnavailableError, ScanCancelledError, ScanTimeoutError
from smartattend.matcher import extract_identity, matches_room, normalize_room
from smartattend.models import NO_DATA, BroadcastPayload, DetectedRoom
from smartattend.radio import RadioAdapter, RadioState

logger = logging.getLogger(__name__)


class ScanState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    ROOM_FOUND = "room_found"
    TIMED_OUT = "timed_out"
    STOPPED = "stopped"


def _mark_retrieved(future: asyncio.Future) -> None:
    # Superseded scans may never be awaited.
    if not future.cancelled():
        future.exception()


class ScanController:
    """Scan for one target room at a time and report at most one detection per scan."""

    def __init__(self, radio: RadioAdapter, *, timeout_seconds: float = SCAN_TIMEOUT_SECONDS) -> None:
        self.radio = radio
        self.timeout_seconds = float(timeout_seconds)
        self.state = ScanState.IDLE
        self.target_room = ""
        self.detected: DetectedRoom | None = None
        self._result: asyncio.Future[DetectedRoom] | None = None
        self._listener: asyncio.Task | None = None
        self._timeout: asyncio.TimerHandle | None = None

    def start_scanning(self, target_room: str) -> asyncio.Future[DetectedRoom]:
        """
        Begin listening for `target_room` and return a future for the detection.

        Raises `RadioUnavailableError` before any listening starts when the
        radio is not ready. The future fails with `ScanTimeoutError` when
        nothing matches within the timeout, or `ScanCancelledError` when the
        scan is stopped or replaced.
        """
        radio_state = self.radio.state
        if radio_state != RadioState.READY:
            logger.warning("Cannot start scanning: radio is %s", radio_state.value)
            raise RadioUnavailableError(radio_state)

        target = normalize_room(target_room)
        if not target:
            raise ValueError("Target room is required.")

        if self.state == ScanState.SCANNING:
            self._finish(ScanState.STOPPED, error=ScanCancelledError("Scan replaced by a new scan"))

        loop = asyncio.get_running_loop()
        result: asyncio.Future[DetectedRoom] = loop.create_future()
        result.add_done_callback(_mark_retrieved)

        self.target_room = target
        self.detected = None
        self._result = result
        self.state = ScanState.SCANNING
        self._listener = loop.create_task(self._listen(result))
        self._timeout = loop.call_later(self.timeout_seconds, self._on_timeout, result)
        logger.info("Scanning for room %s (timeout %.0fs)", target, self.timeout_seconds)
        return result

    async def scan_for_room(self, target_room: str) -> DetectedRoom:
        result = self.start_scanning(target_room)
        try:
            return await result
        except asyncio.CancelledError:
            if self._result is result:
                self.stop_scanning()
            raise

    def stop_scanning(self) -> None:
        if self.state != ScanState.SCANNING:
            return
        self._finish(ScanState.STOPPED, error=ScanCancelledError("Scan stopped"))
        logger.info("Stopped scanning for room %s", self.target_room)

    def reset(self) -> None:
        self.stop_scanning()
        self.state = ScanState.IDLE
        self.target_room = ""
        self.detected = None

    async def _listen(self, result: asyncio.Future[DetectedRoom]) -> None:
        async with aclosing(self.radio.listen()) as stream:
            async for payload in stream:
                if result.done():
                    return
                if self._handle(payload, result):
                    return
        if not result.done() and result is self._result:
            # Stream ended underneath us: the radio went away mid-scan.
            self._finish(ScanState.STOPPED, error=RadioUnavailableError(self.radio.state))

    def _handle(self, payload: BroadcastPayload, result: asyncio.Future[DetectedRoom]) -> bool:
        if result is not self._result or self.state != ScanState.SCANNING:
            return True
        if not matches_room(payload.device_name, self.target_room):
            return False

        identity = extract_identity(payload)
        detected = DetectedRoom(
            room_code=self.target_room,
            device_name=normalize_room(payload.device_name),
            subject_code=None if identity.subject_code == NO_DATA else identity.subject_code,
            raw_payload_echo=identity.raw_echo,
            rssi=payload.rssi,
            detected_at=payload.received_at,
        )
        logger.info(
            "Target room detected: device=%s room=%s rssi=%s subject=%s",
            detected.device_name,
            detected.room_code,
            detected.rssi,
            detected.subject_code,
        )
        self.detected = detected
        self._finish(ScanState.ROOM_FOUND, detected=detected)
        return True

    def _on_timeout(self, result: asyncio.Future[DetectedRoom]) -> None:
        self._timeout = None
        if result is not self._result or self.state != ScanState.SCANNING:
            return
        logger.info("Scan timeout: room %s not found", self.target_room)
        self._finish(
            ScanState.TIMED_OUT,
            error=ScanTimeoutError(self.target_room, self.timeout_seconds),
        )

    def _cancel_timeout(self) -> None:
        handle, self._timeout = self._timeout, None
        if handle is not None:
            handle.cancel()

    def _finish(
        self,
        state: ScanState,
        *,
        detected: DetectedRoom | None = None,
        error: Exception | None = None,
    ) -> None:
        self._cancel_timeout()
        listener, self._listener = self._listener, None
        if listener is not None and listener is not asyncio.current_task():
            listener.cancel()
        self.state = state
        result = self._result
        if result is None or result.done():
            return
        if error is not None:
            result.set_exception(error)
        else:
            result.set_result(detected)
