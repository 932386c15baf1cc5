"""
Biometric verifier bridge.

The face verifier runs in a hosted web page. The engine calls
`begin_verification()` without any pre-filled identity and the page
answers through the host with exactly one of: authenticated(identity),
error(code) or closed(). `BridgeVerifier` turns those messages into the
result of the awaited call.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, Union

from smartattend.errors import AttendanceFailure, FailureKind

logger = logging.getLogger(__name__)


class BiometricErrorCode(str, Enum):
    CAMERA_PERMISSION_DENIED = "camera_permission_denied"
    NO_FACE_DETECTED = "no_face_detected"
    FACE_NOT_RECOGNIZED = "face_not_recognized"
    MULTIPLE_FACES = "multiple_faces"
    SPOOF_DETECTED = "spoof_detected"
    NETWORK_ERROR = "network_error"
    WRONG_PIN = "wrong_pin"
    PROCESSING_ERROR = "processing_error"
    UNAUTHORIZED = "unauthorized"
    TERMS_NOT_ACCEPTED = "terms_not_accepted"
    UI_NOT_READY = "ui_not_ready"
    SESSION_EXPIRED = "session_expired"
    TIMED_OUT = "timed_out"
    TOO_MANY_REQUESTS = "too_many_requests"
    INITIALIZATION_FAILED = "initialization_failed"
    CLOSED = "closed"
    UNKNOWN = "unknown"


# Numeric codes reported by the hosted verifier SDK.
NUMERIC_CODES: dict[int, BiometricErrorCode] = {
    1: BiometricErrorCode.CAMERA_PERMISSION_DENIED,
    2: BiometricErrorCode.NO_FACE_DETECTED,
    3: BiometricErrorCode.FACE_NOT_RECOGNIZED,
    4: BiometricErrorCode.MULTIPLE_FACES,
    5: BiometricErrorCode.SPOOF_DETECTED,
    7: BiometricErrorCode.NETWORK_ERROR,
    8: BiometricErrorCode.WRONG_PIN,
    9: BiometricErrorCode.PROCESSING_ERROR,
    10: BiometricErrorCode.UNAUTHORIZED,
    11: BiometricErrorCode.TERMS_NOT_ACCEPTED,
    12: BiometricErrorCode.UI_NOT_READY,
    13: BiometricErrorCode.SESSION_EXPIRED,
    14: BiometricErrorCode.TIMED_OUT,
    15: BiometricErrorCode.TOO_MANY_REQUESTS,
}

TERMINAL_CODES: frozenset[BiometricErrorCode] = frozenset({
    BiometricErrorCode.CAMERA_PERMISSION_DENIED,
    BiometricErrorCode.UNAUTHORIZED,
    BiometricErrorCode.INITIALIZATION_FAILED,
    BiometricErrorCode.TOO_MANY_REQUESTS,
})

# code -> (short title, message, guidance)
_DETAILS: dict[BiometricErrorCode, tuple[str, str, str | None]] = {
    BiometricErrorCode.CAMERA_PERMISSION_DENIED: (
        "Camera Access Denied",
        "Camera permission denied",
        "Please go to Settings > Smart Attend > Camera and allow camera access",
    ),
    BiometricErrorCode.NO_FACE_DETECTED: (
        "No Face Detected",
        "No face detected. Please position your face in the camera",
        "Make sure your face is clearly visible and well-lit",
    ),
    BiometricErrorCode.FACE_NOT_RECOGNIZED: (
        "Face Not Recognized",
        "Face not recognized. Please register first",
        "Ensure you are registered in the system and try again",
    ),
    BiometricErrorCode.MULTIPLE_FACES: (
        "Multiple Faces",
        "Multiple faces detected. Please ensure only one face is visible",
        "Make sure only one person is visible in the camera",
    ),
    BiometricErrorCode.SPOOF_DETECTED: (
        "Spoofing Detected",
        "Face spoofing detected",
        "Please use your actual face, not a photo or video",
    ),
    BiometricErrorCode.NETWORK_ERROR: (
        "Network Error",
        "Network error. Please check your connection",
        "Check your internet connection and try again",
    ),
    BiometricErrorCode.WRONG_PIN: ("Wrong PIN", "Wrong PIN code", None),
    BiometricErrorCode.PROCESSING_ERROR: ("Processing Error", "Processing error. Please try again", None),
    BiometricErrorCode.UNAUTHORIZED: (
        "Unauthorized",
        "Unauthorized. Please check application settings",
        None,
    ),
    BiometricErrorCode.TERMS_NOT_ACCEPTED: ("Terms Not Accepted", "Terms not accepted", None),
    BiometricErrorCode.UI_NOT_READY: ("UI Not Ready", "UI not ready. Please refresh and try again", None),
    BiometricErrorCode.SESSION_EXPIRED: (
        "Session Expired",
        "Session expired. Please try again",
        "The session has expired. Please start again",
    ),
    BiometricErrorCode.TIMED_OUT: ("Timeout", "Operation timed out. Please try again", None),
    BiometricErrorCode.TOO_MANY_REQUESTS: (
        "Too Many Requests",
        "Too many requests. Please wait a moment",
        "Please wait a moment before trying again",
    ),
    BiometricErrorCode.INITIALIZATION_FAILED: (
        "Initialization Failed",
        "Failed to initialize face verification",
        None,
    ),
    BiometricErrorCode.CLOSED: ("Cancelled", "Face verification was closed", None),
    BiometricErrorCode.UNKNOWN: ("Error", "Unknown error occurred", None),
}


def classify_error(code: int | str | None) -> BiometricErrorCode:
    """Map a verifier error code (numeric, slug or page message) to a known error."""
    if isinstance(code, bool) or code is None:
        return BiometricErrorCode.UNKNOWN
    if isinstance(code, int):
        return NUMERIC_CODES.get(code, BiometricErrorCode.UNKNOWN)

    text = str(code).strip()
    if text.isdigit():
        return NUMERIC_CODES.get(int(text), BiometricErrorCode.UNKNOWN)
    lowered = text.lower()
    try:
        return BiometricErrorCode(lowered.replace("-", "_").replace(" ", "_"))
    except ValueError:
        pass
    if "initializ" in lowered or lowered.startswith("failed to load"):
        return BiometricErrorCode.INITIALIZATION_FAILED
    for known, (_, message, _) in _DETAILS.items():
        if lowered == message.lower():
            return known
    return BiometricErrorCode.UNKNOWN


def is_retryable(code: BiometricErrorCode) -> bool:
    return code not in TERMINAL_CODES


def short_description(code: BiometricErrorCode) -> str:
    return _DETAILS[code][0]


def biometric_failure(code: int | str | None) -> AttendanceFailure:
    classified = classify_error(code)
    _, message, guidance = _DETAILS[classified]
    if classified == BiometricErrorCode.UNKNOWN and code is not None:
        message = f"{message} (Code: {code})"
    return AttendanceFailure(
        kind=FailureKind.BIOMETRIC_FAILURE,
        message=message,
        retryable=is_retryable(classified),
        guidance=guidance,
        code=classified.value,
        title=short_description(classified),
    )


def closed_failure() -> AttendanceFailure:
    return biometric_failure(BiometricErrorCode.CLOSED.value)


@dataclass(frozen=True)
class VerifierAuthenticated:
    identity: str


@dataclass(frozen=True)
class VerifierError:
    code: int | str


@dataclass(frozen=True)
class VerifierClosed:
    reason: str | None = None


VerifierOutcome = Union[VerifierAuthenticated, VerifierError, VerifierClosed]


class BiometricVerifier(Protocol):
    async def begin_verification(self) -> VerifierOutcome: ...

    def cancel(self) -> None: ...


class BridgeVerifier:
    """Pairs one `begin_verification()` call with the next message from the verifier page."""

    def __init__(self) -> None:
        self._pending: asyncio.Future[VerifierOutcome] | None = None
        self.requests = 0

    @property
    def awaiting(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def begin_verification(self) -> VerifierOutcome:
        if self.awaiting:
            # A previous request is still open; it can no longer be answered.
            self._resolve(VerifierClosed("superseded"))
        future: asyncio.Future[VerifierOutcome] = asyncio.get_running_loop().create_future()
        self._pending = future
        self.requests += 1
        logger.info("Face verification requested")
        try:
            return await future
        finally:
            if self._pending is future:
                self._pending = None

    def authenticated(self, identity: str) -> bool:
        return self._resolve(VerifierAuthenticated(identity))

    def error(self, code: int | str) -> bool:
        return self._resolve(VerifierError(code))

    def closed(self, reason: str | None = None) -> bool:
        return self._resolve(VerifierClosed(reason))

    def log(self, message: str) -> None:
        logger.debug("verifier: %s", message)

    def cancel(self) -> None:
        if self.awaiting:
            self._resolve(VerifierClosed("cancelled"))

    def _resolve(self, outcome: VerifierOutcome) -> bool:
        future = self._pending
        if future is None or future.done():
            logger.warning("Ignoring %s: no face verification in progress", type(outcome).__name__)
            return False
        future.set_result(outcome)
        return True
