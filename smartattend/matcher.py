"""
Advertisement matching.

Classroom beacons advertise the room code as their device name, usually
followed by a rotating 3-digit counter ("LT101" -> "LT101123"), and put
the subject code in the vendor-specific field after a 2-byte vendor id.
"""
from __future__ import annotations

from smartattend.models import NO_DATA, BroadcastPayload, SubjectIdentity

VENDOR_ID_LENGTH = 2
COUNTER_SUFFIX_LENGTH = 3
NAME_DELIMITER = ":"


def normalize_room(value: str | None) -> str:
    return (value or "").strip().upper()


def matches_room(device_name: str | None, target_room: str | None) -> bool:
    """
    True when the device name is the target room, or the target room
    followed by exactly three ASCII digits. Any other suffix is a miss.
    """
    name = normalize_room(device_name)
    target = normalize_room(target_room)
    # No target room means nothing to look for, even an unnamed device.
    if not target or not name.startswith(target):
        return False
    suffix = name[len(target):]
    if not suffix:
        return True
    return len(suffix) == COUNTER_SUFFIX_LENGTH and suffix.isascii() and suffix.isdigit()


def _hex(data: bytes, separator: str = " ") -> str:
    return separator.join(f"{byte:02X}" for byte in data)


def _code_from_text(text: str) -> str:
    parts = text.split(NAME_DELIMITER)
    return parts[1] if len(parts) > 1 else text


def _from_vendor_data(data: bytes) -> SubjectIdentity:
    raw_hex = _hex(data)
    if len(data) > VENDOR_ID_LENGTH:
        try:
            text = data[VENDOR_ID_LENGTH:].decode("utf-8")
        except UnicodeDecodeError:
            pass
        else:
            return SubjectIdentity(subject_code=text, raw_echo=f"Hex: {raw_hex} | Text: {text}")
    return SubjectIdentity(subject_code=raw_hex, raw_echo=f"Raw Hex: {raw_hex}")


def _from_service_data(data: bytes) -> SubjectIdentity:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return SubjectIdentity(subject_code=_hex(data, ""), raw_echo=None)
    return SubjectIdentity(subject_code=_code_from_text(text), raw_echo=text)


def extract_identity(payload: BroadcastPayload) -> SubjectIdentity:
    """Pull the subject code out of an advertisement. Never raises."""
    if payload.manufacturer_data:
        return _from_vendor_data(bytes(payload.manufacturer_data))
    if payload.device_name:
        return SubjectIdentity(
            subject_code=_code_from_text(payload.device_name),
            raw_echo=payload.device_name,
        )
    if payload.service_data:
        return _from_service_data(bytes(payload.service_data))
    return SubjectIdentity(subject_code=NO_DATA, raw_echo=None)
