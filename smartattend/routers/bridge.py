"""
Host bridge: radio callbacks and verifier page messages.

The native host forwards what it receives here; nothing in these routes
decides attendance, they only feed the radio stream and the pending
verification request.
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from smartattend.models import BroadcastPayload
from smartattend.radio import RadioState
from smartattend.security import require_bridge

router = APIRouter(prefix="/bridge", dependencies=[Depends(require_bridge)])


class RadioStateUpdate(BaseModel):
    state: str


class Advertisement(BaseModel):
    device_name: str | None = None
    manufacturer_data_hex: str | None = None
    service_data_hex: str | None = None
    rssi: int | None = None


class VerifierAuthenticatedMessage(BaseModel):
    identity: str


class VerifierErrorMessage(BaseModel):
    code: int | str


class VerifierClosedMessage(BaseModel):
    reason: str | None = None


class VerifierLogMessage(BaseModel):
    message: str


def _decode_hex(field: str, value: str | None) -> bytes | None:
    if value is None:
        return None
    try:
        return bytes.fromhex(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be hex encoded.")


def _no_pending_verification() -> HTTPException:
    return HTTPException(status_code=409, detail="No face verification in progress.")


@router.post("/radio/state")
async def radio_state(payload: RadioStateUpdate, request: Request):
    state = RadioState.parse(payload.state)
    request.app.state.radio.set_state(state)
    return {"state": state.value, "label": state.label}


@router.post("/radio/advertisements")
async def radio_advertisement(payload: Advertisement, request: Request):
    advertisement = BroadcastPayload(
        device_name=payload.device_name,
        manufacturer_data=_decode_hex("manufacturer_data_hex", payload.manufacturer_data_hex),
        service_data=_decode_hex("service_data_hex", payload.service_data_hex),
        rssi=payload.rssi,
    )
    delivered = request.app.state.radio.publish(advertisement)
    return {"delivered": delivered}


@router.post("/verifier/authenticated")
async def verifier_authenticated(payload: VerifierAuthenticatedMessage, request: Request):
    if not request.app.state.verifier.authenticated(payload.identity):
        raise _no_pending_verification()
    return {"ok": True}


@router.post("/verifier/error")
async def verifier_error(payload: VerifierErrorMessage, request: Request):
    if not request.app.state.verifier.error(payload.code):
        raise _no_pending_verification()
    return {"ok": True}


@router.post("/verifier/closed")
async def verifier_closed(request: Request, payload: VerifierClosedMessage | None = None):
    reason = payload.reason if payload else None
    if not request.app.state.verifier.closed(reason):
        raise _no_pending_verification()
    return {"ok": True}


@router.post("/verifier/log")
async def verifier_log(payload: VerifierLogMessage, request: Request):
    request.app.state.verifier.log(payload.message)
    return {"ok": True}


@router.get("/verifier/pending")
async def verifier_pending(request: Request):
    return {"awaiting": request.app.state.verifier.awaiting}
