import hmac

from fastapi import Header, HTTPException

from smartattend import config


def verify_bridge_secret(bridge_secret: str | None) -> bool:
    expected = config.BRIDGE_SECRET.strip()
    candidate = (bridge_secret or "").strip()
    if not expected:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


def require_bridge(x_bridge_secret: str | None = Header(default=None)) -> None:
    if not x_bridge_secret:
        raise HTTPException(status_code=401, detail="Missing bridge secret.")
    if not verify_bridge_secret(x_bridge_secret):
        raise HTTPException(status_code=401, detail="Invalid bridge secret.")
