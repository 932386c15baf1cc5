"""Radio subsystem seam.

The host platform pushes radio state changes and advertisements; the
engine consumes them as one async stream per listener instead of
callbacks. `QueueRadio` is the in-process implementation the HTTP bridge
feeds and the tests drive directly.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Protocol

from smartattend.models import BroadcastPayload

logger = logging.getLogger(__name__)


class RadioState(str, Enum):
    READY = "ready"
    OFF = "off"
    UNAUTHORIZED = "unauthorized"
    UNSUPPORTED = "unsupported"
    UNKNOWN = "unknown"

    @property
    def label(self) -> str:
        return {
            RadioState.READY: "Ready",
            RadioState.OFF: "Bluetooth Off",
            RadioState.UNAUTHORIZED: "Permission Denied",
            RadioState.UNSUPPORTED: "Not Supported",
            RadioState.UNKNOWN: "Unknown",
        }[self]

    @classmethod
    def parse(cls, value: str | None) -> "RadioState":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class RadioAdapter(Protocol):
    @property
    def state(self) -> RadioState: ...

    def listen(self) -> AsyncIterator[BroadcastPayload]:
        """Passively listen for all nearby advertisements until the iterator is closed."""
        ...


class QueueRadio:
    """Fan-out of host-delivered advertisements to active listeners."""

    def __init__(self, state: RadioState = RadioState.UNKNOWN) -> None:
        self._state = state
        self._listeners: set[asyncio.Queue[BroadcastPayload | None]] = set()

    @property
    def state(self) -> RadioState:
        return self._state

    @property
    def listening(self) -> bool:
        return bool(self._listeners)

    def set_state(self, state: RadioState) -> None:
        if state == self._state:
            return
        logger.info("Radio state changed: %s -> %s", self._state.value, state.value)
        self._state = state
        if state != RadioState.READY:
            # Listening cannot continue once the radio drops out.
            for queue in list(self._listeners):
                queue.put_nowait(None)

    def publish(self, payload: BroadcastPayload) -> int:
        """Deliver one advertisement; returns how many listeners received it."""
        if self._state != RadioState.READY:
            return 0
        for queue in list(self._listeners):
            queue.put_nowait(payload)
        return len(self._listeners)

    async def listen(self) -> AsyncIterator[BroadcastPayload]:
        queue: asyncio.Queue[BroadcastPayload | None] = asyncio.Queue()
        self._listeners.add(queue)
        try:
            while True:
                payload = await queue.get()
                if payload is None:
                    return
                yield payload
        finally:
            self._listeners.discard(queue)
