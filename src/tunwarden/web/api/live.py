"""WebSocket endpoint streaming every session event in real time."""

from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from tunwarden.session.events import EventKind

router = APIRouter(tags=["live"])


def encode_event(kind: EventKind, payload: Any) -> str:
    data = payload.to_dict() if hasattr(payload, "to_dict") else payload
    return json.dumps({"type": kind.value, "data": data})


@router.websocket("/ws/events")
async def events_ws(websocket: WebSocket):
    """Push state changes, log lines, traffic samples and warnings."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[str] = asyncio.Queue()

    def forward(kind: EventKind, payload: Any) -> None:
        # Events may be published from another thread's loop
        loop.call_soon_threadsafe(queue.put_nowait, encode_event(kind, payload))

    # Subscribed before the handshake completes
    unsubscribe = websocket.app.state.manager.bus.subscribe_all(forward)
    try:
        await websocket.accept()
        while True:
            await websocket.send_text(await queue.get())
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe()
