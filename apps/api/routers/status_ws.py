"""WebSocket endpoint pushing processing status events to the video owner."""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, status

from routers.auth_scope import context_from_session_token
from services.errors import AuthError
from services.status_channel import STATUS_EVENT_NAME, StatusEvent

router = APIRouter()
logger = logging.getLogger(__name__)


async def _forward_events(websocket: WebSocket, queue: "asyncio.Queue[StatusEvent]") -> None:
    while True:
        event = await queue.get()
        await websocket.send_json({"event": STATUS_EVENT_NAME, "data": event.to_wire()})


@router.websocket("/ws/status")
async def status_socket(websocket: WebSocket, token: Optional[str] = Query(None)):
    """Authenticate via ``?token=`` and stream ``statusUpdate`` events for the caller's videos."""
    try:
        caller = context_from_session_token(token)
    except AuthError as exc:
        logger.info("Rejected status socket: %s", exc)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    runtime = websocket.app.state.runtime
    loop = asyncio.get_running_loop()
    queue: "asyncio.Queue[StatusEvent]" = asyncio.Queue()

    def _listener(event: StatusEvent) -> None:
        # May be called from the transport's thread.
        loop.call_soon_threadsafe(queue.put_nowait, event)

    # Must precede accept().
    unsubscribe = runtime.status_channel.subscribe(caller.user_id, _listener)
    sender: Optional[asyncio.Task] = None
    try:
        await websocket.accept()
        sender = asyncio.create_task(_forward_events(websocket, queue))
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        unsubscribe()
        if sender is not None:
            sender.cancel()
            results = await asyncio.gather(sender, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.debug("Status socket sender for %s ended: %s", caller.user_id, result)
        logger.debug("Status socket for %s closed", caller.user_id)
