"""Session router exposing the room session to a rendering process.

Endpoints:
    GET  /session/snapshot   - Current room snapshot
    GET  /session/search     - Messages matching ``q``
    GET  /session/pinned     - Pinned messages in display order
    GET  /session/roster     - Room members used for mentions and search
    POST /session/input      - Text-change hook (typing + mention candidates)
    POST /session/mention    - Apply a mention selection to the input
    POST /session/send       - Optimistic send of the input buffer
    POST /session/reactions  - Toggle the local user's reaction
    POST /session/pins       - Toggle a pin
    WebSocket /ws/session    - Snapshot stream: one on connect, then one per change

The session itself is created by the application lifespan and stored on
``app.state.session``.
"""
import asyncio
import base64
import binascii
import logging

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from chatsync.errors import PersistenceWriteError
from chatsync.room.models import Attachment, RoomSnapshot
from chatsync.room.session import RoomSession

from .schemas import (
    InputChange,
    InputText,
    MentionCandidates,
    MentionSelect,
    MessageList,
    PinToggle,
    ReactionToggle,
    Roster,
    SendRequest,
    SendResponse,
    ToggleResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["session"])


def _session(request: Request) -> RoomSession:
    session = getattr(request.app.state, "session", None)
    if session is None:
        raise HTTPException(status_code=503, detail="Room session is not running")
    return session


def _snapshot_payload(snapshot: RoomSnapshot) -> dict:
    return snapshot.model_dump(mode="json")


@router.get("/session/snapshot")
async def get_snapshot(request: Request) -> dict:
    """Return the current room snapshot."""
    return _snapshot_payload(_session(request).snapshot())


@router.get("/session/search", response_model=MessageList)
async def search_messages(
    request: Request,
    q: str = Query(..., description="Case-insensitive text or sender name"),
) -> MessageList:
    return MessageList(messages=_session(request).search(q))


@router.get("/session/pinned", response_model=MessageList)
async def pinned_messages(request: Request) -> MessageList:
    return MessageList(messages=_session(request).pinned_messages())


@router.get("/session/roster", response_model=Roster)
async def get_roster(request: Request) -> Roster:
    return Roster(members=_session(request).roster)


@router.post("/session/input", response_model=MentionCandidates)
async def input_changed(body: InputChange, request: Request) -> MentionCandidates:
    """Feed a text change into the session.

    Drives the local typing indicator and returns mention candidates for a
    trailing ``@token``.
    """
    return MentionCandidates(candidates=_session(request).on_text_changed(body.text))


@router.post("/session/mention", response_model=InputText)
async def select_mention(body: MentionSelect, request: Request) -> InputText:
    """Replace the trailing ``@token`` with the selected member's name.

    Raises:
        HTTPException 404: If the user is not on the roster.
    """
    session = _session(request)
    member = next((m for m in session.roster if m.user_id == body.userId), None)
    if member is None:
        raise HTTPException(status_code=404, detail=f"Unknown member: {body.userId}")
    return InputText(text=session.select_mention(member))


@router.post("/session/send", response_model=SendResponse)
async def send_message(body: SendRequest, request: Request):
    """Send the input buffer, with an optional base64 image.

    Returns:
        SendResponse with the committed message (null when there was
        nothing to send) and any upload error.

    Raises:
        HTTPException 400: If ``imageBase64`` is not valid base64.
        502: The store rejected the write; ``restoredText`` holds the input
            text that was put back.
    """
    session = _session(request)

    attachment = None
    if body.imageBase64:
        try:
            data = base64.b64decode(body.imageBase64, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(status_code=400, detail="Invalid imageBase64")
        attachment = Attachment(data=data, content_type=body.contentType)

    if body.text is not None:
        session.on_text_changed(body.text)

    try:
        result = await session.send(attachment=attachment, reply_to_id=body.replyToId)
    except PersistenceWriteError as e:
        logger.warning(f"[API] Send failed: {e}")
        return JSONResponse(
            {"error": str(e), "restoredText": session.input_text},
            status_code=502,
        )

    return SendResponse(
        message=result.message,
        uploadError=str(result.upload_error) if result.upload_error else None,
    )


@router.post("/session/reactions", response_model=ToggleResponse)
async def toggle_reaction(body: ReactionToggle, request: Request) -> ToggleResponse:
    """Toggle the local user's reaction on a message.

    Raises:
        HTTPException 404: If the message is unknown or still pending.
    """
    session = _session(request)
    if not session.toggle_reaction(body.messageId, body.reactionKey):
        raise HTTPException(status_code=404, detail=f"Message not found: {body.messageId}")
    active = session.reconciler.has_reacted(body.messageId, body.reactionKey, session.me.user_id)
    return ToggleResponse(messageId=body.messageId, active=active)


@router.post("/session/pins", response_model=ToggleResponse)
async def toggle_pin(body: PinToggle, request: Request) -> ToggleResponse:
    session = _session(request)
    if not session.toggle_pin(body.messageId):
        raise HTTPException(status_code=404, detail=f"Message not found: {body.messageId}")
    return ToggleResponse(messageId=body.messageId, active=session.reconciler.is_pinned(body.messageId))


@router.websocket("/ws/session")
async def session_stream(websocket: WebSocket) -> None:
    """Stream room snapshots to a renderer.

    Sends the current snapshot on connect, then a new one after every state
    change. Incoming frames are ignored.
    """
    session = getattr(websocket.app.state, "session", None)
    if session is None:
        await websocket.close(code=1011)
        return

    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = session.subscribe(queue.put_nowait)

    async def pump() -> None:
        while True:
            snapshot = await queue.get()
            await websocket.send_json(_snapshot_payload(snapshot))

    pump_task = None
    try:
        await websocket.send_json(_snapshot_payload(session.snapshot()))
        pump_task = asyncio.create_task(pump())
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("[WS] Snapshot subscriber disconnected")
    finally:
        unsubscribe()
        if pump_task is not None:
            pump_task.cancel()
            results = await asyncio.gather(pump_task, return_exceptions=True)
            if isinstance(results[0], Exception):
                logger.warning(f"[WS] Snapshot push failed: {results[0]!r}")
