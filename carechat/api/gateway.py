"""WebSocket gateway for streamed chat turns.

Endpoint: /ws/chat?token=<jwt> (or an ``Authorization: Bearer`` header)

Frames are JSON objects ``{"event": ..., "data": ...}`` in both directions.

Inbound:
- sendMessage: {"text": str, "conversationId"?: str}  ("message" is accepted for "text")

Outbound (to the originating socket only):
- conversationId: resolved conversation ID for the current turn
- receiveMessage: one completion fragment
- error: authorization, malformed-request, overload or storage failure

Binary frames are refused with an error event.
"""
import asyncio
import json
import logging
from typing import Optional

import anyio
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator
from starlette.concurrency import run_in_threadpool

from carechat.core.deps import get_chat_service, get_identity_verifier
from carechat.core.security import IdentityVerifier
from carechat.errors import AuthenticationError, MalformedRequest, PersistenceError
from carechat.models.user import User
from carechat.services.chat_service import EVENT_ERROR, ChatService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["gateway"])

EVENT_SEND_MESSAGE = "sendMessage"
UNAUTHORIZED_CLOSE_CODE = 4401
MAX_PENDING_TURNS = 8


class SendMessageRequest(BaseModel):
    """Payload of a sendMessage frame."""
    text: str = Field(validation_alias=AliasChoices("text", "message"))
    conversation_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("conversationId", "conversation_id"),
    )

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message cannot be empty")
        return value


def parse_frame(raw: str) -> SendMessageRequest:
    """
    Parse one inbound frame into a turn request.

    Raises:
        MalformedRequest: invalid JSON, unknown event or bad payload
    """
    try:
        frame = json.loads(raw)
    except ValueError:
        raise MalformedRequest("Invalid JSON frame")

    if not isinstance(frame, dict):
        raise MalformedRequest("Frame must be a JSON object")

    event = frame.get("event")
    if event != EVENT_SEND_MESSAGE:
        raise MalformedRequest(f"Unknown event: {event}")

    try:
        return SendMessageRequest.model_validate(frame.get("data"))
    except ValidationError:
        raise MalformedRequest("sendMessage requires a non-empty text")


def _bearer_from_header(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    scheme, _, credentials = value.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credentials.strip() or None


class ChatSession:
    """
    State of one authenticated socket.

    The user is bound once at connect time. Requests are queued and a
    single worker runs them in order, so two assistant streams never
    interleave on one socket. At most max_pending requests wait behind
    the running turn; further ones are refused with an error event. Dropping the socket cancels the worker,
    which abandons the current stream without storing a reply.
    """

    def __init__(
        self,
        websocket: WebSocket,
        user: User,
        service: ChatService,
        max_pending: int = MAX_PENDING_TURNS,
    ):
        self.websocket = websocket
        self.user = user
        self.service = service
        self._turns: "asyncio.Queue[SendMessageRequest]" = asyncio.Queue(maxsize=max_pending)
        self._send_lock = asyncio.Lock()

    async def emit(self, event: str, data: str) -> None:
        async with self._send_lock:
            await self.websocket.send_json({"event": event, "data": data})

    async def run(self) -> None:
        """Serve the socket until the client goes away or the handler is cancelled."""
        reader = asyncio.create_task(self._read_frames())
        worker = asyncio.create_task(self._process_turns())

        try:
            done, _ = await asyncio.wait(
                {reader, worker}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            reader.cancel()
            worker.cancel()
            # The enclosing scope may keep re-cancelling; let both tasks unwind first
            with anyio.CancelScope(shield=True):
                await asyncio.gather(reader, worker, return_exceptions=True)

        for task in done:
            if not task.cancelled():
                task.result()

    async def _receive_text(self) -> Optional[str]:
        """Next text frame, or None once the client has gone away."""
        message = await self.websocket.receive()
        if message["type"] == "websocket.disconnect":
            return None
        text = message.get("text")
        if text is None:
            raise MalformedRequest("Binary frames are not supported")
        return text

    async def _read_frames(self) -> None:
        while True:
            try:
                raw = await self._receive_text()
                if raw is None:
                    return
                request = parse_frame(raw)
            except MalformedRequest as e:
                logger.warning(f"Malformed frame from user={self.user.id}: {e}")
                await self.emit(EVENT_ERROR, str(e))
                continue

            try:
                self._turns.put_nowait(request)
            except asyncio.QueueFull:
                logger.warning(f"Turn queue full, dropping request from user={self.user.id}")
                await self.emit(EVENT_ERROR, "Too many pending messages")

    async def _process_turns(self) -> None:
        while True:
            request = await self._turns.get()
            try:
                await self.service.handle_turn(
                    self.user.id, request.text, request.conversation_id, self.emit
                )
            except asyncio.CancelledError:
                logger.info(f"Turn abandoned, client disconnected: user={self.user.id}")
                raise
            except WebSocketDisconnect:
                return
            except PersistenceError:
                logger.exception(f"Could not store turn for user={self.user.id}")
                await self.emit(EVENT_ERROR, "Could not save message")


@router.websocket("/ws/chat")
async def chat_socket(
    websocket: WebSocket,
    token: Optional[str] = None,
    verifier: IdentityVerifier = Depends(get_identity_verifier),
    service: ChatService = Depends(get_chat_service),
) -> None:
    """Authenticate once, then relay chat turns until disconnect."""
    await websocket.accept()

    token = token or _bearer_from_header(websocket.headers.get("authorization"))
    try:
        user = await run_in_threadpool(verifier.verify, token)
    except AuthenticationError as e:
        logger.info(f"Connection rejected: {e}")
        await websocket.send_json({"event": EVENT_ERROR, "data": "Unauthorized"})
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE)
        return

    logger.info(f"Client connected: user={user.id}")
    session = ChatSession(websocket, user, service)
    try:
        await session.run()
    finally:
        logger.info(f"Client disconnected: user={user.id}")
