"""WebSocket relay for one participant of one conversation.

A session moves AUTHORIZING -> ACTIVE -> CLOSED. Authorization failures are
answered with a plain HTTP response before the upgrade completes. Once
active, the session pumps the client socket and its notification
subscription concurrently; when either side stops, the other is cancelled:

* client text frames are trimmed, and non-empty ones are stored; the store
  (or the broker, after the commit) publishes them to the conversation;
* notifications written by someone else are sent to the client as text;
  the sender's own messages are not echoed back.

Any socket, storage or subscription failure closes the session. The client
gets no error frame; it has to reconnect.
"""
import enum
import logging
from typing import Optional
from uuid import UUID

import anyio
from fastapi import WebSocket, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketState

from errors import ChatError, InternalError, ValidationError, error_body
from notifier import BridgeError, Notification, Subscription
from store import append_message, ensure_participant

logger = logging.getLogger(__name__)

DENIAL_EXTENSION = "websocket.http.response"


class RelayState(enum.Enum):
    AUTHORIZING = "authorizing"
    ACTIVE = "active"
    CLOSED = "closed"


async def reject(websocket: WebSocket, error: ChatError):
    """Refuse the upgrade with an HTTP error response instead of a 101."""
    logger.info(f"WebSocket upgrade rejected ({error.status_code}): {error.message}")
    if DENIAL_EXTENSION in websocket.scope.get("extensions", {}):
        response = JSONResponse(status_code=error.status_code, content=error_body(error))
        await websocket.send_denial_response(response)
    else:
        # Closing before accept makes the server answer 403.
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)


class RelaySession:
    def __init__(self, websocket: WebSocket, broker, session_factory, user_id: int):
        self.websocket = websocket
        self.broker = broker
        self.session_factory = session_factory
        self.user_id = user_id
        self.conversation_id: Optional[UUID] = None
        self.state = RelayState.AUTHORIZING

    async def authorize(self, raw_conversation_id: Optional[str]) -> bool:
        try:
            if not raw_conversation_id:
                raise ValidationError("Conversation ID not provided")
            try:
                conversation_id = UUID(raw_conversation_id)
            except ValueError:
                raise ValidationError("Invalid conversation ID")
            await run_in_threadpool(self._check_participant, conversation_id)
        except ChatError as e:
            self.state = RelayState.CLOSED
            await reject(self.websocket, e)
            return False

        self.conversation_id = conversation_id
        return True

    def _check_participant(self, conversation_id: UUID):
        with self.session_factory() as db:
            ensure_participant(db, self.user_id, conversation_id)

    def _append(self, content: str):
        with self.session_factory() as db:
            return append_message(db, self.conversation_id, self.user_id, content)

    async def run(self):
        if self.conversation_id is None:
            raise RuntimeError("RelaySession.run() called before a successful authorize()")

        try:
            subscription = await self.broker.subscribe(self.conversation_id)
        except BridgeError:
            self.state = RelayState.CLOSED
            await reject(self.websocket, InternalError("Realtime channel unavailable"))
            return

        try:
            await self.websocket.accept()
            self.state = RelayState.ACTIVE
            logger.info(f"User {self.user_id} joined conversation {self.conversation_id}")
            await self._relay(subscription)
        finally:
            self.state = RelayState.CLOSED
            # Cleanup must finish even when the server is cancelling this task.
            with anyio.CancelScope(shield=True):
                await subscription.close()
                await self._close_socket()
            logger.info(f"User {self.user_id} left conversation {self.conversation_id}")

    async def _relay(self, subscription: Subscription):
        """Pump both directions until either side stops; stopping one cancels the other."""
        async with anyio.create_task_group() as tg:
            tg.start_soon(self._pump_socket, tg.cancel_scope)
            tg.start_soon(self._pump_notifications, subscription, tg.cancel_scope)

    async def _pump_socket(self, scope: anyio.CancelScope):
        while True:
            try:
                message = await self.websocket.receive()
            except Exception as e:
                logger.error(f"WebSocket error for user {self.user_id}: {e}")
                break
            if not await self._on_frame(message):
                break
        scope.cancel()

    async def _pump_notifications(self, subscription: Subscription, scope: anyio.CancelScope):
        while True:
            try:
                notification = await subscription.next_notification()
            except BridgeError as e:
                logger.error(f"Notification stream error in conversation {self.conversation_id}: {e}")
                break
            if not await self._on_notification(notification):
                break
        scope.cancel()

    async def _on_frame(self, message: dict) -> bool:
        if message["type"] == "websocket.disconnect":
            return False

        text = message.get("text")
        if text is None:
            # Binary and other frames are ignored.
            return True
        content = text.strip()
        if not content:
            return True

        try:
            stored = await run_in_threadpool(self._append, content)
        except ValidationError as e:
            logger.warning(f"Dropped message from user {self.user_id}: {e.message}")
            return True
        except ChatError as e:
            logger.error(f"Failed to persist message from user {self.user_id}: {e.message}")
            return False

        try:
            await self.broker.publish(
                self.conversation_id,
                Notification(author_user_id=self.user_id, content=stored.content),
            )
        except BridgeError as e:
            logger.error(f"Failed to publish message {stored.id}: {e}")
            return False
        return True

    async def _on_notification(self, notification: Optional[Notification]) -> bool:
        if notification is None:
            logger.info(f"Notification stream ended for conversation {self.conversation_id}")
            return False
        if notification.author_user_id == self.user_id:
            return True

        try:
            await self.websocket.send_text(notification.content)
        except Exception as e:
            logger.error(f"Failed to send message to user {self.user_id}: {e}")
            return False
        return True

    async def _close_socket(self):
        if self.websocket.application_state != WebSocketState.CONNECTED:
            return
        if self.websocket.client_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close()
        except (RuntimeError, OSError) as e:
            logger.debug(f"Socket already gone for user {self.user_id}: {e}")
