import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import Cookie, Depends, FastAPI, Query, Request, Response, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

import accounts
import pairing
import store
from config import CORS_ORIGINS, DATABASE_URL, LOG_LEVEL, NOTIFY_BACKEND, REDIS_URL, SESSION_COOKIE_NAME
from database import get_db, get_session_factory, init_db, ping_db
from errors import ChatError, error_body
from notifier import create_broker
from relay import RelaySession, reject
from schemas import (
    AuthResponse,
    CodeListResponse,
    CodeRequest,
    CodeResponse,
    ConversationCreatedResponse,
    ConversationItem,
    ConversationListResponse,
    LoginRequest,
    MessageDeleteRequest,
    MessagePageResponse,
    MessageUpdateRequest,
    MessageUpdateResponse,
    PasswordUpdateRequest,
    ProfileUpdateRequest,
    ProfileUpdateResponse,
    RegisterRequest,
    StatusResponse,
    UserResponse,
    format_timestamp,
)
from security import clear_session_cookie, current_user_id, resolve_identity, set_session_cookie

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    broker = create_broker(NOTIFY_BACKEND, DATABASE_URL, REDIS_URL)
    await broker.connect()
    app.state.broker = broker
    logger.info("Application started")
    try:
        yield
    finally:
        await broker.close()
        logger.info("Application shutdown")


app = FastAPI(
    title="Realtime Chat API",
    description="Pairing-code conversations with a WebSocket relay over database pub/sub",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ())[1:])
        message = first.get("msg", "Invalid request")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        if field:
            message = f"{field}: {message}"
    else:
        message = "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"ok": False, "error": "VALIDATION", "message": f"Your request was invalid: {message}"},
    )


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Unhandled database error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": "INTERNAL", "message": "An internal error occurred"},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    codes = {404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": codes.get(exc.status_code, "HTTP_ERROR"), "message": str(exc.detail)},
    )


@app.get("/", tags=["Info"])
async def root():
    return {
        "message": "Realtime Chat Backend API",
        "version": "1.0.0",
        "endpoints": {
            "auth": "/auth/",
            "users": "/users/",
            "chats": "/chats",
            "websocket": "/chats/ws?conversationId={id}",
            "docs": "/docs"
        }
    }


# Auth

@app.post("/auth/register", response_model=AuthResponse, status_code=201, tags=["Auth"])
def register(body: RegisterRequest, response: Response, db: Session = Depends(get_db)):
    user = accounts.register_user(db, body)
    set_session_cookie(response, user.id)
    return AuthResponse(message="User successfully created.", id=user.id)


@app.post("/auth/login", response_model=AuthResponse, tags=["Auth"])
def login(body: LoginRequest, response: Response, db: Session = Depends(get_db)):
    user = accounts.authenticate(db, body)
    set_session_cookie(response, user.id)
    return AuthResponse(message="Login successful", id=user.id)


@app.post("/auth/logout", response_model=StatusResponse, tags=["Auth"])
def logout(response: Response):
    clear_session_cookie(response)
    return StatusResponse(message="Logged out")


# Users

@app.get("/users/me", response_model=UserResponse, tags=["Users"])
def get_me(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return accounts.get_user(db, user_id)


@app.patch("/users/profile", response_model=ProfileUpdateResponse, tags=["Users"])
def update_profile(
    body: ProfileUpdateRequest,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    updated = accounts.update_profile(db, user_id, body)
    message = "Profile updated successfully" if updated else "Nothing to update"
    return ProfileUpdateResponse(message=message, updated_fields=updated)


@app.patch("/users/password", response_model=StatusResponse, tags=["Users"])
def update_password(
    body: PasswordUpdateRequest,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    accounts.change_password(db, user_id, body.old_password, body.new_password)
    return StatusResponse(message="Password updated successfully")


# Pairing codes and conversations

@app.post("/chats/codes", response_model=CodeResponse, status_code=201, tags=["Chats"])
def create_code(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    code = pairing.create_code(db, user_id)
    return CodeResponse(message="Chat code created successfully", code=code)


@app.get("/chats/codes", response_model=CodeListResponse, tags=["Chats"])
def list_codes(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return CodeListResponse(message="Chat codes retrieved", codes=pairing.list_codes(db, user_id))


@app.delete("/chats/codes", response_model=StatusResponse, tags=["Chats"])
def delete_code(body: CodeRequest, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    pairing.delete_code(db, user_id, body.code)
    return StatusResponse(message="Chat code deleted successfully")


@app.post("/chats", response_model=ConversationCreatedResponse, status_code=201, tags=["Chats"])
def redeem_code(body: CodeRequest, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    conversation_id = pairing.redeem_code(db, user_id, body.code)
    return ConversationCreatedResponse(
        message="Conversation created successfully",
        conversation_id=conversation_id,
    )


@app.get("/chats/conversations", response_model=ConversationListResponse, tags=["Chats"])
def list_conversations(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    conversations = [
        ConversationItem(
            id=conversation.id,
            peer_id=peer.id,
            peer_username=peer.username,
            created_at=conversation.created_at,
        )
        for conversation, peer in pairing.list_conversations(db, user_id)
    ]
    return ConversationListResponse(message="Conversations retrieved", conversations=conversations)


# Messages

@app.get("/chats", response_model=MessagePageResponse, tags=["Messages"])
def get_messages(
    conversation_id: UUID = Query(..., alias="conversationId"),
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    store.ensure_participant(db, user_id, conversation_id)
    page = store.list_messages(db, conversation_id, cursor=cursor, limit=limit)
    return MessagePageResponse(
        message="Messages retrieved",
        chats=page.items,
        next_cursor=page.next_cursor,
        has_more=page.has_more,
    )


@app.patch("/chats/messages", response_model=MessageUpdateResponse, tags=["Messages"])
def edit_message(
    body: MessageUpdateRequest,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    edited_at = store.update_message(db, user_id, body.conversation_id, body.message_id, body.content)
    return MessageUpdateResponse(message="Message updated successfully.", edited_at=format_timestamp(edited_at))


@app.delete("/chats/messages", response_model=StatusResponse, tags=["Messages"])
def remove_message(
    body: MessageDeleteRequest,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    store.delete_message(db, user_id, body.conversation_id, body.message_id)
    return StatusResponse(message="Message deleted successfully.")


@app.websocket("/chats/ws")
async def chat_socket(
    websocket: WebSocket,
    conversation_id: Optional[str] = Query(None, alias="conversationId"),
    session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
    session_factory=Depends(get_session_factory),
):
    try:
        user_id = resolve_identity(session_token)
    except ChatError as e:
        await reject(websocket, e)
        return

    relay = RelaySession(websocket, websocket.app.state.broker, session_factory, user_id)
    if await relay.authorize(conversation_id):
        await relay.run()


@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    try:
        await run_in_threadpool(ping_db)
        db_status = "OK"
    except SQLAlchemyError as e:
        db_status = f"ERROR: {e}"

    broker = request.app.state.broker
    try:
        await broker.ping()
        broker_status = "OK"
    except Exception as e:
        broker_status = f"ERROR: {e}"

    return {
        "status": "OK" if db_status == "OK" and broker_status == "OK" else "ERROR",
        "database": db_status,
        "broker": f"{broker.name}: {broker_status}",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
