"""Participation guard and message store.

History is ordered by ``sent_at`` only. Pages walk backwards in time: each
page's ``next_cursor`` is the ``sent_at`` of its oldest row and the next page
returns rows strictly older than it, so repeated paging neither skips nor
repeats rows unless rows are deleted in between.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy import and_, delete, exists, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import AuthorizationError, InternalError, NotFoundError, ValidationError
from models import Conversation, Message, User, utcnow
from schemas import format_timestamp, validate_content

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 100


@contextmanager
def storage_errors(db: Session, message: str):
    """Turn SQLAlchemy failures into InternalError after rolling back."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error(f"{message}: {exc}")
        db.rollback()
        raise InternalError(message) from exc


@dataclass
class MessagePage:
    items: List[dict] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_LIMIT
    return max(1, min(limit, MAX_LIMIT))


def parse_cursor(cursor: Optional[str]) -> Optional[datetime]:
    if cursor is None:
        return None
    try:
        value = datetime.fromisoformat(cursor.strip())
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        # Offsets at the ends of the calendar overflow when shifted to UTC.
        return value.astimezone(timezone.utc)
    except (ValueError, OverflowError) as exc:
        raise ValidationError("Invalid cursor format. Use RFC3339 timestamp.") from exc


def is_participant(db: Session, user_id: int, conversation_id: UUID) -> bool:
    stmt = select(
        exists().where(
            Conversation.id == conversation_id,
            or_(Conversation.user_id_1 == user_id, Conversation.user_id_2 == user_id),
        )
    )
    with storage_errors(db, "An error occurred while verifying conversation access."):
        return bool(db.scalar(stmt))


def ensure_participant(db: Session, user_id: int, conversation_id: UUID) -> None:
    if not is_participant(db, user_id, conversation_id):
        logger.warning(f"User {user_id} denied access to conversation {conversation_id}")
        raise AuthorizationError("You are not a participant in this conversation.")


def list_messages(
    db: Session,
    conversation_id: UUID,
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
) -> MessagePage:
    limit = clamp_limit(limit)
    before = parse_cursor(cursor)

    stmt = (
        select(Message, User.username)
        .join(User, Message.user_sent_id == User.id)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.sent_at.desc())
        .limit(limit + 1)
    )
    if before is not None:
        stmt = stmt.where(Message.sent_at < before)

    with storage_errors(db, "An error occurred while retrieving messages."):
        rows = db.execute(stmt).all()

    has_more = len(rows) > limit
    rows = rows[:limit]
    items = [
        {
            "id": message.id,
            "content": message.content,
            "user_sent_id": message.user_sent_id,
            "user_sent": username,
            "sent_at": message.sent_at,
            "edited_at": message.edited_at,
        }
        for message, username in rows
    ]
    next_cursor = format_timestamp(rows[-1][0].sent_at) if has_more else None
    return MessagePage(items=items, next_cursor=next_cursor, has_more=has_more)


def append_message(db: Session, conversation_id: UUID, user_id: int, content: str) -> Message:
    """Insert a message and commit.

    On PostgreSQL the insert trigger publishes the notification as part of
    the same transaction; other brokers must publish after this returns.
    """
    try:
        content = validate_content(content)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    message = Message(conversation_id=conversation_id, user_sent_id=user_id, content=content)
    with storage_errors(db, "Failed to persist message"):
        db.add(message)
        db.commit()
    logger.debug(f"Message {message.id} stored in conversation {conversation_id} by user {user_id}")
    return message


def _authored_message(db: Session, user_id: int, conversation_id: UUID, message_id: UUID, action: str) -> Message:
    ensure_participant(db, user_id, conversation_id)

    stmt = select(Message).where(
        Message.id == message_id,
        Message.conversation_id == conversation_id,
    )
    with storage_errors(db, "An error occurred while verifying the message."):
        message = db.scalar(stmt)

    if message is None:
        raise NotFoundError("Message not found in this conversation.")
    if message.user_sent_id != user_id:
        raise AuthorizationError(f"You can only {action} messages you sent.")
    return message


def update_message(db: Session, user_id: int, conversation_id: UUID, message_id: UUID, content: str) -> datetime:
    """Replace the content of an authored message; ``sent_at`` is left untouched."""
    try:
        content = validate_content(content)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    _authored_message(db, user_id, conversation_id, message_id, "update")

    edited_at = utcnow()
    stmt = (
        update(Message)
        .where(and_(Message.id == message_id, Message.user_sent_id == user_id))
        .values(content=content, edited_at=edited_at)
    )
    with storage_errors(db, "An error occurred while updating the message."):
        result = db.execute(stmt)
        db.commit()

    if result.rowcount != 1:
        raise NotFoundError("Message not found in this conversation.")
    logger.info(f"User {user_id} edited message {message_id}")
    return edited_at


def delete_message(db: Session, user_id: int, conversation_id: UUID, message_id: UUID) -> None:
    _authored_message(db, user_id, conversation_id, message_id, "delete")

    stmt = delete(Message).where(and_(Message.id == message_id, Message.user_sent_id == user_id))
    with storage_errors(db, "An error occurred while deleting the message."):
        result = db.execute(stmt)
        db.commit()

    if result.rowcount != 1:
        raise NotFoundError("Message not found in this conversation.")
    logger.info(f"User {user_id} deleted message {message_id}")
