"""Pairing codes and conversation creation.

A user holds at most ``MAX_CODES_PER_USER`` codes. Redeeming a code claims it
with a single ``DELETE ... RETURNING`` and creates the conversation in the
same transaction, so of two concurrent redemptions only one can win.
"""
import logging
import random
from typing import List, Tuple
from uuid import UUID

from sqlalchemy import delete, func, insert, literal, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import ConflictError, InternalError, NotFoundError, ValidationError
from models import CODE_MAX, CODE_MIN, ChatCode, Conversation, User, utcnow
from store import storage_errors

logger = logging.getLogger(__name__)

MAX_CODES_PER_USER = 5
CODE_ATTEMPTS = 5


def generate_code() -> int:
    return random.randint(CODE_MIN, CODE_MAX)


def create_code(db: Session, user_id: int) -> int:
    """Issue a new code, unless the user already holds the maximum."""
    outstanding = (
        select(func.count())
        .select_from(ChatCode)
        .where(ChatCode.user_id == user_id)
        .scalar_subquery()
    )

    for _ in range(CODE_ATTEMPTS):
        code = generate_code()
        stmt = insert(ChatCode).from_select(
            ["code", "user_id", "created_at"],
            select(literal(code), literal(user_id), literal(utcnow())).where(outstanding < MAX_CODES_PER_USER),
        )
        with storage_errors(db, "Failed to create chat code"):
            try:
                result = db.execute(stmt)
                db.commit()
            except IntegrityError:
                # Another user holds this code.
                db.rollback()
                logger.debug(f"Chat code {code} already taken, retrying")
                continue

        if result.rowcount != 1:
            raise ValidationError(f"You already have {MAX_CODES_PER_USER} chat codes.")
        logger.info(f"Chat code {code} created for user {user_id}")
        return code

    logger.error(f"Could not find a free chat code for user {user_id}")
    raise InternalError("Failed to create chat code")


def list_codes(db: Session, user_id: int) -> List[int]:
    stmt = select(ChatCode.code).where(ChatCode.user_id == user_id).order_by(ChatCode.created_at)
    with storage_errors(db, "An error occurred while listing chat codes."):
        return list(db.scalars(stmt))


def delete_code(db: Session, user_id: int, code: int) -> None:
    stmt = delete(ChatCode).where(ChatCode.code == code, ChatCode.user_id == user_id)
    with storage_errors(db, "An error occurred on our end while trying to delete the chat code."):
        result = db.execute(stmt)
        db.commit()

    if result.rowcount != 1:
        raise NotFoundError("Chat code not found.")
    logger.info(f"User {user_id} revoked chat code {code}")


def redeem_code(db: Session, user_id: int, code: int) -> UUID:
    """Consume ``code`` and open a conversation between its owner and ``user_id``."""
    claim = delete(ChatCode).where(ChatCode.code == code).returning(ChatCode.user_id)

    with storage_errors(db, "An error occurred while creating the conversation."):
        owner_id = db.execute(claim).scalar_one_or_none()

        if owner_id is None:
            db.rollback()
            raise NotFoundError("Chat code not found.")
        if owner_id == user_id:
            db.rollback()
            raise ValidationError("You cannot start a conversation with yourself.")

        conversation = Conversation(
            user_id_1=min(owner_id, user_id),
            user_id_2=max(owner_id, user_id),
        )
        db.add(conversation)
        try:
            db.commit()
        except IntegrityError as exc:
            # Rolling back also restores the claimed code.
            db.rollback()
            raise ConflictError("Conversation already exists.") from exc

    logger.info(f"Conversation {conversation.id} created between users {owner_id} and {user_id}")
    return conversation.id


def list_conversations(db: Session, user_id: int) -> List[Tuple[Conversation, User]]:
    """Conversations of ``user_id`` paired with the other participant."""
    peer_id = func.coalesce(
        func.nullif(Conversation.user_id_1, user_id),
        Conversation.user_id_2,
    )
    stmt = (
        select(Conversation, User)
        .join(User, User.id == peer_id)
        .where(or_(Conversation.user_id_1 == user_id, Conversation.user_id_2 == user_id))
        .order_by(Conversation.created_at.desc())
    )
    with storage_errors(db, "An error occurred while listing conversations."):
        return [(conversation, peer) for conversation, peer in db.execute(stmt).all()]
