import logging
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import AuthenticationError, ConflictError, NotFoundError
from models import User, utcnow
from schemas import LoginRequest, ProfileUpdateRequest, RegisterRequest
from security import hash_password, verify_password
from store import storage_errors

logger = logging.getLogger(__name__)


def _check_unique(db: Session, username: Optional[str], email: Optional[str], exclude_id: Optional[int] = None):
    clauses = []
    if username is not None:
        clauses.append(User.username == username)
    if email is not None:
        clauses.append(User.email == email)
    if not clauses:
        return

    stmt = select(User.username, User.email).where(or_(*clauses))
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    with storage_errors(db, "A database error occurred on our end"):
        taken = db.execute(stmt).all()

    username_taken = any(row.username == username for row in taken)
    email_taken = any(row.email == email for row in taken)
    if username_taken and email_taken:
        raise ConflictError("This user already exists.")
    if username_taken:
        raise ConflictError("Username already exists")
    if email_taken:
        raise ConflictError("Email already exists")


def _commit_user(db: Session, user: User, message: str):
    with storage_errors(db, message):
        try:
            db.commit()
        except IntegrityError as exc:
            # Lost a race with a concurrent registration or update.
            db.rollback()
            raise ConflictError("Username or email already exists") from exc
        db.refresh(user)


def register_user(db: Session, request: RegisterRequest) -> User:
    _check_unique(db, request.username, request.email)

    user = User(
        username=request.username,
        email=request.email,
        password_hash=hash_password(request.password),
        bio=request.bio,
    )
    db.add(user)
    _commit_user(db, user, "Failed to insert new user")

    logger.info(f"Created user: {user.username} (ID: {user.id})")
    return user


def authenticate(db: Session, request: LoginRequest) -> User:
    column = User.email if request.is_email else User.username
    with storage_errors(db, "Failed to query user from database"):
        user = db.scalar(select(User).where(column == request.person))

    if user is None:
        logger.info(f"Login attempt with non-existent user: {request.person}")
        raise AuthenticationError("Invalid credentials")
    if not verify_password(request.password, user.password_hash):
        logger.info(f"Login attempt with invalid password for user {user.id}")
        raise AuthenticationError("Invalid credentials")

    logger.info(f"User {user.id} logged in")
    return user


def get_user(db: Session, user_id: int) -> User:
    with storage_errors(db, "Failed to fetch user profile"):
        user = db.get(User, user_id)
    if user is None:
        logger.warning(f"User {user_id} not found")
        raise NotFoundError("User not found")
    return user


def update_profile(db: Session, user_id: int, request: ProfileUpdateRequest) -> List[str]:
    """Apply a partial profile update and return the names of changed fields."""
    user = get_user(db, user_id)

    if not verify_password(request.password, user.password_hash):
        logger.warning(f"Invalid password provided for profile update by user {user_id}")
        raise AuthenticationError("Invalid password")

    changes = {}
    for name in ("username", "email", "bio"):
        value = getattr(request, name)
        if value is not None and value != getattr(user, name):
            changes[name] = value

    if not changes:
        return []

    _check_unique(db, changes.get("username"), changes.get("email"), exclude_id=user_id)

    for name, value in changes.items():
        setattr(user, name, value)
    user.updated_at = utcnow()
    _commit_user(db, user, "Failed to update user")

    logger.info(f"User {user_id} updated fields: {', '.join(changes)}")
    return list(changes)


def change_password(db: Session, user_id: int, old_password: str, new_password: str) -> None:
    user = get_user(db, user_id)

    if not verify_password(old_password, user.password_hash):
        logger.warning(f"Invalid old password provided by user {user_id}")
        raise AuthenticationError("Invalid old password")

    user.password_hash = hash_password(new_password)
    user.updated_at = utcnow()
    _commit_user(db, user, "Failed to update password")
    logger.info(f"Password updated for user {user_id}")
