import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    DDL,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
    func,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

CODE_MIN = 10000
CODE_MAX = 65535


def utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(16), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    bio = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    chat_codes = relationship("ChatCode", back_populates="owner", cascade="all, delete-orphan")


class ChatCode(Base):
    __tablename__ = "chat_codes"
    __table_args__ = (
        CheckConstraint(f"code >= {CODE_MIN} AND code <= {CODE_MAX}", name="ck_chat_codes_range"),
    )

    id = Column(Integer, primary_key=True)
    code = Column(Integer, unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    owner = relationship("User", back_populates="chat_codes")


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("user_id_1", "user_id_2", name="uq_conversations_users"),
        CheckConstraint("user_id_1 < user_id_2", name="ck_conversations_ordered"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id_1 = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    user_id_2 = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    messages = relationship("Message", back_populates="conversation", cascade="all, delete-orphan")


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_conversation_sent", "conversation_id", "sent_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    user_sent_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    content = Column(Text, nullable=False)
    # Stamped in Python for microsecond precision on every dialect; plain SQL inserts fall back to now().
    sent_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    edited_at = Column(DateTime(timezone=True), nullable=True)

    conversation = relationship("Conversation", back_populates="messages")
    author = relationship("User")


# PostgreSQL only: participant check and the LISTEN/NOTIFY publish.
# NOTIFY is queued inside the inserting transaction and delivered on commit.
check_message_sender = DDL("""
CREATE OR REPLACE FUNCTION check_message_sender() RETURNS TRIGGER AS $$
BEGIN
    IF NOT EXISTS (
        SELECT 1 FROM conversations
        WHERE id = NEW.conversation_id
          AND (user_id_1 = NEW.user_sent_id OR user_id_2 = NEW.user_sent_id)
    ) THEN
        RAISE EXCEPTION 'User %% is not a participant in conversation %%',
            NEW.user_sent_id, NEW.conversation_id;
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

CREATE TRIGGER trigger_check_message_sender
    BEFORE INSERT OR UPDATE ON messages
    FOR EACH ROW EXECUTE FUNCTION check_message_sender();
""")

notify_message_insert = DDL("""
CREATE OR REPLACE FUNCTION notify_message_insert() RETURNS TRIGGER AS $$
BEGIN
    PERFORM pg_notify(
        'conversation_' || NEW.conversation_id::text,
        json_build_object(
            'author_user_id', NEW.user_sent_id,
            'content', NEW.content,
            'sent_at', NEW.sent_at
        )::text
    );
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

CREATE TRIGGER message_insert_trigger
    AFTER INSERT ON messages
    FOR EACH ROW EXECUTE FUNCTION notify_message_insert();
""")

event.listen(Message.__table__, "after_create", check_message_sender.execute_if(dialect="postgresql"))
event.listen(Message.__table__, "after_create", notify_message_insert.execute_if(dialect="postgresql"))
