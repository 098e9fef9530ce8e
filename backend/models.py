"""
SQLAlchemy database models for Mail Sweep.
Defines all database tables and relationships.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db import Base


# Unsubscribe attempt statuses
UNSUBSCRIBE_PENDING = "pending"
UNSUBSCRIBE_PROCESSING = "processing"
UNSUBSCRIBE_SUCCESS = "success"
UNSUBSCRIBE_FAILED = "failed"
UNSUBSCRIBE_NOT_FOUND = "not_found"
UNSUBSCRIBE_PENDING_CONFIRMATION = "pending_confirmation"

UNSUBSCRIBE_TERMINAL_STATUSES = frozenset(
    {
        UNSUBSCRIBE_SUCCESS,
        UNSUBSCRIBE_FAILED,
        UNSUBSCRIBE_NOT_FOUND,
        UNSUBSCRIBE_PENDING_CONFIRMATION,
    }
)


class MailAccount(Base):
    """
    A connected Gmail mailbox with its encrypted OAuth credentials
    and the last history cursor consumed from push notifications.
    """
    __tablename__ = "mail_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "google_id", name="uq_mail_account_user_google"),
        UniqueConstraint("user_id", "email", name="uq_mail_account_user_email"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    google_id: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Encrypted
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Encrypted
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    scopes: Mapped[List[str]] = mapped_column(JSON, default=list)
    last_history_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    messages: Mapped[List["Message"]] = relationship(
        "Message",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<MailAccount(id={self.id}, email={self.email})>"


class Category(Base):
    """
    User-defined category that stored messages can be sorted into.
    """
    __tablename__ = "categories"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Category(id={self.id}, name={self.name})>"


class Message(Base):
    """
    A normalized mailbox message stored locally.
    Carries AI enrichment and the latest unsubscribe attempt.
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("account_id", "gmail_message_id", name="uq_message_account_gmail_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("mail_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    gmail_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    gmail_thread_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    subject: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    snippet: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    from_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    from_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    to_emails: Mapped[List[str]] = mapped_column(JSON, default=list)
    cc_emails: Mapped[List[str]] = mapped_column(JSON, default=list)
    labels: Mapped[List[str]] = mapped_column(JSON, default=list)
    category_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True
    )
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    received_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    internal_date: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    # Latest unsubscribe attempt
    unsubscribe_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    unsubscribe_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    unsubscribe_status: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        index=True
        # Valid values: pending, processing, success, failed, not_found, pending_confirmation
    )
    unsubscribe_attempted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    unsubscribe_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    unsubscribe_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    account: Mapped["MailAccount"] = relationship("MailAccount", back_populates="messages")

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, gmail_message_id={self.gmail_message_id})>"


class Job(Base):
    """
    Durable background job record.
    APScheduler executes the work; this row survives restarts and
    carries the attempt count handed to the handler.
    """
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    args: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    state: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending"
        # Valid values: pending, running, retrying, completed, failed
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Job(id={self.id}, kind={self.kind}, state={self.state}, attempt={self.attempt})>"


# Create indexes for common queries
Index("idx_message_user_received", Message.user_id, Message.received_at)
Index("idx_job_state", Job.state)
