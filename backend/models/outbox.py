"""Outbound email queue model definitions."""

from enum import Enum

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from backend.database import Base, TimestampMixin, utcnow


class OutboxStatus(str, Enum):
    PENDING = 'pending'
    SENDING = 'sending'
    SENT = 'sent'
    FAILED = 'failed'


class EmailOutbox(Base, TimestampMixin):
    """An email recorded in the same transaction as the change it reports."""
    __tablename__ = 'email_outbox'
    __table_args__ = (
        Index('idx_email_outbox_status_next_attempt', 'status', 'next_attempt_at'),
    )

    id = Column(Integer, primary_key=True)
    event_type = Column(String, nullable=False)
    recipient = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    html_body = Column(Text, nullable=False)
    status = Column(String, nullable=False, default=OutboxStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=False, default=utcnow)
    last_error = Column(Text)
    sent_at = Column(DateTime)
