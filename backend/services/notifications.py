"""Email notifications recorded through an outbox.

Workflow code calls the ``queue_*`` helpers inside its own transaction, so an
email exists exactly when the change it describes was committed. Delivery
happens later in ``dispatch_pending_emails``, which claims each row before
sending it, retries with exponential backoff and gives up after
``OUTBOX_MAX_ATTEMPTS``.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core import config
from backend.database import SessionLocal, utcnow
from backend.models.outbox import EmailOutbox, OutboxStatus
from backend.services import email_templates

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 3600
SEND_CLAIM_TIMEOUT = timedelta(minutes=15)


def enqueue_email(db: Session, event_type: str, recipient: str | None, subject: str, html_body: str) -> EmailOutbox | None:
    if not recipient:
        logger.warning('Skipping %s email: recipient has no address', event_type)
        return None

    message = EmailOutbox(
        event_type=event_type,
        recipient=recipient,
        subject=subject,
        html_body=html_body,
        status=OutboxStatus.PENDING.value,
        attempts=0,
        next_attempt_at=utcnow(),
    )
    db.add(message)
    return message


def queue_booking_emails(db: Session, patient, therapist, appointment) -> None:
    subject, body = email_templates.appointment_booked_for_patient(patient, therapist, appointment)
    enqueue_email(db, 'appointment.booked', patient.email, subject, body)
    subject, body = email_templates.appointment_booked_for_therapist(patient, therapist, appointment)
    enqueue_email(db, 'appointment.booked', therapist.email, subject, body)


def queue_status_update_email(db: Session, recipient, actor, appointment) -> None:
    if recipient is None:
        return
    subject, body = email_templates.appointment_status_update(recipient, actor, appointment)
    enqueue_email(db, f'appointment.{appointment.status}', recipient.email, subject, body)


def queue_treatment_plan_email(db: Session, patient, therapist, plan) -> None:
    subject, body = email_templates.treatment_plan_assigned(patient, therapist, plan)
    enqueue_email(db, 'treatment_plan.created', patient.email, subject, body)


def queue_progress_report_email(db: Session, therapist, patient, entry) -> None:
    subject, body = email_templates.progress_report(therapist, patient, entry)
    enqueue_email(db, 'progress.created', therapist.email, subject, body)


def retry_delay(attempts: int) -> timedelta:
    return timedelta(seconds=min(MAX_BACKOFF_SECONDS, 30 * 2 ** max(attempts - 1, 0)))


def claim_email(db: Session, message_id: int, seen_status: str, seen_updated_at: datetime) -> bool:
    """Move one outbox row to ``sending`` if nobody touched it since it was read.

    The update matches on the status and ``updated_at`` observed by this relay,
    so of two overlapping relays exactly one sees a row count of 1.
    """
    claimed = db.query(EmailOutbox).filter(
        EmailOutbox.id == message_id,
        EmailOutbox.status == seen_status,
        EmailOutbox.updated_at == seen_updated_at,
    ).update(
        {EmailOutbox.status: OutboxStatus.SENDING.value, EmailOutbox.updated_at: utcnow()},
        synchronize_session=False,
    )
    db.commit()
    return claimed == 1


def dispatch_pending_emails(
    db: Session,
    mailer,
    now: datetime | None = None,
    limit: int | None = None,
) -> int:
    """Send due outbox messages and return how many were delivered.

    Rows left in ``sending`` by a relay that died mid-send are picked up again
    once their claim is older than ``SEND_CLAIM_TIMEOUT``.
    """
    now = now or utcnow()
    stale_claim = utcnow() - SEND_CLAIM_TIMEOUT
    candidates = [
        (message.id, message.status, message.updated_at)
        for message in db.query(EmailOutbox).filter(
            or_(
                and_(
                    EmailOutbox.status == OutboxStatus.PENDING.value,
                    EmailOutbox.next_attempt_at <= now,
                ),
                and_(
                    EmailOutbox.status == OutboxStatus.SENDING.value,
                    EmailOutbox.updated_at <= stale_claim,
                ),
            )
        ).order_by(EmailOutbox.id.asc()).limit(limit or config.OUTBOX_BATCH_SIZE).populate_existing()
    ]

    delivered = 0
    for message_id, seen_status, seen_updated_at in candidates:
        if not claim_email(db, message_id, seen_status, seen_updated_at):
            logger.debug('Email %s already claimed by another relay', message_id)
            continue

        message = db.get(EmailOutbox, message_id)
        try:
            mailer.send(message.recipient, message.subject, message.html_body)
        except Exception as exc:  # transport errors vary by mailer
            message.attempts = (message.attempts or 0) + 1
            message.last_error = str(exc)[:2000]
            if message.attempts >= config.OUTBOX_MAX_ATTEMPTS:
                message.status = OutboxStatus.FAILED.value
                logger.error('Giving up on email %s to %s after %s attempts', message.id, message.recipient, message.attempts)
            else:
                message.status = OutboxStatus.PENDING.value
                message.next_attempt_at = now + retry_delay(message.attempts)
                logger.warning('Email %s to %s failed; retry scheduled', message.id, message.recipient, exc_info=True)
        else:
            message.status = OutboxStatus.SENT.value
            message.sent_at = now
            message.last_error = None
            delivered += 1
        db.commit()

    return delivered


def relay_pending_emails(mailer, session_factory=SessionLocal) -> int:
    """Background entry point: runs one dispatch pass in its own session."""
    db = session_factory()
    try:
        return dispatch_pending_emails(db, mailer)
    except SQLAlchemyError:
        db.rollback()
        logger.exception('Email outbox relay failed')
        return 0
    finally:
        db.close()
