"""Deliver queued emails from the outbox.

Usage:
    python -m backend.relay_outbox
"""
import logging

from backend.core.logging import setup_logging
from backend.database import ensure_schema
from backend.services.mailer import build_mailer
from backend.services.notifications import relay_pending_emails

logger = logging.getLogger(__name__)


def main() -> None:
    setup_logging()
    ensure_schema()
    delivered = relay_pending_emails(build_mailer())
    logger.info('Delivered %s queued emails', delivered)


if __name__ == "__main__":
    main()
