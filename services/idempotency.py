"""Processed webhook event table.

Every provider event id is claimed inside the same transaction as its side
effects, so a redelivered event that carries no payment id of its own (such
as a cancellation) is still applied at most once.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from extensions import db
from models import ProcessedWebhookEvent
from services.errors import AlreadyProcessed

logger = logging.getLogger(__name__)


def is_processed(provider: str, event_id: str) -> bool:
    return (
        db.session.query(ProcessedWebhookEvent.id)
        .filter_by(provider=provider, event_id=event_id)
        .first()
        is not None
    )


def claim_event(provider: str, event_id: str, event_type: str) -> None:
    """Insert the event marker or raise ``AlreadyProcessed`` after rolling back."""
    db.session.add(
        ProcessedWebhookEvent(provider=provider, event_id=event_id, event_type=event_type)
    )
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise AlreadyProcessed("event", f"{provider}:{event_id}")
