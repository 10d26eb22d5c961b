from typing import Annotated, Optional
import logging

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from referral_ledger.database import get_db
from referral_ledger.services.audit_service import SYSTEM_ACTOR, Actor
from referral_ledger.services.notification_service import (
    LoggingNotificationPublisher,
    NotificationPublisher,
)


logger = logging.getLogger(__name__)


async def get_current_actor(
    x_actor_id: Annotated[Optional[str], Header()] = None,
    x_actor_email: Annotated[Optional[str], Header()] = None,
) -> Actor:
    """
    Acting user for audit records.

    Authentication happens in front of this service; the gateway forwards the
    authenticated identity in X-Actor-Id / X-Actor-Email.
    """
    if not x_actor_id:
        return SYSTEM_ACTOR
    return Actor(id=x_actor_id, email=x_actor_email or x_actor_id)


def get_notifier(request: Request) -> NotificationPublisher:
    notifier = getattr(request.app.state, "notifier", None)
    if notifier is None:
        logger.debug("No notifier on app state, using log-only publisher")
        return LoggingNotificationPublisher()
    return notifier


# Type aliases for cleaner endpoint signatures
DB = Annotated[AsyncSession, Depends(get_db)]
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
Notifier = Annotated[NotificationPublisher, Depends(get_notifier)]
