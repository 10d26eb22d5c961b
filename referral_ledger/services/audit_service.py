import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_ledger.core.pagination import Page, paginate
from referral_ledger.database import custom_json_dumps
from referral_ledger.models.audit_log import AuditLog


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Who performed a mutation."""
    id: str
    email: str = "system"


SYSTEM_ACTOR = Actor(id="system", email="system")


def json_safe(value: Any) -> Any:
    """Round-trip through the ledger JSON encoder (Decimal/UUID/datetime → str)."""
    if value is None:
        return None
    return json.loads(custom_json_dumps(value))


def model_snapshot(instance, fields: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Column values of an ORM instance as a JSON-safe dict."""
    mapper = inspect(instance).mapper
    names = list(fields) if fields is not None else [c.key for c in mapper.column_attrs]
    return json_safe({name: getattr(instance, name) for name in names})


class AuditService:
    """
    Append-only audit sink.

    Entries are written inside a SAVEPOINT of the caller's transaction: they
    commit together with the business change, but a failed audit write never
    aborts it. Callers flush their own changes before recording.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        entity_type: str,
        entity_id: Any,
        action: str,
        actor: Actor,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[uuid.UUID]:
        """
        Create an audit log entry.

        Args:
            entity_type: REFERRAL_PARTNER, REFERRAL_LINK, PAYOUT_LEDGER, ...
            entity_id: ID of the affected entity
            action: CREATE, UPDATE, APPROVE, ...
            actor: Who performed the action
            before: Previous values (for updates)
            after: New values (for creates/updates)
            metadata: Extra context (reason, fingerprint, ...)

        Returns:
            The new entry's id, or None if the write failed
        """
        try:
            async with self.db.begin_nested():
                entry = AuditLog(
                    entity_type=entity_type,
                    entity_id=str(entity_id),
                    action=action,
                    actor_id=actor.id,
                    actor_email=actor.email,
                    before_state=json_safe(before),
                    after_state=json_safe(after),
                    metadata_=json_safe(metadata),
                )
                self.db.add(entry)
            return entry.id
        except Exception as e:
            logger.critical(
                f"CRITICAL: audit log write failed for {entity_type} {entity_id} "
                f"action={action} actor={actor.id}: {e}"
            )
            return None

    async def get_audit_logs(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        action: Optional[str] = None,
        actor_id: Optional[str] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Page[AuditLog]:
        """Get audit logs with filtering, newest first."""
        stmt = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id)

        if entity_type:
            stmt = stmt.where(AuditLog.entity_type == entity_type)
        if entity_id:
            stmt = stmt.where(AuditLog.entity_id == str(entity_id))
        if action:
            stmt = stmt.where(AuditLog.action == action)
        if actor_id:
            stmt = stmt.where(AuditLog.actor_id == actor_id)

        return await paginate(self.db, stmt, page, page_size)
