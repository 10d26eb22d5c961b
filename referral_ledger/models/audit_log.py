import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from referral_ledger.database import Base
from referral_ledger.db_types import JSONType, UUIDType


class AuditLog(Base):
    """
    Append-only audit trail for every ledger mutation.
    Records: partner/cafe changes, link creation and revocation, attributions,
    payout calculation, approval, payment and adjustments.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('ix_audit_logs_entity', 'entity_type', 'entity_id'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Entity being modified
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    # Entity types: REFERRAL_PARTNER, REFERRAL_CAFE, REFERRAL_LINK,
    #               REFERRAL_CONVERSION, PAYOUT_LEDGER

    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)

    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    # Actions: CREATE, UPDATE, REVOKE, ATTRIBUTE, CALCULATE, RECALCULATE,
    #          APPROVE, MARK_PROCESSING, MARK_PAID, ADJUST

    # Who performed the action
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_email: Mapped[str] = mapped_column(String(255), nullable=False)

    # Change tracking
    before_state: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    after_state: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # "metadata" is reserved on declarative classes
    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True
    )

    def __repr__(self) -> str:
        return f"<AuditLog(action='{self.action}', entity='{self.entity_type}', id='{self.entity_id}')>"
