"""Audit Logs API endpoints."""
from typing import Optional

from fastapi import APIRouter, Query

from referral_ledger.api.deps import DB
from referral_ledger.schemas.payout import AuditLogList, AuditLogResponse
from referral_ledger.services.audit_service import AuditService

router = APIRouter()


@router.get("", response_model=AuditLogList)
async def list_audit_logs(
    db: DB,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    actor_id: Optional[str] = None,
):
    """
    List audit logs with filtering and pagination.

    Filters:
    - entity_type: REFERRAL_PARTNER, REFERRAL_CAFE, REFERRAL_LINK, REFERRAL_CONVERSION, PAYOUT_LEDGER
    - entity_id: Filter by specific entity ID
    - action: CREATE, UPDATE, APPROVE, ...
    - actor_id: Filter by who performed the action
    """
    result = await AuditService(db).get_audit_logs(
        entity_type=entity_type.upper() if entity_type else None,
        entity_id=entity_id,
        action=action.upper() if action else None,
        actor_id=actor_id,
        page=page,
        page_size=page_size,
    )
    return AuditLogList(
        items=[AuditLogResponse.model_validate(log) for log in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
        has_more=result.has_more,
    )
