"""
Ledger error taxonomy.

Every error raised by the referral/payout services derives from LedgerError
and carries a human readable `message` plus a `details` dict for the caller.

    NotFoundError            -> entity absent (recoverable)
    ConflictError            -> uniqueness / duplicate / exhaustion (recoverable)
    LinkUnavailableError     -> link revoked or expired
    StateMismatchError       -> illegal state transition (human review)
    IntegrityViolationError  -> snapshot fingerprint mismatch (security event)
    LedgerValidationError    -> malformed input (recoverable)
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base exception for referral ledger errors."""

    code = "LEDGER_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


# ==================== NOT FOUND ====================

class NotFoundError(LedgerError):
    code = "NOT_FOUND"
    status_code = 404
    retryable = True

    def __init__(self, entity: str, entity_id: Any = None, message: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            message or f"{entity} not found",
            {"entity": entity, "id": str(entity_id) if entity_id is not None else None},
        )


class LinkNotFoundError(NotFoundError):
    def __init__(self, link_ref: Any):
        super().__init__("Referral link", link_ref, "Referral link not found")


# ==================== CONFLICT ====================

class ConflictError(LedgerError):
    code = "CONFLICT"
    status_code = 409
    retryable = True


class AlreadyAttributedError(ConflictError):
    """First-touch rule: the user already has a conversion."""
    code = "ALREADY_ATTRIBUTED"

    def __init__(self, user_id: str, existing=None):
        self.user_id = user_id
        self.existing = existing
        details: Dict[str, Any] = {"user_id": user_id}
        if existing is not None:
            details["existing_conversion_id"] = str(existing.id)
            details["existing_link_id"] = str(existing.link_id)
            details["attributed_at"] = existing.attributed_at.isoformat()
        super().__init__(
            "User already has an attribution (first-touch rule)", details
        )


class DuplicatePayoutError(ConflictError):
    code = "DUPLICATE_PAYOUT"


class ShortCodeExhaustedError(ConflictError):
    code = "SHORT_CODE_EXHAUSTED"

    def __init__(self, attempts: int):
        super().__init__(
            "Failed to generate unique short code",
            {"attempts": attempts},
        )


class ApprovalTimeoutError(ConflictError):
    code = "APPROVAL_TIMEOUT"


# ==================== LINK AVAILABILITY ====================

class LinkUnavailableError(LedgerError):
    status_code = 410


class LinkInactiveError(LinkUnavailableError):
    code = "LINK_INACTIVE"

    def __init__(self, short_code: str, status: str):
        super().__init__(
            "Link is no longer active",
            {"short_code": short_code, "status": status},
        )


class LinkExpiredError(LinkUnavailableError):
    code = "LINK_EXPIRED"

    def __init__(self, short_code: str, expires_at):
        super().__init__(
            "Link has expired",
            {"short_code": short_code, "expires_at": expires_at.isoformat()},
        )


# ==================== STATE / INTEGRITY ====================

class StateMismatchError(LedgerError):
    """Transition attempted from the wrong state. Never auto-retried."""
    code = "STATE_MISMATCH"
    status_code = 409

    def __init__(self, entity: str, required, actual: str, entity_id: Any = None):
        if isinstance(required, (list, tuple, set)):
            required_text = " or ".join(sorted(required))
        else:
            required_text = required
        self.required = required_text
        self.actual = actual
        super().__init__(
            f"{entity} status is {actual}, expected {required_text}",
            {
                "entity": entity,
                "id": str(entity_id) if entity_id is not None else None,
                "required_status": required_text,
                "actual_status": actual,
            },
        )


class IntegrityViolationError(LedgerError):
    """Snapshot verification failed. Security relevant, never auto-retried."""
    code = "INTEGRITY_VIOLATION"
    status_code = 422


# ==================== VALIDATION ====================

class LedgerValidationError(LedgerError):
    code = "VALIDATION_ERROR"
    status_code = 400
    retryable = True

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, {"field": field} if field else {})
