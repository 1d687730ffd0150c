"""
Merchant Tie-Up Module

A merchant originates loans for an NBFC only through an approved tie-up. The
merchant requests one, an admin of that NBFC approves or rejects it, and a
pending request may be cancelled by the merchant. Approval can pin the NBFC's
interest rate and default tenure for the merchant's loans.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum

from .audit import AuditTrail, AuditEventType
from .errors import (
    ConcurrencyConflictError, PermissionDeniedError, ValidationError, collaborator_call
)
from .logging_config import get_logger, log_action
from .rbac import ActorContext, Permission, Role, require_permission
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_servicing.tieups")


class TieUpStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# A merchant may (re-)request a tie-up unless one is pending or approved
OPEN_STATUSES = frozenset({TieUpStatus.PENDING, TieUpStatus.APPROVED})


@dataclass
class TieUp(StorageRecord):
    """Merchant ↔ NBFC association"""
    merchant_id: str
    nbfc_id: str
    status: TieUpStatus
    requested_by: str
    responded_by: Optional[str] = None
    responded_at: Optional[datetime] = None
    reason: Optional[str] = None
    interest_rate: Optional[Decimal] = None
    tenure_months: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status == TieUpStatus.APPROVED

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        result['responded_at'] = self.responded_at.isoformat() if self.responded_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TieUp':
        data['status'] = TieUpStatus(data['status'])
        if data.get('responded_at'):
            data['responded_at'] = datetime.fromisoformat(data['responded_at'])
        if data.get('interest_rate') is not None:
            data['interest_rate'] = Decimal(data['interest_rate'])
        return super().from_dict(data)


class TieUpRegistry:
    """
    Storage-backed registry of merchant tie-ups
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table = "merchant_tie_ups"

    @staticmethod
    def tie_up_id(merchant_id: str, nbfc_id: str) -> str:
        return f"{merchant_id}:{nbfc_id}"

    def request_tie_up(self, actor: ActorContext, nbfc_id: str,
                       merchant_id: Optional[str] = None) -> TieUp:
        """
        Open a tie-up request from a merchant to an NBFC

        Merchants always request for themselves; admins name the merchant.
        """
        require_permission(actor, Permission.REQUEST_TIE_UP)
        if actor.role == Role.MERCHANT:
            merchant_id = actor.effective_merchant_id
        if not merchant_id:
            raise ValidationError("Merchant id is required", field="merchant_id")
        if not (nbfc_id or "").strip():
            raise ValidationError("NBFC id is required", field="nbfc_id")

        record_id = self.tie_up_id(merchant_id, nbfc_id)
        current = self.get_tie_up(merchant_id, nbfc_id)
        if current and current.status in OPEN_STATUSES:
            raise ValidationError(f"Tie-up with {nbfc_id} is already {current.status.value}",
                                  field="nbfc_id", value=nbfc_id)

        now = datetime.now(timezone.utc)
        tie_up = TieUp(
            id=record_id,
            created_at=current.created_at if current else now,
            updated_at=now,
            merchant_id=merchant_id,
            nbfc_id=nbfc_id,
            status=TieUpStatus.PENDING,
            requested_by=actor.actor_id
        )
        expected = {'status': current.status.value} if current else None
        self._write(tie_up, expected, current, actor)
        return tie_up

    def respond(self, merchant_id: str, nbfc_id: str, approve: bool, actor: ActorContext,
                interest_rate: Optional[Decimal] = None, tenure_months: Optional[int] = None,
                reason: Optional[str] = None) -> TieUp:
        """
        Approve or reject a pending request

        Args:
            merchant_id: Requesting merchant
            nbfc_id: NBFC the request was sent to
            approve: True to approve, False to reject
            actor: Platform admin, or an admin of that NBFC
            interest_rate: Annual rate (percent) applied to the merchant's loans
            tenure_months: Default tenure offered to the merchant's customers
            reason: Rejection remark

        Returns:
            Updated TieUp
        """
        require_permission(actor, Permission.MANAGE_TIE_UPS)
        if actor.role == Role.NBFC_ADMIN and actor.nbfc_id != nbfc_id:
            raise PermissionDeniedError(actor.actor_id, actor.role.value, Permission.MANAGE_TIE_UPS.value,
                                        reason=f"tie-up belongs to NBFC {nbfc_id}")

        current = self._require_pending(merchant_id, nbfc_id)
        if interest_rate is not None:
            interest_rate = Decimal(interest_rate)
            if interest_rate < 0:
                raise ValidationError("Interest rate cannot be negative",
                                      field="interest_rate", value=interest_rate)
        if tenure_months is not None and tenure_months <= 0:
            raise ValidationError("Tenure must be positive", field="tenure_months", value=tenure_months)

        now = datetime.now(timezone.utc)
        current.status = TieUpStatus.APPROVED if approve else TieUpStatus.REJECTED
        current.responded_by = actor.actor_id
        current.responded_at = now
        current.updated_at = now
        if approve:
            current.interest_rate = interest_rate
            current.tenure_months = tenure_months
        else:
            current.reason = reason or "Rejected by admin"

        self._write(current, {'status': TieUpStatus.PENDING.value}, current, actor,
                    from_status=TieUpStatus.PENDING)
        return current

    def cancel_request(self, actor: ActorContext, nbfc_id: str) -> TieUp:
        """Withdraw the merchant's own pending request"""
        require_permission(actor, Permission.REQUEST_TIE_UP)
        merchant_id = actor.effective_merchant_id
        if not merchant_id:
            raise ValidationError("Merchant id is required", field="merchant_id")

        current = self._require_pending(merchant_id, nbfc_id)
        now = datetime.now(timezone.utc)
        current.status = TieUpStatus.CANCELLED
        current.responded_at = now
        current.updated_at = now

        self._write(current, {'status': TieUpStatus.PENDING.value}, current, actor,
                    from_status=TieUpStatus.PENDING)
        return current

    def get_tie_up(self, merchant_id: str, nbfc_id: str) -> Optional[TieUp]:
        with collaborator_call("persistence"):
            data = self.storage.load(self.table, self.tie_up_id(merchant_id, nbfc_id))
        return TieUp.from_dict(data) if data else None

    def list_tie_ups(self, merchant_id: Optional[str] = None, nbfc_id: Optional[str] = None,
                     status: Optional[TieUpStatus] = None) -> List[TieUp]:
        filters: Dict[str, Any] = {}
        if merchant_id:
            filters['merchant_id'] = merchant_id
        if nbfc_id:
            filters['nbfc_id'] = nbfc_id
        if status:
            filters['status'] = TieUpStatus(status).value
        with collaborator_call("persistence"):
            rows = self.storage.find(self.table, filters)
        return sorted((TieUp.from_dict(row) for row in rows), key=lambda t: t.created_at)

    def active_tie_ups(self, merchant_id: str) -> List[TieUp]:
        return self.list_tie_ups(merchant_id=merchant_id, status=TieUpStatus.APPROVED)

    def resolve(self, merchant_id: str, nbfc_id: Optional[str] = None) -> TieUp:
        """
        Pick the approved tie-up a merchant's new loan is routed through

        Raises:
            PermissionDeniedError: merchant has no approved tie-up (with that NBFC)
            ValidationError: several approved tie-ups and no NBFC named
        """
        if nbfc_id:
            tie_up = self.get_tie_up(merchant_id, nbfc_id)
            if tie_up is None or not tie_up.is_active:
                raise PermissionDeniedError(merchant_id, Role.MERCHANT.value, Permission.SUBMIT_LOAN.value,
                                            reason=f"no approved tie-up with NBFC {nbfc_id}")
            return tie_up

        active = self.active_tie_ups(merchant_id)
        if not active:
            raise PermissionDeniedError(merchant_id, Role.MERCHANT.value, Permission.SUBMIT_LOAN.value,
                                        reason="no approved NBFC tie-up")
        if len(active) > 1:
            raise ValidationError("Merchant has several NBFC tie-ups; choose one", field="nbfc_id")
        return active[0]

    def _require_pending(self, merchant_id: str, nbfc_id: str) -> TieUp:
        current = self.get_tie_up(merchant_id, nbfc_id)
        if current is None:
            raise ValidationError(f"No tie-up request from {merchant_id} to {nbfc_id}",
                                  field="nbfc_id", value=nbfc_id)
        if current.status != TieUpStatus.PENDING:
            raise ValidationError(f"Tie-up request is already {current.status.value}",
                                  field="status", value=current.status.value)
        return current

    def _write(self, tie_up: TieUp, expected: Optional[Dict[str, Any]], previous: Optional[TieUp],
               actor: ActorContext, from_status: Optional[TieUpStatus] = None) -> None:
        if from_status is None and previous is not None:
            from_status = previous.status
        with collaborator_call("persistence"), self.storage.atomic():
            if not self.storage.compare_and_save(self.table, tie_up.id, tie_up.to_dict(), expected):
                raise ConcurrencyConflictError("tie_up", tie_up.id)
            self.audit_trail.log_event(
                event_type=AuditEventType.TIE_UP_STATUS_CHANGED,
                entity_type="tie_up",
                entity_id=tie_up.id,
                metadata={
                    "merchant_id": tie_up.merchant_id,
                    "nbfc_id": tie_up.nbfc_id,
                    "from_status": from_status.value if from_status else None,
                    "to_status": tie_up.status.value,
                    "interest_rate": tie_up.interest_rate,
                    "tenure_months": tie_up.tenure_months,
                    "reason": tie_up.reason
                },
                user_id=actor.actor_id,
                user_role=actor.role.value
            )

        log_action(logger, "info",
                   f"Tie-up {tie_up.merchant_id} -> {tie_up.nbfc_id}: {tie_up.status.value}",
                   user_id=actor.actor_id, action="tie_up", resource=f"tie_up:{tie_up.id}")
