"""
Role-Based Access Control Module

The core does not authenticate anyone. Callers hand in an ActorContext and the
engines check it against a static role → permission map plus tie-up scoping:
an NBFC admin only reaches loans of merchants tied up with its NBFC, a merchant
only its own loans, a customer only loans in its name.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from .errors import PermissionDeniedError, ValidationError


class Role(Enum):
    """Portal roles"""
    ADMIN = "admin"
    NBFC_ADMIN = "nbfc_admin"
    MERCHANT = "merchant"
    CUSTOMER = "customer"


class Permission(Enum):
    """Operations a role may perform"""
    SUBMIT_LOAN = "submit_loan"
    VIEW_LOAN = "view_loan"
    ATTACH_DOCUMENT = "attach_document"
    REVIEW_LOAN = "review_loan"          # accept / reject
    VERIFY_LOAN = "verify_loan"
    DISBURSE_LOAN = "disburse_loan"
    DELIVER_PRODUCT = "deliver_product"
    RECORD_PAYMENT = "record_payment"
    REQUEST_TIE_UP = "request_tie_up"
    MANAGE_TIE_UPS = "manage_tie_ups"      # approve / reject


ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.ADMIN: frozenset(Permission),
    Role.NBFC_ADMIN: frozenset({
        Permission.VIEW_LOAN,
        Permission.ATTACH_DOCUMENT,
        Permission.REVIEW_LOAN,
        Permission.VERIFY_LOAN,
        Permission.DISBURSE_LOAN,
        Permission.DELIVER_PRODUCT,
        Permission.RECORD_PAYMENT,
        Permission.MANAGE_TIE_UPS,
    }),
    Role.MERCHANT: frozenset({
        Permission.SUBMIT_LOAN,
        Permission.VIEW_LOAN,
        Permission.ATTACH_DOCUMENT,
        Permission.DELIVER_PRODUCT,
        Permission.REQUEST_TIE_UP,
    }),
    Role.CUSTOMER: frozenset({
        Permission.SUBMIT_LOAN,
        Permission.VIEW_LOAN,
        Permission.ATTACH_DOCUMENT,
    }),
}


@dataclass(frozen=True)
class ActorContext:
    """Who is performing an operation"""
    actor_id: str
    role: Role
    merchant_id: Optional[str] = None  # merchant actors: their merchant profile
    nbfc_id: Optional[str] = None      # nbfc_admin actors: their NBFC

    def __post_init__(self):
        if not self.actor_id:
            raise ValidationError("Actor id is required", field="actor_id")
        if not isinstance(self.role, Role):
            try:
                object.__setattr__(self, 'role', Role(self.role))
            except ValueError:
                raise ValidationError(f"Unknown role '{self.role}'", field="role", value=self.role)

    @property
    def effective_merchant_id(self) -> Optional[str]:
        """Merchant scope; a merchant without an explicit profile id uses its actor id"""
        if self.role == Role.MERCHANT:
            return self.merchant_id or self.actor_id
        return self.merchant_id

    def has_permission(self, permission: Permission) -> bool:
        return permission in ROLE_PERMISSIONS[self.role]


def require_permission(actor: ActorContext, permission: Permission) -> None:
    """Raise PermissionDeniedError unless the actor's role grants `permission`"""
    if not actor.has_permission(permission):
        raise PermissionDeniedError(actor.actor_id, actor.role.value, permission.value)


def require_loan_scope(actor: ActorContext, permission: Permission, loan_id: str,
                       merchant_id: Optional[str], nbfc_id: Optional[str],
                       customer_id: Optional[str]) -> None:
    """
    Check both the role permission and that the loan falls inside the actor's scope.

    Args:
        actor: Acting identity
        permission: Operation being attempted
        loan_id: Loan being acted on (for the error message)
        merchant_id: Merchant that originated the loan
        nbfc_id: NBFC the merchant is tied up with, if any
        customer_id: Borrower's customer id, if the borrower has an account
    """
    require_permission(actor, permission)

    if actor.role == Role.ADMIN:
        return
    if actor.role == Role.NBFC_ADMIN:
        if not actor.nbfc_id or actor.nbfc_id != nbfc_id:
            raise PermissionDeniedError(actor.actor_id, actor.role.value, permission.value,
                                        reason=f"loan {loan_id} is outside this NBFC's tie-ups")
        return
    if actor.role == Role.MERCHANT:
        if actor.effective_merchant_id != merchant_id:
            raise PermissionDeniedError(actor.actor_id, actor.role.value, permission.value,
                                        reason=f"loan {loan_id} belongs to another merchant")
        return
    if actor.actor_id != customer_id:
        raise PermissionDeniedError(actor.actor_id, actor.role.value, permission.value,
                                    reason=f"loan {loan_id} belongs to another customer")
