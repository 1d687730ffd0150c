"""
Tests for role permissions and tie-up scoping
"""

import pytest

from loan_servicing.errors import PermissionDeniedError, ValidationError
from loan_servicing.rbac import (
    ActorContext, Permission, Role, ROLE_PERMISSIONS, require_loan_scope, require_permission
)


class TestActorContext:
    """Test ActorContext construction"""

    def test_role_string_is_coerced(self):
        actor = ActorContext("admin-1", "admin")
        assert actor.role == Role.ADMIN

    def test_unknown_role(self):
        with pytest.raises(ValidationError) as exc_info:
            ActorContext("someone", "superuser")
        assert exc_info.value.field == "role"

    def test_actor_id_required(self):
        with pytest.raises(ValidationError):
            ActorContext("", Role.ADMIN)

    def test_merchant_scope_defaults_to_actor(self):
        assert ActorContext("merchant-7", Role.MERCHANT).effective_merchant_id == "merchant-7"
        assert ActorContext("user-3", Role.MERCHANT, merchant_id="merchant-7").effective_merchant_id == "merchant-7"

    def test_actor_is_immutable(self):
        actor = ActorContext("admin-1", Role.ADMIN)
        with pytest.raises(AttributeError):
            actor.role = Role.CUSTOMER


class TestRolePermissions:
    """Test the static role → permission map"""

    def test_admin_can_do_everything(self):
        assert ROLE_PERMISSIONS[Role.ADMIN] == frozenset(Permission)

    @pytest.mark.parametrize("role,permission,allowed", [
        (Role.MERCHANT, Permission.SUBMIT_LOAN, True),
        (Role.CUSTOMER, Permission.SUBMIT_LOAN, True),
        (Role.NBFC_ADMIN, Permission.SUBMIT_LOAN, False),
        (Role.NBFC_ADMIN, Permission.REVIEW_LOAN, True),
        (Role.NBFC_ADMIN, Permission.DISBURSE_LOAN, True),
        (Role.MERCHANT, Permission.REVIEW_LOAN, False),
        (Role.MERCHANT, Permission.DELIVER_PRODUCT, True),
        (Role.CUSTOMER, Permission.DELIVER_PRODUCT, False),
        (Role.MERCHANT, Permission.RECORD_PAYMENT, False),
        (Role.NBFC_ADMIN, Permission.RECORD_PAYMENT, True),
        (Role.MERCHANT, Permission.REQUEST_TIE_UP, True),
        (Role.NBFC_ADMIN, Permission.MANAGE_TIE_UPS, True),
        (Role.MERCHANT, Permission.MANAGE_TIE_UPS, False),
    ])
    def test_permission_matrix(self, role, permission, allowed):
        actor = ActorContext("actor-1", role)
        assert actor.has_permission(permission) == allowed

    def test_require_permission_raises(self):
        with pytest.raises(PermissionDeniedError):
            require_permission(ActorContext("customer-1", Role.CUSTOMER), Permission.VERIFY_LOAN)


class TestLoanScope:
    """Test tie-up and ownership scoping"""

    def test_admin_sees_everything(self):
        require_loan_scope(ActorContext("admin-1", Role.ADMIN), Permission.VIEW_LOAN,
                           "loan-1", merchant_id="m-1", nbfc_id="nbfc-1", customer_id=None)

    def test_nbfc_admin_limited_to_tie_ups(self):
        actor = ActorContext("nbfc-admin-1", Role.NBFC_ADMIN, nbfc_id="nbfc-1")
        require_loan_scope(actor, Permission.REVIEW_LOAN, "loan-1", "m-1", "nbfc-1", None)

        with pytest.raises(PermissionDeniedError):
            require_loan_scope(actor, Permission.REVIEW_LOAN, "loan-2", "m-2", "nbfc-2", None)

    def test_nbfc_admin_without_nbfc_sees_nothing(self):
        actor = ActorContext("nbfc-admin-1", Role.NBFC_ADMIN)
        with pytest.raises(PermissionDeniedError):
            require_loan_scope(actor, Permission.VIEW_LOAN, "loan-1", "m-1", None, None)

    def test_merchant_limited_to_own_loans(self):
        actor = ActorContext("m-1", Role.MERCHANT)
        require_loan_scope(actor, Permission.VIEW_LOAN, "loan-1", "m-1", "nbfc-1", None)

        with pytest.raises(PermissionDeniedError):
            require_loan_scope(actor, Permission.VIEW_LOAN, "loan-2", "m-2", "nbfc-1", None)

    def test_customer_limited_to_own_loans(self):
        actor = ActorContext("c-1", Role.CUSTOMER)
        require_loan_scope(actor, Permission.VIEW_LOAN, "loan-1", "m-1", None, "c-1")

        with pytest.raises(PermissionDeniedError):
            require_loan_scope(actor, Permission.VIEW_LOAN, "loan-2", "m-1", None, "c-2")
