"""
Tests for merchant tie-up requests and their resolution at loan submission
"""

import pytest
from decimal import Decimal

from loan_servicing.audit import AuditTrail, AuditEventType
from loan_servicing.errors import PermissionDeniedError, ValidationError
from loan_servicing.rbac import ActorContext, Role
from loan_servicing.storage import InMemoryStorage
from loan_servicing.tieups import TieUpRegistry, TieUpStatus


ADMIN = ActorContext("admin-1", Role.ADMIN)
NBFC_ADMIN = ActorContext("nbfc-admin-1", Role.NBFC_ADMIN, nbfc_id="nbfc-1")
OTHER_NBFC_ADMIN = ActorContext("nbfc-admin-2", Role.NBFC_ADMIN, nbfc_id="nbfc-2")
MERCHANT = ActorContext("merchant-1", Role.MERCHANT)
CUSTOMER = ActorContext("customer-1", Role.CUSTOMER)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def tie_ups(storage, audit_trail):
    return TieUpRegistry(storage, audit_trail)


class TestTieUpRequests:
    """Test the request → approve / reject / cancel flow"""

    def test_request_starts_pending(self, tie_ups):
        tie_up = tie_ups.request_tie_up(MERCHANT, "nbfc-1")

        assert tie_up.status == TieUpStatus.PENDING
        assert tie_up.merchant_id == "merchant-1"
        assert not tie_up.is_active

    def test_merchant_requests_for_itself(self, tie_ups):
        tie_up = tie_ups.request_tie_up(MERCHANT, "nbfc-1", merchant_id="merchant-9")
        assert tie_up.merchant_id == "merchant-1"

    def test_customer_cannot_request(self, tie_ups):
        with pytest.raises(PermissionDeniedError):
            tie_ups.request_tie_up(CUSTOMER, "nbfc-1")

    def test_duplicate_open_request_rejected(self, tie_ups):
        tie_ups.request_tie_up(MERCHANT, "nbfc-1")
        with pytest.raises(ValidationError):
            tie_ups.request_tie_up(MERCHANT, "nbfc-1")

    def test_approve_with_terms(self, tie_ups):
        tie_ups.request_tie_up(MERCHANT, "nbfc-1")
        tie_up = tie_ups.respond("merchant-1", "nbfc-1", True, NBFC_ADMIN,
                                 interest_rate=Decimal('24'), tenure_months=9)

        assert tie_up.is_active
        assert tie_up.responded_by == "nbfc-admin-1"

        stored = tie_ups.get_tie_up("merchant-1", "nbfc-1")
        assert stored.interest_rate == Decimal('24')
        assert stored.tenure_months == 9

    def test_other_nbfc_cannot_respond(self, tie_ups):
        tie_ups.request_tie_up(MERCHANT, "nbfc-1")

        with pytest.raises(PermissionDeniedError):
            tie_ups.respond("merchant-1", "nbfc-1", True, OTHER_NBFC_ADMIN)
        assert tie_ups.get_tie_up("merchant-1", "nbfc-1").status == TieUpStatus.PENDING

    def test_merchant_cannot_approve_itself(self, tie_ups):
        tie_ups.request_tie_up(MERCHANT, "nbfc-1")
        with pytest.raises(PermissionDeniedError):
            tie_ups.respond("merchant-1", "nbfc-1", True, MERCHANT)

    def test_reject_then_request_again(self, tie_ups):
        tie_ups.request_tie_up(MERCHANT, "nbfc-1")
        rejected = tie_ups.respond("merchant-1", "nbfc-1", False, NBFC_ADMIN)
        assert rejected.status == TieUpStatus.REJECTED
        assert rejected.reason == "Rejected by admin"

        again = tie_ups.request_tie_up(MERCHANT, "nbfc-1")
        assert again.status == TieUpStatus.PENDING

    def test_only_pending_requests_are_answered(self, tie_ups):
        tie_ups.request_tie_up(MERCHANT, "nbfc-1")
        tie_ups.respond("merchant-1", "nbfc-1", True, NBFC_ADMIN)

        with pytest.raises(ValidationError):
            tie_ups.respond("merchant-1", "nbfc-1", False, NBFC_ADMIN)

    def test_cancel_pending_request(self, tie_ups):
        tie_ups.request_tie_up(MERCHANT, "nbfc-1")
        cancelled = tie_ups.cancel_request(MERCHANT, "nbfc-1")

        assert cancelled.status == TieUpStatus.CANCELLED
        with pytest.raises(ValidationError):
            tie_ups.respond("merchant-1", "nbfc-1", True, NBFC_ADMIN)

    def test_changes_audited(self, tie_ups, audit_trail):
        tie_ups.request_tie_up(MERCHANT, "nbfc-1")
        tie_ups.respond("merchant-1", "nbfc-1", True, NBFC_ADMIN)

        events = audit_trail.get_events_for_entity("tie_up", "merchant-1:nbfc-1")

        assert [e.event_type for e in events] == [AuditEventType.TIE_UP_STATUS_CHANGED] * 2
        assert [e.metadata["to_status"] for e in events] == ["pending", "approved"]
        assert events[1].user_role == "nbfc_admin"


class TestTieUpResolution:
    """Test choosing the tie-up a new loan is routed through"""

    def test_single_tie_up_is_used(self, tie_ups):
        tie_ups.request_tie_up(MERCHANT, "nbfc-1")
        tie_ups.respond("merchant-1", "nbfc-1", True, ADMIN)

        assert tie_ups.resolve("merchant-1").nbfc_id == "nbfc-1"
        assert tie_ups.resolve("merchant-1", "nbfc-1").nbfc_id == "nbfc-1"

    def test_no_tie_up(self, tie_ups):
        with pytest.raises(PermissionDeniedError):
            tie_ups.resolve("merchant-1")

    def test_unapproved_nbfc(self, tie_ups):
        tie_ups.request_tie_up(MERCHANT, "nbfc-1")
        with pytest.raises(PermissionDeniedError):
            tie_ups.resolve("merchant-1", "nbfc-1")

    def test_several_tie_ups_need_a_choice(self, tie_ups):
        for nbfc_id in ("nbfc-1", "nbfc-2"):
            tie_ups.request_tie_up(MERCHANT, nbfc_id)
            tie_ups.respond("merchant-1", nbfc_id, True, ADMIN)

        with pytest.raises(ValidationError):
            tie_ups.resolve("merchant-1")
        assert tie_ups.resolve("merchant-1", "nbfc-2").nbfc_id == "nbfc-2"

    def test_list_by_status(self, tie_ups):
        tie_ups.request_tie_up(MERCHANT, "nbfc-1")
        tie_ups.request_tie_up(MERCHANT, "nbfc-2")
        tie_ups.respond("merchant-1", "nbfc-2", True, ADMIN)

        assert [t.nbfc_id for t in tie_ups.list_tie_ups(status=TieUpStatus.PENDING)] == ["nbfc-1"]
        assert [t.nbfc_id for t in tie_ups.active_tie_ups("merchant-1")] == ["nbfc-2"]
