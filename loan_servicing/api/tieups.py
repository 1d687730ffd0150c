"""
Merchant tie-up endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import LoanServicingSystem, get_actor, get_system
from .schemas import TieUpRequest, TieUpResponseRequest
from ..errors import PermissionDeniedError
from ..rbac import ActorContext, Permission, Role
from ..tieups import TieUpStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def request_tie_up(
    request: TieUpRequest,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Request a tie-up with an NBFC"""
    tie_up = system.tie_ups.request_tie_up(actor, request.nbfc_id, merchant_id=request.merchant_id)
    return tie_up.to_dict()


@router.get("")
async def list_tie_ups(
    status: Optional[TieUpStatus] = None,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """List tie-ups visible to the caller"""
    merchant_id = nbfc_id = None
    if actor.role == Role.MERCHANT:
        merchant_id = actor.effective_merchant_id
    elif actor.role == Role.NBFC_ADMIN:
        nbfc_id = actor.nbfc_id
        if not nbfc_id:
            return {"tie_ups": [], "count": 0}
    elif actor.role == Role.CUSTOMER:
        raise PermissionDeniedError(actor.actor_id, actor.role.value, "list_tie_ups")

    tie_ups = system.tie_ups.list_tie_ups(merchant_id=merchant_id, nbfc_id=nbfc_id, status=status)
    return {"tie_ups": [tie_up.to_dict() for tie_up in tie_ups], "count": len(tie_ups)}


@router.post("/{merchant_id}/{nbfc_id}/response")
async def respond_to_tie_up(
    merchant_id: str,
    nbfc_id: str,
    request: TieUpResponseRequest,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Approve or reject a pending tie-up request"""
    tie_up = system.tie_ups.respond(
        merchant_id, nbfc_id, request.approve, actor,
        interest_rate=request.interest_rate,
        tenure_months=request.tenure_months,
        reason=request.reason
    )
    return tie_up.to_dict()


@router.post("/{nbfc_id}/cancel")
async def cancel_tie_up(
    nbfc_id: str,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Withdraw the caller's pending tie-up request"""
    if actor.role != Role.MERCHANT:
        raise PermissionDeniedError(actor.actor_id, actor.role.value, Permission.REQUEST_TIE_UP.value,
                                    reason="only the requesting merchant may cancel")
    return system.tie_ups.cancel_request(actor, nbfc_id).to_dict()
