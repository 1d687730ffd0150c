"""
EMI schedule and payment endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .dependencies import LoanServicingSystem, get_actor, get_system
from .schemas import RecordPaymentRequest
from ..rbac import ActorContext


router = APIRouter()
portfolio_router = APIRouter()


@router.get("/{loan_id}/schedule")
async def get_schedule(
    loan_id: str,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Get the EMI schedule with payment statuses merged in"""
    system.loan_manager.view_loan(loan_id, actor)
    rows = system.payment_tracker.get_payment_rows(loan_id)
    summary = system.payment_tracker.get_summary(loan_id)

    return {
        "schedule": [
            {
                "index": row.index,
                "month": row.month_label,
                "due_date": row.due_date.isoformat(),
                "amount": str(row.amount),
                "status": row.status.value,
                "payment_method": row.payment_method.value,
                "paid_date": row.paid_date.isoformat() if row.paid_date else None
            }
            for row in rows
        ],
        "summary": summary.to_dict()
    }


@router.get("/{loan_id}/summary")
async def get_summary(
    loan_id: str,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Get the loan's payment roll-up"""
    system.loan_manager.view_loan(loan_id, actor)
    return system.payment_tracker.get_summary(loan_id).to_dict()


@router.post("/{loan_id}/installments/{installment_index}")
async def record_payment(
    loan_id: str,
    installment_index: int,
    request: RecordPaymentRequest,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Record an installment status change"""
    summary = system.payment_tracker.record_payment(
        loan_id=loan_id,
        installment_index=installment_index,
        new_status=request.status,
        paid_date=request.paid_date,
        actor=actor,
        note=request.note
    )

    return summary.to_dict()


@router.get("/{loan_id}/installments/{installment_index}/history")
async def get_installment_history(
    loan_id: str,
    installment_index: int,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Get the audit history of one installment"""
    system.loan_manager.view_loan(loan_id, actor)
    return {"history": system.payment_tracker.get_installment_history(loan_id, installment_index)}


@portfolio_router.get("")
async def get_portfolio_summary(
    merchant_id: Optional[str] = None,
    nbfc_id: Optional[str] = None,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Per-status loan counts and collected / remaining totals for the caller's portfolio"""
    summary = system.payment_tracker.get_portfolio_summary(actor, merchant_id=merchant_id, nbfc_id=nbfc_id)
    return summary.to_dict()
