"""
Loan endpoints
"""

from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, status

from .dependencies import LoanServicingSystem, get_actor, get_system
from .schemas import AttachDocumentRequest, SubmitLoanRequest, TransitionRequest
from ..documents import LoanCategory
from ..loans import AggregatePaymentStatus, Loan, LoanStatus
from ..rbac import ActorContext, Permission


router = APIRouter()


def loan_response(loan: Loan) -> Dict[str, Any]:
    quote = loan.emi_quote
    result = loan.to_dict()
    result.update({
        "emi_amount": str(quote.emi),
        "total_payable": str(quote.total_payable),
        "total_interest": str(quote.total_interest),
        "financed_amount": str(loan.terms.financed_amount)
    })
    return result


@router.post("", status_code=status.HTTP_201_CREATED)
async def submit_loan(
    request: SubmitLoanRequest,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Submit a new loan application"""
    loan = system.loan_manager.submit_loan(
        actor=actor,
        category=request.category,
        applicant=request.applicant.to_snapshot(),
        principal_amount=request.principal_amount,
        tenure_months=request.tenure_months,
        annual_interest_rate=request.annual_interest_rate,
        down_payment=request.down_payment,
        processing_fee_flat=request.processing_fee,
        merchant_id=request.merchant_id,
        customer_id=request.customer_id,
        nbfc_id=request.nbfc_id,
        product_name=request.product_name,
        product_price=request.product_price,
        tenure_options=request.tenure_options
    )

    return loan_response(loan)


@router.get("")
async def list_loans(
    status: Optional[LoanStatus] = None,
    category: Optional[LoanCategory] = None,
    merchant_id: Optional[str] = None,
    nbfc_id: Optional[str] = None,
    payment_status: Optional[AggregatePaymentStatus] = None,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """List loans visible to the caller"""
    loans = system.loan_manager.list_loans(
        actor, status=status, category=category, merchant_id=merchant_id, nbfc_id=nbfc_id,
        payment_status=payment_status
    )
    return {"loans": [loan_response(loan) for loan in loans], "count": len(loans)}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Get loan details"""
    return loan_response(system.loan_manager.view_loan(loan_id, actor))


@router.post("/{loan_id}/transitions")
async def apply_transition(
    loan_id: str,
    request: TransitionRequest,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Accept, reject, verify, disburse or deliver a loan"""
    loan = system.loan_manager.apply_transition(loan_id, request.action, request.payload, actor)
    return loan_response(loan)


@router.get("/{loan_id}/history")
async def get_status_history(
    loan_id: str,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Get the loan's status timeline"""
    system.loan_manager.view_loan(loan_id, actor)
    history = system.loan_manager.get_status_history(loan_id)

    return {
        "history": [
            {
                "from_status": entry.from_status,
                "to_status": entry.to_status,
                "action": entry.action,
                "actor_id": entry.actor_id,
                "actor_role": entry.actor_role,
                "changed_at": entry.changed_at.isoformat(),
                "note": entry.note
            }
            for entry in history
        ]
    }


@router.get("/{loan_id}/disbursement")
async def get_disbursement(
    loan_id: str,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Get the loan's disbursement record (null before disbursement)"""
    system.loan_manager.view_loan(loan_id, actor)
    disbursement = system.loan_manager.get_disbursement(loan_id)
    return {"disbursement": disbursement.to_dict() if disbursement else None}


@router.post("/{loan_id}/documents", status_code=status.HTTP_201_CREATED)
async def attach_document(
    loan_id: str,
    request: AttachDocumentRequest,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Attach an uploaded document to a loan"""
    loan = system.loan_manager.get_loan(loan_id)
    system.loan_manager.require_scope(actor, Permission.ATTACH_DOCUMENT, loan)

    document = system.document_registry.attach_document(
        loan_id=loan.id,
        document_type=request.document_type,
        artifact_reference=request.artifact_reference,
        uploaded_by=actor.actor_id,
        uploaded_by_role=actor.role.value
    )

    return document.to_dict()


@router.get("/{loan_id}/documents")
async def get_documents(
    loan_id: str,
    actor: ActorContext = Depends(get_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """List attached documents and the ones still missing"""
    loan = system.loan_manager.view_loan(loan_id, actor)
    documents = system.document_registry.get_documents(loan.id)
    missing = system.document_registry.missing_documents(loan.id, loan.category)

    return {
        "documents": [document.to_dict() for document in documents],
        "missing": [document_type.value for document_type in missing]
    }
