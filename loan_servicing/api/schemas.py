"""
Pydantic schemas for API requests
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..documents import DocumentType, LoanCategory
from ..loans import ApplicantSnapshot, LoanAction
from ..payments import InstallmentStatus


class ApplicantModel(BaseModel):
    first_name: str
    last_name: str
    aadhaar_number: str = Field(..., description="12-digit Aadhaar number")
    pan_number: str = Field(..., description="PAN, e.g. ABCDE1234F")
    mobile: str
    email: str
    address: str
    pin_code: str

    def to_snapshot(self) -> ApplicantSnapshot:
        return ApplicantSnapshot(**self.model_dump())


# Loan schemas
class SubmitLoanRequest(BaseModel):
    category: LoanCategory
    applicant: ApplicantModel
    principal_amount: Decimal = Field(..., description="Requested loan amount")
    tenure_months: int
    annual_interest_rate: Optional[Decimal] = Field(None, description="Tie-up rate in percent p.a.; omit for the default")
    down_payment: Decimal = Decimal("0")
    processing_fee: Optional[Decimal] = Field(None, description="Flat processing fee before GST")
    merchant_id: Optional[str] = None
    customer_id: Optional[str] = None
    nbfc_id: Optional[str] = None
    product_name: Optional[str] = None
    product_price: Optional[Decimal] = None
    tenure_options: Optional[List[int]] = Field(None, description="NBFC-supplied tenure choices")


class TransitionRequest(BaseModel):
    action: LoanAction
    payload: Dict[str, Any] = Field(default_factory=dict)


class AttachDocumentRequest(BaseModel):
    document_type: DocumentType
    artifact_reference: str = Field(..., description="Object-storage key of the uploaded file")


# Payment schemas
class RecordPaymentRequest(BaseModel):
    status: InstallmentStatus
    paid_date: Optional[date] = None
    note: Optional[str] = None


# Tie-up schemas
class TieUpRequest(BaseModel):
    nbfc_id: str
    merchant_id: Optional[str] = Field(None, description="Required when an admin files on a merchant's behalf")


class TieUpResponseRequest(BaseModel):
    approve: bool
    interest_rate: Optional[Decimal] = Field(None, description="Annual rate in percent applied to the merchant's loans")
    tenure_months: Optional[int] = None
    reason: Optional[str] = None
