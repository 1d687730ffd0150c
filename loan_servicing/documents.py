"""
Loan Document Module

Tracks which KYC / product documents have been uploaded for a loan. Only the
object-storage reference is kept here; the file itself lives in the document
store. The verify transition asks has_required_documents before moving on.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from .audit import AuditTrail, AuditEventType
from .errors import ValidationError, collaborator_call
from .events import DomainEvent, Notifier
from .storage import StorageInterface, StorageRecord


class LoanCategory(Enum):
    """General (gold) loans and product-finance loans"""
    GENERAL = "general"
    PRODUCT = "product"


class DocumentType(Enum):
    AADHAAR = "aadhaar"
    PAN = "pan"
    UTILITY_BILL = "utility_bill"
    BANK_STATEMENT = "bank_statement"
    PHOTO = "photo"
    PROFORMA_INVOICE = "proforma_invoice"
    DISBURSEMENT_PROOF = "disbursement_proof"


_KYC_DOCUMENTS = frozenset({
    DocumentType.AADHAAR,
    DocumentType.PAN,
    DocumentType.UTILITY_BILL,
    DocumentType.BANK_STATEMENT,
    DocumentType.PHOTO,
})

REQUIRED_DOCUMENTS: Dict[LoanCategory, FrozenSet[DocumentType]] = {
    LoanCategory.GENERAL: _KYC_DOCUMENTS,
    LoanCategory.PRODUCT: _KYC_DOCUMENTS | {DocumentType.PROFORMA_INVOICE},
}


@dataclass
class LoanDocument(StorageRecord):
    """One uploaded document; re-uploading a type replaces the reference"""
    loan_id: str
    document_type: DocumentType
    artifact_reference: str
    uploaded_by: str

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result['document_type'] = self.document_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'LoanDocument':
        data['document_type'] = DocumentType(data['document_type'])
        return super().from_dict(data)


class DocumentChecker(ABC):
    """Document-completeness collaborator consulted by the verify transition"""

    @abstractmethod
    def has_required_documents(self, loan_id: str, category: LoanCategory) -> bool:
        pass

    def missing_documents(self, loan_id: str, category: LoanCategory) -> List[DocumentType]:
        """Required types not yet on file (empty when the check cannot tell)"""
        return []


class DocumentRegistry(DocumentChecker):
    """Storage-backed document registry"""

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None,
                 notifier: Optional[Notifier] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.table = "loan_documents"

    def attach_document(self, loan_id: str, document_type: DocumentType,
                        artifact_reference: str, uploaded_by: str,
                        uploaded_by_role: Optional[str] = None) -> LoanDocument:
        """
        Record an uploaded document against a loan

        Args:
            loan_id: Loan the document belongs to
            document_type: Kind of document
            artifact_reference: Object-storage key of the uploaded file
            uploaded_by: Actor id of the uploader
            uploaded_by_role: Role of the uploader, for the audit entry

        Returns:
            Stored LoanDocument
        """
        try:
            document_type = DocumentType(document_type)
        except ValueError:
            raise ValidationError(f"Unknown document type '{document_type}'",
                                  field="document_type", value=document_type)
        if not (artifact_reference or "").strip():
            raise ValidationError("Artifact reference is required", field="artifact_reference")

        now = datetime.now(timezone.utc)
        document = LoanDocument(
            id=f"{loan_id}:{document_type.value}",
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            document_type=document_type,
            artifact_reference=artifact_reference,
            uploaded_by=uploaded_by
        )

        with collaborator_call("document storage"), self.storage.atomic():
            self.storage.save(self.table, document.id, document.to_dict())
            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.DOCUMENT_ATTACHED,
                    entity_type="loan",
                    entity_id=loan_id,
                    metadata={
                        "document_type": document_type.value,
                        "artifact_reference": artifact_reference
                    },
                    user_id=uploaded_by,
                    user_role=uploaded_by_role
                )

        if self.notifier:
            with collaborator_call("notification", committed=True):
                self.notifier.emit(DomainEvent.DOCUMENT_ATTACHED, loan_id, {
                    "document_type": document_type.value,
                    "artifact_reference": artifact_reference
                })

        return document

    def get_documents(self, loan_id: str) -> List[LoanDocument]:
        rows = self.storage.find(self.table, {"loan_id": loan_id})
        documents = [LoanDocument.from_dict(row) for row in rows]
        documents.sort(key=lambda d: d.document_type.value)
        return documents

    def missing_documents(self, loan_id: str, category: LoanCategory) -> List[DocumentType]:
        present = {doc.document_type for doc in self.get_documents(loan_id)}
        missing = REQUIRED_DOCUMENTS[category] - present
        return sorted(missing, key=lambda d: d.value)

    def has_required_documents(self, loan_id: str, category: LoanCategory) -> bool:
        return not self.missing_documents(loan_id, category)
