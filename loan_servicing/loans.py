"""
Loan Lifecycle Module

Handles loan submission and the review → verification → disbursement →
delivery lifecycle. A loan only ever moves forward along

    Pending --accept--> Accepted --verify--> Verified --disburse--> Loan Disbursed
    Pending --reject--> Rejected (terminal)
    Loan Disbursed --deliver--> Product Delivered   (product loans only)

Every transition is a single compare-and-swap on the loan's version plus its
child records and audit entry, committed in one storage transaction.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timezone, date
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from enum import Enum
import re
import uuid

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as SchemaError

from .audit import AuditTrail, AuditEventType
from .config import LoanServicingConfig, get_config
from .documents import DocumentChecker, LoanCategory
from .emi import EmiQuote, quote_emi, resolve_anchor_date
from .errors import (
    ConcurrencyConflictError, InvalidTransitionError, LoanNotFoundError,
    TerminalStateError, ValidationError, collaborator_call
)
from .events import DomainEvent, Notifier
from .logging_config import get_logger, log_action
from .rbac import ActorContext, Permission, Role, require_loan_scope, require_permission
from .storage import StorageInterface, StorageRecord
from .tieups import TieUpRegistry


logger = get_logger("loan_servicing.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"            # terminal
    VERIFIED = "Verified"
    DISBURSED = "Loan Disbursed"
    DELIVERED = "Product Delivered"  # product loans only


class LoanAction(Enum):
    """Lifecycle actions"""
    ACCEPT = "accept"
    REJECT = "reject"
    VERIFY = "verify"
    DISBURSE = "disburse"
    DELIVER = "deliver"


class InterestRateSource(Enum):
    """Where a loan's interest rate came from"""
    TIE_UP = "tie_up"    # merchant / NBFC tie-up rate supplied at submission
    DEFAULT = "default"  # configured default policy


class AggregatePaymentStatus(Enum):
    """Loan-level roll-up of installment statuses"""
    ONTRACK = "ontrack"
    OVERDUE = "overdue"
    PAID = "paid"
    BOUNCE = "bounce"


TRANSITIONS: Dict[LoanAction, Tuple[LoanStatus, LoanStatus]] = {
    LoanAction.ACCEPT: (LoanStatus.PENDING, LoanStatus.ACCEPTED),
    LoanAction.REJECT: (LoanStatus.PENDING, LoanStatus.REJECTED),
    LoanAction.VERIFY: (LoanStatus.ACCEPTED, LoanStatus.VERIFIED),
    LoanAction.DISBURSE: (LoanStatus.VERIFIED, LoanStatus.DISBURSED),
    LoanAction.DELIVER: (LoanStatus.DISBURSED, LoanStatus.DELIVERED),
}

ACTION_PERMISSIONS: Dict[LoanAction, Permission] = {
    LoanAction.ACCEPT: Permission.REVIEW_LOAN,
    LoanAction.REJECT: Permission.REVIEW_LOAN,
    LoanAction.VERIFY: Permission.VERIFY_LOAN,
    LoanAction.DISBURSE: Permission.DISBURSE_LOAN,
    LoanAction.DELIVER: Permission.DELIVER_PRODUCT,
}

REPAYMENT_STATUSES = (LoanStatus.DISBURSED, LoanStatus.DELIVERED)

AADHAAR_PATTERN = re.compile(r"^\d{12}$")
PAN_PATTERN = re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]$")
MOBILE_PATTERN = re.compile(r"^[6-9]\d{9}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PIN_CODE_PATTERN = re.compile(r"^\d{6}$")

PAISE = Decimal('0.01')


@dataclass(frozen=True)
class ApplicantSnapshot:
    """Applicant details captured at submission; never edited afterwards"""
    first_name: str
    last_name: str
    aadhaar_number: str
    pan_number: str
    mobile: str
    email: str
    address: str
    pin_code: str

    def __post_init__(self):
        if not self.first_name.strip():
            raise ValidationError("First name is required", field="first_name")
        if not self.last_name.strip():
            raise ValidationError("Last name is required", field="last_name")
        if not self.address.strip():
            raise ValidationError("Address is required", field="address")
        checks = [
            ("aadhaar_number", AADHAAR_PATTERN, "Aadhaar must be 12 digits"),
            ("pan_number", PAN_PATTERN, "PAN must look like ABCDE1234F"),
            ("mobile", MOBILE_PATTERN, "Mobile must be a 10-digit Indian number"),
            ("email", EMAIL_PATTERN, "E-mail address is malformed"),
            ("pin_code", PIN_CODE_PATTERN, "PIN code must be 6 digits"),
        ]
        for field_name, pattern, message in checks:
            value = getattr(self, field_name)
            if not pattern.match(value or ""):
                raise ValidationError(message, field=field_name, value=value)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class LoanTerms:
    """Commercial terms of a loan"""
    principal_amount: Decimal
    tenure_months: int
    annual_interest_rate: Decimal        # percent p.a., e.g. 36
    interest_rate_source: InterestRateSource
    down_payment: Decimal = Decimal('0')
    processing_fee: Decimal = Decimal('0')

    def __post_init__(self):
        self.principal_amount = Decimal(self.principal_amount)
        self.annual_interest_rate = Decimal(self.annual_interest_rate)
        self.down_payment = Decimal(self.down_payment)
        self.processing_fee = Decimal(self.processing_fee)

        if self.principal_amount <= 0:
            raise ValidationError("Loan amount must be positive",
                                  field="principal_amount", value=self.principal_amount)
        if isinstance(self.tenure_months, bool) or not isinstance(self.tenure_months, int) \
                or self.tenure_months <= 0:
            raise ValidationError("Tenure must be a positive number of months",
                                  field="tenure_months", value=self.tenure_months)
        if self.annual_interest_rate < 0:
            raise ValidationError("Interest rate cannot be negative",
                                  field="annual_interest_rate", value=self.annual_interest_rate)
        if self.down_payment < 0 or self.down_payment >= self.principal_amount:
            raise ValidationError("Down payment must be at least zero and below the loan amount",
                                  field="down_payment", value=self.down_payment)

    @property
    def financed_amount(self) -> Decimal:
        """Amount the EMI is computed on"""
        return self.principal_amount - self.down_payment

    def quote(self) -> EmiQuote:
        return quote_emi(self.financed_amount, self.tenure_months, self.annual_interest_rate)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal_amount': str(self.principal_amount),
            'tenure_months': self.tenure_months,
            'annual_interest_rate': str(self.annual_interest_rate),
            'interest_rate_source': self.interest_rate_source.value,
            'down_payment': str(self.down_payment),
            'processing_fee': str(self.processing_fee)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanTerms':
        return cls(
            principal_amount=Decimal(data['principal_amount']),
            tenure_months=data['tenure_months'],
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            interest_rate_source=InterestRateSource(data['interest_rate_source']),
            down_payment=Decimal(data['down_payment']),
            processing_fee=Decimal(data['processing_fee'])
        )


def calculate_processing_fee(principal_amount: Decimal, flat_fee: Optional[Decimal] = None,
                             fee_percent: Decimal = Decimal('3'),
                             tax_percent: Decimal = Decimal('18')) -> Decimal:
    """
    Processing fee including tax

    A flat fee, when given, replaces the percentage-of-principal fee. Tax (GST)
    is added on top either way.
    """
    if flat_fee is not None:
        base = Decimal(flat_fee)
        if base < 0:
            raise ValidationError("Processing fee cannot be negative", field="processing_fee", value=base)
    else:
        base = Decimal(principal_amount) * Decimal(fee_percent) / Decimal('100')

    total = base * (Decimal('1') + Decimal(tax_percent) / Decimal('100'))
    return total.quantize(PAISE, rounding=ROUND_HALF_UP)


@dataclass
class Loan(StorageRecord):
    """Loan application and its servicing state"""
    application_number: str
    category: LoanCategory
    status: LoanStatus
    terms: LoanTerms
    applicant: ApplicantSnapshot

    # Ownership
    submitted_by: str
    submitted_by_role: str
    merchant_id: Optional[str] = None
    customer_id: Optional[str] = None
    nbfc_id: Optional[str] = None          # tie-up scope
    reviewed_by: Optional[str] = None
    verified_by: Optional[str] = None

    # Product snapshot (product loans)
    product_name: Optional[str] = None
    product_price: Optional[Decimal] = None

    # Dates
    reviewed_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    disbursement_date: Optional[date] = None
    delivery_date: Optional[date] = None

    # Cached payment roll-up; installments are the source of truth
    paid_amount: Decimal = Decimal('0')
    installments_completed: int = 0
    payment_status: AggregatePaymentStatus = AggregatePaymentStatus.ONTRACK

    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status == LoanStatus.REJECTED

    @property
    def in_repayment(self) -> bool:
        """Disbursed (and possibly delivered), so installments can be recorded"""
        return self.status in REPAYMENT_STATUSES

    @property
    def emi_quote(self) -> EmiQuote:
        return self.terms.quote()

    @property
    def emi_amount(self) -> Decimal:
        return self.emi_quote.emi

    def anchor_date(self, today: Optional[date] = None) -> date:
        """Schedule anchor: delivery date, else disbursement date, else today"""
        return resolve_anchor_date(self.delivery_date, self.disbursement_date, today)

    def to_dict(self) -> Dict[str, Any]:
        def iso(value):
            return value.isoformat() if value else None

        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'application_number': self.application_number,
            'category': self.category.value,
            'status': self.status.value,
            'terms': self.terms.to_dict(),
            'applicant': asdict(self.applicant),
            'submitted_by': self.submitted_by,
            'submitted_by_role': self.submitted_by_role,
            'merchant_id': self.merchant_id,
            'customer_id': self.customer_id,
            'nbfc_id': self.nbfc_id,
            'reviewed_by': self.reviewed_by,
            'verified_by': self.verified_by,
            'product_name': self.product_name,
            'product_price': str(self.product_price) if self.product_price is not None else None,
            'reviewed_at': iso(self.reviewed_at),
            'verified_at': iso(self.verified_at),
            'disbursement_date': iso(self.disbursement_date),
            'delivery_date': iso(self.delivery_date),
            'paid_amount': str(self.paid_amount),
            'installments_completed': self.installments_completed,
            'payment_status': self.payment_status.value,
            'version': self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        def get_datetime(key: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[key]) if data.get(key) else None

        def get_date(key: str) -> Optional[date]:
            return date.fromisoformat(data[key]) if data.get(key) else None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            application_number=data['application_number'],
            category=LoanCategory(data['category']),
            status=LoanStatus(data['status']),
            terms=LoanTerms.from_dict(data['terms']),
            applicant=ApplicantSnapshot(**data['applicant']),
            submitted_by=data['submitted_by'],
            submitted_by_role=data['submitted_by_role'],
            merchant_id=data.get('merchant_id'),
            customer_id=data.get('customer_id'),
            nbfc_id=data.get('nbfc_id'),
            reviewed_by=data.get('reviewed_by'),
            verified_by=data.get('verified_by'),
            product_name=data.get('product_name'),
            product_price=Decimal(data['product_price']) if data.get('product_price') is not None else None,
            reviewed_at=get_datetime('reviewed_at'),
            verified_at=get_datetime('verified_at'),
            disbursement_date=get_date('disbursement_date'),
            delivery_date=get_date('delivery_date'),
            paid_amount=Decimal(data.get('paid_amount', '0')),
            installments_completed=data.get('installments_completed', 0),
            payment_status=AggregatePaymentStatus(data.get('payment_status', 'ontrack')),
            version=data.get('version', 1)
        )


@dataclass
class Disbursement(StorageRecord):
    """The single disbursement of a loan; its id is the loan id"""
    loan_id: str
    amount: Decimal
    disbursement_date: date
    transaction_reference: str
    proof_reference: str
    disbursed_by: str
    remarks: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['disbursement_date'] = self.disbursement_date.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Disbursement':
        data['amount'] = Decimal(data['amount'])
        data['disbursement_date'] = date.fromisoformat(data['disbursement_date'])
        return super().from_dict(data)


@dataclass
class StatusHistoryEntry:
    """One step of a loan's status timeline"""
    from_status: Optional[str]
    to_status: str
    action: str
    actor_id: Optional[str]
    actor_role: Optional[str]
    changed_at: datetime
    note: Optional[str] = None


class DisbursementPayload(BaseModel):
    """Side data required by the disburse action"""
    disbursement_date: date
    amount: Decimal = Field(gt=0)
    transaction_reference: str = Field(min_length=1)
    proof_reference: str = Field(min_length=1)
    remarks: Optional[str] = None

    @field_validator('transaction_reference', 'proof_reference')
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()

    @field_validator('disbursement_date')
    @classmethod
    def not_in_future(cls, value: date) -> date:
        if value > date.today():
            raise ValueError("cannot be in the future")
        return value


class DeliveryPayload(BaseModel):
    """Side data required by the deliver action"""
    delivery_date: date

    @field_validator('delivery_date')
    @classmethod
    def not_in_future(cls, value: date) -> date:
        if value > date.today():
            raise ValueError("cannot be in the future")
        return value


class ReviewPayload(BaseModel):
    """Optional note attached to accept / reject / verify"""
    note: Optional[str] = None
    reason: Optional[str] = None  # rejection reason

    @property
    def audit_note(self) -> Optional[str]:
        return self.reason or self.note


def parse_payload(schema: type, payload: Optional[Dict[str, Any]]):
    """Validate a raw payload against its schema, surfacing ValidationError"""
    try:
        return schema.model_validate(payload or {})
    except SchemaError as e:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        first = errors[0] if errors else {"field": None, "message": "invalid payload"}
        raise ValidationError(f"{first['field']}: {first['message']}", field=first['field'],
                              errors=errors) from e


def coerce_action(action: Union[LoanAction, str]) -> LoanAction:
    if isinstance(action, LoanAction):
        return action
    try:
        return LoanAction(action)
    except ValueError:
        raise ValidationError(f"Unknown action '{action}'", field="action", value=action)


class LoanManager:
    """
    Manages loan submission and lifecycle transitions
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        document_checker: DocumentChecker,
        notifier: Optional[Notifier] = None,
        config: Optional[LoanServicingConfig] = None,
        tie_ups: Optional[TieUpRegistry] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.document_checker = document_checker
        self.notifier = notifier
        self.config = config or get_config()
        self.tie_ups = tie_ups or TieUpRegistry(storage, audit_trail)

        self.loans_table = "loans"
        self.disbursements_table = "loan_disbursements"

    def submit_loan(
        self,
        actor: ActorContext,
        category: LoanCategory,
        applicant: ApplicantSnapshot,
        principal_amount: Decimal,
        tenure_months: int,
        annual_interest_rate: Optional[Decimal] = None,
        down_payment: Decimal = Decimal('0'),
        processing_fee_flat: Optional[Decimal] = None,
        merchant_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        nbfc_id: Optional[str] = None,
        product_name: Optional[str] = None,
        product_price: Optional[Decimal] = None,
        tenure_options: Optional[Sequence[int]] = None
    ) -> Loan:
        """
        Submit a new loan application in Pending status

        Args:
            actor: Submitting merchant, customer or admin
            category: General or product loan
            applicant: Applicant snapshot
            principal_amount: Requested loan amount
            tenure_months: Repayment tenure
            annual_interest_rate: Tie-up rate in percent; None applies the configured default
            down_payment: Amount paid upfront, deducted before computing the EMI
            processing_fee_flat: Flat processing fee replacing the percentage fee
            merchant_id: Originating merchant (merchants always use their own)
            customer_id: Borrower account, if any (customers always use their own)
            nbfc_id: NBFC to route through; must be one of the merchant's approved
                tie-ups, and may be omitted when the merchant has exactly one
            product_name: Financed product (product loans)
            product_price: Product price (product loans)
            tenure_options: NBFC-supplied tenure choices replacing the configured set

        Returns:
            Created Loan
        """
        require_permission(actor, Permission.SUBMIT_LOAN)
        category = LoanCategory(category)

        if actor.role == Role.MERCHANT:
            merchant_id = actor.effective_merchant_id
        elif actor.role == Role.CUSTOMER:
            customer_id = actor.actor_id

        tie_up = None
        if merchant_id:
            tie_up = self.tie_ups.resolve(merchant_id, nbfc_id)
            nbfc_id = tie_up.nbfc_id
        elif nbfc_id:
            raise ValidationError("Only merchant loans are routed through an NBFC tie-up",
                                  field="nbfc_id", value=nbfc_id)

        allowed_tenures = list(tenure_options or self.config.allowed_tenures)
        if tenure_months not in allowed_tenures:
            raise ValidationError(
                f"Tenure {tenure_months} is not one of {sorted(allowed_tenures)}",
                field="tenure_months", value=tenure_months
            )

        if category == LoanCategory.PRODUCT and not (product_name or "").strip():
            raise ValidationError("Product loans need a product name", field="product_name")
        if product_price is not None and Decimal(product_price) <= 0:
            raise ValidationError("Product price must be positive", field="product_price", value=product_price)

        if annual_interest_rate is not None:
            rate_source = InterestRateSource.TIE_UP
        elif tie_up is not None and tie_up.interest_rate is not None:
            rate_source = InterestRateSource.TIE_UP
            annual_interest_rate = tie_up.interest_rate
        else:
            rate_source = InterestRateSource.DEFAULT
            annual_interest_rate = self.config.default_annual_interest_rate

        terms = LoanTerms(
            principal_amount=principal_amount,
            tenure_months=tenure_months,
            annual_interest_rate=annual_interest_rate,
            interest_rate_source=rate_source,
            down_payment=down_payment,
            processing_fee=calculate_processing_fee(
                principal_amount,
                flat_fee=processing_fee_flat,
                fee_percent=self.config.processing_fee_percent,
                tax_percent=self.config.processing_fee_tax_percent
            )
        )
        # Rejects terms whose rounded EMI would under-collect the principal
        terms.quote()

        now = datetime.now(timezone.utc)
        loan_id = str(uuid.uuid4())
        loan = Loan(
            id=loan_id,
            created_at=now,
            updated_at=now,
            application_number=self._application_number(now),
            category=category,
            status=LoanStatus.PENDING,
            terms=terms,
            applicant=applicant,
            submitted_by=actor.actor_id,
            submitted_by_role=actor.role.value,
            merchant_id=merchant_id,
            customer_id=customer_id,
            nbfc_id=nbfc_id,
            product_name=product_name,
            product_price=Decimal(product_price) if product_price is not None else None
        )

        with collaborator_call("persistence"), self.storage.atomic():
            if not self.storage.compare_and_save(self.loans_table, loan.id, loan.to_dict(), None):
                raise ConcurrencyConflictError("loan", loan.id)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_SUBMITTED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "to_status": loan.status.value,
                    "category": category.value,
                    "principal_amount": terms.principal_amount,
                    "tenure_months": terms.tenure_months,
                    "annual_interest_rate": terms.annual_interest_rate,
                    "interest_rate_source": rate_source.value,
                    "merchant_id": merchant_id,
                    "nbfc_id": nbfc_id
                },
                user_id=actor.actor_id,
                user_role=actor.role.value
            )

        log_action(logger, "info", f"Loan {loan.application_number} submitted",
                   user_id=actor.actor_id, action="submit", resource=f"loan:{loan.id}",
                   extra={"category": category.value, "amount": str(terms.principal_amount)})
        self._emit(DomainEvent.LOAN_SUBMITTED, loan, {"status": loan.status.value})

        return loan

    def get_loan(self, loan_id: str) -> Loan:
        """Get loan by ID, raising LoanNotFoundError if absent"""
        with collaborator_call("persistence"):
            data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise LoanNotFoundError(loan_id)
        return Loan.from_dict(data)

    def view_loan(self, loan_id: str, actor: ActorContext) -> Loan:
        """Get a loan the actor is allowed to see"""
        loan = self.get_loan(loan_id)
        self.require_scope(actor, Permission.VIEW_LOAN, loan)
        return loan

    def list_loans(
        self,
        actor: ActorContext,
        status: Optional[LoanStatus] = None,
        category: Optional[LoanCategory] = None,
        merchant_id: Optional[str] = None,
        nbfc_id: Optional[str] = None,
        payment_status: Optional[AggregatePaymentStatus] = None
    ) -> List[Loan]:
        """
        List the loans in the actor's scope, newest first

        Filtering on payment_status only returns loans in repayment; loans not
        yet disbursed carry the default roll-up and are left out.
        """
        require_permission(actor, Permission.VIEW_LOAN)

        filters: Dict[str, Any] = {}
        if status:
            filters['status'] = LoanStatus(status).value
        if category:
            filters['category'] = LoanCategory(category).value
        if merchant_id:
            filters['merchant_id'] = merchant_id
        if nbfc_id:
            filters['nbfc_id'] = nbfc_id
        if payment_status:
            filters['payment_status'] = AggregatePaymentStatus(payment_status).value
        # Scope filters override whatever the caller asked for
        if actor.role == Role.NBFC_ADMIN:
            filters['nbfc_id'] = actor.nbfc_id
        elif actor.role == Role.MERCHANT:
            filters['merchant_id'] = actor.effective_merchant_id
        elif actor.role == Role.CUSTOMER:
            filters['customer_id'] = actor.actor_id

        with collaborator_call("persistence"):
            rows = self.storage.find(self.loans_table, filters)
        loans = [Loan.from_dict(row) for row in rows]
        if payment_status:
            loans = [loan for loan in loans if loan.in_repayment]
        loans.sort(key=lambda l: l.created_at, reverse=True)
        return loans

    def require_scope(self, actor: ActorContext, permission: Permission, loan: Loan) -> None:
        require_loan_scope(actor, permission, loan.id, loan.merchant_id, loan.nbfc_id, loan.customer_id)

    def apply_transition(
        self,
        loan_id: str,
        action: Union[LoanAction, str],
        payload: Optional[Dict[str, Any]],
        actor: ActorContext
    ) -> Loan:
        """
        Validate and apply one lifecycle action

        Args:
            loan_id: Loan to act on
            action: accept, reject, verify, disburse or deliver
            payload: Action side data (disbursement details, delivery date, note)
            actor: Acting admin / NBFC admin / merchant

        Returns:
            Updated Loan

        Raises:
            TerminalStateError: loan is Rejected
            InvalidTransitionError: action not allowed from the current status
            ValidationError: payload malformed or documents incomplete
            ConcurrencyConflictError: loan changed since it was read
        """
        action = coerce_action(action)
        loan = self.get_loan(loan_id)
        self.require_scope(actor, ACTION_PERMISSIONS[action], loan)

        if loan.is_terminal:
            raise TerminalStateError(loan.status.value, action.value, loan_id=loan.id)

        from_status, to_status = TRANSITIONS[action]
        if action == LoanAction.DELIVER and loan.category != LoanCategory.PRODUCT:
            raise InvalidTransitionError(loan.status.value, action.value, loan_id=loan.id,
                                         reason="only product loans are delivered")
        if loan.status != from_status:
            raise InvalidTransitionError(loan.status.value, action.value, loan_id=loan.id)

        now = datetime.now(timezone.utc)
        note = None
        disbursement = None

        if action == LoanAction.DISBURSE:
            details = parse_payload(DisbursementPayload, payload)
            if details.amount > loan.terms.principal_amount:
                raise ValidationError("Disbursed amount exceeds the loan amount",
                                      field="amount", value=details.amount)
            disbursement = Disbursement(
                id=loan.id,
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                amount=details.amount,
                disbursement_date=details.disbursement_date,
                transaction_reference=details.transaction_reference,
                proof_reference=details.proof_reference,
                disbursed_by=actor.actor_id,
                remarks=details.remarks
            )
            loan.disbursement_date = details.disbursement_date
            note = details.remarks
        elif action == LoanAction.DELIVER:
            details = parse_payload(DeliveryPayload, payload)
            if loan.disbursement_date and details.delivery_date < loan.disbursement_date:
                raise ValidationError("Delivery cannot precede disbursement",
                                      field="delivery_date", value=details.delivery_date)
            loan.delivery_date = details.delivery_date
        else:
            note = parse_payload(ReviewPayload, payload).audit_note
            if action == LoanAction.VERIFY:
                self._require_documents(loan)
                loan.verified_by = actor.actor_id
                loan.verified_at = now
            else:
                loan.reviewed_by = actor.actor_id
                loan.reviewed_at = now

        expected_version = loan.version
        loan.status = to_status
        loan.updated_at = now
        loan.version = expected_version + 1

        with collaborator_call("persistence"), self.storage.atomic():
            self.write_loan(loan, expected_version)
            if disbursement and not self.storage.compare_and_save(
                    self.disbursements_table, disbursement.id, disbursement.to_dict(), None):
                raise InvalidTransitionError(from_status.value, action.value, loan_id=loan.id,
                                             reason="loan already has a disbursement")
            metadata: Dict[str, Any] = {
                "action": action.value,
                "from_status": from_status.value,
                "to_status": to_status.value,
                "note": note
            }
            if disbursement:
                metadata.update({
                    "amount": disbursement.amount,
                    "disbursement_date": disbursement.disbursement_date,
                    "transaction_reference": disbursement.transaction_reference,
                    "proof_reference": disbursement.proof_reference
                })
            if action == LoanAction.DELIVER:
                metadata["delivery_date"] = loan.delivery_date
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_STATUS_CHANGED,
                entity_type="loan",
                entity_id=loan.id,
                metadata=metadata,
                user_id=actor.actor_id,
                user_role=actor.role.value
            )

        log_action(logger, "info", f"Loan {loan.application_number} {from_status.value} -> {to_status.value}",
                   user_id=actor.actor_id, action=action.value, resource=f"loan:{loan.id}")

        self._emit(DomainEvent.LOAN_STATUS_CHANGED, loan, {
            "action": action.value,
            "from_status": from_status.value,
            "to_status": to_status.value
        })
        if disbursement:
            self._emit(DomainEvent.LOAN_DISBURSED, loan, {
                "amount": str(disbursement.amount),
                "disbursement_date": disbursement.disbursement_date.isoformat()
            })
        if action == LoanAction.DELIVER:
            self._emit(DomainEvent.PRODUCT_DELIVERED, loan, {
                "delivery_date": loan.delivery_date.isoformat()
            })

        return loan

    def write_loan(self, loan: Loan, expected_version: int) -> None:
        """Persist a loan only if nobody else bumped its version meanwhile"""
        if not self.storage.compare_and_save(self.loans_table, loan.id, loan.to_dict(),
                                             {"version": expected_version}):
            raise ConcurrencyConflictError("loan", loan.id)

    def get_disbursement(self, loan_id: str) -> Optional[Disbursement]:
        with collaborator_call("persistence"):
            data = self.storage.load(self.disbursements_table, loan_id)
        return Disbursement.from_dict(data) if data else None

    def get_status_history(self, loan_id: str) -> List[StatusHistoryEntry]:
        """Status timeline from submission onwards, oldest first"""
        self.get_loan(loan_id)
        with collaborator_call("persistence"):
            events = self.audit_trail.get_events_for_entity("loan", loan_id)

        history = []
        for event in events:
            if event.event_type == AuditEventType.LOAN_SUBMITTED:
                history.append(StatusHistoryEntry(
                    from_status=None,
                    to_status=event.metadata["to_status"],
                    action="submit",
                    actor_id=event.user_id,
                    actor_role=event.user_role,
                    changed_at=event.created_at
                ))
            elif event.event_type == AuditEventType.LOAN_STATUS_CHANGED:
                history.append(StatusHistoryEntry(
                    from_status=event.metadata["from_status"],
                    to_status=event.metadata["to_status"],
                    action=event.metadata["action"],
                    actor_id=event.user_id,
                    actor_role=event.user_role,
                    changed_at=event.created_at,
                    note=event.metadata.get("note")
                ))
        return history

    def _require_documents(self, loan: Loan) -> None:
        with collaborator_call("document storage"):
            complete = self.document_checker.has_required_documents(loan.id, loan.category)
            missing = [] if complete else self.document_checker.missing_documents(loan.id, loan.category)
        if not complete:
            names = ", ".join(doc.value for doc in missing) or "required documents"
            raise ValidationError(f"Cannot verify loan {loan.id}: missing {names}",
                                  field="documents", value=names)

    def _application_number(self, now: datetime) -> str:
        prefix = self.config.application_number_prefix or "LN"
        return f"{prefix}-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"

    def _emit(self, event_type: DomainEvent, loan: Loan, payload: Dict[str, Any]) -> None:
        if not self.notifier:
            return
        with collaborator_call("notification", committed=True):
            self.notifier.emit(event_type, loan.id, payload)
