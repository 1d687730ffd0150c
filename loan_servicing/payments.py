"""
EMI Payment Tracking Module

Merges persisted installment statuses into the loan's EMI schedule, records
installment status changes and keeps the loan's cached payment roll-up
(paid amount, installments completed, aggregate status) in step with them.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from enum import Enum

from .audit import AuditTrail, AuditEventType
from .emi import ScheduleEntry, build_schedule
from .errors import (
    AlreadyCompletedError, ConcurrencyConflictError, InvalidTransitionError,
    ValidationError, collaborator_call
)
from .events import DomainEvent, Notifier
from .loans import AggregatePaymentStatus, Loan, LoanManager
from .logging_config import get_logger, log_action
from .rbac import ActorContext, Permission
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_servicing.payments")


class InstallmentStatus(Enum):
    """Per-installment payment status"""
    PENDING = "Pending"
    PAID = "Paid"
    ECS_SUCCESS = "ECS Success"
    ECS_BOUNCE = "ECS Bounce"
    DUE_MISSED = "Due Missed"


class PaymentMethod(Enum):
    PENDING = "pending"
    MANUAL = "manual"
    ECS = "ecs"
    ECS_BOUNCE = "ecs_bounce"
    MISSED = "missed"


COMPLETED_STATUSES = frozenset({InstallmentStatus.PAID, InstallmentStatus.ECS_SUCCESS})

PAYMENT_METHODS: Dict[InstallmentStatus, PaymentMethod] = {
    InstallmentStatus.PENDING: PaymentMethod.PENDING,
    InstallmentStatus.PAID: PaymentMethod.MANUAL,
    InstallmentStatus.ECS_SUCCESS: PaymentMethod.ECS,
    InstallmentStatus.ECS_BOUNCE: PaymentMethod.ECS_BOUNCE,
    InstallmentStatus.DUE_MISSED: PaymentMethod.MISSED,
}


@dataclass
class InstallmentRecord(StorageRecord):
    """Persisted status of one installment; missing rows read as Pending"""
    loan_id: str
    installment_index: int
    status: InstallmentStatus
    payment_method: PaymentMethod
    recorded_by: str
    paid_date: Optional[date] = None
    note: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status in COMPLETED_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        result['payment_method'] = self.payment_method.value
        result['paid_date'] = self.paid_date.isoformat() if self.paid_date else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InstallmentRecord':
        data['status'] = InstallmentStatus(data['status'])
        data['payment_method'] = PaymentMethod(data['payment_method'])
        if data.get('paid_date'):
            data['paid_date'] = date.fromisoformat(data['paid_date'])
        return super().from_dict(data)


@dataclass(frozen=True)
class PaymentRow:
    """Schedule entry with its current payment status overlaid"""
    index: int
    month_label: str
    due_date: date
    amount: Decimal
    status: InstallmentStatus
    paid_date: Optional[date] = None
    payment_method: PaymentMethod = PaymentMethod.PENDING

    @property
    def is_completed(self) -> bool:
        return self.status in COMPLETED_STATUSES


@dataclass(frozen=True)
class LoanPaymentSummary:
    """Loan-level payment roll-up returned after every installment change"""
    loan_id: str
    paid_amount: Decimal
    installments_completed: int
    aggregate_status: AggregatePaymentStatus
    emi_amount: Decimal
    total_payable: Decimal
    remaining_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'paid_amount': str(self.paid_amount),
            'installments_completed': self.installments_completed,
            'aggregate_status': self.aggregate_status.value,
            'emi_amount': str(self.emi_amount),
            'total_payable': str(self.total_payable),
            'remaining_amount': str(self.remaining_amount)
        }


@dataclass(frozen=True)
class PortfolioSummary:
    """Payment roll-up across the loans in repayment visible to one actor"""
    loan_count: int
    status_counts: Dict[AggregatePaymentStatus, int]
    total_payable: Decimal
    total_collected: Decimal
    total_remaining: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_count': self.loan_count,
            'status_counts': {status.value: count for status, count in self.status_counts.items()},
            'total_payable': str(self.total_payable),
            'total_collected': str(self.total_collected),
            'total_remaining': str(self.total_remaining)
        }


def compute_aggregate_status(statuses: Iterable[InstallmentStatus], tenure_months: int) -> AggregatePaymentStatus:
    """
    Roll installment statuses up to one loan status

    Precedence is fixed: any bounce wins, then any missed due date, then all
    installments completed. Everything else (including no payments yet) is
    on track.
    """
    statuses = list(statuses)
    if InstallmentStatus.ECS_BOUNCE in statuses:
        return AggregatePaymentStatus.BOUNCE
    if InstallmentStatus.DUE_MISSED in statuses:
        return AggregatePaymentStatus.OVERDUE
    completed = sum(1 for status in statuses if status in COMPLETED_STATUSES)
    if tenure_months > 0 and completed == tenure_months:
        return AggregatePaymentStatus.PAID
    return AggregatePaymentStatus.ONTRACK


def merge_statuses(schedule: Sequence[ScheduleEntry],
                   persisted: Union[Mapping[int, InstallmentRecord], Iterable[InstallmentRecord]]) -> List[PaymentRow]:
    """
    Overlay persisted installment rows onto a schedule

    Rows whose index falls outside the schedule are ignored.
    """
    if not isinstance(persisted, Mapping):
        persisted = {record.installment_index: record for record in persisted}

    rows = []
    for entry in schedule:
        record = persisted.get(entry.index)
        rows.append(PaymentRow(
            index=entry.index,
            month_label=entry.month_label,
            due_date=entry.due_date,
            amount=entry.amount,
            status=record.status if record else InstallmentStatus.PENDING,
            paid_date=record.paid_date if record else None,
            payment_method=record.payment_method if record else PaymentMethod.PENDING
        ))
    return rows


def _coerce_status(status: Union[InstallmentStatus, str]) -> InstallmentStatus:
    if isinstance(status, InstallmentStatus):
        return status
    try:
        return InstallmentStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown installment status '{status}'", field="status", value=status)


class PaymentTracker:
    """
    Records installment payments against disbursed loans
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        audit_trail: AuditTrail,
        notifier: Optional[Notifier] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.notifier = notifier

        self.installments_table = "loan_installments"

    @staticmethod
    def installment_id(loan_id: str, installment_index: int) -> str:
        return f"{loan_id}:{installment_index}"

    def get_schedule(self, loan_id: str, today: Optional[date] = None) -> Tuple[ScheduleEntry, ...]:
        """EMI schedule anchored on delivery, disbursement or (provisionally) today"""
        loan = self.loan_manager.get_loan(loan_id)
        return self._schedule_for(loan, today)

    def get_payment_rows(self, loan_id: str, today: Optional[date] = None) -> List[PaymentRow]:
        """Schedule with persisted statuses merged in"""
        loan = self.loan_manager.get_loan(loan_id)
        return merge_statuses(self._schedule_for(loan, today), self._load_records(loan_id))

    def get_summary(self, loan_id: str) -> LoanPaymentSummary:
        """Current payment roll-up as cached on the loan"""
        return self._summary(self.loan_manager.get_loan(loan_id))

    def get_portfolio_summary(self, actor: ActorContext, merchant_id: Optional[str] = None,
                              nbfc_id: Optional[str] = None) -> PortfolioSummary:
        """Counts per aggregate status and collected / remaining totals for loans in repayment"""
        loans = [
            loan for loan in self.loan_manager.list_loans(actor, merchant_id=merchant_id, nbfc_id=nbfc_id)
            if loan.in_repayment
        ]
        counts = {status: 0 for status in AggregatePaymentStatus}
        payable = collected = remaining = Decimal('0')
        for loan in loans:
            summary = self._summary(loan)
            counts[summary.aggregate_status] += 1
            payable += summary.total_payable
            collected += summary.paid_amount
            remaining += summary.remaining_amount

        return PortfolioSummary(
            loan_count=len(loans),
            status_counts=counts,
            total_payable=payable,
            total_collected=collected,
            total_remaining=remaining
        )

    def get_installment_history(self, loan_id: str, installment_index: int) -> List[Dict[str, Any]]:
        """Audit trail of one installment's status changes, oldest first"""
        self.loan_manager.get_loan(loan_id)
        with collaborator_call("persistence"):
            events = self.audit_trail.get_events_for_entity(
                "installment", self.installment_id(loan_id, installment_index)
            )
        return [
            {
                'from_status': event.metadata.get('from_status'),
                'to_status': event.metadata.get('to_status'),
                'paid_date': event.metadata.get('paid_date'),
                'note': event.metadata.get('note'),
                'actor_id': event.user_id,
                'actor_role': event.user_role,
                'recorded_at': event.created_at.isoformat()
            }
            for event in events
        ]

    def record_payment(
        self,
        loan_id: str,
        installment_index: int,
        new_status: Union[InstallmentStatus, str],
        paid_date: Optional[date],
        actor: ActorContext,
        note: Optional[str] = None
    ) -> LoanPaymentSummary:
        """
        Record a status change for one installment

        Args:
            loan_id: Disbursed (or delivered) loan
            installment_index: 0-based installment index
            new_status: Target installment status
            paid_date: Date the payment landed; defaults to today for Paid / ECS Success
                and is not kept for any other status
            actor: Admin or NBFC admin recording the payment
            note: Free-text remark kept in the audit trail

        Returns:
            Updated LoanPaymentSummary

        Raises:
            InvalidTransitionError: loan is not in repayment
            ValidationError: bad index, status or date
            AlreadyCompletedError: installment is already Paid / ECS Success
            ConcurrencyConflictError: installment or loan changed underneath us
        """
        loan = self.loan_manager.get_loan(loan_id)
        self.loan_manager.require_scope(actor, Permission.RECORD_PAYMENT, loan)

        if not loan.in_repayment:
            raise InvalidTransitionError(loan.status.value, "record_payment", loan_id=loan.id)

        new_status = _coerce_status(new_status)
        tenure = loan.terms.tenure_months
        if isinstance(installment_index, bool) or not isinstance(installment_index, int) \
                or not 0 <= installment_index < tenure:
            raise ValidationError(f"Installment index must be between 0 and {tenure - 1}",
                                  field="installment_index", value=installment_index)

        today = date.today()
        if new_status not in COMPLETED_STATUSES:
            paid_date = None
        elif paid_date is None:
            paid_date = today
        elif paid_date > today:
            raise ValidationError("Paid date cannot be in the future", field="paid_date", value=paid_date)

        record_id = self.installment_id(loan.id, installment_index)

        with collaborator_call("persistence"), self.storage.atomic():
            # re-read under the transaction so concurrent recorders see each other's roll-up
            loan = self.loan_manager.get_loan(loan_id)
            if not loan.in_repayment:
                raise InvalidTransitionError(loan.status.value, "record_payment", loan_id=loan.id)

            current_data = self.storage.load(self.installments_table, record_id)
            current = InstallmentRecord.from_dict(current_data) if current_data else None
            old_status = current.status if current else InstallmentStatus.PENDING

            if old_status in COMPLETED_STATUSES:
                raise AlreadyCompletedError(loan.id, installment_index, old_status.value)

            now = datetime.now(timezone.utc)
            record = InstallmentRecord(
                id=record_id,
                created_at=current.created_at if current else now,
                updated_at=now,
                loan_id=loan.id,
                installment_index=installment_index,
                status=new_status,
                payment_method=PAYMENT_METHODS[new_status],
                recorded_by=actor.actor_id,
                paid_date=paid_date,
                note=note
            )

            emi = loan.emi_amount
            old_payment_status = loan.payment_status

            expected = {'status': old_status.value} if current else None
            if not self.storage.compare_and_save(self.installments_table, record_id, record.to_dict(), expected):
                self._raise_lost_race(loan.id, installment_index, record_id)

            self.audit_trail.log_event(
                event_type=AuditEventType.INSTALLMENT_STATUS_CHANGED,
                entity_type="installment",
                entity_id=record_id,
                metadata={
                    "loan_id": loan.id,
                    "installment_index": installment_index,
                    "from_status": old_status.value,
                    "to_status": new_status.value,
                    "paid_date": paid_date,
                    "amount": emi,
                    "note": note
                },
                user_id=actor.actor_id,
                user_role=actor.role.value
            )

            statuses = [row.status for row in merge_statuses(
                self._schedule_for(loan), self._load_records(loan.id)
            )]
            expected_version = loan.version
            if new_status in COMPLETED_STATUSES:
                loan.paid_amount += emi
                loan.installments_completed += 1
            loan.payment_status = compute_aggregate_status(statuses, tenure)
            loan.updated_at = now
            loan.version = expected_version + 1
            self.loan_manager.write_loan(loan, expected_version)

            if loan.payment_status != old_payment_status:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_PAYMENT_STATUS_CHANGED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "from_status": old_payment_status.value,
                        "to_status": loan.payment_status.value,
                        "installment_index": installment_index
                    },
                    user_id=actor.actor_id,
                    user_role=actor.role.value
                )

        summary = self._summary(loan)
        log_action(logger, "info",
                   f"Installment {installment_index} of loan {loan.application_number}: "
                   f"{old_status.value} -> {new_status.value}",
                   user_id=actor.actor_id, action="record_payment", resource=f"installment:{record_id}",
                   extra={"aggregate_status": loan.payment_status.value,
                          "paid_amount": str(loan.paid_amount)})

        self._emit(DomainEvent.INSTALLMENT_CHANGED, loan.id, {
            "installment_index": installment_index,
            "from_status": old_status.value,
            "to_status": new_status.value,
            "paid_date": paid_date.isoformat() if paid_date else None
        })
        self._emit(DomainEvent.PAYMENT_STATUS_CHANGED, loan.id, summary.to_dict())

        return summary

    def _raise_lost_race(self, loan_id: str, installment_index: int, record_id: str) -> None:
        latest = self.storage.load(self.installments_table, record_id)
        if latest and InstallmentStatus(latest['status']) in COMPLETED_STATUSES:
            raise AlreadyCompletedError(loan_id, installment_index, latest['status'])
        raise ConcurrencyConflictError("installment", record_id)

    def _schedule_for(self, loan: Loan, today: Optional[date] = None) -> Tuple[ScheduleEntry, ...]:
        return build_schedule(
            loan.terms.financed_amount,
            loan.terms.tenure_months,
            loan.anchor_date(today),
            loan.terms.annual_interest_rate
        )

    def _load_records(self, loan_id: str) -> List[InstallmentRecord]:
        with collaborator_call("persistence"):
            rows = self.storage.find(self.installments_table, {"loan_id": loan_id})
        return [InstallmentRecord.from_dict(row) for row in rows]

    def _summary(self, loan: Loan) -> LoanPaymentSummary:
        quote = loan.emi_quote
        return LoanPaymentSummary(
            loan_id=loan.id,
            paid_amount=loan.paid_amount,
            installments_completed=loan.installments_completed,
            aggregate_status=loan.payment_status,
            emi_amount=quote.emi,
            total_payable=quote.total_payable,
            remaining_amount=quote.total_payable - loan.paid_amount
        )

    def _emit(self, event_type: DomainEvent, loan_id: str, payload: Dict[str, Any]) -> None:
        if not self.notifier:
            return
        with collaborator_call("notification", committed=True):
            self.notifier.emit(event_type, loan_id, payload)
