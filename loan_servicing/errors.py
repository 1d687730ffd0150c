"""
Error Taxonomy Module

Every failure the lifecycle and payment engines can surface. Each error carries
enough structured detail (current state, requested action, offending field) for
a caller to render a precise message; none of them is ever auto-corrected.
"""

from contextlib import contextmanager
from typing import Any, Dict, List, Optional


class LoanServicingError(Exception):
    """Base exception for all loan servicing errors."""

    kind = "loan_servicing_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation for API responses and logs"""
        return {
            "error": self.kind,
            "message": self.message,
            "details": {k: v for k, v in self.details.items() if v is not None}
        }


class LoanNotFoundError(LoanServicingError):
    """Raised when a referenced loan does not exist."""

    kind = "loan_not_found"

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found", loan_id=loan_id)
        self.loan_id = loan_id


class InvalidTransitionError(LoanServicingError):
    """Raised when an action is requested from a status that does not permit it."""

    kind = "invalid_transition"

    def __init__(self, current: str, requested: str, loan_id: Optional[str] = None,
                 reason: Optional[str] = None):
        message = f"Cannot {requested} a loan in status '{current}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, current=current, requested=requested, loan_id=loan_id)
        self.current = current
        self.requested = requested


class TerminalStateError(InvalidTransitionError):
    """Raised for any action attempted on a rejected loan."""

    kind = "terminal_state"

    def __init__(self, current: str, requested: str, loan_id: Optional[str] = None):
        super().__init__(current, requested, loan_id=loan_id, reason="status is terminal")


class ValidationError(LoanServicingError):
    """Raised when a payload or input value is malformed."""

    kind = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None,
                 errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, field=field, value=value if value is None else str(value),
                         errors=errors)
        self.field = field


class AlreadyCompletedError(LoanServicingError):
    """Raised when an installment already Paid / ECS Success is mutated again."""

    kind = "already_completed"

    def __init__(self, loan_id: str, installment_index: int, status: str):
        super().__init__(
            f"Installment {installment_index} of loan {loan_id} is already '{status}' and cannot change",
            loan_id=loan_id, installment_index=installment_index, status=status
        )
        self.installment_index = installment_index
        self.status = status


class ConcurrencyConflictError(LoanServicingError):
    """Raised when a conditional write lost the race; the caller decides whether to retry."""

    kind = "concurrency_conflict"

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            f"{entity_type} {entity_id} was modified concurrently; re-fetch and retry",
            entity_type=entity_type, entity_id=entity_id
        )


class PermissionDeniedError(LoanServicingError):
    """Raised when the actor's role or scope does not allow the operation."""

    kind = "permission_denied"

    def __init__(self, actor_id: str, role: str, operation: str, reason: Optional[str] = None):
        message = f"Actor {actor_id} ({role}) may not {operation}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, actor_id=actor_id, role=role, operation=operation)


class CollaboratorError(LoanServicingError):
    """Wraps a failure raised by persistence, document storage or notification."""

    kind = "collaborator_error"

    def __init__(self, collaborator: str, original: BaseException, committed: bool = False):
        super().__init__(
            f"{collaborator} failed: {original}",
            collaborator=collaborator, original_type=type(original).__name__,
            committed=committed
        )
        self.collaborator = collaborator
        self.original = original
        self.committed = committed


@contextmanager
def collaborator_call(collaborator: str, committed: bool = False):
    """Re-raise any non-domain exception from a collaborator as CollaboratorError"""
    try:
        yield
    except LoanServicingError:
        raise
    except Exception as e:
        raise CollaboratorError(collaborator, e, committed=committed) from e
