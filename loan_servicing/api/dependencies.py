"""
Service container and request-scoped dependencies
"""

from typing import Optional

from fastapi import Header

from ..audit import AuditTrail
from ..config import LoanServicingConfig, get_config
from ..documents import DocumentRegistry
from ..events import EventDispatcher
from ..loans import LoanManager
from ..payments import PaymentTracker
from ..rbac import ActorContext
from ..storage import StorageInterface, create_storage
from ..tieups import TieUpRegistry


class LoanServicingSystem:
    """Loan servicing core with all components initialized"""

    def __init__(self, config: Optional[LoanServicingConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()

        # Initialize storage
        self.storage = storage or create_storage(self.config.storage_backend, self.config.sqlite_path)

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage)
        self.event_dispatcher = EventDispatcher()
        self.tie_ups = TieUpRegistry(self.storage, self.audit_trail)
        self.document_registry = DocumentRegistry(self.storage, self.audit_trail, self.event_dispatcher)
        self.loan_manager = LoanManager(
            self.storage, self.audit_trail, self.document_registry,
            notifier=self.event_dispatcher, config=self.config,
            tie_ups=self.tie_ups
        )
        self.payment_tracker = PaymentTracker(
            self.storage, self.loan_manager, self.audit_trail,
            notifier=self.event_dispatcher
        )


# Global system instance, built on first request
_system: Optional[LoanServicingSystem] = None


def get_system() -> LoanServicingSystem:
    global _system
    if _system is None:
        _system = LoanServicingSystem()
    return _system


def get_actor(
    x_actor_id: str = Header(..., description="Acting user id"),
    x_actor_role: str = Header(..., description="admin, nbfc_admin, merchant or customer"),
    x_merchant_id: Optional[str] = Header(None),
    x_nbfc_id: Optional[str] = Header(None)
) -> ActorContext:
    """Actor identity forwarded by the authenticating gateway"""
    return ActorContext(
        actor_id=x_actor_id,
        role=x_actor_role,
        merchant_id=x_merchant_id,
        nbfc_id=x_nbfc_id
    )
