"""
System wiring and request dependencies

Tenant resolution and authentication happen upstream; requests arrive with the
tenant in the URL and the caller identity in X-User-ID (staff) or X-Client-ID
(borrower portal).
"""

from typing import Optional

from fastapi import Header, HTTPException, status

from ..storage import StorageInterface, create_storage
from ..audit import AuditTrail
from ..clients import ClientManager
from ..config import ServicingConfig, get_config
from ..ledger import LoanLedger
from ..loans import LoanManager
from ..payments import PaymentAllocationEngine
from ..tenancy import TenantManager


class ServicingSystem:
    """Loan servicing components sharing one storage backend"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[ServicingConfig] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(
            self.config.database_url,
            busy_timeout=self.config.sqlite_busy_timeout_seconds
        )

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.tenant_manager = TenantManager(self.storage)
        self.client_manager = ClientManager(self.storage)
        self.ledger = LoanLedger(self.storage)
        self.loan_manager = LoanManager(
            self.storage, self.client_manager, self.ledger, self.audit_trail,
            tenant_manager=self.tenant_manager, config=self.config
        )
        self.payment_engine = PaymentAllocationEngine(
            self.storage, self.loan_manager, self.audit_trail
        )

    def close(self) -> None:
        self.storage.close()


_servicing_system: Optional[ServicingSystem] = None


def get_servicing_system() -> ServicingSystem:
    """Dependency returning the process-wide system, built on first use"""
    global _servicing_system
    if _servicing_system is None:
        _servicing_system = ServicingSystem()
    return _servicing_system


def require_user(x_user_id: Optional[str] = Header(None)) -> str:
    """Staff user id supplied by the authentication layer"""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-ID header")
    return x_user_id


def require_client(x_client_id: Optional[str] = Header(None)) -> str:
    """Borrower id supplied by the portal authentication layer"""
    if not x_client_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Client-ID header")
    return x_client_id
