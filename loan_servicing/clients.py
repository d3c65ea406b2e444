"""
Client Module

Borrower records owned by a tenant. Loans reference a client and loan creation
refuses clients that belong to a different tenant.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any
import uuid

from .storage import StorageInterface, StorageRecord
from .exceptions import NotFoundError


@dataclass
class Client(StorageRecord):
    """Borrower belonging to a tenant"""
    tenant_id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Client':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            tenant_id=data['tenant_id'],
            name=data['name'],
            email=data.get('email'),
            phone=data.get('phone'),
        )


class ClientManager:
    """Tenant-scoped client lookups"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "clients"

    def create_client(self, tenant_id: str, name: str,
                      email: Optional[str] = None,
                      phone: Optional[str] = None) -> Client:
        now = datetime.now(timezone.utc)
        client = Client(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            name=name,
            email=email,
            phone=phone,
        )
        self.storage.insert(self.table_name, client.id, client.to_dict())
        return client

    def get_client(self, tenant_id: str, client_id: str) -> Client:
        """
        Get a client of the tenant

        Raises:
            NotFoundError: If the client does not exist or belongs to another tenant
        """
        data = self.storage.load(self.table_name, client_id)
        if not data or data.get('tenant_id') != tenant_id:
            raise NotFoundError("client", client_id)
        return Client.from_dict(data)

    def list_clients(self, tenant_id: str) -> List[Client]:
        return [Client.from_dict(data)
                for data in self.storage.find(self.table_name, {'tenant_id': tenant_id})]

    def count_clients(self, tenant_id: str) -> int:
        return len(self.storage.find(self.table_name, {'tenant_id': tenant_id}))
