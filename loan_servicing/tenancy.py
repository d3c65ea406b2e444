"""
Multi-Tenancy Support Module

Tenants (companies) own every client, loan and ledger entry. Isolation is by
tenant_id on each record; this module keeps the tenant registry and the
subscription plan limits that gate how much a tenant may create.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface
from .exceptions import PlanLimitExceededError


class SubscriptionTier(Enum):
    """Subscription plan tiers"""
    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class TenantStatus(Enum):
    """Billing status of a tenant workspace"""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELED = "canceled"


UNLIMITED = -1

# Usage limits per plan; UNLIMITED means no cap
PLAN_LIMITS: Dict[SubscriptionTier, Dict[str, int]] = {
    SubscriptionTier.FREE: {"clients": 10, "invoices": 20, "loans": 5, "users": 1},
    SubscriptionTier.STARTER: {"clients": 50, "invoices": 200, "loans": 50, "users": 5},
    SubscriptionTier.PROFESSIONAL: {"clients": UNLIMITED, "invoices": UNLIMITED,
                                    "loans": UNLIMITED, "users": UNLIMITED},
    SubscriptionTier.ENTERPRISE: {"clients": UNLIMITED, "invoices": UNLIMITED,
                                  "loans": UNLIMITED, "users": UNLIMITED},
}


@dataclass
class Tenant:
    """A company workspace reachable at a tenant-scoped URL"""
    id: str
    name: str
    slug: str
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    status: TenantStatus = TenantStatus.ACTIVE
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            'id': self.id,
            'name': self.name,
            'slug': self.slug,
            'subscription_tier': self.subscription_tier.value,
            'status': self.status.value,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Tenant':
        """Create Tenant from dictionary"""
        return cls(
            id=data['id'],
            name=data['name'],
            slug=data['slug'],
            subscription_tier=SubscriptionTier(data['subscription_tier']),
            status=TenantStatus(data['status']),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
        )


class TenantManager:
    """Tenant registry and plan limit enforcement"""

    TENANT_TABLE = "tenants"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def create_tenant(self, name: str, slug: str,
                      subscription_tier: SubscriptionTier = SubscriptionTier.FREE,
                      tenant_id: Optional[str] = None) -> Tenant:
        """Create a new tenant; slugs are unique"""
        if self.get_tenant_by_slug(slug):
            raise ValueError(f"Tenant slug '{slug}' already exists")

        tenant = Tenant(
            id=tenant_id or str(uuid.uuid4()),
            name=name,
            slug=slug,
            subscription_tier=subscription_tier,
        )
        self.storage.insert(self.TENANT_TABLE, tenant.id, tenant.to_dict())
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        """Get tenant by ID"""
        data = self.storage.load(self.TENANT_TABLE, tenant_id)
        if data:
            return Tenant.from_dict(data)
        return None

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        """Get tenant by URL slug"""
        tenants = self.storage.find(self.TENANT_TABLE, {'slug': slug})
        if tenants:
            return Tenant.from_dict(tenants[0])
        return None

    def list_tenants(self) -> List[Tenant]:
        return [Tenant.from_dict(data) for data in self.storage.load_all(self.TENANT_TABLE)]

    def update_tenant(self, tenant_id: str, **kwargs) -> Optional[Tenant]:
        """Update tenant fields"""
        tenant = self.get_tenant(tenant_id)
        if not tenant:
            return None

        for key, value in kwargs.items():
            if hasattr(tenant, key):
                setattr(tenant, key, value)

        tenant.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.TENANT_TABLE, tenant.id, tenant.to_dict())
        return tenant

    def check_limit(self, tenant_id: str, resource: str, current_count: int) -> None:
        """
        Raise if creating one more resource would exceed the tenant's plan

        Raises:
            PlanLimitExceededError: If the tenant is at its limit or not active
        """
        tenant = self.get_tenant(tenant_id)
        if not tenant:
            return
        if not tenant.is_active:
            raise PlanLimitExceededError(f"Tenant {tenant.slug} is {tenant.status.value}")

        limit = PLAN_LIMITS[tenant.subscription_tier].get(resource, UNLIMITED)
        if limit != UNLIMITED and current_count >= limit:
            raise PlanLimitExceededError(
                f"Plan '{tenant.subscription_tier.value}' allows {limit} {resource}; "
                f"upgrade to add more"
            )
