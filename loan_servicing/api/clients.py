"""
Client endpoints
"""

from fastapi import APIRouter, Depends, status

from .deps import ServicingSystem, get_servicing_system, require_user
from .schemas import CreateClientRequest


router = APIRouter()


def _client_response(client):
    return {
        "id": client.id,
        "name": client.name,
        "email": client.email,
        "phone": client.phone,
        "created_at": client.created_at.isoformat(),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def create_client(
    tenant_id: str,
    request: CreateClientRequest,
    user_id: str = Depends(require_user),
    system: ServicingSystem = Depends(get_servicing_system)
):
    if system.config.enforce_plan_limits:
        system.tenant_manager.check_limit(
            tenant_id, "clients", system.client_manager.count_clients(tenant_id)
        )
    client = system.client_manager.create_client(
        tenant_id, request.name, email=request.email, phone=request.phone
    )
    return _client_response(client)


@router.get("")
def list_clients(
    tenant_id: str,
    user_id: str = Depends(require_user),
    system: ServicingSystem = Depends(get_servicing_system)
):
    return {"clients": [_client_response(c) for c in system.client_manager.list_clients(tenant_id)]}


@router.get("/{client_id}")
def get_client(
    tenant_id: str,
    client_id: str,
    user_id: str = Depends(require_user),
    system: ServicingSystem = Depends(get_servicing_system)
):
    return _client_response(system.client_manager.get_client(tenant_id, client_id))
