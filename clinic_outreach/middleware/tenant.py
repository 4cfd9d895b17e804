from uuid import UUID

from fastapi import HTTPException, Request, status

from clinic_outreach.services.audit_service import Actor


def _header_uuid(request: Request, name: str) -> UUID | None:
    raw = request.headers.get(name)
    if not raw:
        return None
    try:
        return UUID(raw)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid UUID in {name} header.",
        )


async def get_tenant_id(request: Request) -> UUID:
    """
    Resolve the tenant for the request from the X-Tenant-Id header.
    Every service call is scoped to this id; requests without one are rejected.
    """
    tenant_id = _header_uuid(request, "X-Tenant-Id")
    if tenant_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing tenant context. Use the X-Tenant-Id header.",
        )
    return tenant_id


async def get_actor(request: Request) -> Actor:
    """The staff user behind the request (X-Actor-Id), or the system actor when absent."""
    actor_id = _header_uuid(request, "X-Actor-Id")
    if actor_id is None:
        return Actor(actor_id=None, actor_type="system")
    return Actor(actor_id=actor_id, actor_type="user")
