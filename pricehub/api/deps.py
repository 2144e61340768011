from uuid import uuid4

from fastapi import Header, HTTPException
from pydantic import BaseModel

from pricehub.core.errors import (
    ConflictError,
    NoTargetsError,
    NotFoundError,
    PolicyError,
    PricehubError,
    SelectorError,
    TransformError,
)
from pricehub.core.logging import set_request_id


class TenantScope(BaseModel):
    tenant_id: str
    project_id: str | None = None


async def get_tenant_scope(
    x_tenant_id: str = Header(..., min_length=1, description="Tenant identifier"),
    x_project_id: str | None = Header(default=None, description="Project identifier"),
) -> TenantScope:
    return TenantScope(tenant_id=x_tenant_id, project_id=x_project_id)


async def bind_request_id() -> str:
    return set_request_id(str(uuid4()))


def http_error(exc: PricehubError) -> HTTPException:
    """Map a domain error to the HTTP status operators expect."""
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (NoTargetsError, SelectorError, TransformError, PolicyError)):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))
