from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from pricehub.api.deps import TenantScope, bind_request_id, get_tenant_scope, http_error
from pricehub.core.errors import PricehubError
from pricehub.db.session import get_db_session
from pricehub.schemas.api import DeadLetterRead
from pricehub.services.outbox_admin_service import OutboxAdminService

router = APIRouter(prefix="/outbox", dependencies=[Depends(bind_request_id)])


def _service(request: Request, db: AsyncSession) -> OutboxAdminService:
    return OutboxAdminService(db, request.app.state.context.settings)


@router.get("/health", summary="Outbox health verdict and metrics")
async def outbox_health(request: Request, db: AsyncSession = Depends(get_db_session)):
    return await _service(request, db).health()


@router.get("/dead-letters", response_model=list[DeadLetterRead])
async def list_dead_letters(
    request: Request,
    include_resolved: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    scope: TenantScope = Depends(get_tenant_scope),
    db: AsyncSession = Depends(get_db_session),
):
    return await _service(request, db).list_dead_letters(scope.tenant_id, include_resolved, limit, offset)


@router.post("/dead-letters/{dead_letter_id}/replay", status_code=202)
async def replay_dead_letter(dead_letter_id: UUID, request: Request, scope: TenantScope = Depends(get_tenant_scope),
                             db: AsyncSession = Depends(get_db_session)):
    try:
        event = await _service(request, db).replay(dead_letter_id, scope.tenant_id)
    except PricehubError as e:
        raise http_error(e) from e
    return {"dead_letter_id": str(dead_letter_id), "event_id": str(event.id), "status": event.status}


@router.post("/dead-letters/{dead_letter_id}/discard", response_model=DeadLetterRead)
async def discard_dead_letter(dead_letter_id: UUID, request: Request, scope: TenantScope = Depends(get_tenant_scope),
                              db: AsyncSession = Depends(get_db_session)):
    try:
        return await _service(request, db).discard(dead_letter_id, scope.tenant_id)
    except PricehubError as e:
        raise http_error(e) from e
