from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from pricehub.api.deps import TenantScope, bind_request_id, get_tenant_scope, http_error
from pricehub.core.errors import PricehubError
from pricehub.db.session import get_db_session
from pricehub.schemas.api import RunDetail, RunRead, TargetRead
from pricehub.services.run_service import RunService

router = APIRouter(prefix="/runs", dependencies=[Depends(bind_request_id)])


@router.get("/status", summary="Run and target counts by state")
async def runs_status(scope: TenantScope = Depends(get_tenant_scope), db: AsyncSession = Depends(get_db_session)):
    return await RunService(db).status_counts(scope.tenant_id, scope.project_id)


@router.get("", response_model=list[RunRead])
async def list_runs(
    rule_id: UUID | None = Query(default=None),
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    scope: TenantScope = Depends(get_tenant_scope),
    db: AsyncSession = Depends(get_db_session),
):
    return await RunService(db).list_runs(scope.tenant_id, rule_id=rule_id, status=status, limit=limit)


@router.get("/{run_id}", response_model=RunDetail)
async def get_run(run_id: UUID, scope: TenantScope = Depends(get_tenant_scope),
                  db: AsyncSession = Depends(get_db_session)):
    try:
        run, targets = await RunService(db).get_run(run_id, scope.tenant_id)
    except PricehubError as e:
        raise http_error(e) from e
    detail = RunDetail.model_validate(run)
    return detail.model_copy(update={"targets": [TargetRead.model_validate(t) for t in targets]})


@router.post("/{run_id}/retry-failed", status_code=202, summary="Re-queue the failed targets of a finished run")
async def retry_failed(run_id: UUID, scope: TenantScope = Depends(get_tenant_scope),
                       db: AsyncSession = Depends(get_db_session)):
    try:
        requeued = await RunService(db).requeue_failed_targets(run_id, scope.tenant_id)
    except PricehubError as e:
        raise http_error(e) from e
    return {"run_id": str(run_id), "requeued_targets": requeued}
