from uuid import UUID

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from pricehub.api.deps import TenantScope, bind_request_id, get_tenant_scope, http_error
from pricehub.core.errors import PricehubError
from pricehub.db.session import get_db_session
from pricehub.schemas.api import ApplyAccepted, RuleCreate, RulePolicy, RuleRead, RuleSchedule
from pricehub.services.rule_scheduler_service import trigger_rule
from pricehub.services.rule_service import RuleService

router = APIRouter(prefix="/rules", dependencies=[Depends(bind_request_id)])


@router.post("", response_model=RuleRead, status_code=201, summary="Create a pricing rule")
async def create_rule(
    body: RuleCreate,
    scope: TenantScope = Depends(get_tenant_scope),
    db: AsyncSession = Depends(get_db_session),
):
    if not scope.project_id:
        raise http_error(PricehubError("X-Project-Id header is required to create a rule"))
    try:
        return await RuleService(db).create(tenant_id=scope.tenant_id, project_id=scope.project_id,
                                            **body.model_dump())
    except PricehubError as e:
        raise http_error(e) from e


@router.get("", response_model=list[RuleRead], summary="List pricing rules")
async def list_rules(scope: TenantScope = Depends(get_tenant_scope), db: AsyncSession = Depends(get_db_session)):
    return await RuleService(db).list_rules(scope.tenant_id, scope.project_id)


@router.get("/{rule_id}", response_model=RuleRead)
async def get_rule(rule_id: UUID, scope: TenantScope = Depends(get_tenant_scope),
                   db: AsyncSession = Depends(get_db_session)):
    try:
        return await RuleService(db).get(rule_id, scope.tenant_id)
    except PricehubError as e:
        raise http_error(e) from e


@router.post("/{rule_id}/enable", response_model=RuleRead)
async def enable_rule(rule_id: UUID, scope: TenantScope = Depends(get_tenant_scope),
                      db: AsyncSession = Depends(get_db_session)):
    try:
        return await RuleService(db).set_enabled(rule_id, scope.tenant_id, True)
    except PricehubError as e:
        raise http_error(e) from e


@router.post("/{rule_id}/disable", response_model=RuleRead)
async def disable_rule(rule_id: UUID, scope: TenantScope = Depends(get_tenant_scope),
                       db: AsyncSession = Depends(get_db_session)):
    try:
        return await RuleService(db).set_enabled(rule_id, scope.tenant_id, False)
    except PricehubError as e:
        raise http_error(e) from e


@router.put("/{rule_id}/schedule", response_model=RuleRead, summary="Set or clear the one-shot schedule")
async def schedule_rule(rule_id: UUID, body: RuleSchedule, scope: TenantScope = Depends(get_tenant_scope),
                        db: AsyncSession = Depends(get_db_session)):
    try:
        return await RuleService(db).reschedule(rule_id, scope.tenant_id, body.schedule_at)
    except PricehubError as e:
        raise http_error(e) from e


@router.put("/{rule_id}/policy", response_model=RuleRead, summary="Set or clear the price policy")
async def set_rule_policy(rule_id: UUID, body: RulePolicy, scope: TenantScope = Depends(get_tenant_scope),
                          db: AsyncSession = Depends(get_db_session)):
    try:
        return await RuleService(db).set_policy(rule_id, scope.tenant_id, body.policy)
    except PricehubError as e:
        raise http_error(e) from e


@router.delete("/{rule_id}", status_code=204)
async def delete_rule(rule_id: UUID, scope: TenantScope = Depends(get_tenant_scope),
                      db: AsyncSession = Depends(get_db_session)):
    try:
        await RuleService(db).delete(rule_id, scope.tenant_id)
    except PricehubError as e:
        raise http_error(e) from e
    return Response(status_code=204)


@router.post("/{rule_id}/preview", summary="Evaluate a rule without writing anything")
async def preview_rule(rule_id: UUID, scope: TenantScope = Depends(get_tenant_scope),
                       db: AsyncSession = Depends(get_db_session)):
    try:
        return await RuleService(db).preview(rule_id, scope.tenant_id)
    except PricehubError as e:
        raise http_error(e) from e


@router.post("/{rule_id}/apply", response_model=ApplyAccepted, status_code=202, summary="Queue a rule run now")
async def apply_rule(
    rule_id: UUID,
    request: Request,
    scope: TenantScope = Depends(get_tenant_scope),
    db: AsyncSession = Depends(get_db_session),
    request_id: str = Depends(bind_request_id),
):
    """
    Queue an immediate run. The worker applies it on its next poll; the
    response carries the run id to follow via `GET /runs/{id}`.
    """
    try:
        run = await trigger_rule(db, rule_id, scope.tenant_id, scope.project_id, actor="api",
                                 config=request.app.state.context.settings)
    except PricehubError as e:
        raise http_error(e) from e
    return ApplyAccepted(run_id=run.id, status=run.status, target_count=run.explain.get("targetCount", 0),
                         request_id=request_id)
