import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from sqlalchemy import text

from pricehub.api.v1.endpoints import outbox, rules, runs
from pricehub.background.jobs import check_scheduled_rules_job, process_outbox_events_job, process_rule_runs_job
from pricehub.core.config import settings
from pricehub.core.context import PipelineContext, build_context
from pricehub.core.logging import configure_logging, set_process_id

logger = logging.getLogger(__name__)


def build_scheduler(context: PipelineContext) -> AsyncIOScheduler:
    """One interval job per polling loop; a loop never overlaps itself."""
    config = context.settings
    scheduler = AsyncIOScheduler(timezone=config.SCHEDULER_TIMEZONE)
    job_defaults = {"max_instances": 1, "coalesce": True, "args": [context]}
    scheduler.add_job(check_scheduled_rules_job, 'interval', seconds=config.RULES_SCHEDULER_INTERVAL_SECONDS,
                      id='check_scheduled_rules', **job_defaults)
    scheduler.add_job(process_rule_runs_job, 'interval', seconds=config.RULES_WORKER_INTERVAL_SECONDS,
                      id='process_rule_runs', **job_defaults)
    scheduler.add_job(process_outbox_events_job, 'interval', seconds=config.OUTBOX_POLL_INTERVAL_SECONDS,
                      id='process_outbox', **job_defaults)
    return scheduler


async def stop_scheduler(scheduler: AsyncIOScheduler, context: PipelineContext) -> bool:
    """
    Stop the polling loops without cutting an iteration short.

    AsyncIOScheduler.shutdown() cancels coroutine jobs that are still running,
    so new runs are paused first and the in-flight iterations awaited. Returns
    False when the grace period ran out and the remaining jobs were cancelled.
    """
    scheduler.pause()
    drained = await context.wait_for_running_jobs(context.settings.SHUTDOWN_GRACE_SECONDS)
    if not drained:
        logger.warning("Background jobs still running after %ss; cancelling them",
                       context.settings.SHUTDOWN_GRACE_SECONDS)
    scheduler.shutdown(wait=False)
    return drained


def create_app(context: PipelineContext | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = context or build_context(settings)
        app.state.context = ctx
        scheduler = None
        if ctx.settings.RUN_BACKGROUND_JOBS:
            scheduler = build_scheduler(ctx)
            scheduler.start()
            logger.info("Scheduler started with jobs: %s", [job.id for job in scheduler.get_jobs()])
        try:
            yield
        finally:
            if scheduler is not None:
                logger.info("Shutting down scheduler...")
                await stop_scheduler(scheduler, ctx)
            await ctx.close()

    app = FastAPI(title=settings.PROJECT_NAME, version="1.0.0", lifespan=lifespan)

    @app.get("/", tags=["Health Check"])
    def read_root():
        return {"status": "ok", "project_name": settings.PROJECT_NAME}

    @app.get("/health/db", tags=["Health Check"])
    async def health_db(request: Request):
        """Database connectivity check."""
        try:
            async with request.app.state.context.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            raise HTTPException(status_code=503, detail={"db": "error", "message": str(e)})
        return {"db": "ok"}

    app.include_router(rules.router, prefix="/api/v1", tags=["Rules"])
    app.include_router(runs.router, prefix="/api/v1", tags=["Runs"])
    app.include_router(outbox.router, prefix="/api/v1", tags=["Outbox"])
    return app


configure_logging()
set_process_id()

app = create_app()
