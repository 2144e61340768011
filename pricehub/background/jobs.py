from pricehub.core.context import PipelineContext
from pricehub.core.logging import set_correlation_id, set_job_name
from pricehub.services.apply_worker_service import ApplyWorkerService
from pricehub.services.outbox_processor_service import OutboxProcessorService
from pricehub.services.rule_scheduler_service import RuleSchedulerService


async def check_scheduled_rules_job(context: PipelineContext):
    """APScheduler job: turn due rule schedules into queued runs."""
    async with context.running_job():
        set_job_name("check_scheduled_rules_job")
        set_correlation_id(None)
        service = RuleSchedulerService(context.session_factory, context.settings)
        return await service.check_scheduled_rules()


async def process_rule_runs_job(context: PipelineContext):
    """APScheduler job: apply queued runs through their platform connectors."""
    async with context.running_job():
        set_job_name("process_rule_runs_job")
        set_correlation_id(None)
        service = ApplyWorkerService(context.session_factory, context.connectors, context.settings)
        return await service.poll_and_process_runs()


async def process_outbox_events_job(context: PipelineContext):
    """APScheduler job: deliver pending outbox events to subscribers."""
    async with context.running_job():
        set_job_name("process_outbox_events_job")
        set_correlation_id(None)
        service = OutboxProcessorService(context.session_factory, context.subscribers, context.settings)
        return await service.process_pending_events()
