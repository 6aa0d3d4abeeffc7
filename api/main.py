"""
FastAPI Application — REST API for the auto-engagement flow engine.

Provides:
- Contact event intake (flow selection + execution start)
- Flow management: CRUD, enable toggle, bulk priorities, dry-run, test run
- Execution history with per-step logs, and cancellation
- Analytics rollups
- Queue consumer and delayed-job promoter for durable waits
"""
from __future__ import annotations

import logging
import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, time
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError

from channels.registry import Collaborators, build_collaborators
from config.settings import Settings, get_settings
from core.analytics import AnalyticsAggregator
from core.executor import ActionExecutor
from core.orchestrator import ExecutionOrchestrator
from database.store_base import BaseEngagementStore
from database.store_factory import create_store
from job_queue.consumer import DelayedJobPromoter, ExecutionConsumer
from job_queue.message_queue import MessageQueue, Queues, create_message_queue
from models.schemas import (
    Action, ContactAttributes, ContactEvent, ExecutionStatus, Flow,
    TriggerCondition, utcnow,
)
from rules.selector import FlowSelector
from rules.validation import FlowValidationError, validate_flow
from utils.business_hours import default_hours

logger = structlog.get_logger()


def configure_logging(debug: bool = False) -> None:
    """structlog: ISO timestamps, console output in debug, JSON otherwise."""
    renderer = (
        structlog.dev.ConsoleRenderer()
        if debug
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if debug else logging.INFO
        ),
        context_class=dict,
        cache_logger_on_first_use=False,
    )


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class EngineServices:
    """Everything the endpoints need, wired once per application."""
    settings: Settings
    store: BaseEngagementStore
    queue: MessageQueue
    collaborators: Collaborators
    orchestrator: ExecutionOrchestrator
    analytics: AnalyticsAggregator
    consumer: ExecutionConsumer
    promoter: DelayedJobPromoter


def build_services(
    settings: Settings,
    store: Optional[BaseEngagementStore] = None,
    queue: Optional[MessageQueue] = None,
    collaborators: Optional[Collaborators] = None,
) -> EngineServices:
    store = store or create_store(settings.database, echo=settings.debug)
    queue = queue or create_message_queue(settings.queue)
    collaborators = collaborators or build_collaborators(settings)
    max_wait = settings.engine.max_wait_minutes

    executor = ActionExecutor(
        call_placer=collaborators.call_placer,
        whatsapp_sender=collaborators.whatsapp,
        email_sender=collaborators.email,
        max_wait_minutes=max_wait,
    )
    orchestrator = ExecutionOrchestrator(
        store=store,
        executor=executor,
        queue=queue,
        selector=FlowSelector(max_wait_minutes=max_wait),
        default_hours=default_hours(settings),
        default_trigger_source=settings.engine.default_trigger_source,
    )
    return EngineServices(
        settings=settings,
        store=store,
        queue=queue,
        collaborators=collaborators,
        orchestrator=orchestrator,
        analytics=AnalyticsAggregator(
            store,
            timezone=settings.timezone,
            include_test_runs=settings.engine.include_test_runs_in_analytics,
        ),
        consumer=ExecutionConsumer(
            orchestrator, queue,
            consumer_group=settings.queue.consumer_group,
            concurrency=settings.queue.consumer_concurrency,
        ),
        promoter=DelayedJobPromoter(
            queue,
            interval_seconds=settings.queue.delayed_promote_interval,
        ),
    )


async def seed_flows(store: BaseEngagementStore, settings: Settings) -> int:
    """Save flow definitions from configuration that the store does not have yet."""
    seeded = 0
    for raw in settings.flows:
        try:
            flow = Flow(**raw)
        except ValidationError as e:
            logger.warning("seed_flow_invalid", flow=raw.get("name"), error=str(e))
            continue
        if await store.get_flow(flow.id) is not None:
            continue
        errors = validate_flow(flow, settings.engine.max_wait_minutes, require_actions=flow.is_enabled)
        if errors:
            logger.warning("seed_flow_invalid", flow=flow.name, errors=errors)
            continue
        await store.save_flow(flow)
        seeded += 1
    if seeded:
        logger.info("flows_seeded", count=seeded)
    return seeded


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[BaseEngagementStore] = None,
    queue: Optional[MessageQueue] = None,
    collaborators: Optional[Collaborators] = None,
    run_workers: bool = True,
) -> FastAPI:
    """
    Build the application. Services are created in the lifespan so importing
    this module never touches the database or the queue.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or get_settings()
        configure_logging(cfg.debug)

        services = build_services(cfg, store=store, queue=queue, collaborators=collaborators)
        await services.store.initialize()
        await seed_flows(services.store, cfg)
        await services.queue.connect()
        if run_workers:
            await services.consumer.start_background()
            await services.promoter.start_background()
        recovered = await services.orchestrator.recover()
        app.state.services = services

        logger.info("autoengage_started",
                    app=cfg.app_name,
                    store=type(services.store).__name__,
                    queue_backend=type(services.queue).__name__,
                    recovered=recovered)
        yield

        if run_workers:
            await services.consumer.stop()
            await services.promoter.stop()
        await services.queue.close()
        await services.collaborators.close()
        await services.store.close()
        logger.info("autoengage_stopped")

    app = FastAPI(
        title="AutoEngage API",
        description="Prioritized auto-engagement flows for new contacts",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


def get_services(request: Request) -> EngineServices:
    return request.app.state.services


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class ContactEventRequest(BaseModel):
    contact: ContactAttributes
    account_id: str = "default"
    trigger_source: Optional[str] = None
    triggered_at: Optional[datetime] = None     # None means received now


class FlowRequest(BaseModel):
    account_id: str = "default"
    name: str
    description: str = ""
    priority: int = 0
    is_enabled: bool = False
    trigger_conditions: list[TriggerCondition] = []
    actions: list[Action] = []
    use_custom_business_hours: bool = False
    business_hours_start: Optional[time] = None
    business_hours_end: Optional[time] = None
    business_hours_timezone: Optional[str] = None


class ToggleRequest(BaseModel):
    is_enabled: Optional[bool] = None     # None flips the current value


class PriorityUpdate(BaseModel):
    flow_id: str
    priority: int


class PrioritiesRequest(BaseModel):
    priorities: list[PriorityUpdate]


class TestContactRequest(BaseModel):
    contact: ContactAttributes


# ══════════════════════════════════════════════════════════════
#  Routes
# ══════════════════════════════════════════════════════════════

router = APIRouter()


def _check_flow(flow: Flow, services: EngineServices) -> None:
    errors = validate_flow(
        flow,
        services.settings.engine.max_wait_minutes,
        require_actions=flow.is_enabled,
    )
    if errors:
        raise HTTPException(status_code=400, detail={"errors": errors})


async def _get_flow_or_404(flow_id: str, services: EngineServices) -> Flow:
    flow = await services.store.get_flow(flow_id)
    if flow is None:
        raise HTTPException(404, "Flow not found")
    return flow


# ── Health ────────────────────────────────────────────────────

@router.get("/health")
async def health(services: EngineServices = Depends(get_services)):
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "collaborators": services.collaborators.health(),
        "queue": {
            "backend": type(services.queue).__name__,
            "dispatch": await services.queue.queue_length(Queues.DISPATCH),
            "delayed": await services.queue.queue_length(Queues.DELAYED),
            "dead_letter": await services.queue.queue_length(Queues.DLQ),
        },
    }


# ── Contact events ────────────────────────────────────────────

@router.post("/api/v1/contacts/events")
async def receive_contact_event(req: ContactEventRequest, services: EngineServices = Depends(get_services)):
    event = ContactEvent(
        contact=req.contact,
        account_id=req.account_id,
        triggered_at=req.triggered_at or utcnow(),
        trigger_source=req.trigger_source or services.settings.engine.default_trigger_source,
    )
    execution = await services.orchestrator.handle_contact_event(event)
    if execution is None:
        return {"triggered": False, "execution": None}
    return {"triggered": True, "execution": execution.model_dump(mode="json")}


# ── Flows ─────────────────────────────────────────────────────

@router.get("/api/v1/flows")
async def list_flows(
    account_id: Optional[str] = None,
    enabled_only: bool = False,
    services: EngineServices = Depends(get_services),
):
    flows = await services.store.list_flows(account_id=account_id, enabled_only=enabled_only)
    return [f.model_dump(mode="json") for f in flows]


@router.post("/api/v1/flows", status_code=201)
async def create_flow(req: FlowRequest, services: EngineServices = Depends(get_services)):
    flow = Flow(**req.model_dump())
    _check_flow(flow, services)
    flow = await services.store.save_flow(flow)
    logger.info("flow_created", flow_id=flow.id, flow_name=flow.name)
    return flow.model_dump(mode="json")


@router.get("/api/v1/flows/{flow_id}")
async def get_flow(flow_id: str, services: EngineServices = Depends(get_services)):
    flow = await _get_flow_or_404(flow_id, services)
    return flow.model_dump(mode="json")


@router.put("/api/v1/flows/{flow_id}")
async def update_flow(flow_id: str, req: FlowRequest, services: EngineServices = Depends(get_services)):
    existing = await _get_flow_or_404(flow_id, services)
    flow = Flow(**req.model_dump(), id=existing.id, created_at=existing.created_at, updated_at=utcnow())
    _check_flow(flow, services)
    flow = await services.store.save_flow(flow)
    logger.info("flow_updated", flow_id=flow.id)
    return flow.model_dump(mode="json")


@router.delete("/api/v1/flows/{flow_id}")
async def delete_flow(flow_id: str, services: EngineServices = Depends(get_services)):
    if not await services.store.delete_flow(flow_id):
        raise HTTPException(404, "Flow not found")
    logger.info("flow_deleted", flow_id=flow_id)
    return {"deleted": True, "flow_id": flow_id}


@router.post("/api/v1/flows/{flow_id}/toggle")
async def toggle_flow(flow_id: str, req: ToggleRequest = None, services: EngineServices = Depends(get_services)):
    flow = await _get_flow_or_404(flow_id, services)
    target = not flow.is_enabled if req is None or req.is_enabled is None else req.is_enabled
    flow.is_enabled = target
    flow.updated_at = utcnow()
    _check_flow(flow, services)
    flow = await services.store.save_flow(flow)
    logger.info("flow_toggled", flow_id=flow.id, is_enabled=flow.is_enabled)
    return flow.model_dump(mode="json")


@router.put("/api/v1/flows/priorities/bulk")
async def update_priorities(req: PrioritiesRequest, services: EngineServices = Depends(get_services)):
    try:
        flows = await services.store.set_priorities({p.flow_id: p.priority for p in req.priorities})
    except KeyError as e:
        raise HTTPException(404, f"Flow not found: {e.args[0]}")
    return [f.model_dump(mode="json") for f in flows]


@router.post("/api/v1/flows/{flow_id}/test")
async def test_flow(flow_id: str, req: TestContactRequest, services: EngineServices = Depends(get_services)):
    """Dry run: would this contact match, and what would run. No side effects."""
    flow = await _get_flow_or_404(flow_id, services)
    return services.orchestrator.dry_run(flow, req.contact).model_dump(mode="json")


@router.post("/api/v1/flows/{flow_id}/test-run")
async def test_run_flow(flow_id: str, req: TestContactRequest, services: EngineServices = Depends(get_services)):
    """Run the flow with simulated side effects; recorded as a test run."""
    try:
        execution = await services.orchestrator.run_test(flow_id, req.contact)
    except FlowValidationError as e:
        raise HTTPException(status_code=400, detail={"errors": e.errors})
    if execution is None:
        raise HTTPException(404, "Flow not found")
    logs = await services.store.list_action_logs(execution.id)
    return {
        "execution": execution.model_dump(mode="json"),
        "action_logs": [l.model_dump(mode="json") for l in logs],
    }


# ── Executions ────────────────────────────────────────────────

@router.get("/api/v1/executions")
async def list_executions(
    account_id: Optional[str] = None,
    flow_id: Optional[str] = None,
    status: Optional[str] = None,
    contact_id: Optional[str] = None,
    include_test_runs: bool = True,
    limit: int = Query(50, le=200),
    offset: int = 0,
    services: EngineServices = Depends(get_services),
):
    try:
        status_filter = ExecutionStatus(status) if status else None
    except ValueError:
        raise HTTPException(400, f"Unknown execution status: {status}")
    executions = await services.store.list_executions(
        account_id=account_id,
        flow_id=flow_id,
        status=status_filter,
        contact_id=contact_id,
        include_test_runs=include_test_runs,
        limit=limit,
        offset=offset,
    )
    return [e.model_dump(mode="json") for e in executions]


@router.get("/api/v1/executions/{execution_id}")
async def get_execution(execution_id: str, services: EngineServices = Depends(get_services)):
    execution = await services.store.get_execution(execution_id)
    if execution is None:
        raise HTTPException(404, "Execution not found")
    logs = await services.store.list_action_logs(execution_id)
    return {
        "execution": execution.model_dump(mode="json"),
        "action_logs": [l.model_dump(mode="json") for l in logs],
    }


@router.post("/api/v1/executions/{execution_id}/cancel")
async def cancel_execution(execution_id: str, services: EngineServices = Depends(get_services)):
    existing = await services.store.get_execution(execution_id)
    if existing is None:
        raise HTTPException(404, "Execution not found")
    execution = await services.orchestrator.cancel(execution_id)
    if execution is None:
        raise HTTPException(409, f"Execution already {existing.status.value}")
    return execution.model_dump(mode="json")


# ── Analytics ─────────────────────────────────────────────────

@router.get("/api/v1/flows/{flow_id}/statistics")
async def flow_statistics(
    flow_id: str,
    include_test_runs: Optional[bool] = None,
    services: EngineServices = Depends(get_services),
):
    stats = await services.analytics.for_flow(flow_id, include_test_runs)
    if stats is None:
        raise HTTPException(404, "Flow not found")
    return stats.model_dump(mode="json")


@router.get("/api/v1/analytics")
async def analytics(
    account_id: Optional[str] = None,
    include_test_runs: Optional[bool] = None,
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    return await services.analytics.report(account_id, include_test_runs)


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
