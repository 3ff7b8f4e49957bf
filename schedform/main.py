"""FastAPI application for the SchedForm flow engine."""

import logging
import os
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import select

from schedform import analytics, monitoring
from schedform.auth import TenantAuthMiddleware, require_role
from schedform.config import Settings
from schedform.db import (
    AiAnalysisSession,
    AvailabilitySlot,
    ConversationalFlow,
    EventType,
    Form,
    FormQuestion,
    SessionFactory,
    get_session,
    init_db,
)
from schedform.flows.errors import FlowError
from schedform.flows.notifications import FlowNotifier
from schedform.flows.states import FlowStatus
from schedform.forms import ChoiceSpec, QuestionSpec, create_form, delete_form, submit_response
from schedform.integrations import hubspot, slack
from schedform.qualification.oracle import QualificationOracle
from schedform.schemas import (
    AbandonIn,
    ActivityIn,
    AnalysisOut,
    BookIn,
    CuratedSelectIn,
    EventTypeIn,
    EventTypeOut,
    FailIn,
    FlowEventOut,
    FlowOut,
    FlowStartIn,
    FormIn,
    FormOut,
    PublicFlowOut,
    QualificationOut,
    ReviewIn,
    SchedulingOptionsOut,
    SlotIn,
    SlotOut,
    SubmitIn,
)
from schedform.services import Services, build_services

logger = logging.getLogger("schedform.api")

monitoring.init_monitoring()

scheduler = AsyncIOScheduler()


def _integration_status() -> List[Dict[str, Any]]:
    return [
        {
            "key": "slack",
            "name": "Slack",
            "configured": slack.is_configured(),
            "details": {"events": "flow status changes"},
        },
        {
            "key": "hubspot",
            "name": "HubSpot",
            "configured": hubspot.is_configured(),
            "details": {"events": "qualified and booking updates"},
        },
    ]


async def run_qualification(services: Services, flow_id: str) -> None:
    try:
        await services.gateway.qualify(flow_id)
    except FlowError as exc:
        logger.info("Qualification skipped for flow %s: %s", flow_id, exc)
    except Exception as exc:
        monitoring.capture_exception(exc, flow_id=flow_id)


async def run_reaper(services: Services) -> None:
    try:
        await services.reaper.sweep()
    except Exception as exc:
        monitoring.capture_exception(exc)


def create_app(
    session_factory: SessionFactory = get_session,
    *,
    bind: Optional[AsyncEngine] = None,
    settings: Optional[Settings] = None,
    oracle: Optional[QualificationOracle] = None,
    notifier: Optional[FlowNotifier] = None,
    job_scheduler: Optional[Any] = None,
) -> FastAPI:
    services = build_services(settings, session_factory=session_factory, oracle=oracle, notifier=notifier)
    jobs = job_scheduler or scheduler

    app = FastAPI(title="SchedForm API")
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(
        TenantAuthMiddleware,
        exempt_paths={"/healthz"},
        exempt_prefixes={"/public/", "/docs", "/openapi", "/redoc"},
        session_factory=session_factory,
    )

    @app.exception_handler(FlowError)
    async def flow_error_handler(request: Request, exc: FlowError):
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc), "error": exc.code})

    @app.on_event("startup")
    async def on_startup():
        await init_db(bind)
        if not jobs.running:
            jobs.start()
        if not jobs.get_job("abandonment-reaper"):
            jobs.add_job(
                run_reaper,
                "interval",
                args=[services],
                minutes=services.settings.reaper_interval_minutes,
                id="abandonment-reaper",
            )

    @app.on_event("shutdown")
    async def on_shutdown():
        if jobs.running:
            jobs.shutdown(wait=False)
        await services.notifier.drain()

    async def scoped_flow(request: Request, flow_id: str) -> ConversationalFlow:
        flow = await services.machine.get(flow_id)
        if flow.organization_id != request.state.org_id:
            raise HTTPException(status_code=404, detail="Flow not found")
        return flow

    @app.get("/healthz")
    async def health_check():
        return {"status": "ok"}

    # --- respondent ----------------------------------------------------------

    @app.post("/public/forms/{form_id}/flows", response_model=PublicFlowOut)
    async def start_flow(form_id: str, payload: FlowStartIn, request: Request):
        """Start a conversational flow for a published form.

        Args:
            form_id: Form the respondent opened.
            payload: Session and attribution details.
            request: Incoming request, used for IP and user agent.

        Returns:
            PublicFlowOut: The new flow in ``form_started``.
        """
        async with session_factory() as session:
            form = await session.get(Form, form_id)
            if not form or form.status != "published":
                raise HTTPException(status_code=404, detail="Form not found")
            organization_id = form.organization_id

        flow = await services.machine.start_flow(
            organization_id,
            form_id,
            payload.session_id,
            event_type_id=payload.event_type_id,
            respondent_email=payload.respondent_email,
            respondent_name=payload.respondent_name,
            total_steps=payload.total_steps,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            referrer=payload.referrer,
            utm_source=payload.utm_source,
            utm_medium=payload.utm_medium,
            utm_campaign=payload.utm_campaign,
        )
        return PublicFlowOut.model_validate(flow)

    @app.get("/public/flows/{flow_id}", response_model=PublicFlowOut)
    async def view_flow(flow_id: str):
        return PublicFlowOut.model_validate(await services.machine.get(flow_id))

    @app.post("/public/flows/{flow_id}/activity", response_model=PublicFlowOut)
    async def record_activity(flow_id: str, payload: ActivityIn):
        flow = await services.machine.record_activity(
            flow_id,
            payload.current_step,
            completion_percentage=payload.completion_percentage,
            question_id=payload.question_id,
            expected_version=payload.expected_version,
        )
        return PublicFlowOut.model_validate(flow)

    @app.post("/public/flows/{flow_id}/submit", response_model=PublicFlowOut)
    async def submit_form(flow_id: str, payload: SubmitIn, background_tasks: BackgroundTasks):
        """Store the answers and queue qualification.

        Args:
            flow_id: Flow being completed.
            payload: Answers keyed by question id plus anti-abuse signals.
            background_tasks: Runs qualification once the response is sent.

        Returns:
            PublicFlowOut: The flow in ``form_completed``.
        """
        flow = await submit_response(
            services.machine,
            flow_id,
            payload.answers,
            respondent_email=payload.respondent_email,
            respondent_name=payload.respondent_name,
            spam_score=payload.spam_score,
            spam_flags=payload.spam_flags,
            expected_version=payload.expected_version,
        )
        background_tasks.add_task(run_qualification, services, flow.id)
        return PublicFlowOut.model_validate(flow)

    @app.post("/public/flows/{flow_id}/scheduling", response_model=SchedulingOptionsOut)
    async def open_scheduling(flow_id: str):
        options = await services.dispatcher.open_scheduling(flow_id)
        return SchedulingOptionsOut(
            flow_id=options.flow_id,
            mode=options.mode,
            slots=options.slots,
            requires_approval=options.requires_approval,
            email_verification_required=options.email_verification_required,
        )

    @app.get("/public/flows/{flow_id}/slots")
    async def list_slots(flow_id: str):
        return {"flow_id": flow_id, "slots": await services.dispatcher.list_slots(flow_id)}

    @app.post("/public/flows/{flow_id}/curated/view", response_model=PublicFlowOut)
    async def view_curated(flow_id: str):
        return PublicFlowOut.model_validate(await services.dispatcher.mark_curated_viewed(flow_id))

    @app.post("/public/flows/{flow_id}/curated/select", response_model=PublicFlowOut)
    async def select_curated(flow_id: str, payload: CuratedSelectIn):
        return PublicFlowOut.model_validate(await services.dispatcher.select_curated_slot(flow_id, payload.index))

    @app.post("/public/flows/{flow_id}/book", response_model=PublicFlowOut)
    async def book_slot(flow_id: str, payload: BookIn):
        flow = await services.dispatcher.book_slot(
            flow_id,
            payload.slot_id,
            guest_name=payload.guest_name,
            guest_email=payload.guest_email,
        )
        return PublicFlowOut.model_validate(flow)

    @app.post("/public/flows/{flow_id}/verify-email", response_model=PublicFlowOut)
    async def verify_email(flow_id: str):
        return PublicFlowOut.model_validate(await services.dispatcher.verify_email(flow_id))

    # --- operator: setup -----------------------------------------------------

    @app.post("/forms", response_model=FormOut)
    async def create_form_endpoint(payload: FormIn, request: Request):
        """Create a published form with weighted questions.

        Args:
            payload: Form definition including choices and their scores.
            request: FastAPI request providing the organization.

        Returns:
            FormOut: The persisted form.
        """
        require_role(request)
        form = await create_form(
            request.state.org_id,
            payload.title,
            payload.slug,
            [
                QuestionSpec(
                    title=q.title,
                    type=q.type,
                    is_required=q.is_required,
                    qualification_weight=q.qualification_weight,
                    choices=[ChoiceSpec(**choice.model_dump()) for choice in q.choices],
                )
                for q in payload.questions
            ],
            description=payload.description,
            session_factory=session_factory,
        )
        return FormOut.model_validate(form)

    @app.get("/forms/{form_id}/questions")
    async def list_questions(form_id: str, request: Request):
        async with session_factory() as session:
            form = await session.get(Form, form_id)
            if not form or form.organization_id != request.state.org_id:
                raise HTTPException(status_code=404, detail="Form not found")
            rows = await session.exec(
                select(FormQuestion).where(FormQuestion.form_id == form_id).order_by(FormQuestion.order_index)
            )
            return [{"id": q.id, "title": q.title, "order_index": q.order_index} for q in rows.all()]

    @app.delete("/forms/{form_id}")
    async def delete_form_endpoint(form_id: str, request: Request):
        require_role(request)
        await delete_form(request.state.org_id, form_id, session_factory=session_factory)
        return {"ok": True, "form_id": form_id}

    @app.post("/event-types", response_model=EventTypeOut)
    async def create_event_type(payload: EventTypeIn, request: Request):
        require_role(request)
        async with session_factory() as session:
            if payload.form_id:
                form = await session.get(Form, payload.form_id)
                if not form or form.organization_id != request.state.org_id:
                    raise HTTPException(status_code=404, detail="Form not found")
            event_type = EventType(organization_id=request.state.org_id, **payload.model_dump())
            session.add(event_type)
            await session.commit()
            return EventTypeOut.model_validate(event_type)

    @app.post("/event-types/{event_type_id}/slots", response_model=List[SlotOut])
    async def add_slots(event_type_id: str, payload: List[SlotIn], request: Request):
        require_role(request)
        async with session_factory() as session:
            event_type = await session.get(EventType, event_type_id)
            if not event_type or event_type.organization_id != request.state.org_id:
                raise HTTPException(status_code=404, detail="Event type not found")
            slots = []
            for item in payload:
                if item.end_time <= item.start_time:
                    raise HTTPException(status_code=422, detail="Slot must end after it starts")
                slot = AvailabilitySlot(event_type_id=event_type_id, **item.model_dump())
                session.add(slot)
                slots.append(slot)
            await session.commit()
            return [SlotOut.model_validate(slot) for slot in slots]

    # --- operator: flows -----------------------------------------------------

    @app.get("/flows", response_model=List[FlowOut])
    async def list_flows(
        request: Request,
        status: Optional[FlowStatus] = None,
        form_id: Optional[str] = None,
        limit: int = 100,
    ):
        async with session_factory() as session:
            statement = select(ConversationalFlow).where(ConversationalFlow.organization_id == request.state.org_id)
            if status:
                statement = statement.where(ConversationalFlow.status == status.value)
            if form_id:
                statement = statement.where(ConversationalFlow.form_id == form_id)
            statement = statement.order_by(ConversationalFlow.last_active_at.desc()).limit(min(limit, 500))
            flows = (await session.exec(statement)).all()
            return [FlowOut.model_validate(flow) for flow in flows]

    @app.get("/flows/{flow_id}", response_model=FlowOut)
    async def get_flow(flow_id: str, request: Request):
        return FlowOut.model_validate(await scoped_flow(request, flow_id))

    @app.get("/flows/{flow_id}/events", response_model=List[FlowEventOut])
    async def list_events(flow_id: str, request: Request):
        await scoped_flow(request, flow_id)
        return [FlowEventOut.model_validate(event) for event in await services.machine.list_events(flow_id)]

    @app.get("/flows/{flow_id}/analysis", response_model=List[AnalysisOut])
    async def list_analysis(flow_id: str, request: Request):
        await scoped_flow(request, flow_id)
        async with session_factory() as session:
            rows = await session.exec(
                select(AiAnalysisSession)
                .where(AiAnalysisSession.flow_id == flow_id)
                .order_by(AiAnalysisSession.created_at.asc())
            )
            return [AnalysisOut.model_validate(row) for row in rows.all()]

    @app.post("/flows/{flow_id}/qualify", response_model=QualificationOut)
    async def qualify_flow(flow_id: str, request: Request):
        await scoped_flow(request, flow_id)
        outcome = await services.gateway.qualify(flow_id)
        return QualificationOut(
            flow_id=outcome.flow_id,
            status=outcome.status,
            score=outcome.score,
            attempts=outcome.attempts,
            manual_review=outcome.manual_review,
            discarded=outcome.discarded,
        )

    @app.post("/flows/{flow_id}/review", response_model=FlowOut)
    async def review_flow(flow_id: str, payload: ReviewIn, request: Request):
        await scoped_flow(request, flow_id)
        flow = await services.gateway.resolve_manual_review(
            flow_id,
            request.state.user_id,
            approve=payload.approve,
            score=payload.score,
            note=payload.note,
        )
        return FlowOut.model_validate(flow)

    @app.post("/flows/{flow_id}/approve", response_model=FlowOut)
    async def approve_flow(flow_id: str, request: Request):
        await scoped_flow(request, flow_id)
        return FlowOut.model_validate(await services.dispatcher.approve(flow_id, request.state.user_id))

    @app.post("/flows/{flow_id}/confirm", response_model=FlowOut)
    async def confirm_booking(flow_id: str, request: Request):
        await scoped_flow(request, flow_id)
        return FlowOut.model_validate(await services.dispatcher.confirm_booking(flow_id))

    @app.post("/flows/{flow_id}/fail", response_model=FlowOut)
    async def fail_booking(flow_id: str, payload: FailIn, request: Request):
        await scoped_flow(request, flow_id)
        return FlowOut.model_validate(await services.dispatcher.fail_booking(flow_id, payload.reason))

    @app.post("/flows/{flow_id}/abandon", response_model=FlowOut)
    async def abandon_flow(flow_id: str, payload: AbandonIn, request: Request):
        await scoped_flow(request, flow_id)
        flow = await services.machine.abandon(flow_id, payload.reason, expected_version=payload.expected_version)
        return FlowOut.model_validate(flow)

    @app.post("/flows/{flow_id}/reopen", response_model=FlowOut)
    async def reopen_flow(flow_id: str, request: Request):
        await scoped_flow(request, flow_id)
        return FlowOut.model_validate(await services.machine.reopen(flow_id, actor_id=request.state.user_id))

    @app.post("/flows/sweep")
    async def sweep_flows(request: Request):
        require_role(request)
        report = await services.reaper.sweep()
        return report.as_dict()

    # --- reporting -----------------------------------------------------------

    @app.get("/analytics/summary")
    async def analytics_summary(
        request: Request,
        start: Optional[str] = None,
        end: Optional[str] = None,
        form_id: Optional[str] = None,
    ):
        """Return flow funnel metrics for the authenticated organization.

        Args:
            request: FastAPI request providing the organization.
            start: Optional ISO date lower bound.
            end: Optional ISO date upper bound.
            form_id: Optional form filter.

        Returns:
            dict: Counter totals, status breakdown and conversion rates.
        """
        return await analytics.fetch_summary(
            request.state.org_id,
            start=start,
            end=end,
            form_id=form_id,
            session_factory=session_factory,
        )

    @app.get("/integrations")
    async def integrations_status(request: Request):
        _ = request.state.user_id  # ensure middleware runs
        return {"integrations": _integration_status()}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("API_PORT", "8000")))
