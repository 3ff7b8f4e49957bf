"""
Flow store and status transition validator.

Every write to a conversational flow goes through this module. Writes are
versioned (``UPDATE ... WHERE version = :expected``), append exactly one
FlowEvent, bump the daily analytics counter for the milestone reached and,
once the transaction commits, publish a FlowNotification.
"""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from schedform import analytics
from schedform.db import (
    AiAnalysisSession,
    ConversationalFlow,
    EventType,
    FlowEvent,
    Form,
    SessionFactory,
    User,
    get_session,
    utcnow,
)
from schedform.flows.errors import (
    ApprovalNotAuthorized,
    ApprovalRequired,
    ConcurrentModification,
    FlowNotFound,
    FlowTerminated,
    FormNotFound,
    InvalidTransition,
    TransitionPreconditionFailed,
    VerificationRequired,
)
from schedform.flows.notifications import FlowNotification, FlowNotifier
from schedform.flows.payloads import (
    AbandonmentData,
    ActivityData,
    FormStartedData,
    ReopenData,
    dump_payload,
)
from schedform.flows.states import REOPEN_STATUS, FlowStatus, SchedulingMode, can_transition, is_terminal

_PENDING_KEY = "schedform.pending_notifications"
_CONTENTION_MARKERS = ("database is locked", "could not serialize", "deadlock detected")

# event names for transitions that are not named by the caller
DEFAULT_EVENT_TYPES: Dict[FlowStatus, str] = {
    FlowStatus.FORM_COMPLETED: "form_completed",
    FlowStatus.QUALIFYING: "qualification_started",
    FlowStatus.QUALIFIED: "qualified",
    FlowStatus.DISQUALIFIED: "disqualified",
    FlowStatus.SPAM_DETECTED: "spam_detected",
    FlowStatus.SCHEDULING_OPTIONS: "scheduling_started",
    FlowStatus.BOOKING_PENDING: "booking_requested",
    FlowStatus.BOOKING_CONFIRMED: "booking_confirmed",
    FlowStatus.BOOKING_FAILED: "booking_failed",
    FlowStatus.ABANDONED: "flow_abandoned",
}


def _is_contention(exc: DBAPIError) -> bool:
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _CONTENTION_MARKERS)


def _elapsed_seconds(since: Optional[datetime], now: datetime) -> Optional[int]:
    if since is None:
        return None
    return max(1, int((now - since).total_seconds()))


OPERATOR_ROLES = ("owner", "admin")


async def require_operator(session: AsyncSession, organization_id: str, user_id: str) -> User:
    user = await session.get(User, user_id)
    if user is None or user.organization_id != organization_id or user.role not in OPERATOR_ROLES:
        raise ApprovalNotAuthorized(f"User {user_id} cannot act on flows of organization {organization_id}")
    return user


class FlowStateMachine:
    def __init__(
        self,
        session_factory: SessionFactory = get_session,
        *,
        notifier: Optional[FlowNotifier] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.session_factory = session_factory
        self.notifier = notifier
        self.logger = logger or logging.getLogger("flows.machine")

    # --- transactions --------------------------------------------------------

    @asynccontextmanager
    async def unit_of_work(self, flow_id: Optional[str] = None) -> AsyncIterator[AsyncSession]:
        """Session whose flow changes commit together and notify afterwards.

        Write contention reported by the database is surfaced as
        ConcurrentModification so callers can re-read and retry.
        """
        async with self.session_factory() as session:
            session.info[_PENDING_KEY] = []
            try:
                yield session
                await session.commit()
            except DBAPIError as exc:
                if _is_contention(exc):
                    raise ConcurrentModification(flow_id or "unknown") from exc
                raise
            pending: List[FlowNotification] = session.info.pop(_PENDING_KEY, [])

        if self.notifier is not None:
            for notification in pending:
                self.notifier.publish(notification)

    async def load(self, session: AsyncSession, flow_id: str) -> ConversationalFlow:
        flow = await session.get(ConversationalFlow, flow_id)
        if flow is None:
            raise FlowNotFound(flow_id)
        return flow

    # --- reads ---------------------------------------------------------------

    async def get(self, flow_id: str) -> ConversationalFlow:
        async with self.session_factory() as session:
            return await self.load(session, flow_id)

    async def list_events(self, flow_id: str) -> List[FlowEvent]:
        async with self.session_factory() as session:
            await self.load(session, flow_id)
            rows = await session.exec(
                select(FlowEvent)
                .where(FlowEvent.flow_id == flow_id)
                .order_by(FlowEvent.flow_version.asc(), FlowEvent.created_at.asc())
            )
            return list(rows.all())

    # --- public operations ---------------------------------------------------

    async def start_flow(
        self,
        organization_id: str,
        form_id: str,
        session_id: str,
        *,
        event_type_id: Optional[str] = None,
        respondent_email: Optional[str] = None,
        respondent_name: Optional[str] = None,
        total_steps: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        referrer: Optional[str] = None,
        utm_source: Optional[str] = None,
        utm_medium: Optional[str] = None,
        utm_campaign: Optional[str] = None,
    ) -> ConversationalFlow:
        async with self.unit_of_work() as session:
            form = await session.get(Form, form_id)
            if form is None or form.organization_id != organization_id:
                raise FormNotFound(form_id)

            event_type = await self._event_type_for(session, form_id, event_type_id)
            mode = event_type.scheduling_mode if event_type else SchedulingMode.INSTANT.value

            now = utcnow()
            flow = ConversationalFlow(
                organization_id=organization_id,
                form_id=form_id,
                event_type_id=event_type.id if event_type else None,
                status=FlowStatus.FORM_STARTED.value,
                scheduling_mode=mode,
                session_id=session_id,
                respondent_email=respondent_email,
                respondent_name=respondent_name,
                total_steps=total_steps,
                ip_address=ip_address,
                user_agent=user_agent,
                referrer=referrer,
                utm_source=utm_source,
                utm_medium=utm_medium,
                utm_campaign=utm_campaign,
                started_at=now,
                last_active_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(flow)
            await session.flush()

            payload = FormStartedData(form_id=form_id, session_id=session_id, total_steps=total_steps)
            self._append_event(
                session,
                flow,
                event_type="form_started",
                previous=None,
                new=FlowStatus.FORM_STARTED,
                payload=payload,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            await analytics.record_status(session, flow, FlowStatus.FORM_STARTED, moment=now)
            self._queue_notification(session, flow, None, FlowStatus.FORM_STARTED, "form_started", payload)

        self.logger.info(
            "flow",
            extra={"flow": {"flow_id": flow.id, "status": flow.status, "event": "form_started"}},
        )
        return flow

    async def transition(
        self,
        flow_id: str,
        target: FlowStatus,
        *,
        event_type: Optional[str] = None,
        payload: Optional[BaseModel] = None,
        changes: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> ConversationalFlow:
        async with self.unit_of_work(flow_id) as session:
            flow = await self.load(session, flow_id)
            await self.apply(
                session,
                flow,
                target,
                event_type=event_type,
                payload=payload,
                changes=changes,
                expected_version=expected_version,
            )
        return flow

    async def abandon(
        self,
        flow_id: str,
        reason: str,
        *,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ConversationalFlow:
        async with self.unit_of_work(flow_id) as session:
            flow = await self.load(session, flow_id)
            moment = now or utcnow()
            inactive = int((moment - flow.last_active_at).total_seconds()) if flow.last_active_at else None
            await self.apply(
                session,
                flow,
                FlowStatus.ABANDONED,
                payload=AbandonmentData(reason=reason, inactive_seconds=inactive),
                changes={"abandonment_reason": reason},
                expected_version=expected_version,
            )
        return flow

    async def reopen(self, flow_id: str, *, actor_id: Optional[str] = None) -> ConversationalFlow:
        """Recover an abandoned flow back to the point after form submission.

        Flows abandoned while still in ``form_started`` have no stored response,
        so landing them in ``form_completed`` would leave nothing to qualify and
        the ``qualifying`` precondition could never be met. Those are refused
        with ``TransitionPreconditionFailed``; the respondent starts a new flow.
        """
        async with self.unit_of_work(flow_id) as session:
            flow = await self.load(session, flow_id)
            current = FlowStatus(flow.status)
            if current != FlowStatus.ABANDONED:
                raise InvalidTransition(
                    flow.id,
                    current.value,
                    REOPEN_STATUS.value,
                    message=f"Only abandoned flows can be reopened; flow {flow.id} is '{current.value}'",
                )
            if flow.form_completed_at is None:
                raise TransitionPreconditionFailed(
                    flow.id,
                    current.value,
                    REOPEN_STATUS.value,
                    message=f"Flow {flow.id} was abandoned before its form was completed",
                )

            payload = ReopenData(reopened_by=actor_id, abandoned_at=flow.abandoned_at)
            now = utcnow()
            await self._write(
                session,
                flow,
                {
                    "status": REOPEN_STATUS.value,
                    "abandoned_at": None,
                    "abandonment_reason": None,
                    "last_active_at": now,
                    "updated_at": now,
                },
            )
            self._append_event(
                session,
                flow,
                event_type="flow_reopened",
                previous=current,
                new=REOPEN_STATUS,
                payload=payload,
            )
            await analytics.increment(session, flow.organization_id, flow.form_id, "reopened", moment=now)
            self._queue_notification(session, flow, current, REOPEN_STATUS, "flow_reopened", payload)
        return flow

    async def record_activity(
        self,
        flow_id: str,
        current_step: int,
        *,
        completion_percentage: Optional[float] = None,
        question_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ConversationalFlow:
        async with self.unit_of_work(flow_id) as session:
            flow = await self.load(session, flow_id)
            changes: Dict[str, Any] = {"current_step": max(1, current_step)}
            if completion_percentage is not None:
                changes["completion_percentage"] = max(0.0, min(100.0, completion_percentage))
            payload = ActivityData(
                current_step=changes["current_step"],
                completion_percentage=changes.get("completion_percentage"),
                question_id=question_id,
            )
            await self.note(
                session,
                flow,
                "question_answered",
                payload=payload,
                changes=changes,
                expected_version=expected_version,
                notify=False,
            )
        return flow

    async def annotate(
        self,
        flow_id: str,
        event_type: str,
        *,
        payload: Optional[BaseModel] = None,
        changes: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> ConversationalFlow:
        async with self.unit_of_work(flow_id) as session:
            flow = await self.load(session, flow_id)
            await self.note(
                session,
                flow,
                event_type,
                payload=payload,
                changes=changes,
                expected_version=expected_version,
            )
        return flow

    # --- in-session building blocks ------------------------------------------

    async def apply(
        self,
        session: AsyncSession,
        flow: ConversationalFlow,
        target: FlowStatus,
        *,
        event_type: Optional[str] = None,
        payload: Optional[BaseModel] = None,
        changes: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> ConversationalFlow:
        """Validate and stage a status transition in the caller's session."""
        started = time.perf_counter()
        target = FlowStatus(target)
        current = FlowStatus(flow.status)

        if expected_version is not None and expected_version != flow.version:
            raise ConcurrentModification(flow.id, expected_version)
        if is_terminal(current):
            raise FlowTerminated(flow.id, current.value, target.value)
        if not can_transition(current, target):
            raise InvalidTransition(flow.id, current.value, target.value)

        values: Dict[str, Any] = dict(changes or {})
        await self._check_preconditions(session, flow, current, target, values)

        now = utcnow()
        values.update(self._lifecycle_stamps(flow, target, now))
        values["status"] = target.value
        values["last_active_at"] = now
        values["updated_at"] = now
        await self._write(session, flow, values)

        name = event_type or DEFAULT_EVENT_TYPES[target]
        self._append_event(
            session,
            flow,
            event_type=name,
            previous=current,
            new=target,
            payload=payload,
            processing_time=int((time.perf_counter() - started) * 1000),
        )
        await analytics.record_status(session, flow, target, moment=now)
        self._queue_notification(session, flow, current, target, name, payload)
        self.logger.info(
            "flow",
            extra={
                "flow": {
                    "flow_id": flow.id,
                    "from": current.value,
                    "to": target.value,
                    "event": name,
                    "version": flow.version,
                }
            },
        )
        return flow

    async def note(
        self,
        session: AsyncSession,
        flow: ConversationalFlow,
        event_type: str,
        *,
        payload: Optional[BaseModel] = None,
        changes: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
        notify: bool = True,
    ) -> ConversationalFlow:
        """Stage a non-transition update; previous and new status are equal."""
        current = FlowStatus(flow.status)
        if expected_version is not None and expected_version != flow.version:
            raise ConcurrentModification(flow.id, expected_version)
        if is_terminal(current):
            raise FlowTerminated(flow.id, current.value)

        now = utcnow()
        values: Dict[str, Any] = dict(changes or {})
        values["last_active_at"] = now
        values["updated_at"] = now
        await self._write(session, flow, values)
        self._append_event(session, flow, event_type=event_type, previous=current, new=current, payload=payload)
        if notify:
            self._queue_notification(session, flow, current, current, event_type, payload)
        return flow

    # --- internals -----------------------------------------------------------

    async def _event_type_for(
        self, session: AsyncSession, form_id: str, event_type_id: Optional[str]
    ) -> Optional[EventType]:
        if event_type_id:
            return await session.get(EventType, event_type_id)
        result = await session.exec(
            select(EventType)
            .where(EventType.form_id == form_id, EventType.is_active == True)  # noqa: E712
            .order_by(EventType.created_at.asc())
        )
        return result.first()

    async def _check_preconditions(
        self,
        session: AsyncSession,
        flow: ConversationalFlow,
        current: FlowStatus,
        target: FlowStatus,
        changes: Dict[str, Any],
    ) -> None:
        def value(name: str) -> Any:
            return changes[name] if name in changes else getattr(flow, name)

        if target == FlowStatus.QUALIFYING and value("form_completed_at") is None:
            raise TransitionPreconditionFailed(
                flow.id, current.value, target.value, message=f"Flow {flow.id} has no completed form"
            )

        if target in (FlowStatus.QUALIFIED, FlowStatus.DISQUALIFIED):
            analysis = await session.exec(
                select(AiAnalysisSession.id)
                .where(
                    AiAnalysisSession.flow_id == flow.id,
                    AiAnalysisSession.analysis_type == "qualification",
                    AiAnalysisSession.was_successful == True,  # noqa: E712
                )
                .limit(1)
            )
            if analysis.first() is None:
                raise TransitionPreconditionFailed(
                    flow.id,
                    current.value,
                    target.value,
                    message=f"Flow {flow.id} has no successful qualification analysis",
                )

        if target == FlowStatus.BOOKING_PENDING:
            if value("requires_approval") and value("approved_at") is None:
                raise ApprovalRequired(
                    flow.id, current.value, target.value, message=f"Flow {flow.id} is awaiting approval"
                )
            if value("email_verification_required") and value("email_verified_at") is None:
                raise VerificationRequired(
                    flow.id, current.value, target.value, message=f"Flow {flow.id} has an unverified email"
                )

        if target == FlowStatus.BOOKING_CONFIRMED and value("booking_id") is None:
            raise TransitionPreconditionFailed(
                flow.id, current.value, target.value, message=f"Flow {flow.id} has no booking"
            )

    def _lifecycle_stamps(self, flow: ConversationalFlow, target: FlowStatus, now: datetime) -> Dict[str, Any]:
        if target == FlowStatus.FORM_COMPLETED:
            return {"form_completed_at": now}
        if target in (FlowStatus.QUALIFIED, FlowStatus.DISQUALIFIED, FlowStatus.SPAM_DETECTED):
            return {
                "qualification_completed_at": now,
                "time_to_qualify": _elapsed_seconds(flow.form_completed_at or flow.started_at, now),
            }
        if target == FlowStatus.SCHEDULING_OPTIONS:
            return {"scheduling_started_at": now}
        if target == FlowStatus.BOOKING_CONFIRMED:
            return {
                "booking_completed_at": now,
                "time_to_book": _elapsed_seconds(flow.started_at, now),
            }
        if target == FlowStatus.ABANDONED:
            return {"abandoned_at": now}
        return {}

    async def _write(self, session: AsyncSession, flow: ConversationalFlow, values: Dict[str, Any]) -> None:
        expected = flow.version
        values = dict(values)
        values["version"] = expected + 1
        result = await session.execute(
            update(ConversationalFlow)
            .where(ConversationalFlow.id == flow.id, ConversationalFlow.version == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModification(flow.id, expected)
        for key, item in values.items():
            set_committed_value(flow, key, item)

    def _append_event(
        self,
        session: AsyncSession,
        flow: ConversationalFlow,
        *,
        event_type: str,
        previous: Optional[FlowStatus],
        new: Optional[FlowStatus],
        payload: Optional[BaseModel] = None,
        processing_time: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> FlowEvent:
        event = FlowEvent(
            flow_id=flow.id,
            event_type=event_type,
            event_data=dump_payload(payload),
            flow_version=flow.version,
            previous_status=previous.value if previous else None,
            new_status=new.value if new else None,
            processing_time=processing_time,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session.add(event)
        return event

    def _queue_notification(
        self,
        session: AsyncSession,
        flow: ConversationalFlow,
        previous: Optional[FlowStatus],
        new: FlowStatus,
        event_type: str,
        payload: Optional[BaseModel],
    ) -> None:
        pending = session.info.get(_PENDING_KEY)
        if pending is None:
            return
        pending.append(
            FlowNotification(
                flow_id=flow.id,
                organization_id=flow.organization_id,
                previous_status=previous.value if previous else None,
                new_status=new.value,
                event_type=event_type,
                payload=dump_payload(payload),
            )
        )
