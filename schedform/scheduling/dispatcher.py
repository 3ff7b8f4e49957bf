import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from schedform.config import Settings
from schedform.db import (
    AvailabilitySlot,
    Booking,
    ConversationalFlow,
    EventType,
    SchedulingRecommendation,
    utcnow,
)
from schedform.flows.errors import ApprovalNotPending, FlowError, FlowTerminated, InvalidTransition, SlotUnavailable
from schedform.flows.machine import FlowStateMachine, require_operator
from schedform.flows.payloads import (
    ApprovalData,
    BookingData,
    BookingFailedData,
    CuratedViewedData,
    SchedulingData,
    VerificationData,
)
from schedform.flows.states import FlowStatus, SchedulingMode, is_terminal
from schedform.scheduling.availability import (
    CalendarProvider,
    find_open_slots,
    rank_for_curation,
    slot_summary,
)

logger = logging.getLogger("scheduling.dispatcher")


@dataclass
class SchedulingOptions:
    flow_id: str
    mode: str
    slots: List[Dict[str, Any]] = field(default_factory=list)
    requires_approval: bool = False
    email_verification_required: bool = False


class SchedulingDispatcher:
    """Routes qualified flows into instant, curated or approval scheduling."""

    def __init__(
        self,
        machine: FlowStateMachine,
        *,
        settings: Optional[Settings] = None,
        calendar: Optional[CalendarProvider] = None,
    ) -> None:
        self.machine = machine
        self.settings = settings or Settings.from_env()
        self.calendar = calendar

    async def open_scheduling(self, flow_id: str) -> SchedulingOptions:
        async with self.machine.unit_of_work(flow_id) as session:
            flow = await self.machine.load(session, flow_id)
            event_type = await self._event_type(session, flow)
            mode = SchedulingMode(flow.scheduling_mode)
            changes: Dict[str, Any] = {}

            if mode == SchedulingMode.APPROVAL or event_type.requires_approval:
                changes["requires_approval"] = True
                changes["approval_required_reason"] = "approval_mode"

            open_slots = await self._open_slots(session, flow, event_type)
            slots = [slot_summary(slot) for slot in open_slots]
            if mode == SchedulingMode.CURATED:
                slots = await self._curate(session, flow, open_slots)
                now = utcnow()
                changes.update(
                    {
                        "curated_slots": slots,
                        "curated_slots_generated": True,
                        "curated_slots_sent_at": now,
                    }
                )

            await self.machine.apply(
                session,
                flow,
                FlowStatus.SCHEDULING_OPTIONS,
                payload=SchedulingData(
                    mode=mode.value,
                    slot_count=len(slots),
                    requires_approval=bool(changes.get("requires_approval", flow.requires_approval)),
                ),
                changes=changes,
            )

            if flow.email_verification_required and flow.email_verification_sent_at is None:
                await self.machine.note(
                    session,
                    flow,
                    "email_verification_requested",
                    payload=VerificationData(stage="requested", email=flow.respondent_email),
                    changes={"email_verification_sent_at": utcnow()},
                )

        return SchedulingOptions(
            flow_id=flow.id,
            mode=mode.value,
            slots=slots,
            requires_approval=flow.requires_approval,
            email_verification_required=flow.email_verification_required,
        )

    async def list_slots(self, flow_id: str) -> List[Dict[str, Any]]:
        async with self.machine.session_factory() as session:
            flow = await self.machine.load(session, flow_id)
            self._require_status(flow, FlowStatus.SCHEDULING_OPTIONS)
            if flow.scheduling_mode == SchedulingMode.CURATED.value:
                return list(flow.curated_slots or [])
            event_type = await self._event_type(session, flow)
            return [slot_summary(slot) for slot in await self._open_slots(session, flow, event_type)]

    async def mark_curated_viewed(self, flow_id: str) -> ConversationalFlow:
        async with self.machine.unit_of_work(flow_id) as session:
            flow = await self.machine.load(session, flow_id)
            self._require_curated(flow)
            if flow.curated_slots_viewed_at is None:
                await self.machine.note(
                    session,
                    flow,
                    "curated_slots_viewed",
                    payload=CuratedViewedData(slot_count=len(flow.curated_slots or [])),
                    changes={"curated_slots_viewed_at": utcnow()},
                )
        return flow

    async def select_curated_slot(self, flow_id: str, index: int) -> ConversationalFlow:
        flow = await self.machine.get(flow_id)
        self._require_curated(flow)
        curated = flow.curated_slots or []
        if index < 0 or index >= len(curated):
            raise SlotUnavailable(str(index), reason="no curated slot at that position", flow_id=flow_id)
        return await self.book_slot(flow_id, curated[index]["slot_id"])

    async def book_slot(
        self,
        flow_id: str,
        slot_id: str,
        *,
        guest_name: Optional[str] = None,
        guest_email: Optional[str] = None,
    ) -> ConversationalFlow:
        """Claim one unit of slot capacity and move the flow to ``booking_pending``.

        The capacity claim, the pending booking and the transition commit
        together; if any of them fails nothing is kept.
        """
        async with self.machine.unit_of_work(flow_id) as session:
            flow = await self.machine.load(session, flow_id)
            self._require_status(flow, FlowStatus.SCHEDULING_OPTIONS, target=FlowStatus.BOOKING_PENDING)
            event_type = await self._event_type(session, flow)

            slot = await session.get(AvailabilitySlot, slot_id)
            if slot is None or slot.event_type_id != event_type.id:
                raise SlotUnavailable(slot_id, reason="slot not found", flow_id=flow.id)
            offered = {s.id for s in await self._open_slots(session, flow, event_type)}
            if slot_id not in offered:
                raise SlotUnavailable(slot_id, flow_id=flow.id)
            if flow.scheduling_mode == SchedulingMode.CURATED.value:
                curated = {s["slot_id"] for s in flow.curated_slots or []}
                if slot_id not in curated:
                    raise SlotUnavailable(slot_id, reason="slot was not offered to this prospect", flow_id=flow.id)

            claimed = await session.execute(
                update(AvailabilitySlot)
                .where(
                    AvailabilitySlot.id == slot_id,
                    AvailabilitySlot.current_bookings < AvailabilitySlot.max_bookings,
                    AvailabilitySlot.is_available == True,  # noqa: E712
                    AvailabilitySlot.is_blocked == False,  # noqa: E712
                )
                .values(current_bookings=AvailabilitySlot.current_bookings + 1)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise SlotUnavailable(slot_id, flow_id=flow.id)

            booking = Booking(
                organization_id=flow.organization_id,
                event_type_id=event_type.id,
                availability_slot_id=slot.id,
                form_response_id=flow.form_response_id,
                start_time=slot.start_time,
                end_time=slot.end_time,
                time_zone=slot.time_zone,
                guest_name=guest_name or flow.respondent_name,
                guest_email=guest_email or flow.respondent_email,
                status="pending",
                qualification_score=flow.qualification_score,
                qualification_summary=flow.prospect_summary,
            )
            session.add(booking)
            await session.flush()

            await self.machine.apply(
                session,
                flow,
                FlowStatus.BOOKING_PENDING,
                payload=BookingData(
                    booking_id=booking.id,
                    slot_id=slot.id,
                    start_time=booking.start_time,
                    end_time=booking.end_time,
                ),
                changes={"booking_id": booking.id},
            )
        logger.info("Booked slot %s for flow %s", slot_id, flow_id)
        return flow

    async def approve(self, flow_id: str, approver_id: str) -> ConversationalFlow:
        async with self.machine.unit_of_work(flow_id) as session:
            flow = await self.machine.load(session, flow_id)
            await require_operator(session, flow.organization_id, approver_id)
            if is_terminal(FlowStatus(flow.status)):
                raise FlowTerminated(flow.id, flow.status)
            # approval only settles the gate opened by open_scheduling
            if (
                flow.status != FlowStatus.SCHEDULING_OPTIONS.value
                or not flow.requires_approval
                or flow.approved_at is not None
            ):
                raise ApprovalNotPending(f"Flow {flow.id} is not awaiting approval", flow_id=flow.id)
            now = utcnow()
            await self.machine.note(
                session,
                flow,
                "flow_approved",
                payload=ApprovalData(approved_by=approver_id),
                changes={"approved_by": approver_id, "approved_at": now},
            )
        return flow

    async def verify_email(self, flow_id: str) -> ConversationalFlow:
        async with self.machine.unit_of_work(flow_id) as session:
            flow = await self.machine.load(session, flow_id)
            if flow.email_verified_at is None:
                await self.machine.note(
                    session,
                    flow,
                    "email_verified",
                    payload=VerificationData(stage="verified", email=flow.respondent_email),
                    changes={"email_verified_at": utcnow()},
                )
        return flow

    async def confirm_booking(self, flow_id: str, *, confirmation_code: Optional[str] = None) -> ConversationalFlow:
        async with self.machine.unit_of_work(flow_id) as session:
            flow = await self.machine.load(session, flow_id)
            booking = await self._booking(session, flow, FlowStatus.BOOKING_CONFIRMED)
            booking.status = "confirmed"
            booking.confirmation_code = confirmation_code or secrets.token_hex(4).upper()
            booking.updated_at = utcnow()
            session.add(booking)
            await self.machine.apply(
                session,
                flow,
                FlowStatus.BOOKING_CONFIRMED,
                payload=BookingData(
                    booking_id=booking.id,
                    slot_id=booking.availability_slot_id,
                    start_time=booking.start_time,
                    end_time=booking.end_time,
                    confirmation_code=booking.confirmation_code,
                ),
            )
        return flow

    async def fail_booking(self, flow_id: str, reason: str) -> ConversationalFlow:
        async with self.machine.unit_of_work(flow_id) as session:
            flow = await self.machine.load(session, flow_id)
            booking = await self._booking(session, flow, FlowStatus.BOOKING_FAILED)
            now = utcnow()
            booking.status = "cancelled"
            booking.cancellation_reason = reason
            booking.cancelled_at = now
            booking.updated_at = now
            session.add(booking)
            if booking.availability_slot_id:
                await session.execute(
                    update(AvailabilitySlot)
                    .where(
                        AvailabilitySlot.id == booking.availability_slot_id,
                        AvailabilitySlot.current_bookings > 0,
                    )
                    .values(current_bookings=AvailabilitySlot.current_bookings - 1)
                    .execution_options(synchronize_session=False)
                )
            await self.machine.apply(
                session,
                flow,
                FlowStatus.BOOKING_FAILED,
                payload=BookingFailedData(booking_id=booking.id, reason=reason),
            )
        return flow

    # --- helpers -------------------------------------------------------------

    async def _event_type(self, session: AsyncSession, flow: ConversationalFlow) -> EventType:
        event_type = await session.get(EventType, flow.event_type_id) if flow.event_type_id else None
        if event_type is None:
            raise FlowError(f"Flow {flow.id} has no event type to schedule", flow_id=flow.id)
        return event_type

    async def _open_slots(
        self, session: AsyncSession, flow: ConversationalFlow, event_type: EventType
    ) -> List[AvailabilitySlot]:
        return await find_open_slots(
            session,
            event_type,
            now=utcnow(),
            guest_email=flow.respondent_email,
            calendar=self.calendar,
        )

    async def _curate(
        self, session: AsyncSession, flow: ConversationalFlow, open_slots: List[AvailabilitySlot]
    ) -> List[Dict[str, Any]]:
        count = self.settings.curated_slot_count
        by_id = {slot.id: slot for slot in open_slots}
        recommendation = (
            await session.exec(select(SchedulingRecommendation).where(SchedulingRecommendation.flow_id == flow.id))
        ).first()
        picked: List[AvailabilitySlot] = []
        if recommendation is not None:
            for item in recommendation.optimal_time_slots or []:
                slot = by_id.get(item.get("slot_id"))
                if slot is not None and slot not in picked:
                    picked.append(slot)
        if not picked:
            picked = rank_for_curation(open_slots, count)
        return [slot_summary(slot) for slot in sorted(picked[:count], key=lambda s: s.start_time)]

    async def _booking(self, session: AsyncSession, flow: ConversationalFlow, target: FlowStatus) -> Booking:
        self._require_status(flow, FlowStatus.BOOKING_PENDING, target=target)
        booking = await session.get(Booking, flow.booking_id) if flow.booking_id else None
        if booking is None:
            raise FlowError(f"Flow {flow.id} has no pending booking", flow_id=flow.id)
        return booking

    def _require_status(
        self, flow: ConversationalFlow, expected: FlowStatus, *, target: Optional[FlowStatus] = None
    ) -> None:
        if is_terminal(FlowStatus(flow.status)):
            raise FlowTerminated(flow.id, flow.status, (target or expected).value)
        if flow.status != expected.value:
            raise InvalidTransition(
                flow.id,
                flow.status,
                (target or expected).value,
                message=f"Flow {flow.id} is '{flow.status}', expected '{expected.value}'",
            )

    def _require_curated(self, flow: ConversationalFlow) -> None:
        self._require_status(flow, FlowStatus.SCHEDULING_OPTIONS)
        if flow.scheduling_mode != SchedulingMode.CURATED.value or not flow.curated_slots_generated:
            raise FlowError(f"Flow {flow.id} has no curated slots", flow_id=flow.id)
