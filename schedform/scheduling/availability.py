"""Open slot computation for an event type.

The filtering itself is pure; ``find_open_slots`` loads what it needs from the
database (and an optional calendar provider) and applies it.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from schedform.db import AvailabilitySlot, Booking, EventType

ACTIVE_BOOKING_STATUSES = ("pending", "confirmed")


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end


class CalendarProvider:
    """Source of busy intervals from a connected calendar."""

    async def busy_intervals(self, event_type: EventType, start: datetime, end: datetime) -> List[BusyInterval]:
        raise NotImplementedError


def _has_capacity(slot: AvailabilitySlot) -> bool:
    return slot.is_available and not slot.is_blocked and slot.current_bookings < slot.max_bookings


def _conflicts_with_buffer(slot: AvailabilitySlot, booking: Booking, before: timedelta, after: timedelta) -> bool:
    if booking.availability_slot_id == slot.id:
        return False
    return slot.start_time - before < booking.end_time and booking.start_time < slot.end_time + after


def _same_week(a: datetime, b: datetime) -> bool:
    return a.isocalendar()[:2] == b.isocalendar()[:2]


def _limit_reached(slot: AvailabilitySlot, bookings: Sequence[Booking], event_type: EventType) -> bool:
    start = slot.start_time
    if event_type.max_bookings_per_day is not None:
        count = sum(1 for b in bookings if b.start_time.date() == start.date())
        if count >= event_type.max_bookings_per_day:
            return True
    if event_type.max_bookings_per_week is not None:
        count = sum(1 for b in bookings if _same_week(b.start_time, start))
        if count >= event_type.max_bookings_per_week:
            return True
    if event_type.max_bookings_per_month is not None:
        count = sum(1 for b in bookings if (b.start_time.year, b.start_time.month) == (start.year, start.month))
        if count >= event_type.max_bookings_per_month:
            return True
    return False


def _too_frequent(
    slot: AvailabilitySlot, bookings: Sequence[Booking], guest_email: Optional[str], limit_days: Optional[int]
) -> bool:
    if not guest_email or not limit_days:
        return False
    window = timedelta(days=limit_days)
    email = guest_email.lower()
    return any(
        (b.guest_email or "").lower() == email and abs(slot.start_time - b.start_time) < window for b in bookings
    )


def filter_open_slots(
    event_type: EventType,
    slots: Iterable[AvailabilitySlot],
    bookings: Sequence[Booking],
    *,
    now: datetime,
    guest_email: Optional[str] = None,
    busy: Sequence[BusyInterval] = (),
) -> List[AvailabilitySlot]:
    earliest = now + timedelta(minutes=event_type.minimum_notice or 0)
    latest = now + timedelta(days=event_type.maximum_days_out or 0)
    before = timedelta(minutes=event_type.buffer_time_before or 0)
    after = timedelta(minutes=event_type.buffer_time_after or 0)
    active = [b for b in bookings if b.status in ACTIVE_BOOKING_STATUSES]

    open_slots = []
    for slot in slots:
        if slot.event_type_id != event_type.id or not _has_capacity(slot):
            continue
        if slot.start_time < earliest or slot.start_time > latest:
            continue
        if any(_conflicts_with_buffer(slot, booking, before, after) for booking in active):
            continue
        if _limit_reached(slot, active, event_type):
            continue
        if _too_frequent(slot, active, guest_email, event_type.booking_frequency_limit):
            continue
        if any(interval.overlaps(slot.start_time - before, slot.end_time + after) for interval in busy):
            continue
        open_slots.append(slot)
    return sorted(open_slots, key=lambda s: s.start_time)


def rank_for_curation(slots: Sequence[AvailabilitySlot], count: int) -> List[AvailabilitySlot]:
    ranked = sorted(slots, key=lambda s: (-(s.optimality_score or 0), s.start_time))
    return sorted(ranked[: max(0, count)], key=lambda s: s.start_time)


def slot_summary(slot: AvailabilitySlot) -> Dict[str, Any]:
    return {
        "slot_id": slot.id,
        "start_time": slot.start_time.isoformat(),
        "end_time": slot.end_time.isoformat(),
        "time_zone": slot.time_zone,
        "optimality_score": slot.optimality_score,
        "reason": slot.ai_recommendation_reason,
    }


async def find_open_slots(
    session: AsyncSession,
    event_type: EventType,
    *,
    now: datetime,
    guest_email: Optional[str] = None,
    calendar: Optional[CalendarProvider] = None,
) -> List[AvailabilitySlot]:
    window_start = now + timedelta(minutes=event_type.minimum_notice or 0)
    window_end = now + timedelta(days=event_type.maximum_days_out or 0)

    slots = (
        await session.exec(
            select(AvailabilitySlot)
            .where(
                AvailabilitySlot.event_type_id == event_type.id,
                AvailabilitySlot.start_time >= window_start,
                AvailabilitySlot.start_time <= window_end,
            )
            .order_by(AvailabilitySlot.start_time.asc())
        )
    ).all()
    bookings = (
        await session.exec(
            select(Booking).where(
                Booking.event_type_id == event_type.id,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            )
        )
    ).all()

    busy: List[BusyInterval] = []
    if calendar is not None:
        busy = await calendar.busy_intervals(event_type, window_start, window_end)

    return filter_open_slots(event_type, slots, bookings, now=now, guest_email=guest_email, busy=busy)
