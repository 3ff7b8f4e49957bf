from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel.ext.asyncio.session import AsyncSession

from schedform.db import ConversationalFlow, FlowAnalytics, SessionFactory, get_session, utcnow
from schedform.flows.states import FlowStatus

COUNTERS = (
    "form_starts",
    "form_completions",
    "qualified",
    "disqualified",
    "spam_detected",
    "scheduling_started",
    "booking_requests",
    "bookings_confirmed",
    "bookings_failed",
    "abandoned",
    "reopened",
)

COUNTER_FOR_STATUS: Dict[FlowStatus, str] = {
    FlowStatus.FORM_STARTED: "form_starts",
    FlowStatus.FORM_COMPLETED: "form_completions",
    FlowStatus.QUALIFIED: "qualified",
    FlowStatus.DISQUALIFIED: "disqualified",
    FlowStatus.SPAM_DETECTED: "spam_detected",
    FlowStatus.SCHEDULING_OPTIONS: "scheduling_started",
    FlowStatus.BOOKING_PENDING: "booking_requests",
    FlowStatus.BOOKING_CONFIRMED: "bookings_confirmed",
    FlowStatus.BOOKING_FAILED: "bookings_failed",
    FlowStatus.ABANDONED: "abandoned",
}

_UPSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def day_key(moment: Optional[datetime] = None) -> str:
    return (moment or utcnow()).strftime("%Y-%m-%d")


async def increment(
    session: AsyncSession,
    organization_id: str,
    form_id: str,
    counter: str,
    *,
    moment: Optional[datetime] = None,
) -> None:
    """Atomically bump one daily counter inside the caller's transaction."""
    if counter not in COUNTERS:
        raise ValueError(f"Unknown analytics counter '{counter}'")

    dialect = session.get_bind().dialect.name
    insert = _UPSERTS.get(dialect)
    if insert is None:
        raise RuntimeError(f"Analytics upsert not supported for dialect '{dialect}'")

    table = FlowAnalytics.__table__
    values = {name: 0 for name in COUNTERS}
    values[counter] = 1
    stmt = insert(table).values(
        organization_id=organization_id,
        form_id=form_id,
        day=day_key(moment),
        **values,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["organization_id", "form_id", "day"],
        set_={counter: table.c[counter] + 1},
    )
    await session.execute(stmt)


async def record_status(
    session: AsyncSession,
    flow: ConversationalFlow,
    status: FlowStatus,
    *,
    moment: Optional[datetime] = None,
) -> None:
    counter = COUNTER_FOR_STATUS.get(status)
    if counter is None:
        return
    await increment(session, flow.organization_id, flow.form_id, counter, moment=moment)


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _apply_status_defaults(status_breakdown: Dict[str, int]) -> Dict[str, int]:
    for status in FlowStatus:
        status_breakdown.setdefault(status.value, 0)
    return status_breakdown


def _rate(numerator: int, denominator: int) -> float:
    return round(numerator / denominator, 4) if denominator else 0.0


async def fetch_summary(
    organization_id: str,
    *,
    start: Optional[str] = None,
    end: Optional[str] = None,
    form_id: Optional[str] = None,
    session_factory: SessionFactory = get_session,
) -> Dict[str, Any]:
    start_dt = _parse_date(start)
    end_dt = _parse_date(end)

    async with session_factory() as session:
        counter_stmt = select(*[func.coalesce(func.sum(getattr(FlowAnalytics, name)), 0) for name in COUNTERS]).where(
            FlowAnalytics.organization_id == organization_id
        )
        flow_filters = [ConversationalFlow.organization_id == organization_id]
        if form_id:
            counter_stmt = counter_stmt.where(FlowAnalytics.form_id == form_id)
            flow_filters.append(ConversationalFlow.form_id == form_id)
        if start_dt:
            counter_stmt = counter_stmt.where(FlowAnalytics.day >= day_key(start_dt))
            flow_filters.append(ConversationalFlow.started_at >= start_dt)
        if end_dt:
            counter_stmt = counter_stmt.where(FlowAnalytics.day <= day_key(end_dt))
            flow_filters.append(ConversationalFlow.started_at <= end_dt)

        counter_row = (await session.execute(counter_stmt)).one()
        totals = {name: int(value or 0) for name, value in zip(COUNTERS, counter_row)}

        status_rows = (
            await session.execute(
                select(ConversationalFlow.status, func.count())
                .where(*flow_filters)
                .group_by(ConversationalFlow.status)
            )
        ).all()
        average_score = await session.scalar(
            select(func.avg(ConversationalFlow.qualification_score)).where(
                *flow_filters, ConversationalFlow.qualification_score.is_not(None)
            )
        )

    status_breakdown = _apply_status_defaults({status: int(count) for status, count in status_rows})
    decided = totals["qualified"] + totals["disqualified"]

    return {
        "counters": totals,
        "flows": sum(status_breakdown.values()),
        "status_breakdown": status_breakdown,
        "completion_rate": _rate(totals["form_completions"], totals["form_starts"]),
        "qualification_rate": _rate(totals["qualified"], decided),
        "booking_rate": _rate(totals["bookings_confirmed"], totals["qualified"]),
        "abandonment_rate": _rate(totals["abandoned"], totals["form_starts"]),
        "average_qualification_score": round(float(average_score), 2) if average_score is not None else None,
        "filters": {
            "start": start_dt.isoformat() if start_dt else None,
            "end": end_dt.isoformat() if end_dt else None,
            "form_id": form_id or None,
        },
    }
