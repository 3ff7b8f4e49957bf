import asyncio
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlmodel import select

from schedform.config import Settings
from schedform.db import (
    AvailabilitySlot,
    ConversationalFlow,
    EventType,
    FormQuestion,
    Organization,
    SessionFactory,
    User,
    build_engine,
    init_db,
    new_id,
    session_factory_for,
    utcnow,
)
from schedform.flows.machine import FlowStateMachine
from schedform.flows.notifications import FlowNotification, FlowNotifier
from schedform.forms import ChoiceSpec, QuestionSpec, create_form, submit_response
from schedform.qualification.oracle import OracleRequest, OracleResponse, QualificationOracle
from schedform.services import Services, build_services

QUESTIONS = [
    QuestionSpec(
        title="What is your budget?",
        is_required=True,
        qualification_weight=2.0,
        choices=[
            ChoiceSpec(label="Under $5k", value="small", qualification_score=20),
            ChoiceSpec(label="$5k to $50k", value="medium", qualification_score=60),
            ChoiceSpec(label="Over $50k", value="large", qualification_score=90),
        ],
    ),
    QuestionSpec(
        title="When do you want to start?",
        qualification_weight=1.0,
        choices=[
            ChoiceSpec(label="This month", value="now", qualification_score=90),
            ChoiceSpec(label="Later this year", value="later", qualification_score=40),
            ChoiceSpec(
                label="Never",
                value="never",
                is_disqualifying=True,
                disqualification_message="Not planning a project",
            ),
        ],
    ),
    QuestionSpec(title="Anything else?", type="long_text"),
]


class StubOracle(QualificationOracle):
    """Plays back queued responses; exceptions in the queue are raised."""

    model_name = "stub"

    def __init__(self, responses: Optional[List[Any]] = None, *, delay: float = 0.0):
        self.responses = list(responses or [])
        self.delay = delay
        self.calls: List[OracleRequest] = []

    async def evaluate(self, request: OracleRequest) -> OracleResponse:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self.responses.pop(0) if self.responses else OracleResponse(score=80, reasons=["good fit"])
        if isinstance(item, Exception):
            raise item
        item.model = self.model_name
        return item


class RecordingCalendar:
    def __init__(self, busy=None):
        self.busy = list(busy or [])
        self.calls = 0

    async def busy_intervals(self, event_type, start, end):
        self.calls += 1
        return self.busy


@dataclass
class Workspace:
    machine: FlowStateMachine
    session_factory: SessionFactory
    organization_id: str
    owner_id: str
    member_id: str
    form_id: str
    event_type_id: str
    questions: Dict[str, str]
    slot_ids: List[str] = field(default_factory=list)

    async def start(self, **kwargs) -> ConversationalFlow:
        kwargs.setdefault("total_steps", 3)
        return await self.machine.start_flow(self.organization_id, self.form_id, new_id(), **kwargs)

    async def submit(
        self,
        flow_id: str,
        *,
        budget: str = "large",
        timeline: str = "now",
        spam_score: Optional[int] = None,
        email: str = "prospect@example.com",
    ) -> ConversationalFlow:
        return await submit_response(
            self.machine,
            flow_id,
            {
                self.questions["budget"]: budget,
                self.questions["timeline"]: timeline,
                self.questions["notes"]: "We need help with onboarding",
            },
            respondent_email=email,
            respondent_name="Pat Prospect",
            spam_score=spam_score,
        )

    async def slot(self, slot_id: str) -> AvailabilitySlot:
        async with self.session_factory() as session:
            return await session.get(AvailabilitySlot, slot_id)

    async def set_slot(self, slot_id: str, **values) -> None:
        async with self.session_factory() as session:
            slot = await session.get(AvailabilitySlot, slot_id)
            for key, value in values.items():
                setattr(slot, key, value)
            session.add(slot)
            await session.commit()


async def create_workspace(
    machine: FlowStateMachine,
    session_factory: SessionFactory,
    *,
    mode: str = "instant",
    slots: int = 3,
    capacity: int = 1,
    **event_type_fields,
) -> Workspace:
    async with session_factory() as session:
        org = Organization(name="Acme")
        session.add(org)
        await session.flush()
        owner = User(id=new_id(), email="owner@acme.test", organization_id=org.id, role="owner")
        member = User(id=new_id(), email="member@acme.test", organization_id=org.id, role="member")
        session.add(owner)
        session.add(member)
        await session.commit()

    form = await create_form(org.id, "Intake", f"intake-{new_id()[:8]}", QUESTIONS, session_factory=session_factory)

    async with session_factory() as session:
        event_type = EventType(
            organization_id=org.id,
            form_id=form.id,
            title="Intro call",
            slug=f"intro-{new_id()[:8]}",
            minimum_notice=0,
            scheduling_mode=mode,
            **event_type_fields,
        )
        session.add(event_type)
        await session.flush()

        base = utcnow().replace(minute=0, second=0, microsecond=0) + timedelta(days=1)
        slot_ids = []
        for index in range(slots):
            start = base + timedelta(hours=2 * index)
            slot = AvailabilitySlot(
                event_type_id=event_type.id,
                start_time=start,
                end_time=start + timedelta(minutes=30),
                max_bookings=capacity,
                optimality_score=50 + 10 * index,
            )
            session.add(slot)
            slot_ids.append(slot.id)
        await session.commit()

        rows = await session.exec(
            select(FormQuestion).where(FormQuestion.form_id == form.id).order_by(FormQuestion.order_index)
        )
        question_ids = [question.id for question in rows.all()]

    return Workspace(
        machine=machine,
        session_factory=session_factory,
        organization_id=org.id,
        owner_id=owner.id,
        member_id=member.id,
        form_id=form.id,
        event_type_id=event_type.id,
        questions=dict(zip(("budget", "timeline", "notes"), question_ids)),
        slot_ids=slot_ids,
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'schedform.db'}")
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return session_factory_for(engine)


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite://",
        oracle_timeout_seconds=0.5,
        retry_backoff_seconds=0,
        notification_backoff_seconds=0,
    )


@pytest.fixture
def published():
    return []


@pytest.fixture
def notifier(published):
    notifier = FlowNotifier(max_attempts=2, backoff_seconds=0)

    async def collect(notification: FlowNotification) -> None:
        published.append(notification)

    notifier.subscribe(collect, name="collect")
    return notifier


@pytest.fixture
def machine(session_factory, notifier):
    return FlowStateMachine(session_factory, notifier=notifier)


@pytest.fixture
def make_workspace(machine, session_factory):
    async def factory(**kwargs) -> Workspace:
        return await create_workspace(machine, session_factory, **kwargs)

    return factory


@pytest.fixture
def make_services(session_factory, settings, notifier):
    def factory(oracle: Optional[QualificationOracle] = None, calendar=None, **overrides) -> Services:
        return build_services(
            replace(settings, **overrides),
            session_factory=session_factory,
            oracle=oracle or StubOracle(),
            notifier=notifier,
            calendar=calendar,
        )

    return factory


@pytest.fixture
def stub_oracle():
    return StubOracle


@pytest.fixture
def recording_calendar():
    return RecordingCalendar
