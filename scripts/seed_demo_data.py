#!/usr/bin/env python
import asyncio
import random
from datetime import timedelta
from typing import Dict, Optional

from faker import Faker
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import select

from schedform.config import Settings
from schedform.db import (
    AvailabilitySlot,
    EventType,
    FormQuestion,
    Organization,
    SessionFactory,
    User,
    get_session,
    session_factory_for,
    init_db,
    utcnow,
)
from schedform.flows.notifications import FlowNotifier
from schedform.forms import ChoiceSpec, QuestionSpec, create_form, submit_response
from schedform.qualification.oracle import HeuristicQualificationOracle
from schedform.services import Services, build_services

DEMO_USER_ID = "demo"

QUESTIONS = [
    QuestionSpec(
        title="What is your annual budget?",
        is_required=True,
        qualification_weight=2.0,
        choices=[
            ChoiceSpec(label="Under $5k", value="small", qualification_score=20),
            ChoiceSpec(label="$5k - $50k", value="medium", qualification_score=65),
            ChoiceSpec(label="Over $50k", value="large", qualification_score=95),
        ],
    ),
    QuestionSpec(
        title="When do you want to start?",
        qualification_weight=1.0,
        choices=[
            ChoiceSpec(label="This month", value="now", qualification_score=90),
            ChoiceSpec(label="This quarter", value="quarter", qualification_score=60),
            ChoiceSpec(
                label="Just researching",
                value="research",
                is_disqualifying=True,
                disqualification_message="We only take projects starting this year",
            ),
        ],
    ),
    QuestionSpec(title="Anything else we should know?", type="long_text"),
]


async def seed_workspace(fake: Faker, session_factory: SessionFactory) -> Dict[str, str]:
    async with session_factory() as session:
        org = await session.get(Organization, DEMO_USER_ID)
        if org is None:
            org = Organization(id=DEMO_USER_ID, name=fake.company(), plan="pro")
            session.add(org)
            session.add(User(id=DEMO_USER_ID, email=fake.email(), organization_id=org.id, role="owner"))
            await session.commit()

    form = await create_form(
        DEMO_USER_ID,
        "Discovery call intake",
        f"discovery-{fake.uuid4()[:8]}",
        QUESTIONS,
        session_factory=session_factory,
    )

    async with session_factory() as session:
        event_type = EventType(
            organization_id=DEMO_USER_ID,
            form_id=form.id,
            title="Discovery call",
            slug=f"discovery-call-{fake.uuid4()[:8]}",
            duration=30,
            minimum_notice=0,
            scheduling_mode="curated",
            minimum_qualification_score=50,
        )
        session.add(event_type)
        await session.flush()

        start = utcnow().replace(minute=0, second=0, microsecond=0) + timedelta(days=1)
        for day in range(5):
            for hour in (9, 11, 14, 16):
                slot_start = start.replace(hour=hour) + timedelta(days=day)
                session.add(
                    AvailabilitySlot(
                        event_type_id=event_type.id,
                        start_time=slot_start,
                        end_time=slot_start + timedelta(minutes=30),
                        max_bookings=2,
                        optimality_score=random.randint(40, 100),
                    )
                )
        await session.commit()

        rows = await session.exec(
            select(FormQuestion).where(FormQuestion.form_id == form.id).order_by(FormQuestion.order_index)
        )
        question_ids = [q.id for q in rows.all()]

    return {
        "form_id": form.id,
        "event_type_id": event_type.id,
        "budget": question_ids[0],
        "timeline": question_ids[1],
        "notes": question_ids[2],
    }


async def seed_flow(fake: Faker, services: Services, workspace: Dict[str, str]) -> str:
    machine = services.machine
    flow = await machine.start_flow(
        DEMO_USER_ID,
        workspace["form_id"],
        fake.uuid4(),
        total_steps=3,
        utm_source=random.choice(["google", "linkedin", "newsletter", None]),
    )

    # a share of visitors never finish the form
    if random.random() < 0.2:
        await machine.record_activity(flow.id, 1, completion_percentage=33)
        return flow.status

    name = fake.name()
    await submit_response(
        machine,
        flow.id,
        {
            workspace["budget"]: random.choice(["small", "medium", "large"]),
            workspace["timeline"]: random.choice(["now", "quarter", "quarter", "research"]),
            workspace["notes"]: fake.paragraph(nb_sentences=2),
        },
        respondent_email=fake.email(),
        respondent_name=name,
        spam_score=random.choice([0, 5, 10, 95]),
    )
    outcome = await services.gateway.qualify(flow.id)
    if outcome.status != "qualified":
        return outcome.status

    options = await services.dispatcher.open_scheduling(flow.id)
    if not options.slots or random.random() < 0.3:
        return "scheduling_options"

    await services.dispatcher.mark_curated_viewed(flow.id)
    slot_id = options.slots[0]["slot_id"]
    await services.dispatcher.book_slot(flow.id, slot_id, guest_name=name)
    if random.random() < 0.8:
        flow = await services.dispatcher.confirm_booking(flow.id)
    else:
        flow = await services.dispatcher.fail_booking(flow.id, "host_cancelled")
    return flow.status


async def main(total: int = 20, *, bind: Optional[AsyncEngine] = None, seed: Optional[int] = None) -> Dict[str, int]:
    await init_db(bind)
    session_factory = session_factory_for(bind) if bind is not None else get_session
    fake = Faker()
    if seed is not None:
        Faker.seed(seed)
        random.seed(seed)

    settings = Settings(retry_backoff_seconds=0)
    services = build_services(
        settings,
        session_factory=session_factory,
        oracle=HeuristicQualificationOracle(),
        notifier=FlowNotifier(),
    )
    workspace = await seed_workspace(fake, session_factory)

    outcomes: Dict[str, int] = {}
    for _ in range(total):
        status = await seed_flow(fake, services, workspace)
        outcomes[status] = outcomes.get(status, 0) + 1
    await services.notifier.drain()
    print(f"Seeded {total} demo flows for organization '{DEMO_USER_ID}': {outcomes}")
    return outcomes


if __name__ == "__main__":
    asyncio.run(main())
