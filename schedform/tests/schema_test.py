import pytest
from sqlalchemy import DateTime, delete, func
from sqlalchemy.exc import IntegrityError
from sqlmodel import SQLModel, select

from schedform.db import ConversationalFlow, FlowEvent, Form, FormQuestion, FormResponse, QuestionChoice
from schedform.flows.errors import FormInUse, FormNotFound, UnknownQuestion
from schedform.forms import ChoiceSpec, QuestionSpec, create_form, delete_form, submit_response

pytestmark = pytest.mark.asyncio


async def test_forms_with_flows_cannot_be_deleted(make_workspace, session_factory):
    ws = await make_workspace()
    await ws.start()

    with pytest.raises(FormInUse):
        await delete_form(ws.organization_id, ws.form_id, session_factory=session_factory)

    async with session_factory() as session:
        assert await session.get(Form, ws.form_id) is not None


async def test_unused_form_is_deleted_with_its_questions(make_workspace, session_factory):
    ws = await make_workspace()
    form = await create_form(
        ws.organization_id,
        "Waitlist",
        "waitlist",
        [QuestionSpec(title="Team size?", choices=[ChoiceSpec(label="Solo", value="solo")])],
        session_factory=session_factory,
    )

    await delete_form(ws.organization_id, form.id, session_factory=session_factory)

    async with session_factory() as session:
        assert await session.get(Form, form.id) is None
        remaining = await session.scalar(
            select(func.count()).select_from(FormQuestion).where(FormQuestion.form_id == form.id)
        )
        choices = await session.scalar(select(func.count()).select_from(QuestionChoice))
    assert remaining == 0
    # only the workspace form's choices are left
    assert choices == 6


async def test_forms_of_other_organizations_are_not_found(make_workspace, session_factory):
    ws = await make_workspace()
    other = await make_workspace()

    with pytest.raises(FormNotFound):
        await delete_form(other.organization_id, ws.form_id, session_factory=session_factory)
    with pytest.raises(FormNotFound):
        await delete_form(ws.organization_id, "missing", session_factory=session_factory)


async def test_deleting_a_flow_removes_its_event_log(make_workspace, session_factory):
    ws = await make_workspace()
    flow = await ws.start()
    await ws.submit(flow.id)

    async with session_factory() as session:
        await session.execute(delete(ConversationalFlow).where(ConversationalFlow.id == flow.id))
        await session.commit()

    async with session_factory() as session:
        events = await session.scalar(
            select(func.count()).select_from(FlowEvent).where(FlowEvent.flow_id == flow.id)
        )
    assert events == 0


async def test_scores_outside_range_are_rejected(make_workspace, session_factory):
    ws = await make_workspace()
    flow = await ws.start()

    async with session_factory() as session:
        stored = await session.get(ConversationalFlow, flow.id)
        stored.qualification_score = 140
        session.add(stored)
        with pytest.raises(IntegrityError):
            await session.commit()


async def test_choice_values_are_unique_per_question(make_workspace, session_factory):
    ws = await make_workspace()

    async with session_factory() as session:
        session.add(QuestionChoice(question_id=ws.questions["budget"], label="Duplicate", value="large"))
        with pytest.raises(IntegrityError):
            await session.commit()


async def test_step_counter_starts_at_one(make_workspace, session_factory):
    ws = await make_workspace()
    flow = await ws.start()

    async with session_factory() as session:
        stored = await session.get(ConversationalFlow, flow.id)
        stored.current_step = 0
        session.add(stored)
        with pytest.raises(IntegrityError):
            await session.commit()


async def test_timestamp_columns_store_naive_utc():
    columns = [
        column
        for table in SQLModel.metadata.sorted_tables
        for column in table.columns
        if column.name.endswith("_at") or column.name in ("start_time", "end_time")
    ]
    assert columns
    for column in columns:
        assert type(column.type) is DateTime, f"{column.table.name}.{column.name}"
        assert column.type.timezone is False


async def test_flow_timestamps_round_trip_as_naive_values(make_workspace, session_factory):
    ws = await make_workspace()
    flow = await ws.start()

    async with session_factory() as session:
        stored = await session.get(ConversationalFlow, flow.id)
    assert stored.started_at.tzinfo is None
    assert stored.last_active_at >= stored.started_at


async def test_answers_for_another_workspace_question_are_rejected(make_workspace, machine, session_factory):
    ws = await make_workspace()
    other = await make_workspace()
    flow = await ws.start()

    with pytest.raises(UnknownQuestion) as excinfo:
        await submit_response(
            machine,
            flow.id,
            {ws.questions["timeline"]: "now", other.questions["budget"]: "large"},
        )

    assert excinfo.value.question_ids == [other.questions["budget"]]
    assert excinfo.value.status_code == 422
    stored = await machine.get(flow.id)
    assert stored.status == "form_started"
    assert stored.version == 0
    async with session_factory() as session:
        responses = await session.scalar(select(func.count()).select_from(FormResponse))
    assert responses == 0


async def test_answers_for_unknown_questions_are_rejected(make_workspace, machine):
    ws = await make_workspace()
    flow = await ws.start()

    with pytest.raises(UnknownQuestion):
        await submit_response(machine, flow.id, {"no-such-question": "large"})

    assert (await machine.get(flow.id)).status == "form_started"
