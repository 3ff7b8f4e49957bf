from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from schedform.db import (
    ConversationalFlow,
    Form,
    FormAnswer,
    FormQuestion,
    FormResponse,
    QuestionChoice,
    SessionFactory,
    get_session,
    utcnow,
)
from schedform.flows.errors import FormInUse, FormNotFound, UnknownQuestion
from schedform.flows.machine import FlowStateMachine
from schedform.flows.payloads import FormCompletedData
from schedform.flows.states import FlowStatus

AnswerValue = Union[str, float, int, List[str]]


@dataclass
class ChoiceSpec:
    label: str
    value: str
    qualification_score: Optional[float] = None
    is_disqualifying: bool = False
    disqualification_message: Optional[str] = None


@dataclass
class QuestionSpec:
    title: str
    type: str = "single_choice"
    is_required: bool = False
    qualification_weight: float = 0.0
    choices: List[ChoiceSpec] = field(default_factory=list)


async def create_form(
    organization_id: str,
    title: str,
    slug: str,
    questions: Sequence[QuestionSpec],
    *,
    description: Optional[str] = None,
    status: str = "published",
    session_factory: SessionFactory = get_session,
) -> Form:
    async with session_factory() as session:
        form = Form(organization_id=organization_id, title=title, slug=slug, description=description, status=status)
        session.add(form)
        await session.flush()
        for index, spec in enumerate(questions):
            question = FormQuestion(
                form_id=form.id,
                title=spec.title,
                type=spec.type,
                is_required=spec.is_required,
                order_index=index,
                qualification_weight=spec.qualification_weight,
            )
            session.add(question)
            await session.flush()
            for choice_index, choice in enumerate(spec.choices):
                session.add(
                    QuestionChoice(
                        question_id=question.id,
                        label=choice.label,
                        value=choice.value,
                        order_index=choice_index,
                        qualification_score=choice.qualification_score,
                        is_disqualifying=choice.is_disqualifying,
                        disqualification_message=choice.disqualification_message,
                    )
                )
        await session.commit()
    return form


async def delete_form(
    organization_id: str,
    form_id: str,
    *,
    session_factory: SessionFactory = get_session,
) -> None:
    """Delete a form; forms that conversational flows point at are kept."""
    async with session_factory() as session:
        form = await session.get(Form, form_id)
        if form is None or form.organization_id != organization_id:
            raise FormNotFound(form_id)
        in_use = await session.scalar(
            select(func.count()).select_from(ConversationalFlow).where(ConversationalFlow.form_id == form_id)
        )
        if in_use:
            raise FormInUse(form_id)
        await session.delete(form)
        try:
            await session.commit()
        except IntegrityError as exc:
            raise FormInUse(form_id) from exc


def _answer_row(response_id: str, question_id: str, value: AnswerValue) -> FormAnswer:
    answer = FormAnswer(response_id=response_id, question_id=question_id)
    if isinstance(value, list):
        answer.json_value = [str(v) for v in value]
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        answer.number_value = float(value)
    else:
        answer.text_value = str(value)
        answer.json_value = [str(value)]
    return answer


async def submit_response(
    machine: FlowStateMachine,
    flow_id: str,
    answers: Dict[str, AnswerValue],
    *,
    respondent_email: Optional[str] = None,
    respondent_name: Optional[str] = None,
    spam_score: Optional[int] = None,
    spam_flags: Optional[List[str]] = None,
    expected_version: Optional[int] = None,
) -> ConversationalFlow:
    """Store the submitted answers and move the flow to ``form_completed``."""
    async with machine.unit_of_work(flow_id) as session:
        flow = await machine.load(session, flow_id)
        known = set(
            (await session.execute(select(FormQuestion.id).where(FormQuestion.form_id == flow.form_id))).scalars()
        )
        unknown = sorted(question_id for question_id in answers if question_id not in known)
        if unknown:
            raise UnknownQuestion(flow.id, unknown)

        now = utcnow()
        email = respondent_email or flow.respondent_email
        name = respondent_name or flow.respondent_name
        response = FormResponse(
            form_id=flow.form_id,
            respondent_email=email,
            respondent_name=name,
            session_id=flow.session_id,
            is_completed=True,
            completed_at=now,
            time_to_complete=max(1, int((now - flow.started_at).total_seconds())),
            spam_score=spam_score,
        )
        session.add(response)
        await session.flush()
        for question_id, value in answers.items():
            session.add(_answer_row(response.id, question_id, value))

        changes: Dict[str, Any] = {
            "form_response_id": response.id,
            "respondent_email": email,
            "respondent_name": name,
            "spam_score": spam_score,
            "spam_flags": spam_flags,
            "completion_percentage": 100.0,
        }
        if flow.total_steps:
            changes["current_step"] = flow.total_steps
        await machine.apply(
            session,
            flow,
            FlowStatus.FORM_COMPLETED,
            payload=FormCompletedData(form_response_id=response.id, answers_count=len(answers), spam_score=spam_score),
            changes=changes,
            expected_version=expected_version,
        )
    return flow
