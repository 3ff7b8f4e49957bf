from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from schedform.db import FormAnswer, FormQuestion, QuestionChoice


@dataclass
class ChoiceContext:
    value: str
    label: str
    score: Optional[float] = None
    is_disqualifying: bool = False
    message: Optional[str] = None


@dataclass
class AnswerContext:
    question_id: str
    question: str
    weight: float = 0.0
    values: List[str] = field(default_factory=list)
    choices: List[ChoiceContext] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "question_id": self.question_id,
            "question": self.question,
            "weight": self.weight,
            "values": list(self.values),
            "choice_scores": [choice.score for choice in self.choices],
        }


def _answer_values(answer: FormAnswer) -> List[str]:
    if answer.json_value:
        return [str(v) for v in answer.json_value]
    if answer.text_value:
        return [answer.text_value]
    if answer.number_value is not None:
        return [str(answer.number_value)]
    return []


async def load_answers(session: AsyncSession, form_response_id: Optional[str]) -> List[AnswerContext]:
    if not form_response_id:
        return []
    rows = (
        await session.exec(
            select(FormAnswer, FormQuestion)
            .join(FormQuestion, FormQuestion.id == FormAnswer.question_id)
            .where(FormAnswer.response_id == form_response_id)
            .order_by(FormQuestion.order_index.asc())
        )
    ).all()
    if not rows:
        return []

    question_ids = [question.id for _, question in rows]
    choices = (await session.exec(select(QuestionChoice).where(QuestionChoice.question_id.in_(question_ids)))).all()
    by_question: Dict[str, Dict[str, QuestionChoice]] = {}
    for choice in choices:
        by_question.setdefault(choice.question_id, {})[choice.value] = choice

    answers = []
    for answer, question in rows:
        values = _answer_values(answer)
        known = by_question.get(question.id, {})
        selected = [
            ChoiceContext(
                value=choice.value,
                label=choice.label,
                score=choice.qualification_score,
                is_disqualifying=choice.is_disqualifying,
                message=choice.disqualification_message,
            )
            for choice in (known.get(v) for v in values)
            if choice is not None
        ]
        answers.append(
            AnswerContext(
                question_id=question.id,
                question=question.title,
                weight=question.qualification_weight or 0.0,
                values=values,
                choices=selected,
            )
        )
    return answers


def find_disqualifying(answers: List[AnswerContext]) -> Optional[Tuple[AnswerContext, ChoiceContext]]:
    for answer in answers:
        for choice in answer.choices:
            if choice.is_disqualifying:
                return answer, choice
    return None


def rule_score(answers: List[AnswerContext]) -> Optional[float]:
    """Weighted mean of the selected choices' scores, or None when nothing is weighted."""
    total_weight = 0.0
    weighted = 0.0
    for answer in answers:
        scores = [choice.score for choice in answer.choices if choice.score is not None]
        if answer.weight <= 0 or not scores:
            continue
        total_weight += answer.weight
        weighted += answer.weight * (sum(scores) / len(scores))
    if total_weight == 0:
        return None
    return round(max(0.0, min(100.0, weighted / total_weight)), 2)


def format_answers(answers: List[AnswerContext]) -> str:
    if not answers:
        return ""
    lines = []
    for answer in answers:
        value = ", ".join(choice.label for choice in answer.choices) or ", ".join(answer.values)
        snippet = value.strip().replace("\n", " ")[:300]
        line = f"- {answer.question}: {snippet}"
        if answer.weight:
            line += f" | Weight: {answer.weight:g}"
        lines.append(line)
    return "\n".join(lines)
