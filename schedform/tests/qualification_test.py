from types import SimpleNamespace

import pytest

from schedform.config import DEFAULT_PROMPT_PATH, Settings
from schedform.flows.errors import OracleFailure
from schedform.qualification.oracle import (
    HeuristicQualificationOracle,
    OpenAIQualificationOracle,
    OracleRequest,
    _extract_payload,
    build_oracle,
)
from schedform.qualification.prompts import load_prompt
from schedform.qualification.scoring import AnswerContext, ChoiceContext, find_disqualifying, rule_score

pytestmark = pytest.mark.asyncio

SLOTS = [
    {"slot_id": "s1", "start_time": "2030-01-01T09:00:00", "optimality_score": 40},
    {"slot_id": "s2", "start_time": "2030-01-01T11:00:00", "optimality_score": 90},
    {"slot_id": "s3", "start_time": "2030-01-01T13:00:00", "optimality_score": None},
    {"slot_id": "s4", "start_time": "2030-01-01T15:00:00", "optimality_score": 70},
]


def _answers():
    return [
        AnswerContext(
            question_id="q1",
            question="Budget?",
            weight=2,
            values=["large"],
            choices=[ChoiceContext(value="large", label="Over $50k", score=90)],
        ),
        AnswerContext(
            question_id="q2",
            question="Timeline?",
            weight=1,
            values=["later"],
            choices=[ChoiceContext(value="later", label="Later this year", score=30)],
        ),
        AnswerContext(question_id="q3", question="Notes", values=["Line one\nline two"]),
    ]


class FakeResponses:
    def __init__(self, text, tokens=321):
        self.text = text
        self.tokens = tokens
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(output_text=self.text, usage=SimpleNamespace(total_tokens=self.tokens))


def _client(text):
    return SimpleNamespace(responses=FakeResponses(text))


async def test_rule_score_is_a_weighted_mean():
    assert rule_score(_answers()) == 70
    assert rule_score([AnswerContext(question_id="q", question="Notes", values=["hi"])]) is None


async def test_first_disqualifying_choice_is_reported():
    answers = _answers()
    answers[1].choices[0].is_disqualifying = True
    answer, choice = find_disqualifying(answers)
    assert answer.question_id == "q2"
    assert choice.value == "later"
    assert find_disqualifying(_answers()) is None


async def test_bundled_prompt_renders_answers_and_slots():
    template = load_prompt(DEFAULT_PROMPT_PATH)

    prompt = template.render(
        name="Pat", email="pat@example.com", answers=_answers(), rule_score=70.0, slots=SLOTS[:1]
    )

    assert template.label == "lead_qualification@v3"
    assert prompt.startswith(template.system)
    assert "Prospect: Pat <pat@example.com>" in prompt
    assert "Rule-based score: 70" in prompt
    assert "- Budget?: Over $50k | Weight: 2" in prompt
    assert "- Notes: Line one line two" in prompt
    assert "- s1: 2030-01-01T09:00:00" in prompt
    assert '{"score": 0-100' in prompt


async def test_prompt_defaults_for_missing_details():
    prompt = load_prompt(DEFAULT_PROMPT_PATH).render(name=None, email=None, answers=[], rule_score=None)

    assert "Prospect: Unknown <unknown>" in prompt
    assert "Rule-based score: n/a" in prompt
    assert "- (no answers)" in prompt
    assert "Candidate meeting slots" not in prompt


async def test_prompt_without_template_is_rejected(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("name: broken\nversion: 1\n", encoding="utf-8")

    with pytest.raises(ValueError, match="missing"):
        load_prompt(path)


@pytest.mark.parametrize(
    "raw, message",
    [
        ("I think they are a good fit", "did not contain"),
        ("{score: high}", "not valid JSON"),
        ('{"confidence": 0.4}', "missing a score"),
    ],
)
async def test_unusable_model_output_raises(raw, message):
    with pytest.raises(OracleFailure, match=message):
        _extract_payload(raw)


async def test_fenced_json_is_accepted():
    assert _extract_payload('```json\n{"score": 55}\n```') == {"score": 55}


async def test_openai_oracle_parses_and_clamps():
    client = _client(
        '{"score": 130, "confidence": 2, "intent_score": 0, "reasons": ["budget", 7], '
        '"summary": "Enterprise buyer", "insights": {"industry": "retail"}, '
        '"recommendation": {"recommended_duration": 45, "slot_ids": ["s4", "missing", "s2"]}}'
    )
    oracle = OpenAIQualificationOracle("sk-test", model="gpt-test", client=client)
    request = OracleRequest(flow_id="f1", prompt="Score this", candidate_slots=SLOTS)

    response = await oracle.evaluate(request)

    assert client.responses.calls == [{"model": "gpt-test", "input": "Score this"}]
    assert response.score == 100.0
    assert response.confidence == 1.0
    assert response.intent_score == 1
    assert response.reasons == ["budget", "7"]
    assert response.insights == {"industry": "retail"}
    assert [slot["slot_id"] for slot in response.curated_slots] == ["s4", "s2"]
    assert response.model == "gpt-test"
    assert response.tokens == 321


async def test_openai_oracle_rejects_non_numeric_scores():
    oracle = OpenAIQualificationOracle("sk-test", client=_client('{"score": "high"}'))

    with pytest.raises(OracleFailure, match="non-numeric"):
        await oracle.evaluate(OracleRequest(flow_id="f1", prompt="Score this"))


async def test_heuristic_oracle_uses_rule_score_and_ranks_slots():
    request = OracleRequest(
        flow_id="f1",
        prompt="",
        answers=_answers(),
        rule_score=70.0,
        candidate_slots=SLOTS,
        curated_slot_count=2,
    )

    response = await HeuristicQualificationOracle().evaluate(request)

    assert response.score == 70.0
    assert response.intent_score == 70
    assert response.reasons == ["Budget?: Over $50k", "Timeline?: Later this year"]
    assert [slot["slot_id"] for slot in response.curated_slots] == ["s2", "s4"]


async def test_heuristic_oracle_falls_back_to_free_text():
    answers = [AnswerContext(question_id="q", question="Notes", values=["We have budget and a launch deadline"])]

    response = await HeuristicQualificationOracle().evaluate(OracleRequest(flow_id="f1", prompt="", answers=answers))

    assert 55 < response.score < 100
    assert response.confidence == 0.4


async def test_build_oracle_picks_by_configuration():
    assert isinstance(build_oracle(Settings()), HeuristicQualificationOracle)
    oracle = build_oracle(Settings(openai_api_key="sk-test", openai_model="gpt-test"))
    assert isinstance(oracle, OpenAIQualificationOracle)
    assert oracle.model_name == "gpt-test"
