import pytest
from sqlmodel import select

from schedform.db import AiAnalysisSession, ProspectInsight, SchedulingRecommendation
from schedform.flows.errors import ApprovalNotAuthorized, InvalidTransition, OracleFailure, TransitionPreconditionFailed
from schedform.flows.states import FlowStatus
from schedform.qualification.oracle import OracleResponse

pytestmark = pytest.mark.asyncio


async def _sessions(session_factory, flow_id):
    async with session_factory() as session:
        rows = await session.exec(
            select(AiAnalysisSession)
            .where(AiAnalysisSession.flow_id == flow_id)
            .order_by(AiAnalysisSession.retry_count)
        )
        return rows.all()


async def test_qualified_flow_gets_score_insights_and_timing(make_workspace, make_services, stub_oracle, session_factory):
    ws = await make_workspace()
    oracle = stub_oracle(
        [
            OracleResponse(
                score=88,
                reasons=["budget confirmed"],
                confidence=0.9,
                summary="Strong fit",
                insights={"industry": "fintech", "pain_points": ["manual scheduling"]},
                recommendation={"recommended_duration": 45, "recommended_type": "video"},
            )
        ]
    )
    services = make_services(oracle)
    flow = await ws.start()
    await ws.submit(flow.id)

    outcome = await services.gateway.qualify(flow.id)

    assert outcome.status == FlowStatus.QUALIFIED.value
    assert outcome.score == 88
    assert outcome.attempts == 1
    stored = await services.machine.get(flow.id)
    assert stored.qualification_score == 88
    assert stored.priority_level == "urgent"
    assert stored.intent_score == 88
    assert stored.prospect_summary == "Strong fit"
    assert stored.qualification_completed_at is not None
    assert stored.time_to_qualify >= 1

    request = oracle.calls[0]
    # budget 90 weighted 2, timeline 90 weighted 1
    assert request.rule_score == 90
    assert "What is your budget?" in request.prompt

    sessions = await _sessions(session_factory, flow.id)
    assert len(sessions) == 1
    assert sessions[0].was_successful is True
    assert sessions[0].prompt_template == "lead_qualification@v3"
    assert sessions[0].model_version == "stub"

    async with session_factory() as session:
        insight = (await session.exec(select(ProspectInsight).where(ProspectInsight.flow_id == flow.id))).one()
        recommendation = (
            await session.exec(select(SchedulingRecommendation).where(SchedulingRecommendation.flow_id == flow.id))
        ).one()
    assert insight.industry == "fintech"
    assert insight.pain_points == ["manual scheduling"]
    assert recommendation.recommended_duration == 45

    events = [e.event_type for e in await services.machine.list_events(flow.id)]
    assert events == ["form_started", "form_completed", "qualification_started", "qualified"]


async def test_score_below_minimum_disqualifies(make_workspace, make_services, stub_oracle):
    ws = await make_workspace(minimum_qualification_score=60)
    services = make_services(stub_oracle([OracleResponse(score=42)]))
    flow = await ws.start()
    await ws.submit(flow.id, budget="small", timeline="later")

    outcome = await services.gateway.qualify(flow.id)

    assert outcome.status == FlowStatus.DISQUALIFIED.value
    stored = await services.machine.get(flow.id)
    assert stored.qualification_score == 42
    assert stored.priority_level == "medium"


async def test_disqualifying_answer_short_circuits(
    make_workspace, make_services, stub_oracle, recording_calendar, session_factory
):
    ws = await make_workspace(mode="curated")
    oracle = stub_oracle()
    calendar = recording_calendar()
    services = make_services(oracle, calendar=calendar)
    flow = await ws.start()
    await ws.submit(flow.id, timeline="never")

    outcome = await services.gateway.qualify(flow.id)

    assert outcome.status == FlowStatus.DISQUALIFIED.value
    assert oracle.calls == []
    assert calendar.calls == 0
    sessions = await _sessions(session_factory, flow.id)
    assert len(sessions) == 1
    assert sessions[0].model_version == "rules"
    assert sessions[0].was_successful is True

    stored = await services.machine.get(flow.id)
    assert stored.qualification_reasons == ["Not planning a project"]
    events = await services.machine.list_events(flow.id)
    assert events[-1].event_data["choice_value"] == "never"


async def test_spam_is_detected_before_the_oracle_runs(make_workspace, make_services, stub_oracle, session_factory):
    ws = await make_workspace()
    oracle = stub_oracle()
    services = make_services(oracle)
    flow = await ws.start()
    await ws.submit(flow.id, spam_score=92)

    outcome = await services.gateway.qualify(flow.id)

    assert outcome.status == FlowStatus.SPAM_DETECTED.value
    assert oracle.calls == []
    assert await _sessions(session_factory, flow.id) == []
    events = await services.machine.list_events(flow.id)
    assert events[-1].event_data == {"kind": "spam", "spam_score": 92, "threshold": 80, "flags": []}


async def test_oracle_timeouts_route_to_manual_review(make_workspace, make_services, stub_oracle, session_factory):
    ws = await make_workspace()
    oracle = stub_oracle(delay=1.0)
    services = make_services(oracle, oracle_timeout_seconds=0.05, qualification_max_attempts=3)
    flow = await ws.start()
    await ws.submit(flow.id)

    outcome = await services.gateway.qualify(flow.id)

    assert outcome.manual_review is True
    assert outcome.attempts == 3
    assert outcome.status == FlowStatus.QUALIFYING.value
    sessions = await _sessions(session_factory, flow.id)
    assert len(sessions) == 3
    assert [s.was_successful for s in sessions] == [False, False, False]
    assert [s.retry_count for s in sessions] == [0, 1, 2]
    assert all("did not answer" in s.error_message for s in sessions)

    stored = await services.machine.get(flow.id)
    assert stored.status == FlowStatus.QUALIFYING.value
    assert stored.requires_approval is True
    assert stored.approval_required_reason == "manual_review"
    events = await services.machine.list_events(flow.id)
    assert events[-1].event_type == "manual_review_requested"
    assert events[-1].event_data["attempts"] == 3


async def test_retry_recovers_after_a_failure(make_workspace, make_services, stub_oracle, session_factory):
    ws = await make_workspace()
    oracle = stub_oracle([OracleFailure("bad json"), OracleResponse(score=75)])
    services = make_services(oracle)
    flow = await ws.start()
    await ws.submit(flow.id)

    outcome = await services.gateway.qualify(flow.id)

    assert outcome.status == FlowStatus.QUALIFIED.value
    assert outcome.attempts == 2
    sessions = await _sessions(session_factory, flow.id)
    assert [(s.retry_count, s.was_successful) for s in sessions] == [(0, False), (1, True)]


async def test_manual_review_resolution(make_workspace, make_services, stub_oracle):
    ws = await make_workspace()
    services = make_services(stub_oracle([RuntimeError("upstream 500")] * 2), qualification_max_attempts=2)
    flow = await ws.start()
    await ws.submit(flow.id)
    outcome = await services.gateway.qualify(flow.id)
    assert outcome.manual_review is True

    with pytest.raises(ApprovalNotAuthorized):
        await services.gateway.resolve_manual_review(flow.id, ws.member_id, approve=True, score=70)

    flow = await services.gateway.resolve_manual_review(
        flow.id, ws.owner_id, approve=True, score=70, note="Known customer"
    )

    assert flow.status == FlowStatus.QUALIFIED.value
    assert flow.qualification_score == 70
    assert flow.requires_approval is False
    assert flow.approval_required_reason is None
    assert flow.qualification_reasons == ["Known customer"]
    events = await services.machine.list_events(flow.id)
    assert events[-1].event_data["reviewed_by"] == ws.owner_id


async def test_review_rejected_when_nothing_is_pending(make_workspace, make_services):
    ws = await make_workspace()
    services = make_services()
    flow = await ws.start()
    await ws.submit(flow.id)
    await services.gateway.qualify(flow.id)

    with pytest.raises(TransitionPreconditionFailed):
        await services.gateway.resolve_manual_review(flow.id, ws.owner_id, approve=False)


async def test_event_type_review_holds_successful_result(make_workspace, make_services, stub_oracle):
    ws = await make_workspace(requires_manual_review=True)
    services = make_services(stub_oracle([OracleResponse(score=64)]))
    flow = await ws.start()
    await ws.submit(flow.id)

    outcome = await services.gateway.qualify(flow.id)

    assert outcome.manual_review is True
    stored = await services.machine.get(flow.id)
    assert stored.status == FlowStatus.QUALIFYING.value
    assert stored.qualification_score == 64

    flow = await services.gateway.resolve_manual_review(flow.id, ws.owner_id, approve=False)
    assert flow.status == FlowStatus.DISQUALIFIED.value
    assert flow.qualification_score == 64


async def test_result_is_discarded_when_flow_was_abandoned_meanwhile(make_workspace, make_services, stub_oracle):
    ws = await make_workspace()
    services = make_services()
    flow = await ws.start()
    await ws.submit(flow.id)

    class AbandoningOracle(stub_oracle):
        async def evaluate(self, request):
            await services.machine.abandon(request.flow_id, "operator")
            return await super().evaluate(request)

    services.gateway.oracle = AbandoningOracle()
    outcome = await services.gateway.qualify(flow.id)

    assert outcome.discarded is True
    assert outcome.status == FlowStatus.ABANDONED.value
    stored = await services.machine.get(flow.id)
    assert stored.status == FlowStatus.ABANDONED.value
    assert stored.qualification_score is None


async def test_only_submitted_flows_can_be_qualified(make_workspace, make_services):
    ws = await make_workspace()
    services = make_services()
    flow = await ws.start()

    with pytest.raises(InvalidTransition):
        await services.gateway.qualify(flow.id)


async def test_high_value_prospects_must_verify_email(make_workspace, make_services, stub_oracle):
    ws = await make_workspace(require_email_verification=True, high_value_threshold=80)
    services = make_services(stub_oracle([OracleResponse(score=91), OracleResponse(score=55)]))
    high = await ws.start()
    await ws.submit(high.id)
    low = await ws.start()
    await ws.submit(low.id, budget="medium", timeline="later")

    await services.gateway.qualify(high.id)
    await services.gateway.qualify(low.id)

    assert (await services.machine.get(high.id)).email_verification_required is True
    assert (await services.machine.get(low.id)).email_verification_required is False
