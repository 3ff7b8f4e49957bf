"""
Qualification gateway.

Drives a submitted flow through ``qualifying`` to a decision: spam gate,
disqualifying answers, then the oracle with bounded retries. Every oracle
attempt is persisted as an AiAnalysisSession. When every attempt fails the
flow is held in ``qualifying`` for manual review.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from schedform import monitoring
from schedform.config import Settings
from schedform.db import (
    AiAnalysisSession,
    ConversationalFlow,
    EventType,
    ProspectInsight,
    SchedulingRecommendation,
    utcnow,
)
from schedform.flows.errors import (
    ConcurrentModification,
    InvalidTransition,
    OracleError,
    OracleFailure,
    OracleTimeout,
    TransitionPreconditionFailed,
)
from schedform.flows.machine import FlowStateMachine, require_operator
from schedform.flows.payloads import (
    DisqualificationData,
    ManualReviewData,
    QualificationData,
    QualificationStartedData,
    SpamData,
)
from schedform.flows.states import FlowStatus, SchedulingMode, priority_for_score
from schedform.qualification.oracle import OracleRequest, OracleResponse, QualificationOracle
from schedform.qualification.prompts import PromptTemplate, load_prompt
from schedform.qualification.scoring import AnswerContext, find_disqualifying, load_answers, rule_score
from schedform.scheduling.availability import CalendarProvider, find_open_slots, slot_summary

MANUAL_REVIEW = "manual_review"
# attempts to apply a result when the flow is touched concurrently
APPLY_ATTEMPTS = 3

INSIGHT_FIELDS = (
    "business_size",
    "industry",
    "role",
    "decision_maker",
    "primary_pain_point",
    "pain_points",
    "budget_range",
    "timeline",
    "communication_style",
    "preferred_meeting_format",
    "red_flags",
    "meeting_strategy",
    "talking_points",
    "questions_to_ask",
)

RECOMMENDATION_FIELDS = (
    "recommended_duration",
    "recommended_type",
    "reason_for_type",
    "time_slot_reasons",
    "preparation_time",
    "follow_up_strategy",
    "next_steps_recommendation",
)


@dataclass
class QualificationOutcome:
    flow_id: str
    status: str
    score: Optional[float] = None
    attempts: int = 0
    session_ids: List[str] = field(default_factory=list)
    manual_review: bool = False
    discarded: bool = False


@dataclass
class _Context:
    flow: ConversationalFlow
    event_type: Optional[EventType]
    request: OracleRequest


class QualificationGateway:
    def __init__(
        self,
        machine: FlowStateMachine,
        oracle: QualificationOracle,
        *,
        settings: Optional[Settings] = None,
        prompt: Optional[PromptTemplate] = None,
        calendar: Optional[CalendarProvider] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.machine = machine
        self.oracle = oracle
        self.settings = settings or Settings.from_env()
        self.prompt = prompt or load_prompt(self.settings.prompt_path)
        self.calendar = calendar
        self.logger = logger or logging.getLogger("qualification.gateway")

    async def qualify(self, flow_id: str) -> QualificationOutcome:
        """Qualify a submitted flow.

        Args:
            flow_id: Flow in ``form_completed`` (or already ``qualifying``).

        Returns:
            QualificationOutcome: The status the flow ended in and the analysis
            sessions written along the way.
        """
        outcome = QualificationOutcome(flow_id=flow_id, status=FlowStatus.QUALIFYING.value)

        async with self.machine.unit_of_work(flow_id) as session:
            flow = await self.machine.load(session, flow_id)
            current = FlowStatus(flow.status)
            if current == FlowStatus.FORM_COMPLETED:
                await self.machine.apply(
                    session,
                    flow,
                    FlowStatus.QUALIFYING,
                    payload=QualificationStartedData(attempt_limit=self.settings.qualification_max_attempts),
                )
            elif current != FlowStatus.QUALIFYING:
                raise InvalidTransition(flow.id, current.value, FlowStatus.QUALIFYING.value)

            threshold = self.settings.spam_score_threshold
            if flow.spam_score is not None and flow.spam_score >= threshold:
                await self.machine.apply(
                    session,
                    flow,
                    FlowStatus.SPAM_DETECTED,
                    payload=SpamData(spam_score=flow.spam_score, threshold=threshold, flags=flow.spam_flags or []),
                )
                outcome.status = flow.status
                return outcome

            answers = await load_answers(session, flow.form_response_id)
            disqualifying = find_disqualifying(answers)
            if disqualifying is not None:
                answer, choice = disqualifying
                analysis = self._session_row(
                    flow,
                    model="rules",
                    input_data={"question_id": answer.question_id, "value": choice.value},
                    parsed={"disqualified_by": choice.value, "message": choice.message},
                    confidence=1.0,
                )
                session.add(analysis)
                await session.flush()
                reason = choice.message or f"Answer '{choice.label}' is disqualifying"
                await self.machine.apply(
                    session,
                    flow,
                    FlowStatus.DISQUALIFIED,
                    payload=DisqualificationData(
                        question_id=answer.question_id,
                        choice_value=choice.value,
                        message=choice.message,
                        session_id=analysis.id,
                    ),
                    changes={"qualification_reasons": [reason]},
                )
                outcome.status = flow.status
                outcome.session_ids.append(analysis.id)
                return outcome

            context = await self._build_context(session, flow, answers)

        return await self._run_oracle(context, outcome)

    async def resolve_manual_review(
        self,
        flow_id: str,
        reviewer_id: str,
        *,
        approve: bool,
        score: Optional[float] = None,
        note: Optional[str] = None,
    ) -> ConversationalFlow:
        async with self.machine.unit_of_work(flow_id) as session:
            flow = await self.machine.load(session, flow_id)
            await require_operator(session, flow.organization_id, reviewer_id)
            current = FlowStatus(flow.status)
            target = FlowStatus.QUALIFIED if approve else FlowStatus.DISQUALIFIED
            if current != FlowStatus.QUALIFYING or flow.approval_required_reason != MANUAL_REVIEW:
                raise TransitionPreconditionFailed(
                    flow.id,
                    current.value,
                    target.value,
                    message=f"Flow {flow.id} is not waiting for manual review",
                )

            final_score = score if score is not None else flow.qualification_score
            analysis = self._session_row(
                flow,
                model=MANUAL_REVIEW,
                input_data={"reviewer_id": reviewer_id},
                parsed={"approved": approve, "score": final_score, "note": note},
                confidence=1.0,
            )
            session.add(analysis)
            await session.flush()

            reasons = list(flow.qualification_reasons or [])
            if note:
                reasons.append(note)
            changes: Dict[str, Any] = {
                "requires_approval": False,
                "approval_required_reason": None,
                "qualification_reasons": reasons,
            }
            if final_score is not None:
                changes["qualification_score"] = final_score
                changes["priority_level"] = priority_for_score(final_score).value
            await self.machine.apply(
                session,
                flow,
                target,
                payload=QualificationData(
                    score=final_score or 0.0,
                    session_id=analysis.id,
                    reasons=reasons,
                    reviewed_by=reviewer_id,
                ),
                changes=changes,
            )
        return flow

    # --- oracle loop ---------------------------------------------------------

    async def _build_context(
        self, session: AsyncSession, flow: ConversationalFlow, answers: List[AnswerContext]
    ) -> _Context:
        event_type = await session.get(EventType, flow.event_type_id) if flow.event_type_id else None
        candidates: List[Dict[str, Any]] = []
        if event_type is not None and flow.scheduling_mode == SchedulingMode.CURATED.value:
            slots = await find_open_slots(
                session,
                event_type,
                now=utcnow(),
                guest_email=flow.respondent_email,
                calendar=self.calendar,
            )
            candidates = [slot_summary(slot) for slot in slots]

        score = rule_score(answers)
        request = OracleRequest(
            flow_id=flow.id,
            prompt=self.prompt.render(
                name=flow.respondent_name,
                email=flow.respondent_email,
                answers=answers,
                rule_score=score,
                slots=candidates,
            ),
            answers=answers,
            rule_score=score,
            respondent_name=flow.respondent_name,
            respondent_email=flow.respondent_email,
            candidate_slots=candidates,
            curated_slot_count=self.settings.curated_slot_count,
        )
        return _Context(flow=flow, event_type=event_type, request=request)

    async def _run_oracle(self, context: _Context, outcome: QualificationOutcome) -> QualificationOutcome:
        max_attempts = max(1, self.settings.qualification_max_attempts)
        last_error: Optional[str] = None

        for attempt in range(max_attempts):
            outcome.attempts = attempt + 1
            started = time.perf_counter()
            try:
                response = await self._call_oracle(context.request)
            except OracleError as exc:
                last_error = str(exc) or type(exc).__name__
                elapsed = int((time.perf_counter() - started) * 1000)
                analysis = await self._record_session(
                    context,
                    model=self.oracle.model_name,
                    was_successful=False,
                    error=last_error,
                    retry_count=attempt,
                    processing_time=elapsed,
                )
                outcome.session_ids.append(analysis.id)
                self.logger.warning(
                    "qualification",
                    extra={
                        "qualification": {
                            "flow_id": context.flow.id,
                            "attempt": attempt + 1,
                            "status": "error",
                            "error": last_error,
                        }
                    },
                )
                if attempt + 1 < max_attempts:
                    await asyncio.sleep(min(2**attempt, 5) * self.settings.retry_backoff_seconds)
                continue

            elapsed = int((time.perf_counter() - started) * 1000)
            analysis = await self._record_session(
                context,
                model=response.model,
                was_successful=True,
                response=response,
                retry_count=attempt,
                processing_time=elapsed,
            )
            outcome.session_ids.append(analysis.id)
            outcome.score = response.score
            return await self._apply_result(context, response, analysis.id, outcome)

        return await self._hold_for_review(context, outcome, last_error)

    async def _call_oracle(self, request: OracleRequest) -> OracleResponse:
        try:
            return await asyncio.wait_for(self.oracle.evaluate(request), timeout=self.settings.oracle_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise OracleTimeout(f"Oracle did not answer within {self.settings.oracle_timeout_seconds:g}s") from exc
        except OracleError:
            raise
        except Exception as exc:
            monitoring.capture_exception(exc, flow_id=request.flow_id)
            raise OracleFailure(str(exc) or type(exc).__name__) from exc

    async def _apply_result(
        self,
        context: _Context,
        response: OracleResponse,
        session_id: str,
        outcome: QualificationOutcome,
    ) -> QualificationOutcome:
        for _ in range(APPLY_ATTEMPTS):
            try:
                async with self.machine.unit_of_work(context.flow.id) as session:
                    flow = await self.machine.load(session, context.flow.id)
                    if flow.status != FlowStatus.QUALIFYING.value:
                        return self._discard(outcome, flow, "flow left qualifying")

                    event_type = (
                        await session.get(EventType, flow.event_type_id) if flow.event_type_id else None
                    )
                    await self._store_insights(session, flow, response)
                    changes = self._result_changes(flow, event_type, response)
                    payload = QualificationData(
                        score=response.score,
                        minimum_score=event_type.minimum_qualification_score if event_type else None,
                        confidence=response.confidence,
                        session_id=session_id,
                        reasons=response.reasons,
                    )

                    if event_type is not None and event_type.requires_manual_review:
                        changes.update({"requires_approval": True, "approval_required_reason": MANUAL_REVIEW})
                        await self.machine.note(
                            session,
                            flow,
                            "manual_review_requested",
                            payload=ManualReviewData(reason="review_required", attempts=outcome.attempts),
                            changes=changes,
                        )
                        outcome.manual_review = True
                    else:
                        minimum = event_type.minimum_qualification_score if event_type else None
                        passed = minimum is None or response.score >= minimum
                        target = FlowStatus.QUALIFIED if passed else FlowStatus.DISQUALIFIED
                        await self.machine.apply(session, flow, target, payload=payload, changes=changes)
                outcome.status = flow.status
                return outcome
            except ConcurrentModification:
                self.logger.info("Flow %s changed while applying qualification; retrying", context.flow.id)
        return self._discard(outcome, context.flow, "flow kept changing")

    async def _hold_for_review(
        self, context: _Context, outcome: QualificationOutcome, last_error: Optional[str]
    ) -> QualificationOutcome:
        async with self.machine.unit_of_work(context.flow.id) as session:
            flow = await self.machine.load(session, context.flow.id)
            if flow.status != FlowStatus.QUALIFYING.value:
                return self._discard(outcome, flow, "flow left qualifying")
            await self.machine.note(
                session,
                flow,
                "manual_review_requested",
                payload=ManualReviewData(reason="oracle_unavailable", attempts=outcome.attempts, last_error=last_error),
                changes={"requires_approval": True, "approval_required_reason": MANUAL_REVIEW},
            )
        self.logger.error(
            "qualification",
            extra={
                "qualification": {
                    "flow_id": flow.id,
                    "status": "manual_review",
                    "attempts": outcome.attempts,
                    "error": last_error,
                }
            },
        )
        outcome.manual_review = True
        outcome.status = flow.status
        return outcome

    def _discard(self, outcome: QualificationOutcome, flow: ConversationalFlow, reason: str) -> QualificationOutcome:
        self.logger.info(
            "qualification",
            extra={"qualification": {"flow_id": flow.id, "status": "discarded", "reason": reason}},
        )
        outcome.discarded = True
        outcome.status = flow.status
        return outcome

    # --- persistence helpers -------------------------------------------------

    def _result_changes(
        self,
        flow: ConversationalFlow,
        event_type: Optional[EventType],
        response: OracleResponse,
    ) -> Dict[str, Any]:
        score = response.score
        changes: Dict[str, Any] = {
            "qualification_score": score,
            "qualification_reasons": response.reasons,
            "intent_score": response.intent_score or max(1, int(round(score))),
            "priority_level": priority_for_score(score).value,
            "prospect_summary": response.summary,
            "key_insights": response.insights or None,
            "meeting_recommendations": response.recommendation or None,
        }
        if flow.approval_required_reason == MANUAL_REVIEW:
            changes.update({"requires_approval": False, "approval_required_reason": None})
        if event_type is not None and event_type.require_email_verification:
            threshold = event_type.high_value_threshold
            if threshold is None or score >= threshold:
                changes["email_verification_required"] = True
        return changes

    async def _store_insights(self, session: AsyncSession, flow: ConversationalFlow, response: OracleResponse) -> None:
        now = utcnow()
        insight = (await session.exec(select(ProspectInsight).where(ProspectInsight.flow_id == flow.id))).first()
        if insight is None:
            insight = ProspectInsight(flow_id=flow.id)
        insights = response.insights or {}
        for name in INSIGHT_FIELDS:
            if name in insights:
                setattr(insight, name, insights[name])
        insight.updated_at = now
        session.add(insight)

        recommendation = (
            await session.exec(select(SchedulingRecommendation).where(SchedulingRecommendation.flow_id == flow.id))
        ).first()
        if recommendation is None:
            recommendation = SchedulingRecommendation(flow_id=flow.id)
        data = response.recommendation or {}
        for name in RECOMMENDATION_FIELDS:
            if name in data:
                setattr(recommendation, name, data[name])
        recommendation.optimal_time_slots = response.curated_slots or None
        session.add(recommendation)

    def _session_row(
        self,
        flow: ConversationalFlow,
        *,
        model: str,
        input_data: Dict[str, Any],
        parsed: Optional[Dict[str, Any]] = None,
        confidence: Optional[float] = None,
        was_successful: bool = True,
        error: Optional[str] = None,
        retry_count: int = 0,
        processing_time: Optional[int] = None,
        raw: Optional[str] = None,
        tokens: Optional[int] = None,
    ) -> AiAnalysisSession:
        return AiAnalysisSession(
            flow_id=flow.id,
            analysis_type="qualification",
            model_version=model,
            prompt_template=self.prompt.label,
            input_data=input_data,
            raw_response=raw,
            parsed_results=parsed,
            confidence=confidence,
            processing_time=processing_time,
            tokens_used=tokens,
            was_successful=was_successful,
            error_message=error[:1024] if error else None,
            retry_count=retry_count,
        )

    async def _record_session(
        self,
        context: _Context,
        *,
        model: str,
        was_successful: bool,
        retry_count: int,
        processing_time: int,
        response: Optional[OracleResponse] = None,
        error: Optional[str] = None,
    ) -> AiAnalysisSession:
        analysis = self._session_row(
            context.flow,
            model=model,
            input_data=context.request.as_input(),
            parsed=response.as_results() if response else None,
            confidence=response.confidence if response else None,
            was_successful=was_successful,
            error=error,
            retry_count=retry_count,
            processing_time=processing_time,
            raw=response.raw if response else None,
            tokens=response.tokens if response else None,
        )
        async with self.machine.session_factory() as session:
            session.add(analysis)
            await session.commit()
        return analysis
