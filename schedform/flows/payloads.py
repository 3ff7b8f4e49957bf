from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class FormStartedData(BaseModel):
    kind: Literal["form_started"] = "form_started"
    form_id: str
    session_id: str
    total_steps: Optional[int] = None


class ActivityData(BaseModel):
    kind: Literal["activity"] = "activity"
    current_step: int
    completion_percentage: Optional[float] = None
    question_id: Optional[str] = None


class FormCompletedData(BaseModel):
    kind: Literal["form_completed"] = "form_completed"
    form_response_id: Optional[str] = None
    answers_count: int = 0
    spam_score: Optional[int] = None


class QualificationStartedData(BaseModel):
    kind: Literal["qualification_started"] = "qualification_started"
    attempt_limit: int


class QualificationData(BaseModel):
    kind: Literal["qualification"] = "qualification"
    score: float
    minimum_score: Optional[float] = None
    confidence: Optional[float] = None
    session_id: Optional[str] = None
    reasons: List[str] = Field(default_factory=list)
    reviewed_by: Optional[str] = None


class DisqualificationData(BaseModel):
    kind: Literal["disqualification"] = "disqualification"
    question_id: str
    choice_value: str
    message: Optional[str] = None
    session_id: Optional[str] = None


class SpamData(BaseModel):
    kind: Literal["spam"] = "spam"
    spam_score: int
    threshold: int
    flags: List[str] = Field(default_factory=list)


class ManualReviewData(BaseModel):
    kind: Literal["manual_review"] = "manual_review"
    reason: str
    attempts: int = 0
    last_error: Optional[str] = None


class SchedulingData(BaseModel):
    kind: Literal["scheduling"] = "scheduling"
    mode: str
    slot_count: int = 0
    requires_approval: bool = False


class ApprovalData(BaseModel):
    kind: Literal["approval"] = "approval"
    approved_by: str


class CuratedViewedData(BaseModel):
    kind: Literal["curated_viewed"] = "curated_viewed"
    slot_count: int


class VerificationData(BaseModel):
    kind: Literal["verification"] = "verification"
    stage: Literal["requested", "verified"]
    email: Optional[str] = None


class BookingData(BaseModel):
    kind: Literal["booking"] = "booking"
    booking_id: str
    slot_id: Optional[str] = None
    start_time: datetime
    end_time: datetime
    confirmation_code: Optional[str] = None


class BookingFailedData(BaseModel):
    kind: Literal["booking_failed"] = "booking_failed"
    booking_id: Optional[str] = None
    reason: str


class AbandonmentData(BaseModel):
    kind: Literal["abandonment"] = "abandonment"
    reason: str
    inactive_seconds: Optional[int] = None
    recovery: bool = True


class ReopenData(BaseModel):
    kind: Literal["reopen"] = "reopen"
    reopened_by: Optional[str] = None
    abandoned_at: Optional[datetime] = None


EventPayload = Annotated[
    Union[
        FormStartedData,
        ActivityData,
        FormCompletedData,
        QualificationStartedData,
        QualificationData,
        DisqualificationData,
        SpamData,
        ManualReviewData,
        SchedulingData,
        ApprovalData,
        CuratedViewedData,
        VerificationData,
        BookingData,
        BookingFailedData,
        AbandonmentData,
        ReopenData,
    ],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter = TypeAdapter(EventPayload)


def dump_payload(payload: Optional[BaseModel]) -> Optional[Dict[str, Any]]:
    if payload is None:
        return None
    return payload.model_dump(mode="json")


def parse_payload(data: Optional[Dict[str, Any]]) -> Optional[BaseModel]:
    if not data:
        return None
    return _payload_adapter.validate_python(data)
