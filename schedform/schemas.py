from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class ChoiceIn(BaseModel):
    label: str
    value: str
    qualification_score: Optional[float] = Field(default=None, ge=0, le=100)
    is_disqualifying: bool = False
    disqualification_message: Optional[str] = None


class QuestionIn(BaseModel):
    title: str
    type: str = "single_choice"
    is_required: bool = False
    qualification_weight: float = Field(default=0.0, ge=0)
    choices: List[ChoiceIn] = Field(default_factory=list)


class FormIn(BaseModel):
    title: str
    slug: str
    description: Optional[str] = None
    questions: List[QuestionIn] = Field(default_factory=list)


class FormOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    title: str
    slug: str
    status: str
    created_at: datetime


class EventTypeIn(BaseModel):
    title: str
    slug: str
    form_id: Optional[str] = None
    duration: int = Field(default=30, gt=0)
    buffer_time_before: int = Field(default=0, ge=0)
    buffer_time_after: int = Field(default=0, ge=0)
    minimum_notice: int = Field(default=60, ge=0)
    maximum_days_out: int = Field(default=30, gt=0)
    scheduling_mode: str = Field(default="instant", pattern="^(instant|curated|approval)$")
    requires_approval: bool = False
    max_bookings_per_day: Optional[int] = None
    max_bookings_per_week: Optional[int] = None
    max_bookings_per_month: Optional[int] = None
    booking_frequency_limit: Optional[int] = None
    minimum_qualification_score: Optional[float] = Field(default=None, ge=0, le=100)
    requires_manual_review: bool = False
    require_email_verification: bool = False
    high_value_threshold: Optional[int] = None


class EventTypeOut(EventTypeIn):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    is_active: bool


class SlotIn(BaseModel):
    start_time: datetime
    end_time: datetime
    time_zone: str = "UTC"
    max_bookings: int = Field(default=1, gt=0)
    optimality_score: Optional[int] = Field(default=None, ge=0, le=100)
    ai_recommendation_reason: Optional[str] = None


class SlotOut(SlotIn):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_type_id: str
    current_bookings: int
    is_available: bool
    is_blocked: bool


class FlowStartIn(BaseModel):
    session_id: str
    event_type_id: Optional[str] = None
    respondent_email: Optional[EmailStr] = None
    respondent_name: Optional[str] = None
    total_steps: Optional[int] = Field(default=None, gt=0)
    referrer: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None


class ActivityIn(BaseModel):
    current_step: int = Field(ge=1)
    completion_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    question_id: Optional[str] = None
    expected_version: Optional[int] = None


class SubmitIn(BaseModel):
    answers: Dict[str, Union[List[str], float, str]]
    respondent_email: Optional[EmailStr] = None
    respondent_name: Optional[str] = None
    spam_score: Optional[int] = Field(default=None, ge=0, le=100)
    spam_flags: Optional[List[str]] = None
    expected_version: Optional[int] = None


class BookIn(BaseModel):
    slot_id: str
    guest_name: Optional[str] = None
    guest_email: Optional[EmailStr] = None


class CuratedSelectIn(BaseModel):
    index: int = Field(ge=0)


class ReviewIn(BaseModel):
    approve: bool
    score: Optional[float] = Field(default=None, ge=0, le=100)
    note: Optional[str] = None


class FailIn(BaseModel):
    reason: str


class AbandonIn(BaseModel):
    reason: str = "operator"
    expected_version: Optional[int] = None


class PublicFlowOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    version: int
    scheduling_mode: str
    current_step: int
    completion_percentage: float
    requires_approval: bool
    email_verification_required: bool
    curated_slots: Optional[List[Dict[str, Any]]] = None


class FlowOut(PublicFlowOut):
    organization_id: str
    form_id: str
    event_type_id: Optional[str] = None
    form_response_id: Optional[str] = None
    booking_id: Optional[str] = None
    respondent_email: Optional[str] = None
    respondent_name: Optional[str] = None
    qualification_score: Optional[float] = None
    qualification_reasons: Optional[List[str]] = None
    intent_score: Optional[int] = None
    priority_level: Optional[str] = None
    prospect_summary: Optional[str] = None
    spam_score: Optional[int] = None
    approval_required_reason: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    email_verified_at: Optional[datetime] = None
    started_at: datetime
    form_completed_at: Optional[datetime] = None
    qualification_completed_at: Optional[datetime] = None
    booking_completed_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None
    abandonment_reason: Optional[str] = None
    last_active_at: datetime
    time_to_qualify: Optional[int] = None
    time_to_book: Optional[int] = None


class FlowEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_type: str
    flow_version: int
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    event_data: Optional[Dict[str, Any]] = None
    created_at: datetime


class AnalysisOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    analysis_type: str
    model_version: Optional[str] = None
    was_successful: bool
    retry_count: int
    confidence: Optional[float] = None
    error_message: Optional[str] = None
    processing_time: Optional[int] = None
    created_at: datetime


class QualificationOut(BaseModel):
    flow_id: str
    status: str
    score: Optional[float] = None
    attempts: int
    manual_review: bool
    discarded: bool


class SchedulingOptionsOut(BaseModel):
    flow_id: str
    mode: str
    slots: List[Dict[str, Any]]
    requires_approval: bool
    email_verification_required: bool
