"""
Flow lifecycle states.
Every conversational flow is in exactly ONE of these states at any time.
"""

from enum import Enum
from typing import Dict, FrozenSet


class FlowStatus(str, Enum):
    FORM_STARTED = "form_started"
    FORM_COMPLETED = "form_completed"
    QUALIFYING = "qualifying"
    QUALIFIED = "qualified"
    DISQUALIFIED = "disqualified"          # terminal
    SPAM_DETECTED = "spam_detected"        # terminal
    SCHEDULING_OPTIONS = "scheduling_options"
    BOOKING_PENDING = "booking_pending"
    BOOKING_CONFIRMED = "booking_confirmed"  # terminal
    BOOKING_FAILED = "booking_failed"      # terminal
    ABANDONED = "abandoned"                # terminal, reopenable


class SchedulingMode(str, Enum):
    INSTANT = "instant"    # direct booking from available slots
    CURATED = "curated"    # AI suggests 2-3 times
    APPROVAL = "approval"  # manual approval required


class PriorityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


TERMINAL_STATES: FrozenSet[FlowStatus] = frozenset(
    {
        FlowStatus.DISQUALIFIED,
        FlowStatus.SPAM_DETECTED,
        FlowStatus.BOOKING_CONFIRMED,
        FlowStatus.BOOKING_FAILED,
        FlowStatus.ABANDONED,
    }
)

NON_TERMINAL_STATES = tuple(status for status in FlowStatus if status not in TERMINAL_STATES)

TRANSITIONS: Dict[FlowStatus, FrozenSet[FlowStatus]] = {
    FlowStatus.FORM_STARTED: frozenset({FlowStatus.FORM_COMPLETED, FlowStatus.ABANDONED}),
    FlowStatus.FORM_COMPLETED: frozenset({FlowStatus.QUALIFYING, FlowStatus.ABANDONED}),
    FlowStatus.QUALIFYING: frozenset(
        {
            FlowStatus.QUALIFIED,
            FlowStatus.DISQUALIFIED,
            FlowStatus.SPAM_DETECTED,
            FlowStatus.ABANDONED,
        }
    ),
    FlowStatus.QUALIFIED: frozenset({FlowStatus.SCHEDULING_OPTIONS, FlowStatus.ABANDONED}),
    FlowStatus.SCHEDULING_OPTIONS: frozenset({FlowStatus.BOOKING_PENDING, FlowStatus.ABANDONED}),
    FlowStatus.BOOKING_PENDING: frozenset(
        {
            FlowStatus.BOOKING_CONFIRMED,
            FlowStatus.BOOKING_FAILED,
            FlowStatus.ABANDONED,
        }
    ),
}

# status reached by the explicit recovery action on an abandoned flow
REOPEN_STATUS = FlowStatus.FORM_COMPLETED


def is_terminal(status: FlowStatus) -> bool:
    return status in TERMINAL_STATES


def can_transition(current: FlowStatus, target: FlowStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def priority_for_score(score: float) -> PriorityLevel:
    if score >= 85:
        return PriorityLevel.URGENT
    if score >= 70:
        return PriorityLevel.HIGH
    if score >= 40:
        return PriorityLevel.MEDIUM
    return PriorityLevel.LOW
