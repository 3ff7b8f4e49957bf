import logging

from schedform.config import Settings
from schedform.flows.notifications import FlowNotifier, connect_redis, redis_publisher
from schedform.flows.states import FlowStatus
from schedform.integrations import hubspot, slack

logger = logging.getLogger("flows.subscribers")

SLACK_STATUSES = (
    FlowStatus.QUALIFIED,
    FlowStatus.DISQUALIFIED,
    FlowStatus.SPAM_DETECTED,
    FlowStatus.BOOKING_CONFIRMED,
    FlowStatus.BOOKING_FAILED,
    FlowStatus.ABANDONED,
)

HUBSPOT_STATUSES = tuple(FlowStatus(status) for status in hubspot.DEAL_STAGES)


def build_notifier(settings: Settings) -> FlowNotifier:
    notifier = FlowNotifier(
        max_attempts=settings.notification_max_attempts,
        backoff_seconds=settings.notification_backoff_seconds,
    )

    redis = connect_redis(settings.redis_url)
    if redis is not None:
        notifier.subscribe(redis_publisher(redis), name="redis")

    if slack.is_configured() and settings.slack_flow_channel:
        notifier.subscribe(
            slack.flow_subscriber(settings.slack_flow_channel),
            name="slack",
            statuses=[status.value for status in SLACK_STATUSES],
        )
    else:
        logger.info("Slack flow notifications disabled")

    if hubspot.is_configured():
        notifier.subscribe(
            hubspot.push_flow_deal,
            name="hubspot",
            statuses=[status.value for status in HUBSPOT_STATUSES],
        )
    return notifier
