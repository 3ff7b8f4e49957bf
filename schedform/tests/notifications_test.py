import json
import logging

import httpx
import pytest

from schedform import monitoring
from schedform.config import Settings
from schedform.flows import subscribers
from schedform.flows.notifications import FlowNotification, FlowNotifier, redis_publisher
from schedform.flows.states import FlowStatus
from schedform.integrations import hubspot, slack

pytestmark = pytest.mark.asyncio


def _notification(status="qualified", **payload) -> FlowNotification:
    return FlowNotification(
        flow_id="flow-1",
        organization_id="org-1",
        previous_status="qualifying",
        new_status=status,
        event_type=status,
        payload=payload or None,
    )


async def test_failing_subscriber_does_not_block_others():
    notifier = FlowNotifier(max_attempts=3, backoff_seconds=0)
    received = []
    attempts = {"broken": 0}

    async def broken(notification):
        attempts["broken"] += 1
        raise RuntimeError("webhook down")

    async def healthy(notification):
        received.append(notification.flow_id)

    notifier.subscribe(broken, name="broken")
    notifier.subscribe(healthy, name="healthy")

    notifier.publish(_notification())
    await notifier.drain()

    assert attempts["broken"] == 3
    assert received == ["flow-1"]


async def test_flaky_subscriber_is_retried_until_it_succeeds():
    notifier = FlowNotifier(max_attempts=3, backoff_seconds=0)
    calls = []

    async def flaky(notification):
        calls.append(notification.new_status)
        if len(calls) < 2:
            raise ConnectionError("reset")

    notifier.subscribe(flaky)
    notifier.publish(_notification())
    await notifier.drain()

    assert calls == ["qualified", "qualified"]


async def test_status_and_event_filters():
    notifier = FlowNotifier(backoff_seconds=0)
    qualified, booked = [], []

    async def on_qualified(notification):
        qualified.append(notification.new_status)

    async def on_booking(notification):
        booked.append(notification.event_type)

    notifier.subscribe(on_qualified, statuses=[FlowStatus.QUALIFIED.value])
    notifier.subscribe(on_booking, event_types=["booking_confirmed"])

    notifier.publish(_notification("qualified"))
    notifier.publish(_notification("booking_confirmed"))
    notifier.publish(_notification("abandoned"))
    await notifier.drain()

    assert qualified == ["qualified"]
    assert booked == ["booking_confirmed"]


async def test_machine_failures_in_subscribers_never_reach_the_caller(make_workspace, machine):
    async def explode(notification):
        raise RuntimeError("subscriber bug")

    machine.notifier.subscribe(explode, name="explode")
    ws = await make_workspace()

    flow = await ws.start()
    flow = await ws.submit(flow.id)
    await machine.notifier.drain()

    assert flow.status == FlowStatus.FORM_COMPLETED.value


async def test_redis_publisher_sends_camel_case_message():
    class FakeRedis:
        def __init__(self):
            self.messages = []

        async def publish(self, channel, message):
            self.messages.append((channel, json.loads(message)))

    redis = FakeRedis()
    await redis_publisher(redis)(_notification(score=91))

    channel, message = redis.messages[0]
    assert channel == "schedform:flows"
    assert message["flowId"] == "flow-1"
    assert message["previousStatus"] == "qualifying"
    assert message["newStatus"] == "qualified"
    assert message["payload"] == {"score": 91}


async def test_slack_message_format_and_delivery(monkeypatch):
    monkeypatch.setenv("SLACK_BOT_TOKEN", "xoxb-test")
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True, "ts": "1"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        await slack.send_message("#leads", slack.format_flow_message(_notification(score=91)), client=client)

    assert requests[0]["channel"] == "#leads"
    assert "flow-1" in requests[0]["text"]
    assert "score 91" in requests[0]["text"]


async def test_slack_api_errors_raise(monkeypatch):
    monkeypatch.setenv("SLACK_BOT_TOKEN", "xoxb-test")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": False, "error": "channel_not_found"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(RuntimeError, match="channel_not_found"):
            await slack.send_message("#missing", "hello", client=client)


async def test_hubspot_deal_payload(monkeypatch):
    monkeypatch.setenv("HUBSPOT_PRIVATE_APP_TOKEN", "pat-test")
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append((request.headers["Authorization"], json.loads(request.content)))
        return httpx.Response(201, json={"id": "deal-1"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        data = await hubspot.push_flow_deal(
            _notification("booking_confirmed", start_time="2030-01-01T09:00:00"), client=client
        )

    assert data == {"id": "deal-1"}
    authorization, body = sent[0]
    assert authorization == "Bearer pat-test"
    assert body["properties"]["dealstage"] == "presentationscheduled"
    assert body["properties"]["schedform_meeting_start"] == "2030-01-01T09:00:00"


async def test_build_notifier_wires_configured_integrations(monkeypatch):
    monkeypatch.setenv("SLACK_BOT_TOKEN", "xoxb-test")
    monkeypatch.setenv("HUBSPOT_PRIVATE_APP_TOKEN", "pat-test")

    notifier = subscribers.build_notifier(Settings(slack_flow_channel="#leads"))

    names = {s.name: s for s in notifier.subscriptions}
    assert set(names) == {"slack", "hubspot"}
    assert "abandoned" in names["slack"].statuses
    assert "form_started" not in names["hubspot"].statuses


async def test_build_notifier_without_integrations(monkeypatch):
    monkeypatch.delenv("SLACK_BOT_TOKEN", raising=False)
    monkeypatch.delenv("HUBSPOT_PRIVATE_APP_TOKEN", raising=False)

    notifier = subscribers.build_notifier(Settings())

    assert notifier.subscriptions == []


async def test_structured_log_extras_are_rendered_as_json():
    formatter = monitoring.FlowLogFormatter("%(message)s")
    record = logging.LogRecord("flows.machine", logging.INFO, __file__, 1, "flow", None, None)
    record.flow = {"flow_id": "flow-1", "to": "qualified"}

    assert formatter.format(record) == 'flow | {"flow": {"flow_id": "flow-1", "to": "qualified"}}'
    assert formatter.format(logging.LogRecord("x", logging.INFO, __file__, 1, "plain", None, None)) == "plain"
