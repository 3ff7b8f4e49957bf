import asyncio
import os
from typing import Any, Dict

from celery import Celery
from sqlalchemy.pool import NullPool

from schedform.config import Settings
from schedform.db import build_engine, session_factory_for
from schedform.services import build_services


def _get_broker_url() -> str:
    return os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL", "redis://localhost:6379/0")


celery_app = Celery(
    "schedform",
    broker=_get_broker_url(),
    backend=os.getenv("CELERY_RESULT_BACKEND", _get_broker_url()),
)


async def _sweep(settings: Settings) -> Dict[str, Any]:
    # each asyncio.run gets its own loop, so pooled connections cannot be shared
    engine = build_engine(settings.database_url, poolclass=NullPool)
    services = build_services(settings, session_factory=session_factory_for(engine))
    try:
        report = await services.reaper.sweep()
        await services.notifier.drain()
        return report.as_dict()
    finally:
        await engine.dispose()


async def _qualify(settings: Settings, flow_id: str) -> Dict[str, Any]:
    engine = build_engine(settings.database_url, poolclass=NullPool)
    services = build_services(settings, session_factory=session_factory_for(engine))
    try:
        outcome = await services.gateway.qualify(flow_id)
        await services.notifier.drain()
        return {
            "flow_id": outcome.flow_id,
            "status": outcome.status,
            "score": outcome.score,
            "attempts": outcome.attempts,
            "manual_review": outcome.manual_review,
            "discarded": outcome.discarded,
        }
    finally:
        await engine.dispose()


@celery_app.task
def sweep_abandoned_flows_task() -> Dict[str, Any]:
    return asyncio.run(_sweep(Settings.from_env()))


@celery_app.task
def qualify_flow_task(flow_id: str) -> Dict[str, Any]:
    return asyncio.run(_qualify(Settings.from_env(), flow_id))


celery_app.conf.beat_schedule = {
    "sweep-abandoned-flows": {
        "task": sweep_abandoned_flows_task.name,
        "schedule": Settings.from_env().reaper_interval_minutes * 60.0,
    },
}
