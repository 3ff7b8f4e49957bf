from dataclasses import dataclass
from typing import Optional

from schedform.config import Settings
from schedform.db import SessionFactory, get_session
from schedform.flows.machine import FlowStateMachine
from schedform.flows.notifications import FlowNotifier
from schedform.flows.reaper import AbandonmentReaper
from schedform.flows.subscribers import build_notifier
from schedform.qualification.gateway import QualificationGateway
from schedform.qualification.oracle import QualificationOracle, build_oracle
from schedform.scheduling.availability import CalendarProvider
from schedform.scheduling.dispatcher import SchedulingDispatcher


@dataclass
class Services:
    settings: Settings
    notifier: FlowNotifier
    machine: FlowStateMachine
    gateway: QualificationGateway
    dispatcher: SchedulingDispatcher
    reaper: AbandonmentReaper


def build_services(
    settings: Optional[Settings] = None,
    *,
    session_factory: SessionFactory = get_session,
    oracle: Optional[QualificationOracle] = None,
    notifier: Optional[FlowNotifier] = None,
    calendar: Optional[CalendarProvider] = None,
) -> Services:
    settings = settings or Settings.from_env()
    notifier = notifier or build_notifier(settings)
    machine = FlowStateMachine(session_factory, notifier=notifier)
    return Services(
        settings=settings,
        notifier=notifier,
        machine=machine,
        gateway=QualificationGateway(machine, oracle or build_oracle(settings), settings=settings, calendar=calendar),
        dispatcher=SchedulingDispatcher(machine, settings=settings, calendar=calendar),
        reaper=AbandonmentReaper.from_settings(machine, settings),
    )
