import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlmodel import select

from schedform import monitoring
from schedform.config import Settings
from schedform.db import ConversationalFlow, utcnow
from schedform.flows.errors import ConcurrentModification, FlowNotFound, FlowTerminated, InvalidTransition
from schedform.flows.machine import FlowStateMachine
from schedform.flows.states import FlowStatus

logger = logging.getLogger("flows.reaper")


@dataclass
class ReaperReport:
    scanned: int = 0
    abandoned: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, int]:
        return {
            "scanned": self.scanned,
            "abandoned": len(self.abandoned),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
        }


class AbandonmentReaper:
    """Marks inactive flows as abandoned.

    Each status has its own inactivity threshold. A flow is abandoned with the
    version observed during the scan, so a flow that was touched between the
    scan and the write is skipped instead of being clobbered. Running the
    sweep again over the same data abandons nothing new.
    """

    def __init__(
        self,
        machine: FlowStateMachine,
        *,
        thresholds: Optional[Dict[FlowStatus, timedelta]] = None,
        concurrency: int = 4,
        batch_size: int = 200,
    ) -> None:
        self.machine = machine
        self.thresholds = thresholds if thresholds is not None else Settings.from_env().abandonment_thresholds
        self.concurrency = max(1, concurrency)
        self.batch_size = batch_size

    @classmethod
    def from_settings(cls, machine: FlowStateMachine, settings: Settings) -> "AbandonmentReaper":
        return cls(
            machine,
            thresholds=settings.abandonment_thresholds,
            concurrency=settings.reaper_concurrency,
        )

    async def find_stale(self, now: datetime) -> List[Tuple[str, int, str]]:
        stale: List[Tuple[str, int, str]] = []
        async with self.machine.session_factory() as session:
            for status, threshold in self.thresholds.items():
                cutoff = now - threshold
                rows = await session.exec(
                    select(ConversationalFlow.id, ConversationalFlow.version)
                    .where(
                        ConversationalFlow.status == FlowStatus(status).value,
                        ConversationalFlow.last_active_at < cutoff,
                    )
                    .order_by(ConversationalFlow.last_active_at.asc())
                    .limit(self.batch_size)
                )
                stale.extend((flow_id, version, FlowStatus(status).value) for flow_id, version in rows.all())
        return stale

    async def sweep(self, now: Optional[datetime] = None) -> ReaperReport:
        moment = now or utcnow()
        candidates = await self.find_stale(moment)
        report = ReaperReport(scanned=len(candidates))
        semaphore = asyncio.Semaphore(self.concurrency)

        async def reap(flow_id: str, version: int, status: str) -> None:
            async with semaphore:
                try:
                    await self.machine.abandon(
                        flow_id,
                        reason=f"inactive_{status}",
                        expected_version=version,
                        now=moment,
                    )
                except (ConcurrentModification, FlowTerminated, InvalidTransition, FlowNotFound) as exc:
                    report.skipped.append(flow_id)
                    logger.info("Skipping flow %s: %s", flow_id, exc)
                except Exception as exc:
                    report.failed.append(flow_id)
                    monitoring.capture_exception(exc, flow_id=flow_id)
                else:
                    report.abandoned.append(flow_id)

        await asyncio.gather(*(reap(*candidate) for candidate in candidates))
        logger.info("reaper", extra={"reaper": report.as_dict()})
        return report
