"""
Scheduled sync runs
Cron or interval jobs that start orchestrator runs
"""

import logging
from dataclasses import dataclass
from typing import Dict, Any, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from storesync.core.orchestrator import SyncOrchestrator


@dataclass
class SyncSchedule:
    id: str
    tenant: str
    entity_types: Optional[List[str]] = None
    platforms: Optional[List[str]] = None
    cron: Optional[str] = None
    interval_minutes: Optional[float] = None
    enabled: bool = True

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'SyncSchedule':
        if not config.get('id') or not config.get('tenant'):
            raise ValueError("Schedule needs an id and a tenant")
        if not config.get('cron') and not config.get('interval_minutes'):
            raise ValueError(f"Schedule {config['id']} needs cron or interval_minutes")
        return cls(
            id=str(config['id']),
            tenant=str(config['tenant']),
            entity_types=list(config['entity_types']) if config.get('entity_types') else None,
            platforms=list(config['platforms']) if config.get('platforms') else None,
            cron=config.get('cron'),
            interval_minutes=float(config['interval_minutes']) if config.get('interval_minutes') else None,
            enabled=bool(config.get('enabled', True))
        )

    def trigger(self, timezone: str = 'UTC'):
        if self.cron:
            return CronTrigger.from_crontab(self.cron, timezone=timezone)
        return IntervalTrigger(minutes=self.interval_minutes, timezone=timezone)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'tenant': self.tenant,
            'entity_types': self.entity_types,
            'platforms': self.platforms,
            'cron': self.cron,
            'interval_minutes': self.interval_minutes,
            'enabled': self.enabled
        }


class SyncScheduler:
    """APScheduler wrapper; each job only asks the orchestrator to start a run"""

    def __init__(self, orchestrator: SyncOrchestrator, schedules: Optional[List[Dict[str, Any]]] = None,
                 timezone: str = 'UTC'):
        self.orchestrator = orchestrator
        self.timezone = timezone
        self.logger = logging.getLogger(__name__)
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._schedules: Dict[str, SyncSchedule] = {}
        for config in schedules or []:
            schedule = SyncSchedule.from_config(config)
            self._schedules[schedule.id] = schedule

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    async def start(self):
        if self._scheduler is not None:
            self.logger.warning("Scheduler already started")
            return
        self._scheduler = AsyncIOScheduler(timezone=self.timezone)
        for schedule in self._schedules.values():
            self._add_job(schedule)
        self._scheduler.start()
        self.logger.info(f"Scheduler started with {len(self._scheduler.get_jobs())} jobs")

    async def stop(self):
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            self.logger.info("Scheduler stopped")

    def _add_job(self, schedule: SyncSchedule):
        if not schedule.enabled or self._scheduler is None:
            return
        self._scheduler.add_job(
            self._run_schedule,
            trigger=schedule.trigger(self.timezone),
            args=[schedule.id],
            id=schedule.id,
            name=f"Sync {schedule.tenant}",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.logger.info(f"Scheduled sync {schedule.id} for {schedule.tenant}")

    async def _run_schedule(self, schedule_id: str):
        schedule = self._schedules.get(schedule_id)
        if schedule is None:
            return
        try:
            run_id = await self.orchestrator.start_run(
                schedule.tenant, entity_types=schedule.entity_types,
                platforms=schedule.platforms, trigger="schedule"
            )
            self.logger.info(f"Schedule {schedule_id} started run {run_id}")
        except Exception as e:
            self.logger.error(f"Schedule {schedule_id} failed to start a run: {e}", exc_info=True)

    def add_schedule(self, config: Dict[str, Any]) -> SyncSchedule:
        schedule = SyncSchedule.from_config(config)
        self._schedules[schedule.id] = schedule
        if self._scheduler is not None:
            if schedule.enabled:
                self._add_job(schedule)
            elif self._scheduler.get_job(schedule.id):
                self._scheduler.remove_job(schedule.id)
        return schedule

    def remove_schedule(self, schedule_id: str) -> bool:
        schedule = self._schedules.pop(schedule_id, None)
        if schedule is None:
            return False
        if self._scheduler is not None and self._scheduler.get_job(schedule_id):
            self._scheduler.remove_job(schedule_id)
        return True

    def list_schedules(self, tenant: Optional[str] = None) -> List[Dict[str, Any]]:
        result = []
        for schedule in self._schedules.values():
            if tenant and schedule.tenant != tenant:
                continue
            entry = schedule.to_dict()
            job = self._scheduler.get_job(schedule.id) if self._scheduler is not None else None
            next_run = getattr(job, 'next_run_time', None) if job else None
            entry['next_run_time'] = next_run.isoformat() if next_run else None
            result.append(entry)
        return result
