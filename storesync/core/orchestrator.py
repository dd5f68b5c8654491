"""
Sync orchestrator
Owns sync runs per tenant (pull then push) and the background drain workers
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional, Iterable, Callable

from storesync.core.backoff import get_entity_priority
from storesync.core.circuit_breaker import CircuitBreakerRegistry
from storesync.core.conflict_resolver import (
    ConflictResolver, ConflictRecord, ConflictNotFoundError, Resolution
)
from storesync.core.models import utc_now
from storesync.core.notifications import SyncNotifier, AlertType
from storesync.core.queue_processor import (
    QueueProcessor, RunCounters, CancellationToken, TenantHaltedError
)
from storesync.core.sync_config import SyncConfigService
from storesync.core.sync_queue import SyncQueueStore
from storesync.integrations.base import (
    ConnectorAdapter, ConnectorError, AuthExpiredError, FatalError, format_cursor_time
)
from storesync.integrations.registry import AdapterRegistry

DEFAULT_POLL_INTERVAL_SECONDS = 30.0
DEFAULT_MAX_PAGES = 50
DEFAULT_MAX_RUNS_KEPT = 200


class RunStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunNotFoundError(Exception):
    """No sync run with the given id"""
    pass


@dataclass
class SyncRun:
    tenant: str
    entity_types: Optional[List[str]]
    platforms: Optional[List[str]]
    trigger: str = "manual"
    status: RunStatus = RunStatus.RUNNING
    counters: RunCounters = field(default_factory=RunCounters)
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    token: CancellationToken = field(default_factory=CancellationToken, repr=False)

    @property
    def is_active(self) -> bool:
        return self.status == RunStatus.RUNNING

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.id,
            'tenant': self.tenant,
            'entity_types': self.entity_types,
            'platforms': self.platforms,
            'trigger': self.trigger,
            'status': self.status.value,
            'counters': self.counters.to_dict(),
            'errors': list(self.errors),
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None
        }


class SyncOrchestrator:
    """
    Runs per tenant and the worker loop.

    A run walks every (platform, entity type) the tenant syncs: the pull phase
    queues fetch items for remote changes since the stored cursor, the push
    phase drains the queue tier by tier. Only one run per tenant is active at
    a time; workers keep draining between runs.
    """

    def __init__(self, processor: QueueProcessor, store: SyncQueueStore, conflict_resolver: ConflictResolver,
                 sync_config: SyncConfigService, adapters: AdapterRegistry, breakers: CircuitBreakerRegistry,
                 notifier: Optional[SyncNotifier] = None,
                 poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
                 max_pages_per_pull: int = DEFAULT_MAX_PAGES, max_runs_kept: int = DEFAULT_MAX_RUNS_KEPT,
                 clock: Callable[[], datetime] = utc_now):
        self.processor = processor
        self.store = store
        self.conflict_resolver = conflict_resolver
        self.sync_config = sync_config
        self.adapters = adapters
        self.breakers = breakers
        self.notifier = notifier or processor.notifier
        self.poll_interval_seconds = poll_interval_seconds
        self.max_pages_per_pull = max_pages_per_pull
        self.max_runs_kept = max_runs_kept
        self._clock = clock
        self.logger = logging.getLogger(__name__)

        self._runs: "OrderedDict[str, SyncRun]" = OrderedDict()
        self._run_tasks: Dict[str, asyncio.Task] = {}
        self._active_by_tenant: Dict[str, str] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._worker_token = CancellationToken()
        self._stop_event: Optional[asyncio.Event] = None
        self.is_running = False

    # Runs

    async def start_run(self, tenant: str, entity_types: Optional[Iterable[str]] = None,
                        platforms: Optional[Iterable[str]] = None, trigger: str = "manual") -> str:
        """
        Start a run in the background and return its id (or the active run's id).

        Raises TenantHaltedError when every targeted platform is halted.
        """
        active_id = self._active_by_tenant.get(tenant)
        if active_id and self._runs[active_id].is_active:
            self.logger.info(f"Run {active_id} already active for {tenant}, not starting another")
            return active_id

        targets = list(platforms) if platforms else self.adapters.platforms(tenant)
        halts = [(platform, await self.sync_config.get_halt(tenant, platform)) for platform in targets]
        if targets and all(halt for _, halt in halts):
            platform, halt = halts[0]
            raise TenantHaltedError(tenant, platform, halt.get('reason', ''))

        run = SyncRun(
            tenant=tenant,
            entity_types=list(entity_types) if entity_types else None,
            platforms=list(platforms) if platforms else None,
            trigger=trigger,
            started_at=self._clock()
        )
        self._remember(run)
        self._active_by_tenant[tenant] = run.id
        self._run_tasks[run.id] = asyncio.create_task(self._execute(run))
        self.logger.info(f"Sync run {run.id} started for {tenant} ({trigger})")
        return run.id

    def _remember(self, run: SyncRun):
        self._runs[run.id] = run
        while len(self._runs) > self.max_runs_kept:
            oldest = next(iter(self._runs.values()))
            if oldest.is_active:
                break
            self._runs.popitem(last=False)

    async def wait_for_run(self, run_id: str) -> SyncRun:
        task = self._run_tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_run(run_id)

    async def _execute(self, run: SyncRun):
        try:
            platforms = run.platforms or self.adapters.platforms(run.tenant)
            for platform in platforms:
                if run.token.cancelled:
                    break
                adapter = self.adapters.get(run.tenant, platform)
                if adapter is None:
                    run.errors.append(f"No adapter configured for {platform}")
                    continue
                await self._sync_platform(run, platform, adapter)

            if run.token.cancelled:
                run.status = RunStatus.CANCELLED
            elif await self._has_errors(run):
                run.status = RunStatus.COMPLETED_WITH_ERRORS
            else:
                run.status = RunStatus.COMPLETED
        except asyncio.CancelledError:
            run.status = RunStatus.CANCELLED
            raise
        except Exception as e:
            self.logger.error(f"Sync run {run.id} for {run.tenant} failed: {e}", exc_info=True)
            run.errors.append(str(e))
            run.status = RunStatus.FAILED
        finally:
            run.finished_at = self._clock()
            if self._active_by_tenant.get(run.tenant) == run.id:
                del self._active_by_tenant[run.tenant]
            self._run_tasks.pop(run.id, None)
            self.logger.info(f"Sync run {run.id} for {run.tenant} finished: {run.status.value} "
                             f"{run.counters.to_dict()}")

    async def _sync_platform(self, run: SyncRun, platform: str, adapter: ConnectorAdapter):
        tenant = run.tenant
        if await self.sync_config.get_halt(tenant, platform):
            run.errors.append(f"{platform} is halted for {tenant}")
            return

        entity_types = [entity_type for entity_type in (run.entity_types or adapter.supported_entities)
                        if adapter.supports(entity_type)]
        entity_types.sort(key=get_entity_priority)

        active_types = []
        for entity_type in entity_types:
            direction = await self.sync_config.direction_for(tenant, entity_type)
            if not (direction.allows_pull or direction.allows_push):
                continue
            active_types.append(entity_type)
            if direction.allows_pull and not run.token.cancelled:
                await self._pull(run, platform, adapter, entity_type)

        if not active_types or run.token.cancelled:
            return
        try:
            await self.processor.drain(tenant, platform, entity_types=active_types,
                                       counters=run.counters, token=run.token)
        except TenantHaltedError as e:
            run.errors.append(str(e))
        if await self.sync_config.get_halt(tenant, platform):
            run.errors.append(f"{platform} halted during run for {tenant}")

    async def _pull(self, run: SyncRun, platform: str, adapter: ConnectorAdapter, entity_type: str):
        """Queue fetch items for every remote change since the stored cursor"""
        tenant = run.tenant
        breaker = self.breakers.get(tenant, platform)
        limiter = self.processor.rate_limiters.get(tenant, platform)
        cursor = await self.sync_config.get_cursor(tenant, platform, entity_type)
        page_cursor = cursor
        newest: Optional[datetime] = None
        queued = 0

        for _ in range(self.max_pages_per_pull):
            if run.token.cancelled:
                break
            if not breaker.should_allow():
                self.logger.info(f"Circuit open for {tenant}/{platform}, pull of {entity_type} skipped")
                break
            await limiter.acquire()
            try:
                page = await self._fetch_page(adapter, entity_type, page_cursor)
            except FatalError as e:
                breaker.release_probe()
                await self.sync_config.halt_platform(tenant, platform, str(e))
                await self.notifier.notify(AlertType.PLATFORM_HALTED, tenant, str(e), platform=platform)
                run.errors.append(f"{platform} {entity_type} pull: {e}")
                return
            except ConnectorError as e:
                if breaker.record_failure():
                    await self.notifier.notify(AlertType.CIRCUIT_OPENED, tenant,
                                               f"Circuit opened during pull of {entity_type}", platform=platform)
                run.errors.append(f"{platform} {entity_type} pull: {e}")
                break
            breaker.record_success()

            for entity in page.entities:
                await self.processor.enqueue_fetch(tenant, platform, entity_type, entity.remote_id,
                                                   snapshot=entity, deleted=entity.deleted)
                queued += 1
                if entity.updated_at and (newest is None or entity.updated_at > newest):
                    newest = entity.updated_at

            if not page.has_more or not page.next_cursor:
                break
            page_cursor = page.next_cursor

        if newest is not None:
            await self.sync_config.set_cursor(tenant, platform, entity_type, format_cursor_time(newest))
        if queued:
            self.logger.info(f"Pulled {queued} {entity_type} changes from {platform} for {tenant}")

    async def _fetch_page(self, adapter: ConnectorAdapter, entity_type: str, cursor):
        try:
            return await adapter.fetch(entity_type, since=cursor)
        except AuthExpiredError as first:
            if not await adapter.refresh_credentials():
                raise FatalError(f"Credential refresh failed after: {first}") from first
            try:
                return await adapter.fetch(entity_type, since=cursor)
            except AuthExpiredError as second:
                raise FatalError(f"Credentials rejected after refresh: {second}") from second

    async def _has_errors(self, run: SyncRun) -> bool:
        if run.errors or run.counters.dead or run.counters.held:
            return True
        counts = await self.store.status_counts(run.tenant, since=run.started_at)
        return bool(counts.get('dead') or counts.get('conflict'))

    async def cancel(self, run_id: str) -> SyncRun:
        run = self.get_run(run_id)
        if run.is_active:
            run.token.cancel()
            self.logger.info(f"Cancellation requested for run {run_id}")
        return run

    def get_run(self, run_id: str) -> SyncRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def list_runs(self, tenant: Optional[str] = None, limit: int = 20) -> List[SyncRun]:
        runs = [run for run in reversed(self._runs.values()) if tenant is None or run.tenant == tenant]
        return runs[:limit]

    # Status and operator actions

    async def get_status(self, tenant: str) -> Dict[str, Any]:
        active_id = self._active_by_tenant.get(tenant)
        return {
            'tenant': tenant,
            'queue': await self.store.status_counts(tenant),
            'pending': await self.store.pending_count(tenant),
            'breakers': self.breakers.states(tenant),
            'pending_conflicts': await self.conflict_resolver.count_pending(tenant),
            'halted_platforms': await self.sync_config.list_halts(tenant),
            'cursors': await self.sync_config.list_cursors(tenant),
            'active_run': active_id,
            'recent_runs': [run.to_dict() for run in self.list_runs(tenant, limit=10)],
            'alerts': self.notifier.get_alerts(tenant, limit=10)
        }

    async def resume(self, tenant: str, platform: str) -> bool:
        """Lift a fatal halt; the next drain picks the platform up again"""
        return await self.sync_config.clear_halt(tenant, platform)

    async def retry_failures(self, tenant: str, item_ids: Optional[List[str]] = None) -> List[str]:
        return await self.store.retry_dead(tenant, item_ids)

    async def resolve_conflict(self, tenant: str, conflict_id: str, choice: str, resolved_by: str,
                               merged_version: Optional[Dict[str, Any]] = None) -> ConflictRecord:
        """
        Write the chosen version, then close the conflict and unblock held items.

        The record stays pending while the write fails, so held items keep
        waiting and the same resolution can be submitted again.
        """
        existing = await self.conflict_resolver.get(conflict_id)
        if existing is None or existing.tenant != tenant:
            raise ConflictNotFoundError(conflict_id)

        version = self.conflict_resolver.chosen_version(existing, choice, merged_version)
        await self.processor.apply_resolution(
            tenant, existing.platform, existing.entity_type, existing.entity_id, existing.remote_id,
            Resolution(choice, version, choice)
        )
        record = await self.conflict_resolver.resolve_manual(conflict_id, choice, resolved_by, version)

        for entity_id in filter(None, {record.entity_id, record.remote_id}):
            await self.store.supersede_held(tenant, record.entity_type, entity_id, record.created_at)
            await self.store.release_held(tenant, record.entity_type, entity_id)
        return record

    # Workers

    async def start(self):
        """Recover crashed claims, restore breakers and launch one drain worker per tenant"""
        if self.is_running:
            return
        await self.store.recover_in_flight()
        await self.breakers.load_snapshots()
        self.is_running = True
        self._worker_token = CancellationToken()
        self._stop_event = asyncio.Event()
        for tenant in self.adapters.tenants():
            self._workers[tenant] = asyncio.create_task(self._worker(tenant))
        self.logger.info(f"Started {len(self._workers)} sync workers")

    async def stop(self):
        """
        Stop workers and active runs cooperatively.

        A dispatch already in progress runs to completion and records its
        outcome; claimed items not yet dispatched go back to pending.
        """
        self.is_running = False
        self._worker_token.cancel()
        if self._stop_event is not None:
            self._stop_event.set()
        for run in self.list_runs(limit=self.max_runs_kept):
            if run.is_active:
                run.token.cancel()

        tasks = list(self._workers.values()) + list(self._run_tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()

        await self.breakers.save_snapshots()
        self.logger.info("Sync workers stopped")

    async def _worker(self, tenant: str):
        while not self._worker_token.cancelled:
            try:
                await self.drain_tenant(tenant, token=self._worker_token)
                await self.breakers.save_snapshots()
            except Exception as e:
                self.logger.error(f"Worker for {tenant} failed a pass: {e}", exc_info=True)
            if await self._wait_for_stop(self.poll_interval_seconds):
                break

    async def _wait_for_stop(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def drain_tenant(self, tenant: str, token: Optional[CancellationToken] = None) -> RunCounters:
        """One worker pass over every non-halted platform of the tenant"""
        counters = RunCounters()
        for platform in self.adapters.platforms(tenant):
            if token and token.cancelled:
                break
            if await self.sync_config.get_halt(tenant, platform):
                continue
            try:
                await self.processor.drain(tenant, platform, counters=counters, token=token)
            except TenantHaltedError:
                continue
        return counters
