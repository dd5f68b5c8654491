"""
Queue processor
Drains the sync queue tier by tier under rate limits, circuit breakers and backoff
"""

import logging
from dataclasses import dataclass, asdict, replace
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional, Iterable, Callable, Tuple

from storesync.core.backoff import BackoffPolicy, generate_idempotency_key, get_entity_priority
from storesync.core.circuit_breaker import CircuitBreakerRegistry
from storesync.core.conflict_resolver import ConflictResolver, EntityVersion, Resolution
from storesync.core.id_mapper import IdMapper
from storesync.core.local_store import LocalStore
from storesync.core.models import (
    QueueItem, Operation, DeletePolicy, SyncDirection, LOCAL_SYSTEM, parse_enum, utc_now
)
from storesync.core.notifications import SyncNotifier, AlertType
from storesync.core.rate_limiter import RateLimiterRegistry
from storesync.core.sync_config import SyncConfigService
from storesync.core.sync_queue import SyncQueueStore, QueueFullError
from storesync.integrations.base import (
    ConnectorAdapter, ConnectorError, LocalEntity, RemoteEntity, IdResolver,
    RetryableError, RateLimitedError, UnresolvedReferenceError, AuthExpiredError,
    NonRetryableError, RemoteConflictError, FatalError, InternalError
)
from storesync.integrations.registry import AdapterRegistry

# Dispatch outcomes
COMPLETED = "completed"
SKIPPED = "skipped"
CONFLICT_HELD = "conflict_held"


@dataclass
class RunCounters:
    """Per-run (or per-drain) outcome counters"""
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    dead: int = 0
    conflicted: int = 0
    skipped: int = 0
    held: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class CancellationToken:
    """Cooperative cancellation flag polled between dispatches"""

    def __init__(self):
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class TenantHaltedError(Exception):
    """Processing for a (tenant, platform) is halted by a fatal error"""

    def __init__(self, tenant: str, platform: str, reason: str = ""):
        super().__init__(f"Sync for {tenant}/{platform} is halted{': ' + reason if reason else ''}")
        self.tenant = tenant
        self.platform = platform
        self.reason = reason


class _StopPlatform(Exception):
    """Internal: stop this platform's pass (breaker refused or fatal halt)"""
    pass


class QueueProcessor:
    """Turns queue items into adapter calls and records the outcome"""

    def __init__(self, store: SyncQueueStore, id_mapper: IdMapper, conflict_resolver: ConflictResolver,
                 sync_config: SyncConfigService, adapters: AdapterRegistry, local_store: LocalStore,
                 breakers: CircuitBreakerRegistry, rate_limiters: RateLimiterRegistry,
                 backoff: Optional[BackoffPolicy] = None, notifier: Optional[SyncNotifier] = None,
                 batch_size: int = 50, max_items_per_drain: int = 5000,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.id_mapper = id_mapper
        self.conflict_resolver = conflict_resolver
        self.sync_config = sync_config
        self.adapters = adapters
        self.local_store = local_store
        self.breakers = breakers
        self.rate_limiters = rate_limiters
        self.backoff = backoff or BackoffPolicy()
        self.notifier = notifier or SyncNotifier()
        self.batch_size = batch_size
        self.max_items_per_drain = max_items_per_drain
        self._clock = clock
        self.logger = logging.getLogger(__name__)

    # Enqueue paths

    async def submit(self, tenant: str, entity_type: str, entity_id: str, operation: Any,
                     payload: Optional[Dict[str, Any]] = None, platform: Optional[str] = None) -> List[str]:
        """
        Local mutation path: queue a push for one platform (or every platform of the tenant
        that syncs this entity type).

        Returns the queued item ids; empty when direction or delete policy keeps the
        change local. QueueFullError propagates to the caller.
        """
        operation = parse_enum(Operation, operation)
        if operation == Operation.FETCH:
            raise ValueError("Use enqueue_fetch for pulls")
        payload = dict(payload or {})

        direction = await self.sync_config.direction_for(tenant, entity_type)
        if not direction.allows_push:
            self.logger.debug(f"Push of {entity_type} disabled for {tenant} ({direction.value}), not queued")
            return []

        if operation == Operation.DELETE:
            policy = await self.sync_config.delete_policy_for(tenant, entity_type)
            if policy == DeletePolicy.LOCAL_ONLY:
                self.logger.debug(f"Delete of {entity_type}/{entity_id} stays local for {tenant}")
                return []
            if policy == DeletePolicy.ARCHIVE_REMOTE:
                payload['archive'] = True

        platforms = [platform] if platform else self.adapters.platforms_for_entity(tenant, entity_type)
        item_ids = []
        for target in platforms:
            item = QueueItem(
                tenant=tenant,
                platform=target,
                entity_type=entity_type,
                entity_id=str(entity_id),
                operation=operation,
                payload=payload,
                idempotency_key=generate_idempotency_key(entity_type, str(entity_id), operation.value,
                                                         payload, target),
                priority=get_entity_priority(entity_type)
            )
            item_ids.append(await self._enqueue(item))
        return item_ids

    async def enqueue_fetch(self, tenant: str, platform: str, entity_type: str, remote_id: str,
                            snapshot: Optional[RemoteEntity] = None, deleted: bool = False,
                            change_marker: Optional[str] = None) -> Optional[str]:
        """Pull path: queue a fetch of one remote entity (webhooks, pull phase)"""
        alias = await self._mapped_alias(tenant, platform, entity_type, str(remote_id))
        if alias is not None:
            self.logger.debug(f"{platform} {entity_type} {remote_id} is mapped as {alias[0]} {alias[1]}")
            entity_type, remote_id = alias
            if snapshot is not None:
                snapshot = replace(snapshot, entity_type=entity_type, remote_id=remote_id)

        direction = await self.sync_config.direction_for(tenant, entity_type)
        if not direction.allows_pull:
            self.logger.debug(f"Pull of {entity_type} disabled for {tenant} ({direction.value}), not queued")
            return None

        payload: Dict[str, Any] = {'remote_id': str(remote_id), 'deleted': deleted}
        if snapshot is not None:
            payload['snapshot'] = snapshot.to_dict()
        # The change marker keeps distinct remote revisions apart
        marker = change_marker or (snapshot.updated_at.isoformat() if snapshot and snapshot.updated_at else None)
        key_material = {'remote_id': str(remote_id), 'deleted': deleted, 'marker': marker}

        item = QueueItem(
            tenant=tenant,
            platform=platform,
            entity_type=entity_type,
            entity_id=str(remote_id),
            operation=Operation.FETCH,
            payload=payload,
            idempotency_key=generate_idempotency_key(entity_type, str(remote_id), Operation.FETCH.value,
                                                     key_material, platform),
            priority=get_entity_priority(entity_type)
        )
        return await self._enqueue(item)

    async def _mapped_alias(self, tenant: str, platform: str, entity_type: str,
                            remote_id: str) -> Optional[Tuple[str, str]]:
        adapter = self.adapters.get(tenant, platform)
        if adapter is None:
            return None
        for alias_type, alias_id in adapter.aliases(entity_type, remote_id):
            if await self.id_mapper.reverse_resolve(tenant, platform, alias_id, LOCAL_SYSTEM, alias_type):
                return alias_type, alias_id
        return None

    async def _enqueue(self, item: QueueItem) -> str:
        try:
            return await self.store.enqueue(item)
        except QueueFullError as e:
            await self.notifier.notify(AlertType.QUEUE_FULL, item.tenant, str(e), platform=item.platform,
                                       current_size=e.current_size, max_size=e.max_size)
            raise

    # Drain

    async def drain(self, tenant: str, platform: str, entity_types: Optional[Iterable[str]] = None,
                    counters: Optional[RunCounters] = None, token: Optional[CancellationToken] = None,
                    batch_size: Optional[int] = None) -> RunCounters:
        """
        Process eligible items for one (tenant, platform), lowest priority tier first.

        A tier is drained until it has no eligible items left before the next tier
        starts. Stops early on cancellation, an open breaker or a fatal halt.
        """
        counters = counters or RunCounters()
        entity_types = list(entity_types) if entity_types is not None else None
        batch_size = batch_size or self.batch_size

        halt = await self.sync_config.get_halt(tenant, platform)
        if halt:
            raise TenantHaltedError(tenant, platform, halt.get('reason', ''))

        adapter = self.adapters.get(tenant, platform)
        processed = 0
        try:
            while processed < self.max_items_per_drain:
                if token and token.cancelled:
                    break
                tiers = await self.store.eligible_priorities(tenant, platform, entity_types)
                if not tiers:
                    break
                processed += await self._drain_tier(tenant, platform, adapter, tiers[0], entity_types,
                                                    counters, token, batch_size,
                                                    self.max_items_per_drain - processed)
        except _StopPlatform:
            pass
        return counters

    async def _drain_tier(self, tenant: str, platform: str, adapter: Optional[ConnectorAdapter], priority: int,
                          entity_types: Optional[List[str]], counters: RunCounters,
                          token: Optional[CancellationToken], batch_size: int, budget: int) -> int:
        breaker = self.breakers.get(tenant, platform)
        limiter = self.rate_limiters.get(tenant, platform)
        # Direction is read once when the tier starts
        directions: Dict[str, SyncDirection] = {}
        processed = 0

        while processed < budget:
            batch = await self.store.dequeue_batch(tenant, min(batch_size, budget - processed),
                                                   platform=platform, entity_types=entity_types,
                                                   priority=priority)
            if not batch:
                return processed

            # Claimed items from this index on have not been settled yet
            unsettled = 0
            try:
                for index, item in enumerate(batch):
                    unsettled = index
                    if token and token.cancelled:
                        return processed

                    if item.entity_type not in directions:
                        directions[item.entity_type] = await self.sync_config.direction_for(
                            tenant, item.entity_type)
                    direction = directions[item.entity_type]
                    allowed = direction.allows_pull if item.operation == Operation.FETCH else direction.allows_push
                    if not allowed:
                        counters.attempted += 1
                        counters.skipped += 1
                        await self.store.mark_dead(item.id, f"Sync direction is {direction.value}",
                                                   error_class="direction")
                        continue

                    if not breaker.should_allow():
                        self.logger.info(f"Circuit open for {tenant}/{platform}, "
                                         f"leaving {len(batch) - index} claimed items pending")
                        raise _StopPlatform()

                    await limiter.acquire()
                    processed += 1
                    unsettled = index + 1
                    await self._process_item(item, adapter, counters)
                unsettled = len(batch)
            finally:
                await self._release_all(batch[unsettled:])
        return processed

    async def _release_all(self, items: List[QueueItem]):
        for item in items:
            await self.store.release(item.id)

    async def _process_item(self, item: QueueItem, adapter: Optional[ConnectorAdapter], counters: RunCounters):
        tenant, platform = item.tenant, item.platform
        breaker = self.breakers.get(tenant, platform)
        counters.attempted += 1

        if adapter is None:
            breaker.release_probe()
            await self._mark_dead(item, FatalError(f"No {platform} adapter configured for tenant {tenant}"),
                                  counters)
            return

        try:
            outcome = await self._dispatch_with_refresh(item, adapter, counters)
        except RateLimitedError as e:
            if e.retry_after:
                self.rate_limiters.get(tenant, platform).penalize(e.retry_after)
            await self._record_breaker_failure(item, breaker)
            await self._retry_later(item, e, counters, hint=e.retry_after)
            return
        except UnresolvedReferenceError as e:
            # Dependency not synced yet; the remote itself is healthy
            breaker.release_probe()
            await self._retry_later(item, e, counters)
            return
        except RetryableError as e:
            await self._record_breaker_failure(item, breaker)
            await self._retry_later(item, e, counters)
            return
        except FatalError as e:
            breaker.release_probe()
            await self.store.release(item.id)
            counters.failed += 1
            await self.sync_config.halt_platform(tenant, platform, str(e))
            await self.notifier.notify(AlertType.PLATFORM_HALTED, tenant, str(e), platform=platform,
                                       item_id=item.id)
            raise _StopPlatform()
        except NonRetryableError as e:
            breaker.release_probe()
            await self._mark_dead(item, e, counters)
            return
        except RemoteConflictError as e:
            # Conflict left unresolved after the resolver ran (remote kept rejecting)
            breaker.release_probe()
            await self._retry_later(item, e, counters)
            return
        except ConnectorError as e:
            await self._record_breaker_failure(item, breaker)
            await self._retry_later(item, e, counters)
            return
        except Exception as e:
            # Bug or malformed data, retrying would fail the same way
            self.logger.error(f"Unexpected error dispatching {item.operation.value} "
                              f"{item.entity_type}/{item.entity_id} on {platform}: {e}", exc_info=True)
            breaker.release_probe()
            await self._mark_dead(item, InternalError(f"{type(e).__name__}: {e}"), counters)
            return

        if outcome == CONFLICT_HELD:
            breaker.release_probe()
            return
        breaker.record_success()
        await self.store.mark_completed(item.id)
        if outcome == SKIPPED:
            counters.skipped += 1
        else:
            counters.succeeded += 1

    async def _record_breaker_failure(self, item: QueueItem, breaker):
        if breaker.record_failure():
            await self.notifier.notify(
                AlertType.CIRCUIT_OPENED, item.tenant,
                f"Circuit opened after {breaker.consecutive_failures} consecutive failures",
                platform=item.platform
            )

    async def _retry_later(self, item: QueueItem, error: ConnectorError, counters: RunCounters,
                           hint: Optional[float] = None):
        if item.retry_count + 1 >= self.backoff.max_retries:
            await self._mark_dead(item, error, counters, count_attempt=True)
            return

        delay = self.backoff.calculate_delay(item.retry_count)
        if hint is not None and hint > delay:
            delay = hint
        next_eligible_at = self._clock() + timedelta(seconds=delay)
        await self.store.mark_failed(item.id, str(error), next_eligible_at, error_class=error.error_class)
        counters.failed += 1
        self.logger.info(f"Retry {item.retry_count + 1}/{self.backoff.max_retries} for "
                         f"{item.entity_type}/{item.entity_id} on {item.platform} in {delay:.1f}s: {error}")

    async def _mark_dead(self, item: QueueItem, error: ConnectorError, counters: RunCounters,
                         count_attempt: bool = False):
        await self.store.mark_dead(item.id, str(error), error_class=error.error_class, count_attempt=count_attempt)
        counters.dead += 1
        await self.notifier.notify(
            AlertType.ITEM_DEAD, item.tenant,
            f"{item.operation.value} {item.entity_type}/{item.entity_id} is dead: {error}",
            platform=item.platform, item_id=item.id, error_class=error.error_class
        )

    async def _dispatch_with_refresh(self, item: QueueItem, adapter: ConnectorAdapter,
                                     counters: RunCounters) -> str:
        try:
            return await self._dispatch(item, adapter, counters)
        except AuthExpiredError as first:
            self.logger.info(f"Credentials expired for {item.tenant}/{item.platform}, refreshing")
            if not await adapter.refresh_credentials():
                raise FatalError(f"Credential refresh failed after: {first}") from first
            try:
                return await self._dispatch(item, adapter, counters)
            except AuthExpiredError as second:
                raise FatalError(f"Credentials rejected after refresh: {second}") from second

    async def _dispatch(self, item: QueueItem, adapter: ConnectorAdapter, counters: RunCounters) -> str:
        if item.operation == Operation.FETCH:
            return await self._dispatch_fetch(item, adapter, counters)
        return await self._dispatch_push(item, adapter, counters)

    # Resolvers handed to adapters

    def _resolver(self, tenant: str, platform: str) -> IdResolver:
        async def resolve(entity_type: str, local_id: str) -> Optional[str]:
            return await self.id_mapper.resolve(tenant, LOCAL_SYSTEM, entity_type, local_id, platform)
        return resolve

    def _reverse_resolver(self, tenant: str, platform: str) -> IdResolver:
        async def resolve(entity_type: str, remote_id: str) -> Optional[str]:
            return await self.id_mapper.reverse_resolve(tenant, platform, remote_id, LOCAL_SYSTEM, entity_type)
        return resolve

    async def _hold_for_conflict(self, item: QueueItem, local_id: str, counters: RunCounters) -> bool:
        if await self.conflict_resolver.has_pending_manual(item.tenant, item.entity_type, local_id):
            await self.store.mark_conflict(item.id, f"Held behind pending conflict on {item.entity_type}/{local_id}")
            counters.held += 1
            return True
        return False

    async def _dispatch_push(self, item: QueueItem, adapter: ConnectorAdapter, counters: RunCounters) -> str:
        tenant, platform, entity_type = item.tenant, item.platform, item.entity_type
        local_id = item.entity_id

        if await self._hold_for_conflict(item, local_id, counters):
            return CONFLICT_HELD

        mapping = await self.id_mapper.get_mapping(tenant, LOCAL_SYSTEM, entity_type, local_id, platform)
        remote_id = mapping.target_id if mapping else None
        resolver = self._resolver(tenant, platform)

        if item.operation == Operation.DELETE:
            if remote_id is None:
                self.logger.debug(f"Delete of never-synced {entity_type}/{local_id}, nothing to do")
                return SKIPPED
            entity = LocalEntity(entity_type, local_id, data=dict(item.payload), deleted=True)
            await adapter.push(Operation.DELETE, entity, remote_id, resolver)
            await self.id_mapper.record(tenant, LOCAL_SYSTEM, entity_type, local_id, platform, remote_id)
            return COMPLETED

        local = await self.local_store.get(tenant, entity_type, local_id)
        full_record = {**(local.data if local else {}), **item.payload}
        local_updated_at = (local.updated_at if local else None) or item.created_at

        operation = item.operation
        if operation == Operation.CREATE and remote_id:
            # Already exists remotely: never create a duplicate
            operation = Operation.UPDATE
        elif operation == Operation.UPDATE and not remote_id:
            operation = Operation.CREATE

        data = full_record if operation == Operation.CREATE else dict(item.payload)
        adapter.validate(entity_type, data, partial=operation == Operation.UPDATE)

        if operation == Operation.UPDATE and mapping and mapping.last_synced_at:
            remote = await adapter.get_remote(entity_type, remote_id)
            if remote is None or remote.deleted:
                self.logger.info(f"{entity_type} {remote_id} vanished on {platform}, recreating")
                operation, remote_id, data = Operation.CREATE, None, full_record
            elif self._both_changed(mapping.last_synced_at, local_updated_at, remote.updated_at):
                return await self._resolve_conflict(item, adapter, local_id, remote_id,
                                                    EntityVersion(full_record, local_updated_at), remote, counters)

        entity = LocalEntity(entity_type, local_id, data=data, updated_at=local_updated_at)
        try:
            new_remote_id = await adapter.push(operation, entity, remote_id, resolver)
        except RemoteConflictError:
            if remote_id is None:
                raise
            remote = await adapter.get_remote(entity_type, remote_id)
            if remote is None:
                raise
            return await self._resolve_conflict(item, adapter, local_id, remote_id,
                                                EntityVersion(full_record, local_updated_at), remote, counters)

        await self.id_mapper.record(tenant, LOCAL_SYSTEM, entity_type, local_id, platform, new_remote_id)
        return COMPLETED

    async def _dispatch_fetch(self, item: QueueItem, adapter: ConnectorAdapter, counters: RunCounters) -> str:
        tenant, platform, entity_type = item.tenant, item.platform, item.entity_type
        payload = item.payload
        remote_id = str(payload.get('remote_id') or item.entity_id)

        if payload.get('snapshot'):
            remote = RemoteEntity.from_dict(payload['snapshot'])
        elif payload.get('deleted'):
            remote = None
        else:
            remote = await adapter.get_remote(entity_type, remote_id)

        local_id = await self.id_mapper.reverse_resolve(tenant, platform, remote_id, LOCAL_SYSTEM, entity_type)

        if payload.get('deleted') or remote is None or remote.deleted:
            if local_id is None:
                return SKIPPED
            await self.local_store.delete(tenant, entity_type, local_id)
            self.logger.info(f"Applied remote delete of {entity_type} {remote_id} to local {local_id}")
            return COMPLETED

        if local_id is not None:
            if await self._hold_for_conflict(item, local_id, counters):
                return CONFLICT_HELD
            mapping = await self.id_mapper.get_mapping(tenant, LOCAL_SYSTEM, entity_type, local_id, platform)
            watermark = mapping.last_synced_at if mapping else None
            if watermark and remote.updated_at and remote.updated_at <= watermark:
                # Echo of a change this engine already synced
                return SKIPPED
            local = await self.local_store.get(tenant, entity_type, local_id)
            if local is not None and watermark and self._both_changed(watermark, local.updated_at, remote.updated_at):
                return await self._resolve_conflict(item, adapter, local_id, remote_id,
                                                    EntityVersion(local.data, local.updated_at), remote, counters)

        remote_data = await adapter.to_local(remote, self._reverse_resolver(tenant, platform))
        new_local_id = await self.local_store.apply_remote(tenant, entity_type, local_id, remote_data,
                                                           remote.updated_at)
        synced_at = self._clock()
        if remote.updated_at and remote.updated_at > synced_at:
            synced_at = remote.updated_at
        await self.id_mapper.record(tenant, LOCAL_SYSTEM, entity_type, new_local_id, platform, remote_id,
                                    synced_at=synced_at)
        return COMPLETED

    @staticmethod
    def _both_changed(watermark: datetime, local_updated_at: Optional[datetime],
                      remote_updated_at: Optional[datetime]) -> bool:
        return bool(local_updated_at and remote_updated_at
                    and local_updated_at > watermark and remote_updated_at > watermark)

    async def _resolve_conflict(self, item: QueueItem, adapter: ConnectorAdapter, local_id: str, remote_id: str,
                                local: EntityVersion, remote: RemoteEntity, counters: RunCounters) -> str:
        tenant, platform = item.tenant, item.platform
        remote_version = EntityVersion(
            await adapter.to_local(remote, self._reverse_resolver(tenant, platform)),
            remote.updated_at
        )
        resolution, record = await self.conflict_resolver.handle(
            tenant, platform, item.entity_type, local_id, local, remote_version, remote_id=remote_id
        )
        counters.conflicted += 1

        if resolution.is_pending:
            await self.store.mark_conflict(item.id, f"Pending manual resolution (conflict {record.id})")
            counters.held += 1
            await self.notifier.notify(
                AlertType.CONFLICT_PENDING, tenant,
                f"{item.entity_type}/{local_id} needs manual conflict resolution",
                platform=platform, conflict_id=record.id
            )
            return CONFLICT_HELD

        await self.apply_resolution(tenant, platform, item.entity_type, local_id, remote_id, resolution)
        return COMPLETED

    async def apply_resolution(self, tenant: str, platform: str, entity_type: str, local_id: str,
                               remote_id: Optional[str], resolution: Resolution):
        """Write the winning version to the losing side(s) and advance the watermark"""
        adapter = self.adapters.get(tenant, platform)
        if adapter is None:
            raise FatalError(f"No {platform} adapter configured for tenant {tenant}")

        version = dict(resolution.version or {})
        if resolution.winner in ('remote', 'merged'):
            local_id = await self.local_store.apply_remote(tenant, entity_type, local_id, version)
        if resolution.winner in ('local', 'merged'):
            entity = LocalEntity(entity_type, local_id, data=version, updated_at=self._clock())
            operation = Operation.UPDATE if remote_id else Operation.CREATE
            remote_id = await adapter.push(operation, entity, remote_id, self._resolver(tenant, platform))
        if remote_id:
            await self.id_mapper.record(tenant, LOCAL_SYSTEM, entity_type, local_id, platform, remote_id)
