"""
Durable sync queue with idempotent enqueue and compare-and-set claims
Every coordination between workers goes through this store
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Iterable, Tuple, Callable

from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError

from storesync.core.models import (
    QueueItem, QueueItemDB, QueueStatus, NON_TERMINAL_STATUSES, TERMINAL_STATUSES,
    DISPATCHABLE_STATUSES, utc_now
)

DEFAULT_MAX_QUEUE_SIZE = 100_000


class QueueFullError(Exception):
    """Tenant queue reached its ceiling; the change was not recorded"""

    def __init__(self, tenant: str, current_size: int, max_size: int):
        super().__init__(f"Sync queue for tenant '{tenant}' is full ({current_size}/{max_size})")
        self.tenant = tenant
        self.current_size = current_size
        self.max_size = max_size


class SyncQueueStore:
    """Service for persisting and claiming queue items"""

    def __init__(self, db_session_factory, max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
                 clock: Callable[[], datetime] = utc_now):
        self.db_session_factory = db_session_factory
        self.max_queue_size = max_queue_size
        self._clock = clock
        self.logger = logging.getLogger(__name__)

    async def _find_active(self, session, tenant: str, idempotency_key: str) -> Optional[str]:
        result = await session.execute(
            select(QueueItemDB.id).where(
                QueueItemDB.tenant == tenant,
                QueueItemDB.idempotency_key == idempotency_key,
                QueueItemDB.status.in_(NON_TERMINAL_STATUSES)
            )
        )
        return result.scalars().first()

    async def enqueue(self, item: QueueItem) -> str:
        """Persist an item, or return the id of its non-terminal twin"""
        item_id, _ = await self.enqueue_detailed(item)
        return item_id

    async def enqueue_detailed(self, item: QueueItem) -> Tuple[str, bool]:
        """Like enqueue, also reporting whether a new row was created"""
        now = self._clock()
        try:
            async with self.db_session_factory() as session:
                existing_id = await self._find_active(session, item.tenant, item.idempotency_key)
                if existing_id:
                    self.logger.debug(f"Duplicate enqueue for key {item.idempotency_key[:12]}, "
                                      f"returning {existing_id}")
                    return existing_id, False

                count_result = await session.execute(
                    select(func.count(QueueItemDB.id)).where(
                        QueueItemDB.tenant == item.tenant,
                        QueueItemDB.status.in_(NON_TERMINAL_STATUSES)
                    )
                )
                current_size = count_result.scalar_one()
                if current_size >= self.max_queue_size:
                    raise QueueFullError(item.tenant, current_size, self.max_queue_size)

                item.status = QueueStatus.PENDING
                item.created_at = now
                item.updated_at = now
                session.add(item.to_db_model())
        except IntegrityError:
            # Lost a race against a concurrent enqueue of the same change
            async with self.db_session_factory() as session:
                existing_id = await self._find_active(session, item.tenant, item.idempotency_key)
            if existing_id is None:
                raise
            return existing_id, False

        self.logger.debug(f"Enqueued {item.operation.value} {item.entity_type}/{item.entity_id} "
                          f"for {item.tenant}/{item.platform} ({item.id})")
        return item.id, True

    async def dequeue_batch(self, tenant: str, max_items: int, platform: Optional[str] = None,
                            entity_types: Optional[Iterable[str]] = None,
                            priority: Optional[int] = None) -> List[QueueItem]:
        """
        Claim up to max_items eligible items, ordered by priority then arrival.

        Each candidate is moved to in_flight with a conditional UPDATE on the
        status seen at selection time; rows another worker claimed first are
        skipped.
        """
        now = self._clock()
        async with self.db_session_factory() as session:
            query = select(QueueItemDB.id, QueueItemDB.status).where(
                QueueItemDB.tenant == tenant,
                QueueItemDB.status.in_(DISPATCHABLE_STATUSES),
                or_(QueueItemDB.next_eligible_at.is_(None), QueueItemDB.next_eligible_at <= now)
            )
            if platform:
                query = query.where(QueueItemDB.platform == platform)
            if entity_types is not None:
                query = query.where(QueueItemDB.entity_type.in_(list(entity_types)))
            if priority is not None:
                query = query.where(QueueItemDB.priority == priority)
            query = query.order_by(QueueItemDB.priority, QueueItemDB.created_at).limit(max_items)

            candidates = (await session.execute(query)).all()

            claimed_ids = []
            for item_id, seen_status in candidates:
                result = await session.execute(
                    update(QueueItemDB)
                    .where(QueueItemDB.id == item_id, QueueItemDB.status == seen_status)
                    .values(status=QueueStatus.IN_FLIGHT.value, last_attempt_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed_ids.append(item_id)

            if not claimed_ids:
                return []

            rows = (await session.execute(
                select(QueueItemDB).where(QueueItemDB.id.in_(claimed_ids))
                .order_by(QueueItemDB.priority, QueueItemDB.created_at)
            )).scalars().all()
            return [QueueItem.from_db(row) for row in rows]

    async def eligible_priorities(self, tenant: str, platform: Optional[str] = None,
                                  entity_types: Optional[Iterable[str]] = None) -> List[int]:
        """Distinct priority tiers that currently have dispatchable items"""
        now = self._clock()
        async with self.db_session_factory() as session:
            query = select(QueueItemDB.priority).where(
                QueueItemDB.tenant == tenant,
                QueueItemDB.status.in_(DISPATCHABLE_STATUSES),
                or_(QueueItemDB.next_eligible_at.is_(None), QueueItemDB.next_eligible_at <= now)
            )
            if platform:
                query = query.where(QueueItemDB.platform == platform)
            if entity_types is not None:
                query = query.where(QueueItemDB.entity_type.in_(list(entity_types)))
            result = await session.execute(query.distinct().order_by(QueueItemDB.priority))
            return list(result.scalars().all())

    async def _transition(self, item_id: str, allowed_from: Iterable[str], **values) -> bool:
        values.setdefault('updated_at', self._clock())
        async with self.db_session_factory() as session:
            result = await session.execute(
                update(QueueItemDB)
                .where(QueueItemDB.id == item_id, QueueItemDB.status.in_(list(allowed_from)))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount == 1
        if not changed:
            self.logger.warning(f"Queue item {item_id} not in {list(allowed_from)}, "
                                f"skipped transition to {values.get('status')}")
        return changed

    async def mark_completed(self, item_id: str) -> bool:
        now = self._clock()
        return await self._transition(
            item_id, (QueueStatus.IN_FLIGHT.value,),
            status=QueueStatus.COMPLETED.value,
            completed_at=now,
            next_eligible_at=None,
            error_detail=None,
            error_class=None
        )

    async def mark_failed(self, item_id: str, error: str, next_eligible_at: datetime,
                          error_class: Optional[str] = None) -> bool:
        """Record a retryable failure and gate the item until next_eligible_at"""
        now = self._clock()
        return await self._transition(
            item_id, (QueueStatus.IN_FLIGHT.value,),
            status=QueueStatus.FAILED.value,
            retry_count=QueueItemDB.retry_count + 1,
            last_attempt_at=now,
            next_eligible_at=next_eligible_at,
            error_detail=error,
            error_class=error_class
        )

    async def mark_dead(self, item_id: str, error: str, error_class: Optional[str] = None,
                        count_attempt: bool = False) -> bool:
        """Terminal failure; the item stays for inspection and manual retry"""
        now = self._clock()
        values = {
            'status': QueueStatus.DEAD.value,
            'last_attempt_at': now,
            'next_eligible_at': None,
            'error_detail': error,
            'error_class': error_class,
            'completed_at': now
        }
        if count_attempt:
            values['retry_count'] = QueueItemDB.retry_count + 1
        return await self._transition(item_id, (QueueStatus.IN_FLIGHT.value,), **values)

    async def mark_conflict(self, item_id: str, detail: str) -> bool:
        """Hold the item behind a pending manual conflict"""
        return await self._transition(
            item_id, (QueueStatus.IN_FLIGHT.value, QueueStatus.PENDING.value, QueueStatus.FAILED.value),
            status=QueueStatus.CONFLICT.value,
            error_detail=detail,
            error_class='conflict'
        )

    async def release(self, item_id: str) -> bool:
        """Return a claimed item to pending without spending a retry"""
        return await self._transition(
            item_id, (QueueStatus.IN_FLIGHT.value,),
            status=QueueStatus.PENDING.value
        )

    async def release_held(self, tenant: str, entity_type: str, entity_id: str) -> int:
        """Release items held behind a now-resolved conflict"""
        now = self._clock()
        async with self.db_session_factory() as session:
            result = await session.execute(
                update(QueueItemDB)
                .where(
                    QueueItemDB.tenant == tenant,
                    QueueItemDB.entity_type == entity_type,
                    QueueItemDB.entity_id == entity_id,
                    QueueItemDB.status == QueueStatus.CONFLICT.value
                )
                .values(status=QueueStatus.PENDING.value, next_eligible_at=None,
                        error_detail=None, error_class=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            released = result.rowcount
        if released:
            self.logger.info(f"Released {released} held items for {tenant} {entity_type}/{entity_id}")
        return released

    async def supersede_held(self, tenant: str, entity_type: str, entity_id: str,
                             created_before: datetime) -> int:
        """Complete held items whose change was already part of a resolved conflict"""
        now = self._clock()
        async with self.db_session_factory() as session:
            result = await session.execute(
                update(QueueItemDB)
                .where(
                    QueueItemDB.tenant == tenant,
                    QueueItemDB.entity_type == entity_type,
                    QueueItemDB.entity_id == entity_id,
                    QueueItemDB.status == QueueStatus.CONFLICT.value,
                    QueueItemDB.created_at <= created_before
                )
                .values(status=QueueStatus.COMPLETED.value, completed_at=now, next_eligible_at=None,
                        error_detail="Superseded by conflict resolution", error_class=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    async def retry_dead(self, tenant: str, item_ids: Optional[List[str]] = None) -> List[str]:
        """Re-enqueue dead items with a fresh retry budget; returns the ids moved"""
        now = self._clock()
        retried = []
        async with self.db_session_factory() as session:
            query = select(QueueItemDB).where(
                QueueItemDB.tenant == tenant,
                QueueItemDB.status == QueueStatus.DEAD.value
            )
            if item_ids:
                query = query.where(QueueItemDB.id.in_(item_ids))
            rows = (await session.execute(query.order_by(QueueItemDB.created_at))).scalars().all()

            for row in rows:
                # Another non-terminal copy of the same change already covers it
                if await self._find_active(session, tenant, row.idempotency_key):
                    continue
                row.status = QueueStatus.PENDING.value
                row.retry_count = 0
                row.next_eligible_at = None
                row.completed_at = None
                row.updated_at = now
                await session.flush()
                retried.append(row.id)

        self.logger.info(f"Re-enqueued {len(retried)} dead items for tenant {tenant}")
        return retried

    async def list_failures(self, tenant: str, limit: int = 100,
                            include_retrying: bool = True) -> List[QueueItem]:
        """Dead items (and optionally retry-waiting ones), newest first"""
        statuses = [QueueStatus.DEAD.value]
        if include_retrying:
            statuses.append(QueueStatus.FAILED.value)
        async with self.db_session_factory() as session:
            result = await session.execute(
                select(QueueItemDB).where(
                    QueueItemDB.tenant == tenant,
                    QueueItemDB.status.in_(statuses)
                ).order_by(QueueItemDB.updated_at.desc()).limit(limit)
            )
            return [QueueItem.from_db(row) for row in result.scalars().all()]

    async def get(self, item_id: str) -> Optional[QueueItem]:
        async with self.db_session_factory() as session:
            row = await session.get(QueueItemDB, item_id)
            return QueueItem.from_db(row) if row else None

    async def list_items(self, tenant: str, statuses: Optional[Iterable[str]] = None,
                         limit: int = 500) -> List[QueueItem]:
        async with self.db_session_factory() as session:
            query = select(QueueItemDB).where(QueueItemDB.tenant == tenant)
            if statuses is not None:
                query = query.where(QueueItemDB.status.in_(list(statuses)))
            result = await session.execute(
                query.order_by(QueueItemDB.priority, QueueItemDB.created_at).limit(limit)
            )
            return [QueueItem.from_db(row) for row in result.scalars().all()]

    async def status_counts(self, tenant: str, since: Optional[datetime] = None) -> Dict[str, int]:
        """Item count per status (every status present, zero if empty)"""
        counts = {status.value: 0 for status in QueueStatus}
        async with self.db_session_factory() as session:
            query = select(QueueItemDB.status, func.count(QueueItemDB.id)).where(
                QueueItemDB.tenant == tenant
            )
            if since is not None:
                query = query.where(QueueItemDB.created_at >= since)
            result = await session.execute(query.group_by(QueueItemDB.status))
            for status, count in result.all():
                counts[status] = count
        return counts

    async def pending_count(self, tenant: str) -> int:
        """Items still waiting for dispatch (pending or retry-waiting)"""
        async with self.db_session_factory() as session:
            result = await session.execute(
                select(func.count(QueueItemDB.id)).where(
                    QueueItemDB.tenant == tenant,
                    QueueItemDB.status.in_(DISPATCHABLE_STATUSES)
                )
            )
            return result.scalar_one()

    async def recover_in_flight(self) -> int:
        """Startup recovery: claims interrupted by a crash return to pending"""
        now = self._clock()
        async with self.db_session_factory() as session:
            result = await session.execute(
                update(QueueItemDB)
                .where(QueueItemDB.status == QueueStatus.IN_FLIGHT.value)
                .values(status=QueueStatus.PENDING.value, updated_at=now,
                        error_detail="Claim interrupted by restart")
                .execution_options(synchronize_session=False)
            )
            recovered = result.rowcount
        if recovered:
            self.logger.info(f"Recovered {recovered} in-flight items after restart")
        return recovered

    async def archive_terminal(self, older_than_days: int = 30) -> int:
        """Stamp archived_at on old terminal items; rows are kept for audit"""
        now = self._clock()
        cutoff = now - timedelta(days=older_than_days)
        async with self.db_session_factory() as session:
            result = await session.execute(
                update(QueueItemDB)
                .where(
                    QueueItemDB.status.in_(TERMINAL_STATUSES),
                    QueueItemDB.archived_at.is_(None),
                    QueueItemDB.updated_at < cutoff
                )
                .values(archived_at=now)
                .execution_options(synchronize_session=False)
            )
            archived = result.rowcount
        self.logger.info(f"Archived {archived} terminal queue items older than {older_than_days} days")
        return archived
