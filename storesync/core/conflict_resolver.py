"""
Conflict resolution for entities edited on both sides since the last sync
Pure strategy decision plus an audit record for every invocation
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any, List, Optional, Iterable, Tuple, Callable

from sqlalchemy import select

from storesync.core.models import ConflictRecordDB, ConflictStrategy, LOCAL_SYSTEM, parse_enum, utc_now

PENDING_MANUAL = "pending-manual"
MANUAL_CHOICES = ("local", "remote", "merged")
RESOLUTIONS = MANUAL_CHOICES + (PENDING_MANUAL,)

DEFAULT_STRATEGIES = {
    'customer': ConflictStrategy.LAST_WRITE_WINS,
    'product': ConflictStrategy.REMOTE_WINS,
    'inventory': ConflictStrategy.LOCAL_WINS,
    'order': ConflictStrategy.LOCAL_WINS,
    'invoice': ConflictStrategy.MANUAL,
}
FALLBACK_STRATEGY = ConflictStrategy.LAST_WRITE_WINS

# Free-text fields where both sides' additions are kept
DEFAULT_MERGE_FIELDS = ('notes',)


class ConflictNotFoundError(Exception):
    """No conflict record with the given id"""
    pass


class ConflictAlreadyResolvedError(Exception):
    """Manual resolution requested for a conflict that is not pending"""
    pass


@dataclass
class EntityVersion:
    """One side's snapshot of an entity"""
    data: Dict[str, Any]
    updated_at: Optional[datetime] = None


@dataclass
class Resolution:
    winner: Optional[str]             # 'local', 'remote', 'merged' or None for manual
    version: Optional[Dict[str, Any]]
    resolution: str

    @property
    def is_pending(self) -> bool:
        return self.resolution == PENDING_MANUAL


@dataclass
class ConflictRecord:
    id: str
    tenant: str
    platform: str
    entity_type: str
    entity_id: str
    remote_id: Optional[str]
    local_version: Dict[str, Any]
    local_updated_at: Optional[datetime]
    remote_version: Dict[str, Any]
    remote_updated_at: Optional[datetime]
    strategy_applied: str
    resolution: str
    resolved_version: Optional[Dict[str, Any]] = None
    resolved_by: Optional[str] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @classmethod
    def from_db(cls, row: ConflictRecordDB) -> 'ConflictRecord':
        return cls(
            id=row.id,
            tenant=row.tenant,
            platform=row.platform,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            remote_id=row.remote_id,
            local_version=row.local_version or {},
            local_updated_at=row.local_updated_at,
            remote_version=row.remote_version or {},
            remote_updated_at=row.remote_updated_at,
            strategy_applied=row.strategy_applied,
            resolution=row.resolution,
            resolved_version=row.resolved_version,
            resolved_by=row.resolved_by,
            created_at=row.created_at,
            resolved_at=row.resolved_at
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'tenant': self.tenant,
            'platform': self.platform,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'remote_id': self.remote_id,
            'local_version': self.local_version,
            'local_updated_at': self.local_updated_at.isoformat() if self.local_updated_at else None,
            'remote_version': self.remote_version,
            'remote_updated_at': self.remote_updated_at.isoformat() if self.remote_updated_at else None,
            'strategy_applied': self.strategy_applied,
            'resolution': self.resolution,
            'resolved_version': self.resolved_version,
            'resolved_by': self.resolved_by,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None
        }


def merge_text(remote_text: Any, local_text: Any) -> Any:
    """Concatenate two free-text values line-wise without repeating lines"""
    if not remote_text:
        return local_text
    if not local_text:
        return remote_text
    lines = str(remote_text).split('\n')
    for line in str(local_text).split('\n'):
        if line not in lines:
            lines.append(line)
    return '\n'.join(lines)


def local_is_newer(local: EntityVersion, remote: EntityVersion) -> bool:
    """Later timestamp wins; ties and missing remote timestamps favour local"""
    if remote.updated_at is None:
        return True
    if local.updated_at is None:
        return False
    return local.updated_at >= remote.updated_at


def decide(strategy: ConflictStrategy, local: EntityVersion, remote: EntityVersion,
           merge_fields: Iterable[str] = DEFAULT_MERGE_FIELDS) -> Resolution:
    """Apply a strategy to two versions; no side effects"""
    if strategy == ConflictStrategy.REMOTE_WINS:
        return Resolution('remote', dict(remote.data), 'remote')

    if strategy == ConflictStrategy.LOCAL_WINS:
        return Resolution('local', dict(local.data), 'local')

    if strategy == ConflictStrategy.LAST_WRITE_WINS:
        if local_is_newer(local, remote):
            return Resolution('local', dict(local.data), 'local')
        return Resolution('remote', dict(remote.data), 'remote')

    if strategy == ConflictStrategy.MERGE:
        merge_fields = set(merge_fields)
        merged = dict(remote.data)
        for key, value in local.data.items():
            if key in merge_fields:
                merged[key] = merge_text(remote.data.get(key), value)
            else:
                merged[key] = value
        return Resolution('merged', merged, 'merged')

    return Resolution(None, None, PENDING_MANUAL)


class ConflictResolver:
    """Picks a strategy per entity type, decides and writes the audit trail"""

    def __init__(self, db_session_factory, id_mapper, strategies: Optional[Dict[str, str]] = None,
                 merge_fields: Iterable[str] = DEFAULT_MERGE_FIELDS, sync_config=None,
                 clock: Callable[[], datetime] = utc_now):
        self.db_session_factory = db_session_factory
        self.id_mapper = id_mapper
        self.sync_config = sync_config
        self.merge_fields = tuple(merge_fields)
        self._clock = clock
        self.logger = logging.getLogger(__name__)

        self.default_strategies = dict(DEFAULT_STRATEGIES)
        for entity_type, strategy in (strategies or {}).items():
            self.default_strategies[entity_type] = parse_enum(ConflictStrategy, strategy)

    async def strategy_for(self, tenant: str, entity_type: str) -> ConflictStrategy:
        if self.sync_config is not None:
            overrides = await self.sync_config.get_conflict_strategies(tenant)
            if entity_type in overrides:
                return parse_enum(ConflictStrategy, overrides[entity_type])
        return self.default_strategies.get(entity_type, FALLBACK_STRATEGY)

    async def handle(self, tenant: str, platform: str, entity_type: str, entity_id: str,
                     local: EntityVersion, remote: EntityVersion, remote_id: Optional[str] = None,
                     strategy: Optional[ConflictStrategy] = None) -> Tuple[Resolution, ConflictRecord]:
        """Decide a dual edit and persist the ConflictRecord (always written)"""
        strategy = strategy or await self.strategy_for(tenant, entity_type)
        resolution = decide(strategy, local, remote, self.merge_fields)

        if remote_id is None:
            remote_id = await self.id_mapper.resolve(tenant, LOCAL_SYSTEM, entity_type, entity_id, platform)

        now = self._clock()
        row = ConflictRecordDB(
            tenant=tenant,
            platform=platform,
            entity_type=entity_type,
            entity_id=str(entity_id),
            remote_id=remote_id,
            local_version=local.data,
            local_updated_at=local.updated_at,
            remote_version=remote.data,
            remote_updated_at=remote.updated_at,
            strategy_applied=strategy.value,
            resolution=resolution.resolution,
            resolved_version=resolution.version,
            created_at=now,
            resolved_at=None if resolution.is_pending else now,
            resolved_by=None if resolution.is_pending else f"strategy:{strategy.value}"
        )
        async with self.db_session_factory() as session:
            session.add(row)
            await session.flush()
            record = ConflictRecord.from_db(row)

        level = logging.WARNING if resolution.is_pending else logging.INFO
        self.logger.log(level, f"Conflict on {tenant} {entity_type}/{entity_id} ({platform}): "
                               f"{strategy.value} -> {resolution.resolution}")
        return resolution, record

    async def has_pending_manual(self, tenant: str, entity_type: str, entity_id: str) -> bool:
        async with self.db_session_factory() as session:
            result = await session.execute(
                select(ConflictRecordDB.id).where(
                    ConflictRecordDB.tenant == tenant,
                    ConflictRecordDB.entity_type == entity_type,
                    ConflictRecordDB.entity_id == str(entity_id),
                    ConflictRecordDB.resolution == PENDING_MANUAL
                ).limit(1)
            )
            return result.scalars().first() is not None

    async def get(self, conflict_id: str) -> Optional[ConflictRecord]:
        async with self.db_session_factory() as session:
            row = await session.get(ConflictRecordDB, conflict_id)
            return ConflictRecord.from_db(row) if row else None

    async def list_conflicts(self, tenant: str, pending_only: bool = False,
                             limit: int = 100) -> List[ConflictRecord]:
        async with self.db_session_factory() as session:
            query = select(ConflictRecordDB).where(ConflictRecordDB.tenant == tenant)
            if pending_only:
                query = query.where(ConflictRecordDB.resolution == PENDING_MANUAL)
            result = await session.execute(query.order_by(ConflictRecordDB.created_at.desc()).limit(limit))
            return [ConflictRecord.from_db(row) for row in result.scalars().all()]

    async def count_pending(self, tenant: str) -> int:
        return len(await self.list_conflicts(tenant, pending_only=True, limit=10_000))

    def chosen_version(self, record: ConflictRecord, choice: str,
                       merged_version: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """The version a manual choice selects; merged defaults to the merge strategy's result"""
        if choice not in MANUAL_CHOICES:
            raise ValueError(f"Invalid resolution choice: {choice}")
        if record.resolution != PENDING_MANUAL:
            raise ConflictAlreadyResolvedError(f"Conflict {record.id} already resolved as {record.resolution}")

        if choice == 'local':
            return record.local_version
        if choice == 'remote':
            return record.remote_version
        if merged_version is not None:
            return merged_version
        local = EntityVersion(record.local_version, record.local_updated_at)
        remote = EntityVersion(record.remote_version, record.remote_updated_at)
        return decide(ConflictStrategy.MERGE, local, remote, self.merge_fields).version

    async def resolve_manual(self, conflict_id: str, choice: str, resolved_by: str,
                             merged_version: Optional[Dict[str, Any]] = None) -> ConflictRecord:
        """Close a pending-manual conflict with a human decision"""
        if choice not in MANUAL_CHOICES:
            raise ValueError(f"Invalid resolution choice: {choice}")

        async with self.db_session_factory() as session:
            row = await session.get(ConflictRecordDB, conflict_id)
            if row is None:
                raise ConflictNotFoundError(conflict_id)
            version = self.chosen_version(ConflictRecord.from_db(row), choice, merged_version)

            row.resolution = choice
            row.resolved_version = version
            row.resolved_by = resolved_by
            row.resolved_at = self._clock()
            await session.flush()
            record = ConflictRecord.from_db(row)

        self.logger.info(f"Conflict {conflict_id} resolved manually as {choice} by {resolved_by}")
        return record
