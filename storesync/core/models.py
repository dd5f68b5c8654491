"""
Core data models for the StoreSync engine - SQLAlchemy Integration
Queue items, ID mappings, conflict records, breaker snapshots and sync settings
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional

from sqlalchemy import Column, String, DateTime, Integer, Text, JSON, Index, UniqueConstraint, text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utc_now() -> datetime:
    """Naive UTC timestamp, the format stored in every table"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize aware datetimes to naive UTC for comparisons and storage"""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class QueueStatus(Enum):
    """Queue item lifecycle"""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"        # retryable, waiting for next_eligible_at
    CONFLICT = "conflict"    # held behind a pending-manual conflict
    COMPLETED = "completed"
    DEAD = "dead"


NON_TERMINAL_STATUSES = (
    QueueStatus.PENDING.value,
    QueueStatus.IN_FLIGHT.value,
    QueueStatus.FAILED.value,
    QueueStatus.CONFLICT.value,
)
TERMINAL_STATUSES = (QueueStatus.COMPLETED.value, QueueStatus.DEAD.value)
DISPATCHABLE_STATUSES = (QueueStatus.PENDING.value, QueueStatus.FAILED.value)
_ACTIVE_ITEM_CLAUSE = "status IN ({})".format(", ".join(f"'{s}'" for s in NON_TERMINAL_STATUSES))


class Operation(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    FETCH = "fetch"

    @property
    def is_push(self) -> bool:
        return self is not Operation.FETCH


class EntityType(Enum):
    """Entity types the engine reconciles"""
    CUSTOMER = "customer"
    PRODUCT = "product"
    INVENTORY = "inventory"
    ORDER = "order"
    INVOICE = "invoice"
    PAYMENT = "payment"


class SyncDirection(Enum):
    PULL = "pull"
    PUSH = "push"
    BIDIRECTIONAL = "bidirectional"
    DISABLED = "disabled"

    @property
    def allows_push(self) -> bool:
        return self in (SyncDirection.PUSH, SyncDirection.BIDIRECTIONAL)

    @property
    def allows_pull(self) -> bool:
        return self in (SyncDirection.PULL, SyncDirection.BIDIRECTIONAL)


class DeletePolicy(Enum):
    LOCAL_ONLY = "local_only"
    ARCHIVE_REMOTE = "archive_remote"
    DELETE_REMOTE = "delete_remote"


class ConflictStrategy(Enum):
    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"
    LAST_WRITE_WINS = "last_write_wins"
    MERGE = "merge"
    MANUAL = "manual"


def parse_enum(enum_cls, value):
    """Accept enum members or their values, with '-' or '_' separators"""
    if isinstance(value, enum_cls):
        return value
    normalized = str(value).strip().lower().replace('-', '_')
    return enum_cls(normalized)


LOCAL_SYSTEM = "local"


# SQLAlchemy Models
class QueueItemDB(Base):
    """Durable queue entry"""
    __tablename__ = 'sync_queue'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant = Column(String(100), nullable=False, index=True)
    platform = Column(String(50), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(100), nullable=False)
    operation = Column(String(20), nullable=False)
    payload = Column(JSON, nullable=True)
    idempotency_key = Column(String(64), nullable=False, index=True)
    priority = Column(Integer, nullable=False, default=99)
    status = Column(String(20), nullable=False, default=QueueStatus.PENDING.value, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    next_eligible_at = Column(DateTime, nullable=True)
    error_detail = Column(Text, nullable=True)
    error_class = Column(String(50), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now)
    completed_at = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_sync_queue_dispatch', 'tenant', 'status', 'priority', 'created_at'),
        # Idempotency key is unique among non-terminal items only
        Index(
            'uq_sync_queue_active_key', 'tenant', 'idempotency_key',
            unique=True,
            sqlite_where=text(_ACTIVE_ITEM_CLAUSE),
            postgresql_where=text(_ACTIVE_ITEM_CLAUSE),
        ),
    )


class IdMappingDB(Base):
    """Cross-system identity correlation"""
    __tablename__ = 'id_mappings'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant = Column(String(100), nullable=False)
    source_system = Column(String(50), nullable=False)
    source_entity_type = Column(String(50), nullable=False)
    source_id = Column(String(100), nullable=False)
    target_system = Column(String(50), nullable=False)
    target_id = Column(String(100), nullable=False)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint('tenant', 'source_system', 'source_entity_type', 'source_id', 'target_system',
                         name='uq_id_mapping_source'),
        Index('idx_id_mapping_target', 'tenant', 'target_system', 'target_id'),
    )


class ConflictRecordDB(Base):
    """Audit record of a two-sided edit"""
    __tablename__ = 'sync_conflicts'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant = Column(String(100), nullable=False, index=True)
    platform = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(100), nullable=False)
    remote_id = Column(String(100), nullable=True)
    local_version = Column(JSON, nullable=True)
    local_updated_at = Column(DateTime, nullable=True)
    remote_version = Column(JSON, nullable=True)
    remote_updated_at = Column(DateTime, nullable=True)
    strategy_applied = Column(String(30), nullable=False)
    resolution = Column(String(30), nullable=False)
    resolved_version = Column(JSON, nullable=True)
    resolved_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_conflict_entity', 'tenant', 'entity_type', 'entity_id', 'resolution'),
    )


class CircuitStateDB(Base):
    """Periodic snapshot of a breaker for restart recovery"""
    __tablename__ = 'circuit_states'

    tenant = Column(String(100), primary_key=True)
    platform = Column(String(50), primary_key=True)
    state = Column(String(20), nullable=False)
    opened_at = Column(DateTime, nullable=True)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    consecutive_successes = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=utc_now)


class SyncSettingDB(Base):
    """Per-tenant key/value settings (direction, delete policy, cursors)"""
    __tablename__ = 'sync_settings'

    tenant = Column(String(100), primary_key=True)
    key = Column(String(150), primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utc_now)


@dataclass
class QueueItem:
    """Queue item domain model"""
    tenant: str
    platform: str
    entity_type: str
    entity_id: str
    operation: Operation
    payload: Dict[str, Any] = field(default_factory=dict)
    idempotency_key: str = ""
    priority: int = 99
    status: QueueStatus = QueueStatus.PENDING
    retry_count: int = 0
    last_attempt_at: Optional[datetime] = None
    next_eligible_at: Optional[datetime] = None
    error_detail: Optional[str] = None
    error_class: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_terminal(self) -> bool:
        return self.status.value in TERMINAL_STATUSES

    def to_db_model(self) -> QueueItemDB:
        """Convert to database model"""
        return QueueItemDB(
            id=self.id,
            tenant=self.tenant,
            platform=self.platform,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            operation=self.operation.value,
            payload=self.payload,
            idempotency_key=self.idempotency_key,
            priority=self.priority,
            status=self.status.value,
            retry_count=self.retry_count,
            last_attempt_at=self.last_attempt_at,
            next_eligible_at=self.next_eligible_at,
            error_detail=self.error_detail,
            error_class=self.error_class,
            created_at=self.created_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
            archived_at=self.archived_at
        )

    @classmethod
    def from_db(cls, db_item: QueueItemDB) -> 'QueueItem':
        return cls(
            id=db_item.id,
            tenant=db_item.tenant,
            platform=db_item.platform,
            entity_type=db_item.entity_type,
            entity_id=db_item.entity_id,
            operation=Operation(db_item.operation),
            payload=dict(db_item.payload or {}),
            idempotency_key=db_item.idempotency_key,
            priority=db_item.priority,
            status=QueueStatus(db_item.status),
            retry_count=db_item.retry_count,
            last_attempt_at=db_item.last_attempt_at,
            next_eligible_at=db_item.next_eligible_at,
            error_detail=db_item.error_detail,
            error_class=db_item.error_class,
            created_at=db_item.created_at,
            updated_at=db_item.updated_at,
            completed_at=db_item.completed_at,
            archived_at=db_item.archived_at
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'tenant': self.tenant,
            'platform': self.platform,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'operation': self.operation.value,
            'status': self.status.value,
            'priority': self.priority,
            'retry_count': self.retry_count,
            'idempotency_key': self.idempotency_key,
            'last_attempt_at': self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            'next_eligible_at': self.next_eligible_at.isoformat() if self.next_eligible_at else None,
            'error_detail': self.error_detail,
            'error_class': self.error_class,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None
        }
