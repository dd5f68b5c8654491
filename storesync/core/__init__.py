"""
StoreSync Core Module
Exports the storage-level components; services that talk to adapters
(processor, orchestrator, webhooks, engine) are imported from their modules.
"""

from .models import (
    QueueItem,
    QueueStatus,
    Operation,
    EntityType,
    SyncDirection,
    DeletePolicy,
    ConflictStrategy
)
from .backoff import BackoffPolicy, generate_idempotency_key, get_entity_priority
from .rate_limiter import TokenBucket, RateLimiterRegistry
from .circuit_breaker import CircuitBreaker, CircuitBreakerPolicy, CircuitBreakerRegistry, CircuitState
from .sync_queue import SyncQueueStore, QueueFullError
from .id_mapper import IdMapper, IdMapping
from .conflict_resolver import ConflictResolver, ConflictRecord, Resolution
from .sync_config import SyncConfigService
from .notifications import SyncNotifier, AlertType

__all__ = [
    'QueueItem',
    'QueueStatus',
    'Operation',
    'EntityType',
    'SyncDirection',
    'DeletePolicy',
    'ConflictStrategy',
    'BackoffPolicy',
    'generate_idempotency_key',
    'get_entity_priority',
    'TokenBucket',
    'RateLimiterRegistry',
    'CircuitBreaker',
    'CircuitBreakerPolicy',
    'CircuitBreakerRegistry',
    'CircuitState',
    'SyncQueueStore',
    'QueueFullError',
    'IdMapper',
    'IdMapping',
    'ConflictResolver',
    'ConflictRecord',
    'Resolution',
    'SyncConfigService',
    'SyncNotifier',
    'AlertType'
]
