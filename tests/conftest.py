"""
Pytest configuration and fixtures for StoreSync tests
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pytest

from storesync.core.backoff import BackoffPolicy
from storesync.core.circuit_breaker import CircuitBreakerPolicy, CircuitBreakerRegistry
from storesync.core.conflict_resolver import ConflictResolver
from storesync.core.database import DatabaseService
from storesync.core.id_mapper import IdMapper
from storesync.core.local_store import InMemoryLocalStore
from storesync.core.models import Operation
from storesync.core.notifications import SyncNotifier
from storesync.core.orchestrator import SyncOrchestrator
from storesync.core.queue_processor import QueueProcessor
from storesync.core.rate_limiter import RateLimiterRegistry
from storesync.core.sync_config import SyncConfigService
from storesync.core.sync_queue import SyncQueueStore
from storesync.core.webhook_ingestion import WebhookIngestion
from storesync.integrations.base import (
    ConnectorAdapter, Page, RemoteEntity, RetryableError, UnresolvedReferenceError, ValidationFailure,
    decode_cursor, parse_timestamp
)
from storesync.integrations.quickbooks import QuickBooksAdapter, StaticCredentialProvider
from storesync.integrations.registry import AdapterRegistry

TENANT = "acme"
WOO_SECRET = "woo-webhook-secret"
QBO_SECRET = "qbo-verifier-token"

# Effectively unlimited so tests never sleep on the bucket
FAST_RATE_LIMITS = {'default': {'requests_per_second': 100_000, 'burst': 100_000}}


class FakeClock:
    """Settable naive-UTC clock shared by every component under test"""

    def __init__(self, start: datetime = datetime(2024, 3, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeTimer:
    """Float clock for breakers and token buckets"""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeAdapter(ConnectorAdapter):
    """
    In-memory remote platform.

    Keeps remote records keyed by (entity_type, remote_id), records every push
    and can be switched offline or primed with errors.
    """

    def __init__(self, platform: str, supported_entities: Tuple[str, ...], clock: FakeClock,
                 config: Optional[Dict] = None):
        super().__init__(config or {})
        self.platform = platform
        self.supported_entities = tuple(supported_entities)
        self.clock = clock
        self.records: Dict[Tuple[str, str], RemoteEntity] = {}
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        self.push_errors: List[Exception] = []
        self.fetch_errors: List[Exception] = []
        self.online = True
        self.push_delay = 0.0
        self.refresh_result = True
        self.refresh_calls = 0
        self._next_id = 1000

    def _check_online(self):
        if not self.online:
            raise RetryableError(f"{self.platform} connection refused")

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def seed(self, entity_type: str, data: Dict, remote_id: Optional[str] = None,
             updated_at: Optional[datetime] = None) -> RemoteEntity:
        entity = RemoteEntity(entity_type, remote_id or self._new_id(), dict(data), updated_at or self.clock())
        self.records[(entity_type, entity.remote_id)] = entity
        return entity

    def edit_remote(self, entity_type: str, remote_id: str, **changes) -> RemoteEntity:
        entity = self.records[(entity_type, remote_id)]
        entity.data.update(changes)
        entity.updated_at = self.clock()
        return entity

    def validate(self, entity_type, record, partial=False):
        self._require_supported(entity_type)
        if record.get('invalid'):
            raise ValidationFailure(f"{entity_type} rejected: invalid flag set")

    async def fetch(self, entity_type, since=None):
        self._check_online()
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        since_text, _ = decode_cursor(since)
        threshold = parse_timestamp(since_text) if since_text else None
        entities = [entity for (kind, _), entity in self.records.items()
                    if kind == entity_type and (threshold is None or entity.updated_at > threshold)]
        entities.sort(key=lambda entity: entity.updated_at)
        return Page(entities=entities)

    async def push(self, operation, entity, remote_id=None, resolver=None):
        self._check_online()
        self.calls.append((operation.value, entity.entity_type, remote_id))
        if self.push_delay:
            await asyncio.sleep(self.push_delay)
        if self.push_errors:
            raise self.push_errors.pop(0)

        data = dict(entity.data)
        if entity.entity_type == 'inventory':
            product_id = await resolver('product', str(data['product_id'])) if resolver else None
            if product_id is None:
                raise UnresolvedReferenceError(f"product {data['product_id']} not synced yet")
            self.edit_remote('product', product_id, stock_quantity=data['quantity'])
            return product_id

        if entity.entity_type == 'order' and data.get('customer_id'):
            customer_id = await resolver('customer', str(data['customer_id'])) if resolver else None
            if customer_id is None:
                raise UnresolvedReferenceError(f"customer {data['customer_id']} not synced yet")
            data['customer_id'] = customer_id

        if operation == Operation.DELETE:
            if data.get('archive'):
                self.edit_remote(entity.entity_type, remote_id, status='archived')
            else:
                self.records.pop((entity.entity_type, remote_id), None)
            return remote_id

        if operation == Operation.UPDATE and (entity.entity_type, remote_id) in self.records:
            self.edit_remote(entity.entity_type, remote_id, **data)
            return remote_id

        return self.seed(entity.entity_type, data).remote_id

    async def get_remote(self, entity_type, remote_id):
        self._check_online()
        return self.records.get((entity_type, remote_id))

    async def refresh_credentials(self):
        self.refresh_calls += 1
        return self.refresh_result


class SyncHarness:
    """Every engine component wired over one database and one fake clock"""

    def __init__(self, db: DatabaseService, clock: FakeClock, timer: FakeTimer,
                 adapters: List[FakeAdapter], max_queue_size: int = 100_000,
                 breaker_policy: Optional[CircuitBreakerPolicy] = None):
        session_factory = db.get_session
        self.db = db
        self.clock = clock
        self.timer = timer
        self.store = SyncQueueStore(session_factory, max_queue_size=max_queue_size, clock=clock)
        self.id_mapper = IdMapper(session_factory, clock=clock)
        self.sync_config = SyncConfigService(session_factory, clock=clock)
        self.conflict_resolver = ConflictResolver(session_factory, self.id_mapper,
                                                  sync_config=self.sync_config, clock=clock)
        self.breakers = CircuitBreakerRegistry(breaker_policy or CircuitBreakerPolicy(), session_factory,
                                               clock=timer)
        self.rate_limiters = RateLimiterRegistry(FAST_RATE_LIMITS)
        self.notifier = SyncNotifier()
        self.registry = AdapterRegistry()
        for adapter in adapters:
            self.registry.register(TENANT, adapter)
        self.local_store = InMemoryLocalStore(clock=clock)
        self.backoff = BackoffPolicy()
        self.processor = QueueProcessor(
            self.store, self.id_mapper, self.conflict_resolver, self.sync_config, self.registry,
            self.local_store, self.breakers, self.rate_limiters,
            backoff=self.backoff, notifier=self.notifier, clock=clock
        )
        self.orchestrator = SyncOrchestrator(
            self.processor, self.store, self.conflict_resolver, self.sync_config, self.registry,
            self.breakers, self.notifier, poll_interval_seconds=0.01, clock=clock
        )
        self.webhooks = WebhookIngestion(
            self.processor, self.registry,
            secrets={(TENANT, 'woocommerce'): WOO_SECRET, (TENANT, 'quickbooks'): QBO_SECRET}
        )

    async def items(self, statuses=None):
        return await self.store.list_items(TENANT, statuses=statuses)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer():
    return FakeTimer()


@pytest.fixture
async def db():
    """Fresh in-memory database per test"""
    database = DatabaseService("sqlite+aiosqlite:///:memory:")
    await database.initialize_database()
    yield database
    await database.close()


@pytest.fixture
def make_adapter(clock):
    def factory(platform: str = 'woocommerce',
                entities: Tuple[str, ...] = ('customer', 'product', 'inventory', 'order'),
                config: Optional[Dict] = None) -> FakeAdapter:
        return FakeAdapter(platform, entities, clock, config)
    return factory


@pytest.fixture
def woo(make_adapter):
    return make_adapter('woocommerce')


@pytest.fixture
def qbo(make_adapter):
    return make_adapter('quickbooks', ('customer', 'product', 'inventory', 'order', 'invoice', 'payment'),
                        config={'realm_id': '9130'})


@pytest.fixture
def make_harness(db, clock, timer):
    def factory(adapters: List[FakeAdapter], **kwargs) -> SyncHarness:
        return SyncHarness(db, clock, timer, adapters, **kwargs)
    return factory


@pytest.fixture
def harness(make_harness, woo):
    """Single-platform harness (WooCommerce)"""
    return make_harness([woo])


@pytest.fixture
def two_platform_harness(make_harness, woo, qbo):
    return make_harness([woo, qbo])


@pytest.fixture
def sample_customer():
    return {
        'email': 'Ada@Example.com ',
        'first_name': 'Ada',
        'last_name': 'Lovelace',
        'phone': '(555) 010-2030',
        'notes': 'Prefers email'
    }


@pytest.fixture
def qbo_harness(make_harness, woo):
    """WooCommerce fake plus a real QuickBooks adapter that is never called over HTTP"""
    quickbooks = QuickBooksAdapter({'realm_id': '9130'}, StaticCredentialProvider('access-1'))
    return make_harness([woo, quickbooks])
