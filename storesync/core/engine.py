"""
Sync engine
Builds and owns every sync component from the loaded configuration
"""

import logging
from typing import Dict, Any, Optional

from storesync.core.backoff import BackoffPolicy
from storesync.core.circuit_breaker import CircuitBreakerPolicy, CircuitBreakerRegistry
from storesync.core.conflict_resolver import ConflictResolver
from storesync.core.database import DatabaseService
from storesync.core.id_mapper import IdMapper
from storesync.core.local_store import LocalStore, InMemoryLocalStore
from storesync.core.notifications import SyncNotifier
from storesync.core.orchestrator import SyncOrchestrator
from storesync.core.queue_processor import QueueProcessor
from storesync.core.rate_limiter import RateLimiterRegistry
from storesync.core.scheduler import SyncScheduler
from storesync.core.sync_config import SyncConfigService
from storesync.core.sync_queue import SyncQueueStore
from storesync.core.webhook_ingestion import WebhookIngestion, secrets_from_config
from storesync.integrations.registry import AdapterRegistry, build_registry


class SyncEngine:
    """Main container wiring storage, policies, adapters and workers together"""

    def __init__(self, config: Dict[str, Any], local_store: Optional[LocalStore] = None,
                 adapters: Optional[AdapterRegistry] = None, database: Optional[DatabaseService] = None):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.is_running = False

        db_config = config.get('database', {})
        self.db = database or DatabaseService(db_config.get('url', 'sqlite+aiosqlite:///./data/storesync.db'),
                                              echo=db_config.get('echo', False))
        session_factory = self.db.get_session

        queue_config = config.get('queue', {})
        processor_config = config.get('processor', {})
        sync_config = config.get('sync', {})
        tenants_config = config.get('tenants', {})

        self.store = SyncQueueStore(session_factory, max_queue_size=int(queue_config.get('max_size', 100_000)))
        self.id_mapper = IdMapper(session_factory)
        self.sync_config = SyncConfigService(session_factory, defaults={
            'direction': sync_config.get('direction', 'bidirectional'),
            'delete_policy': sync_config.get('delete_policy', 'local_only')
        })
        self.conflict_resolver = ConflictResolver(
            session_factory, self.id_mapper,
            strategies=sync_config.get('conflict_strategies'),
            merge_fields=sync_config.get('merge_fields', ['notes']),
            sync_config=self.sync_config
        )
        self.breakers = CircuitBreakerRegistry(
            CircuitBreakerPolicy.from_config(config.get('circuit_breaker', {})), session_factory
        )
        self.rate_limiters = RateLimiterRegistry(config.get('rate_limits', {}))
        self.backoff = BackoffPolicy.from_config(config.get('backoff', {}))

        notifications = config.get('notifications', {})
        webhook = notifications.get('webhook', {})
        self.notifier = SyncNotifier(
            webhook_url=webhook.get('url') if webhook.get('enabled') else None,
            api_key=webhook.get('api_key') or None,
            max_alerts=int(notifications.get('max_alerts', 500))
        )

        self.adapters = adapters if adapters is not None else build_registry(tenants_config)
        self.local_store = local_store or InMemoryLocalStore()

        self.processor = QueueProcessor(
            self.store, self.id_mapper, self.conflict_resolver, self.sync_config, self.adapters,
            self.local_store, self.breakers, self.rate_limiters,
            backoff=self.backoff, notifier=self.notifier,
            batch_size=int(processor_config.get('batch_size', 50)),
            max_items_per_drain=int(processor_config.get('max_items_per_drain', 5000))
        )
        self.orchestrator = SyncOrchestrator(
            self.processor, self.store, self.conflict_resolver, self.sync_config, self.adapters,
            self.breakers, self.notifier,
            poll_interval_seconds=float(processor_config.get('poll_interval_seconds', 30)),
            max_pages_per_pull=int(processor_config.get('max_pages_per_pull', 50))
        )

        webhooks_config = config.get('webhooks', {})
        self.webhooks = WebhookIngestion(
            self.processor, self.adapters, secrets_from_config(tenants_config),
            ttl_seconds=float(webhooks_config.get('seen_ttl_seconds', 600)),
            max_seen=int(webhooks_config.get('seen_max_size', 10_000))
        )

        scheduler_config = config.get('scheduler', {})
        self.scheduler = SyncScheduler(
            self.orchestrator, scheduler_config.get('schedules', []),
            timezone=scheduler_config.get('timezone', 'UTC')
        )

        self.logger.info(f"Sync engine initialized for tenants: {self.tenants()}")

    def tenants(self):
        configured = set((self.config.get('tenants') or {}).keys())
        return sorted(configured | set(self.adapters.tenants()))

    def has_tenant(self, tenant: str) -> bool:
        return tenant in self.tenants()

    async def start(self):
        if self.is_running:
            return
        await self.db.initialize_database()
        if self.config.get('processor', {}).get('workers_enabled', True):
            await self.orchestrator.start()
        await self.scheduler.start()
        self.is_running = True
        self.logger.info("Sync engine started")

    async def stop(self):
        if not self.is_running:
            return
        await self.scheduler.stop()
        await self.orchestrator.stop()
        await self.adapters.aclose()
        archive_days = self.config.get('queue', {}).get('archive_after_days')
        if archive_days:
            await self.store.archive_terminal(int(archive_days))
        await self.db.close()
        self.is_running = False
        self.logger.info("Sync engine stopped")

    async def get_health_status(self) -> Dict[str, Any]:
        database_ok = await self.db.health_check()
        return {
            'status': 'healthy' if database_ok else 'degraded',
            'database': 'connected' if database_ok else 'error',
            'workers': self.orchestrator.is_running,
            'scheduler': self.scheduler.is_running,
            'tenants': self.tenants()
        }
