"""
Adapter registry
One connector instance per (tenant, platform), built from configuration
"""

import logging
from typing import Dict, Any, List, Optional, Tuple

from storesync.integrations.base import ConnectorAdapter
from storesync.integrations.quickbooks import QuickBooksAdapter, OAuthCredentialProvider, StaticCredentialProvider
from storesync.integrations.woocommerce import WooCommerceAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Routes (tenant, platform) to the adapter serving it"""

    def __init__(self):
        self._adapters: Dict[Tuple[str, str], ConnectorAdapter] = {}

    def register(self, tenant: str, adapter: ConnectorAdapter):
        self._adapters[(tenant, adapter.platform)] = adapter
        logger.info(f"Registered {adapter.platform} adapter for tenant {tenant}")

    def get(self, tenant: str, platform: str) -> Optional[ConnectorAdapter]:
        return self._adapters.get((tenant, platform))

    def platforms(self, tenant: str) -> List[str]:
        return [platform for (adapter_tenant, platform) in self._adapters if adapter_tenant == tenant]

    def tenants(self) -> List[str]:
        return sorted({tenant for (tenant, _) in self._adapters})

    def platforms_for_entity(self, tenant: str, entity_type: str) -> List[str]:
        return [platform for platform in self.platforms(tenant)
                if self._adapters[(tenant, platform)].supports(entity_type)]

    async def aclose(self):
        for adapter in self._adapters.values():
            await adapter.aclose()


def build_adapter(platform: str, settings: Dict[str, Any]) -> ConnectorAdapter:
    if platform == 'woocommerce':
        return WooCommerceAdapter(settings)
    if platform == 'quickbooks':
        if settings.get('refresh_token'):
            credentials = OAuthCredentialProvider(
                client_id=settings.get('client_id', ''),
                client_secret=settings.get('client_secret', ''),
                refresh_token=settings['refresh_token'],
                access_token=settings.get('access_token')
            )
        else:
            credentials = StaticCredentialProvider(settings.get('access_token', ''))
        return QuickBooksAdapter(settings, credentials)
    raise ValueError(f"Unknown platform: {platform}")


def build_registry(tenants_config: Dict[str, Any]) -> AdapterRegistry:
    """
    Build adapters from the 'tenants' config section:

        tenants:
          acme:
            platforms:
              woocommerce: {base_url: ..., consumer_key: ..., consumer_secret: ...}
              quickbooks: {realm_id: ..., access_token: ...}
    """
    registry = AdapterRegistry()
    for tenant, tenant_config in (tenants_config or {}).items():
        for platform, settings in ((tenant_config or {}).get('platforms') or {}).items():
            settings = settings or {}
            if not settings.get('enabled', True):
                continue
            if set(settings) <= {'enabled', 'webhook_secret'}:
                # Only a secret from the environment, no connection settings
                continue
            registry.register(tenant, build_adapter(platform, settings))
    return registry
