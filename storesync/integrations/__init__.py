"""
StoreSync Integrations Module
Remote platform adapters and the error taxonomy they raise
"""

from .base import (
    ConnectorAdapter,
    LocalEntity,
    RemoteEntity,
    Page,
    ConnectorError,
    RetryableError,
    RateLimitedError,
    AuthExpiredError,
    NonRetryableError,
    ValidationFailure,
    RemoteConflictError,
    FatalError
)
from .woocommerce import WooCommerceAdapter
from .quickbooks import QuickBooksAdapter
from .registry import AdapterRegistry, build_registry

__all__ = [
    'ConnectorAdapter',
    'LocalEntity',
    'RemoteEntity',
    'Page',
    'ConnectorError',
    'RetryableError',
    'RateLimitedError',
    'AuthExpiredError',
    'NonRetryableError',
    'ValidationFailure',
    'RemoteConflictError',
    'FatalError',
    'WooCommerceAdapter',
    'QuickBooksAdapter',
    'AdapterRegistry',
    'build_registry'
]
