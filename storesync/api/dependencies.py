"""
API Dependencies for FastAPI Router Modules
Shared dependencies for authentication and engine access
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from storesync.api.exceptions import AuthenticationError, NotFoundError, SyncAPIException
from storesync.core.engine import SyncEngine

# Initialize security scheme
security = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


class APIAuthenticator:
    """Centralized API authentication handler"""

    def __init__(self, api_key: str):
        self.api_key = api_key

    def verify_api_key(self, credentials: Optional[HTTPAuthorizationCredentials] = None) -> bool:
        """Verify API key from authorization header"""
        if not credentials or not credentials.credentials:
            return False
        return hmac.compare_digest(credentials.credentials, self.api_key)


# Set during app initialization
_authenticator: Optional[APIAuthenticator] = None
_engine: Optional[SyncEngine] = None


def init_api_dependencies(api_key: str, engine: SyncEngine):
    """Initialize API dependencies with configuration"""
    global _authenticator, _engine
    _authenticator = APIAuthenticator(api_key)
    _engine = engine


async def verify_api_key(credentials: HTTPAuthorizationCredentials = Depends(security)) -> bool:
    """FastAPI dependency for API key verification"""
    if not _authenticator:
        raise SyncAPIException(status_code=500, detail="API authentication not initialized",
                               error_code="NOT_INITIALIZED")

    if not _authenticator.verify_api_key(credentials):
        raise AuthenticationError("Invalid or missing API key")

    return True


async def get_engine() -> SyncEngine:
    """FastAPI dependency to get the sync engine"""
    if _engine is None:
        logger.error("Sync engine not initialized in dependencies - please check init_api_dependencies")
        raise SyncAPIException(status_code=500, detail="Sync engine not available",
                               error_code="NOT_INITIALIZED")
    return _engine


async def get_tenant(tenant: str, engine: SyncEngine = Depends(get_engine)) -> str:
    """Path tenant, validated against the configured tenants"""
    if not engine.has_tenant(tenant):
        raise NotFoundError("Tenant", tenant)
    return tenant
