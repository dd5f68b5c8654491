"""
Main entry point for StoreSync
Builds the sync engine, mounts the API and runs uvicorn
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, Any, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storesync import __version__
from storesync.api import sync, webhooks
from storesync.api.dependencies import init_api_dependencies
from storesync.api.error_handling import register_exception_handlers
from storesync.config.config_loader import load_config
from storesync.core.engine import SyncEngine
from storesync.core.local_store import LocalStore
from storesync.core.logging_manager import setup_logging
from storesync.core.models import utc_now
from storesync.integrations.registry import AdapterRegistry

logger = logging.getLogger(__name__)


class StoreSyncApp:
    """Main StoreSync application"""

    def __init__(self, config: Dict[str, Any], local_store: Optional[LocalStore] = None,
                 adapters: Optional[AdapterRegistry] = None, engine: Optional[SyncEngine] = None):
        self.config = config
        self.engine = engine or SyncEngine(config, local_store=local_store, adapters=adapters)

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            logger.info(f"Starting StoreSync {__version__}...")
            await self.engine.start()
            logger.info("StoreSync started successfully")
            yield
            logger.info("Shutting down StoreSync...")
            await self.engine.stop()
            logger.info("StoreSync shutdown complete")

        self.app = FastAPI(
            title="StoreSync",
            description="Offline-capable synchronization between the local store, WooCommerce and QuickBooks Online",
            version=__version__,
            lifespan=lifespan
        )

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=config.get('api', {}).get('cors_origins', ["*"]),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"]
        )

        api_key = config.get('api', {}).get('api_key', 'development-key-change-in-production')
        init_api_dependencies(api_key, self.engine)
        register_exception_handlers(self.app)

        self.app.include_router(sync.router, prefix="/api/v1", tags=["Synchronization"])
        self.app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])

        @self.app.get("/health")
        async def health_check():
            """Database connectivity and worker state (no auth required)"""
            health_status = await self.engine.get_health_status()
            health_status['version'] = __version__
            health_status['timestamp'] = utc_now().isoformat()
            status_code = 200 if health_status['status'] == 'healthy' else 503
            return JSONResponse(status_code=status_code, content=health_status)


def create_app(config: Optional[Dict[str, Any]] = None, local_store: Optional[LocalStore] = None,
               adapters: Optional[AdapterRegistry] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    if config is None:
        config = load_config()
    setup_logging(config.get('logging', {}))
    return StoreSyncApp(config, local_store=local_store, adapters=adapters).app


def main():
    """Main entry point"""
    try:
        config = load_config()
        app = create_app(config)

        api_config = config.get('api', {})
        host = api_config.get('host', '0.0.0.0')
        port = int(api_config.get('port', 8080))

        logger.info(f"Starting StoreSync {__version__} on {host}:{port}")
        uvicorn.run(app, host=host, port=port, log_level="info", access_log=True)

    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
    except Exception as e:
        logger.error(f"Failed to start StoreSync: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
