"""
Webhook ingress
Signed platform notifications; authenticated by signature, not API key
"""

import logging

from fastapi import APIRouter, Depends, Request

from storesync.api.dependencies import get_engine
from storesync.api.exceptions import handle_api_errors
from storesync.api.schemas import WebhookAckResponse
from storesync.core.engine import SyncEngine

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/{platform}/{tenant}", response_model=WebhookAckResponse)
@handle_api_errors
async def receive_webhook(platform: str, tenant: str, request: Request, engine: SyncEngine = Depends(get_engine)):
    """Queue fetch items for the notified changes (queued, duplicate, ping or ignored)"""
    body = await request.body()
    result = await engine.webhooks.ingest(platform, tenant, body, dict(request.headers))
    return result.to_dict()
