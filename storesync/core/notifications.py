"""
Alerts for operator-visible sync events
Dead items, fatal halts, opened breakers and full queues
"""

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional

import httpx

from storesync.core.models import utc_now


class AlertType(Enum):
    ITEM_DEAD = "item_dead"
    PLATFORM_HALTED = "platform_halted"
    CIRCUIT_OPENED = "circuit_opened"
    QUEUE_FULL = "queue_full"
    CONFLICT_PENDING = "conflict_pending"


ALERT_LEVELS = {
    AlertType.ITEM_DEAD: logging.WARNING,
    AlertType.PLATFORM_HALTED: logging.ERROR,
    AlertType.CIRCUIT_OPENED: logging.WARNING,
    AlertType.QUEUE_FULL: logging.ERROR,
    AlertType.CONFLICT_PENDING: logging.WARNING,
}


@dataclass
class SyncAlert:
    type: AlertType
    tenant: str
    message: str
    platform: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'tenant': self.tenant,
            'platform': self.platform,
            'message': self.message,
            'details': self.details,
            'created_at': self.created_at.isoformat()
        }


class SyncNotifier:
    """Keeps the most recent alerts and forwards them to an optional webhook"""

    def __init__(self, webhook_url: Optional[str] = None, api_key: Optional[str] = None,
                 max_alerts: int = 500, http_client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url
        self.api_key = api_key
        self._alerts = deque(maxlen=max_alerts)
        self._client = http_client
        self.logger = logging.getLogger(__name__)

    async def notify(self, alert_type: AlertType, tenant: str, message: str,
                     platform: Optional[str] = None, **details) -> SyncAlert:
        alert = SyncAlert(type=alert_type, tenant=tenant, message=message, platform=platform, details=details)
        self._alerts.append(alert)
        self.logger.log(ALERT_LEVELS.get(alert_type, logging.WARNING),
                        f"[{alert_type.value}] {tenant}{'/' + platform if platform else ''}: {message}")
        if self.webhook_url:
            await self._send_webhook(alert)
        return alert

    async def _send_webhook(self, alert: SyncAlert) -> bool:
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'
        client = self._client or httpx.AsyncClient(timeout=10)
        try:
            response = await client.post(self.webhook_url, json=alert.to_dict(), headers=headers)
            response.raise_for_status()
            self.logger.debug(f"Alert webhook sent: {alert.type.value}")
            return True
        except httpx.HTTPError as e:
            # Alert delivery must never break the sync path
            self.logger.error(f"Failed to send alert webhook: {e}")
            return False
        finally:
            if self._client is None:
                await client.aclose()

    def get_alerts(self, tenant: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        alerts = [a for a in reversed(self._alerts) if tenant is None or a.tenant == tenant]
        return [alert.to_dict() for alert in alerts[:limit]]
