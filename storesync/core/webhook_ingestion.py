"""
Webhook ingestion
Verifies platform signatures, drops redeliveries and queues fetch items
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Mapping, Tuple, Callable
from urllib.parse import parse_qs

from storesync.core.queue_processor import QueueProcessor
from storesync.integrations.registry import AdapterRegistry

DEFAULT_SEEN_TTL_SECONDS = 600
DEFAULT_SEEN_MAX_SIZE = 10_000

SIGNATURE_HEADERS = {
    'woocommerce': 'x-wc-webhook-signature',
    'quickbooks': 'intuit-signature',
}

WOO_RESOURCES = {
    'customer': 'customer',
    'product': 'product',
    'order': 'order',
}
WOO_DELETE_EVENTS = ('deleted',)

QBO_RESOURCES = {
    'Customer': 'customer',
    'Item': 'product',
    'SalesReceipt': 'order',
    'Invoice': 'invoice',
    'Payment': 'payment',
}
QBO_DELETE_OPERATIONS = ('Delete',)


class WebhookSignatureError(Exception):
    """Missing secret, missing header or signature mismatch"""
    pass


class WebhookPayloadError(Exception):
    """Signed body that cannot be parsed"""
    pass


@dataclass
class WebhookResult:
    status: str  # queued, duplicate, ping or ignored
    item_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'status': self.status, 'item_ids': self.item_ids}


@dataclass
class _Change:
    event_id: str
    entity_type: str
    remote_id: str
    deleted: bool = False
    marker: Optional[str] = None
    snapshot: Any = None


class SeenEvents:
    """Bounded TTL set of delivered event ids"""

    def __init__(self, ttl_seconds: float = DEFAULT_SEEN_TTL_SECONDS, max_size: int = DEFAULT_SEEN_MAX_SIZE,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()

    def _expire(self, now: float):
        while self._entries:
            key, seen_at = next(iter(self._entries.items()))
            if now - seen_at < self.ttl_seconds and len(self._entries) <= self.max_size:
                break
            self._entries.popitem(last=False)

    def __contains__(self, key: str) -> bool:
        self._expire(self._clock())
        return key in self._entries

    def add(self, key: str):
        now = self._clock()
        self._entries[key] = now
        self._entries.move_to_end(key)
        self._expire(now)

    def __len__(self):
        return len(self._entries)


def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode('utf-8'), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode('ascii')


def secrets_from_config(tenants_config: Dict[str, Any]) -> Dict[Tuple[str, str], str]:
    """Collect tenants.<t>.platforms.<p>.webhook_secret values"""
    secrets = {}
    for tenant, tenant_config in (tenants_config or {}).items():
        for platform, settings in ((tenant_config or {}).get('platforms') or {}).items():
            secret = (settings or {}).get('webhook_secret')
            if secret:
                secrets[(tenant, platform)] = secret
    return secrets


class WebhookIngestion:
    """Turns signed platform notifications into fetch items on the queue"""

    def __init__(self, processor: QueueProcessor, adapters: AdapterRegistry,
                 secrets: Optional[Dict[Tuple[str, str], str]] = None,
                 ttl_seconds: float = DEFAULT_SEEN_TTL_SECONDS, max_seen: int = DEFAULT_SEEN_MAX_SIZE,
                 clock: Callable[[], float] = time.monotonic):
        self.processor = processor
        self.adapters = adapters
        self.secrets = dict(secrets or {})
        self.seen = SeenEvents(ttl_seconds, max_seen, clock)
        self.logger = logging.getLogger(__name__)

    def verify_signature(self, platform: str, tenant: str, body: bytes, headers: Mapping[str, str]):
        header_name = SIGNATURE_HEADERS.get(platform)
        if header_name is None:
            raise WebhookSignatureError(f"Unsupported webhook platform: {platform}")

        secret = self.secrets.get((tenant, platform))
        if not secret:
            raise WebhookSignatureError(f"No webhook secret configured for {tenant}/{platform}")

        provided = _lower_keys(headers).get(header_name)
        if not provided:
            raise WebhookSignatureError(f"Missing {header_name} header")

        if not hmac.compare_digest(provided.strip(), compute_signature(secret, body)):
            raise WebhookSignatureError(f"Signature mismatch for {tenant}/{platform}")

    async def ingest(self, platform: str, tenant: str, body: bytes,
                     headers: Mapping[str, str]) -> WebhookResult:
        headers = _lower_keys(headers)

        if platform == 'woocommerce' and _is_woo_ping(body, headers):
            self.logger.info(f"WooCommerce webhook ping for {tenant} acknowledged")
            return WebhookResult('ping')

        self.verify_signature(platform, tenant, body, headers)

        if platform == 'woocommerce':
            changes = self._parse_woocommerce(tenant, body, headers)
        else:
            changes = self._parse_quickbooks(tenant, body)

        if not changes:
            return WebhookResult('ignored')

        item_ids = []
        duplicates = 0
        for change in changes:
            seen_key = f"{tenant}:{platform}:{change.event_id}"
            if seen_key in self.seen:
                duplicates += 1
                continue
            item_id = await self.processor.enqueue_fetch(
                tenant, platform, change.entity_type, change.remote_id,
                snapshot=change.snapshot, deleted=change.deleted, change_marker=change.marker
            )
            # Marked only after a successful enqueue so a rejected delivery can be redelivered
            self.seen.add(seen_key)
            if item_id:
                item_ids.append(item_id)

        if duplicates == len(changes):
            self.logger.debug(f"Duplicate {platform} delivery for {tenant} dropped")
            return WebhookResult('duplicate')
        self.logger.info(f"Queued {len(item_ids)} fetch items from {platform} webhook for {tenant}")
        return WebhookResult('queued', item_ids)

    def _parse_woocommerce(self, tenant: str, body: bytes, headers: Dict[str, str]) -> List[_Change]:
        topic = headers.get('x-wc-webhook-topic', '')
        resource, _, event = topic.partition('.')
        resource = headers.get('x-wc-webhook-resource', resource)
        event = headers.get('x-wc-webhook-event', event)

        entity_type = WOO_RESOURCES.get(resource)
        if entity_type is None:
            self.logger.debug(f"Ignoring WooCommerce topic {topic!r}")
            return []

        payload = _load_json(body)
        if 'id' not in payload:
            raise WebhookPayloadError("WooCommerce webhook body has no id")
        remote_id = str(payload['id'])
        deleted = event in WOO_DELETE_EVENTS

        snapshot = None
        marker = payload.get('date_modified_gmt') or payload.get('date_modified')
        adapter = self.adapters.get(tenant, 'woocommerce')
        if not deleted and marker and adapter is not None and hasattr(adapter, 'to_remote_entity'):
            snapshot = adapter.to_remote_entity(entity_type, payload)

        event_id = headers.get('x-wc-webhook-delivery-id') or f"{topic}:{remote_id}:{marker or ''}"
        return [_Change(event_id, entity_type, remote_id, deleted=deleted,
                        marker=marker or event_id, snapshot=snapshot)]

    def _parse_quickbooks(self, tenant: str, body: bytes) -> List[_Change]:
        payload = _load_json(body)
        adapter = self.adapters.get(tenant, 'quickbooks')
        realm_id = str(adapter.config.get('realm_id')) if adapter is not None else None

        changes = []
        for notification in payload.get('eventNotifications') or []:
            notified_realm = str(notification.get('realmId', ''))
            if realm_id and notified_realm and notified_realm != realm_id:
                self.logger.warning(f"QuickBooks notification for realm {notified_realm} "
                                    f"does not belong to {tenant}, ignored")
                continue
            entities = (notification.get('dataChangeEvent') or {}).get('entities') or []
            for entity in entities:
                name = entity.get('name')
                entity_type = QBO_RESOURCES.get(name)
                if entity_type is None or entity.get('id') is None:
                    continue
                remote_id = str(entity['id'])
                if entity_type == 'order':
                    remote_id = f"{name}:{remote_id}"
                operation = entity.get('operation', 'Update')
                marker = entity.get('lastUpdated') or operation
                changes.append(_Change(
                    event_id=f"{notified_realm}:{name}:{entity['id']}:{operation}:{marker}",
                    entity_type=entity_type,
                    remote_id=remote_id,
                    deleted=operation in QBO_DELETE_OPERATIONS,
                    marker=f"{operation}:{marker}"
                ))
        return changes


def _lower_keys(headers: Mapping[str, str]) -> Dict[str, str]:
    return {str(key).lower(): value for key, value in headers.items()}


def _is_woo_ping(body: bytes, headers: Dict[str, str]) -> bool:
    if headers.get('x-wc-webhook-topic'):
        return False
    try:
        form = parse_qs(body.decode('utf-8'))
    except UnicodeDecodeError:
        return False
    return 'webhook_id' in form


def _load_json(body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(body.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise WebhookPayloadError(f"Webhook body is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Webhook body must be a JSON object")
    return payload
