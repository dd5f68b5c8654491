"""
WooCommerce connector (REST API v3)
Products, customers, orders and stock levels of a WooCommerce store
"""

from typing import Dict, Any, List, Optional

import httpx

from storesync.core.models import Operation
from storesync.integrations.base import (
    ConnectorAdapter, LocalEntity, RemoteEntity, Page, Cursor, IdResolver,
    ValidationFailure, NonRetryableError, UnresolvedReferenceError, decode_cursor, encode_cursor, parse_timestamp
)
from storesync.integrations.field_mapping import FieldMapping, EntityMapping

API_PREFIX = "/wp-json/wc/v3"

ENDPOINTS = {
    'customer': 'customers',
    'product': 'products',
    'inventory': 'products',
    'order': 'orders',
}

# Soft delete per entity type; customers have no archived state in WooCommerce
ARCHIVE_STATUS = {
    'product': {'status': 'private'},
    'order': {'status': 'cancelled'},
}

WOO_MAPPINGS = {
    'customer': EntityMapping('customer', 'customers', [
        FieldMapping('email', 'email', ['trim', 'lowercase'], required=True, max_length=100),
        FieldMapping('first_name', 'first_name', ['trim'], max_length=100),
        FieldMapping('last_name', 'last_name', ['trim'], max_length=100),
        FieldMapping('company', 'billing.company', ['trim']),
        FieldMapping('phone', 'billing.phone', ['phone']),
        FieldMapping('billing_address.address_1', 'billing.address_1', ['trim']),
        FieldMapping('billing_address.city', 'billing.city', ['trim']),
        FieldMapping('billing_address.state', 'billing.state', ['trim', 'uppercase']),
        FieldMapping('billing_address.postcode', 'billing.postcode', ['trim']),
        FieldMapping('billing_address.country', 'billing.country', ['trim', 'uppercase']),
    ]),
    'product': EntityMapping('product', 'products', [
        FieldMapping('name', 'name', ['trim'], required=True, max_length=200),
        FieldMapping('sku', 'sku', ['trim'], max_length=100),
        FieldMapping('price', 'regular_price', ['currency']),
        FieldMapping('description', 'description'),
        FieldMapping('stock_quantity', 'stock_quantity', ['integer']),
    ]),
    'inventory': EntityMapping('inventory', 'products', [
        FieldMapping('product_id', 'id', ['string', 'lookup:product'], required=True, inbound=False),
        FieldMapping('quantity', 'stock_quantity', ['integer'], required=True),
    ]),
    'order': EntityMapping('order', 'orders', [
        FieldMapping('customer_id', 'customer_id', ['string', 'lookup:customer']),
        FieldMapping('status', 'status', ['trim', 'lowercase']),
        FieldMapping('notes', 'customer_note'),
        FieldMapping('currency', 'currency', ['uppercase']),
    ]),
}


class WooCommerceAdapter(ConnectorAdapter):
    """WooCommerce REST v3 adapter authenticated with a consumer key/secret pair"""

    platform = "woocommerce"
    supported_entities = ('customer', 'product', 'inventory', 'order')

    def __init__(self, config: Dict[str, Any], http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(config, http_client)
        self.base_url = config['base_url'].rstrip('/')
        self.auth = httpx.BasicAuth(config.get('consumer_key', ''), config.get('consumer_secret', ''))
        self.per_page = min(int(config.get('per_page', 100)), 100)
        self.mappings = WOO_MAPPINGS

    def _url(self, entity_type: str, remote_id: Optional[str] = None) -> str:
        url = f"{self.base_url}{API_PREFIX}/{ENDPOINTS[entity_type]}"
        if remote_id is not None:
            url = f"{url}/{remote_id}"
        return url

    def validate(self, entity_type: str, record: Dict[str, Any], partial: bool = False) -> None:
        self._require_supported(entity_type)
        self.mappings[entity_type].validate(record, partial=partial)
        if entity_type == 'order':
            for index, line in enumerate(record.get('line_items') or []):
                if not line.get('product_id'):
                    raise ValidationFailure(f"order line {index + 1} has no product_id")
                if int(line.get('quantity') or 0) <= 0:
                    raise ValidationFailure(f"order line {index + 1} quantity must be positive")

    async def _line_items(self, record: Dict[str, Any], resolver: Optional[IdResolver]) -> List[Dict[str, Any]]:
        lines = []
        for line in record.get('line_items') or []:
            local_product = str(line['product_id'])
            remote_product = await resolver('product', local_product) if resolver else None
            if remote_product is None:
                raise UnresolvedReferenceError(f"product {local_product} has no WooCommerce id yet")
            lines.append({'product_id': int(remote_product) if remote_product.isdigit() else remote_product,
                          'quantity': int(line['quantity'])})
        return lines

    async def _build_payload(self, entity: LocalEntity, resolver: Optional[IdResolver],
                             partial: bool) -> Dict[str, Any]:
        self.validate(entity.entity_type, entity.data, partial=partial)
        payload = await self.mappings[entity.entity_type].to_remote(entity.data, resolver, partial=partial)
        if entity.entity_type == 'order' and not partial and entity.data.get('line_items'):
            # Existing orders keep their lines; resending them would duplicate
            payload['line_items'] = await self._line_items(entity.data, resolver)
        return payload

    async def push(self, operation: Operation, entity: LocalEntity, remote_id: Optional[str] = None,
                   resolver: Optional[IdResolver] = None) -> str:
        entity_type = entity.entity_type
        self._require_supported(entity_type)

        if entity_type == 'inventory':
            return await self._push_stock(operation, entity, resolver)

        if operation == Operation.DELETE:
            if remote_id is None:
                raise ValidationFailure(f"Cannot delete unmapped {entity_type} {entity.entity_id}")
            if entity.data.get('archive'):
                if entity_type not in ARCHIVE_STATUS:
                    raise ValidationFailure(f"WooCommerce cannot archive a {entity_type}")
                await self._request('PUT', self._url(entity_type, remote_id),
                                    json=ARCHIVE_STATUS[entity_type], auth=self.auth)
            else:
                await self._request('DELETE', self._url(entity_type, remote_id),
                                    params={'force': 'true'}, auth=self.auth)
            self.logger.info(f"Removed {entity_type} {remote_id} "
                             f"({'archived' if entity.data.get('archive') else 'deleted'})")
            return remote_id

        if operation == Operation.UPDATE and remote_id is not None:
            payload = await self._build_payload(entity, resolver, partial=True)
            response = await self._request('PUT', self._url(entity_type, remote_id), json=payload, auth=self.auth)
        else:
            payload = await self._build_payload(entity, resolver, partial=False)
            response = await self._request('POST', self._url(entity_type), json=payload, auth=self.auth)

        new_id = str(response.json()['id'])
        self.logger.debug(f"Pushed {operation.value} {entity_type} {entity.entity_id} -> {new_id}")
        return new_id

    async def _push_stock(self, operation: Operation, entity: LocalEntity,
                          resolver: Optional[IdResolver]) -> str:
        if operation == Operation.DELETE:
            raise ValidationFailure("Inventory levels cannot be deleted, push a zero quantity instead")
        payload = await self._build_payload(entity, resolver, partial=False)
        product_id = payload.pop('id')
        payload['manage_stock'] = True
        await self._request('PUT', self._url('product', product_id), json=payload, auth=self.auth)
        return str(product_id)

    def to_remote_entity(self, entity_type: str, item: Dict[str, Any]) -> RemoteEntity:
        modified = item.get('date_modified_gmt') or item.get('date_modified')
        if modified and item.get('date_modified_gmt') and not str(modified).endswith('Z'):
            modified = f"{modified}Z"
        return RemoteEntity(
            entity_type=entity_type,
            remote_id=str(item['id']),
            data=item,
            updated_at=parse_timestamp(modified) if modified else None,
            deleted=item.get('status') == 'trash'
        )

    async def fetch(self, entity_type: str, since: Cursor = None) -> Page:
        self._require_supported(entity_type)
        modified_after, page = decode_cursor(since, first_position=1)
        params = {'per_page': self.per_page, 'page': page, 'orderby': 'modified', 'order': 'asc'}
        if modified_after:
            params['modified_after'] = modified_after

        response = await self._request('GET', self._url(entity_type), params=params, auth=self.auth)
        entities = [self.to_remote_entity(entity_type, item) for item in response.json()]

        total_pages = int(response.headers.get('X-WP-TotalPages', '1') or 1)
        has_more = page < total_pages
        next_cursor = encode_cursor(modified_after, page + 1) if has_more else None
        self.logger.debug(f"Fetched {len(entities)} {entity_type} (page {page}/{total_pages})")
        return Page(entities=entities, next_cursor=next_cursor, has_more=has_more)

    async def get_remote(self, entity_type: str, remote_id: str) -> Optional[RemoteEntity]:
        self._require_supported(entity_type)
        try:
            response = await self._request('GET', self._url(entity_type, remote_id), auth=self.auth)
        except NonRetryableError as e:
            if e.status_code in (404, 410):
                return None
            raise
        return self.to_remote_entity(entity_type, response.json())

    async def to_local(self, entity: RemoteEntity, reverse_resolver: Optional[IdResolver] = None) -> Dict[str, Any]:
        record = await self.mappings[entity.entity_type].from_remote(entity.data, reverse_resolver)
        if entity.entity_type == 'order':
            lines = []
            for line in entity.data.get('line_items') or []:
                product_id = str(line.get('product_id'))
                if reverse_resolver is not None:
                    product_id = await reverse_resolver('product', product_id) or product_id
                lines.append({'product_id': product_id, 'quantity': line.get('quantity'),
                              'price': line.get('price'), 'name': line.get('name')})
            record['line_items'] = lines
            record['total'] = entity.data.get('total')
        elif entity.entity_type == 'inventory':
            product_id = entity.remote_id
            if reverse_resolver is not None:
                product_id = await reverse_resolver('product', entity.remote_id) or product_id
            record['product_id'] = product_id
        if entity.updated_at:
            record['updated_at'] = entity.updated_at.isoformat()
        return record
