"""
QuickBooks Online connector (Accounting API v3)
Customers, items, stock, sales receipts/invoices and payments for one realm
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional, Tuple

import httpx

from storesync.core.models import Operation
from storesync.integrations.base import (
    ConnectorAdapter, LocalEntity, RemoteEntity, Page, Cursor, IdResolver,
    ConnectorError, AuthExpiredError, FatalError, NonRetryableError, RemoteConflictError,
    ValidationFailure, UnresolvedReferenceError, decode_cursor, encode_cursor,
    error_from_status, parse_retry_after, parse_timestamp
)
from storesync.integrations.field_mapping import FieldMapping, EntityMapping, currency

DEFAULT_BASE_URL = "https://quickbooks.api.intuit.com"
DEFAULT_TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"

# Fault codes with dedicated handling
STALE_OBJECT_FAULT = "5010"
DUPLICATE_NAME_FAULT = "6240"

NAME_LIST_ENTITIES = ('Customer', 'Item')
ORDER_TXN_TYPES = ('SalesReceipt', 'Invoice')

QBO_ENTITIES = {
    'customer': 'Customer',
    'product': 'Item',
    'inventory': 'Item',
    'invoice': 'Invoice',
    'payment': 'Payment',
}

_ADDRESS_FIELDS = [
    FieldMapping('billing_address.address_1', 'BillAddr.Line1', ['trim'], max_length=500),
    FieldMapping('billing_address.city', 'BillAddr.City', ['trim'], max_length=255),
    FieldMapping('billing_address.state', 'BillAddr.CountrySubDivisionCode', ['trim', 'uppercase']),
    FieldMapping('billing_address.postcode', 'BillAddr.PostalCode', ['trim'], max_length=30),
    FieldMapping('billing_address.country', 'BillAddr.Country', ['trim']),
]

QBO_MAPPINGS = {
    'customer': EntityMapping('customer', 'Customer', [
        FieldMapping('display_name', 'DisplayName', ['trim'], required=True, max_length=100),
        FieldMapping('first_name', 'GivenName', ['trim'], max_length=100),
        FieldMapping('last_name', 'FamilyName', ['trim'], max_length=100),
        FieldMapping('company', 'CompanyName', ['trim'], max_length=100),
        FieldMapping('email', 'PrimaryEmailAddr.Address', ['trim', 'lowercase'], max_length=100),
        FieldMapping('phone', 'PrimaryPhone.FreeFormNumber', ['phone'], max_length=30),
        FieldMapping('notes', 'Notes', max_length=2000),
    ] + _ADDRESS_FIELDS),
    'product': EntityMapping('product', 'Item', [
        FieldMapping('name', 'Name', ['trim'], required=True, max_length=100),
        FieldMapping('sku', 'Sku', ['trim'], max_length=100),
        FieldMapping('price', 'UnitPrice', ['currency', 'number']),
        FieldMapping('cost', 'PurchaseCost', ['currency', 'number']),
        FieldMapping('description', 'Description', max_length=4000),
        FieldMapping('stock_quantity', 'QtyOnHand', ['number']),
    ]),
    'inventory': EntityMapping('inventory', 'Item', [
        FieldMapping('product_id', 'Id', ['string', 'lookup:product'], required=True, inbound=False),
        FieldMapping('quantity', 'QtyOnHand', ['number'], required=True),
    ]),
    'order': EntityMapping('order', 'SalesReceipt', [
        FieldMapping('customer_id', 'CustomerRef.value', ['string', 'lookup:customer'], required=True),
        FieldMapping('order_number', 'DocNumber', ['string', 'trim'], max_length=21),
        FieldMapping('order_date', 'TxnDate', ['date_format:ISO8601:YYYY-MM-DD']),
        FieldMapping('notes', 'PrivateNote', max_length=4000),
    ]),
    'invoice': EntityMapping('invoice', 'Invoice', [
        FieldMapping('customer_id', 'CustomerRef.value', ['string', 'lookup:customer'], required=True),
        FieldMapping('doc_number', 'DocNumber', ['string', 'trim'], max_length=21),
        FieldMapping('invoice_date', 'TxnDate', ['date_format:ISO8601:YYYY-MM-DD']),
        FieldMapping('due_date', 'DueDate', ['date_format:ISO8601:YYYY-MM-DD']),
        FieldMapping('notes', 'PrivateNote', max_length=4000),
    ]),
    'payment': EntityMapping('payment', 'Payment', [
        FieldMapping('customer_id', 'CustomerRef.value', ['string', 'lookup:customer'], required=True),
        FieldMapping('amount', 'TotalAmt', ['currency', 'number'], required=True),
        FieldMapping('payment_date', 'TxnDate', ['date_format:ISO8601:YYYY-MM-DD']),
        FieldMapping('reference', 'PaymentRefNum', ['string'], max_length=21),
    ]),
}


class CredentialProvider(ABC):
    """Source of OAuth2 access tokens; storage of the secrets lives elsewhere"""

    @abstractmethod
    async def get_access_token(self) -> str:
        pass

    @abstractmethod
    async def refresh(self) -> bool:
        """Obtain a new access token; False when refresh is impossible"""
        pass


class StaticCredentialProvider(CredentialProvider):
    """Fixed access token (tests, short-lived scripts)"""

    def __init__(self, access_token: str):
        self.access_token = access_token

    async def get_access_token(self) -> str:
        return self.access_token

    async def refresh(self) -> bool:
        return False


class OAuthCredentialProvider(CredentialProvider):
    """Refresh-token grant against Intuit's token endpoint"""

    def __init__(self, client_id: str, client_secret: str, refresh_token: str,
                 access_token: Optional[str] = None, token_url: str = DEFAULT_TOKEN_URL,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.access_token = access_token
        self.token_url = token_url
        self._client = http_client
        self._lock = asyncio.Lock()

    async def get_access_token(self) -> str:
        if not self.access_token:
            if not await self.refresh():
                raise FatalError("QuickBooks access token unavailable")
        return self.access_token

    async def refresh(self) -> bool:
        async with self._lock:
            client = self._client or httpx.AsyncClient(timeout=30)
            try:
                response = await client.post(
                    self.token_url,
                    data={'grant_type': 'refresh_token', 'refresh_token': self.refresh_token},
                    auth=(self.client_id, self.client_secret),
                    headers={'Accept': 'application/json'}
                )
            except httpx.HTTPError:
                return False
            finally:
                if self._client is None:
                    await client.aclose()

            if response.status_code != 200:
                return False
            body = response.json()
            self.access_token = body['access_token']
            # Intuit rotates refresh tokens
            self.refresh_token = body.get('refresh_token', self.refresh_token)
            return True


def split_order_id(remote_id: str) -> Tuple[str, str]:
    """Order ids carry their transaction type: 'SalesReceipt:145'"""
    txn_type, sep, txn_id = remote_id.partition(':')
    if not sep:
        return 'SalesReceipt', remote_id
    return txn_type, txn_id


class QuickBooksAdapter(ConnectorAdapter):
    """QuickBooks Online adapter for a single company (realm)"""

    platform = "quickbooks"
    supported_entities = ('customer', 'product', 'inventory', 'order', 'invoice', 'payment')

    def __init__(self, config: Dict[str, Any], credentials: CredentialProvider,
                 http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(config, http_client)
        if not config.get('realm_id'):
            raise FatalError("QuickBooks realm_id is not configured")
        self.credentials = credentials
        self.base_url = config.get('base_url', DEFAULT_BASE_URL).rstrip('/')
        self.realm_id = str(config['realm_id'])
        self.minor_version = str(config.get('minor_version', '65'))
        self.page_size = min(int(config.get('page_size', 100)), 1000)
        self.income_account_id = str(config.get('income_account_id', '1'))
        self.mappings = QBO_MAPPINGS

    @property
    def company_url(self) -> str:
        return f"{self.base_url}/v3/company/{self.realm_id}"

    async def _headers(self) -> Dict[str, str]:
        token = await self.credentials.get_access_token()
        return {'Authorization': f"Bearer {token}", 'Accept': 'application/json'}

    async def _call(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                    json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        query = {'minorversion': self.minor_version, **(params or {})}
        response = await self._request(method, f"{self.company_url}/{path}", params=query,
                                       json=json, headers=await self._headers())
        body = response.json()
        if 'Fault' in body:
            raise self._fault_error(body['Fault'], response.status_code, response.text)
        return body

    def _fault_error(self, fault: Dict[str, Any], status_code: int, text: str) -> ConnectorError:
        errors = fault.get('Error') or [{}]
        first = errors[0]
        code = str(first.get('code', ''))
        message = first.get('Message') or first.get('message') or "QuickBooks fault"
        detail = first.get('Detail') or text[:1000]
        if code == STALE_OBJECT_FAULT:
            return RemoteConflictError(f"Stale object: {message}", status_code=status_code, detail=detail)
        if code == DUPLICATE_NAME_FAULT:
            return NonRetryableError(f"Duplicate name: {message}", status_code=status_code, detail=detail)
        if fault.get('type') == 'AUTHENTICATION' or status_code == 401:
            return AuthExpiredError(message, status_code=401, detail=detail)
        if fault.get('type') == 'ValidationFault' and status_code < 400:
            return NonRetryableError(message, status_code=400, detail=detail)
        return error_from_status(status_code if status_code >= 400 else 400, message, detail=detail)

    def _error_from_response(self, response: httpx.Response) -> ConnectorError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        fault = body.get('Fault') if isinstance(body, dict) else None
        if fault and response.status_code not in (401, 403, 429) and response.status_code < 500:
            return self._fault_error(fault, response.status_code, response.text)
        return error_from_status(
            response.status_code,
            f"QuickBooks rejected {response.request.method} {response.request.url.path}",
            detail=response.text[:1000],
            retry_after=parse_retry_after(response.headers.get('Retry-After'))
        )

    async def refresh_credentials(self) -> bool:
        refreshed = await self.credentials.refresh()
        self.logger.info(f"QuickBooks credential refresh {'succeeded' if refreshed else 'failed'}")
        return refreshed

    def _prepare(self, entity_type: str, record: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
        record = dict(record)
        if entity_type == 'customer' and not partial and not record.get('display_name'):
            name = " ".join(part for part in (record.get('first_name'), record.get('last_name')) if part)
            record['display_name'] = name or record.get('company') or record.get('email')
        return record

    def validate(self, entity_type: str, record: Dict[str, Any], partial: bool = False) -> None:
        self._require_supported(entity_type)
        self.mappings[entity_type].validate(self._prepare(entity_type, record, partial), partial=partial)
        if entity_type in ('order', 'invoice') and not partial and not record.get('line_items'):
            raise ValidationFailure(f"{entity_type} needs at least one line item")

    async def _lines(self, record: Dict[str, Any], resolver: Optional[IdResolver]) -> List[Dict[str, Any]]:
        lines = []
        for number, line in enumerate(record.get('line_items') or [], start=1):
            local_product = str(line['product_id'])
            item_id = await resolver('product', local_product) if resolver else None
            if item_id is None:
                raise UnresolvedReferenceError(f"product {local_product} has no QuickBooks item yet")
            quantity = line.get('quantity', 1)
            unit_price = line.get('price', line.get('unit_price', 0))
            amount = line.get('total') or float(currency(float(unit_price) * float(quantity)))
            lines.append({
                'LineNum': number,
                'Description': line.get('name'),
                'Amount': float(currency(amount)),
                'DetailType': 'SalesItemLineDetail',
                'SalesItemLineDetail': {
                    'ItemRef': {'value': item_id},
                    'Qty': quantity,
                    'UnitPrice': float(currency(unit_price))
                }
            })
        return lines

    def _txn_type(self, entity: LocalEntity) -> str:
        if entity.entity_type == 'order':
            return 'SalesReceipt' if entity.data.get('paid', True) else 'Invoice'
        return QBO_ENTITIES[entity.entity_type]

    async def _build_payload(self, entity: LocalEntity, resolver: Optional[IdResolver],
                             partial: bool) -> Dict[str, Any]:
        record = self._prepare(entity.entity_type, entity.data, partial)
        self.validate(entity.entity_type, record, partial=partial)
        payload = await self.mappings[entity.entity_type].to_remote(record, resolver, partial=partial)

        if entity.entity_type in ('order', 'invoice') and record.get('line_items'):
            payload['Line'] = await self._lines(record, resolver)
        elif entity.entity_type == 'payment' and record.get('invoice_id'):
            invoice_id = await resolver('invoice', str(record['invoice_id'])) if resolver else None
            if invoice_id is None:
                raise UnresolvedReferenceError(f"invoice {record['invoice_id']} has no QuickBooks id yet")
            payload['Line'] = [{'Amount': payload['TotalAmt'],
                                'LinkedTxn': [{'TxnId': invoice_id, 'TxnType': 'Invoice'}]}]
        elif entity.entity_type == 'product' and not partial:
            payload.setdefault('Type', self.config.get('item_type', 'NonInventory'))
            payload['IncomeAccountRef'] = {'value': self.income_account_id}
        return payload

    async def _read(self, qbo_type: str, qbo_id: str) -> Dict[str, Any]:
        body = await self._call('GET', f"{qbo_type.lower()}/{qbo_id}")
        return body[qbo_type]

    async def _sparse_update(self, qbo_type: str, qbo_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        current = await self._read(qbo_type, qbo_id)
        body = {'Id': qbo_id, 'SyncToken': current['SyncToken'], 'sparse': True, **changes}
        result = await self._call('POST', qbo_type.lower(), json=body)
        return result[qbo_type]

    def _compose_id(self, entity_type: str, qbo_type: str, qbo_id: str) -> str:
        return f"{qbo_type}:{qbo_id}" if entity_type == 'order' else qbo_id

    def _split_id(self, entity: LocalEntity, remote_id: str) -> Tuple[str, str]:
        if entity.entity_type == 'order':
            return split_order_id(remote_id)
        return QBO_ENTITIES[entity.entity_type], remote_id

    async def push(self, operation: Operation, entity: LocalEntity, remote_id: Optional[str] = None,
                   resolver: Optional[IdResolver] = None) -> str:
        entity_type = entity.entity_type
        self._require_supported(entity_type)

        if entity_type == 'inventory':
            if operation == Operation.DELETE:
                raise ValidationFailure("Inventory levels cannot be deleted, push a zero quantity instead")
            payload = await self._build_payload(entity, resolver, partial=False)
            item_id = payload.pop('Id')
            await self._sparse_update('Item', item_id, {**payload, 'TrackQtyOnHand': True})
            return item_id

        if operation == Operation.DELETE:
            if remote_id is None:
                raise ValidationFailure(f"Cannot delete unmapped {entity_type} {entity.entity_id}")
            qbo_type, qbo_id = self._split_id(entity, remote_id)
            if qbo_type in NAME_LIST_ENTITIES:
                # Name-list entities cannot be hard deleted, only deactivated
                await self._sparse_update(qbo_type, qbo_id, {'Active': False})
            else:
                current = await self._read(qbo_type, qbo_id)
                await self._call('POST', qbo_type.lower(), params={'operation': 'delete'},
                                 json={'Id': qbo_id, 'SyncToken': current['SyncToken']})
            self.logger.info(f"Removed QuickBooks {qbo_type} {qbo_id}")
            return remote_id

        if operation == Operation.UPDATE and remote_id is not None:
            qbo_type, qbo_id = self._split_id(entity, remote_id)
            payload = await self._build_payload(entity, resolver, partial=True)
            updated = await self._sparse_update(qbo_type, qbo_id, payload)
            return self._compose_id(entity_type, qbo_type, str(updated['Id']))

        qbo_type = self._txn_type(entity)
        payload = await self._build_payload(entity, resolver, partial=False)
        body = await self._call('POST', qbo_type.lower(), json=payload)
        new_id = str(body[qbo_type]['Id'])
        self.logger.debug(f"Created QuickBooks {qbo_type} {new_id} for {entity_type} {entity.entity_id}")
        return self._compose_id(entity_type, qbo_type, new_id)

    def _to_remote_entity(self, entity_type: str, qbo_type: str, item: Dict[str, Any]) -> RemoteEntity:
        updated = (item.get('MetaData') or {}).get('LastUpdatedTime')
        return RemoteEntity(
            entity_type=entity_type,
            remote_id=self._compose_id(entity_type, qbo_type, str(item['Id'])),
            data=item,
            updated_at=parse_timestamp(updated) if updated else None,
            deleted=item.get('Active') is False or item.get('status') == 'Deleted',
            version=item.get('SyncToken')
        )

    def aliases(self, entity_type: str, remote_id: str) -> List[Tuple[str, str]]:
        # Unpaid orders are pushed as invoices
        if entity_type == 'invoice':
            return [('order', f"Invoice:{remote_id}")]
        return []

    async def _query(self, qbo_type: str, entity_type: str, updated_after: Optional[str],
                     start: int) -> List[Dict[str, Any]]:
        conditions = []
        if updated_after:
            stamp = updated_after if updated_after.endswith('Z') or '+' in updated_after else f"{updated_after}Z"
            conditions.append(f"Metadata.LastUpdatedTime > '{stamp}'")
        if entity_type == 'inventory':
            conditions.append("Type = 'Inventory'")
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        query = (f"SELECT * FROM {qbo_type}{where} ORDERBY Metadata.LastUpdatedTime "
                 f"STARTPOSITION {start} MAXRESULTS {self.page_size}")

        body = await self._call('GET', 'query', params={'query': query})
        return (body.get('QueryResponse') or {}).get(qbo_type, [])

    async def fetch(self, entity_type: str, since: Cursor = None) -> Page:
        """
        One page of changes since the cursor.

        Orders live in two transaction types; both are read at the same start
        position and the page has more while either type filled its page.
        """
        self._require_supported(entity_type)
        qbo_types = ORDER_TXN_TYPES if entity_type == 'order' else (QBO_ENTITIES[entity_type],)
        updated_after, start = decode_cursor(since, first_position=1)

        entities = []
        has_more = False
        for qbo_type in qbo_types:
            rows = await self._query(qbo_type, entity_type, updated_after, start)
            entities.extend(self._to_remote_entity(entity_type, qbo_type, row) for row in rows)
            has_more = has_more or len(rows) >= self.page_size

        next_cursor = encode_cursor(updated_after, start + self.page_size) if has_more else None
        self.logger.debug(f"Fetched {len(entities)} QuickBooks {'/'.join(qbo_types)} from position {start}")
        return Page(entities=entities, next_cursor=next_cursor, has_more=has_more)

    async def get_remote(self, entity_type: str, remote_id: str) -> Optional[RemoteEntity]:
        self._require_supported(entity_type)
        if entity_type == 'order':
            qbo_type, qbo_id = split_order_id(remote_id)
        else:
            qbo_type, qbo_id = QBO_ENTITIES[entity_type], remote_id
        try:
            item = await self._read(qbo_type, qbo_id)
        except NonRetryableError as e:
            if e.status_code in (404, 410):
                return None
            raise
        return self._to_remote_entity(entity_type, qbo_type, item)

    async def to_local(self, entity: RemoteEntity, reverse_resolver: Optional[IdResolver] = None) -> Dict[str, Any]:
        mapping = self.mappings[entity.entity_type]
        record = await mapping.from_remote(entity.data, reverse_resolver)

        if entity.entity_type in ('order', 'invoice'):
            lines = []
            for line in entity.data.get('Line') or []:
                detail = line.get('SalesItemLineDetail')
                if not detail:
                    continue
                product_id = str((detail.get('ItemRef') or {}).get('value'))
                if reverse_resolver is not None:
                    product_id = await reverse_resolver('product', product_id) or product_id
                lines.append({'product_id': product_id, 'quantity': detail.get('Qty'),
                              'price': detail.get('UnitPrice'), 'name': line.get('Description'),
                              'total': line.get('Amount')})
            record['line_items'] = lines
            record['total'] = entity.data.get('TotalAmt')
        elif entity.entity_type == 'inventory':
            product_id = str(entity.data.get('Id'))
            if reverse_resolver is not None:
                product_id = await reverse_resolver('product', product_id) or product_id
            record['product_id'] = product_id
        if entity.updated_at:
            record['updated_at'] = entity.updated_at.isoformat()
        return record
