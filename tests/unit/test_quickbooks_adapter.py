"""
Tests for the QuickBooks Online adapter and its credential providers
"""

import json

import httpx
import pytest

from storesync.core.models import Operation
from storesync.integrations.base import (
    LocalEntity, AuthExpiredError, FatalError, NonRetryableError, RemoteConflictError, ValidationFailure
)
from storesync.integrations.quickbooks import (
    QuickBooksAdapter, StaticCredentialProvider, OAuthCredentialProvider, split_order_id
)

BASE_URL = "https://sandbox-quickbooks.api.intuit.com"
COMPANY = "/v3/company/9130"


class QboRecorder:

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={'Fault': {'Error': [{'Message': 'Object Not Found', 'code': '610'}],
                                                       'type': 'ValidationFault'}})
        return handler(request)

    def bodies(self, method='POST'):
        return [json.loads(request.content) for request in self.requests if request.method == method]


def make_adapter(routes, page_size=100):
    recorder = QboRecorder(routes)
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    adapter = QuickBooksAdapter({'realm_id': '9130', 'base_url': BASE_URL, 'page_size': page_size},
                                StaticCredentialProvider('access-1'), http_client=client)
    return adapter, recorder


def reply(payload, status=200):
    return lambda request: httpx.Response(status, json=payload)


async def resolver(entity_type, local_id):
    return {('customer', 'c1'): '58', ('product', 'p1'): '7', ('invoice', 'inv-1'): '130'}.get(
        (entity_type, local_id))


def test_split_order_id():
    assert split_order_id('SalesReceipt:145') == ('SalesReceipt', '145')
    assert split_order_id('Invoice:9') == ('Invoice', '9')
    assert split_order_id('145') == ('SalesReceipt', '145')


def test_realm_is_required():
    with pytest.raises(FatalError):
        QuickBooksAdapter({}, StaticCredentialProvider('token'))


@pytest.mark.asyncio
async def test_create_customer_derives_display_name():
    adapter, recorder = make_adapter({
        ('POST', f'{COMPANY}/customer'): reply({'Customer': {'Id': '58', 'SyncToken': '0'}}),
    })

    remote_id = await adapter.push(Operation.CREATE, LocalEntity('customer', 'c1', {
        'first_name': 'Ada', 'last_name': 'Lovelace', 'email': 'ADA@example.com'
    }))

    assert remote_id == '58'
    request = recorder.requests[0]
    assert request.headers['authorization'] == 'Bearer access-1'
    assert request.url.params['minorversion'] == '65'
    assert recorder.bodies()[0] == {
        'DisplayName': 'Ada Lovelace',
        'GivenName': 'Ada',
        'FamilyName': 'Lovelace',
        'PrimaryEmailAddr': {'Address': 'ada@example.com'}
    }


@pytest.mark.asyncio
async def test_paid_order_becomes_sales_receipt():
    adapter, recorder = make_adapter({
        ('POST', f'{COMPANY}/salesreceipt'): reply({'SalesReceipt': {'Id': '145'}}),
    })
    order = LocalEntity('order', 'o1', {
        'customer_id': 'c1', 'order_date': '2024-03-01T09:30:00Z',
        'line_items': [{'product_id': 'p1', 'quantity': 2, 'price': 20, 'name': 'Mug'}]
    })

    assert await adapter.push(Operation.CREATE, order, resolver=resolver) == 'SalesReceipt:145'

    body = recorder.bodies()[0]
    assert body['CustomerRef'] == {'value': '58'}
    assert body['TxnDate'] == '2024-03-01'
    assert body['Line'] == [{
        'LineNum': 1,
        'Description': 'Mug',
        'Amount': 40.0,
        'DetailType': 'SalesItemLineDetail',
        'SalesItemLineDetail': {'ItemRef': {'value': '7'}, 'Qty': 2, 'UnitPrice': 20.0}
    }]


@pytest.mark.asyncio
async def test_unpaid_order_becomes_invoice():
    adapter, _ = make_adapter({
        ('POST', f'{COMPANY}/invoice'): reply({'Invoice': {'Id': '146'}}),
    })
    order = LocalEntity('order', 'o2', {
        'customer_id': 'c1', 'paid': False, 'line_items': [{'product_id': 'p1', 'quantity': 1, 'price': 5}]
    })

    assert await adapter.push(Operation.CREATE, order, resolver=resolver) == 'Invoice:146'


def test_order_needs_lines():
    adapter, _ = make_adapter({})
    with pytest.raises(ValidationFailure):
        adapter.validate('order', {'customer_id': 'c1'})
    # Sparse updates may omit lines
    adapter.validate('order', {'notes': 'left at door'}, partial=True)


@pytest.mark.asyncio
async def test_payment_links_invoice():
    adapter, recorder = make_adapter({
        ('POST', f'{COMPANY}/payment'): reply({'Payment': {'Id': '300'}}),
    })

    await adapter.push(Operation.CREATE, LocalEntity('payment', 'pay-1', {
        'customer_id': 'c1', 'amount': '40', 'invoice_id': 'inv-1'
    }), resolver=resolver)

    body = recorder.bodies()[0]
    assert body['TotalAmt'] == 40.0
    assert body['Line'] == [{'Amount': 40.0, 'LinkedTxn': [{'TxnId': '130', 'TxnType': 'Invoice'}]}]


@pytest.mark.asyncio
async def test_update_is_sparse_with_sync_token():
    adapter, recorder = make_adapter({
        ('GET', f'{COMPANY}/customer/58'): reply({'Customer': {'Id': '58', 'SyncToken': '3'}}),
        ('POST', f'{COMPANY}/customer'): reply({'Customer': {'Id': '58', 'SyncToken': '4'}}),
    })

    remote_id = await adapter.push(Operation.UPDATE, LocalEntity('customer', 'c1', {'email': 'new@example.com'}),
                                   '58')

    assert remote_id == '58'
    assert recorder.bodies()[0] == {
        'Id': '58', 'SyncToken': '3', 'sparse': True,
        'PrimaryEmailAddr': {'Address': 'new@example.com'}
    }


@pytest.mark.asyncio
async def test_inventory_sets_quantity_on_item():
    adapter, recorder = make_adapter({
        ('GET', f'{COMPANY}/item/7'): reply({'Item': {'Id': '7', 'SyncToken': '1'}}),
        ('POST', f'{COMPANY}/item'): reply({'Item': {'Id': '7', 'SyncToken': '2'}}),
    })

    remote_id = await adapter.push(Operation.UPDATE,
                                   LocalEntity('inventory', 'p1', {'product_id': 'p1', 'quantity': 95}),
                                   resolver=resolver)

    assert remote_id == '7'
    assert recorder.bodies()[0] == {'Id': '7', 'SyncToken': '1', 'sparse': True,
                                    'QtyOnHand': 95.0, 'TrackQtyOnHand': True}


@pytest.mark.asyncio
async def test_delete_deactivates_name_list_entities():
    adapter, recorder = make_adapter({
        ('GET', f'{COMPANY}/customer/58'): reply({'Customer': {'Id': '58', 'SyncToken': '3'}}),
        ('POST', f'{COMPANY}/customer'): reply({'Customer': {'Id': '58', 'Active': False}}),
    })

    await adapter.push(Operation.DELETE, LocalEntity('customer', 'c1', {}), '58')

    assert recorder.bodies()[0]['Active'] is False
    assert 'operation' not in recorder.requests[-1].url.params


@pytest.mark.asyncio
async def test_delete_transaction_uses_delete_operation():
    adapter, recorder = make_adapter({
        ('GET', f'{COMPANY}/salesreceipt/145'): reply({'SalesReceipt': {'Id': '145', 'SyncToken': '2'}}),
        ('POST', f'{COMPANY}/salesreceipt'): reply({'SalesReceipt': {'Id': '145', 'status': 'Deleted'}}),
    })

    assert await adapter.push(Operation.DELETE, LocalEntity('order', 'o1', {}), 'SalesReceipt:145') \
        == 'SalesReceipt:145'

    assert recorder.requests[-1].url.params['operation'] == 'delete'
    assert recorder.bodies()[0] == {'Id': '145', 'SyncToken': '2'}


@pytest.mark.asyncio
async def test_stale_object_fault_is_a_conflict():
    fault = {'Fault': {'Error': [{'Message': 'Stale Object Error', 'code': '5010'}], 'type': 'ValidationFault'}}
    adapter, _ = make_adapter({
        ('GET', f'{COMPANY}/item/7'): reply({'Item': {'Id': '7', 'SyncToken': '1'}}),
        ('POST', f'{COMPANY}/item'): reply(fault, status=400),
    })

    with pytest.raises(RemoteConflictError):
        await adapter.push(Operation.UPDATE, LocalEntity('product', 'p1', {'price': '9.5'}), '7')


@pytest.mark.asyncio
async def test_duplicate_name_fault_is_not_retried():
    fault = {'Fault': {'Error': [{'Message': 'Duplicate Name Exists Error', 'code': '6240'}],
                       'type': 'ValidationFault'}}
    adapter, _ = make_adapter({('POST', f'{COMPANY}/customer'): reply(fault, status=400)})

    with pytest.raises(NonRetryableError) as exc_info:
        await adapter.push(Operation.CREATE, LocalEntity('customer', 'c1', {'display_name': 'Ada'}))
    assert 'Duplicate name' in str(exc_info.value)


@pytest.mark.asyncio
async def test_unauthorized_maps_to_auth_expired():
    adapter, _ = make_adapter({('POST', f'{COMPANY}/customer'): reply({}, status=401)})

    with pytest.raises(AuthExpiredError):
        await adapter.push(Operation.CREATE, LocalEntity('customer', 'c1', {'display_name': 'Ada'}))
    assert await adapter.refresh_credentials() is False


@pytest.mark.asyncio
async def test_fetch_builds_query_and_pages():
    rows = [
        {'Id': '1', 'SyncToken': '0', 'MetaData': {'LastUpdatedTime': '2024-03-01T10:00:00-08:00'}},
        {'Id': '2', 'SyncToken': '5', 'Active': False, 'MetaData': {'LastUpdatedTime': '2024-03-01T11:00:00-08:00'}},
    ]
    adapter, recorder = make_adapter({
        ('GET', f'{COMPANY}/query'): reply({'QueryResponse': {'Customer': rows}}),
    }, page_size=2)

    page = await adapter.fetch('customer', since='2024-03-01T00:00:00')

    query = recorder.requests[0].url.params['query']
    assert "Metadata.LastUpdatedTime > '2024-03-01T00:00:00Z'" in query
    assert query.endswith("STARTPOSITION 1 MAXRESULTS 2")
    assert page.has_more is True
    assert page.next_cursor == '2024-03-01T00:00:00|3'
    assert page.entities[0].updated_at.isoformat() == '2024-03-01T18:00:00'
    assert page.entities[1].deleted is True
    assert page.entities[1].version == '5'


def order_rows(request: httpx.Request) -> httpx.Response:
    query = request.url.params['query']
    if 'FROM SalesReceipt' in query:
        return httpx.Response(200, json={'QueryResponse': {'SalesReceipt': [{'Id': '145'}]}})
    return httpx.Response(200, json={'QueryResponse': {'Invoice': [{'Id': '146'}, {'Id': '147'}]}})


@pytest.mark.asyncio
async def test_fetch_orders_reads_sales_receipts_and_invoices():
    adapter, recorder = make_adapter({('GET', f'{COMPANY}/query'): order_rows})

    page = await adapter.fetch('order')

    queries = [request.url.params['query'] for request in recorder.requests]
    assert 'FROM SalesReceipt' in queries[0]
    assert 'FROM Invoice' in queries[1]
    assert [entity.remote_id for entity in page.entities] == ['SalesReceipt:145', 'Invoice:146', 'Invoice:147']
    assert page.has_more is False


@pytest.mark.asyncio
async def test_fetch_orders_pages_while_either_type_is_full():
    adapter, _ = make_adapter({('GET', f'{COMPANY}/query'): order_rows}, page_size=2)

    page = await adapter.fetch('order', since='2024-03-01T00:00:00')

    assert page.has_more is True
    assert page.next_cursor == '2024-03-01T00:00:00|3'


def test_invoice_ids_alias_unpaid_orders():
    adapter, _ = make_adapter({})
    assert adapter.aliases('invoice', '146') == [('order', 'Invoice:146')]
    assert adapter.aliases('customer', '58') == []


@pytest.mark.asyncio
async def test_get_remote_missing_returns_none():
    adapter, _ = make_adapter({})
    assert await adapter.get_remote('customer', '999') is None


@pytest.mark.asyncio
async def test_to_local_maps_lines_back():
    adapter, _ = make_adapter({})
    remote = adapter._to_remote_entity('order', 'SalesReceipt', {
        'Id': '145', 'CustomerRef': {'value': '58'}, 'TotalAmt': 40.0,
        'Line': [
            {'Amount': 40.0, 'Description': 'Mug', 'DetailType': 'SalesItemLineDetail',
             'SalesItemLineDetail': {'ItemRef': {'value': '7'}, 'Qty': 2, 'UnitPrice': 20.0}},
            {'Amount': 40.0, 'DetailType': 'SubTotalLineDetail', 'SubTotalLineDetail': {}},
        ]
    })

    async def reverse(entity_type, remote_id):
        return {('customer', '58'): 'c1', ('product', '7'): 'p1'}.get((entity_type, remote_id))

    record = await adapter.to_local(remote, reverse)

    assert record['customer_id'] == 'c1'
    assert record['line_items'] == [{'product_id': 'p1', 'quantity': 2, 'price': 20.0, 'name': 'Mug', 'total': 40.0}]
    assert record['total'] == 40.0


@pytest.mark.asyncio
async def test_oauth_refresh_rotates_tokens():
    seen = []

    def token_endpoint(request):
        seen.append(request)
        return httpx.Response(200, json={'access_token': 'access-2', 'refresh_token': 'refresh-2'})

    client = httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint))
    provider = OAuthCredentialProvider('client', 'secret', 'refresh-1', http_client=client)

    assert await provider.get_access_token() == 'access-2'
    assert provider.refresh_token == 'refresh-2'
    assert b'grant_type=refresh_token' in seen[0].content
    assert b'refresh_token=refresh-1' in seen[0].content


@pytest.mark.asyncio
async def test_oauth_refresh_failure():
    client = httpx.AsyncClient(transport=httpx.MockTransport(
        lambda request: httpx.Response(400, json={'error': 'invalid_grant'})))
    provider = OAuthCredentialProvider('client', 'secret', 'revoked', http_client=client)

    assert await provider.refresh() is False
    with pytest.raises(FatalError):
        await provider.get_access_token()
