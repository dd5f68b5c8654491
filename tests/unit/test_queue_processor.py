"""
Tests for the queue processor: dispatch, retries, breakers, conflicts and pulls
"""

from datetime import datetime, timedelta

import pytest

from storesync.core.backoff import BackoffPolicy
from storesync.core.circuit_breaker import CircuitBreakerPolicy, CircuitState
from storesync.core.queue_processor import TenantHaltedError
from storesync.core.sync_queue import QueueFullError
from storesync.integrations.base import AuthExpiredError, NonRetryableError, RateLimitedError, RemoteEntity

TENANT = "acme"
WOO = "woocommerce"
QBO = "quickbooks"


async def drain(harness):
    return await harness.processor.drain(TENANT, WOO)


async def create_customer(harness, local_id='c1', **data):
    record = {'email': f'{local_id}@example.com', **data}
    harness.local_store.put(TENANT, 'customer', local_id, record)
    await harness.processor.submit(TENANT, 'customer', local_id, 'create', record)


async def local_edit(harness, entity_type, local_id, **changes):
    current = await harness.local_store.get(TENANT, entity_type, local_id)
    harness.local_store.put(TENANT, entity_type, local_id, {**current.data, **changes})
    return await harness.processor.submit(TENANT, entity_type, local_id, 'update', changes)


def alert_types(harness):
    return [alert['type'] for alert in harness.notifier.get_alerts(TENANT)]


@pytest.mark.asyncio
async def test_duplicate_submit_pushes_once(harness, woo, sample_customer):
    harness.local_store.put(TENANT, 'customer', 'c1', sample_customer)
    first = await harness.processor.submit(TENANT, 'customer', 'c1', 'create', sample_customer)
    second = await harness.processor.submit(TENANT, 'customer', 'c1', 'create', sample_customer)
    assert first == second

    counters = await drain(harness)

    assert counters.succeeded == 1
    assert woo.calls == [('create', 'customer', None)]
    remote_id = await harness.id_mapper.resolve(TENANT, 'local', 'customer', 'c1', WOO)
    assert woo.records[('customer', remote_id)].data['first_name'] == 'Ada'


@pytest.mark.asyncio
async def test_customer_is_pushed_before_its_order(harness, woo):
    harness.local_store.put(TENANT, 'order', 'o1', {'customer_id': 'c1', 'total': '40.00'})
    await harness.processor.submit(TENANT, 'order', 'o1', 'create', {'customer_id': 'c1', 'total': '40.00'})
    await create_customer(harness, 'c1')

    counters = await drain(harness)

    assert counters.succeeded == 2
    assert [call[1] for call in woo.calls] == ['customer', 'order']
    customer_remote = await harness.id_mapper.resolve(TENANT, 'local', 'customer', 'c1', WOO)
    order_remote = await harness.id_mapper.resolve(TENANT, 'local', 'order', 'o1', WOO)
    assert woo.records[('order', order_remote)].data['customer_id'] == customer_remote


@pytest.mark.asyncio
async def test_update_without_mapping_becomes_create(harness, woo):
    harness.local_store.put(TENANT, 'customer', 'c1', {'email': 'c1@example.com'})
    await harness.processor.submit(TENANT, 'customer', 'c1', 'update', {'email': 'c1@example.com'})

    await drain(harness)

    assert woo.calls == [('create', 'customer', None)]


@pytest.mark.asyncio
async def test_retryable_failure_waits_for_backoff(harness, woo, clock):
    woo.online = False
    await create_customer(harness)

    counters = await drain(harness)

    assert counters.failed == 1
    [item] = await harness.items(['failed'])
    assert item.retry_count == 1
    assert item.error_class == 'retryable'
    assert clock() + timedelta(seconds=0.9) <= item.next_eligible_at <= clock() + timedelta(seconds=1.1)

    # Not eligible yet
    woo.online = True
    assert (await drain(harness)).attempted == 0

    clock.advance(2)
    assert (await drain(harness)).succeeded == 1
    assert await harness.items(['completed'])


@pytest.mark.asyncio
async def test_item_dies_after_retry_budget(harness, woo, clock):
    harness.processor.backoff = BackoffPolicy(max_retries=3)
    woo.online = False
    await create_customer(harness)

    for _ in range(3):
        await drain(harness)
        clock.advance(400)

    [item] = await harness.items(['dead'])
    assert item.retry_count == 3
    assert item.error_class == 'retryable'
    assert 'item_dead' in alert_types(harness)
    # Nothing left to dispatch
    assert await harness.store.pending_count(TENANT) == 0


@pytest.mark.asyncio
async def test_validation_failure_is_dead_without_retry(harness, woo):
    await create_customer(harness, invalid=True)

    counters = await drain(harness)

    assert counters.dead == 1
    assert woo.calls == []
    [item] = await harness.items(['dead'])
    assert item.retry_count == 0
    assert item.error_class == 'validation'


@pytest.mark.asyncio
async def test_non_retryable_rejection_does_not_trip_breaker(harness, woo):
    woo.push_errors = [NonRetryableError("unknown field", status_code=422)]
    await create_customer(harness)

    counters = await drain(harness)

    assert counters.dead == 1
    assert harness.breakers.get(TENANT, WOO).consecutive_failures == 0


@pytest.mark.asyncio
async def test_auth_expired_refreshes_once(harness, woo):
    woo.push_errors = [AuthExpiredError("token expired", status_code=401)]
    await create_customer(harness)

    counters = await drain(harness)

    assert woo.refresh_calls == 1
    assert counters.succeeded == 1
    assert len(woo.calls) == 2


@pytest.mark.asyncio
async def test_second_auth_failure_halts_platform(harness, woo):
    woo.push_errors = [AuthExpiredError("token expired", status_code=401),
                       AuthExpiredError("still expired", status_code=401)]
    await create_customer(harness, 'c1')
    await create_customer(harness, 'c2')

    await drain(harness)

    halt = await harness.sync_config.get_halt(TENANT, WOO)
    assert 'rejected after refresh' in halt['reason']
    # Both items are still waiting, none spent a retry
    pending = await harness.items(['pending'])
    assert len(pending) == 2
    assert all(item.retry_count == 0 for item in pending)
    assert 'platform_halted' in alert_types(harness)

    with pytest.raises(TenantHaltedError):
        await drain(harness)

    await harness.orchestrator.resume(TENANT, WOO)
    assert (await drain(harness)).succeeded == 2


@pytest.mark.asyncio
async def test_failed_refresh_halts_immediately(harness, woo):
    woo.refresh_result = False
    woo.push_errors = [AuthExpiredError("token revoked", status_code=401)]
    await create_customer(harness)

    await drain(harness)

    assert len(woo.calls) == 1
    assert await harness.sync_config.get_halt(TENANT, WOO) is not None


@pytest.mark.asyncio
async def test_rate_limited_honours_retry_after(harness, woo, clock):
    woo.push_errors = [RateLimitedError("slow down", retry_after=30, status_code=429)]
    await create_customer(harness)

    await drain(harness)

    [item] = await harness.items(['failed'])
    assert item.next_eligible_at == clock() + timedelta(seconds=30)
    assert item.error_class == 'rate_limited'
    assert harness.rate_limiters.get(TENANT, WOO).try_acquire() is False


@pytest.mark.asyncio
async def test_open_breaker_stops_dispatch(make_harness, clock, timer, woo):
    harness = make_harness([woo], breaker_policy=CircuitBreakerPolicy(failure_threshold=2))
    woo.online = False
    for local_id in ('c1', 'c2', 'c3'):
        await create_customer(harness, local_id)

    counters = await drain(harness)

    assert counters.failed == 2
    breaker = harness.breakers.get(TENANT, WOO)
    assert breaker.state == CircuitState.OPEN
    assert len(await harness.items(['pending'])) == 1
    assert 'circuit_opened' in alert_types(harness)

    # Still open: the pending item stays untouched
    clock.advance(5)
    assert (await drain(harness)).attempted == 0

    # After the reset timeout a probe goes through and succeeds
    woo.online = True
    timer.advance(61)
    clock.advance(5)
    counters = await drain(harness)
    assert counters.succeeded >= 1
    assert breaker.state in (CircuitState.HALF_OPEN, CircuitState.CLOSED)


@pytest.mark.asyncio
async def test_unresolved_reference_retries_without_breaker_failure(harness, woo):
    harness.local_store.put(TENANT, 'order', 'o1', {'customer_id': 'c9'})
    await harness.processor.submit(TENANT, 'order', 'o1', 'create', {'customer_id': 'c9'})

    await drain(harness)

    [item] = await harness.items(['failed'])
    assert item.error_class == 'unresolved_reference'
    assert harness.breakers.get(TENANT, WOO).consecutive_failures == 0


@pytest.mark.asyncio
async def test_queue_full_raises_and_alerts(make_harness, woo):
    harness = make_harness([woo], max_queue_size=1)
    await create_customer(harness, 'c1')

    with pytest.raises(QueueFullError):
        await create_customer(harness, 'c2')
    assert 'queue_full' in alert_types(harness)


@pytest.mark.asyncio
async def test_delete_stays_local_by_default(harness, woo):
    await create_customer(harness)
    await drain(harness)

    assert await harness.processor.submit(TENANT, 'customer', 'c1', 'delete') == []
    assert len(woo.records) == 1


@pytest.mark.asyncio
async def test_delete_policy_archive_and_delete(harness, woo):
    harness.local_store.put(TENANT, 'product', 'p1', {'name': 'Mug'})
    harness.local_store.put(TENANT, 'product', 'p2', {'name': 'Cup'})
    await harness.processor.submit(TENANT, 'product', 'p1', 'create', {'name': 'Mug'})
    await harness.processor.submit(TENANT, 'product', 'p2', 'create', {'name': 'Cup'})
    await drain(harness)
    p1 = await harness.id_mapper.resolve(TENANT, 'local', 'product', 'p1', WOO)
    p2 = await harness.id_mapper.resolve(TENANT, 'local', 'product', 'p2', WOO)

    await harness.sync_config.set_delete_policy_config(TENANT, 'delete_remote', {'product': 'archive_remote'})
    await harness.processor.submit(TENANT, 'product', 'p1', 'delete')
    await harness.sync_config.set_delete_policy_config(TENANT, 'delete_remote')
    await harness.processor.submit(TENANT, 'product', 'p2', 'delete')
    await drain(harness)

    assert woo.records[('product', p1)].data['status'] == 'archived'
    assert ('product', p2) not in woo.records


@pytest.mark.asyncio
async def test_delete_of_unsynced_entity_is_skipped(harness, woo):
    await harness.sync_config.set_delete_policy_config(TENANT, 'delete_remote')
    await harness.processor.submit(TENANT, 'customer', 'never-synced', 'delete')

    counters = await drain(harness)

    assert counters.skipped == 1
    assert woo.calls == []


@pytest.mark.asyncio
async def test_direction_checked_at_dispatch(harness, woo):
    await create_customer(harness)
    await harness.sync_config.set_direction_config(TENANT, 'bidirectional', {'customer': 'pull'})

    counters = await drain(harness)

    assert counters.skipped == 1
    assert woo.calls == []
    [item] = await harness.items(['dead'])
    assert item.error_class == 'direction'
    # New local changes are no longer queued at all
    assert await harness.processor.submit(TENANT, 'customer', 'c2', 'create', {'email': 'x@y.z'}) == []


async def diverge(harness, woo, clock, remote_changes, local_changes):
    """Sync c1, then edit it on both sides after the last sync"""
    await create_customer(harness, 'c1', notes='VIP')
    await drain(harness)
    remote_id = await harness.id_mapper.resolve(TENANT, 'local', 'customer', 'c1', WOO)
    clock.advance(60)
    woo.edit_remote('customer', remote_id, **remote_changes)
    clock.advance(60)
    await local_edit(harness, 'customer', 'c1', **local_changes)
    return remote_id


@pytest.mark.asyncio
async def test_dual_edit_last_write_wins(harness, woo, clock):
    remote_id = await diverge(harness, woo, clock, {'email': 'remote@example.com'},
                              {'email': 'local@example.com'})

    counters = await drain(harness)

    assert counters.conflicted == 1
    assert counters.succeeded == 1
    assert woo.records[('customer', remote_id)].data['email'] == 'local@example.com'
    [conflict] = await harness.conflict_resolver.list_conflicts(TENANT)
    assert conflict.resolution == 'local'
    assert conflict.remote_version['email'] == 'remote@example.com'


@pytest.mark.asyncio
async def test_dual_edit_remote_wins_updates_local(harness, woo, clock):
    await harness.sync_config.set_conflict_strategy(TENANT, 'customer', 'remote_wins')
    await diverge(harness, woo, clock, {'email': 'remote@example.com'}, {'email': 'local@example.com'})

    await drain(harness)

    local = await harness.local_store.get(TENANT, 'customer', 'c1')
    assert local.data['email'] == 'remote@example.com'


@pytest.mark.asyncio
async def test_manual_conflict_holds_then_releases(harness, woo, clock):
    await harness.sync_config.set_conflict_strategy(TENANT, 'customer', 'manual')
    remote_id = await diverge(harness, woo, clock, {'email': 'remote@example.com'},
                              {'email': 'local@example.com'})

    counters = await drain(harness)
    assert counters.held == 1
    assert 'conflict_pending' in alert_types(harness)
    [held] = await harness.items(['conflict'])

    # A later local change queues behind the open conflict
    clock.advance(10)
    await local_edit(harness, 'customer', 'c1', phone='+15550100')
    await drain(harness)
    assert len(await harness.items(['conflict'])) == 2

    [conflict] = await harness.conflict_resolver.list_conflicts(TENANT, pending_only=True)
    await harness.orchestrator.resolve_conflict(TENANT, conflict.id, 'local', 'ops@acme.test')

    assert woo.records[('customer', remote_id)].data['email'] == 'local@example.com'
    assert (await harness.store.get(held.id)).status.value == 'completed'

    clock.advance(10)
    await drain(harness)
    assert await harness.items(['conflict']) == []
    assert woo.records[('customer', remote_id)].data['phone'] == '+15550100'


@pytest.mark.asyncio
async def test_fetch_creates_local_record_and_mapping(harness, woo):
    remote = woo.seed('customer', {'email': 'new@example.com'})
    await harness.processor.enqueue_fetch(TENANT, WOO, 'customer', remote.remote_id)

    counters = await drain(harness)

    assert counters.succeeded == 1
    local_id = await harness.id_mapper.reverse_resolve(TENANT, WOO, remote.remote_id, 'local', 'customer')
    local = await harness.local_store.get(TENANT, 'customer', local_id)
    assert local.data['email'] == 'new@example.com'


@pytest.mark.asyncio
async def test_fetch_of_own_echo_is_skipped(harness, woo):
    await create_customer(harness)
    await drain(harness)
    remote_id = await harness.id_mapper.resolve(TENANT, 'local', 'customer', 'c1', WOO)

    await harness.processor.enqueue_fetch(TENANT, WOO, 'customer', remote_id,
                                          snapshot=woo.records[('customer', remote_id)])
    counters = await drain(harness)

    assert counters.skipped == 1


@pytest.mark.asyncio
async def test_remote_delete_removes_local_record(harness, woo):
    await create_customer(harness)
    await drain(harness)
    remote_id = await harness.id_mapper.resolve(TENANT, 'local', 'customer', 'c1', WOO)

    await harness.processor.enqueue_fetch(TENANT, WOO, 'customer', remote_id, deleted=True)
    await drain(harness)

    assert await harness.local_store.get(TENANT, 'customer', 'c1') is None


@pytest.mark.asyncio
async def test_pull_disabled_skips_fetch_enqueue(harness):
    await harness.sync_config.set_direction_config(TENANT, 'push')
    assert await harness.processor.enqueue_fetch(TENANT, WOO, 'customer', '1001') is None


@pytest.mark.asyncio
async def test_unexpected_dispatch_error_kills_item_and_keeps_draining(harness, woo):
    woo.push_errors = [KeyError('product_id')]
    await create_customer(harness, 'c1')
    await create_customer(harness, 'c2')

    counters = await drain(harness)

    assert counters.dead == 1
    assert counters.succeeded == 1
    [dead] = await harness.items(['dead'])
    assert dead.error_class == 'internal'
    assert 'KeyError' in dead.error_detail
    assert await harness.items(['in_flight']) == []
    assert harness.breakers.get(TENANT, WOO).consecutive_failures == 0
    assert 'item_dead' in alert_types(harness)


@pytest.mark.asyncio
async def test_claimed_items_released_when_drain_fails(harness, monkeypatch):
    await create_customer(harness, 'c1')
    await create_customer(harness, 'c2')

    async def unavailable(tenant, entity_type):
        raise RuntimeError("settings store unavailable")

    monkeypatch.setattr(harness.sync_config, 'direction_for', unavailable)

    with pytest.raises(RuntimeError):
        await drain(harness)

    assert await harness.items(['in_flight']) == []
    assert len(await harness.items(['pending'])) == 2


@pytest.mark.asyncio
async def test_pulled_invoice_backing_an_order_is_fetched_as_order(qbo_harness):
    await qbo_harness.id_mapper.record(TENANT, 'local', 'order', 'o1', QBO, 'Invoice:146')
    snapshot = RemoteEntity('invoice', '146', {'Id': '146', 'TotalAmt': 20.0},
                            updated_at=datetime(2024, 3, 1, 12, 5))

    item_id = await qbo_harness.processor.enqueue_fetch(TENANT, QBO, 'invoice', '146', snapshot=snapshot)

    item = await qbo_harness.store.get(item_id)
    assert item.entity_type == 'order'
    assert item.entity_id == 'Invoice:146'
    assert item.payload['snapshot']['entity_type'] == 'order'
    assert item.payload['snapshot']['remote_id'] == 'Invoice:146'


@pytest.mark.asyncio
async def test_unmapped_invoice_stays_an_invoice(qbo_harness):
    item_id = await qbo_harness.processor.enqueue_fetch(TENANT, QBO, 'invoice', '147')

    item = await qbo_harness.store.get(item_id)
    assert item.entity_type == 'invoice'
    assert item.entity_id == '147'
