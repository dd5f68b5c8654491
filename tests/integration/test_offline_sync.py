"""
End-to-end sync scenarios over the in-memory platform: offline edits, runs, cursors and conflicts
"""

import asyncio
from datetime import timedelta

import pytest

from storesync.core.orchestrator import RunStatus
from storesync.core.queue_processor import TenantHaltedError
from storesync.integrations.base import RetryableError, format_cursor_time

TENANT = "acme"
WOO = "woocommerce"


async def sync_product(harness, local_id='p1', stock=100):
    record = {'name': 'Enamel Mug', 'sku': 'MUG-1', 'stock_quantity': stock}
    harness.local_store.put(TENANT, 'product', local_id, record)
    await harness.processor.submit(TENANT, 'product', local_id, 'create', record)
    await harness.processor.drain(TENANT, WOO)
    return await harness.id_mapper.resolve(TENANT, 'local', 'product', local_id, WOO)


@pytest.mark.asyncio
async def test_inventory_change_made_offline_reaches_remote_after_reconnect(harness, woo, clock):
    remote_product = await sync_product(harness)
    assert woo.records[('product', remote_product)].data['stock_quantity'] == 100

    # Sale recorded at the till while the shop is offline
    woo.online = False
    clock.advance(60)
    harness.local_store.put(TENANT, 'inventory', 'p1', {'product_id': 'p1', 'quantity': 95})
    [item_id] = await harness.processor.submit(TENANT, 'inventory', 'p1', 'update',
                                               {'product_id': 'p1', 'quantity': 95})

    counters = await harness.processor.drain(TENANT, WOO)
    assert counters.failed == 1
    waiting = await harness.store.get(item_id)
    assert waiting.status.value == 'failed'
    assert waiting.retry_count == 1
    assert 'connection refused' in waiting.error_detail

    # Back online, but the retry is not due yet
    woo.online = True
    counters = await harness.processor.drain(TENANT, WOO)
    assert counters.attempted == 0

    clock.advance(5)
    counters = await harness.processor.drain(TENANT, WOO)

    assert counters.succeeded == 1
    assert (await harness.store.get(item_id)).status.value == 'completed'
    assert woo.records[('product', remote_product)].data['stock_quantity'] == 95
    assert await harness.store.pending_count(TENANT) == 0


@pytest.mark.asyncio
async def test_offline_backlog_drains_in_dependency_order(harness, woo, clock):
    woo.online = False
    harness.local_store.put(TENANT, 'order', 'o1', {'customer_id': 'c1', 'total': '12.50'})
    await harness.processor.submit(TENANT, 'order', 'o1', 'create', {'customer_id': 'c1', 'total': '12.50'})
    harness.local_store.put(TENANT, 'customer', 'c1', {'email': 'walkin@example.com'})
    await harness.processor.submit(TENANT, 'customer', 'c1', 'create', {'email': 'walkin@example.com'})

    counters = await harness.processor.drain(TENANT, WOO)
    assert counters.failed == 2
    assert counters.succeeded == 0
    assert woo.records == {}

    woo.online = True
    clock.advance(300)
    await harness.processor.drain(TENANT, WOO)

    assert [call[1] for call in woo.calls[-2:]] == ['customer', 'order']
    remote_customer = await harness.id_mapper.resolve(TENANT, 'local', 'customer', 'c1', WOO)
    remote_order = await harness.id_mapper.resolve(TENANT, 'local', 'order', 'o1', WOO)
    assert woo.records[('order', remote_order)].data['customer_id'] == remote_customer


@pytest.mark.asyncio
async def test_run_pulls_then_pushes_and_stores_cursor(harness, woo, clock):
    seeded = woo.seed('customer', {'email': 'online@example.com'}, updated_at=clock() - timedelta(hours=1))
    harness.local_store.put(TENANT, 'customer', 'c1', {'email': 'till@example.com'})
    await harness.processor.submit(TENANT, 'customer', 'c1', 'create', {'email': 'till@example.com'})

    run_id = await harness.orchestrator.start_run(TENANT, entity_types=['customer'])
    run = await harness.orchestrator.wait_for_run(run_id)

    assert run.status == RunStatus.COMPLETED
    assert run.counters.succeeded == 2
    emails = sorted(entity.data['email'] for entity in harness.local_store.all(TENANT, 'customer'))
    assert emails == ['online@example.com', 'till@example.com']
    assert await harness.sync_config.get_cursor(TENANT, WOO, 'customer') == format_cursor_time(seeded.updated_at)

    # The next run sees the record it pushed itself and skips it
    second = await harness.orchestrator.wait_for_run(
        await harness.orchestrator.start_run(TENANT, entity_types=['customer'])
    )
    assert second.status == RunStatus.COMPLETED
    assert second.counters.skipped == 1
    assert second.counters.succeeded == 0
    assert len(harness.local_store.all(TENANT, 'customer')) == 2


@pytest.mark.asyncio
async def test_one_active_run_per_tenant(harness):
    first = await harness.orchestrator.start_run(TENANT)
    second = await harness.orchestrator.start_run(TENANT)
    assert first == second

    run = await harness.orchestrator.wait_for_run(first)
    assert run.finished_at is not None
    assert harness.orchestrator.list_runs(TENANT)[0].id == first


@pytest.mark.asyncio
async def test_cancel_before_dispatch(harness, woo):
    harness.local_store.put(TENANT, 'customer', 'c1', {'email': 'a@example.com'})
    await harness.processor.submit(TENANT, 'customer', 'c1', 'create', {'email': 'a@example.com'})

    run_id = await harness.orchestrator.start_run(TENANT)
    await harness.orchestrator.cancel(run_id)
    run = await harness.orchestrator.wait_for_run(run_id)

    assert run.status == RunStatus.CANCELLED
    assert woo.calls == []
    assert await harness.store.pending_count(TENANT) == 1


@pytest.mark.asyncio
async def test_halted_platform_refuses_new_runs(harness):
    await harness.sync_config.halt_platform(TENANT, WOO, "consumer key revoked")

    with pytest.raises(TenantHaltedError):
        await harness.orchestrator.start_run(TENANT)

    assert await harness.orchestrator.resume(TENANT, WOO) is True
    run = await harness.orchestrator.wait_for_run(await harness.orchestrator.start_run(TENANT))
    assert run.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_run_with_manual_conflict_finishes_with_errors(harness, woo, clock):
    await harness.sync_config.set_conflict_strategy(TENANT, 'customer', 'manual')
    harness.local_store.put(TENANT, 'customer', 'c1', {'email': 'c1@example.com'})
    await harness.processor.submit(TENANT, 'customer', 'c1', 'create', {'email': 'c1@example.com'})
    await harness.processor.drain(TENANT, WOO)
    remote_id = await harness.id_mapper.resolve(TENANT, 'local', 'customer', 'c1', WOO)

    clock.advance(60)
    woo.edit_remote('customer', remote_id, email='shop@example.com')
    harness.local_store.put(TENANT, 'customer', 'c1', {'email': 'till@example.com'})
    await harness.processor.submit(TENANT, 'customer', 'c1', 'update', {'email': 'till@example.com'})

    run = await harness.orchestrator.wait_for_run(
        await harness.orchestrator.start_run(TENANT, entity_types=['customer'])
    )

    assert run.status == RunStatus.COMPLETED_WITH_ERRORS
    assert run.counters.conflicted == 1
    assert run.counters.held == 2
    status = await harness.orchestrator.get_status(TENANT)
    assert status['pending_conflicts'] == 1
    assert status['queue']['conflict'] == 2

    [conflict] = await harness.conflict_resolver.list_conflicts(TENANT, pending_only=True)
    await harness.orchestrator.resolve_conflict(TENANT, conflict.id, 'remote', 'ops@acme.test')

    local = await harness.local_store.get(TENANT, 'customer', 'c1')
    assert local.data['email'] == 'shop@example.com'
    assert (await harness.orchestrator.get_status(TENANT))['queue']['conflict'] == 0


@pytest.mark.asyncio
async def test_workers_drain_in_background(harness, woo):
    harness.local_store.put(TENANT, 'customer', 'c1', {'email': 'bg@example.com'})
    await harness.processor.submit(TENANT, 'customer', 'c1', 'create', {'email': 'bg@example.com'})

    await harness.orchestrator.start()
    try:
        for _ in range(100):
            if woo.calls:
                break
            await asyncio.sleep(0.01)
    finally:
        await harness.orchestrator.stop()

    assert woo.calls == [('create', 'customer', None)]
    assert not harness.orchestrator.is_running


@pytest.mark.asyncio
async def test_stop_lets_inflight_push_finish(harness, woo):
    woo.push_delay = 0.2
    for local_id in ('c1', 'c2'):
        record = {'email': f'{local_id}@example.com'}
        harness.local_store.put(TENANT, 'customer', local_id, record)
        await harness.processor.submit(TENANT, 'customer', local_id, 'create', record)

    await harness.orchestrator.start()
    for _ in range(100):
        if woo.calls:
            break
        await asyncio.sleep(0.01)
    await harness.orchestrator.stop()

    assert len(woo.calls) == 1
    assert len(woo.records) == 1
    assert await harness.items(['in_flight']) == []
    assert len(await harness.items(['completed'])) == 1
    assert len(await harness.items(['pending'])) == 1


async def diverge_under_manual(harness, woo, clock):
    await harness.sync_config.set_conflict_strategy(TENANT, 'customer', 'manual')
    harness.local_store.put(TENANT, 'customer', 'c1', {'email': 'c1@example.com'})
    await harness.processor.submit(TENANT, 'customer', 'c1', 'create', {'email': 'c1@example.com'})
    await harness.processor.drain(TENANT, WOO)
    remote_id = await harness.id_mapper.resolve(TENANT, 'local', 'customer', 'c1', WOO)

    clock.advance(60)
    woo.edit_remote('customer', remote_id, email='shop@example.com')
    harness.local_store.put(TENANT, 'customer', 'c1', {'email': 'till@example.com'})
    await harness.processor.submit(TENANT, 'customer', 'c1', 'update', {'email': 'till@example.com'})
    await harness.processor.drain(TENANT, WOO)
    [conflict] = await harness.conflict_resolver.list_conflicts(TENANT, pending_only=True)
    return conflict, remote_id


@pytest.mark.asyncio
async def test_resolution_failing_offline_can_be_resubmitted(harness, woo, clock):
    conflict, remote_id = await diverge_under_manual(harness, woo, clock)

    woo.online = False
    with pytest.raises(RetryableError):
        await harness.orchestrator.resolve_conflict(TENANT, conflict.id, 'local', 'ops@acme.test')

    assert (await harness.conflict_resolver.get(conflict.id)).resolution == 'pending-manual'
    assert len(await harness.items(['conflict'])) == 1

    woo.online = True
    record = await harness.orchestrator.resolve_conflict(TENANT, conflict.id, 'local', 'ops@acme.test')

    assert record.resolution == 'local'
    assert woo.records[('customer', remote_id)].data['email'] == 'till@example.com'
    assert await harness.items(['conflict']) == []
