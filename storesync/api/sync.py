"""
Sync API Router
Per-tenant configuration, run control, failures, conflicts and schedules
"""

import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, Query, status

from storesync.api.dependencies import verify_api_key, get_engine, get_tenant
from storesync.api.exceptions import handle_api_errors, NotFoundError, ValidationError
from storesync.api.schemas import (
    SyncDirectionConfig, DeletePolicyConfig, SyncTriggerRequest, SyncTriggerResponse, SyncRunResponse,
    SyncStatusResponse, FailuresResponse, QueueItemResponse, RetryRequest, RetryResponse,
    ConflictResponse, ConflictListResponse, ResolveConflictRequest, ResumeResponse, ScheduleResponse
)
from storesync.core.engine import SyncEngine
from storesync.core.models import EntityType

router = APIRouter(dependencies=[Depends(verify_api_key)])
logger = logging.getLogger(__name__)

ALL_ENTITIES = "all"


# Sync direction / delete policy

@router.get("/{tenant}/sync-direction", response_model=SyncDirectionConfig)
@handle_api_errors
async def get_sync_direction(tenant: str = Depends(get_tenant), engine: SyncEngine = Depends(get_engine)):
    """Global direction plus per-entity overrides"""
    return await engine.sync_config.get_direction_config(tenant)


@router.put("/{tenant}/sync-direction", response_model=SyncDirectionConfig)
@handle_api_errors
async def set_sync_direction(
    config: SyncDirectionConfig,
    tenant: str = Depends(get_tenant),
    engine: SyncEngine = Depends(get_engine)
):
    return await engine.sync_config.set_direction_config(
        tenant,
        config.global_direction.value,
        {entity_type: direction.value for entity_type, direction in config.entity_overrides.items()}
    )


@router.get("/{tenant}/delete-policy", response_model=DeletePolicyConfig)
@handle_api_errors
async def get_delete_policy(tenant: str = Depends(get_tenant), engine: SyncEngine = Depends(get_engine)):
    return await engine.sync_config.get_delete_policy_config(tenant)


@router.put("/{tenant}/delete-policy", response_model=DeletePolicyConfig)
@handle_api_errors
async def set_delete_policy(
    config: DeletePolicyConfig,
    tenant: str = Depends(get_tenant),
    engine: SyncEngine = Depends(get_engine)
):
    return await engine.sync_config.set_delete_policy_config(
        tenant,
        config.policy.value,
        {entity_type: policy.value for entity_type, policy in config.entity_overrides.items()}
    )


# Status and failures (declared before the /sync/{...} catch-alls)

@router.get("/{tenant}/sync/status", response_model=SyncStatusResponse)
@handle_api_errors
async def get_sync_status(tenant: str = Depends(get_tenant), engine: SyncEngine = Depends(get_engine)):
    """Queue depth per status, breakers, halts, pending conflicts and recent runs"""
    return await engine.orchestrator.get_status(tenant)


@router.get("/{tenant}/sync/failures", response_model=FailuresResponse)
@handle_api_errors
async def get_sync_failures(
    tenant: str = Depends(get_tenant),
    limit: int = Query(100, ge=1, le=1000),
    include_retrying: bool = Query(True),
    engine: SyncEngine = Depends(get_engine)
):
    items = await engine.store.list_failures(tenant, limit=limit, include_retrying=include_retrying)
    return FailuresResponse(
        tenant=tenant,
        items=[QueueItemResponse(**item.to_dict()) for item in items],
        total=len(items)
    )


@router.post("/{tenant}/sync/retry", response_model=RetryResponse)
@handle_api_errors
async def retry_failures(
    request: Optional[RetryRequest] = None,
    tenant: str = Depends(get_tenant),
    engine: SyncEngine = Depends(get_engine)
):
    """Move dead items back to pending with a fresh retry budget"""
    item_ids = request.item_ids if request else None
    retried = await engine.orchestrator.retry_failures(tenant, item_ids)
    logger.info(f"Retry requested for {tenant}: {len(retried)} items re-enqueued")
    return RetryResponse(retried=retried, count=len(retried))


# Runs

@router.post("/{tenant}/sync/{entity_type}", response_model=SyncTriggerResponse,
             status_code=status.HTTP_202_ACCEPTED)
@handle_api_errors
async def trigger_sync(
    entity_type: str,
    request: Optional[SyncTriggerRequest] = None,
    tenant: str = Depends(get_tenant),
    engine: SyncEngine = Depends(get_engine)
):
    """Start a run for one entity type (or 'all'); returns immediately"""
    if entity_type == ALL_ENTITIES:
        entity_types: Optional[List[str]] = None
    elif entity_type in {e.value for e in EntityType}:
        entity_types = [entity_type]
    else:
        raise ValidationError(f"Unknown entity type '{entity_type}'", field="entity_type")

    platforms = request.platforms if request else None
    run_id = await engine.orchestrator.start_run(tenant, entity_types=entity_types,
                                                 platforms=platforms, trigger="api")
    return SyncTriggerResponse(run_id=run_id)


@router.get("/{tenant}/sync/{run_id}", response_model=SyncRunResponse)
@handle_api_errors
async def get_sync_run(run_id: str, tenant: str = Depends(get_tenant), engine: SyncEngine = Depends(get_engine)):
    run = engine.orchestrator.get_run(run_id)
    if run.tenant != tenant:
        raise NotFoundError("Sync run", run_id)
    return run.to_dict()


@router.post("/{tenant}/sync/{run_id}/cancel", response_model=SyncRunResponse)
@handle_api_errors
async def cancel_sync_run(run_id: str, tenant: str = Depends(get_tenant),
                          engine: SyncEngine = Depends(get_engine)):
    """Cooperative cancel: the in-flight dispatch finishes, nothing new starts"""
    run = engine.orchestrator.get_run(run_id)
    if run.tenant != tenant:
        raise NotFoundError("Sync run", run_id)
    return (await engine.orchestrator.cancel(run_id)).to_dict()


# Conflicts

@router.get("/{tenant}/conflicts", response_model=ConflictListResponse)
@handle_api_errors
async def list_conflicts(
    tenant: str = Depends(get_tenant),
    pending_only: bool = Query(True),
    limit: int = Query(100, ge=1, le=1000),
    engine: SyncEngine = Depends(get_engine)
):
    records = await engine.conflict_resolver.list_conflicts(tenant, pending_only=pending_only, limit=limit)
    return ConflictListResponse(
        tenant=tenant,
        conflicts=[ConflictResponse(**record.to_dict()) for record in records],
        total=len(records)
    )


@router.post("/{tenant}/conflicts/{conflict_id}/resolve", response_model=ConflictResponse)
@handle_api_errors
async def resolve_conflict(
    conflict_id: str,
    request: ResolveConflictRequest,
    tenant: str = Depends(get_tenant),
    engine: SyncEngine = Depends(get_engine)
):
    record = await engine.orchestrator.resolve_conflict(
        tenant, conflict_id, request.choice.value, request.resolved_by, request.merged_version
    )
    return ConflictResponse(**record.to_dict())


# Platforms and schedules

@router.post("/{tenant}/platforms/{platform}/resume", response_model=ResumeResponse)
@handle_api_errors
async def resume_platform(platform: str, tenant: str = Depends(get_tenant),
                          engine: SyncEngine = Depends(get_engine)):
    """Lift a fatal halt after the credentials or configuration were fixed"""
    resumed = await engine.orchestrator.resume(tenant, platform)
    return ResumeResponse(tenant=tenant, platform=platform, resumed=resumed)


@router.get("/{tenant}/schedules", response_model=List[ScheduleResponse])
@handle_api_errors
async def list_schedules(tenant: str = Depends(get_tenant), engine: SyncEngine = Depends(get_engine)):
    return engine.scheduler.list_schedules(tenant)
