"""
Pydantic schemas for API request/response models
"""

from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum

from storesync.core.models import utc_now


class SyncDirectionEnum(str, Enum):
    PULL = "pull"
    PUSH = "push"
    BIDIRECTIONAL = "bidirectional"
    DISABLED = "disabled"


class DeletePolicyEnum(str, Enum):
    LOCAL_ONLY = "local_only"
    ARCHIVE_REMOTE = "archive_remote"
    DELETE_REMOTE = "delete_remote"


class ResolutionChoiceEnum(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    MERGED = "merged"


# Errors

class APIErrorDetail(BaseModel):
    field: Optional[str] = Field(None, description="Field that caused the error")
    message: str = Field(..., description="Human-readable error message")
    code: Optional[str] = Field(None, description="Machine-readable error code")


class APIErrorResponse(BaseModel):
    success: bool = Field(False, description="Always false for error responses")
    error: str = Field(..., description="Main error message")
    error_code: str = Field(..., description="Standardized error code")
    details: List[APIErrorDetail] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)
    request_id: Optional[str] = None


# Configuration

class SyncDirectionConfig(BaseModel):
    global_direction: SyncDirectionEnum = SyncDirectionEnum.BIDIRECTIONAL
    entity_overrides: Dict[str, SyncDirectionEnum] = Field(default_factory=dict)


class DeletePolicyConfig(BaseModel):
    policy: DeletePolicyEnum = DeletePolicyEnum.LOCAL_ONLY
    entity_overrides: Dict[str, DeletePolicyEnum] = Field(default_factory=dict)


# Sync runs

class SyncTriggerRequest(BaseModel):
    platforms: Optional[List[str]] = Field(None, description="Limit the run to these platforms")


class SyncTriggerResponse(BaseModel):
    run_id: str
    status: str = "running"


class RunCountersSchema(BaseModel):
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    dead: int = 0
    conflicted: int = 0
    skipped: int = 0
    held: int = 0


class SyncRunResponse(BaseModel):
    run_id: str
    tenant: str
    entity_types: Optional[List[str]] = None
    platforms: Optional[List[str]] = None
    trigger: str
    status: str
    counters: RunCountersSchema
    errors: List[str] = Field(default_factory=list)
    started_at: datetime
    finished_at: Optional[datetime] = None


class SyncStatusResponse(BaseModel):
    tenant: str
    queue: Dict[str, int]
    pending: int
    breakers: List[Dict[str, Any]]
    pending_conflicts: int
    halted_platforms: Dict[str, Dict[str, Any]]
    cursors: Dict[str, Any]
    active_run: Optional[str] = None
    recent_runs: List[SyncRunResponse] = Field(default_factory=list)
    alerts: List[Dict[str, Any]] = Field(default_factory=list)


# Failures

class QueueItemResponse(BaseModel):
    id: str
    platform: str
    entity_type: str
    entity_id: str
    operation: str
    status: str
    retry_count: int
    error_detail: Optional[str] = None
    error_class: Optional[str] = None
    next_eligible_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class FailuresResponse(BaseModel):
    tenant: str
    items: List[QueueItemResponse]
    total: int


class RetryRequest(BaseModel):
    item_ids: Optional[List[str]] = Field(None, description="Dead items to retry; all when omitted")


class RetryResponse(BaseModel):
    retried: List[str]
    count: int


# Conflicts

class ConflictResponse(BaseModel):
    id: str
    platform: str
    entity_type: str
    entity_id: str
    remote_id: Optional[str] = None
    local_version: Dict[str, Any]
    local_updated_at: Optional[datetime] = None
    remote_version: Dict[str, Any]
    remote_updated_at: Optional[datetime] = None
    strategy_applied: str
    resolution: str
    resolved_version: Optional[Dict[str, Any]] = None
    resolved_by: Optional[str] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class ConflictListResponse(BaseModel):
    tenant: str
    conflicts: List[ConflictResponse]
    total: int


class ResolveConflictRequest(BaseModel):
    choice: ResolutionChoiceEnum
    resolved_by: str = Field(..., min_length=1, max_length=100)
    merged_version: Optional[Dict[str, Any]] = None

    @field_validator('merged_version')
    @classmethod
    def merged_version_not_empty(cls, value):
        if value is not None and not value:
            raise ValueError("merged_version must not be empty")
        return value


# Platforms, schedules, webhooks

class ResumeResponse(BaseModel):
    tenant: str
    platform: str
    resumed: bool


class ScheduleResponse(BaseModel):
    id: str
    tenant: str
    entity_types: Optional[List[str]] = None
    platforms: Optional[List[str]] = None
    cron: Optional[str] = None
    interval_minutes: Optional[float] = None
    enabled: bool
    next_run_time: Optional[datetime] = None


class WebhookAckResponse(BaseModel):
    status: str
    item_ids: List[str] = Field(default_factory=list)
