"""
Per-tenant sync settings
Direction, delete policy, conflict strategy overrides, pull cursors and halts
"""

import logging
from datetime import datetime
from typing import Dict, Any, Optional, Callable

from sqlalchemy import select

from storesync.core.models import (
    SyncSettingDB, SyncDirection, DeletePolicy, ConflictStrategy, parse_enum, utc_now
)

DIRECTION_KEY = "sync_direction"
DELETE_POLICY_KEY = "delete_policy"
CONFLICT_STRATEGY_KEY = "conflict_strategy"
CURSOR_PREFIX = "cursor:"
HALT_PREFIX = "halt:"


class SyncConfigService:
    """Long-lived configuration stored in the sync_settings table"""

    def __init__(self, db_session_factory, defaults: Optional[Dict[str, Any]] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.db_session_factory = db_session_factory
        defaults = defaults or {}
        self.default_direction = parse_enum(SyncDirection, defaults.get('direction', 'bidirectional'))
        self.default_delete_policy = parse_enum(DeletePolicy, defaults.get('delete_policy', 'local_only'))
        self._clock = clock
        self.logger = logging.getLogger(__name__)

    async def _get(self, tenant: str, key: str) -> Any:
        async with self.db_session_factory() as session:
            row = await session.get(SyncSettingDB, (tenant, key))
            return row.value if row else None

    async def _set(self, tenant: str, key: str, value: Any):
        async with self.db_session_factory() as session:
            row = await session.get(SyncSettingDB, (tenant, key))
            if row is None:
                session.add(SyncSettingDB(tenant=tenant, key=key, value=value, updated_at=self._clock()))
            else:
                row.value = value
                row.updated_at = self._clock()

    async def _delete(self, tenant: str, key: str) -> bool:
        async with self.db_session_factory() as session:
            row = await session.get(SyncSettingDB, (tenant, key))
            if row is None:
                return False
            await session.delete(row)
            return True

    async def _keys_with_prefix(self, tenant: str, prefix: str) -> Dict[str, Any]:
        async with self.db_session_factory() as session:
            result = await session.execute(
                select(SyncSettingDB).where(
                    SyncSettingDB.tenant == tenant,
                    SyncSettingDB.key.startswith(prefix)
                )
            )
            return {row.key[len(prefix):]: row.value for row in result.scalars().all()}

    # Direction

    async def get_direction_config(self, tenant: str) -> Dict[str, Any]:
        stored = await self._get(tenant, DIRECTION_KEY) or {}
        return {
            'global_direction': stored.get('global_direction', self.default_direction.value),
            'entity_overrides': dict(stored.get('entity_overrides') or {})
        }

    async def set_direction_config(self, tenant: str, global_direction: Any,
                                   entity_overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        value = {
            'global_direction': parse_enum(SyncDirection, global_direction).value,
            'entity_overrides': {
                entity_type: parse_enum(SyncDirection, direction).value
                for entity_type, direction in (entity_overrides or {}).items()
            }
        }
        await self._set(tenant, DIRECTION_KEY, value)
        self.logger.info(f"Sync direction for {tenant} set to {value}")
        return value

    async def direction_for(self, tenant: str, entity_type: str) -> SyncDirection:
        config = await self.get_direction_config(tenant)
        return parse_enum(SyncDirection,
                          config['entity_overrides'].get(entity_type, config['global_direction']))

    # Delete policy

    async def get_delete_policy_config(self, tenant: str) -> Dict[str, Any]:
        stored = await self._get(tenant, DELETE_POLICY_KEY) or {}
        return {
            'policy': stored.get('policy', self.default_delete_policy.value),
            'entity_overrides': dict(stored.get('entity_overrides') or {})
        }

    async def set_delete_policy_config(self, tenant: str, policy: Any,
                                       entity_overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        value = {
            'policy': parse_enum(DeletePolicy, policy).value,
            'entity_overrides': {
                entity_type: parse_enum(DeletePolicy, override).value
                for entity_type, override in (entity_overrides or {}).items()
            }
        }
        await self._set(tenant, DELETE_POLICY_KEY, value)
        self.logger.info(f"Delete policy for {tenant} set to {value}")
        return value

    async def delete_policy_for(self, tenant: str, entity_type: str) -> DeletePolicy:
        config = await self.get_delete_policy_config(tenant)
        return parse_enum(DeletePolicy, config['entity_overrides'].get(entity_type, config['policy']))

    # Conflict strategies

    async def get_conflict_strategies(self, tenant: str) -> Dict[str, str]:
        return dict(await self._get(tenant, CONFLICT_STRATEGY_KEY) or {})

    async def set_conflict_strategy(self, tenant: str, entity_type: str, strategy: Any) -> Dict[str, str]:
        strategies = await self.get_conflict_strategies(tenant)
        strategies[entity_type] = parse_enum(ConflictStrategy, strategy).value
        await self._set(tenant, CONFLICT_STRATEGY_KEY, strategies)
        return strategies

    # Pull cursors

    async def get_cursor(self, tenant: str, platform: str, entity_type: str) -> Optional[str]:
        return await self._get(tenant, f"{CURSOR_PREFIX}{platform}:{entity_type}")

    async def set_cursor(self, tenant: str, platform: str, entity_type: str, cursor: str):
        await self._set(tenant, f"{CURSOR_PREFIX}{platform}:{entity_type}", cursor)

    # Halted platforms (fatal errors)

    async def halt_platform(self, tenant: str, platform: str, reason: str):
        await self._set(tenant, f"{HALT_PREFIX}{platform}",
                        {'reason': reason, 'halted_at': self._clock().isoformat()})
        self.logger.error(f"Sync halted for {tenant}/{platform}: {reason}")

    async def clear_halt(self, tenant: str, platform: str) -> bool:
        cleared = await self._delete(tenant, f"{HALT_PREFIX}{platform}")
        if cleared:
            self.logger.info(f"Sync resumed for {tenant}/{platform}")
        return cleared

    async def get_halt(self, tenant: str, platform: str) -> Optional[Dict[str, Any]]:
        return await self._get(tenant, f"{HALT_PREFIX}{platform}")

    async def list_halts(self, tenant: str) -> Dict[str, Dict[str, Any]]:
        return await self._keys_with_prefix(tenant, HALT_PREFIX)

    async def list_cursors(self, tenant: str) -> Dict[str, Any]:
        return await self._keys_with_prefix(tenant, CURSOR_PREFIX)
