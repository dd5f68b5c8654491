"""
Cross-system identity table
Correlates local entity ids with their counterparts on each remote platform
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Any, Callable

from sqlalchemy import select

from storesync.core.models import IdMappingDB, utc_now


@dataclass
class IdMapping:
    tenant: str
    source_system: str
    source_entity_type: str
    source_id: str
    target_system: str
    target_id: str
    last_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_db(cls, row: IdMappingDB) -> 'IdMapping':
        return cls(
            tenant=row.tenant,
            source_system=row.source_system,
            source_entity_type=row.source_entity_type,
            source_id=row.source_id,
            target_system=row.target_system,
            target_id=row.target_id,
            last_synced_at=row.last_synced_at,
            created_at=row.created_at,
            updated_at=row.updated_at
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tenant': self.tenant,
            'source_system': self.source_system,
            'source_entity_type': self.source_entity_type,
            'source_id': self.source_id,
            'target_system': self.target_system,
            'target_id': self.target_id,
            'last_synced_at': self.last_synced_at.isoformat() if self.last_synced_at else None
        }


class IdMapper:
    """Durable local <-> remote id correlation; mappings are never deleted"""

    def __init__(self, db_session_factory, clock: Callable[[], datetime] = utc_now):
        self.db_session_factory = db_session_factory
        self._clock = clock
        self.logger = logging.getLogger(__name__)

    async def _get_row(self, session, tenant: str, source_system: str, source_entity_type: str,
                       source_id: str, target_system: str) -> Optional[IdMappingDB]:
        result = await session.execute(
            select(IdMappingDB).where(
                IdMappingDB.tenant == tenant,
                IdMappingDB.source_system == source_system,
                IdMappingDB.source_entity_type == source_entity_type,
                IdMappingDB.source_id == str(source_id),
                IdMappingDB.target_system == target_system
            )
        )
        return result.scalar_one_or_none()

    async def resolve(self, tenant: str, source_system: str, source_entity_type: str,
                      source_id: str, target_system: str) -> Optional[str]:
        """Target id for a source entity, or None when never synced"""
        mapping = await self.get_mapping(tenant, source_system, source_entity_type, source_id, target_system)
        return mapping.target_id if mapping else None

    async def get_mapping(self, tenant: str, source_system: str, source_entity_type: str,
                          source_id: str, target_system: str) -> Optional[IdMapping]:
        async with self.db_session_factory() as session:
            row = await self._get_row(session, tenant, source_system, source_entity_type,
                                      source_id, target_system)
            return IdMapping.from_db(row) if row else None

    async def reverse_resolve(self, tenant: str, target_system: str, target_id: str,
                              source_system: str, source_entity_type: str) -> Optional[str]:
        """Source id for a known target id (inbound direction)"""
        mapping = await self.get_reverse_mapping(tenant, target_system, target_id,
                                                 source_system, source_entity_type)
        return mapping.source_id if mapping else None

    async def get_reverse_mapping(self, tenant: str, target_system: str, target_id: str,
                                  source_system: str, source_entity_type: str) -> Optional[IdMapping]:
        async with self.db_session_factory() as session:
            result = await session.execute(
                select(IdMappingDB).where(
                    IdMappingDB.tenant == tenant,
                    IdMappingDB.target_system == target_system,
                    IdMappingDB.target_id == str(target_id),
                    IdMappingDB.source_system == source_system,
                    IdMappingDB.source_entity_type == source_entity_type
                ).order_by(IdMappingDB.updated_at.desc())
            )
            row = result.scalars().first()
            return IdMapping.from_db(row) if row else None

    async def record(self, tenant: str, source_system: str, source_entity_type: str,
                     source_id: str, target_system: str, target_id: str,
                     synced_at: Optional[datetime] = None) -> IdMapping:
        """Create or update a mapping and refresh its sync watermark"""
        now = self._clock()
        synced_at = synced_at or now
        async with self.db_session_factory() as session:
            row = await self._get_row(session, tenant, source_system, source_entity_type,
                                      source_id, target_system)
            if row is None:
                row = IdMappingDB(
                    tenant=tenant,
                    source_system=source_system,
                    source_entity_type=source_entity_type,
                    source_id=str(source_id),
                    target_system=target_system,
                    target_id=str(target_id),
                    last_synced_at=synced_at,
                    created_at=now,
                    updated_at=now
                )
                session.add(row)
                self.logger.debug(f"New mapping {source_system}:{source_entity_type}:{source_id} "
                                  f"-> {target_system}:{target_id}")
            else:
                if row.target_id != str(target_id):
                    self.logger.info(f"Remote id changed for {source_entity_type}/{source_id} on "
                                     f"{target_system}: {row.target_id} -> {target_id}")
                    row.target_id = str(target_id)
                row.last_synced_at = synced_at
                row.updated_at = now
            await session.flush()
            return IdMapping.from_db(row)

    async def list_mappings(self, tenant: str, target_system: Optional[str] = None,
                            source_entity_type: Optional[str] = None,
                            limit: int = 500) -> List[IdMapping]:
        async with self.db_session_factory() as session:
            query = select(IdMappingDB).where(IdMappingDB.tenant == tenant)
            if target_system:
                query = query.where(IdMappingDB.target_system == target_system)
            if source_entity_type:
                query = query.where(IdMappingDB.source_entity_type == source_entity_type)
            result = await session.execute(query.order_by(IdMappingDB.created_at).limit(limit))
            return [IdMapping.from_db(row) for row in result.scalars().all()]
