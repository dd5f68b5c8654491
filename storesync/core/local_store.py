"""
Local store interface
The engine reads and writes local business records only through this seam
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Any, List, Optional, Tuple, Callable

from storesync.core.models import utc_now
from storesync.integrations.base import LocalEntity


class LocalStore(ABC):
    """
    Access to the local transactional store

    Implemented by the host application; the engine never persists business
    entities itself.
    """

    @abstractmethod
    async def get(self, tenant: str, entity_type: str, entity_id: str) -> Optional[LocalEntity]:
        """Current local version, or None when the record does not exist"""
        pass

    @abstractmethod
    async def apply_remote(self, tenant: str, entity_type: str, entity_id: Optional[str],
                           data: Dict[str, Any], updated_at: Optional[datetime] = None) -> str:
        """
        Write a remote snapshot locally

        Args:
            entity_id: local id, or None to create a new local record

        Returns:
            Local id of the written record
        """
        pass

    @abstractmethod
    async def delete(self, tenant: str, entity_type: str, entity_id: str) -> None:
        """Remove (or deactivate) a local record deleted remotely"""
        pass


class InMemoryLocalStore(LocalStore):
    """
    Process-local LocalStore

    Used when the engine runs standalone and by the test suite; a host
    application plugs in its own store instead.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._records: Dict[Tuple[str, str, str], LocalEntity] = {}
        self._clock = clock

    def put(self, tenant: str, entity_type: str, entity_id: str, data: Dict[str, Any],
            updated_at: Optional[datetime] = None) -> LocalEntity:
        """Record a local edit (what the host application does on mutation)"""
        entity = LocalEntity(entity_type, str(entity_id), dict(data), updated_at or self._clock())
        self._records[(tenant, entity_type, str(entity_id))] = entity
        return entity

    async def get(self, tenant: str, entity_type: str, entity_id: str) -> Optional[LocalEntity]:
        return self._records.get((tenant, entity_type, str(entity_id)))

    async def apply_remote(self, tenant: str, entity_type: str, entity_id: Optional[str],
                           data: Dict[str, Any], updated_at: Optional[datetime] = None) -> str:
        entity_id = str(entity_id) if entity_id else str(uuid.uuid4())
        current = self._records.get((tenant, entity_type, entity_id))
        merged = {**(current.data if current else {}), **data}
        self.put(tenant, entity_type, entity_id, merged, updated_at or self._clock())
        return entity_id

    async def delete(self, tenant: str, entity_type: str, entity_id: str) -> None:
        self._records.pop((tenant, entity_type, str(entity_id)), None)

    def all(self, tenant: str, entity_type: str) -> List[LocalEntity]:
        return [entity for (t, e, _), entity in self._records.items() if t == tenant and e == entity_type]
