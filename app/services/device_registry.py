from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from typing import Iterable, List, Optional
import logging

from app.core.exceptions import StorageUnavailable
from app.models.device import Device

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """Read-only lookup over the device registry"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def exists(self, device_id: str) -> bool:
        stmt = select(Device.id).where(Device.device_id == device_id).limit(1)
        result = await self._execute(stmt)
        return result.first() is not None

    async def find_many(self, device_ids: Iterable[str]) -> List[Device]:
        """Devices for the given ids; unknown ids are simply absent"""
        ids = list(set(device_ids))
        if not ids:
            return []
        stmt = select(Device).where(Device.device_id.in_(ids))
        result = await self._execute(stmt)
        return list(result.scalars().all())

    async def find_by_type_or_room(
        self,
        device_type: Optional[str] = None,
        room: Optional[str] = None,
    ) -> List[Device]:
        """Devices matching every given filter.

        Type matches exactly; room matches exactly but case-insensitively.
        """
        stmt = select(Device)
        if device_type:
            stmt = stmt.where(Device.type == device_type)
        if room:
            stmt = stmt.where(func.lower(Device.room) == room.lower())
        result = await self._execute(stmt)
        return list(result.scalars().all())

    async def _execute(self, stmt):
        try:
            return await self.db.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"Device registry lookup failed: {e}")
            raise StorageUnavailable() from e
