"""
Spot Registry - Existence and availability of parking spots

Low-level primitives only; they never commit. Claiming is a compare-and-swap
on ``available`` so at most one caller wins a given spot.
"""
from datetime import datetime
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete

from app.core.exceptions import SpotNotFoundError, SpotAlreadyClaimedError
from app.core.logging import get_logger
from app.core.timeutils import utcnow
from app.db.models.outbox_event import ChangeOperation
from app.db.models.parking_spot import ParkingSpot
from app.domain.services.outbox_service import OutboxService

logger = get_logger(__name__)


class SpotRegistry:
    """Spot table primitives shared by the parking, handshake and sweeper services"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.outbox_service = OutboxService(db)

    async def get_spot(self, spot_id: int) -> Optional[ParkingSpot]:
        result = await self.db.execute(
            select(ParkingSpot).where(ParkingSpot.id == spot_id)
        )
        return result.scalar_one_or_none()

    async def require_spot(self, spot_id: int) -> ParkingSpot:
        spot = await self.get_spot(spot_id)
        if spot is None:
            raise SpotNotFoundError(spot_id)
        return spot

    async def lock_spot(self, spot_id: int) -> ParkingSpot:
        """
        Load the spot with a row lock held until the transaction ends.

        Release, offer and hand-over take this lock first, so their checks on
        sessions and deals see each other's committed writes.
        """
        result = await self.db.execute(
            select(ParkingSpot)
            .where(ParkingSpot.id == spot_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        spot = result.scalar_one_or_none()
        if spot is None:
            raise SpotNotFoundError(spot_id)
        return spot

    async def create_spot(self, latitude: float, longitude: float, reported_by: str) -> ParkingSpot:
        """New spot, occupied by its reporter"""
        now = utcnow()
        spot = ParkingSpot(
            latitude=latitude,
            longitude=longitude,
            available=False,
            available_since=None,
            reported_by=reported_by,
            created_at=now,
            updated_at=now,
        )
        self.db.add(spot)
        await self.db.flush()
        await self.outbox_service.record_spot_change(spot, ChangeOperation.INSERT)
        return spot

    async def claim(self, spot_id: int) -> ParkingSpot:
        """
        Flip ``available`` from true to false.

        Raises SpotAlreadyClaimedError when another caller got there first and
        SpotNotFoundError when the spot does not exist.
        """
        result = await self.db.execute(
            update(ParkingSpot)
            .where(ParkingSpot.id == spot_id, ParkingSpot.available.is_(True))
            .values(available=False, available_since=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.require_spot(spot_id)
            raise SpotAlreadyClaimedError(spot_id)

        spot = await self._reload(spot_id)
        await self.outbox_service.record_spot_change(spot, ChangeOperation.UPDATE)
        return spot

    async def release(self, spot_id: int, now: datetime | None = None) -> ParkingSpot:
        """Make the spot available again, stamped with ``now``"""
        now = now or utcnow()
        result = await self.db.execute(
            update(ParkingSpot)
            .where(ParkingSpot.id == spot_id)
            .values(available=True, available_since=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise SpotNotFoundError(spot_id)

        spot = await self._reload(spot_id)
        await self.outbox_service.record_spot_change(spot, ChangeOperation.UPDATE)
        return spot

    async def transfer_via_handshake(self, spot_id: int) -> bool:
        """
        Remove the spot record once it has been handed over.

        Only an occupied spot is removed; False when it was released or is gone.
        """
        result = await self.db.execute(
            delete(ParkingSpot)
            .where(ParkingSpot.id == spot_id, ParkingSpot.available.is_(False))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False
        await self.outbox_service.record_spot_deleted(spot_id)
        return True

    async def delete(self, spot_id: int) -> bool:
        """Delete the spot; False when it was already gone"""
        result = await self.db.execute(
            delete(ParkingSpot)
            .where(ParkingSpot.id == spot_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False
        await self.outbox_service.record_spot_deleted(spot_id)
        return True

    async def delete_if_stale(self, spot_id: int, cutoff: datetime) -> bool:
        """Delete only while the spot is still available since before ``cutoff``"""
        result = await self.db.execute(
            delete(ParkingSpot)
            .where(
                ParkingSpot.id == spot_id,
                ParkingSpot.available.is_(True),
                ParkingSpot.available_since < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False
        await self.outbox_service.record_spot_deleted(spot_id)
        return True

    async def find_stale_spot_ids(self, cutoff: datetime) -> list[int]:
        result = await self.db.execute(
            select(ParkingSpot.id).where(
                ParkingSpot.available.is_(True),
                ParkingSpot.available_since < cutoff,
            )
        )
        return list(result.scalars().all())

    async def list_available(self, limit: int = 500) -> list[ParkingSpot]:
        result = await self.db.execute(
            select(ParkingSpot)
            .where(ParkingSpot.available.is_(True))
            .order_by(ParkingSpot.available_since.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _reload(self, spot_id: int) -> ParkingSpot:
        result = await self.db.execute(
            select(ParkingSpot)
            .where(ParkingSpot.id == spot_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
