"""
Parking Session Service - Who currently occupies which spot

A session is opened when a user reports, claims or receives a spot and is
moved into ``parking_history`` when it ends. Nothing here commits.
"""
from datetime import datetime
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete

from app.core.exceptions import AlreadyParkedError
from app.core.logging import get_logger
from app.core.timeutils import utcnow, minutes_between
from app.db.models.parking_session import ParkingSession, SessionSource
from app.db.models.parking_history import ParkingHistory, SessionEndReason

logger = get_logger(__name__)


class ParkingSessionService:
    """Open, look up and end parking sessions"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def open_session(
        self,
        user_id: str,
        spot_id: int | None,
        latitude: float,
        longitude: float,
        source: SessionSource,
        expires_at: datetime | None = None,
        now: datetime | None = None,
    ) -> ParkingSession:
        """
        Start a session for ``user_id``.

        Raises AlreadyParkedError when the user already occupies a spot; the
        unique index on ``user_id`` backs this check against concurrent callers.
        """
        current = await self.get_user_session(user_id)
        if current is not None:
            logger.warning(
                "User already has an active parking session",
                extra_data={
                    "user_id": user_id,
                    "session_id": current.id,
                    "spot_id": current.spot_id,
                    "requested_spot_id": spot_id,
                },
            )
            raise AlreadyParkedError(user_id, current.id, current.spot_id)

        session = ParkingSession(
            user_id=user_id,
            spot_id=spot_id,
            latitude=latitude,
            longitude=longitude,
            source=source,
            started_at=now or utcnow(),
            expires_at=expires_at,
        )
        self.db.add(session)
        await self.db.flush()
        return session

    async def get_user_session(self, user_id: str) -> Optional[ParkingSession]:
        result = await self.db.execute(
            select(ParkingSession).where(ParkingSession.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_session_for_spot(self, spot_id: int) -> Optional[ParkingSession]:
        result = await self.db.execute(
            select(ParkingSession).where(ParkingSession.spot_id == spot_id)
        )
        return result.scalar_one_or_none()

    async def get_user_session_for_spot(self, user_id: str, spot_id: int) -> Optional[ParkingSession]:
        result = await self.db.execute(
            select(ParkingSession).where(
                ParkingSession.spot_id == spot_id,
                ParkingSession.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_user_sessions(self, user_id: str) -> list[ParkingSession]:
        result = await self.db.execute(
            select(ParkingSession)
            .where(ParkingSession.user_id == user_id)
            .order_by(ParkingSession.started_at.desc(), ParkingSession.id.desc())
        )
        return list(result.scalars().all())

    async def end_session(
        self,
        session: ParkingSession,
        reason: SessionEndReason,
        now: datetime | None = None,
    ) -> Optional[ParkingHistory]:
        """
        Move the session into history.

        Returns None when a concurrent caller already ended it.
        """
        now = now or utcnow()
        result = await self.db.execute(
            delete(ParkingSession)
            .where(ParkingSession.id == session.id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None

        entry = ParkingHistory(
            user_id=session.user_id,
            spot_id=session.spot_id,
            latitude=session.latitude,
            longitude=session.longitude,
            started_at=session.started_at,
            ended_at=now,
            duration_minutes=minutes_between(session.started_at, now),
            end_reason=reason,
        )
        self.db.add(entry)

        logger.info(
            "Parking session ended",
            extra_data={
                "user_id": session.user_id,
                "spot_id": session.spot_id,
                "reason": reason.value,
                "duration_minutes": entry.duration_minutes,
            },
        )
        self.db.expunge(session)
        return entry

    async def find_expired_handshake_sessions(self, now: datetime) -> list[ParkingSession]:
        result = await self.db.execute(
            select(ParkingSession).where(
                ParkingSession.source == SessionSource.HANDSHAKE,
                ParkingSession.expires_at.is_not(None),
                ParkingSession.expires_at < now,
            )
        )
        return list(result.scalars().all())

    async def get_history(self, user_id: str, limit: int = 50) -> list[ParkingHistory]:
        result = await self.db.execute(
            select(ParkingHistory)
            .where(ParkingHistory.user_id == user_id)
            .order_by(ParkingHistory.ended_at.desc(), ParkingHistory.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
