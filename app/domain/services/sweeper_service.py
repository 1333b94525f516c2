"""
Expiry Sweeper - Periodic reclamation of stale state

Run from Celery beat. Every step re-checks its condition at write time, so a
run is idempotent and safe alongside concurrent user transitions.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import StaleStateError, DealNotFoundError
from app.core.logging import get_logger, log_async_operation
from app.core.timeutils import utcnow, to_local, is_peak_hour
from app.db.models.parking_history import SessionEndReason
from app.db.models.parking_session import ParkingSession
from app.domain.services.handshake_service import HandshakeService
from app.domain.services.parking_session_service import ParkingSessionService
from app.domain.services.spot_registry import SpotRegistry

logger = get_logger(__name__)


@dataclass
class SweepResult:
    deleted_spots: int = 0
    cancelled_deals: int = 0
    expired_sessions: int = 0
    threshold_minutes: int = 0
    is_peak: bool = False
    local_hour: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def stale_threshold_minutes(now: datetime) -> int:
    """Shorter threshold during the local peak window"""
    if is_peak_hour(now):
        return settings.PEAK_THRESHOLD_MINUTES
    return settings.OFF_PEAK_THRESHOLD_MINUTES


class ExpirySweeper:
    """Deletes stale available spots, expires open offers and handshake sessions"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.registry = SpotRegistry(db)
        self.sessions = ParkingSessionService(db)
        self.handshakes = HandshakeService(db)

    @log_async_operation("expiry_sweep")
    async def run(self, now: datetime | None = None) -> SweepResult:
        now = now or utcnow()
        threshold = stale_threshold_minutes(now)
        cutoff = now - timedelta(minutes=threshold)

        result = SweepResult(
            threshold_minutes=threshold,
            is_peak=is_peak_hour(now),
            local_hour=to_local(now).hour,
        )

        result.deleted_spots = await self._delete_stale_spots(cutoff)
        result.cancelled_deals = await self._expire_open_offers(cutoff, now, result)
        result.expired_sessions = await self._expire_handshake_sessions(now, result)

        logger.info("Expiry sweep finished", extra_data=result.to_dict())
        return result

    async def _delete_stale_spots(self, cutoff: datetime) -> int:
        try:
            spot_ids = await self.registry.find_stale_spot_ids(cutoff)
            deleted = 0
            for spot_id in spot_ids:
                if await self.registry.delete_if_stale(spot_id, cutoff):
                    deleted += 1
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return deleted

    async def _expire_open_offers(self, cutoff: datetime, now: datetime, result: SweepResult) -> int:
        deals = await self.handshakes.find_expired_offers(cutoff)
        deal_ids = [deal.id for deal in deals]

        cancelled = 0
        for deal_id in deal_ids:
            deal = await self.handshakes.get_deal(deal_id)
            if deal is None:
                continue
            try:
                await self.handshakes.expire_offer(deal, now)
                cancelled += 1
            except (StaleStateError, DealNotFoundError):
                # a participant moved the deal since it was selected
                continue
            except Exception as e:
                logger.error(
                    "Failed to expire handshake offer",
                    extra_data={"deal_id": deal_id, "error": str(e)},
                    exc_info=True,
                )
                result.errors.append(f"deal:{deal_id}:{e}")
        return cancelled

    async def _expire_handshake_sessions(self, now: datetime, result: SweepResult) -> int:
        sessions = await self.sessions.find_expired_handshake_sessions(now)
        session_ids = [session.id for session in sessions]

        expired = 0
        for session_id in session_ids:
            session = await self.db.get(ParkingSession, session_id, populate_existing=True)
            if session is None:
                continue
            try:
                if await self.sessions.end_session(session, SessionEndReason.SESSION_EXPIRED, now=now):
                    expired += 1
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                logger.error(
                    "Failed to expire handshake session",
                    extra_data={"session_id": session_id, "error": str(e)},
                    exc_info=True,
                )
                result.errors.append(f"session:{session_id}:{e}")
        return expired
