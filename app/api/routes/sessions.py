"""
Parking Session API Routes
"""
from datetime import datetime
from typing import List
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user_id
from app.db.database import get_db
from app.db.models.parking_history import SessionEndReason
from app.db.models.parking_session import SessionSource
from app.domain.services.parking_service import ParkingService
from app.domain.services.parking_session_service import ParkingSessionService

router = APIRouter()


class SessionResponse(BaseModel):
    id: int
    user_id: str
    spot_id: int | None
    latitude: float
    longitude: float
    source: SessionSource
    started_at: datetime
    expires_at: datetime | None

    class Config:
        from_attributes = True


class HistoryResponse(BaseModel):
    id: int
    spot_id: int | None
    latitude: float
    longitude: float
    started_at: datetime
    ended_at: datetime
    duration_minutes: int
    end_reason: SessionEndReason

    class Config:
        from_attributes = True


@router.get(
    "/me",
    response_model=List[SessionResponse],
    summary="Current parking sessions of the caller",
)
async def my_sessions(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    service = ParkingSessionService(db)
    return await service.get_user_sessions(user_id)


@router.get(
    "/history",
    response_model=List[HistoryResponse],
    summary="Finished parking sessions, newest first",
)
async def session_history(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    service = ParkingSessionService(db)
    return await service.get_history(user_id, limit)


@router.post(
    "/me/end",
    response_model=HistoryResponse,
    summary="Leave a spot received through a handshake",
)
async def end_handshake_session(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    service = ParkingService(db)
    return await service.leave_handshake_session(user_id)
