"""
Parking Spot API Routes
"""
from datetime import datetime
from typing import List
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user_id
from app.api.routes.sessions import SessionResponse
from app.db.database import get_db
from app.domain.services.availability import ProbabilityLevel
from app.domain.services.parking_service import ParkingService

router = APIRouter()


class ReportSpotRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=100)


class ReportSpotResponse(BaseModel):
    spot_id: int
    balance: int
    duplicate: bool = False


class AvailableSpotResponse(BaseModel):
    id: int
    latitude: float
    longitude: float
    available_since: datetime | None
    probability: int
    level: ProbabilityLevel


class ReleaseSpotResponse(BaseModel):
    spot_id: int
    balance: int


@router.post(
    "",
    response_model=ReportSpotResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Report a new parking spot",
    description="Creates a spot occupied by the caller and pays the reporting reward.",
)
async def report_spot(
    data: ReportSpotRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    service = ParkingService(db)
    result = await service.report_spot(
        user_id, data.latitude, data.longitude, idempotency_key=data.idempotency_key
    )
    return ReportSpotResponse(spot_id=result.spot_id, balance=result.balance, duplicate=result.duplicate)


@router.get(
    "",
    response_model=List[AvailableSpotResponse],
    summary="List available spots",
    description="Available spots with the estimated probability that each is still free.",
)
async def list_available_spots(db: AsyncSession = Depends(get_db)):
    service = ParkingService(db)
    spots = await service.list_available_spots()
    return [
        AvailableSpotResponse(
            id=item.spot.id,
            latitude=item.spot.latitude,
            longitude=item.spot.longitude,
            available_since=item.spot.available_since,
            probability=item.probability,
            level=item.level,
        )
        for item in spots
    ]


@router.post(
    "/{spot_id}/claim",
    response_model=SessionResponse,
    summary="Claim an available spot",
    description="Exactly one of several concurrent claimers succeeds; the rest get 409.",
)
async def claim_spot(
    spot_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    service = ParkingService(db)
    return await service.claim_spot(user_id, spot_id)


@router.post(
    "/{spot_id}/release",
    response_model=ReleaseSpotResponse,
    summary="Leave a spot",
    description="Debits the release cost and makes the spot available to others.",
)
async def release_spot(
    spot_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    service = ParkingService(db)
    balance = await service.release_spot(user_id, spot_id)
    return ReleaseSpotResponse(spot_id=spot_id, balance=balance)
