from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.schemas.scoring import ScoringWeightCreate, ScoringWeightResponse
from src.db import get_db
from src.services.scoring_service import ScoringService

router = APIRouter()


@router.get(
    "/scoring",
    response_model=list[ScoringWeightResponse],
    summary="Get current ranking weights",
)
async def get_scoring_weights(
    db: AsyncSession = Depends(get_db),
) -> list[ScoringWeightResponse]:
    """Get the current weight of every ranking dimension."""
    service = ScoringService(db)
    weights = await service.get_all_weights()
    return [ScoringWeightResponse.model_validate(w) for w in weights]


@router.put(
    "/scoring",
    response_model=list[ScoringWeightResponse],
    summary="Update ranking weights",
)
async def update_scoring_weights(
    weights: list[ScoringWeightCreate],
    db: AsyncSession = Depends(get_db),
) -> list[ScoringWeightResponse]:
    """Update ranking weights. They apply from the next contributor_rankings run."""
    service = ScoringService(db)
    updated = await service.update_weights(weights)
    return [ScoringWeightResponse.model_validate(w) for w in updated]
