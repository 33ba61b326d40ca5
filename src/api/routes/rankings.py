from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.schemas.ranking import ContributorRankingEntry, RankingSnapshot, RankingTrendResponse
from src.core.config import settings
from src.db import get_db
from src.services.ranking_service import RankingService

router = APIRouter()


@router.get(
    "/latest",
    response_model=RankingSnapshot,
    summary="Get the latest contributor ranking snapshot",
)
async def get_latest_rankings(
    page: int = Query(1, ge=1),
    page_size: int = Query(
        settings.api_pagination_default_limit,
        ge=1,
        le=settings.api_pagination_max_limit,
    ),
    db: AsyncSession = Depends(get_db),
) -> RankingSnapshot:
    """Contributors of the most recent snapshot, best rank first."""
    service = RankingService()
    timestamp, rankings, total = await service.latest_snapshot(
        db,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return RankingSnapshot(
        calculation_timestamp=timestamp,
        entries=[ContributorRankingEntry.model_validate(r) for r in rankings],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/{contributor_id}/trend",
    response_model=RankingTrendResponse,
    summary="Compare a contributor's last two rankings",
)
async def get_ranking_trend(
    contributor_id: int,
    db: AsyncSession = Depends(get_db),
) -> RankingTrendResponse:
    """A positive rank_delta means the contributor moved up."""
    service = RankingService()
    trend = await service.get_trend(db, contributor_id)
    if trend is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Contributor {contributor_id} has fewer than two ranking snapshots",
        )
    return RankingTrendResponse.model_validate(trend)
