from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.schemas.repository import RepositoryDetail, RepositoryList, RepositoryStatisticsResponse
from src.db import get_db
from src.db.models.repository import Repository
from src.db.models.statistics import RepositoryStatistics

router = APIRouter()


@router.get(
    "",
    response_model=RepositoryList,
    summary="List repositories",
)
async def list_repositories(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    tracked_only: bool = Query(False, description="Only repositories the sync stage polls"),
    db: AsyncSession = Depends(get_db),
) -> RepositoryList:
    """Get a paginated list of repositories, most starred first."""
    query = select(Repository)
    count_query = select(func.count(Repository.id))
    if tracked_only:
        query = query.where(Repository.is_tracked.is_(True))
        count_query = count_query.where(Repository.is_tracked.is_(True))

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(
        query.order_by(Repository.stars.desc(), Repository.id).offset((page - 1) * page_size).limit(page_size)
    )
    return RepositoryList(
        repositories=[RepositoryDetail.model_validate(r) for r in result.scalars().all()],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/{repository_id}/statistics",
    response_model=RepositoryStatisticsResponse,
    summary="Get computed repository statistics",
)
async def get_repository_statistics(
    repository_id: int,
    db: AsyncSession = Depends(get_db),
) -> RepositoryStatisticsResponse:
    """Statistics from the last repository_processing run."""
    result = await db.execute(
        select(RepositoryStatistics).where(RepositoryStatistics.repository_id == repository_id)
    )
    stats = result.scalar_one_or_none()
    if stats is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No statistics for repository {repository_id}",
        )
    return RepositoryStatisticsResponse.model_validate(stats)
