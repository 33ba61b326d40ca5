from fastapi import APIRouter

from src.api.routes.pipelines import router as pipelines_router
from src.api.routes.rankings import router as rankings_router
from src.api.routes.repositories import router as repositories_router
from src.api.routes.scoring import router as scoring_router

router = APIRouter()

router.include_router(pipelines_router, prefix="/pipelines", tags=["pipelines"])
router.include_router(rankings_router, prefix="/rankings", tags=["rankings"])
router.include_router(repositories_router, prefix="/repositories", tags=["repositories"])
router.include_router(scoring_router, prefix="/config", tags=["configuration"])
