from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.schemas.scoring import ScoringWeightCreate
from src.core.config import Settings, settings as default_settings
from src.db.models.scoring import ScoringWeight

logger = structlog.get_logger()


DIMENSION_DESCRIPTIONS = {
    "code_volume": "Lines added plus lines removed",
    "commit_impact": "Distinct commits authored",
    "code_efficiency": "Commits per line changed",
    "collaboration": "Average distinct contributors per pull request worked on",
    "repo_popularity": "Stars x 0.7 + forks x 0.3 across contributed repositories",
    "repo_influence": "Number of repositories contributed to",
    "followers": "GitHub followers",
    "profile_completeness": "Weighted presence of public profile fields",
}


def default_weights(settings: Settings) -> dict[str, tuple[float, str | None]]:
    """Configured ranking weights with their descriptions."""
    return {
        dimension: (weight, DIMENSION_DESCRIPTIONS.get(dimension))
        for dimension, weight in settings.ranking_weights.items()
    }


class ScoringService:
    """Service for managing contributor ranking weights."""

    def __init__(self, db: AsyncSession, settings: Settings | None = None) -> None:
        self.db = db
        self.settings = settings or default_settings

    async def get_all_weights(self) -> list[ScoringWeight]:
        """Get all ranking weights, initializing defaults if needed."""
        result = await self.db.execute(select(ScoringWeight).order_by(ScoringWeight.dimension))
        weights = list(result.scalars().all())

        # Initialize defaults if empty
        if not weights:
            weights = await self._initialize_defaults()

        return weights

    async def _initialize_defaults(self) -> list[ScoringWeight]:
        """Initialize default ranking weights."""
        weights = []
        for dimension, (weight, description) in default_weights(self.settings).items():
            row = ScoringWeight(
                dimension=dimension,
                weight=Decimal(str(weight)),
                description=description,
            )
            self.db.add(row)
            weights.append(row)

        await self.db.flush()
        logger.info("Initialized default ranking weights")
        return weights

    async def get_weight(self, dimension: str) -> ScoringWeight | None:
        """Get the weight for a specific dimension."""
        result = await self.db.execute(
            select(ScoringWeight).where(ScoringWeight.dimension == dimension)
        )
        return result.scalar_one_or_none()

    async def get_weight_map(self) -> dict[str, float]:
        """Dimension -> weight, as used by the ranking engine."""
        return {w.dimension: float(w.weight) for w in await self.get_all_weights()}

    async def update_weights(
        self,
        weights: list[ScoringWeightCreate],
    ) -> list[ScoringWeight]:
        """Update ranking weights. They apply from the next ranking snapshot."""
        await self.get_all_weights()
        updated = []

        for weight_data in weights:
            existing = await self.get_weight(weight_data.dimension)
            if existing:
                existing.weight = weight_data.weight
                if weight_data.description:
                    existing.description = weight_data.description
                updated.append(existing)
            else:
                new_weight = ScoringWeight(
                    dimension=weight_data.dimension,
                    weight=weight_data.weight,
                    description=weight_data.description,
                )
                self.db.add(new_weight)
                updated.append(new_weight)

        await self.db.flush()
        logger.info("Ranking weights updated", count=len(updated))
        return updated
