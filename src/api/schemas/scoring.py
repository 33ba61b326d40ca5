from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from src.core.config import settings


class ScoringWeightCreate(BaseModel):
    dimension: str = Field(..., min_length=1, max_length=50)
    weight: Decimal = Field(..., ge=0, le=1)
    description: str | None = None

    @field_validator("dimension")
    @classmethod
    def check_dimension(cls, v: str) -> str:
        if v not in settings.ranking_weights:
            raise ValueError(f"Unknown ranking dimension: {v}")
        return v


class ScoringWeightResponse(BaseModel):
    id: int
    dimension: str
    weight: Decimal
    description: str | None

    model_config = {"from_attributes": True}
