from decimal import Decimal

import pytest
from pydantic import ValidationError

from src.api.schemas.scoring import ScoringWeightCreate
from src.services.ranking_service import DIMENSIONS
from src.services.scoring_service import ScoringService, default_weights


class TestDefaultWeights:
    """Tests for the configured ranking weights."""

    def test_every_dimension_has_a_default(self, make_settings) -> None:
        assert set(default_weights(make_settings())) == set(DIMENSIONS)

    def test_defaults_sum_to_one(self, make_settings) -> None:
        total = sum(Decimal(str(weight)) for weight, _ in default_weights(make_settings()).values())
        assert total == Decimal("1")

    def test_defaults_are_described(self, make_settings) -> None:
        assert all(description for _, description in default_weights(make_settings()).values())

    def test_defaults_follow_given_settings(self, make_settings) -> None:
        settings = make_settings(ranking_weights={"followers": 0.5, "commit_impact": 0.5})
        assert default_weights(settings) == {
            "followers": (0.5, "GitHub followers"),
            "commit_impact": (0.5, "Distinct commits authored"),
        }

    @pytest.mark.parametrize(
        "weights",
        [{}, {"followers": -0.1, "commit_impact": 1.1}, {"followers": 0.0, "commit_impact": 0.0}],
    )
    def test_invalid_ranking_weights_rejected(self, make_settings, weights) -> None:
        with pytest.raises(ValidationError):
            make_settings(ranking_weights=weights)

    def test_invalid_health_weights_rejected(self, make_settings) -> None:
        with pytest.raises(ValidationError):
            make_settings(health_weights={"recency": -1.0, "cadence": 2.0})


class TestWeightValidation:
    """Tests for weight update payloads."""

    def test_valid_weight(self) -> None:
        weight = ScoringWeightCreate(dimension="followers", weight=Decimal("0.2"))
        assert weight.weight == Decimal("0.2")

    def test_unknown_dimension(self) -> None:
        with pytest.raises(ValidationError):
            ScoringWeightCreate(dimension="stars", weight=Decimal("0.2"))

    def test_weight_out_of_range(self) -> None:
        with pytest.raises(ValidationError):
            ScoringWeightCreate(dimension="followers", weight=Decimal("1.5"))


@pytest.mark.integration
class TestScoringService:
    """Tests for stored ranking weights."""

    async def test_defaults_are_initialized(self, db_session) -> None:
        weights = await ScoringService(db_session).get_weight_map()
        assert weights["collaboration"] == 0.20
        assert len(weights) == len(DIMENSIONS)

    async def test_update_weight(self, db_session) -> None:
        service = ScoringService(db_session)

        await service.update_weights([ScoringWeightCreate(dimension="followers", weight=Decimal("0.5"))])

        weights = await service.get_weight_map()
        assert weights["followers"] == 0.5
        assert weights["code_volume"] == 0.05

    async def test_defaults_come_from_injected_settings(self, db_session, make_settings) -> None:
        settings = make_settings(ranking_weights={"followers": 0.75, "commit_impact": 0.25})

        weights = await ScoringService(db_session, settings).get_weight_map()

        assert weights == {"commit_impact": 0.25, "followers": 0.75}
