"""
Client for the external match scorer.

The scorer is a black box. Its output is normalised here: integer
percentages clamped to 0-100, highest score first, blank reasoning treated
as absent. An empty answer is a normal result, not an error.
"""

import math
from dataclasses import dataclass, field
from typing import Any

import pydantic
import structlog

from therapy_workflow.admin_client import AdminApiClient
from therapy_workflow.models import MatchRecommendation

log = structlog.get_logger()

NO_RECOMMENDATIONS_MESSAGE = "No recommendations available for this client."
MISSING_REASONING = "No explanation was provided for this match."


def normalise_score(raw: Any) -> int:
    try:
        score = float(raw)
    except (TypeError, ValueError):
        return 0
    if math.isnan(score):
        return 0
    return max(0, min(100, round(score)))


def display_reasoning(recommendation: MatchRecommendation) -> str:
    return recommendation.reasoning or MISSING_REASONING


@dataclass
class RecommendationSet:
    client_id: str
    recommendations: list[MatchRecommendation] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.recommendations

    @property
    def message(self) -> str | None:
        return NO_RECOMMENDATIONS_MESSAGE if self.is_empty else None

    @property
    def top(self) -> MatchRecommendation | None:
        return self.recommendations[0] if self.recommendations else None


class MatchRankingClient:
    def __init__(self, api: AdminApiClient) -> None:
        self.api = api

    async def recommend(self, client_id: str) -> RecommendationSet:
        raw = await self.api.get_recommendations(client_id)

        recommendations = []
        for item in raw:
            data = dict(item)
            score = data.pop("matchScore", None)
            if score is None:
                score = data.pop("match_score", 0)
            data["matchScore"] = normalise_score(score)

            reasoning = data.get("reasoning")
            if not isinstance(reasoning, str) or not reasoning.strip():
                reasoning = None
            data["reasoning"] = reasoning
            try:
                recommendations.append(MatchRecommendation.model_validate(data))
            except pydantic.ValidationError as e:
                log.warning(
                    "recommendation_skipped",
                    client_id=client_id,
                    therapist_id=data.get("therapistId"),
                    error=str(e),
                )

        recommendations.sort(key=lambda r: r.match_score, reverse=True)
        if not recommendations:
            log.info("no_recommendations", client_id=client_id)
        return RecommendationSet(client_id=client_id, recommendations=recommendations)
