"""
Rule-based therapist ranking used by the ai-recommendations endpoint.

Stands in for the external scorer: filter the available pool, score each
candidate with weighted features, normalise to a 0-100 percentage and
return the best matches with a short explanation.
"""

import structlog

from therapy_workflow.models import Client, MatchRecommendation, Therapist, TherapistStatus

log = structlog.get_logger()

MATCH_WEIGHTS: dict[str, float] = {
    "concern_overlap": 5.0,
    "approach": 2.0,
    "gender": 1.5,
    "availability": 1.5,
}


def _norm(value: str | None) -> str:
    return (value or "").strip().lower()


def _matches(term: str, specialisations: list[str]) -> bool:
    term = _norm(term)
    return any(term and (term in _norm(s) or _norm(s) in term) for s in specialisations if _norm(s))


class Matcher:
    def __init__(self, client: Client, therapists: list[Therapist], weights=None):
        self.client = client
        self.therapists = therapists
        self.weights = weights or MATCH_WEIGHTS

    def run(self, top_n: int = 5) -> list[MatchRecommendation]:
        candidates = self._apply_filters()
        if not candidates:
            log.warning("No therapists passed filters for client", client_id=self.client.id)
            return []

        max_score = self._max_possible_score()
        scored = []
        for therapist in candidates:
            features = self._build_features(therapist)
            score = sum(features[k] * self.weights.get(k, 0.0) for k in features)
            scored.append((therapist, features, score))

        scored.sort(key=lambda item: item[2], reverse=True)

        recommendations = [
            MatchRecommendation(
                therapist_id=therapist.id,
                name=therapist.name,
                match_score=round(score / max_score * 100) if max_score else 0,
                reasoning=self._reasoning(therapist, features),
                specialisations=therapist.specialisations,
                availability=therapist.availability,
                rate=therapist.hourly_rate,
            )
            for therapist, features, score in scored[:top_n]
            if score > 0
        ]
        log.info(
            "Top matches generated",
            client_id=self.client.id,
            matches=[(r.therapist_id, r.match_score) for r in recommendations],
        )
        return recommendations

    def _apply_filters(self) -> list[Therapist]:
        return [
            th
            for th in self.therapists
            if th.status == TherapistStatus.AVAILABLE and th.capacity > 0
        ]

    def _build_features(self, therapist: Therapist) -> dict[str, float]:
        concerns = self.client.concerns
        prefs = self.client.preferences
        matched = [c for c in concerns if _matches(c, therapist.specialisations)]

        features = {
            "concern_overlap": len(matched) / len(concerns) if concerns else 0.0,
            "approach": 0.0,
            "gender": 0.0,
            "availability": 0.0,
        }
        if prefs.approach and _matches(prefs.approach, therapist.specialisations):
            features["approach"] = 1.0
        if prefs.gender and _norm(prefs.gender) == _norm(therapist.gender):
            features["gender"] = 1.0
        if prefs.availability and _norm(prefs.availability) == _norm(therapist.availability):
            features["availability"] = 1.0
        return features

    def _max_possible_score(self) -> float:
        """Best score this client could reach; unstated preferences don't count."""
        prefs = self.client.preferences
        reachable = {
            "concern_overlap": bool(self.client.concerns),
            "approach": bool(prefs.approach),
            "gender": bool(prefs.gender),
            "availability": bool(prefs.availability),
        }
        return sum(w for k, w in self.weights.items() if w > 0 and reachable.get(k))

    def _reasoning(self, therapist: Therapist, features: dict[str, float]) -> str | None:
        reasons = []
        matched = [c for c in self.client.concerns if _matches(c, therapist.specialisations)]
        if matched:
            reasons.append(f"Experienced with {', '.join(matched)}")
        if features["approach"]:
            reasons.append(f"offers {self.client.preferences.approach}")
        if features["gender"]:
            reasons.append("matches gender preference")
        if features["availability"]:
            reasons.append(f"available {therapist.availability}")
        if not reasons:
            return None
        text = "; ".join(reasons)
        if not self.client.profile_completed:
            text += " (client profile incomplete)"
        return text[0].upper() + text[1:]
