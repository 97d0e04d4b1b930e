from therapy_workflow.errors import ValidationError
from therapy_workflow.models import TherapistTier

# Session fee in GBP for each professional tier
TIER_PRICING: dict[TherapistTier, int] = {
    TherapistTier.COUNSELLOR: 65,
    TherapistTier.PSYCHOTHERAPIST: 80,
    TherapistTier.PSYCHOLOGIST: 90,
    TherapistTier.SPECIALIST: 120,
}


def parse_tier(value: str | TherapistTier) -> TherapistTier:
    try:
        return TherapistTier(value)
    except ValueError:
        raise ValidationError(f"Unknown therapist tier '{value}'") from None


def fee_for(tier: str | TherapistTier) -> int:
    return TIER_PRICING[parse_tier(tier)]


def tier_label(tier: str | TherapistTier) -> str:
    """Dropdown label, e.g. ``Psychologist (£90)``."""
    parsed = parse_tier(tier)
    return f"{parsed.value.capitalize()} (£{TIER_PRICING[parsed]})"
