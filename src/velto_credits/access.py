"""Feature-access gate built on the tier catalog."""

from typing import Any

from velto_credits.tiers import Feature, entitlement_satisfies, feature_requirement, project_limit


def can_access_feature(tier: Any, feature_id: Feature | str) -> bool:
    """Check whether a tier may use a feature."""
    return entitlement_satisfies(tier, feature_requirement(feature_id))


def can_create_more_projects(tier: Any, current_count: int) -> bool:
    """Check whether a user on this tier may create another project."""
    return current_count < project_limit(tier)
