"""Tier and feature definitions for the plan catalog."""

import enum
from typing import Any

UNLIMITED_QUOTA = -1


class FeatureSlug(str, enum.Enum):
    """Known metered capabilities."""

    UPWORK_PROFILE_OPTIMIZER = "upwork_profile_optimizer"
    LINKEDIN_PROFILE_OPTIMIZER = "linkedin_profile_optimizer"
    AI_PROPOSALS = "ai_proposals"
    RESUME_GENERATOR = "resume_generator"
    ADVANCED_AI_INSIGHTS = "advanced_ai_insights"
    COMMUNITY_ACCESS = "comunity_access"
    NEWSLETTERS = "newsletters"
    FREELANCER_GROWTH_TOOLS = "freelancer_growth_tools"
    OPTIMIZATION_HISTORY = "optimization_history"
    PROPOSAL_HISTORY = "proposal_history"


class RecurringInterval(str, enum.Enum):
    """Cadence at which a limited feature's usage counter resets."""

    NONE = ""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PlanRecurringInterval(str, enum.Enum):
    """Billing cadence of a tier."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


def _unlimited(slug: FeatureSlug, name: str, description: str) -> dict[str, Any]:
    return {
        "slug": slug.value,
        "name": name,
        "description": description,
        "limited": False,
        "max_quota": UNLIMITED_QUOTA,
        "recurring_interval": RecurringInterval.NONE.value,
    }


_PAID_FEATURES: list[dict[str, Any]] = [
    _unlimited(
        FeatureSlug.UPWORK_PROFILE_OPTIMIZER,
        "Upwork Profile Optimizer",
        "Full access to the Upwork Profile Optimizer feature.",
    ),
    _unlimited(
        FeatureSlug.LINKEDIN_PROFILE_OPTIMIZER,
        "LinkedIn Profile Optimizer",
        "Access to the LinkedIn Profile Optimizer feature.",
    ),
    _unlimited(
        FeatureSlug.RESUME_GENERATOR,
        "Resume Generator",
        "Create professional resumes.",
    ),
    _unlimited(
        FeatureSlug.OPTIMIZATION_HISTORY,
        "Optimization History",
        "Track all your profile optimizations and review past versions.",
    ),
    _unlimited(
        FeatureSlug.PROPOSAL_HISTORY,
        "Proposal History",
        "Review and learn from all your past proposals.",
    ),
    _unlimited(
        FeatureSlug.AI_PROPOSALS,
        "AI-Powered Proposals Generator",
        "Unlimited AI Proposals per month.",
    ),
    _unlimited(
        FeatureSlug.COMMUNITY_ACCESS,
        "Early Community Access",
        "Community Access.",
    ),
    _unlimited(
        FeatureSlug.NEWSLETTERS,
        "Newsletters & Notes",
        "Newsletters.",
    ),
    _unlimited(
        FeatureSlug.FREELANCER_GROWTH_TOOLS,
        "Freelancer Growth Tools",
        "Access to the Freelancer Growth Tools.",
    ),
]

# Seed data for the catalog. Prices are in minor currency units.
DEFAULT_TIERS: list[dict[str, Any]] = [
    {
        "slug": "starter",
        "name": "Starter (Freemium)",
        "description": "Perfect for new freelancers and those exploring the platform.",
        "price": 0,
        "plan_recurring_interval": PlanRecurringInterval.MONTHLY.value,
        "external_product_ref": "fbba796c-931a-4074-bf57-e8c4007db387",
        "features": [
            {
                "slug": FeatureSlug.UPWORK_PROFILE_OPTIMIZER.value,
                "name": "Upwork Profile Optimizer",
                "description": "Limited access to the Upwork Profile Optimizer feature.",
                "limited": True,
                "max_quota": 2,
                "recurring_interval": RecurringInterval.WEEKLY.value,
            },
            {
                "slug": FeatureSlug.AI_PROPOSALS.value,
                "name": "AI Proposals",
                "description": "A few AI proposals every day.",
                "limited": True,
                "max_quota": 3,
                "recurring_interval": RecurringInterval.DAILY.value,
            },
            {
                "slug": FeatureSlug.COMMUNITY_ACCESS.value,
                "name": "Community Access",
                "description": "Community Access.",
                "limited": False,
                "max_quota": 0,
                "recurring_interval": RecurringInterval.NONE.value,
            },
            {
                "slug": FeatureSlug.NEWSLETTERS.value,
                "name": "Newsletters & Notes",
                "description": "Newsletters.",
                "limited": False,
                "max_quota": 0,
                "recurring_interval": RecurringInterval.NONE.value,
            },
        ],
    },
    {
        "slug": "plus",
        "name": "Plus",
        "description": "For freelancers actively applying for jobs and serious about getting clients.",
        "price": 399,
        "plan_recurring_interval": PlanRecurringInterval.MONTHLY.value,
        "external_product_ref": "9d1a3ad1-5bd7-48c3-aef0-b4ea80d4ec79",
        "features": _PAID_FEATURES,
    },
    {
        "slug": "plusAnnual",
        "name": "Plus",
        "description": "For freelancers actively applying for jobs and serious about getting clients.",
        "price": 4300,
        "plan_recurring_interval": PlanRecurringInterval.YEARLY.value,
        "external_product_ref": "ee5f12df-ec1e-4fdc-b22c-6253cae9cf0d",
        "features": _PAID_FEATURES,
    },
    {
        "slug": "pro",
        "name": "Pro",
        "description": "Everything in Plus with advanced insights for agencies.",
        "price": 999,
        "plan_recurring_interval": PlanRecurringInterval.MONTHLY.value,
        "external_product_ref": "3f0c1c2e-7a54-4a8e-9d55-2b1b9f0d6a11",
        "features": _PAID_FEATURES
        + [
            {
                "slug": FeatureSlug.ADVANCED_AI_INSIGHTS.value,
                "name": "Advanced AI Insights",
                "description": "Monthly deep-dive reports on your profile performance.",
                "limited": True,
                "max_quota": 20,
                "recurring_interval": RecurringInterval.MONTHLY.value,
            },
        ],
    },
]


def validate_feature(feature: dict[str, Any]) -> str | None:
    """Check a single feature definition against the quota invariant.

    ``limited`` features need a positive cap and a reset cadence; unlimited ones
    carry ``0`` or the ``-1`` sentinel and no cadence.

    Args:
        feature: Feature definition as stored in the catalog

    Returns:
        Description of the violation, or None if the feature is valid
    """
    slug = feature.get("slug")
    max_quota = feature.get("max_quota")
    interval = feature.get("recurring_interval", "")

    if slug not in {s.value for s in FeatureSlug}:
        return f"feature {slug} is not a known capability"

    if not isinstance(max_quota, int) or isinstance(max_quota, bool):
        return f"feature {slug} has a non-integer max_quota"

    if interval not in {i.value for i in RecurringInterval}:
        return f"feature {slug} has an unknown recurring_interval {interval!r}"

    if feature.get("limited"):
        if max_quota <= 0:
            return f"feature {slug} is limited but max_quota is not set"
        if not interval:
            return f"feature {slug} is limited but recurring_interval is not set"
    else:
        if max_quota not in (0, UNLIMITED_QUOTA):
            return f"feature {slug} is not limited but max_quota is not 0 or -1"
        if interval != "":
            return f"feature {slug} is not limited but recurring_interval is set"
    return None


def validate_features(features: list[dict[str, Any]]) -> str | None:
    """Return the first invariant violation in a feature list, if any."""
    seen: set[str] = set()
    for feature in features:
        error = validate_feature(feature)
        if error:
            return error
        slug = str(feature.get("slug"))
        if slug in seen:
            return f"feature {slug} is defined more than once"
        seen.add(slug)
    return None


def is_unlimited(max_quota: int) -> bool:
    """Check whether a quota value is the unlimited sentinel."""
    return max_quota == UNLIMITED_QUOTA
