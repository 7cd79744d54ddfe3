"""Canonical Plan Registry - static price table for subscription billing.

Plan Structure:
- start: Start (free, never invoiced)
- essencial: Essencial (R$ 49,90/mês)
- profissional: Profissional (R$ 99,90/mês)
- enterprise: Enterprise (R$ 199,90/mês)

Price lookup is by slug. Unknown slugs resolve to 0.00 so the billing cycle
treats them like a free plan instead of failing.
"""
from enum import Enum
from typing import Dict, Optional, Any
import logging

logger = logging.getLogger(__name__)


# ============================================================================
# PLAN ENUM - Canonical Plan Slugs
# ============================================================================
class PlanSlug(str, Enum):
    START = "start"
    ESSENCIAL = "essencial"
    PROFISSIONAL = "profissional"
    ENTERPRISE = "enterprise"


# ============================================================================
# PLAN DEFINITIONS
# ============================================================================
PLAN_DEFINITIONS: Dict[PlanSlug, Dict[str, Any]] = {
    PlanSlug.START: {
        "slug": "start",
        "name": "Start",
        "monthly_price": 0.00,
        "external_plan_ref": None,
    },
    PlanSlug.ESSENCIAL: {
        "slug": "essencial",
        "name": "Essencial",
        "monthly_price": 49.90,
        "external_plan_ref": None,
    },
    PlanSlug.PROFISSIONAL: {
        "slug": "profissional",
        "name": "Profissional",
        "monthly_price": 99.90,
        "external_plan_ref": None,
    },
    PlanSlug.ENTERPRISE: {
        "slug": "enterprise",
        "name": "Enterprise",
        "monthly_price": 199.90,
        "external_plan_ref": None,
    },
}

PLAN_PRICES: Dict[str, float] = {
    p["slug"]: p["monthly_price"] for p in PLAN_DEFINITIONS.values()
}


class PlanRegistry:
    """Read-only access to plan reference data."""

    def get_plan(self, slug: Optional[str]) -> Optional[Dict[str, Any]]:
        if not slug:
            return None
        try:
            return PLAN_DEFINITIONS[PlanSlug(slug)]
        except ValueError:
            return None

    def get_price(self, slug: Optional[str]) -> float:
        """Monthly price for a plan slug. Unknown slug -> 0.0 (logged)."""
        plan = self.get_plan(slug)
        if plan is None:
            logger.warning(f"Unknown plan slug '{slug}', treating as free")
            return 0.0
        return plan["monthly_price"]

    def get_display_name(self, slug: Optional[str]) -> str:
        plan = self.get_plan(slug)
        if plan:
            return plan["name"]
        return (slug or "").capitalize()


plan_registry = PlanRegistry()
