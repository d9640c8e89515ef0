"""
CasperFlow SDK - Plan Catalog
Read-mostly registry of subscription plans.
"""

import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from .errors import NotFoundError
from .models import BILLING_PERIODS, Plan

logger = logging.getLogger("casperflow.plans")

DEMO_MERCHANT = "01cd9747c037ac64f910e29b7f898b5ec5a4ae705c74078f96d38ccdaf8c552739"

DEMO_PLANS = (
    Plan(
        plan_id="plan_demo_starter",
        merchant_id=DEMO_MERCHANT,
        name="Starter API",
        description="Perfect for small projects and testing. Includes basic API access with rate limiting.",
        base_price=Decimal("10"),
        billing_period_seconds=BILLING_PERIODS["monthly"],
        trial_days=7,
        features=("1,000 API calls/month", "Basic support", "Rate limiting: 10 req/min"),
    ),
    Plan(
        plan_id="plan_demo_pro",
        merchant_id=DEMO_MERCHANT,
        name="Pro API",
        description="For growing businesses. Higher limits, priority support, and advanced features.",
        base_price=Decimal("50"),
        billing_period_seconds=BILLING_PERIODS["monthly"],
        trial_days=14,
        features=("50,000 API calls/month", "Priority support", "Rate limiting: 100 req/min", "Webhooks"),
    ),
    Plan(
        plan_id="plan_demo_enterprise",
        merchant_id=DEMO_MERCHANT,
        name="Enterprise",
        description="Unlimited access for large-scale applications with dedicated support.",
        base_price=Decimal("200"),
        billing_period_seconds=BILLING_PERIODS["monthly"],
        trial_days=0,
        features=("Unlimited API calls", "Dedicated support", "No rate limiting", "Webhooks",
                  "Custom integrations", "SLA guarantee"),
    ),
)


class PlanCatalog:
    """In-memory plan registry."""

    def __init__(self, plans: Optional[Iterable[Plan]] = None):
        self._plans: Dict[str, Plan] = {}
        for plan in (DEMO_PLANS if plans is None else plans):
            self._plans[plan.plan_id] = plan

    def get(self, plan_id: str) -> Optional[Plan]:
        return self._plans.get(plan_id)

    def list(self, include_deprecated: bool = False) -> List[Plan]:
        return [p for p in self._plans.values() if include_deprecated or not p.deprecated]

    def add(self, plan: Plan) -> Plan:
        if plan.plan_id in self._plans:
            raise ValueError(f"Plan already exists: {plan.plan_id}")
        self._plans[plan.plan_id] = plan
        logger.info(f"Plan registered: {plan.plan_id} ({plan.name})")
        return plan

    def deprecate(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan not found: {plan_id}")
        if not plan.deprecated:
            plan = self._plans[plan_id] = plan.deprecate()
            logger.info(f"Plan deprecated: {plan_id}")
        return plan
