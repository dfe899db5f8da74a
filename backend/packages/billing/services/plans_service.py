"""Service for the subscription plan catalog."""

from typing import List

from common.core.config import settings
from common.core.exceptions import NotFoundError
from common.core.otel_axiom_exporter import trace_span, get_logger
from common.providers.caching.decorators import cache, invalidate_cache_keys
from packages.billing.cache_keys import plan_key
from packages.billing.models.domain.plans import (
    DEFAULT_PLANS,
    SubscriptionPlan,
    SubscriptionPlanCreateModel,
)
from packages.billing.repositories.plan_repository import SubscriptionPlanRepository

logger = get_logger(__name__)


class PlanService:
    """Service for retrieving and maintaining plans."""

    def __init__(self):
        self.plan_repo = SubscriptionPlanRepository()

    @trace_span
    async def create_plan(self, plan: SubscriptionPlanCreateModel) -> SubscriptionPlan:
        """Create or replace a plan. Field validation happens on the model."""
        saved = await self.plan_repo.upsert(plan)
        await invalidate_cache_keys(plan_key(saved.id))
        logger.info(
            f"Saved plan {saved.id}",
            extra={"plan_id": saved.id, "price": str(saved.price)},
        )
        return saved

    @trace_span
    @cache(
        SubscriptionPlan,
        ttl=settings.plan_cache_ttl_seconds,
        key_generator=lambda plan_id: plan_key(plan_id),
    )
    async def get_plan(self, plan_id: str) -> SubscriptionPlan:
        plan = await self.plan_repo.get(plan_id)
        if not plan:
            raise NotFoundError(f"Plan {plan_id} not found", plan_id=plan_id)
        return plan

    @trace_span
    async def list_plans(self, active_only: bool = True) -> List[SubscriptionPlan]:
        return await self.plan_repo.list_plans(active_only=active_only)

    @trace_span
    async def ensure_default_plans(self) -> List[SubscriptionPlan]:
        """Seed the default catalog. Existing plans are left as they are."""
        plans = []
        for default in DEFAULT_PLANS:
            existing = await self.plan_repo.get(default.id)
            if existing:
                plans.append(existing)
                continue
            plans.append(await self.create_plan(default))
        return plans
