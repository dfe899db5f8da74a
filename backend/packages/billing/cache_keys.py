"""Cache key generators for billing package."""


def credit_balance_key(tenant_id: str) -> str:
    """Generate cache key for a tenant's credit balance."""
    return f"tenant:{tenant_id}:credit_balance"


def plan_key(plan_id: str) -> str:
    return f"subscription_plan:{plan_id}"


def subscription_key(subscription_id: int) -> str:
    return f"subscription:{subscription_id}"


def subscription_by_tenant_key(tenant_id: str) -> str:
    """Generate cache key for the active subscription of a tenant."""
    return f"tenant:{tenant_id}:subscription"
