from decimal import Decimal

from pricehub.schemas.policy import PolicyCheck, PolicyEvaluation, PricePolicy

_PCT_PLACES = Decimal("0.0001")


def price_delta_pct(current_amount: int, proposed_amount: int) -> Decimal:
    """Relative move as a fraction of the current price; any move from zero counts as 1."""
    if current_amount == 0:
        return Decimal(1)
    return Decimal(abs(proposed_amount - current_amount)) / Decimal(current_amount)


def evaluate_policy(current_amount: int, proposed_amount: int, policy: PricePolicy) -> PolicyEvaluation:
    """Run every configured check; the change passes only if all of them do."""
    checks: list[PolicyCheck] = []
    delta_pct = price_delta_pct(current_amount, proposed_amount)
    shown_pct = delta_pct.quantize(_PCT_PLACES)

    if policy.max_pct_delta is not None:
        # From a zero price any positive amount is allowed
        ok = proposed_amount > 0 if current_amount == 0 else delta_pct <= policy.max_pct_delta
        checks.append(PolicyCheck(name="maxPctDelta", ok=ok, limit=policy.max_pct_delta, actual=shown_pct))

    if policy.floor is not None:
        checks.append(PolicyCheck(name="floor", ok=proposed_amount >= policy.floor, limit=policy.floor,
                                  actual=proposed_amount))

    if policy.ceiling is not None:
        checks.append(PolicyCheck(name="ceiling", ok=proposed_amount <= policy.ceiling, limit=policy.ceiling,
                                  actual=proposed_amount))

    if policy.daily_budget_pct is not None and policy.daily_budget_used_pct is not None:
        remaining = policy.daily_budget_pct - policy.daily_budget_used_pct
        checks.append(PolicyCheck(name="dailyBudget", ok=delta_pct <= remaining, limit=remaining, actual=shown_pct))

    return PolicyEvaluation(ok=all(check.ok for check in checks), checks=checks)
