from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from pricehub.core.errors import PolicyError


class PricePolicy(BaseModel):
    """
    Guardrails a proposed price has to pass before it becomes a target.

    Unlike the transform floor and ceiling, which clamp the computed price, a
    policy rejects the change outright. Percentages are fractions of the
    current price: max_pct_delta=0.15 allows a 15% move either way. The daily
    budget check runs only when both budget fields are set.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_pct_delta: Decimal | None = Field(default=None, ge=0)
    floor: int | None = Field(default=None, ge=0)
    ceiling: int | None = Field(default=None, ge=0)
    daily_budget_pct: Decimal | None = Field(default=None, ge=0)
    daily_budget_used_pct: Decimal | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def floor_below_ceiling(self):
        if self.floor is not None and self.ceiling is not None and self.floor > self.ceiling:
            raise ValueError("floor cannot be greater than ceiling")
        return self


class PolicyCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    ok: bool
    limit: Decimal | int | None = None
    actual: Decimal | int | None = None


class PolicyEvaluation(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool
    checks: list[PolicyCheck] = Field(default_factory=list)

    @property
    def failed_checks(self) -> list[str]:
        return [check.name for check in self.checks if not check.ok]


def parse_policy(raw: Any) -> PricePolicy | None:
    """None means the rule carries no policy."""
    if raw is None or isinstance(raw, PricePolicy):
        return raw
    if not isinstance(raw, dict):
        raise PolicyError("Policy must be an object")
    try:
        return PricePolicy.model_validate(raw)
    except ValidationError as e:
        raise PolicyError(f"Invalid policy: {e.errors(include_url=False)}") from e
