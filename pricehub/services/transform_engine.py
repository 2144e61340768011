from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from pricehub.schemas.pricing import PriceSnapshot, TransformResult, TransformTrace
from pricehub.schemas.transform import (
    AbsoluteTransform,
    FixedTransform,
    MultiplyTransform,
    PercentageTransform,
    Transform,
    parse_transform,
)

_HUNDRED = Decimal(100)


def round_minor_units(value: Decimal) -> int:
    """Round half-up to a whole minor unit; the only rounding rule the engine uses."""
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _base_amount(amount: int, transform: Transform) -> int:
    if isinstance(transform, PercentageTransform):
        return round_minor_units(Decimal(amount) * (_HUNDRED + transform.value) / _HUNDRED)
    if isinstance(transform, MultiplyTransform):
        return round_minor_units(Decimal(amount) * transform.factor)
    if isinstance(transform, AbsoluteTransform):
        return amount + transform.value
    if isinstance(transform, FixedTransform):
        return transform.value
    raise TypeError(f"Unsupported transform: {type(transform).__name__}")


def _clamp(amount: int, transform: Transform, applied: list[str]) -> int:
    if transform.floor is not None and amount < transform.floor:
        amount = transform.floor
        applied.append(f"floor:{transform.floor}")
    if transform.ceiling is not None and amount > transform.ceiling:
        amount = transform.ceiling
        applied.append(f"ceiling:{transform.ceiling}")
    if amount < 0:
        amount = 0
        applied.append("non_negative")
    return amount


def apply_transform(before: PriceSnapshot, transform: Transform | dict[str, Any]) -> TransformResult:
    """
    Compute the new price for one snapshot.

    Base computation first, then floor, then ceiling. Compare-at is carried over
    untouched. Raises TransformError for an unparseable transform definition.
    """
    transform = parse_transform(transform)
    applied: list[str] = []

    intermediate = _base_amount(before.amount, transform)
    final = _clamp(intermediate, transform, applied)

    after = PriceSnapshot(amount=final, currency=before.currency, compare_at=before.compare_at)
    changed = after.amount != before.amount or after.compare_at != before.compare_at

    return TransformResult(
        before=before,
        after=after,
        changed=changed,
        reason=None if changed else "Price unchanged after transform",
        trace=TransformTrace(
            kind=transform.type,
            input_amount=before.amount,
            intermediate_amount=intermediate,
            floor=transform.floor,
            ceiling=transform.ceiling,
            applied_constraints=applied,
            final_amount=final,
        ),
    )
