from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from pricehub.core.errors import TransformError


class _TransformBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    floor: int | None = Field(default=None, ge=0)
    ceiling: int | None = Field(default=None, ge=0, validation_alias=AliasChoices("ceiling", "ceil"))

    @model_validator(mode="after")
    def floor_below_ceiling(self):
        if self.floor is not None and self.ceiling is not None and self.floor > self.ceiling:
            raise ValueError("floor cannot be greater than ceiling")
        return self


class PercentageTransform(_TransformBase):
    """value is a percent delta: -10 is a 10% discount, 20 a 20% markup."""
    type: Literal["percentage"]
    value: Decimal = Field(gt=-100)


class AbsoluteTransform(_TransformBase):
    """value is added to the price in minor units (negative to decrease)."""
    type: Literal["absolute"]
    value: int


class FixedTransform(_TransformBase):
    type: Literal["fixed"]
    value: int = Field(ge=0)


class MultiplyTransform(_TransformBase):
    type: Literal["multiply"]
    factor: Decimal = Field(gt=0)


Transform = Annotated[
    Union[PercentageTransform, AbsoluteTransform, FixedTransform, MultiplyTransform],
    Field(discriminator="type"),
]

_transform_adapter: TypeAdapter[Transform] = TypeAdapter(Transform)


def parse_transform(raw: Any) -> Transform:
    if isinstance(raw, _TransformBase):
        return raw
    if not isinstance(raw, dict):
        raise TransformError("Transform must be an object")
    try:
        return _transform_adapter.validate_python(raw)
    except ValidationError as e:
        raise TransformError(f"Invalid transform: {e.errors(include_url=False)}") from e
