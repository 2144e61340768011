"""
Selector grammar.

A selector is a JSON predicate tree. Each node kind is a pydantic model with a
``matches`` method; ``parse_selector`` dispatches on the node's key and rejects
unknown kinds, unknown keys and unknown operators with ``SelectorError``.

    {"all": true}
    {"tag": "clearance"}                      {"tag": ["a", "b"]}
    {"sku": ["SKU-1", "SKU-2"]}
    {"price": {"gte": 1000, "lt": 5000, "currency": "USD"}}
    {"field": "vendor", "op": "startsWith", "value": "Acme"}
    {"and": [...]}                            {"or": [...]}

Evaluation never raises: unknown fields and incomparable values simply do not match.
"""
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from pricehub.core.errors import SelectorError
from pricehub.schemas.pricing import _MISSING, CandidateProduct

MAX_DEPTH = 16

FieldOp = Literal["eq", "ne", "gt", "gte", "lt", "lte", "in", "contains", "startsWith", "endsWith"]


class _Predicate(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    def matches(self, candidate: CandidateProduct) -> bool:
        raise NotImplementedError

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MatchAll(_Predicate):
    all: Literal[True]

    def matches(self, candidate: CandidateProduct) -> bool:
        return True


class TagPredicate(_Predicate):
    tag: list[str] = Field(min_length=1)

    @field_validator("tag", mode="before")
    @classmethod
    def single_tag_as_list(cls, value: Any) -> Any:
        return [value] if isinstance(value, str) else value

    def matches(self, candidate: CandidateProduct) -> bool:
        return any(tag in candidate.tags for tag in self.tag)


class SkuPredicate(_Predicate):
    sku: list[str] = Field(min_length=1)

    @field_validator("sku", mode="before")
    @classmethod
    def single_sku_as_list(cls, value: Any) -> Any:
        return [value] if isinstance(value, str) else value

    def matches(self, candidate: CandidateProduct) -> bool:
        return candidate.sku in self.sku


class PriceBounds(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    gt: int | None = None
    gte: int | None = None
    lt: int | None = None
    lte: int | None = None
    eq: int | None = None
    currency: str | None = None

    @model_validator(mode="after")
    def require_a_bound(self):
        if all(v is None for v in (self.gt, self.gte, self.lt, self.lte, self.eq, self.currency)):
            raise ValueError("price predicate needs at least one bound or a currency")
        return self


class PricePredicate(_Predicate):
    price: PriceBounds

    def matches(self, candidate: CandidateProduct) -> bool:
        amount = candidate.current_price
        if amount is None:
            return False
        b = self.price
        if b.currency is not None and candidate.currency != b.currency:
            return False
        if b.gt is not None and not amount > b.gt:
            return False
        if b.gte is not None and not amount >= b.gte:
            return False
        if b.lt is not None and not amount < b.lt:
            return False
        if b.lte is not None and not amount <= b.lte:
            return False
        if b.eq is not None and amount != b.eq:
            return False
        return True


def compare(op: str, actual: Any, expected: Any) -> bool:
    if actual is _MISSING:
        return False
    try:
        if op == "eq":
            return actual == expected
        if op == "ne":
            return actual != expected
        if op == "gt":
            return actual is not None and actual > expected
        if op == "gte":
            return actual is not None and actual >= expected
        if op == "lt":
            return actual is not None and actual < expected
        if op == "lte":
            return actual is not None and actual <= expected
        if op == "in":
            options = expected if isinstance(expected, (list, tuple)) else [expected]
            return actual in options
        if actual is None:
            return False
        if op == "contains":
            if isinstance(actual, (list, tuple)):
                return expected in actual
            return str(expected) in str(actual)
        if op == "startsWith":
            return str(actual).startswith(str(expected))
        if op == "endsWith":
            return str(actual).endswith(str(expected))
    except TypeError:
        return False
    return False


class FieldPredicate(_Predicate):
    field: str = Field(min_length=1)
    op: FieldOp
    value: Any = None

    def matches(self, candidate: CandidateProduct) -> bool:
        return compare(self.op, candidate.field_value(self.field), self.value)


class AndPredicate(_Predicate):
    and_: list["Selector"] = Field(alias="and")

    def matches(self, candidate: CandidateProduct) -> bool:
        return all(child.matches(candidate) for child in self.and_)


class OrPredicate(_Predicate):
    or_: list["Selector"] = Field(alias="or")

    def matches(self, candidate: CandidateProduct) -> bool:
        return any(child.matches(candidate) for child in self.or_)


Selector = Union[MatchAll, TagPredicate, SkuPredicate, PricePredicate, FieldPredicate, AndPredicate, OrPredicate]

AndPredicate.model_rebuild()
OrPredicate.model_rebuild()

_NODE_KINDS: dict[str, type[_Predicate]] = {
    "all": MatchAll,
    "tag": TagPredicate,
    "sku": SkuPredicate,
    "price": PricePredicate,
    "field": FieldPredicate,
    "and": AndPredicate,
    "or": OrPredicate,
}


def _parse_node(raw: Any, depth: int) -> Selector:
    if depth > MAX_DEPTH:
        raise SelectorError(f"Selector nesting deeper than {MAX_DEPTH}")
    if not isinstance(raw, dict) or not raw:
        raise SelectorError("Selector node must be a non-empty object")

    kinds = [key for key in raw if key in _NODE_KINDS]
    if len(kinds) != 1:
        raise SelectorError(f"Cannot determine selector node kind from keys {sorted(raw)}")
    kind = kinds[0]

    if kind in ("and", "or"):
        if len(raw) != 1:
            raise SelectorError(f"'{kind}' node cannot carry extra keys")
        children = raw[kind]
        if not isinstance(children, list):
            raise SelectorError(f"'{kind}' expects a list of selectors")
        parsed = [_parse_node(child, depth + 1) for child in children]
        return _NODE_KINDS[kind](**{kind: parsed})

    try:
        return _NODE_KINDS[kind].model_validate(raw)
    except ValidationError as e:
        raise SelectorError(f"Invalid '{kind}' selector: {e.errors(include_url=False)}") from e


def parse_selector(raw: Any) -> Selector:
    """Parse a stored/submitted selector; raises SelectorError for anything unrecognized."""
    if isinstance(raw, _Predicate):
        return raw
    return _parse_node(raw, depth=1)
