from abc import ABC, abstractmethod
from decimal import Decimal

from pydantic import BaseModel

from pricehub.core.errors import ConnectorError

# Digits after the decimal point; anything not listed uses 2
CURRENCY_EXPONENTS: dict[str, int] = {
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "CLP": 0,
    "ISK": 0,
    "BHD": 3,
    "KWD": 3,
    "JOD": 3,
    "OMR": 3,
    "TND": 3,
}


def currency_exponent(currency: str | None) -> int:
    return CURRENCY_EXPONENTS.get((currency or "").upper(), 2)


def format_minor_units(amount: int, currency: str | None = "USD") -> str:
    """Minor units to the decimal string platforms expect, e.g. 1999 USD -> "19.99", 500 JPY -> "500"."""
    exponent = currency_exponent(currency)
    if exponent == 0:
        return str(amount)
    return str((Decimal(amount) / (Decimal(10) ** exponent)).quantize(Decimal(1).scaleb(-exponent)))


class PriceUpdateResult(BaseModel):
    success: bool
    external_ref: str | None = None
    error: str | None = None


class PlatformConnector(ABC):
    """External commerce platform that can change a variant's price."""
    platform: str = "unknown"

    @abstractmethod
    async def test_connection(self) -> bool:
        ...

    @abstractmethod
    async def update_price(self, external_ref: str, new_amount: int, new_compare_at: int | None = None, *,
                           currency: str | None = None, idempotency_key: str | None = None) -> PriceUpdateResult:
        ...

    async def close(self) -> None:
        return None


class ConnectorRegistry:
    def __init__(self):
        self._connectors: dict[str, PlatformConnector] = {}

    def register(self, platform: str, connector: PlatformConnector) -> None:
        self._connectors[platform] = connector

    def get(self, platform: str) -> PlatformConnector:
        connector = self._connectors.get(platform)
        if connector is None:
            raise ConnectorError(f"No connector configured for platform '{platform}'")
        return connector

    def platforms(self) -> list[str]:
        return sorted(self._connectors)

    async def close(self) -> None:
        for connector in self._connectors.values():
            await connector.close()
