"""
Tradable instruments and the built-in catalog.

An Instrument is immutable. When no display symbol is supplied one is derived
from the first three letters of the name, uppercased.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

DEFAULT_BASE_PRICE = 500


@dataclass(frozen=True)
class Instrument:
    name: str
    symbol: str = ""
    base_price: int = DEFAULT_BASE_PRICE

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Instrument name must not be empty")
        if self.base_price < 1:
            raise ValueError(f"base_price must be >= 1, got {self.base_price}")
        if not self.symbol:
            object.__setattr__(self, "symbol", derive_symbol(self.name))

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "symbol": self.symbol,
            "base_price": self.base_price,
        }


def derive_symbol(name: str) -> str:
    return name[:3].upper()


CATALOG: Dict[str, Instrument] = {
    inst.name: inst
    for inst in [
        Instrument("Zomato", "ZOM", 500),
        Instrument("Reliance", "REL", 500),
        Instrument("TCS", "TCS", 500),
        Instrument("Infosys", "INF", 500),
        Instrument("HDFC Bank", "HDF", 500),
        Instrument("Tata Motors", "TAT", 500),
    ]
}


def get_instrument(name: str, default_base_price: Optional[int] = None) -> Instrument:
    """Look up a catalog instrument, or build an ad-hoc one for unknown names."""
    inst = CATALOG.get(name)
    if inst is not None:
        return inst
    return Instrument(name, base_price=default_base_price or DEFAULT_BASE_PRICE)


def list_instruments() -> List[dict]:
    return [inst.to_dict() for inst in CATALOG.values()]
