"""
Power perp price formulas and the per-run market snapshot.

The power instrument tracks base^2. With normalisation factor nf and index
scale S the formulas below make mark == index exactly when the power spot
price equals the target price.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, localcontext

from flood.errors import InvalidNumber

_PRECISION = 60


def to_decimal(value, name: str = "value") -> Decimal:
    """Parse a numeric string, int, float or Decimal into a finite Decimal."""
    if isinstance(value, Decimal):
        parsed = value
    elif isinstance(value, bool):
        raise InvalidNumber(f"{name} must be numeric, got {value!r}")
    elif isinstance(value, (int, str)):
        try:
            parsed = Decimal(value.strip() if isinstance(value, str) else value)
        except InvalidOperation:
            raise InvalidNumber(f"{name} is not a number: {value!r}") from None
    elif isinstance(value, float):
        parsed = Decimal(repr(value))
    else:
        raise InvalidNumber(f"{name} must be numeric, got {type(value).__name__}")
    if not parsed.is_finite():
        raise InvalidNumber(f"{name} must be finite, got {value!r}")
    return parsed


def index_price(base_price) -> Decimal:
    base = to_decimal(base_price, "base_price")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return base * base


def target_price(base_price, normalisation_factor, index_scale) -> Decimal:
    """Power price (in base units) at which mark equals index."""
    base = to_decimal(base_price, "base_price")
    nf = to_decimal(normalisation_factor, "normalisation_factor")
    scale = to_decimal(index_scale, "index_scale")
    if scale == 0:
        raise InvalidNumber("index_scale must be non-zero")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return base * nf / scale


def mark_price(base_price, power_price, normalisation_factor, index_scale) -> Decimal:
    base = to_decimal(base_price, "base_price")
    power = to_decimal(power_price, "power_price")
    nf = to_decimal(normalisation_factor, "normalisation_factor")
    scale = to_decimal(index_scale, "index_scale")
    if nf == 0:
        raise InvalidNumber("normalisation_factor must be non-zero")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return base * power * scale / nf


def premium(mark, index) -> Decimal:
    mark = to_decimal(mark, "mark")
    index = to_decimal(index, "index")
    if index == 0:
        raise InvalidNumber("index must be non-zero")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return (mark - index) / index


def invert(price, name: str = "price") -> Decimal:
    price = to_decimal(price, name)
    if price == 0:
        raise InvalidNumber(f"cannot invert zero {name}")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return 1 / price


@dataclass(frozen=True)
class MarketSnapshot:
    """Prices and pool state shared by every account in one run."""

    base_price: Decimal
    power_price: Decimal
    normalisation_factor: Decimal
    index_scale: Decimal
    mark: Decimal
    index: Decimal
    target: Decimal
    premium: Decimal
    pool_spot_price: Decimal
    pool_target_price: Decimal
    current_tick: int
    tick_spacing: int

    @classmethod
    def build(
        cls,
        base_price,
        power_price,
        normalisation_factor,
        index_scale,
        current_tick: int,
        tick_spacing: int,
        invert_prices: bool = True,
    ) -> "MarketSnapshot":
        base = to_decimal(base_price, "base_price")
        power = to_decimal(power_price, "power_price")
        nf = to_decimal(normalisation_factor, "normalisation_factor")
        scale = to_decimal(index_scale, "index_scale")

        mark = mark_price(base, power, nf, scale)
        index = index_price(base)
        target = target_price(base, nf, scale)

        # The pool quotes base per power when inverted
        if invert_prices:
            pool_spot = invert(power, "power_price")
            pool_target = invert(target, "target_price")
        else:
            pool_spot, pool_target = power, target

        return cls(
            base_price=base,
            power_price=power,
            normalisation_factor=nf,
            index_scale=scale,
            mark=mark,
            index=index,
            target=target,
            premium=premium(mark, index),
            pool_spot_price=pool_spot,
            pool_target_price=pool_target,
            current_tick=int(current_tick),
            tick_spacing=int(tick_spacing),
        )

    def summary(self) -> dict:
        return {
            "base_price": str(self.base_price),
            "power_price": str(self.power_price),
            "normalisation_factor": str(self.normalisation_factor),
            "mark_price": str(self.mark),
            "index_price": str(self.index),
            "target_price": str(self.target),
            "premium": str(self.premium),
            "pool_spot_price": str(self.pool_spot_price),
            "pool_target_price": str(self.pool_target_price),
            "current_tick": self.current_tick,
            "tick_spacing": self.tick_spacing,
        }
