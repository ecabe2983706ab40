"""
Tick math for the Osmosis concentrated-liquidity pool and the buy/sell
tick-range calculator used on every rebalance.

Osmosis ticks are geometric per decade: each power of ten is split into
9,000,000 ticks of equal additive price increment, with tick 0 at price 1
and an increment of 10^-6 between prices 1 and 10.
"""

import logging
from decimal import Decimal, localcontext
from typing import Callable, NamedTuple

from flood.errors import InvalidNumber, InvalidTickOrder, PriceOutOfRange
from flood.pricing import to_decimal

logger = logging.getLogger(__name__)

EXPONENT_AT_PRICE_ONE = -6
TICKS_PER_DECADE = 9 * 10 ** (-EXPONENT_AT_PRICE_ONE)  # 9,000,000

MIN_SPOT_PRICE = Decimal("1e-30")
MAX_SPOT_PRICE = Decimal("1e38")
MIN_INITIALIZED_TICK = -270_000_000
MAX_TICK = 342_000_000

# Outer edge is pushed this many spacings outward when it lands next to the current tick
OUTER_WIDEN_SPACINGS = 3

_PRECISION = 80


class TickRange(NamedTuple):
    """Four spacing-aligned boundaries of the buy and sell positions."""

    outer_low: int
    inner_low: int
    inner_high: int
    outer_high: int

    @property
    def buy_range(self) -> tuple[int, int]:
        return self.outer_low, self.inner_low

    @property
    def sell_range(self) -> tuple[int, int]:
        return self.inner_high, self.outer_high


def price_to_tick(price) -> int:
    """Convert a spot price to the (unrounded) tick the pool would assign it.

    Matches the chain: price 1 -> 0, 10 -> 9,000,000, 0.1 -> -9,000,000.
    """
    price = to_decimal(price, "price")
    if price <= 0:
        raise InvalidNumber(f"price must be positive, got {price}")
    if price < MIN_SPOT_PRICE or price > MAX_SPOT_PRICE:
        raise PriceOutOfRange(
            f"price {price} outside [{MIN_SPOT_PRICE}, {MAX_SPOT_PRICE}]"
        )
    if price == 1:
        return 0

    with localcontext() as ctx:
        ctx.prec = _PRECISION
        # adjusted() is floor(log10(price)) for any positive finite Decimal
        exponent = price.adjusted()
        decade_start = Decimal(1).scaleb(exponent)
        ticks_into_decade = (price - decade_start).scaleb(-(EXPONENT_AT_PRICE_ONE + exponent))
        return TICKS_PER_DECADE * exponent + int(ticks_into_decade)


def tick_to_price(tick: int) -> Decimal:
    """Inverse of price_to_tick for ticks on the grid."""
    if tick == 0:
        return Decimal(1)
    exponent = tick // TICKS_PER_DECADE
    ticks_into_decade = tick - TICKS_PER_DECADE * exponent
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        increment = Decimal(1).scaleb(EXPONENT_AT_PRICE_ONE + exponent)
        return Decimal(1).scaleb(exponent) + ticks_into_decade * increment


def round_down_to_spacing(tick: int, tick_spacing: int) -> int:
    """Round a tick toward negative infinity onto a multiple of tick_spacing."""
    if tick_spacing <= 0:
        raise InvalidNumber(f"tick spacing must be positive, got {tick_spacing}")
    rounded = tick - tick % tick_spacing
    if rounded < MIN_INITIALIZED_TICK:
        raise PriceOutOfRange(
            f"tick {rounded} below minimum initialized tick {MIN_INITIALIZED_TICK}"
        )
    return rounded


def _price_to_spaced_tick(price, tick_spacing: int, to_tick: Callable) -> int:
    return round_down_to_spacing(to_tick(price), tick_spacing)


def adjust_for_current_tick(
    is_buy: bool, current_tick: int, lower_tick: int, upper_tick: int, tick_spacing: int
) -> tuple[int, int]:
    """Keep one side's range off the active tick.

    A range that brackets current_tick has its inner edge pulled one spacing
    clear of it. An outer edge left within one spacing of current_tick is
    moved OUTER_WIDEN_SPACINGS spacings further away from it (outward when
    it sits exactly on it).
    """
    if lower_tick <= current_tick <= upper_tick:
        logger.debug(
            "%s range [%d, %d] brackets current tick %d",
            "buy" if is_buy else "sell",
            lower_tick,
            upper_tick,
            current_tick,
        )
        if is_buy:
            upper_tick = current_tick - tick_spacing
        else:
            lower_tick = current_tick + tick_spacing

    lower_tick = round_down_to_spacing(lower_tick, tick_spacing)
    upper_tick = round_down_to_spacing(upper_tick, tick_spacing)

    outer_tick = lower_tick if is_buy else upper_tick
    if abs(current_tick - outer_tick) < tick_spacing:
        if outer_tick == current_tick:
            direction = -1 if is_buy else 1
        else:
            direction = 1 if outer_tick > current_tick else -1
        outer_tick += direction * OUTER_WIDEN_SPACINGS * tick_spacing
        if is_buy:
            lower_tick = outer_tick
        else:
            upper_tick = outer_tick

    return lower_tick, upper_tick


def compute_tick_range(
    spot_price,
    target_price,
    spread,
    current_tick: int,
    tick_spacing: int,
    price_to_tick: Callable = price_to_tick,
) -> TickRange:
    """Derive the buy (below) and sell (above) position ranges.

    The larger of the two prices anchors the sell side and the smaller the
    buy side, so the result does not depend on which one is spot. spread
    pushes the outer edges to buy * (1 - spread) and sell * (1 + spread).

    Raises InvalidTickOrder unless outer_low < inner_low < inner_high < outer_high.
    """
    spot_price = to_decimal(spot_price, "spot_price")
    target_price = to_decimal(target_price, "target_price")
    spread = to_decimal(spread, "spread")
    if spot_price <= 0 or target_price <= 0:
        raise InvalidNumber(
            f"prices must be positive, got spot={spot_price} target={target_price}"
        )
    if not (0 <= spread < 1):
        raise InvalidNumber(f"spread must be in [0, 1), got {spread}")
    if tick_spacing <= 0:
        raise InvalidNumber(f"tick spacing must be positive, got {tick_spacing}")

    sell_price = max(spot_price, target_price)
    buy_price = min(spot_price, target_price)

    with localcontext() as ctx:
        ctx.prec = _PRECISION
        buy_lower_bound = buy_price * (1 - spread)
        sell_upper_bound = sell_price * (1 + spread)

    buy_tick = _price_to_spaced_tick(buy_price, tick_spacing, price_to_tick)
    low_tick = _price_to_spaced_tick(buy_lower_bound, tick_spacing, price_to_tick)
    sell_tick = _price_to_spaced_tick(sell_price, tick_spacing, price_to_tick)
    high_tick = _price_to_spaced_tick(sell_upper_bound, tick_spacing, price_to_tick)

    logger.debug(
        "raw ticks buy=%d low=%d sell=%d high=%d (buy_price=%s sell_price=%s spread=%s)",
        buy_tick,
        low_tick,
        sell_tick,
        high_tick,
        buy_price,
        sell_price,
        spread,
    )

    low_tick, buy_tick = adjust_for_current_tick(
        True, current_tick, low_tick, buy_tick, tick_spacing
    )
    sell_tick, high_tick = adjust_for_current_tick(
        False, current_tick, sell_tick, high_tick, tick_spacing
    )

    if not (low_tick < buy_tick < sell_tick < high_tick):
        raise InvalidTickOrder((low_tick, buy_tick, sell_tick, high_tick))

    return TickRange(low_tick, buy_tick, sell_tick, high_tick)
