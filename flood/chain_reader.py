"""
ChainReader: reads grants, power contract state, prices, pool and positions
from an Osmosis LCD (REST) endpoint.
"""

import base64
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import requests

from flood.errors import QueryError, TransportError
from flood.grants import Grant
from flood.pricing import to_decimal

logger = logging.getLogger(__name__)

_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 chain timestamp (nanosecond precision, Z suffix)."""
    text = value.strip().replace("Z", "+00:00")
    # datetime only keeps microseconds
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Coin:
    denom: str
    amount: int

    @classmethod
    def from_json(cls, data: dict) -> "Coin":
        return cls(denom=data["denom"], amount=int(data["amount"]))

    def to_json(self) -> dict:
        return {"denom": self.denom, "amount": str(self.amount)}


@dataclass(frozen=True)
class Position:
    position_id: int
    address: str
    pool_id: int
    lower_tick: int
    upper_tick: int
    liquidity: Decimal
    assets: tuple = field(default_factory=tuple)

    @classmethod
    def from_json(cls, data: dict) -> "Position":
        """Build from one entry of the positions query (position + assets)."""
        pos = data["position"]
        assets = tuple(
            Coin.from_json(data[key])
            for key in ("asset0", "asset1")
            if data.get(key)
        )
        return cls(
            position_id=int(pos["position_id"]),
            address=pos["address"],
            pool_id=int(pos["pool_id"]),
            lower_tick=int(pos["lower_tick"]),
            upper_tick=int(pos["upper_tick"]),
            liquidity=to_decimal(pos["liquidity"], "liquidity"),
            assets=assets,
        )


@dataclass(frozen=True)
class PoolState:
    pool_id: int
    token0: str
    token1: str
    current_tick: int
    tick_spacing: int
    current_sqrt_price: str
    current_tick_liquidity: str

    @property
    def signature(self) -> tuple:
        """Changes whenever a swap moves the pool. Liquidity changes alone do not count."""
        return (self.current_sqrt_price, self.current_tick)


@dataclass(frozen=True)
class PoolRef:
    pool_id: int
    quote_denom: str


@dataclass(frozen=True)
class PowerConfig:
    base_denom: str
    power_denom: str
    base_pool: PoolRef
    power_pool: PoolRef
    index_scale: int

    @classmethod
    def from_json(cls, data: dict) -> "PowerConfig":
        return cls(
            base_denom=data["base_denom"],
            power_denom=data["power_denom"],
            base_pool=PoolRef(int(data["base_pool"]["id"]), data["base_pool"]["quote_denom"]),
            power_pool=PoolRef(int(data["power_pool"]["id"]), data["power_pool"]["quote_denom"]),
            index_scale=int(data["index_scale"]),
        )


@dataclass(frozen=True)
class PowerState:
    normalisation_factor: Decimal

    @classmethod
    def from_json(cls, data: dict) -> "PowerState":
        return cls(
            normalisation_factor=to_decimal(
                data["normalisation_factor"], "normalisation_factor"
            )
        )


class ChainReader:
    """Reads Osmosis chain state via the LCD REST API."""

    def __init__(self, config, session: Optional[requests.Session] = None):
        self.config = config
        self.base_url = config.LCD_URL.rstrip("/")
        self.timeout = config.REQUEST_TIMEOUT
        self.session = session or requests.Session()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _get(self, path: str, params: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.error("LCD unreachable: GET %s: %s", path, e)
            raise TransportError(f"GET {path}: {e}") from e
        except requests.RequestException as e:
            logger.error("LCD request failed: GET %s: %s", path, e)
            raise QueryError(f"GET {path}: {e}") from e

        if resp.status_code // 100 != 2:
            logger.error("LCD returned %d for GET %s: %s", resp.status_code, path, resp.text[:200])
            raise QueryError(f"GET {path}: HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            logger.error("LCD returned invalid JSON for GET %s", path)
            raise QueryError(f"GET {path}: invalid JSON") from e

    def _get_paginated(self, path: str, key: str, params: Optional[dict] = None) -> list:
        items: list = []
        params = dict(params or {})
        while True:
            body = self._get(path, params)
            items.extend(body.get(key) or [])
            next_key = (body.get("pagination") or {}).get("next_key")
            if not next_key:
                return items
            params["pagination.key"] = next_key

    # ------------------------------------------------------------------
    # Authz
    # ------------------------------------------------------------------

    def get_grants(self, grantee: str) -> list[Grant]:
        """All grants naming grantee, across every page."""
        try:
            raw_grants = self._get_paginated(
                f"/cosmos/authz/v1beta1/grants/grantee/{grantee}", "grants"
            )
        except QueryError as e:
            if isinstance(e, TransportError):
                raise
            raise TransportError(f"failed to fetch grants: {e}") from e

        grants = []
        for raw in raw_grants:
            authorization = dict(raw.get("authorization") or {})
            type_url = authorization.pop("@type", "")
            expiration = None
            if raw.get("expiration"):
                try:
                    expiration = parse_timestamp(raw["expiration"])
                except ValueError:
                    logger.warning(
                        "Dropping grant from %s with unparsable expiration %r",
                        raw.get("granter"),
                        raw["expiration"],
                    )
                    continue
            grants.append(
                Grant(
                    granter=raw.get("granter", ""),
                    grantee=raw.get("grantee", grantee),
                    type_url=type_url,
                    payload=authorization or None,
                    expiration=expiration,
                )
            )
        logger.debug("Fetched %d grant(s) for grantee=%s", len(grants), grantee)
        return grants

    # ------------------------------------------------------------------
    # Power contract
    # ------------------------------------------------------------------

    def _smart_query(self, contract: str, query: dict) -> dict:
        encoded = base64.b64encode(json.dumps(query).encode()).decode()
        body = self._get(f"/cosmwasm/wasm/v1/contract/{contract}/smart/{encoded}")
        try:
            return body["data"]
        except KeyError as e:
            raise QueryError(f"smart query {query} returned no data") from e

    def get_power_config(self, contract: str) -> PowerConfig:
        data = self._smart_query(contract, {"config": {}})
        try:
            return PowerConfig.from_json(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Unexpected power config shape: %s", data)
            raise QueryError(f"malformed power config: {e}") from e

    def get_power_state(self, contract: str) -> PowerState:
        data = self._smart_query(contract, {"state": {}})
        try:
            return PowerState.from_json(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Unexpected power state shape: %s", data)
            raise QueryError(f"malformed power state: {e}") from e

    # ------------------------------------------------------------------
    # Pools and prices
    # ------------------------------------------------------------------

    def get_spot_price(self, pool_id: int, base_denom: str, quote_denom: str) -> Decimal:
        body = self._get(
            f"/osmosis/poolmanager/v1beta1/pools/{pool_id}/prices",
            {"base_asset_denom": base_denom, "quote_asset_denom": quote_denom},
        )
        try:
            return to_decimal(body["spot_price"], "spot_price")
        except (KeyError, ValueError) as e:
            raise QueryError(f"pool {pool_id}: no spot price in {body}") from e

    def get_spot_prices(self, power_config: PowerConfig) -> tuple[Decimal, Decimal]:
        """(base price, power price) from the base and power pools."""
        base_price = self.get_spot_price(
            power_config.base_pool.pool_id,
            power_config.base_denom,
            power_config.base_pool.quote_denom,
        )
        power_price = self.get_spot_price(
            power_config.power_pool.pool_id,
            power_config.power_denom,
            power_config.power_pool.quote_denom,
        )
        return base_price, power_price

    def get_pool(self, pool_id: int) -> PoolState:
        body = self._get(f"/osmosis/poolmanager/v1beta1/pools/{pool_id}")
        pool = body.get("pool") or {}
        try:
            return PoolState(
                pool_id=int(pool.get("id", pool_id)),
                token0=pool["token0"],
                token1=pool["token1"],
                current_tick=int(pool["current_tick"]),
                tick_spacing=int(pool.get("tick_spacing") or self.config.TICK_SPACING),
                current_sqrt_price=str(pool.get("current_sqrt_price", "")),
                current_tick_liquidity=str(pool.get("current_tick_liquidity", "")),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Pool %d is not a concentrated-liquidity pool: %s", pool_id, pool)
            raise QueryError(f"pool {pool_id}: {e}") from e

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_positions(self, address: str, pool_id: int) -> list[Position]:
        raw_positions = self._get_paginated(
            f"/osmosis/concentratedliquidity/v1beta1/positions/{address}",
            "positions",
            {"pool_id": pool_id},
        )
        try:
            return [Position.from_json(p) for p in raw_positions]
        except (KeyError, TypeError, ValueError) as e:
            raise QueryError(f"malformed positions for {address}: {e}") from e

    def get_balance(self, address: str, denom: str) -> int:
        body = self._get(
            f"/cosmos/bank/v1beta1/balances/{address}/by_denom", {"denom": denom}
        )
        balance = body.get("balance") or {}
        try:
            return int(balance.get("amount", 0))
        except (TypeError, ValueError) as e:
            raise QueryError(f"malformed balance for {address}: {balance}") from e
