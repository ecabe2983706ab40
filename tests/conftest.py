import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from flood import config as flood_config
from flood.chain_reader import Coin, PoolRef, PoolState, Position, PowerConfig, PowerState
from flood.errors import QueryError
from flood.grants import Grant

AGENT = "osmo1agentxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxx"
ALICE = "osmo1alicexxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxx"
BOB = "osmo1bobxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxx"

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_config(tmp_path, **overrides):
    settings = {k: getattr(flood_config, k) for k in dir(flood_config) if k.isupper()}
    settings.update(
        LCD_URL="http://lcd.test",
        POWER_CONTRACT_ADDRESS="osmo1powercontract",
        SPREAD="0.05",
        DRY_RUN=False,
        WITHDRAW_ON_TICK_FAILURE=True,
        ISOLATE_ACCOUNT_FAILURES=False,
        INVERT_PRICES=True,
        JOURNAL_FILE=str(tmp_path / "runs.jsonl"),
        LOG_DIR=str(tmp_path),
    )
    settings.update(overrides)
    return SimpleNamespace(**settings)


@pytest.fixture
def cfg(tmp_path):
    return make_config(tmp_path)


def generic_grant(granter, msg, expiration=None, grantee=AGENT):
    return Grant(
        granter=granter,
        grantee=grantee,
        type_url=flood_config.GENERIC_AUTHORIZATION_TYPE_URL,
        payload={"msg": msg},
        expiration=expiration,
    )


def full_grants(granter, expiration=None):
    return [
        generic_grant(granter, flood_config.MSG_CREATE_POSITION, expiration),
        generic_grant(granter, flood_config.MSG_WITHDRAW_POSITION, expiration),
    ]


def make_position(position_id, owner, lower=-4_100_000, upper=-3_800_000, assets=()):
    return Position(
        position_id=position_id,
        address=owner,
        pool_id=2,
        lower_tick=lower,
        upper_tick=upper,
        liquidity=Decimal("1234.5678"),
        assets=tuple(assets),
    )


class FakeReader:
    """In-memory chain: base 1.5, power 1.6, nf 1, scale 1, tick -3.5M."""

    def __init__(self, grants=None, positions=None, balances=None, current_tick=-3_500_000):
        self.grants = grants or []
        self.positions = positions or {}
        self.balances = balances or {}
        self.current_tick = current_tick
        self.failing_accounts = set()
        self.calls = []

    def get_grants(self, grantee):
        self.calls.append(("grants", grantee))
        return list(self.grants)

    def get_power_config(self, contract):
        return PowerConfig(
            base_denom="uosmo",
            power_denom="upower",
            base_pool=PoolRef(1, "uusdc"),
            power_pool=PoolRef(2, "uosmo"),
            index_scale=1,
        )

    def get_power_state(self, contract):
        return PowerState(normalisation_factor=Decimal("1"))

    def get_spot_prices(self, power_config):
        return Decimal("1.5"), Decimal("1.6")

    def get_pool(self, pool_id):
        return PoolState(
            pool_id=pool_id,
            token0="upower",
            token1="uosmo",
            current_tick=self.current_tick,
            tick_spacing=100,
            current_sqrt_price="0.8",
            current_tick_liquidity="1000",
        )

    def get_positions(self, address, pool_id):
        if address in self.failing_accounts:
            raise QueryError(f"positions for {address} unavailable")
        return list(self.positions.get(address, []))

    def get_balance(self, address, denom):
        return self.balances.get((address, denom), 0)


class FakeBroadcaster:
    def __init__(self, address=AGENT, error=None):
        self.address = address
        self.error = error
        self.submitted = []

    def resolve_address(self):
        return self.address

    def submit(self, grantee, messages):
        if self.error:
            raise self.error
        self.submitted.append((grantee, list(messages)))
        return "TXHASH"


@pytest.fixture
def funded_reader():
    return FakeReader(
        grants=full_grants(ALICE) + full_grants(BOB),
        positions={ALICE: [make_position(7, ALICE, assets=[Coin("uosmo", 500)])]},
        balances={
            (ALICE, "upower"): 1_000,
            (ALICE, "uosmo"): 2_000,
            (BOB, "upower"): 3_000,
            (BOB, "uosmo"): 4_000,
        },
    )


def read_journal(path):
    with open(path) as f:
        return [json.loads(line) for line in f]


def later(seconds):
    return NOW + timedelta(seconds=seconds)
