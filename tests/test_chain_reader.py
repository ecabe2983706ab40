"""Tests for the LCD reader, against a canned requests session."""

import base64
import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import requests

from conftest import AGENT, ALICE
from flood.chain_reader import ChainReader, Coin, PoolRef, parse_timestamp
from flood.errors import QueryError, TransportError


class FakeResponse:
    def __init__(self, body=None, status_code=200, text=None):
        self.body = body
        self.status_code = status_code
        self.text = text if text is not None else json.dumps(body)

    def json(self):
        if self.body is None:
            raise ValueError("no JSON")
        return self.body


class FakeSession:
    """Serves queued responses per URL path and records every request."""

    def __init__(self, routes=None):
        self.routes = {path: list(responses) for path, responses in (routes or {}).items()}
        self.requests = []

    def get(self, url, params=None, timeout=None):
        path = url.replace("http://lcd.test", "", 1)
        self.requests.append((path, dict(params or {})))
        queue = self.routes[path]
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response


def reader_for(cfg, routes):
    session = FakeSession(routes)
    return ChainReader(cfg, session=session), session


GRANTS_PATH = f"/cosmos/authz/v1beta1/grants/grantee/{AGENT}"


def raw_grant(granter, msg, expiration="2030-01-01T00:00:00.123456789Z"):
    return {
        "granter": granter,
        "grantee": AGENT,
        "authorization": {
            "@type": "/cosmos.authz.v1beta1.GenericAuthorization",
            "msg": msg,
        },
        "expiration": expiration,
    }


# ----------------------------------------------------------------------
# Timestamps
# ----------------------------------------------------------------------


def test_parse_timestamp_truncates_nanoseconds():
    parsed = parse_timestamp("2030-01-01T00:00:00.123456789Z")
    assert parsed == datetime(2030, 1, 1, 0, 0, 0, 123456, tzinfo=timezone.utc)


def test_parse_timestamp_pads_short_fraction():
    parsed = parse_timestamp("2030-01-01T00:00:00.5Z")
    assert parsed.microsecond == 500000


def test_parse_timestamp_without_fraction():
    assert parse_timestamp("2024-06-01T12:00:00Z") == datetime(2024, 6, 1, 12, tzinfo=timezone.utc)


def test_parse_timestamp_rejects_garbage():
    with pytest.raises(ValueError):
        parse_timestamp("tomorrow")


# ----------------------------------------------------------------------
# Grants
# ----------------------------------------------------------------------


def test_get_grants_follows_pagination(cfg):
    reader, session = reader_for(
        cfg,
        {
            GRANTS_PATH: [
                FakeResponse(
                    {
                        "grants": [raw_grant(ALICE, "/a")],
                        "pagination": {"next_key": "NEXT", "total": "2"},
                    }
                ),
                FakeResponse(
                    {"grants": [raw_grant(ALICE, "/b")], "pagination": {"next_key": None}}
                ),
            ]
        },
    )
    grants = reader.get_grants(AGENT)

    assert [g.payload["msg"] for g in grants] == ["/a", "/b"]
    assert session.requests[0][1] == {}
    assert session.requests[1][1] == {"pagination.key": "NEXT"}


def test_get_grants_splits_type_from_payload(cfg):
    reader, _ = reader_for(
        cfg, {GRANTS_PATH: [FakeResponse({"grants": [raw_grant(ALICE, "/a")]})]}
    )
    (grant,) = reader.get_grants(AGENT)
    assert grant.type_url == "/cosmos.authz.v1beta1.GenericAuthorization"
    assert grant.payload == {"msg": "/a"}
    assert grant.granter == ALICE
    assert grant.expiration == datetime(2030, 1, 1, 0, 0, 0, 123456, tzinfo=timezone.utc)


def test_get_grants_without_expiration(cfg):
    reader, _ = reader_for(
        cfg, {GRANTS_PATH: [FakeResponse({"grants": [raw_grant(ALICE, "/a", expiration=None)]})]}
    )
    (grant,) = reader.get_grants(AGENT)
    assert grant.expiration is None


def test_get_grants_drops_unparsable_expiration(cfg):
    reader, _ = reader_for(
        cfg,
        {
            GRANTS_PATH: [
                FakeResponse(
                    {"grants": [raw_grant(ALICE, "/a", expiration="soon"), raw_grant(ALICE, "/b")]}
                )
            ]
        },
    )
    grants = reader.get_grants(AGENT)
    assert [g.payload["msg"] for g in grants] == ["/b"]


def test_get_grants_empty_authorization_has_no_payload(cfg):
    raw = raw_grant(ALICE, "/a")
    raw["authorization"] = {"@type": "/cosmos.authz.v1beta1.GenericAuthorization"}
    reader, _ = reader_for(cfg, {GRANTS_PATH: [FakeResponse({"grants": [raw]})]})
    (grant,) = reader.get_grants(AGENT)
    assert grant.payload is None


def test_get_grants_unreachable_is_transport_error(cfg):
    reader, _ = reader_for(cfg, {GRANTS_PATH: [requests.ConnectionError("refused")]})
    with pytest.raises(TransportError):
        reader.get_grants(AGENT)


def test_get_grants_http_error_is_transport_error(cfg):
    reader, _ = reader_for(cfg, {GRANTS_PATH: [FakeResponse(status_code=500, text="boom")]})
    with pytest.raises(TransportError):
        reader.get_grants(AGENT)


# ----------------------------------------------------------------------
# Transport errors
# ----------------------------------------------------------------------


def test_timeout_is_transport_error(cfg):
    path = f"/cosmos/bank/v1beta1/balances/{ALICE}/by_denom"
    reader, _ = reader_for(cfg, {path: [requests.Timeout("slow")]})
    with pytest.raises(TransportError):
        reader.get_balance(ALICE, "uosmo")


def test_http_error_is_query_error(cfg):
    path = f"/cosmos/bank/v1beta1/balances/{ALICE}/by_denom"
    reader, _ = reader_for(cfg, {path: [FakeResponse(status_code=500, text="boom")]})
    with pytest.raises(QueryError) as exc_info:
        reader.get_balance(ALICE, "uosmo")
    assert not isinstance(exc_info.value, TransportError)


def test_invalid_json_is_query_error(cfg):
    path = f"/cosmos/bank/v1beta1/balances/{ALICE}/by_denom"
    reader, _ = reader_for(cfg, {path: [FakeResponse(None, text="<html>")]})
    with pytest.raises(QueryError):
        reader.get_balance(ALICE, "uosmo")


# ----------------------------------------------------------------------
# Power contract
# ----------------------------------------------------------------------


def smart_path(contract, query):
    encoded = base64.b64encode(json.dumps(query).encode()).decode()
    return f"/cosmwasm/wasm/v1/contract/{contract}/smart/{encoded}"


def test_get_power_config(cfg):
    data = {
        "base_denom": "uosmo",
        "power_denom": "upower",
        "base_pool": {"id": "1", "quote_denom": "uusdc"},
        "power_pool": {"id": "2", "quote_denom": "uosmo"},
        "index_scale": "10000",
    }
    reader, _ = reader_for(
        cfg, {smart_path("osmo1power", {"config": {}}): [FakeResponse({"data": data})]}
    )
    power_config = reader.get_power_config("osmo1power")
    assert power_config.base_pool == PoolRef(1, "uusdc")
    assert power_config.power_pool == PoolRef(2, "uosmo")
    assert power_config.index_scale == 10000


def test_get_power_config_malformed(cfg):
    reader, _ = reader_for(
        cfg, {smart_path("osmo1power", {"config": {}}): [FakeResponse({"data": {"base_denom": "x"}})]}
    )
    with pytest.raises(QueryError):
        reader.get_power_config("osmo1power")


def test_get_power_state(cfg):
    reader, _ = reader_for(
        cfg,
        {
            smart_path("osmo1power", {"state": {}}): [
                FakeResponse({"data": {"normalisation_factor": "0.987654321"}})
            ]
        },
    )
    assert reader.get_power_state("osmo1power").normalisation_factor == Decimal("0.987654321")


def test_smart_query_without_data(cfg):
    reader, _ = reader_for(cfg, {smart_path("osmo1power", {"state": {}}): [FakeResponse({})]})
    with pytest.raises(QueryError):
        reader.get_power_state("osmo1power")


# ----------------------------------------------------------------------
# Pools and prices
# ----------------------------------------------------------------------


def test_get_spot_price_sends_denoms(cfg):
    path = "/osmosis/poolmanager/v1beta1/pools/1/prices"
    reader, session = reader_for(cfg, {path: [FakeResponse({"spot_price": "1.500000000000000000"})]})
    assert reader.get_spot_price(1, "uosmo", "uusdc") == Decimal("1.5")
    assert session.requests[0][1] == {"base_asset_denom": "uosmo", "quote_asset_denom": "uusdc"}


def test_get_spot_price_missing(cfg):
    path = "/osmosis/poolmanager/v1beta1/pools/1/prices"
    reader, _ = reader_for(cfg, {path: [FakeResponse({})]})
    with pytest.raises(QueryError):
        reader.get_spot_price(1, "uosmo", "uusdc")


POOL_BODY = {
    "pool": {
        "@type": "/osmosis.concentratedliquidity.v1beta1.Pool",
        "id": "2",
        "token0": "upower",
        "token1": "uosmo",
        "current_tick": "-3500000",
        "tick_spacing": "100",
        "current_sqrt_price": "0.790569415042094833",
        "current_tick_liquidity": "1000.5",
    }
}


def test_get_pool(cfg):
    reader, _ = reader_for(cfg, {"/osmosis/poolmanager/v1beta1/pools/2": [FakeResponse(POOL_BODY)]})
    pool = reader.get_pool(2)
    assert pool.pool_id == 2
    assert (pool.token0, pool.token1) == ("upower", "uosmo")
    assert pool.current_tick == -3_500_000
    assert pool.tick_spacing == 100
    assert pool.signature == ("0.790569415042094833", -3_500_000)
    assert pool.current_tick_liquidity == "1000.5"


def test_get_pool_rejects_non_cl_pool(cfg):
    body = {"pool": {"@type": "/osmosis.gamm.v1beta1.Pool", "id": "2"}}
    reader, _ = reader_for(cfg, {"/osmosis/poolmanager/v1beta1/pools/2": [FakeResponse(body)]})
    with pytest.raises(QueryError):
        reader.get_pool(2)


# ----------------------------------------------------------------------
# Accounts
# ----------------------------------------------------------------------


def test_get_positions(cfg):
    path = f"/osmosis/concentratedliquidity/v1beta1/positions/{ALICE}"
    body = {
        "positions": [
            {
                "position": {
                    "position_id": "42",
                    "address": ALICE,
                    "pool_id": "2",
                    "lower_tick": "-4100000",
                    "upper_tick": "-3800000",
                    "join_time": "2024-05-01T00:00:00Z",
                    "liquidity": "1234.567800000000000000",
                },
                "asset0": {"denom": "upower", "amount": "0"},
                "asset1": {"denom": "uosmo", "amount": "500"},
            }
        ],
        "pagination": {"next_key": None},
    }
    reader, session = reader_for(cfg, {path: [FakeResponse(body)]})
    (position,) = reader.get_positions(ALICE, 2)

    assert session.requests[0][1] == {"pool_id": 2}
    assert position.position_id == 42
    assert (position.lower_tick, position.upper_tick) == (-4_100_000, -3_800_000)
    assert position.liquidity == Decimal("1234.5678")
    assert position.assets == (Coin("upower", 0), Coin("uosmo", 500))


def test_get_positions_malformed(cfg):
    path = f"/osmosis/concentratedliquidity/v1beta1/positions/{ALICE}"
    reader, _ = reader_for(cfg, {path: [FakeResponse({"positions": [{"position": {}}]})]})
    with pytest.raises(QueryError):
        reader.get_positions(ALICE, 2)


def test_get_balance(cfg):
    path = f"/cosmos/bank/v1beta1/balances/{ALICE}/by_denom"
    reader, session = reader_for(
        cfg, {path: [FakeResponse({"balance": {"denom": "uosmo", "amount": "2500"}})]}
    )
    assert reader.get_balance(ALICE, "uosmo") == 2500
    assert session.requests[0][1] == {"denom": "uosmo"}


def test_get_balance_missing_is_zero(cfg):
    path = f"/cosmos/bank/v1beta1/balances/{ALICE}/by_denom"
    reader, _ = reader_for(cfg, {path: [FakeResponse({})]})
    assert reader.get_balance(ALICE, "uosmo") == 0
