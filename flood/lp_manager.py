"""
Osmosis concentrated-liquidity position messages: withdraw stale positions,
create the new buy/sell ranges, and broadcast them as one authz MsgExec
through the osmosisd CLI.
"""

import json
import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from functools import reduce
from typing import Iterable, Optional

from flood.chain_reader import Coin, PoolState, Position
from flood.errors import BroadcastError, ComputationError, SetupError
from flood.pricing import MarketSnapshot
from flood.ticks import TickRange, compute_tick_range

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Messages (proto3 JSON, as osmosisd expects them in a tx body)
# ----------------------------------------------------------------------


def withdraw_position_msg(config, position: Position) -> dict:
    """Full-liquidity withdrawal of one position."""
    return {
        "@type": config.MSG_WITHDRAW_POSITION,
        "position_id": str(position.position_id),
        "sender": position.address,
        "liquidity_amount": str(position.liquidity),
    }


def create_position_msg(
    config, pool_id: int, sender: str, lower_tick: int, upper_tick: int, tokens: Iterable[Coin]
) -> dict:
    """Single-sided deposit with zero minimum amounts."""
    return {
        "@type": config.MSG_CREATE_POSITION,
        "pool_id": str(pool_id),
        "sender": sender,
        "lower_tick": str(lower_tick),
        "upper_tick": str(upper_tick),
        "tokens_provided": [coin.to_json() for coin in tokens if coin.amount > 0],
        "token_min_amount0": "0",
        "token_min_amount1": "0",
    }


def remove_previous_positions(config, positions: Iterable[Position]) -> list[dict]:
    msgs = []
    for position in positions:
        logger.debug(
            "position id=%d liquidity=%s range=[%d, %d]",
            position.position_id,
            position.liquidity,
            position.lower_tick,
            position.upper_tick,
        )
        msgs.append(withdraw_position_msg(config, position))
    return msgs


def create_new_positions(
    config, account: str, tick_range: TickRange, token0: Coin, token1: Coin, pool_id: int
) -> list[dict]:
    """Buy range below the current tick holds token1, sell range above holds token0.

    A side with nothing to deposit is left out.
    """
    msgs = []
    lower, upper = tick_range.buy_range
    if token1.amount > 0:
        msgs.append(create_position_msg(config, pool_id, account, lower, upper, [token1]))
    else:
        logger.info("No %s to fund buy range [%d, %d] for %s", token1.denom, lower, upper, account)

    lower, upper = tick_range.sell_range
    if token0.amount > 0:
        msgs.append(create_position_msg(config, pool_id, account, lower, upper, [token0]))
    else:
        logger.info("No %s to fund sell range [%d, %d] for %s", token0.denom, lower, upper, account)
    return msgs


def build_rebalance_instructions(
    config,
    account: str,
    positions: Iterable[Position],
    tick_range: TickRange,
    token0: Coin,
    token1: Coin,
    pool_id: int,
) -> list[dict]:
    """Withdraw every open position, then open the buy and sell ranges."""
    return remove_previous_positions(config, positions) + create_new_positions(
        config, account, tick_range, token0, token1, pool_id
    )


def funds_after_withdrawal(balance: int, denom: str, positions: Iterable[Position]) -> Coin:
    """Wallet balance plus what the withdrawals in the same tx return."""
    withdrawn = sum(
        coin.amount for position in positions for coin in position.assets if coin.denom == denom
    )
    return Coin(denom, balance + withdrawn)


# ----------------------------------------------------------------------
# Per-account outcome and batch
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class AccountOutcome:
    granter: str
    withdrawals: tuple = ()
    creations: tuple = ()
    tick_range: Optional[TickRange] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def messages(self, withdraw_on_failure: bool = True) -> tuple:
        """Messages this account contributes to the batch.

        A failed tick computation still contributes its withdrawals unless
        withdraw_on_failure is off, in which case it contributes nothing.
        """
        if self.ok:
            return self.withdrawals + self.creations
        if isinstance(self.error, ComputationError) and withdraw_on_failure:
            return self.withdrawals
        return ()


@dataclass(frozen=True)
class RebalanceBatch:
    messages: tuple = ()
    granters: tuple = ()

    def add(self, outcome: AccountOutcome, withdraw_on_failure: bool = True) -> "RebalanceBatch":
        msgs = outcome.messages(withdraw_on_failure)
        if not msgs:
            return self
        return RebalanceBatch(self.messages + msgs, self.granters + (outcome.granter,))

    @classmethod
    def fold(
        cls, outcomes: Iterable[AccountOutcome], withdraw_on_failure: bool = True
    ) -> "RebalanceBatch":
        return reduce(lambda batch, o: batch.add(o, withdraw_on_failure), outcomes, cls())

    def __len__(self) -> int:
        return len(self.messages)


class LPManager:
    """Builds one account's rebalance from chain state and the market snapshot."""

    def __init__(self, reader, config):
        self.reader = reader
        self.config = config

    def withdraw_account(self, granter: str, pool_id: int, error: Exception) -> AccountOutcome:
        """Withdrawals only, for a run whose market data could not be priced."""
        positions = self.reader.get_positions(granter, pool_id)
        withdrawals = tuple(remove_previous_positions(self.config, positions))
        return AccountOutcome(granter, withdrawals=withdrawals, error=error)

    def rebalance_account(
        self, granter: str, snapshot: MarketSnapshot, pool: PoolState
    ) -> AccountOutcome:
        """Withdraw messages for all open positions plus the new ranges.

        Chain reads raise QueryError to the caller. A tick computation
        failure is returned in the outcome, with the withdrawals kept.
        """
        positions = self.reader.get_positions(granter, pool.pool_id)
        withdrawals = tuple(remove_previous_positions(self.config, positions))

        try:
            tick_range = compute_tick_range(
                snapshot.pool_spot_price,
                snapshot.pool_target_price,
                self.config.SPREAD,
                snapshot.current_tick,
                snapshot.tick_spacing,
            )
        except ComputationError as e:
            logger.error(
                "Failed to calculate buy and sell ticks for %s: %s (current_tick=%d)",
                granter,
                e,
                snapshot.current_tick,
            )
            return AccountOutcome(granter, withdrawals=withdrawals, error=e)

        token0 = funds_after_withdrawal(
            self.reader.get_balance(granter, pool.token0), pool.token0, positions
        )
        token1 = funds_after_withdrawal(
            self.reader.get_balance(granter, pool.token1), pool.token1, positions
        )
        creations = tuple(
            create_new_positions(self.config, granter, tick_range, token0, token1, pool.pool_id)
        )
        logger.info(
            "Rebalance %s: withdraw=%d buy=[%d, %d] sell=[%d, %d] funds=%d%s/%d%s",
            granter,
            len(withdrawals),
            *tick_range.buy_range,
            *tick_range.sell_range,
            token0.amount,
            token0.denom,
            token1.amount,
            token1.denom,
        )
        return AccountOutcome(granter, withdrawals, creations, tick_range)


# ----------------------------------------------------------------------
# Broadcast via osmosisd
# ----------------------------------------------------------------------


class OsmosisdBroadcaster:
    """Signs with the agent key and submits batches as `tx authz exec`."""

    def __init__(self, config, runner=subprocess.run):
        self.config = config
        self.runner = runner

    def _keyring_args(self) -> list[str]:
        args = ["--keyring-backend", self.config.KEYRING_BACKEND]
        if self.config.KEYRING_DIR:
            args += ["--keyring-dir", self.config.KEYRING_DIR]
        return args

    def resolve_address(self) -> str:
        """Bech32 address of the signer key."""
        cmd = [self.config.OSMOSISD_BIN, "keys", "show", self.config.SIGNER_KEY, "-a"]
        cmd += self._keyring_args()
        try:
            proc = self.runner(cmd, capture_output=True, text=True, timeout=30, check=True)
        except (OSError, subprocess.SubprocessError) as e:
            raise SetupError(f"cannot resolve signer key {self.config.SIGNER_KEY!r}: {e}") from e

        address = proc.stdout.strip()
        if not address.startswith(self.config.ADDRESS_PREFIX + "1"):
            raise SetupError(f"unexpected signer address {address!r}")
        return address

    @staticmethod
    def unsigned_tx(messages: Iterable[dict]) -> dict:
        return {
            "body": {
                "messages": list(messages),
                "memo": "",
                "timeout_height": "0",
                "extension_options": [],
                "non_critical_extension_options": [],
            },
            "auth_info": {
                "signer_infos": [],
                "fee": {"amount": [], "gas_limit": "0", "payer": "", "granter": ""},
            },
            "signatures": [],
        }

    def submit(self, grantee: str, messages: Iterable[dict]) -> str:
        """Broadcast messages inside one MsgExec signed by grantee. Returns the tx hash."""
        cfg = self.config
        fd, tx_file = tempfile.mkstemp(prefix="flood-exec-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(self.unsigned_tx(messages), f)

            cmd = [
                cfg.OSMOSISD_BIN, "tx", "authz", "exec", tx_file,
                "--from", cfg.SIGNER_KEY,
                "--chain-id", cfg.CHAIN_ID,
                "--node", cfg.RPC_URL,
                "--gas", cfg.GAS,
                "--gas-adjustment", cfg.GAS_ADJUSTMENT,
                "--gas-prices", cfg.GAS_PRICES,
                "--broadcast-mode", "sync",
                "--output", "json",
                "--yes",
            ] + self._keyring_args()

            try:
                proc = self.runner(
                    cmd, capture_output=True, text=True, timeout=cfg.BROADCAST_TIMEOUT
                )
            except (OSError, subprocess.SubprocessError) as e:
                raise BroadcastError(f"osmosisd failed to run: {e}") from e
        finally:
            os.unlink(tx_file)

        if proc.returncode != 0:
            raise BroadcastError(f"osmosisd exited {proc.returncode}: {proc.stderr.strip()}")
        try:
            result = json.loads(proc.stdout)
        except ValueError as e:
            raise BroadcastError(f"unparsable osmosisd output: {proc.stdout[:200]!r}") from e

        if int(result.get("code", 0)) != 0:
            raise BroadcastError(
                f"tx {result.get('txhash')} rejected with code {result['code']}: "
                f"{result.get('raw_log', '')}"
            )
        tx_hash = result.get("txhash")
        if not tx_hash:
            raise BroadcastError(f"osmosisd returned no tx hash: {result}")
        logger.info("Broadcast MsgExec from %s tx=%s", grantee, tx_hash)
        return tx_hash
