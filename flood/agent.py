"""
FloodAgent: rebalances delegated power-pool positions on every swap.

One run per detected swap: eligible granters -> market snapshot ->
per-account rebalance -> one batched MsgExec. Whether an error ends the run,
skips an account or is only logged is decided here.
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from functools import partial
from datetime import datetime, timezone
from typing import Optional

from flood import config as default_config
from flood.chain_reader import ChainReader, PoolState
from flood.errors import BroadcastError, ComputationError, QueryError, SetupError
from flood.events import SwapWatcher
from flood.grants import compute_eligible_granters
from flood.lp_manager import AccountOutcome, LPManager, OsmosisdBroadcaster, RebalanceBatch
from flood.pricing import MarketSnapshot

logger = logging.getLogger("flood.agent")


def configure_logging(log_dir: str, verbose: bool = False) -> None:
    """Console at INFO (DEBUG with verbose), full DEBUG log in log_dir/flood.log."""
    os.makedirs(log_dir, exist_ok=True)
    root = logging.getLogger("flood")
    root.setLevel(logging.DEBUG)
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(fmt)
    root.addHandler(console)

    fh = logging.FileHandler(os.path.join(log_dir, "flood.log"))
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(fmt)
    root.addHandler(fh)


@dataclass
class RunReport:
    started_at: datetime
    eligible: list = field(default_factory=list)
    outcomes: list = field(default_factory=list)
    batch: RebalanceBatch = field(default_factory=RebalanceBatch)
    snapshot: Optional[MarketSnapshot] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    dry_run: bool = False

    def to_record(self) -> dict:
        return {
            "ts": self.started_at.isoformat(),
            "eligible": self.eligible,
            "accounts": [
                {
                    "granter": o.granter,
                    "withdrawals": len(o.withdrawals),
                    "creations": len(o.creations),
                    "ticks": list(o.tick_range) if o.tick_range else None,
                    "error": str(o.error) if o.error else None,
                }
                for o in self.outcomes
            ],
            "messages": len(self.batch),
            "market": self.snapshot.summary() if self.snapshot else None,
            "tx_hash": self.tx_hash,
            "error": self.error,
            "dry_run": self.dry_run,
        }


class FloodAgent:
    """Autonomous market maker for one power perp pool."""

    def __init__(self, config=default_config, reader=None, broadcaster=None, lp_manager=None):
        self.config = config
        if not config.POWER_CONTRACT_ADDRESS:
            raise SetupError("FLOOD_POWER_CONTRACT_ADDRESS is not set")

        self.reader = reader or ChainReader(config)
        self.broadcaster = broadcaster or OsmosisdBroadcaster(config)
        self.lp_manager = lp_manager or LPManager(self.reader, config)
        self.dry_run = config.DRY_RUN

        self.address = self.broadcaster.resolve_address()
        logger.info("Agent address: %s", self.address)

        try:
            power_config = self.reader.get_power_config(config.POWER_CONTRACT_ADDRESS)
        except QueryError as e:
            raise SetupError(f"cannot read power contract: {e}") from e
        self.pool_id = power_config.power_pool.pool_id
        logger.info(
            "Power contract %s: power pool=%d base pool=%d",
            config.POWER_CONTRACT_ADDRESS,
            self.pool_id,
            power_config.base_pool.pool_id,
        )

    # ------------------------------------------------------------------
    # One run
    # ------------------------------------------------------------------

    def fetch_market(self) -> tuple[MarketSnapshot, PoolState]:
        """Prices and pool state shared by every account this run."""
        contract = self.config.POWER_CONTRACT_ADDRESS
        power_config = self.reader.get_power_config(contract)
        power_state = self.reader.get_power_state(contract)
        base_price, power_price = self.reader.get_spot_prices(power_config)
        pool = self.reader.get_pool(power_config.power_pool.pool_id)

        snapshot = MarketSnapshot.build(
            base_price,
            power_price,
            power_state.normalisation_factor,
            power_config.index_scale,
            pool.current_tick,
            pool.tick_spacing,
            invert_prices=self.config.INVERT_PRICES,
        )
        logger.debug("Summary data: %s", snapshot.summary())
        return snapshot, pool

    def rebalance_accounts(self, granters, rebalance) -> list[AccountOutcome]:
        """Apply rebalance(granter) to every granter in order."""
        outcomes = []
        for granter in granters:
            logger.debug("Granter with all required grants: %s", granter)
            try:
                outcome = rebalance(granter)
            except QueryError as e:
                if not self.config.ISOLATE_ACCOUNT_FAILURES:
                    raise
                logger.error("Skipping %s this run, query failed: %s", granter, e)
                outcome = AccountOutcome(granter, error=e)
            outcomes.append(outcome)
        return outcomes

    def build_batch(self, report: RunReport) -> None:
        """Fill report with eligible granters, outcomes and the folded batch."""
        grants = self.reader.get_grants(self.address)
        report.eligible = sorted(compute_eligible_granters(grants, self.config.REQUIRED_GRANTS))
        logger.info(
            "%d grant(s), %d eligible granter(s)", len(grants), len(report.eligible)
        )
        if not report.eligible:
            return

        try:
            report.snapshot, pool = self.fetch_market()
        except ComputationError as e:
            # every account fails its tick computation this run
            logger.error("Failed to price the market: %s", e)
            report.error = f"market: {e}"
            rebalance = partial(self.lp_manager.withdraw_account, pool_id=self.pool_id, error=e)
        else:
            rebalance = partial(
                self.lp_manager.rebalance_account, snapshot=report.snapshot, pool=pool
            )

        report.outcomes = self.rebalance_accounts(report.eligible, rebalance)
        report.batch = RebalanceBatch.fold(
            report.outcomes, self.config.WITHDRAW_ON_TICK_FAILURE
        )

    def handle_swap(self) -> RunReport:
        """Rebalance every eligible granter and submit one batch.

        QueryError propagates (fatal to the run) after the run is journaled.
        BroadcastError is recorded in the report and not retried.
        """
        report = RunReport(datetime.now(timezone.utc), dry_run=self.dry_run)

        try:
            self.build_batch(report)
        except QueryError as e:
            report.error = f"query: {e}"
            self.log_run(report)
            raise

        if not report.batch:
            logger.info("Nothing to submit")
        elif self.dry_run:
            logger.info(
                "Dry run, not broadcasting %d message(s): %s",
                len(report.batch),
                json.dumps(report.batch.messages),
            )
        else:
            try:
                report.tx_hash = self.broadcaster.submit(self.address, report.batch.messages)
                logger.info(
                    "tx response: %d message(s) for %d granter(s) tx=%s",
                    len(report.batch),
                    len(report.batch.granters),
                    report.tx_hash,
                )
            except BroadcastError as e:
                logger.error("Transaction error: %s", e)
                report.error = str(e)

        self.log_run(report)
        return report

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self, watcher: Optional[SwapWatcher] = None):
        """Handle every swap the watcher reports until interrupted."""
        watcher = watcher or SwapWatcher(self.reader, self.pool_id, self.config.POLL_INTERVAL)
        logger.info(
            "Agent running. Watching pool %d every %ss. Press Ctrl+C to stop.",
            self.pool_id,
            self.config.POLL_INTERVAL,
        )
        try:
            for _ in watcher.triggers():
                self.handle_swap()
        except KeyboardInterrupt:
            logger.info("Agent stopped by user.")

    # ------------------------------------------------------------------
    # Journal
    # ------------------------------------------------------------------

    def log_run(self, report: RunReport):
        """Append the run to the JSONL journal read by the dashboard."""
        path = self.config.JOURNAL_FILE
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "a") as f:
            f.write(json.dumps(report.to_record()) + "\n")


# ======================================================================
# Entry point
# ======================================================================


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rebalance delegated power pool positions on every swap")
    parser.add_argument("--once", action="store_true", help="handle a single run and exit")
    parser.add_argument("--dry-run", action="store_true", help="build the batch but do not broadcast")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug output on the console")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(default_config.LOG_DIR, args.verbose)

    try:
        agent = FloodAgent(default_config)
        if args.dry_run:
            agent.dry_run = True
        if args.once:
            agent.handle_swap()
        else:
            agent.run()
    except SetupError as e:
        logger.critical("Setup failed: %s", e)
        return 1
    except QueryError as e:
        logger.critical("Query failed, stopping: %s", e)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
